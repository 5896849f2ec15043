"""Application configuration for the localization workflow."""
import logging
import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple

import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from wordflow.logging_config import setup_logger

DEFAULT_ILMUCHAT_BASE_URL = "https://api.ilmu.ai/v1"
DEFAULT_LOCALES = [
    {"code": "en", "name": "English"},
    {"code": "my", "name": "Bahasa Malaysia"},
    {"code": "zh", "name": "Chinese"},
]
SUPPORTED_PROVIDERS = ("openai", "ilmuchat", "dry_run")
STORE_BACKENDS = ("memory", "json")


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str
    store_backend: str
    store_path: str

    # AI provider
    ai_provider: str
    model_name: str
    ilmuchat_base_url: str
    ilmuchat_model_name: str
    dry_run: bool
    max_concurrent_api_calls: int
    rate_limit_per_minute: int
    translation_batch_size: int
    glossary_token_budget: int

    # Store limits
    write_chunk_size: int
    max_batch_items: int
    poll_interval_seconds: float

    # Languages
    source_language: str
    default_target_languages: List[str]
    language_codes: Dict[str, str]
    name_to_code: Dict[str, str]

    # Clients, one per provider that has credentials
    openai_client: Optional[AsyncOpenAI] = None
    ilmuchat_client: Optional[AsyncOpenAI] = None

    # Identity the CLI acts as
    current_user_email: Optional[str] = None

    def language_name(self, code: str) -> str:
        return self.language_codes.get(code, code)


def _compute_project_root() -> str:
    """Compute the project root directory."""
    module_real_path = os.path.realpath(__file__)
    module_dir = os.path.dirname(module_real_path)
    return os.path.abspath(os.path.join(module_dir, os.pardir))


def _dotenv_candidates(project_root: str) -> Tuple[str, str]:
    return os.path.join(project_root, '.env'), os.path.join(project_root, 'docker', '.env')


def _load_dotenv_files(project_root: str) -> None:
    """Load .env files from project root or docker directory."""
    dotenv_path_project_root, dotenv_path_docker_dir = _dotenv_candidates(project_root)

    if os.path.exists(dotenv_path_project_root):
        load_dotenv(dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        load_dotenv(dotenv_path_docker_dir)


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Load the YAML configuration file, falling back to defaults on any problem."""
    default_config_path = os.path.join(project_root, 'config.yaml')
    config_file = os.environ.get('WORDFLOW_CONFIG_FILE', default_config_path)

    if not os.path.isabs(config_file):
        config_file = os.path.abspath(config_file)

    config = {}
    try:
        if not os.path.exists(config_file):
            print(f"Warning: Configuration file '{config_file}' not found. Using default configuration.",
                  file=sys.stderr)
            print(f"Tip: Create a config.yaml file in '{project_root}' or set WORDFLOW_CONFIG_FILE.",
                  file=sys.stderr)
            return config

        if not os.access(config_file, os.R_OK):
            print(f"Error: Configuration file '{config_file}' exists but is not readable. Check file permissions.",
                  file=sys.stderr)
            return config

        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
            if loaded_config is None:
                print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
                      file=sys.stderr)
            elif isinstance(loaded_config, dict):
                config = loaded_config
                print(f"Successfully loaded configuration from: {config_file}", file=sys.stderr)
            else:
                print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
                      file=sys.stderr)

    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
    except (OSError, IOError) as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)

    return config


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    """Set up logger based on configuration."""
    log_config = config.get('logging', {}) or {}
    log_level_str = log_config.get('log_level', 'INFO').upper()
    log_file_path = log_config.get('log_file_path', 'logs/wordflow.log')
    log_to_console = log_config.get('log_to_console', True)
    return setup_logger(log_level_str, log_file_path, log_to_console)


def _log_dotenv_status(logger: logging.Logger, project_root: str) -> None:
    """Log the status of .env file loading."""
    dotenv_path_project_root, dotenv_path_docker_dir = _dotenv_candidates(project_root)

    if os.path.exists(dotenv_path_project_root):
        logger.info("Loaded environment variables from: %s", dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        logger.info("Loaded environment variables from: %s", dotenv_path_docker_dir)
    else:
        logger.info(
            "No .env file found in project root ('%s') or in docker/ ('%s'). Relying on system environment variables if any.",
            dotenv_path_project_root,
            dotenv_path_docker_dir
        )


def _build_language_mappings(locales_list: List[Dict[str, str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Build language code mappings from supported locales."""
    language_codes: Dict[str, str] = {}
    name_to_code: Dict[str, str] = {}

    for locale in locales_list:
        code = locale.get('code')
        name = locale.get('name')
        if code and name:
            language_codes[code] = name
            name_to_code[name.lower()] = code

    return language_codes, name_to_code


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return int(default)
    try:
        return int(raw)
    except ValueError:
        print(f"Warning: {name}='{raw}' is not an integer. Using {default}.", file=sys.stderr)
        return int(default)


def _resolve_provider(config: Dict[str, Any], logger: logging.Logger) -> str:
    provider = os.environ.get('AI_PROVIDER', config.get('ai_provider', 'openai')).lower()
    if provider not in SUPPORTED_PROVIDERS:
        logger.warning("Unknown AI provider '%s'; falling back to 'openai'.", provider)
        provider = 'openai'
    return provider


def _clamp_chunk_size(chunk_size: int, max_batch_items: int, logger: logging.Logger) -> int:
    """Keep bulk write chunks strictly below the store's single-batch ceiling."""
    if chunk_size < 1:
        logger.warning("write_chunk_size must be positive; using 1.")
        return 1
    if chunk_size >= max_batch_items:
        clamped = max_batch_items - 1
        logger.warning("write_chunk_size %d is not below the batch limit %d; using %d.",
                       chunk_size, max_batch_items, clamped)
        return clamped
    return chunk_size


def _create_openai_client(api_key_env: str, base_url: Optional[str], dry_run: bool,
                          logger: logging.Logger) -> Optional[AsyncOpenAI]:
    """
    Create an AsyncOpenAI client for an OpenAI-compatible endpoint.

    A missing key leaves the client unset; translation requests then fail with a
    "not configured" error instead of stopping the process at startup.
    """
    if dry_run:
        logger.info("Running in dry-run mode, %s client will not be initialized", api_key_env)
        return None

    api_key_from_env = os.environ.get(api_key_env)
    if not api_key_from_env:
        logger.warning("%s environment variable not found. The provider stays unconfigured.", api_key_env)
        return None

    if api_key_env == 'OPENAI_API_KEY' and not api_key_from_env.startswith('sk-'):
        logger.warning("Warning: OPENAI_API_KEY does not start with 'sk-'. This may be invalid.")

    try:
        if base_url:
            client = AsyncOpenAI(api_key=api_key_from_env, base_url=base_url)
        else:
            client = AsyncOpenAI(api_key=api_key_from_env)
        logger.info("Client for %s initialized successfully", api_key_env)
        return client
    except Exception as e:
        logger.error("Failed to initialize client for %s: %s", api_key_env, str(e))
        return None


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Returns:
        AppConfig: The loaded application configuration.
    """
    project_root = _compute_project_root()

    _load_dotenv_files(project_root)

    config = _load_yaml_config(project_root)

    logger = _setup_logger_from_config(config)

    _log_dotenv_status(logger, project_root)

    locales_list = config.get('supported_locales') or DEFAULT_LOCALES
    language_codes, name_to_code = _build_language_mappings(locales_list)

    dry_run = bool(config.get('dry_run', False))
    ai_provider = _resolve_provider(config, logger)
    if dry_run:
        ai_provider = 'dry_run'

    store_backend = config.get('store_backend', 'memory')
    if store_backend not in STORE_BACKENDS:
        logger.warning("Unknown store backend '%s'; using in-memory store.", store_backend)
        store_backend = 'memory'
    store_path = config.get('store_path', os.path.join(project_root, 'data', 'wordflow.json'))

    max_batch_items = int(config.get('max_batch_items', 500))
    write_chunk_size = _clamp_chunk_size(
        _env_int('WRITE_CHUNK_SIZE', config.get('write_chunk_size', 400)), max_batch_items, logger)

    poll_default = config.get('poll_interval_seconds', 30)
    poll_interval_seconds = float(os.environ.get('POLL_INTERVAL_SECONDS', poll_default))

    ilmuchat_base_url = os.environ.get('ILMUCHAT_BASE_URL', config.get('ilmuchat_base_url', DEFAULT_ILMUCHAT_BASE_URL))

    openai_client = None
    ilmuchat_client = None
    if ai_provider == 'openai':
        openai_client = _create_openai_client('OPENAI_API_KEY', None, dry_run, logger)
    elif ai_provider == 'ilmuchat':
        ilmuchat_client = _create_openai_client('ILMUCHAT_API_KEY', ilmuchat_base_url, dry_run, logger)

    return AppConfig(
        project_root=project_root,
        store_backend=store_backend,
        store_path=store_path,
        ai_provider=ai_provider,
        model_name=config.get('model_name', 'gpt-4o-mini'),
        ilmuchat_base_url=ilmuchat_base_url,
        ilmuchat_model_name=config.get('ilmuchat_model_name', 'ilmu-text'),
        dry_run=dry_run,
        max_concurrent_api_calls=config.get('max_concurrent_api_calls', 1),
        rate_limit_per_minute=config.get('rate_limit_per_minute', 60),
        translation_batch_size=config.get('translation_batch_size', 50),
        glossary_token_budget=config.get('glossary_token_budget', 1500),
        write_chunk_size=write_chunk_size,
        max_batch_items=max_batch_items,
        poll_interval_seconds=poll_interval_seconds,
        source_language=config.get('source_language', 'en'),
        default_target_languages=list(config.get('default_target_languages', ['my', 'zh'])),
        language_codes=language_codes,
        name_to_code=name_to_code,
        openai_client=openai_client,
        ilmuchat_client=ilmuchat_client,
        current_user_email=os.environ.get('WORDFLOW_USER_EMAIL', config.get('current_user_email')),
    )
