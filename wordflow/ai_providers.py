"""
Batch translation providers.

The provider set is closed: ``ProviderKind`` lists every backend and
``create_provider`` has one explicit branch per member. OpenAI and ILMUchat
share ``OpenAIChatProvider`` since ILMUchat exposes an OpenAI-compatible API.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiolimiter import AsyncLimiter
from openai import (
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    APITimeoutError,
    OpenAIError
)
from openai import AsyncOpenAI
from openai.types.chat import (
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam
)

from wordflow.errors import (
    ProviderNotConfiguredError,
    ResponseParseError,
    TranslationError,
    TranslationRateLimitedError,
)
from wordflow.models import STATUS_DRAFT
from wordflow.prompts import (
    RESULT_OK,
    build_glossary_section,
    build_system_prompt,
    build_user_prompt,
    parse_batch_response,
    protect_placeholders,
    relevant_glossary_terms,
    restore_placeholders,
)

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ILMUCHAT = "ilmuchat"
    DRY_RUN = "dry_run"


@dataclass
class BatchOptions:
    target_languages: List[str]
    template: Dict[str, str]
    source_language: str = "en"
    glossary_terms: List[Dict[str, Any]] = field(default_factory=list)


class TranslationProvider:
    """Interface shared by every backend."""

    kind: ProviderKind

    async def generate_batch(self, items: List[Dict[str, Any]], options: BatchOptions) -> List[Dict[str, Any]]:
        """
        Translate a batch of ``{id, text, context}`` items.

        Returns one ``{id, translations: {lang: {text, status}}, status}`` per
        item, in request order. Items that failed carry ``status: "error"``.
        """
        raise NotImplementedError

    async def test_connection(self) -> Dict[str, Any]:
        raise NotImplementedError


def _retry_after_seconds(api_exc: Optional[Exception]) -> Optional[float]:
    if not isinstance(api_exc, OpenAIError):
        return None
    response = getattr(api_exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    retry_after_header = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after_header:
        return None
    if retry_after_header.isdigit():
        return float(retry_after_header)
    if retry_after_header.endswith("ms"):
        return float(retry_after_header[:-2]) / 1000
    return None


async def _handle_retry(attempt: int, max_retries: int, base_delay: float, label: str,
                        api_exc: Optional[Exception] = None) -> bool:
    """
    Handle the retry mechanism with exponential backoff and jitter.

    Args:
        attempt (int): The current attempt number.
        max_retries (int): The maximum number of retry attempts.
        base_delay (float): The base delay in seconds.
        label (str): What is being retried, for logging.
        api_exc (Optional[Exception]): The exception from the API, if available.

    Returns:
        bool: True if the operation should retry, False otherwise.
    """
    if attempt >= max_retries:
        logger.error(f"Request '{label}' failed after {max_retries} attempts.")
        return False

    try:
        delay = _retry_after_seconds(api_exc)
    except ValueError as exc:
        logger.warning(f"Failed to parse Retry-After header: {exc}. Falling back to exponential backoff.")
        delay = None
    if delay is None:
        delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, 1)
    logger.info(f"Retrying '{label}' in {delay:.2f} seconds (Attempt {attempt}/{max_retries})")
    await asyncio.sleep(delay)
    return True


class OpenAIChatProvider(TranslationProvider):
    """Chat-completions backend for OpenAI and OpenAI-compatible endpoints."""

    def __init__(self, kind: ProviderKind, client: Optional[AsyncOpenAI], model_name: str,
                 semaphore: asyncio.Semaphore, rate_limiter: AsyncLimiter,
                 language_name: Callable[[str], str] = lambda code: code,
                 glossary_token_budget: int = 1500, max_retries: int = 4, base_delay: float = 5.0,
                 request_timeout: float = 120.0):
        self.kind = kind
        self.client = client
        self.model_name = model_name
        self.semaphore = semaphore
        self.rate_limiter = rate_limiter
        self.language_name = language_name
        self.glossary_token_budget = glossary_token_budget
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.request_timeout = request_timeout

    def _ensure_configured(self) -> AsyncOpenAI:
        if self.client is None:
            raise ProviderNotConfiguredError(f"The {self.kind.value} provider has no API key configured.")
        return self.client

    async def _complete(self, messages, max_tokens: int = 4096) -> str:
        client = self._ensure_configured()
        kwargs: Dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "temperature": 0.3,
            "max_tokens": max_tokens,
            "timeout": self.request_timeout,
        }
        if self.kind is ProviderKind.OPENAI:
            kwargs["response_format"] = {"type": "json_object"}
        response = await client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()

    async def generate_batch(self, items, options):
        self._ensure_configured()
        if not (options.template or {}).get("prompt"):
            raise TranslationError("A template with a prompt is required.")
        if not items:
            return []

        protected_items = []
        mappings: Dict[str, Dict[str, str]] = {}
        for item in items:
            processed_text, mapping = protect_placeholders(item.get("text") or "")
            mappings[str(item["id"])] = mapping
            protected_items.append({"id": item["id"], "text": processed_text, "context": item.get("context") or ""})

        terms = relevant_glossary_terms(options.glossary_terms, [item.get("text") or "" for item in items])
        glossary_section = build_glossary_section(terms, options.target_languages,
                                                  self.glossary_token_budget, self.model_name)
        system_prompt = build_system_prompt(options.template, options.source_language, options.target_languages,
                                            glossary_section, self.language_name)
        messages = [
            ChatCompletionSystemMessageParam(role="system", content=system_prompt),
            ChatCompletionUserMessageParam(role="user", content=build_user_prompt(protected_items,
                                                                                   options.target_languages)),
        ]
        label = f"{self.kind.value} batch of {len(items)}"

        async with self.semaphore, self.rate_limiter:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response_text = await self._complete(messages)
                    results = parse_batch_response(response_text, items, options.target_languages, STATUS_DRAFT)
                    break
                except ResponseParseError as parse_exc:
                    logger.error(f"AI response could not be parsed: {parse_exc}")
                    logger.debug(f"Invalid AI response:\n---\n{parse_exc.raw_response}\n---")
                    if not await _handle_retry(attempt, self.max_retries, self.base_delay, label):
                        raise
                except RateLimitError as api_exc:
                    logger.warning(f"Rate limited by {self.kind.value}: {api_exc}")
                    if not await _handle_retry(attempt, self.max_retries, self.base_delay, label, api_exc):
                        raise TranslationRateLimitedError("The translation service is rate limiting requests.") from api_exc
                except (APITimeoutError, APIConnectionError) as api_exc:
                    logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
                    if not await _handle_retry(attempt, self.max_retries, self.base_delay, label, api_exc):
                        raise TranslationError(f"Could not reach the translation service: {api_exc}") from api_exc
                except APIStatusError as api_exc:
                    logger.error(f"API error occurred: {api_exc.status_code} - {api_exc}")
                    if api_exc.status_code < 500 or \
                            not await _handle_retry(attempt, self.max_retries, self.base_delay, label, api_exc):
                        raise TranslationError(f"Translation service error {api_exc.status_code}: {api_exc}") from api_exc
                except OpenAIError as api_exc:
                    raise TranslationError(f"Translation failed: {api_exc}") from api_exc
            else:
                raise TranslationError(f"Request '{label}' exhausted its retries.")

        for result in results:
            mapping = mappings.get(str(result["id"]), {})
            for cell in result["translations"].values():
                cell["text"] = restore_placeholders(cell["text"], mapping)
        ok = sum(1 for result in results if result["status"] == RESULT_OK)
        logger.info("%s translated %d/%d item(s)", self.kind.value, ok, len(results))
        return results

    async def test_connection(self):
        if self.client is None:
            return {"success": False, "message": "API key missing"}
        try:
            text = await self._complete([ChatCompletionUserMessageParam(role="user", content="Say 'OK'")],
                                        max_tokens=10)
        except OpenAIError as e:
            return {"success": False, "message": str(e)}
        return {"success": True, "message": text or "Connected"}


class DryRunProvider(TranslationProvider):
    """Deterministic offline provider: echoes the source text tagged with the language code."""

    kind = ProviderKind.DRY_RUN

    async def generate_batch(self, items, options):
        results = []
        for item in items:
            translations = {lang: {"text": f"[{lang}] {item.get('text') or ''}", "status": STATUS_DRAFT}
                            for lang in options.target_languages}
            results.append({"id": item["id"], "translations": translations, "status": RESULT_OK})
        logger.info("Dry run: produced placeholder translations for %d item(s)", len(items))
        return results

    async def test_connection(self):
        return {"success": True, "message": "Dry run"}


def resolve_provider_kind(name: Optional[str], fallback: ProviderKind = ProviderKind.OPENAI) -> ProviderKind:
    try:
        return ProviderKind((name or "").lower())
    except ValueError:
        logger.warning("Unknown AI provider '%s'; using '%s'.", name, fallback.value)
        return fallback


def create_provider(kind, config, semaphore: Optional[asyncio.Semaphore] = None,
                    rate_limiter: Optional[AsyncLimiter] = None) -> TranslationProvider:
    """
    Build the provider for ``kind`` from the application config.

    Args:
        kind: A ProviderKind or its string value.
        config: The AppConfig holding clients, model names and limits.
        semaphore: Concurrency limit shared by providers; created from config when omitted.
        rate_limiter: Request rate limit shared by providers; created from config when omitted.
    """
    if not isinstance(kind, ProviderKind):
        kind = resolve_provider_kind(kind, resolve_provider_kind(config.ai_provider))
    semaphore = semaphore or asyncio.Semaphore(config.max_concurrent_api_calls)
    rate_limiter = rate_limiter or AsyncLimiter(config.rate_limit_per_minute, 60)

    if kind is ProviderKind.OPENAI:
        return OpenAIChatProvider(kind, config.openai_client, config.model_name, semaphore, rate_limiter,
                                  config.language_name, config.glossary_token_budget)
    elif kind is ProviderKind.ILMUCHAT:
        return OpenAIChatProvider(kind, config.ilmuchat_client, config.ilmuchat_model_name, semaphore,
                                  rate_limiter, config.language_name, config.glossary_token_budget)
    elif kind is ProviderKind.DRY_RUN:
        return DryRunProvider()
    raise ValueError(f"Unhandled provider kind: {kind}")
