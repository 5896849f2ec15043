"""
Prompt construction and response parsing for batch translation.

Providers send one request per batch of rows: a system prompt built from the
merged template and the relevant glossary terms, and a user prompt carrying the
items as JSON. The model must answer with JSON that maps every item id to its
per-language text.
"""
import json
import logging
import re
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import jsonschema
import tiktoken

from wordflow.errors import ResponseParseError
from wordflow.models import STATUS_DRAFT

logger = logging.getLogger(__name__)

RESULT_OK = "success"
RESULT_ERROR = "error"

ADDITIONAL_INSTRUCTIONS_HEADER = "## Additional Custom Instructions"
TARGET_LANGUAGE_PATTERN = re.compile(r'\{\{\s*targetLanguage\s*\}\}', re.IGNORECASE)
# HTML tags, {{variables}} and {placeholders}
PLACEHOLDER_PATTERN = re.compile(r'(<[^<>]+>)|(\{\{[^{}]+\}\})|(\{[^{}]+\})')
CODE_FENCE_PATTERN = re.compile(r'^```[a-zA-Z]*\s*|\s*```$')

# Either a bare array of items or an object wrapping it under "items"
BATCH_RESPONSE_SCHEMA = {
    "definitions": {
        "item": {
            "type": "object",
            "required": ["id", "translations"],
            "properties": {
                "id": {"type": ["string", "integer"]},
                "translations": {
                    "type": "object",
                    "additionalProperties": {
                        "anyOf": [
                            {"type": "string"},
                            {
                                "type": "object",
                                "required": ["text"],
                                "properties": {"text": {"type": "string"}},
                            },
                        ]
                    },
                },
            },
        },
        "items": {"type": "array", "items": {"$ref": "#/definitions/item"}},
    },
    "anyOf": [
        {"$ref": "#/definitions/items"},
        {
            "type": "object",
            "required": ["items"],
            "properties": {"items": {"$ref": "#/definitions/items"}},
        },
    ],
}


def count_tokens(text: str, model_name: str = 'gpt-4o-mini') -> int:
    """Count the tokens of ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may need to download model data. When that
    is not possible the bundled ``gpt2`` encoding is used, and as a last
    resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def merge_templates(default_template: Dict[str, Any], custom_template: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """
    Combine the mandatory default template with an optional custom one.

    The default instructions always come first; a custom template only adds
    an extra section and never replaces them.
    """
    name = default_template.get("name") or "Default Template"
    prompt = default_template.get("prompt") or ""
    if custom_template and custom_template.get("id") != default_template.get("id"):
        custom_name = custom_template.get("name") or "Custom"
        prompt = f"{prompt}\n\n{ADDITIONAL_INSTRUCTIONS_HEADER} ({custom_name})\n{custom_template.get('prompt') or ''}"
        name = f"{name} + {custom_name}"
    return {"name": name, "prompt": prompt}


def protect_placeholders(text: str) -> Tuple[str, Dict[str, str]]:
    """
    Replace placeholders and HTML tags with opaque tokens the model leaves alone.

    Args:
        text (str): The text to process.

    Returns:
        Tuple[str, Dict[str, str]]: The processed text and the token-to-placeholder mapping.
    """
    if not isinstance(text, str):
        raise ValueError("Input text must be a string.")

    placeholder_mapping = {}

    def replace_placeholder(match):
        token = f"__PH_{uuid.uuid4().hex[:12]}__"
        placeholder_mapping[token] = match.group(0)
        return token

    return PLACEHOLDER_PATTERN.sub(replace_placeholder, text), placeholder_mapping


def restore_placeholders(text: str, placeholder_mapping: Dict[str, str]) -> str:
    for token, placeholder in placeholder_mapping.items():
        text = text.replace(token, placeholder)
    return text


def _term_pattern(term: str) -> re.Pattern:
    escaped = re.escape(term.strip())
    if re.search(r'[一-鿿]', term):
        return re.compile(escaped)
    return re.compile(rf'\b{escaped}\b', re.IGNORECASE)


def relevant_glossary_terms(terms: List[Dict[str, Any]], texts: List[str]) -> List[Dict[str, Any]]:
    """Keep only the terms whose English form occurs in one of ``texts``."""
    joined = "\n".join(text or "" for text in texts)
    relevant = []
    for term in terms:
        english = (term.get("english") or "").strip()
        if english and _term_pattern(english).search(joined):
            relevant.append(term)
    return relevant


def build_glossary_section(terms: List[Dict[str, Any]], target_languages: List[str],
                           token_budget: int, model_name: str) -> str:
    """Render glossary terms as a mandatory section, stopping at ``token_budget`` tokens."""
    if not terms:
        return ""
    header = "\n## Mandatory Glossary\nUse these exact translations when the term appears:\n"
    lines = []
    used_tokens = count_tokens(header, model_name)
    for term in terms:
        translations = {lang: text for lang, text in (term.get("translations") or {}).items()
                        if lang in target_languages and text}
        if not translations:
            continue
        line = f"- {term['english']}: {json.dumps(translations, ensure_ascii=False)}"
        line_tokens = count_tokens(line, model_name)
        if used_tokens + line_tokens > token_budget:
            logger.debug("Glossary section truncated at %d of %d terms", len(lines), len(terms))
            break
        lines.append(line)
        used_tokens += line_tokens
    if not lines:
        return ""
    return header + "\n".join(lines)


def build_system_prompt(template: Dict[str, str], source_language: str, target_languages: List[str],
                        glossary_section: str, language_name: Callable[[str], str]) -> str:
    source_name = language_name(source_language)
    target_names = ", ".join(language_name(lang) for lang in target_languages)
    instructions = TARGET_LANGUAGE_PATTERN.sub(target_names, template.get("prompt") or "")
    example = {
        "items": [{
            "id": "row_id",
            "translations": {lang: {"text": "..."} for lang in target_languages},
        }]
    }

    return f"""You are a professional translator.
Source Language: {source_name}
Target Languages: {target_names}

## Instructions
{instructions}
{glossary_section}

## Placeholders
Tokens like `__PH_abc123__` stand for placeholders or markup. Copy them unchanged.

## Output Requirements
Return ONLY a valid JSON object with this exact structure:
{json.dumps(example, indent=2)}

Rules:
- Return only JSON (no markdown, no extra text)
- Include every item id from the request
- Include ALL target languages ({", ".join(target_languages)}) in each translations object"""


def build_user_prompt(items: List[Dict[str, Any]], target_languages: List[str]) -> str:
    payload = [{"id": item["id"], "text": item["text"], "context": item.get("context") or ""} for item in items]
    return (f"Translate the following items to {', '.join(target_languages)}:\n\n"
            f"```json\n{json.dumps(payload, ensure_ascii=False, indent=2)}\n```")


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_PATTERN.sub("", (text or "").strip()).strip()


def parse_batch_response(text: str, items: List[Dict[str, Any]], target_languages: List[str],
                         status: str = STATUS_DRAFT) -> List[Dict[str, Any]]:
    """
    Map a model response back onto the requested items by id.

    Items missing from the response, or returned without any target text, get
    ``status: "error"`` without affecting their siblings.

    Raises:
        ResponseParseError: The response is not JSON or does not match BATCH_RESPONSE_SCHEMA.
    """
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        jsonschema.validate(instance=parsed, schema=BATCH_RESPONSE_SCHEMA)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"AI response is not valid JSON: {e}", raw_response=text) from e
    except jsonschema.ValidationError as e:
        raise ResponseParseError(f"AI response does not match the expected schema: {e.message}",
                                 raw_response=text) from e

    entries = parsed["items"] if isinstance(parsed, dict) else parsed
    by_id = {str(entry["id"]): entry for entry in entries}

    results = []
    for item in items:
        entry = by_id.get(str(item["id"]))
        if entry is None:
            results.append({"id": item["id"], "translations": {}, "status": RESULT_ERROR,
                            "error": "Item missing from AI response"})
            continue

        translations = {}
        for lang in target_languages:
            value = entry["translations"].get(lang)
            text_value = value.get("text", "") if isinstance(value, dict) else (value or "")
            if text_value.strip():
                translations[lang] = {"text": text_value.strip(), "status": status}

        if translations:
            results.append({"id": item["id"], "translations": translations, "status": RESULT_OK})
        else:
            results.append({"id": item["id"], "translations": {}, "status": RESULT_ERROR,
                            "error": "AI response contained no text for this item"})
    return results
