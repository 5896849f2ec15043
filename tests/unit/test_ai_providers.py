import asyncio
import json
from unittest.mock import patch, MagicMock, AsyncMock

import httpx
import pytest
from aiolimiter import AsyncLimiter
from openai import APIConnectionError, BadRequestError, RateLimitError

from wordflow.ai_providers import (
    BatchOptions,
    DryRunProvider,
    OpenAIChatProvider,
    ProviderKind,
    create_provider,
    resolve_provider_kind,
)
from wordflow.errors import (
    ProviderNotConfiguredError,
    ResponseParseError,
    TranslationError,
    TranslationRateLimitedError,
)

TEMPLATE = {"name": "Default Template", "prompt": "Translate into {{targetLanguage}}."}
REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def completion(content):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


def items_response(items, langs=("my",)):
    return completion(json.dumps({"items": [
        {"id": item["id"], "translations": {lang: {"text": f"{lang.upper()} {item['text']}"} for lang in langs}}
        for item in items
    ]}))


def make_client(*side_effect):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(side_effect))
    return client


def make_provider(client, kind=ProviderKind.OPENAI, max_retries=3):
    return OpenAIChatProvider(kind, client, "gpt-4o-mini", asyncio.Semaphore(1), AsyncLimiter(100, 60),
                              max_retries=max_retries, base_delay=0.01)


def rate_limit_error(retry_after=None):
    headers = {"retry-after": retry_after} if retry_after else {}
    return RateLimitError("Too many requests", response=httpx.Response(429, headers=headers, request=REQUEST),
                          body=None)


ITEMS = [{"id": "r1", "text": "Save"}, {"id": "r2", "text": "Cancel"}]


class TestOpenAIChatProvider:
    @pytest.mark.asyncio
    async def test_generate_batch_maps_results_by_id(self):
        client = make_client(items_response(ITEMS, ("my", "zh")))
        provider = make_provider(client)

        results = await provider.generate_batch(ITEMS, BatchOptions(["my", "zh"], TEMPLATE))

        assert [r["id"] for r in results] == ["r1", "r2"]
        assert results[0]["translations"]["my"] == {"text": "MY Save", "status": "draft"}
        assert results[1]["translations"]["zh"]["text"] == "ZH Cancel"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.3
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_ilmuchat_requests_omit_response_format(self):
        client = make_client(items_response(ITEMS))
        provider = make_provider(client, kind=ProviderKind.ILMUCHAT)

        await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        assert "response_format" not in client.chat.completions.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_placeholders_survive_translation(self):
        async def echo(**kwargs):
            payload = json.loads(kwargs["messages"][1]["content"].split("```json\n", 1)[1].rsplit("\n```", 1)[0])
            assert "{name}" not in payload[0]["text"]
            return completion(json.dumps([{"id": p["id"], "translations": {"my": f"Hai {p['text']}"}}
                                          for p in payload]))

        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=echo)
        provider = make_provider(client)

        results = await provider.generate_batch([{"id": "r1", "text": "{name}"}], BatchOptions(["my"], TEMPLATE))

        assert results[0]["translations"]["my"]["text"] == "Hai {name}"

    @pytest.mark.asyncio
    async def test_relevant_glossary_terms_reach_the_system_prompt(self):
        client = make_client(items_response(ITEMS))
        provider = make_provider(client)
        terms = [{"english": "Save", "translations": {"my": "Simpan"}},
                 {"english": "Delete", "translations": {"my": "Padam"}}]

        with patch("wordflow.prompts.count_tokens", return_value=1):
            await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE, glossary_terms=terms))

        system_prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "Simpan" in system_prompt
        assert "Padam" not in system_prompt

    @pytest.mark.asyncio
    async def test_missing_client_is_not_configured(self):
        provider = make_provider(None)

        with pytest.raises(ProviderNotConfiguredError):
            await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

    @pytest.mark.asyncio
    async def test_template_without_prompt_is_rejected(self):
        provider = make_provider(make_client())

        with pytest.raises(TranslationError):
            await provider.generate_batch(ITEMS, BatchOptions(["my"], {"name": "Empty", "prompt": ""}))

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self):
        client = make_client()
        provider = make_provider(client)

        assert await provider.generate_batch([], BatchOptions(["my"], TEMPLATE)) == []
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_unparseable_response_is_retried(self):
        client = make_client(completion("Sure! Here you go"), items_response(ITEMS))
        provider = make_provider(client)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            results = await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        assert client.chat.completions.create.await_count == 2
        mock_sleep.assert_awaited_once()
        assert results[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_parse_error_after_last_attempt_propagates(self):
        client = make_client(*[completion("nope")] * 2)
        provider = make_provider(client, max_retries=2)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ResponseParseError):
                await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        client = make_client(rate_limit_error("2"), items_response(ITEMS))
        provider = make_provider(client)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        mock_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_raises_distinct_error(self):
        client = make_client(*[rate_limit_error() for _ in range(3)])
        provider = make_provider(client, max_retries=3)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(TranslationRateLimitedError):
                await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        assert client.chat.completions.create.await_count == 3
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        error = BadRequestError("bad request", response=httpx.Response(400, request=REQUEST), body=None)
        client = make_client(error)
        provider = make_provider(client)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(TranslationError) as exc_info:
                await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        assert not isinstance(exc_info.value, TranslationRateLimitedError)
        assert client.chat.completions.create.await_count == 1
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried_then_raised(self):
        client = make_client(*[APIConnectionError(request=REQUEST) for _ in range(2)])
        provider = make_provider(client, max_retries=2)

        with patch("wordflow.ai_providers.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TranslationError, match="Could not reach"):
                await provider.generate_batch(ITEMS, BatchOptions(["my"], TEMPLATE))

        assert client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_check(self):
        client = make_client(completion("OK"))

        assert await make_provider(client).test_connection() == {"success": True, "message": "OK"}
        assert (await make_provider(None).test_connection())["success"] is False


class TestDryRunProvider:
    @pytest.mark.asyncio
    async def test_tags_text_with_language(self):
        results = await DryRunProvider().generate_batch(ITEMS, BatchOptions(["my", "zh"], TEMPLATE))

        assert results[0]["translations"] == {"my": {"text": "[my] Save", "status": "draft"},
                                              "zh": {"text": "[zh] Save", "status": "draft"}}
        assert all(r["status"] == "success" for r in results)


class TestProviderFactory:
    def test_resolve_provider_kind(self):
        assert resolve_provider_kind("ILMUCHAT") is ProviderKind.ILMUCHAT
        assert resolve_provider_kind("gemini") is ProviderKind.OPENAI
        assert resolve_provider_kind(None, ProviderKind.DRY_RUN) is ProviderKind.DRY_RUN

    def test_creates_provider_per_kind(self, app_config):
        app_config.openai_client = MagicMock()

        dry_run = create_provider(ProviderKind.DRY_RUN, app_config, asyncio.Semaphore(1), AsyncLimiter(1, 60))
        openai_provider = create_provider("openai", app_config, asyncio.Semaphore(1), AsyncLimiter(1, 60))
        ilmuchat = create_provider(ProviderKind.ILMUCHAT, app_config, asyncio.Semaphore(1), AsyncLimiter(1, 60))

        assert isinstance(dry_run, DryRunProvider)
        assert openai_provider.client is app_config.openai_client
        assert openai_provider.model_name == "gpt-4o-mini"
        assert ilmuchat.kind is ProviderKind.ILMUCHAT
        assert ilmuchat.client is None
        assert ilmuchat.model_name == "ilmu-text"
