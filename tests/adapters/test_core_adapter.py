"""Tests for provider fallback, the OpenAI-compatible client, and images."""

import base64
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError, APITimeoutError, BadRequestError

from conftest import GOOD_REPLY, PROSE_REPLY, make_provider
from tale_forge.backend.adapters.choice_parser import GENERIC_CHOICES
from tale_forge.backend.adapters.core_adapter import (
    ImageGenerator,
    OpenAIChatProvider,
    ProviderOrchestrator,
    build_text_providers,
    image_prompt_for_segment,
)
from tale_forge.backend.adapters.prompt_builder import StoryContext
from tale_forge.common.config import Settings
from tale_forge.common.errors import AIUnavailableError, ProviderError

CTX = StoryContext(title="The Lost Kite", genre="adventure", target_age="7-9")
REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_primary_success(self) -> None:
        primary, secondary = make_provider("openai"), make_provider("ovh")
        result = await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert result.provider == "openai"
        assert len(result.choices) == 3
        assert result.used_fallback_choices is False
        secondary.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_called_exactly_once(self) -> None:
        primary = make_provider("openai", error=ProviderError("openai", "timed out"))
        secondary = make_provider("ovh")
        third = make_provider("spare")
        result = await ProviderOrchestrator([primary, secondary, third]).generate(CTX)
        assert result.provider == "ovh"
        primary.generate.assert_awaited_once()
        secondary.generate.assert_awaited_once()
        third.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_both_fail(self) -> None:
        primary = make_provider("openai", error=ProviderError("openai", "500"))
        secondary = make_provider("ovh", error=ProviderError("ovh", "500"))
        with pytest.raises(AIUnavailableError) as exc_info:
            await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert exc_info.value.details == {"providers_tried": ["openai", "ovh"]}
        primary.generate.assert_awaited_once()
        secondary.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_still_falls_back(self) -> None:
        primary = make_provider("openai", error=RuntimeError("boom"))
        secondary = make_provider("ovh")
        result = await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert result.provider == "ovh"
        secondary.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unparseable_primary_falls_back(self) -> None:
        primary = make_provider("openai", reply=PROSE_REPLY)
        secondary = make_provider("ovh")
        result = await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert result.provider == "ovh"
        assert result.used_fallback_choices is False

    @pytest.mark.asyncio
    async def test_generic_choices_when_nothing_parses(self) -> None:
        primary = make_provider("openai", reply=PROSE_REPLY)
        secondary = make_provider("ovh", error=ProviderError("ovh", "connection failed"))
        result = await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert result.content == PROSE_REPLY
        assert result.choices == GENERIC_CHOICES
        assert len(result.choices) == 3
        assert result.used_fallback_choices is True

    @pytest.mark.asyncio
    async def test_truncated_json_from_every_provider(self) -> None:
        cut_off = (
            '{"story_text": "Pip the fox found a tiny glowing door under the old oak tree.", '
            '"choices": ["Knock on the'
        )
        primary = make_provider("openai", reply=cut_off)
        secondary = make_provider("ovh", reply=cut_off)
        result = await ProviderOrchestrator([primary, secondary]).generate(CTX)
        assert result.content == "Pip the fox found a tiny glowing door under the old oak tree."
        assert result.choices == GENERIC_CHOICES
        assert result.provider == "openai"
        assert result.used_fallback_choices is True
        secondary.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_providers(self) -> None:
        with pytest.raises(AIUnavailableError):
            await ProviderOrchestrator([]).generate(CTX)

    @pytest.mark.asyncio
    async def test_passes_token_limit(self) -> None:
        primary = make_provider("openai")
        await ProviderOrchestrator([primary], temperature=0.5).generate(CTX)
        kwargs = primary.generate.call_args.kwargs
        assert kwargs == {"max_tokens": 600, "temperature": 0.5}


class TestEnding:
    @pytest.mark.asyncio
    async def test_plain_text_ending(self) -> None:
        primary = make_provider("openai", reply="  Pip waved goodbye. THE END.  ")
        result = await ProviderOrchestrator([primary]).generate_ending(CTX, ["Pip found a door."])
        assert result.content == "Pip waved goodbye. THE END."
        assert result.choices == []
        assert result.provider == "openai"
        messages = primary.generate.call_args.args[0]
        assert "Pip found a door." in messages[1]["content"]
        assert primary.generate.call_args.kwargs["max_tokens"] == 195

    @pytest.mark.asyncio
    async def test_json_reply_uses_story_text(self) -> None:
        primary = make_provider("openai")
        result = await ProviderOrchestrator([primary]).generate_ending(CTX, ["Pip found a door."])
        assert result.content == "Pip the fox found a tiny glowing door under the old oak tree."
        assert result.choices == []

    @pytest.mark.asyncio
    async def test_falls_back_then_gives_up(self) -> None:
        primary = make_provider("openai", error=ProviderError("openai", "500"))
        secondary = make_provider("ovh", reply='{"choices": ["Knock')
        with pytest.raises(AIUnavailableError) as exc_info:
            await ProviderOrchestrator([primary, secondary]).generate_ending(CTX, ["Pip found a door."])
        assert exc_info.value.details == {"providers_tried": ["openai", "ovh"]}
        secondary.generate.assert_awaited_once()


def test_build_text_providers() -> None:
    assert build_text_providers(Settings()) == []
    providers = build_text_providers(Settings(openai_api_key="sk-a", ovh_access_token="ovh-b"))
    assert [p.name for p in providers] == ["openai", "ovh"]
    assert providers[1].model == "Meta-Llama-3_3-70B-Instruct"


# ---------------------------------------------------------------------------
# OpenAIChatProvider
# ---------------------------------------------------------------------------

def _client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    return client


def _completion(content: str) -> MagicMock:
    resp = MagicMock()
    resp.choices = [MagicMock(message=MagicMock(content=content))]
    return resp


class TestOpenAIChatProvider:
    @pytest.mark.asyncio
    async def test_returns_content(self) -> None:
        create = AsyncMock(return_value=_completion(f"  {GOOD_REPLY}  "))
        provider = OpenAIChatProvider("openai", api_key="k", model="gpt-4o", client=_client(create))
        text = await provider.generate([{"role": "user", "content": "hi"}], max_tokens=600, temperature=0.7)
        assert text == GOOD_REPLY
        assert create.call_args.kwargs["model"] == "gpt-4o"
        assert create.call_args.kwargs["max_tokens"] == 600

    @pytest.mark.parametrize(
        "error",
        [
            APITimeoutError(request=REQUEST),
            APIConnectionError(request=REQUEST),
            BadRequestError(
                "bad", response=httpx.Response(400, request=REQUEST), body=None
            ),
        ],
    )
    @pytest.mark.asyncio
    async def test_errors_become_provider_error(self, error: Exception) -> None:
        create = AsyncMock(side_effect=error)
        provider = OpenAIChatProvider("ovh", api_key="k", model="m", client=_client(create))
        with pytest.raises(ProviderError) as exc_info:
            await provider.generate([], max_tokens=10, temperature=0.1)
        assert exc_info.value.provider == "ovh"

    @pytest.mark.asyncio
    async def test_empty_completion(self) -> None:
        create = AsyncMock(return_value=_completion("   "))
        provider = OpenAIChatProvider("openai", api_key="k", model="m", client=_client(create))
        with pytest.raises(ProviderError):
            await provider.generate([], max_tokens=10, temperature=0.1)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def _image_client(side_effect) -> MagicMock:
    client = MagicMock()
    client.images.generate = AsyncMock(side_effect=side_effect)
    return client


def _image(data: bytes) -> MagicMock:
    img = MagicMock()
    img.data = [MagicMock(b64_json=base64.b64encode(data).decode())]
    return img


class TestImageGenerator:
    def test_prompt_for_segment(self) -> None:
        prompt = image_prompt_for_segment("Leo flies a red kite.", genre="adventure", style="Watercolor")
        assert prompt == "Kids book illustration of: Leo flies a red kite. A adventure story. Style: Watercolor."

    @pytest.mark.asyncio
    async def test_sanitizes_and_returns_bytes(self) -> None:
        client = _image_client([_image(b"png-bytes")])
        gen = ImageGenerator(api_key="k", model="dall-e-2", client=client)
        data = await gen.generate("A pirate with a knife", size="512x512")
        assert data == b"png-bytes"
        kwargs = client.images.generate.call_args.kwargs
        assert "knife" not in kwargs["prompt"]
        assert "Children's book illustration" in kwargs["prompt"]
        assert kwargs["size"] == "512x512"

    @pytest.mark.asyncio
    async def test_content_policy_retries_with_safe_prompt(self) -> None:
        policy = BadRequestError(
            "Your request was rejected by the content_policy",
            response=httpx.Response(400, request=REQUEST),
            body=None,
        )
        client = _image_client([policy, _image(b"safe")])
        gen = ImageGenerator(api_key="k", model="dall-e-2", client=client)
        assert await gen.generate("A castle") == b"safe"
        assert "friendly animal characters" in client.images.generate.call_args.kwargs["prompt"]

    @pytest.mark.asyncio
    async def test_all_models_fail(self) -> None:
        error = APIConnectionError(request=REQUEST)
        client = _image_client([error, error])
        gen = ImageGenerator(api_key="k", model="dall-e-3", client=client)
        with pytest.raises(AIUnavailableError):
            await gen.generate("A castle", size="1024x1024")
        assert client.images.generate.await_count == 2
