# backend/adapters/core_adapter.py
from __future__ import annotations

import base64
import logging
import re
from typing import Dict, List, Optional, Protocol, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from tale_forge.backend.adapters.choice_parser import (
    GENERIC_CHOICES,
    ParsedSegment,
    parse_segment,
)
from tale_forge.backend.adapters.prompt_builder import (
    StoryContext,
    build_ending_messages,
    build_messages,
    calculate_max_tokens,
    ending_max_tokens,
)
from tale_forge.common.config import Settings
from tale_forge.common.errors import AIUnavailableError, ProviderError
from tale_forge.common.models import GeneratedSegment

logger = logging.getLogger(__name__)

SAFE_IMAGE_SUFFIX = (
    "Children's book illustration. Family-friendly, gentle, and wholesome. "
    "Fully clothed characters, modest outfits, and a cheerful tone. "
    "No adult themes, no graphic content, no weapons, no substances. "
    "Non-photorealistic, cartoon or watercolor style."
)

BAD_IMAGE_TERMS = [
    "nude",
    "nudity",
    "naked",
    "lingerie",
    "bikini",
    "swimsuit",
    "underwear",
    "sexy",
    "blood",
    "gore",
    "weapon",
    "gun",
    "knife",
    "kill",
    "murder",
    "alcohol",
    "drug",
    "smoking",
    "cigarette",
]

ALLOWED_SIZES_DALLE2 = {"256x256", "512x512", "1024x1024"}
ALLOWED_SIZES_DALLE3 = {"1024x1024", "1792x1024", "1024x1792"}
CONTENT_POLICY_MARKERS = ["content_policy", "safety", "rejected", "violation"]
SAFE_GENERIC_PROMPT = (
    "A cheerful children's book illustration of friendly animal characters "
    "wearing colorful clothes, playing in a sunny garden. Soft watercolor style. No text."
)


# --- Text providers ----------------------------------------------------------
class ChatProvider(Protocol):
    name: str

    async def generate(
        self, messages: List[Dict[str, str]], *, max_tokens: int, temperature: float
    ) -> str: ...


class OpenAIChatProvider:
    """Any OpenAI-compatible ``/chat/completions`` endpoint.

    SDK retries are off: one call per request, the orchestrator owns fallback.
    """

    def __init__(
        self,
        name: str,
        *,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.name = name
        self.model = model
        self._client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )

    async def generate(
        self, messages: List[Dict[str, str]], *, max_tokens: int, temperature: float
    ) -> str:
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except APITimeoutError as e:
            raise ProviderError(self.name, "request timed out") from e
        except APIStatusError as e:
            raise ProviderError(self.name, f"API error ({e.status_code})") from e
        except APIConnectionError as e:
            raise ProviderError(self.name, "connection failed") from e
        except APIError as e:
            raise ProviderError(self.name, f"API error: {e.message}") from e

        choices = getattr(resp, "choices", None) or []
        content = (choices[0].message.content or "").strip() if choices else ""
        if not content:
            raise ProviderError(self.name, "empty completion")
        return content


def build_text_providers(settings: Settings) -> List[ChatProvider]:
    """Primary (OpenAI) then fallback (OVH AI Endpoints), skipping unconfigured ones."""
    providers: List[ChatProvider] = []
    if settings.openai_api_key:
        providers.append(
            OpenAIChatProvider(
                "openai",
                api_key=settings.openai_api_key,
                model=settings.story_model,
                base_url=settings.openai_base_url,
                timeout=settings.ai_timeout_seconds,
            )
        )
    if settings.ovh_access_token:
        providers.append(
            OpenAIChatProvider(
                "ovh",
                api_key=settings.ovh_access_token,
                model=settings.ovh_model,
                base_url=settings.ovh_base_url,
                timeout=settings.ai_timeout_seconds,
            )
        )
    return providers


class ProviderOrchestrator:
    """Try each provider once, in order, and stop at the first parseable reply.

    A reply that cannot be split into a body and three choices counts as a
    failure for that provider. If every provider fails but at least one gave
    narrative text, that text is returned with the generic choices.
    """

    def __init__(self, providers: Sequence[ChatProvider], *, temperature: float = 0.7):
        self.providers = list(providers)
        self.temperature = temperature

    async def generate(self, ctx: StoryContext) -> GeneratedSegment:
        if not self.providers:
            raise AIUnavailableError("AI service unavailable", details={"reason": "no providers configured"})

        messages = build_messages(ctx)
        max_tokens = calculate_max_tokens(ctx.target_age)
        salvage: Optional[GeneratedSegment] = None
        failures: List[str] = []

        for provider in self.providers:
            try:
                raw = await provider.generate(
                    messages, max_tokens=max_tokens, temperature=self.temperature
                )
            except ProviderError as e:
                logger.warning("Provider %s failed: %s", provider.name, e)
                failures.append(provider.name)
                continue
            except Exception:
                logger.exception("Provider %s raised unexpectedly", provider.name)
                failures.append(provider.name)
                continue

            logger.debug("Provider %s raw reply: %.200s", provider.name, raw)
            parsed = parse_segment(raw)
            if isinstance(parsed, ParsedSegment):
                logger.info("Segment generated by %s", provider.name)
                return GeneratedSegment(
                    content=parsed.body, choices=parsed.choices, provider=provider.name
                )

            logger.warning("Provider %s reply could not be parsed", provider.name)
            failures.append(provider.name)
            if salvage is None and parsed.body:
                salvage = GeneratedSegment(
                    content=parsed.body,
                    choices=list(GENERIC_CHOICES),
                    provider=provider.name,
                    used_fallback_choices=True,
                )

        if salvage is not None:
            logger.info("Using generic choices with text from %s", salvage.provider)
            return salvage

        logger.error("All AI providers failed: %s", ", ".join(failures))
        raise AIUnavailableError(
            "AI service unavailable", details={"providers_tried": failures}
        )

    async def generate_ending(self, ctx: StoryContext, story_so_far: List[str]) -> GeneratedSegment:
        """Closing text from the first provider that returns any. Endings carry no choices."""
        if not self.providers:
            raise AIUnavailableError("AI service unavailable", details={"reason": "no providers configured"})

        messages = build_ending_messages(ctx, story_so_far)
        max_tokens = ending_max_tokens(ctx.words_per_chapter)
        failures: List[str] = []

        for provider in self.providers:
            try:
                raw = await provider.generate(
                    messages, max_tokens=max_tokens, temperature=self.temperature
                )
            except ProviderError as e:
                logger.warning("Provider %s failed: %s", provider.name, e)
                failures.append(provider.name)
                continue
            except Exception:
                logger.exception("Provider %s raised unexpectedly", provider.name)
                failures.append(provider.name)
                continue

            # some models answer in the segment JSON format anyway
            parsed = parse_segment(raw)
            text = parsed.body
            if not text and not raw.lstrip().startswith("{"):
                text = raw.strip()
            if text:
                logger.info("Ending generated by %s", provider.name)
                return GeneratedSegment(content=text, choices=[], provider=provider.name)
            failures.append(provider.name)

        logger.error("All AI providers failed for ending: %s", ", ".join(failures))
        raise AIUnavailableError(
            "AI service unavailable", details={"providers_tried": failures}
        )


# --- Images ------------------------------------------------------------------
def _sanitize_image_prompt(prompt: str) -> str:
    text = prompt
    for term in BAD_IMAGE_TERMS:
        text = re.sub(rf"\b{re.escape(term)}\b", "", text, flags=re.IGNORECASE)
    text = " ".join(text.split())
    return f"{text}. {SAFE_IMAGE_SUFFIX}"


def _is_content_policy_error(err: Exception) -> bool:
    msg = str(err).lower()
    return any(marker in msg for marker in CONTENT_POLICY_MARKERS)


def _normalize_image_size(model: str, size: str) -> str:
    size_norm = (size or "").strip().lower()
    model_norm = (model or "").strip().lower()
    if model_norm == "dall-e-2":
        return size_norm if size_norm in ALLOWED_SIZES_DALLE2 else "1024x1024"
    if model_norm == "dall-e-3":
        return size_norm if size_norm in ALLOWED_SIZES_DALLE3 else "1024x1024"
    return size_norm or "1024x1024"


def image_prompt_for_segment(content: str, *, genre: str = "", style: str = "") -> str:
    prompt = f"Kids book illustration of: {content[:200]}"
    if genre:
        prompt += f" A {genre} story."
    if style:
        prompt += f" Style: {style}."
    return prompt


class ImageGenerator:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "dall-e-2",
        fallback_models: Sequence[str] = (),
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.models: List[str] = []
        for m in [model, *fallback_models, "dall-e-2"]:
            if m and m not in self.models:
                self.models.append(m)

    async def _download(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.get(url)
            resp.raise_for_status()
        return resp.content

    async def _call(self, model: str, prompt: str, size: str) -> bytes:
        img = await self._client.images.generate(model=model, prompt=prompt, size=size)
        if img.data:
            data0 = img.data[0]
            if getattr(data0, "b64_json", None):
                return base64.b64decode(data0.b64_json)
            if getattr(data0, "url", None):
                return await self._download(data0.url)
        raise RuntimeError(f"Image API returned no data for model '{model}'.")

    async def generate(self, image_prompt: str, *, size: str = "512x512") -> bytes:
        """PNG bytes for the first model that produces an image."""
        safe_prompt = _sanitize_image_prompt(image_prompt)
        last_error: Optional[Exception] = None
        for model in self.models:
            size_for_model = _normalize_image_size(model, size)
            try:
                return await self._call(model, safe_prompt, size_for_model)
            except APIStatusError as e:
                if _is_content_policy_error(e):
                    try:
                        return await self._call(model, SAFE_GENERIC_PROMPT, size_for_model)
                    except (APIError, httpx.HTTPError, RuntimeError) as e2:
                        last_error = e2
                        continue
                last_error = e
            except (APIError, httpx.HTTPError, RuntimeError) as e:
                last_error = e
            logger.warning("Image model %s failed: %s", model, last_error)

        raise AIUnavailableError("Image generation failed") from last_error
