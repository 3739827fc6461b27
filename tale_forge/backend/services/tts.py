import logging

import httpx

from tale_forge.common.errors import AIUnavailableError

logger = logging.getLogger(__name__)

OPENAI_BASE = "https://api.openai.com/v1"


def prepare_narration(text: str) -> str:
    # gentle pacing for kids: add a period if missing and normalize whitespace
    t = " ".join(text.strip().split())
    if t and not t.endswith((".", "!", "?")):
        t += "."
    return t


async def synthesize_tts(
    text: str,
    *,
    api_key: str,
    model: str = "gpt-4o-mini-tts",
    voice: str = "verse",
    fmt: str = "mp3",
    base_url: str = OPENAI_BASE,
) -> bytes:
    """
    Convert segment text -> speech with the OpenAI speech endpoint.
    Returns raw audio bytes (MP3 by default).
    """
    if not api_key:
        raise AIUnavailableError("Narration service is not configured")
    headers = {"Authorization": f"Bearer {api_key}"}
    body = {"model": model, "voice": voice, "input": prepare_narration(text), "response_format": fmt}
    try:
        async with httpx.AsyncClient(timeout=120) as client:
            r = await client.post(f"{base_url.rstrip('/')}/audio/speech", json=body, headers=headers)
            r.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.warning("TTS provider returned %s", e.response.status_code)
        raise AIUnavailableError("Narration service unavailable") from e
    except httpx.TransportError as e:
        logger.warning("TTS provider unreachable: %s", e)
        raise AIUnavailableError("Narration service unavailable") from e
    return r.content  # binary audio
