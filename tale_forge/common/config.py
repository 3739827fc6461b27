from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv


def repo_root() -> Path:
    # <repo>/tale_forge/common/config.py
    return Path(__file__).resolve().parents[2]


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _csv(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


# Stripe price ids per plan/pack, keyed by the id the client sends.
STRIPE_PRICE_ENV = {
    "starter": "STRIPE_PRICE_STARTER",
    "premium": "STRIPE_PRICE_PREMIUM",
    "small": "STRIPE_PRICE_SMALL",
    "medium": "STRIPE_PRICE_MEDIUM",
    "large": "STRIPE_PRICE_LARGE",
    "mega": "STRIPE_PRICE_MEGA",
}
SUBSCRIPTION_PLANS = {"starter", "premium"}
CREDIT_PACKS = {"small", "medium", "large", "mega"}


class Settings:
    """Runtime configuration.

    Every environment variable the service reads is named here. Build one with
    ``Settings.from_env()`` and hand it to ``create_app``; nothing else reads
    ``os.environ``.
    """

    def __init__(
        self,
        *,
        supabase_url: str = "",
        supabase_anon_key: str = "",
        supabase_service_role_key: str = "",
        supabase_storage_bucket: str = "",
        use_local_db: bool = True,
        openai_api_key: str = "",
        openai_base_url: str = "https://api.openai.com/v1",
        story_model: str = "gpt-4o",
        ovh_access_token: str = "",
        ovh_base_url: str = "https://oai.endpoints.kepler.ai.cloud.ovh.net/v1",
        ovh_model: str = "Meta-Llama-3_3-70B-Instruct",
        ai_timeout_seconds: float = 60.0,
        ai_temperature: float = 0.7,
        image_model: str = "dall-e-2",
        image_fallback_models: Optional[List[str]] = None,
        image_size: str = "512x512",
        tts_model: str = "gpt-4o-mini-tts",
        tts_voice: str = "verse",
        stripe_secret_key: str = "",
        stripe_prices: Optional[Dict[str, str]] = None,
        cors_origins: Optional[List[str]] = None,
        media_dir: Optional[Path] = None,
        disable_local_media: bool = False,
        dev_mode: bool = False,
        log_level: str = "INFO",
    ) -> None:
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_anon_key = supabase_anon_key
        self.supabase_service_role_key = supabase_service_role_key
        self.supabase_storage_bucket = supabase_storage_bucket
        self.use_local_db = use_local_db
        self.openai_api_key = openai_api_key
        self.openai_base_url = openai_base_url
        self.story_model = story_model
        self.ovh_access_token = ovh_access_token
        self.ovh_base_url = ovh_base_url
        self.ovh_model = ovh_model
        self.ai_timeout_seconds = ai_timeout_seconds
        self.ai_temperature = ai_temperature
        self.image_model = image_model
        self.image_fallback_models = image_fallback_models or []
        self.image_size = image_size
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.stripe_secret_key = stripe_secret_key
        self.stripe_prices = stripe_prices or {}
        self.cors_origins = cors_origins or ["*"]
        self.media_dir = media_dir or (repo_root() / "media")
        self.disable_local_media = disable_local_media
        self.dev_mode = dev_mode
        self.log_level = log_level

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "Settings":
        load_dotenv(dotenv_path=dotenv_path or repo_root() / ".env")
        env = os.environ
        supabase_url = env.get("SUPABASE_URL", "")
        supabase_anon_key = env.get("SUPABASE_ANON_KEY", "")
        supabase_ready = bool(supabase_url and supabase_anon_key)
        return cls(
            supabase_url=supabase_url,
            supabase_anon_key=supabase_anon_key,
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_storage_bucket=env.get("SUPABASE_STORAGE_BUCKET", ""),
            use_local_db=_flag(env.get("USE_LOCAL_DB"), default=not supabase_ready),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            story_model=env.get("STORY_MODEL", "gpt-4o"),
            ovh_access_token=env.get("OVH_AI_ENDPOINTS_ACCESS_TOKEN", ""),
            ovh_base_url=env.get(
                "OVH_AI_BASE_URL", "https://oai.endpoints.kepler.ai.cloud.ovh.net/v1"
            ),
            ovh_model=env.get("OVH_AI_MODEL", "Meta-Llama-3_3-70B-Instruct"),
            ai_timeout_seconds=float(env.get("AI_TIMEOUT_SECONDS", "60")),
            ai_temperature=float(env.get("AI_TEMPERATURE", "0.7")),
            image_model=env.get("IMAGE_MODEL", "dall-e-2"),
            image_fallback_models=_csv(env.get("IMAGE_FALLBACK_MODELS")),
            image_size=env.get("IMAGE_SIZE", "512x512"),
            tts_model=env.get("TTS_MODEL", "gpt-4o-mini-tts"),
            tts_voice=env.get("TTS_VOICE", "verse"),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
            stripe_prices={
                key: env.get(var, "") for key, var in STRIPE_PRICE_ENV.items()
            },
            cors_origins=_csv(env.get("CORS_ORIGINS")) or ["*"],
            disable_local_media=env.get("DISABLE_LOCAL_MEDIA", "") == "1",
            dev_mode=_flag(env.get("TALE_FORGE_DEV")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    # --- derived flags -------------------------------------------------------
    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def supabase_admin_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def use_supabase_storage(self) -> bool:
        return bool(self.supabase_admin_enabled and self.supabase_storage_bucket)

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    def price_id(self, key: str) -> str:
        return self.stripe_prices.get(key, "")
