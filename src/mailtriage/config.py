"""Process settings loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from mailtriage.exceptions import ConfigError
from mailtriage.llm.client import DEFAULT_MODEL

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

CHECKPOINT_BATCH = "batch"
CHECKPOINT_CONTIGUOUS = "contiguous"


@dataclass
class Settings:
    """Runtime configuration for the triage service.

    Poll and push delivery are mutually exclusive: with ``push_enabled`` the
    poll loop is never started and the push receiver is the only sync path.
    """

    google_client_id: str
    google_client_secret: str
    db_path: str = "mailtriage.db"
    google_token_uri: str = GOOGLE_TOKEN_URI
    anthropic_api_key: str | None = None
    llm_model: str = DEFAULT_MODEL
    check_interval_minutes: int = 5
    push_enabled: bool = False
    pubsub_verification_token: str = ""
    pubsub_topic: str = ""
    checkpoint_mode: str = CHECKPOINT_BATCH
    serialize_label_creation: bool = True
    shutdown_grace_seconds: float = 30.0
    body_limit: int = 2000
    past_slug_limit: int = 5
    log_level: str = "INFO"
    debug_prompts: bool = False

    @classmethod
    def from_env(cls, environ: dict | None = None) -> Settings:
        env = os.environ if environ is None else environ

        client_id = env.get("GOOGLE_CLIENT_ID", "")
        client_secret = env.get("GOOGLE_CLIENT_SECRET", "")
        if not client_id:
            raise ConfigError("GOOGLE_CLIENT_ID is required")
        if not client_secret:
            raise ConfigError("GOOGLE_CLIENT_SECRET is required")

        settings = cls(
            google_client_id=client_id,
            google_client_secret=client_secret,
            db_path=env.get("MAILTRIAGE_DB_PATH", "mailtriage.db"),
            google_token_uri=env.get("GOOGLE_TOKEN_URI", GOOGLE_TOKEN_URI),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
            llm_model=env.get("MAILTRIAGE_LLM_MODEL", DEFAULT_MODEL),
            check_interval_minutes=_get_int(env, "GMAIL_CHECK_INTERVAL", 5),
            push_enabled=_get_bool(env, "PUSH_NOTIFICATIONS_ENABLED", False),
            pubsub_verification_token=env.get("PUBSUB_VERIFICATION_TOKEN", ""),
            pubsub_topic=env.get("PUBSUB_TOPIC", ""),
            checkpoint_mode=env.get("MAILTRIAGE_CHECKPOINT_MODE", CHECKPOINT_BATCH),
            serialize_label_creation=_get_bool(env, "MAILTRIAGE_SERIALIZE_LABELS", True),
            shutdown_grace_seconds=float(_get_int(env, "MAILTRIAGE_SHUTDOWN_GRACE", 30)),
            body_limit=_get_int(env, "MAILTRIAGE_BODY_LIMIT", 2000),
            past_slug_limit=_get_int(env, "MAILTRIAGE_PAST_SLUG_LIMIT", 5),
            log_level=env.get("MAILTRIAGE_LOG_LEVEL", "INFO").upper(),
            debug_prompts=_get_bool(env, "MAILTRIAGE_DEBUG_PROMPTS", False),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.checkpoint_mode not in (CHECKPOINT_BATCH, CHECKPOINT_CONTIGUOUS):
            raise ConfigError(
                f"MAILTRIAGE_CHECKPOINT_MODE must be '{CHECKPOINT_BATCH}' or "
                f"'{CHECKPOINT_CONTIGUOUS}', got '{self.checkpoint_mode}'"
            )
        if self.check_interval_minutes <= 0:
            raise ConfigError("GMAIL_CHECK_INTERVAL must be a positive number of minutes")
        if self.push_enabled and not self.pubsub_verification_token:
            raise ConfigError(
                "PUBSUB_VERIFICATION_TOKEN is required when PUSH_NOTIFICATIONS_ENABLED=true"
            )
        if self.push_enabled and not self.pubsub_topic:
            raise ConfigError("PUBSUB_TOPIC is required when PUSH_NOTIFICATIONS_ENABLED=true")


def _get_int(env, key: str, default: int) -> int:
    value = env.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{value}'") from None


def _get_bool(env, key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
