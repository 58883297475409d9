"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import dataclasses
import json
import os
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _parse_topic_skills(raw: str | None) -> dict[str, tuple[str, ...]]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"TOPIC_SKILLS is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RuntimeError("TOPIC_SKILLS must be a JSON object of topic -> skills")
    return {
        str(topic).lower(): tuple(str(skill) for skill in skills or [])
        for topic, skills in data.items()
    }


@dataclasses.dataclass(frozen=True)
class Settings:
    """Runtime configuration for the event processing core."""

    database_url: str | None = None

    webhook_auth_token: str | None = None
    webhook_base_url: str | None = None
    webhook_max_body_bytes: int = 64 * 1024
    webhook_rate_limit: str = "600/minute"

    crm_enabled: bool = True
    crm_base_url: str | None = None
    crm_api_token: str | None = None
    crm_timeout_seconds: float = 5.0
    contact_cache_ttl_seconds: int = 3600

    default_queue: str = "general"
    voicemail_queue: str = "voicemail"
    routing_timezone: str = "America/New_York"
    topic_skills: dict[str, tuple[str, ...]] = dataclasses.field(default_factory=dict)

    reservation_timeout_seconds: int = 30
    task_max_wait_seconds: int = 3600
    task_max_rejections: int = 3

    activity_log_max_attempts: int = 5
    activity_log_backoff_seconds: float = 2.0
    activity_log_max_backoff_seconds: float = 300.0
    activity_log_settle_seconds: float = 10.0
    activity_log_poll_seconds: float = 2.0

    background_workers: int = 4

    def skills_for_topic(self, topic: str | None) -> tuple[str, ...]:
        if not topic:
            return ()
        return self.topic_skills.get(topic.lower(), ())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with development defaults."""

    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        webhook_auth_token=os.getenv("WEBHOOK_AUTH_TOKEN") or None,
        webhook_base_url=os.getenv("WEBHOOK_BASE_URL") or None,
        webhook_max_body_bytes=_env_int("WEBHOOK_MAX_BODY_BYTES", 64 * 1024),
        webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "600/minute"),
        crm_enabled=_env_bool("CRM_ENABLED", True),
        crm_base_url=os.getenv("CRM_BASE_URL") or None,
        crm_api_token=os.getenv("CRM_API_TOKEN") or None,
        crm_timeout_seconds=_env_float("CRM_TIMEOUT_SECONDS", 5.0),
        contact_cache_ttl_seconds=_env_int("CONTACT_CACHE_TTL_SECONDS", 3600),
        default_queue=os.getenv("DEFAULT_QUEUE", "general"),
        voicemail_queue=os.getenv("VOICEMAIL_QUEUE", "voicemail"),
        routing_timezone=os.getenv("ROUTING_TIMEZONE", "America/New_York"),
        topic_skills=_parse_topic_skills(os.getenv("TOPIC_SKILLS")),
        reservation_timeout_seconds=_env_int("RESERVATION_TIMEOUT_SECONDS", 30),
        task_max_wait_seconds=_env_int("TASK_MAX_WAIT_SECONDS", 3600),
        task_max_rejections=_env_int("TASK_MAX_REJECTIONS", 3),
        activity_log_max_attempts=_env_int("ACTIVITY_LOG_MAX_ATTEMPTS", 5),
        activity_log_backoff_seconds=_env_float("ACTIVITY_LOG_BACKOFF_SECONDS", 2.0),
        activity_log_max_backoff_seconds=_env_float(
            "ACTIVITY_LOG_MAX_BACKOFF_SECONDS", 300.0
        ),
        activity_log_settle_seconds=_env_float("ACTIVITY_LOG_SETTLE_SECONDS", 10.0),
        activity_log_poll_seconds=_env_float("ACTIVITY_LOG_POLL_SECONDS", 2.0),
        background_workers=_env_int("BACKGROUND_WORKERS", 4),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
