from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("WRC_DB_PATH", "wrc.db")
    poll_interval_s: float = _env_float("WRC_POLL_INTERVAL_S", 5.0)
    workers: int = _env_int("WRC_WORKERS", 4)
    docker_network: str = os.getenv("WRC_DOCKER_NETWORK", "wrc")

    # Runtime calls
    runtime_timeout_s: float = _env_float("WRC_RUNTIME_TIMEOUT_S", 30.0)
    backoff_base_s: float = _env_float("WRC_BACKOFF_BASE_S", 1.0)
    backoff_cap_s: float = _env_float("WRC_BACKOFF_CAP_S", 60.0)
    max_create_retries: int = _env_int("WRC_MAX_CREATE_RETRIES", 5)

    # Health
    probe_failure_threshold: int = _env_int("WRC_PROBE_FAILURE_THRESHOLD", 3)
    probe_failure_window_s: float = _env_float("WRC_PROBE_FAILURE_WINDOW_S", 30.0)
    # How long a Failed instance may stay failed before it is replaced.
    failed_grace_s: float = _env_float("WRC_FAILED_GRACE_S", 30.0)

    # Rollouts / store
    rollout_stall_s: float = _env_float("WRC_ROLLOUT_STALL_S", 600.0)
    revision_history_limit: int = _env_int("WRC_REVISION_HISTORY_LIMIT", 10)
    conflict_retries: int = _env_int("WRC_CONFLICT_RETRIES", 5)

    # Email alerting (optional)
    enable_email: bool = _env_bool("WRC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("WRC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("WRC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("WRC_SMTP_USER")
    smtp_password: str | None = os.getenv("WRC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("WRC_EMAIL_FROM")
    email_to: str | None = os.getenv("WRC_EMAIL_TO")


settings = Settings()
