import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _b(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {
        "1",
        "true",
        "yes",
        "y",
        "on",
    }


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    """
    Read a float from env. Falls back to ``default`` when unset, blank, or
    non-numeric.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    if raw == "" or raw.lower() in {"none", "null"} or raw.startswith("#"):
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_path_opt(name: str) -> Optional[Path]:
    raw = (os.getenv(name) or "").strip()
    return Path(raw) if raw else None


@dataclass
class Settings:
    # --- Parallel fetch ---
    # Global ceiling on in-flight source fetches.  The processor caps this
    # at 20 regardless of what is configured here.
    max_concurrency: int = field(
        default_factory=lambda: _env_int("FEED_MAX_CONCURRENCY", 15)
    )
    # Per-source budget in seconds covering every attempt of one fetch.
    fetch_timeout_secs: float = field(
        default_factory=lambda: _env_float("FEED_FETCH_TIMEOUT_SECS", 15.0)
    )
    max_retries: int = field(default_factory=lambda: _env_int("FEED_MAX_RETRIES", 2))
    retry_backoff_base_secs: float = field(
        default_factory=lambda: _env_float("FEED_RETRY_BACKOFF_BASE_SECS", 1.0)
    )
    user_agent: str = field(
        default_factory=lambda: os.getenv("FEED_USER_AGENT", "FeedSentry/1.0")
    )

    # --- Quality analysis ---
    # Items whose topical relevance (0-1) falls below this floor are dropped
    # before prioritization and emergency screening.
    relevance_floor: float = field(
        default_factory=lambda: _env_float("FEED_RELEVANCE_FLOOR", 0.3)
    )
    duplicate_threshold: float = field(
        default_factory=lambda: _env_float("FEED_DUPLICATE_THRESHOLD", 0.85)
    )

    # --- Monitoring / history ---
    monitor_interval_secs: float = field(
        default_factory=lambda: _env_float("MONITOR_INTERVAL_SECS", 60.0)
    )
    monitor_source_limit: int = field(
        default_factory=lambda: _env_int("MONITOR_SOURCE_LIMIT", 5)
    )
    performance_history_limit: int = field(
        default_factory=lambda: _env_int("PERFORMANCE_HISTORY_LIMIT", 100)
    )
    learning_history_limit: int = field(
        default_factory=lambda: _env_int("LEARNING_HISTORY_LIMIT", 50)
    )

    # --- Emergency response ---
    emergency_response_budget_secs: float = field(
        default_factory=lambda: _env_float("EMERGENCY_RESPONSE_BUDGET_SECS", 30.0)
    )
    emergency_escalation_secs: float = field(
        default_factory=lambda: _env_float("EMERGENCY_ESCALATION_SECS", 15.0)
    )
    # Handled emergencies kept for post-hoc analysis, oldest evicted first
    emergency_history_limit: int = field(
        default_factory=lambda: _env_int("EMERGENCY_HISTORY_LIMIT", 500)
    )
    # When empty the webhook alert channel is not registered; emergencies are
    # still reported through the log channel.
    emergency_webhook_url: str = field(
        default_factory=lambda: os.getenv("EMERGENCY_WEBHOOK_URL", "")
    )

    # --- Logging ---
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_plain: bool = field(default_factory=lambda: _b("LOG_PLAIN", False))
    log_dir: Optional[Path] = field(default_factory=lambda: _env_path_opt("LOG_DIR"))
    # One rotated backup kept per day
    log_rotation_days: int = field(
        default_factory=lambda: _env_int("LOG_ROTATION_DAYS", 7)
    )


_SETTINGS: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    """Return the process-wide settings, loading ``.env`` on first use.

    ``DOTENV_FILE`` selects an alternate env file (e.g. ``.env.staging``).
    Variables already present in the environment are never overridden.
    Pass ``reload=True`` to pick up environment changes made after the
    first call (tests do this after ``monkeypatch.setenv``).
    """
    global _SETTINGS
    if _SETTINGS is None or reload:
        load_dotenv(os.getenv("DOTENV_FILE", ".env"), override=False)
        _SETTINGS = Settings()
    return _SETTINGS
