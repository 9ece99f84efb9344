from pathlib import Path

from feedsentry.config import Settings, get_settings


def test_defaults(monkeypatch):
    for name in (
        "FEED_MAX_CONCURRENCY",
        "FEED_FETCH_TIMEOUT_SECS",
        "FEED_RELEVANCE_FLOOR",
        "MONITOR_INTERVAL_SECS",
        "PERFORMANCE_HISTORY_LIMIT",
        "EMERGENCY_WEBHOOK_URL",
        "LOG_DIR",
        "LOG_ROTATION_DAYS",
        "EMERGENCY_HISTORY_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.max_concurrency == 15
    assert s.fetch_timeout_secs == 15.0
    assert s.relevance_floor == 0.3
    assert s.monitor_interval_secs == 60.0
    assert s.monitor_source_limit == 5
    assert s.performance_history_limit == 100
    assert s.learning_history_limit == 50
    assert s.emergency_response_budget_secs == 30.0
    assert s.emergency_escalation_secs == 15.0
    assert s.emergency_webhook_url == ""
    assert s.emergency_history_limit == 500
    assert s.log_dir is None
    assert s.log_rotation_days == 7


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("FEED_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("FEED_RELEVANCE_FLOOR", "0.45")
    monkeypatch.setenv("LOG_PLAIN", "yes")
    monkeypatch.setenv("LOG_DIR", "/tmp/feedsentry-logs")
    s = Settings()
    assert s.max_concurrency == 8
    assert s.relevance_floor == 0.45
    assert s.log_plain is True
    assert s.log_dir == Path("/tmp/feedsentry-logs")


def test_bad_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("FEED_MAX_RETRIES", "lots")
    monkeypatch.setenv("FEED_FETCH_TIMEOUT_SECS", "  ")
    s = Settings()
    assert s.max_retries == 2
    assert s.fetch_timeout_secs == 15.0


def test_get_settings_is_cached_until_reload(monkeypatch):
    monkeypatch.setenv("MONITOR_SOURCE_LIMIT", "3")
    first = get_settings()
    monkeypatch.setenv("MONITOR_SOURCE_LIMIT", "7")
    assert get_settings() is first
    assert get_settings(reload=True).monitor_source_limit == 7


def test_dotenv_does_not_override_env(monkeypatch, tmp_path):
    env_file = tmp_path / "test.env"
    env_file.write_text("FEED_USER_AGENT=FromFile/1.0\nMONITOR_SOURCE_LIMIT=9\n")
    monkeypatch.setenv("DOTENV_FILE", str(env_file))
    monkeypatch.setenv("FEED_USER_AGENT", "FromEnv/2.0")
    monkeypatch.delenv("MONITOR_SOURCE_LIMIT", raising=False)
    s = get_settings(reload=True)
    assert s.user_agent == "FromEnv/2.0"
    assert s.monitor_source_limit == 9
