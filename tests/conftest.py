import logging

import pytest

from feedsentry import config
from feedsentry.source_registry import SourceRegistry
from tests.fixtures import FakeFetcher, make_source


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep a developer's .env and cached settings out of every test."""
    monkeypatch.setenv("DOTENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setattr(config, "_SETTINGS", None)
    yield
    config._SETTINGS = None


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def forex_sources():
    return [
        make_source("reuters_fx", "https://www.reuters.com/markets/currencies/rss",
                    category="forex", priority=9, success_rate=0.95),
        make_source("fxstreet", "https://www.fxstreet.com/rss/news",
                    category="forex", priority=7, success_rate=0.9),
        make_source("local_blog", "https://blog.example.org/feed",
                    category="news", priority=4, success_rate=0.6),
    ]


@pytest.fixture
def registry(forex_sources):
    return SourceRegistry(forex_sources)


@pytest.fixture
def fetcher():
    return FakeFetcher()
