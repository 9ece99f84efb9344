"""
Source catalog with rolling reliability statistics.

The registry owns every :class:`~feedsentry.models.Source` the pipeline
knows about.  Sources are never removed; they are deactivated.  After
each batch the orchestrator feeds per-source outcomes back through
:meth:`SourceRegistry.record_outcome`, which updates ``success_rate`` as an
exponentially weighted moving average and keeps ``error_count`` as a
decaying failure counter.  Updates for one source are serialized by a
per-source lock so concurrent batches never lose an update.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from .logging_utils import get_logger
from .models import CollectionResult, FeedFormat, Source, SourceCategory

log = get_logger("source_registry")

# Weight of the newest observation in the success-rate EWMA.
SUCCESS_RATE_ALPHA = 0.2
# Sources at or above this priority feed the emergency detection pass.
HIGH_PRIORITY = 8


def default_sources() -> List[Source]:
    """The built-in FX news sources."""
    return [
        Source(
            id="reuters_fx",
            url="https://feeds.reuters.com/reuters/UKForeignExchange",
            name="Reuters Foreign Exchange",
            category=SourceCategory.FOREX,
            format=FeedFormat.RSS,
            refresh_rate_minutes=15,
            priority=9,
            success_rate=0.95,
        ),
        Source(
            id="bloomberg_fx",
            url="https://feeds.bloomberg.com/markets/currencies.rss",
            name="Bloomberg Currencies",
            category=SourceCategory.FOREX,
            format=FeedFormat.RSS,
            refresh_rate_minutes=20,
            priority=8,
            success_rate=0.92,
        ),
        Source(
            id="forexfactory",
            url="https://www.forexfactory.com/rss/news",
            name="ForexFactory News",
            category=SourceCategory.FOREX,
            format=FeedFormat.RSS,
            refresh_rate_minutes=30,
            priority=7,
            success_rate=0.88,
        ),
    ]


def is_valid_source(source: Source) -> bool:
    """Active, with a non-empty http(s) URL and a positive priority."""
    if not source.active:
        return False
    url = (source.url or "").strip().lower()
    if not url.startswith(("http://", "https://")):
        return False
    return source.priority > 0


def validate_sources(sources: Iterable[Source]) -> List[Source]:
    valid: List[Source] = []
    for source in sources:
        if is_valid_source(source):
            valid.append(source)
        else:
            log.debug(
                f"source_invalid id={source.id} active={source.active} "
                f"priority={source.priority}"
            )
    return valid


class SourceRegistry:
    """In-memory catalog of sources keyed by id."""

    def __init__(self, sources: Optional[Iterable[Source]] = None) -> None:
        self._sources: Dict[str, Source] = {}
        self._catalog_lock = threading.Lock()
        self._source_locks: Dict[str, threading.Lock] = {}
        for source in sources or ():
            self.register(source)

    @classmethod
    def with_defaults(cls) -> "SourceRegistry":
        return cls(default_sources())

    def register(self, source: Source) -> Source:
        """Add a source, replacing any existing entry with the same id."""
        with self._catalog_lock:
            self._sources[source.id] = source
            self._source_locks.setdefault(source.id, threading.Lock())
        log.debug(f"source_registered id={source.id} url={source.url}")
        return source

    def get(self, source_id: str) -> Optional[Source]:
        return self._sources.get(source_id)

    def all(self) -> List[Source]:
        with self._catalog_lock:
            return list(self._sources.values())

    def active(self) -> List[Source]:
        return [s for s in self.all() if s.active]

    def valid(self) -> List[Source]:
        return validate_sources(self.all())

    def high_priority(self, min_priority: int = HIGH_PRIORITY) -> List[Source]:
        return [s for s in self.valid() if s.priority >= min_priority]

    def deactivate(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        if source is None:
            return False
        with self._source_locks[source_id]:
            source.active = False
        log.info(f"source_deactivated id={source_id}")
        return True

    def activate(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        if source is None:
            return False
        with self._source_locks[source_id]:
            source.active = True
        return True

    def record_outcome(self, source_id: str, success: bool) -> Optional[Source]:
        """Fold one fetch outcome into the source's rolling statistics."""
        source = self._sources.get(source_id)
        if source is None:
            return None
        with self._source_locks[source_id]:
            observed = 1.0 if success else 0.0
            rate = (1 - SUCCESS_RATE_ALPHA) * source.success_rate + (
                SUCCESS_RATE_ALPHA * observed
            )
            source.success_rate = max(0.0, min(1.0, rate))
            if success:
                source.error_count = max(0, source.error_count - 1)
            else:
                source.error_count += 1
        return source

    def record_results(self, results: Iterable[CollectionResult]) -> None:
        for result in results:
            self.record_outcome(result.source_id, result.ok)

    def set_priority(self, source_id: str, priority: int) -> Optional[Source]:
        source = self._sources.get(source_id)
        if source is None:
            return None
        with self._source_locks[source_id]:
            old = source.priority
            source.priority = max(1, min(10, int(priority)))
        if old != source.priority:
            log.info(
                f"source_priority_changed id={source_id} old={old} "
                f"new={source.priority}"
            )
        return source

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources
