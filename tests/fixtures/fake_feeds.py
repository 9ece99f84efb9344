"""In-memory fetch capability and item builders for testing."""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Union

from feedsentry.feeds import FeedFetcher
from feedsentry.models import FeedItem, Source

_counter = Counter()


def make_source(
    source_id: str = "reuters_fx",
    url: Optional[str] = None,
    **kwargs,
) -> Source:
    return Source(
        id=source_id,
        url=url or f"https://feeds.example.com/{source_id}.xml",
        **kwargs,
    )


def make_item(
    title: str,
    description: str = "",
    source_id: str = "reuters_fx",
    minutes_ago: float = 1.0,
    author: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FeedItem:
    now = now or datetime.now(timezone.utc)
    _counter[source_id] += 1
    return FeedItem(
        id=f"{source_id}-{_counter[source_id]:06d}",
        title=title,
        description=description,
        link=f"https://news.example.com/{source_id}/{_counter[source_id]}",
        published_at=now - timedelta(minutes=minutes_ago),
        source_id=source_id,
        author=author,
    )


Outcome = Union[BaseException, List[FeedItem]]


class FakeFetcher(FeedFetcher):
    """
    Scripted fetcher.

    ``items`` maps source id to the items returned on success.  ``script``
    maps source id to a list of per-call outcomes (an exception to raise or
    a list of items) consumed in order; once exhausted, ``items`` applies.
    ``delays`` adds a per-source sleep before every call.  Concurrency is
    recorded in ``in_flight`` / ``peak_in_flight``.
    """

    def __init__(
        self,
        items: Optional[Dict[str, Sequence[FeedItem]]] = None,
        script: Optional[Dict[str, List[Outcome]]] = None,
        delays: Optional[Dict[str, float]] = None,
        default_delay: float = 0.0,
    ):
        self.items = {k: list(v) for k, v in (items or {}).items()}
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delays = dict(delays or {})
        self.default_delay = default_delay
        self.calls: Counter = Counter()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    async def fetch(self, source: Source) -> List[FeedItem]:
        self.calls[source.id] += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.delays.get(source.id, self.default_delay)
            if delay:
                await asyncio.sleep(delay)
            pending = self.script.get(source.id)
            if pending:
                outcome = pending.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return list(outcome)
            return list(self.items.get(source.id, []))
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True
