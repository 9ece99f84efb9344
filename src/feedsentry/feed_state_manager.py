"""Per-feed state for conditional requests and delivery tracking.

Two kinds of state are kept, both in memory only:

- ETag / Last-Modified validators per feed URL, replayed as
  ``If-None-Match`` / ``If-Modified-Since`` so unchanged feeds answer with
  ``304 Not Modified`` and transfer nothing.
- The ids of items already delivered per source (bounded, oldest first
  out), used to report ``new_items`` and ``duplicates`` on each
  ``CollectionResult``.

Nothing survives a restart; an item may be delivered again after one.

Example:
    >>> manager = FeedStateManager()
    >>> headers = manager.get_headers("https://example.com/feed.rss")
    >>> # 304 -> zero items; 200 -> manager.update_state(url, response.headers)
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Dict, Iterable, Mapping, Tuple

from .logging_utils import get_logger

log = get_logger("feed_state_manager")

DEFAULT_SEEN_LIMIT = 2000


class FeedStateManager:
    """Track feed validators and previously delivered item ids.

    Thread Safety:
        All state is guarded by one lock so fetch tasks and worker threads
        may share an instance.
    """

    def __init__(self, seen_limit: int = DEFAULT_SEEN_LIMIT):
        self.state: Dict[str, Dict[str, str]] = {}
        self.seen_limit = max(1, int(seen_limit))
        self._seen: Dict[str, "OrderedDict[str, None]"] = {}
        self._lock = threading.Lock()

    def get_headers(self, feed_url: str) -> Dict[str, str]:
        """Conditional request headers for ``feed_url`` (possibly empty)."""
        with self._lock:
            feed_state = self.state.get(feed_url, {})

            headers = {}
            if etag := feed_state.get("etag"):
                headers["If-None-Match"] = etag
            if last_modified := feed_state.get("last_modified"):
                headers["If-Modified-Since"] = last_modified
            return headers

    def update_state(self, feed_url: str, response_headers: Mapping[str, str]) -> None:
        """Store validators from a 200 response.

        Accepts a plain dict or aiohttp's case-insensitive header proxy.
        """
        etag = response_headers.get("ETag") or response_headers.get("etag")
        last_modified = response_headers.get("Last-Modified") or response_headers.get(
            "last-modified"
        )
        if not (etag or last_modified):
            return
        with self._lock:
            self.state[feed_url] = {
                "etag": etag or "",
                "last_modified": last_modified or "",
            }
        log.debug(
            f"feed_state_updated url={feed_url[:60]} etag={bool(etag)} "
            f"last_modified={bool(last_modified)}"
        )

    def should_skip(self, status_code: int) -> bool:
        """True for ``304 Not Modified``."""
        return status_code == 304

    def clear_feed_state(self, feed_url: str) -> None:
        with self._lock:
            self.state.pop(feed_url, None)

    def mark_seen(self, source_id: str, item_ids: Iterable[str]) -> Tuple[int, int]:
        """Record delivered ids; return ``(new, already_seen)`` counts."""
        new = dup = 0
        with self._lock:
            seen = self._seen.setdefault(source_id, OrderedDict())
            for item_id in item_ids:
                if item_id in seen:
                    dup += 1
                    seen.move_to_end(item_id)
                    continue
                new += 1
                seen[item_id] = None
                while len(seen) > self.seen_limit:
                    seen.popitem(last=False)
        return new, dup

    def seen_count(self, source_id: str) -> int:
        with self._lock:
            return len(self._seen.get(source_id, ()))

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total_feeds": len(self.state),
                "feeds_with_etag": sum(1 for s in self.state.values() if s.get("etag")),
                "feeds_with_last_modified": sum(
                    1 for s in self.state.values() if s.get("last_modified")
                ),
                "tracked_sources": len(self._seen),
            }
