# src/feedsentry/feeds.py
"""
Feed fetching and normalization.

``FeedFetcher`` is the fetch capability the parallel processor depends on:
one call, one attempt, one source.  Retries, timeouts and concurrency are
the processor's job.  ``HttpFeedFetcher`` is the production implementation
on top of a pooled ``aiohttp`` session with conditional requests;
``parse_feed`` turns RSS/Atom (via feedparser) and JSON Feed payloads into
immutable :class:`~feedsentry.models.FeedItem` objects.
"""

from __future__ import annotations

import hashlib
import html
import json
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import aiohttp
import feedparser  # type: ignore
from bs4 import BeautifulSoup
from dateutil import parser as dtparse

from .errors import FeedFetchError, FeedParseError
from .feed_state_manager import FeedStateManager
from .logging_utils import get_logger
from .models import FeedFormat, FeedItem, Source, utc_now

log = get_logger("feeds")

DEFAULT_USER_AGENT = "FeedSentry/1.0"

_ACCEPT = {
    FeedFormat.RSS: "application/rss+xml, application/xml;q=0.9, */*;q=0.8",
    FeedFormat.ATOM: "application/atom+xml, application/xml;q=0.9, */*;q=0.8",
    FeedFormat.JSON: "application/feed+json, application/json;q=0.9, */*;q=0.8",
}

# 408 and 429 are worth retrying even though they are 4xx.
_TRANSIENT_4XX = {408, 425, 429}


# --------------------- Normalization helpers --------------------------------


def _to_utc_datetime(value: Any) -> Optional[datetime]:
    """Parse a feed timestamp into an aware UTC datetime, or None."""
    if not value:
        return None
    if isinstance(value, datetime):
        d = value
    else:
        try:
            d = dtparse.parse(str(value))
        except (ValueError, OverflowError):
            log.debug(f"timestamp_parse_failed value={str(value)[:40]}")
            return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=timezone.utc)
    return d.astimezone(timezone.utc)


def _stable_id(source_id: str, link: str, guid: Optional[str]) -> str:
    raw = (guid or link or "") + f"|{source_id}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def clean_html_content(text: Optional[str]) -> str:
    """
    Decode entities, strip tags and collapse whitespace.

    >>> clean_html_content("ECB &amp; Fed <b>hold</b> rates")
    'ECB & Fed hold rates'
    >>> clean_html_content(None)
    ''
    """
    if not text:
        return ""
    decoded = html.unescape(text)
    if "<" in decoded:
        decoded = BeautifulSoup(decoded, "html.parser").get_text(separator=" ")
    return re.sub(r"\s+", " ", decoded).strip()


def _entry_tags(entry: Any) -> tuple:
    tags = []
    for tag in entry.get("tags") or []:
        term = tag.get("term") if isinstance(tag, dict) else str(tag)
        if term:
            tags.append(clean_html_content(term))
    return tuple(tags)


def _normalize_entry(
    source_id: str, entry: Any, fetched_at: datetime
) -> Optional[FeedItem]:
    title = clean_html_content(entry.get("title"))
    link = (entry.get("link") or "").strip()
    if not title:
        return None

    published = _to_utc_datetime(
        entry.get("published") or entry.get("updated") or entry.get("pubDate")
    )
    guid = entry.get("id") or entry.get("guid")
    description = clean_html_content(
        entry.get("summary") or entry.get("description") or ""
    )
    return FeedItem(
        id=_stable_id(source_id, link, guid or title),
        title=title,
        description=description,
        link=link,
        published_at=published or fetched_at,
        source_id=source_id,
        author=(entry.get("author") or None),
        categories=_entry_tags(entry),
        raw=dict(entry),
    )


def _normalize_json_item(
    source_id: str, item: Dict[str, Any], fetched_at: datetime
) -> Optional[FeedItem]:
    title = clean_html_content(item.get("title"))
    if not title:
        return None
    link = (item.get("url") or item.get("external_url") or "").strip()
    description = clean_html_content(
        item.get("content_text") or item.get("content_html") or item.get("summary")
    )
    author = item.get("author")
    if isinstance(author, dict):
        author = author.get("name")
    elif not author and item.get("authors"):
        first = item["authors"][0]
        author = first.get("name") if isinstance(first, dict) else None
    tags = item.get("tags") or []
    return FeedItem(
        id=_stable_id(source_id, link, str(item.get("id") or "") or title),
        title=title,
        description=description,
        link=link,
        published_at=_to_utc_datetime(
            item.get("date_published") or item.get("date_modified")
        )
        or fetched_at,
        source_id=source_id,
        author=author or None,
        categories=tuple(str(t) for t in tags if t),
        raw=item,
    )


def parse_feed(
    payload: Union[str, bytes],
    source: Source,
    fetched_at: Optional[datetime] = None,
) -> List[FeedItem]:
    """Parse a payload in the source's declared format.

    Raises ``FeedParseError`` when the payload is not a feed at all.
    Entries without a title are skipped.
    """
    fetched_at = fetched_at or utc_now()

    if source.format == FeedFormat.JSON:
        try:
            doc = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise FeedParseError(f"invalid JSON feed: {e}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("items"), list):
            raise FeedParseError("JSON feed has no items array")
        items = [
            _normalize_json_item(source.id, it, fetched_at)
            for it in doc["items"]
            if isinstance(it, dict)
        ]
        return [it for it in items if it is not None]

    # Bytes keep feedparser from treating the payload as a URL or filename.
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    parsed = feedparser.parse(data)
    entries = parsed.get("entries") or []
    if parsed.get("bozo") and not entries and not parsed.get("feed"):
        exc = parsed.get("bozo_exception")
        raise FeedParseError(f"unparseable {source.format.value} feed: {exc}")
    items = [_normalize_entry(source.id, e, fetched_at) for e in entries]
    return [it for it in items if it is not None]


# ---------------------- Fetch capability ------------------------------------


class FeedFetcher(ABC):
    """Fetch and parse one source, once.

    Implementations raise ``FeedFetchError`` or ``FeedParseError`` on
    failure; any other exception is treated as a permanent failure.
    """

    @abstractmethod
    async def fetch(self, source: Source) -> List[FeedItem]:
        ...

    async def close(self) -> None:
        return None


class HttpFeedFetcher(FeedFetcher):
    """aiohttp-backed fetcher with a pooled session and conditional requests."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        state: Optional[FeedStateManager] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        request_timeout: float = 15.0,
        connection_limit: int = 20,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.state = state or FeedStateManager()
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.connection_limit = connection_limit

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            conn = aiohttp.TCPConnector(limit=self.connection_limit, limit_per_host=3)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=conn)
            self._owns_session = True
        return self._session

    async def fetch(self, source: Source) -> List[FeedItem]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": _ACCEPT.get(source.format, "*/*"),
        }
        headers.update(self.state.get_headers(source.url))

        session = self._get_session()
        try:
            async with session.get(
                source.url, headers=headers, allow_redirects=True
            ) as resp:
                if self.state.should_skip(resp.status):
                    log.debug(f"feed_unchanged_304 source={source.id}")
                    return []
                if resp.status != 200:
                    transient = resp.status >= 500 or resp.status in _TRANSIENT_4XX
                    raise FeedFetchError(
                        f"HTTP {resp.status} from {source.url}",
                        status=resp.status,
                        transient=transient,
                    )
                self.state.update_state(source.url, resp.headers)
                payload = await resp.read()
        except aiohttp.ClientError as e:
            raise FeedFetchError(
                f"{e.__class__.__name__}: {e}", transient=True
            ) from e

        return parse_feed(payload, source)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "HttpFeedFetcher":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
