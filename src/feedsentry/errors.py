"""Exception hierarchy for feedsentry.

Per-source failures are normally converted into ``CollectionResult``
statuses by the parallel processor; these exceptions travel between the
fetch capability and the processor, or signal that a whole pass could not
start.
"""

from __future__ import annotations

from typing import Optional


class FeedSentryError(Exception):
    """Base class for all feedsentry errors."""


class NoValidSourcesError(FeedSentryError):
    """Raised when a collection pass is given no usable sources."""


class FeedFetchError(FeedSentryError):
    """Transport or HTTP failure while fetching a source.

    ``transient`` marks failures worth retrying (timeouts at the socket
    level, 5xx, 429); 4xx responses are permanent.
    """

    def __init__(
        self, message: str, status: Optional[int] = None, transient: bool = True
    ) -> None:
        super().__init__(message)
        self.status = status
        self.transient = transient


class FeedParseError(FeedSentryError):
    """Payload could not be parsed in the source's declared format."""


class CollectionError(FeedSentryError):
    """Unexpected failure of an entire collection pass."""
