"""Source credibility tiers.

Feed sources are weighted by the reliability of the publisher behind the
feed URL.  Weights feed three places: the known-reliable bonus when
ranking sources, the credible-source bonus in market-movement severity,
and the credibility component of item relevance.

Tier Structure:
    - Tier 1 (HIGH, weight 1.5x): wire services, premium financial press
      and central banks
        * Reuters, Bloomberg, WSJ, FT
        * federalreserve.gov, ecb.europa.eu, bis.org, boj.or.jp
    - Tier 2 (MEDIUM, weight 1.0x): established FX and market news
        * ForexFactory, FXStreet, DailyFX, MarketWatch, CNBC, Investing.com
    - Tier 3 (LOW, weight 0.5x): anything not listed

Usage:
    >>> get_source_weight("https://feeds.reuters.com/reuters/UKForeignExchange")
    1.5
    >>> get_source_tier("https://unknown-blog.com/feed")
    3
"""

from __future__ import annotations

from typing import Any, Dict, Iterable
from urllib.parse import urlparse

CREDIBILITY_TIERS: Dict[str, Dict[str, Any]] = {
    # ===================================================================
    # TIER 1: HIGH CREDIBILITY (weight 1.5x)
    # ===================================================================
    "reuters.com": {"tier": 1, "weight": 1.5},
    "bloomberg.com": {"tier": 1, "weight": 1.5},
    "wsj.com": {"tier": 1, "weight": 1.5},
    "ft.com": {"tier": 1, "weight": 1.5},
    "federalreserve.gov": {"tier": 1, "weight": 1.5},
    "europa.eu": {"tier": 1, "weight": 1.5},
    "bis.org": {"tier": 1, "weight": 1.5},
    "boj.or.jp": {"tier": 1, "weight": 1.5},
    "bankofengland.co.uk": {"tier": 1, "weight": 1.5},
    # ===================================================================
    # TIER 2: MEDIUM CREDIBILITY (weight 1.0x)
    # ===================================================================
    "forexfactory.com": {"tier": 2, "weight": 1.0},
    "fxstreet.com": {"tier": 2, "weight": 1.0},
    "dailyfx.com": {"tier": 2, "weight": 1.0},
    "investing.com": {"tier": 2, "weight": 1.0},
    "marketwatch.com": {"tier": 2, "weight": 1.0},
    "cnbc.com": {"tier": 2, "weight": 1.0},
    "coindesk.com": {"tier": 2, "weight": 1.0},
}

DEFAULT_TIER = 3
DEFAULT_WEIGHT = 0.5
MAX_WEIGHT = 1.5

# Source ids (not domains) the movement detector treats as credible.
HIGH_CREDIBILITY_IDS = ("reuters", "bloomberg", "fed", "ecb", "bis")

# Publishers whose reliability is established regardless of feed domain.
KNOWN_RELIABLE_NAMES = ("reuters", "bloomberg", "forexfactory")


def extract_domain(url: str) -> str:
    """Extract the base domain from a URL.

    >>> extract_domain("https://feeds.reuters.com/news")
    'reuters.com'
    >>> extract_domain("www.ecb.europa.eu/rss/press.html")
    'europa.eu'
    >>> extract_domain("invalid")
    ''
    """
    if not url or not isinstance(url, str):
        return ""

    url = url.strip().lower()
    if not url:
        return ""

    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname or parsed.netloc
    except ValueError:
        return ""
    if not hostname or "." not in hostname:
        return ""

    parts = hostname.split(".")
    # co.uk style second-level registrations keep three labels
    if (
        len(parts) >= 3
        and len(parts[-1]) == 2
        and parts[-2] in {"co", "com", "org", "or", "gov"}
    ):
        return ".".join(parts[-3:])
    return ".".join(parts[-2:])


def _tier_info(url: str) -> Dict[str, Any]:
    return CREDIBILITY_TIERS.get(extract_domain(url), {})


def get_source_tier(url: str) -> int:
    """Return 1 (high), 2 (medium) or 3 (unknown) for a feed URL."""
    return int(_tier_info(url).get("tier", DEFAULT_TIER))


def get_source_weight(url: str) -> float:
    """Return the credibility multiplier (1.5 / 1.0 / 0.5) for a feed URL."""
    return float(_tier_info(url).get("weight", DEFAULT_WEIGHT))


def credibility_factor(url: str) -> float:
    """Credibility weight normalized to 0-1 (tier 1 -> 1.0)."""
    return get_source_weight(url) / MAX_WEIGHT


def _mentions(value: str, names: Iterable[str]) -> bool:
    value = (value or "").lower()
    return any(n in value for n in names)


def is_high_credibility_source(source_id: str, url: str = "") -> bool:
    """True for tier-1 feeds or ids naming a wire service or central bank."""
    if url and get_source_tier(url) == 1:
        return True
    return _mentions(source_id, HIGH_CREDIBILITY_IDS)


def is_known_reliable(source_id: str, url: str = "") -> bool:
    """Membership test used by source ranking's reliability score."""
    return _mentions(source_id, KNOWN_RELIABLE_NAMES) or _mentions(
        extract_domain(url), KNOWN_RELIABLE_NAMES
    )
