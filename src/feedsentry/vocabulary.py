"""
Keyword tables and thresholds for detection and relevance scoring.

Everything the detector, quality analyzer and prioritizer match against
lives here as data.  Each table is a dataclass with defaults so callers can
tune it without touching scoring code:

    >>> vocab = EmergencyVocabulary.from_dict({"medium_threshold": 0.55})

Matching is case-insensitive on word boundaries, so ``"war"`` matches
"trade war" but not "award".
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Tuple


@lru_cache(maxsize=2048)
def _term_pattern(term: str) -> "re.Pattern[str]":
    words = [re.escape(w) for w in term.lower().split()]
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


def contains_term(text: str, term: str) -> bool:
    if not text or not term:
        return False
    return _term_pattern(term).search(text) is not None


def find_terms(text: str, terms: Iterable[str]) -> List[str]:
    """Terms from ``terms`` present in ``text``, in table order, no repeats."""
    found: List[str] = []
    if not text:
        return found
    for term in terms:
        if term not in found and contains_term(text, term):
            found.append(term)
    return found


class _TableMixin:
    @classmethod
    def from_dict(cls, overrides: Mapping[str, Any]):
        """Build a table from defaults plus ``overrides``; unknown keys are ignored."""
        names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in overrides.items() if k in names})


# ---------------------------------------------------------------------------
# Emergency classification
# ---------------------------------------------------------------------------


def _default_keyword_groups() -> Dict[str, Tuple[str, ...]]:
    # Insertion order is the category priority order.
    return {
        "monetary_policy": (
            "fed",
            "ecb",
            "boj",
            "boe",
            "rba",
            "snb",
            "boc",
            "central bank",
            "interest rate",
            "rate cut",
            "rate hike",
            "rate",
            "monetary policy",
            "quantitative easing",
            "qe",
            "tapering",
        ),
        "economic_data": (
            "gdp",
            "inflation",
            "cpi",
            "ppi",
            "unemployment",
            "nonfarm",
            "retail sales",
            "manufacturing",
            "pmi",
            "ism",
        ),
        "market_crisis": (
            "crash",
            "collapse",
            "plunge",
            "surge",
            "spike",
            "volatility",
            "emergency",
            "crisis",
            "panic",
            "selloff",
            "rally",
        ),
        "geopolitical": (
            "sanctions",
            "trade war",
            "war",
            "conflict",
            "election",
            "referendum",
            "brexit",
            "intervention",
            "default",
            "bailout",
        ),
        "technical": (
            "breakout",
            "breakdown",
            "support",
            "resistance",
            "trend reversal",
            "momentum",
            "oversold",
            "overbought",
        ),
    }


def _default_impact_weights() -> Dict[str, float]:
    return {
        "trillion": 0.15,
        "billion": 0.15,
        "million": 0.1,
        "global": 0.15,
        "worldwide": 0.15,
        "international": 0.1,
        "market": 0.15,
        "economy": 0.15,
        "financial": 0.15,
        "central bank": 0.15,
        "government": 0.15,
        "federal": 0.15,
        "massive": 0.2,
        "huge": 0.2,
        "enormous": 0.2,
        "unprecedented": 0.2,
        "historic": 0.2,
        "crash": 0.3,
        "collapse": 0.3,
        "crisis": 0.3,
        "war": 0.3,
        "default": 0.25,
        "emergency": 0.25,
        "rate cut": 0.25,
        "rate hike": 0.25,
    }


@dataclass
class EmergencyVocabulary(_TableMixin):
    keyword_groups: Dict[str, Tuple[str, ...]] = field(
        default_factory=_default_keyword_groups
    )
    urgent_words: Tuple[str, ...] = (
        "now",
        "immediate",
        "immediately",
        "urgent",
        "breaking",
        "just in",
        "alert",
        "emergency",
    )
    urgent_word_score: float = 0.2
    exclamation_score: float = 0.1
    exclamation_cap: float = 0.3
    caps_ratio_threshold: float = 0.3
    caps_score: float = 0.2
    impact_weights: Dict[str, float] = field(default_factory=_default_impact_weights)

    keyword_step: float = 0.1
    keyword_cap: float = 0.4
    keyword_weight: float = 0.4
    urgency_weight: float = 0.3
    impact_weight: float = 0.3

    low_threshold: float = 0.4
    medium_threshold: float = 0.6
    high_threshold: float = 0.75
    critical_threshold: float = 0.9

    def all_keywords(self) -> List[str]:
        out: List[str] = []
        for terms in self.keyword_groups.values():
            out.extend(t for t in terms if t not in out)
        return out


# ---------------------------------------------------------------------------
# Market movements
# ---------------------------------------------------------------------------


def _default_currency_pairs() -> Dict[str, str]:
    # token -> pair it implies against USD
    return {
        "eur": "EURUSD",
        "euro": "EURUSD",
        "gbp": "GBPUSD",
        "sterling": "GBPUSD",
        "pound": "GBPUSD",
        "jpy": "USDJPY",
        "yen": "USDJPY",
        "chf": "USDCHF",
        "franc": "USDCHF",
        "aud": "AUDUSD",
        "aussie": "AUDUSD",
        "cad": "USDCAD",
        "loonie": "USDCAD",
        "nzd": "NZDUSD",
        "kiwi": "NZDUSD",
    }


@dataclass
class MovementVocabulary(_TableMixin):
    price_surge: Tuple[str, ...] = (
        "surge",
        "surges",
        "surged",
        "surging",
        "spike",
        "spikes",
        "spiked",
        "soar",
        "soars",
        "soared",
        "soaring",
    )
    volume_terms: Tuple[str, ...] = ("volume", "volumes")
    increase_terms: Tuple[str, ...] = (
        "increase",
        "increases",
        "increased",
        "jump",
        "jumps",
        "spike",
        "spikes",
    )
    news_impact: Tuple[str, ...] = (
        "news",
        "announcement",
        "announces",
        "announced",
        "report",
        "reports",
        "decision",
        "statement",
        "headline",
        "headlines",
    )
    sentiment_shift: Tuple[str, ...] = (
        "sentiment",
        "mood",
        "risk",
        "risk-off",
        "risk-on",
    )
    high_impact: Tuple[str, ...] = (
        "crash",
        "collapse",
        "emergency",
        "crisis",
        "breaking",
    )
    medium_impact: Tuple[str, ...] = (
        "significant",
        "major",
        "important",
        "unexpected",
    )
    high_impact_score: int = 3
    medium_impact_score: int = 2
    credible_source_score: int = 1
    very_recent_minutes: float = 15.0
    very_recent_score: int = 2
    recent_minutes: float = 60.0
    recent_score: int = 1
    # severity score -> label, checked highest first
    severity_cutoffs: Tuple[Tuple[int, str], ...] = (
        (6, "critical"),
        (4, "major"),
        (2, "moderate"),
    )
    major_pairs: Tuple[str, ...] = (
        "EURUSD",
        "GBPUSD",
        "USDJPY",
        "USDCHF",
        "AUDUSD",
        "USDCAD",
        "NZDUSD",
    )
    currency_pairs: Dict[str, str] = field(default_factory=_default_currency_pairs)
    max_instruments: int = 5
    default_trend_instruments: Tuple[str, ...] = ("EURUSD", "GBPUSD", "USDJPY")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def _default_response_types() -> Dict[str, str]:
    return {
        "monetary_policy": "policy_response",
        "market_crisis": "crisis_response",
        "economic_data": "data_response",
        "geopolitical": "geopolitical_response",
        "technical": "technical_response",
    }


def _default_response_actions() -> Dict[str, Tuple[str, ...]]:
    return {
        "policy_response": (
            "Monitor central bank communications",
            "Track yield curve movements",
            "Analyze currency impact",
        ),
        "crisis_response": (
            "Activate risk management protocols",
            "Monitor safe haven assets",
            "Assess market liquidity",
        ),
        "data_response": (
            "Compare with consensus forecasts",
            "Monitor market reaction",
            "Update economic outlook",
        ),
        "geopolitical_response": (
            "Track official statements",
            "Monitor safe haven flows",
            "Assess regional currency exposure",
        ),
        "technical_response": (
            "Confirm the level break on higher timeframes",
            "Check volume behind the move",
            "Review stop placement",
        ),
        "general_response": (
            "Monitor developments",
            "Assess market impact",
            "Prepare response strategy",
        ),
    }


@dataclass
class ResponseVocabulary(_TableMixin):
    response_types: Dict[str, str] = field(default_factory=_default_response_types)
    default_response_type: str = "general_response"
    actions: Dict[str, Tuple[str, ...]] = field(default_factory=_default_response_actions)

    def response_type_for(self, category: str) -> str:
        return self.response_types.get(category, self.default_response_type)

    def actions_for(self, response_type: str) -> List[str]:
        return list(
            self.actions.get(response_type)
            or self.actions.get(self.default_response_type, ())
        )


# ---------------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------------


def _default_category_terms() -> Dict[str, Tuple[str, ...]]:
    return {
        "forex": (
            "forex",
            "fx",
            "currency",
            "currencies",
            "pair",
            "pips",
            "exchange rate",
            "dollar",
        ),
        "crypto": (
            "crypto",
            "bitcoin",
            "btc",
            "ethereum",
            "eth",
            "blockchain",
            "token",
            "stablecoin",
        ),
        "finance": (
            "market",
            "markets",
            "stocks",
            "bonds",
            "yield",
            "yields",
            "earnings",
            "economy",
        ),
        "news": ("economy", "market", "government", "policy", "minister", "officials"),
        "analysis": (
            "analysis",
            "outlook",
            "forecast",
            "technical",
            "support",
            "resistance",
        ),
    }


@dataclass
class DomainVocabulary(_TableMixin):
    relevance_keywords: Tuple[str, ...] = (
        "forex",
        "fx",
        "currency",
        "exchange rate",
        "trading",
        "usd",
        "eur",
        "jpy",
        "central bank",
        "fed",
        "ecb",
        "boj",
        "interest rate",
        "monetary policy",
    )
    action_words: Tuple[str, ...] = (
        "buy",
        "sell",
        "target",
        "resistance",
        "support",
        "breakout",
        "signal",
        "recommendation",
        "forecast",
        "prediction",
    )
    category_terms: Dict[str, Tuple[str, ...]] = field(
        default_factory=_default_category_terms
    )
    spam_markers: Tuple[str, ...] = (
        "sponsored",
        "advertisement",
        "click here",
        "sign up now",
        "giveaway",
    )
