"""Source prioritization and feedback learning.

Two mechanisms set the order in which sources are fetched:

Ranking (assessment-driven):
    priority = round(10 × (0.7 × assessment + 0.3 × stored_priority / 10))
    assessment = (quality × 0.3 + relevance × 0.4 + reliability × 0.3) / 10

Each of quality, relevance and reliability is a 1-10 heuristic score from
a :class:`SourceAnalyzer`.  Sources are sorted descending and numbered
densely from 1.

Feedback adjustment:
    new_priority = clamp(round(old × mean(performance, recency, reliability)), 1, 10)

Components:
- performance: success × 0.5 + speed × 0.3 + quality × 0.2
- recency: 1.2 under 30 min, 1.1 under 1h, 1.0 under 2h, 0.9 under 6h, else 0.8
- reliability: 1 - errors/100, floor 0.5

Information value of one item (0-100):
    timeliness × 25 + relevance × 30 + uniqueness × 15 + actionability × 20
    + credibility × 10
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Sequence

from .logging_utils import get_logger
from .models import (
    CollectionResult,
    CollectionStatus,
    EmergencyPriorityConfig,
    FeedItem,
    InformationValue,
    LearningResult,
    MarketCondition,
    NewsIntensity,
    Pattern,
    PerformanceMetrics,
    PrioritizedSource,
    PriorityAdjustment,
    PriorityWeight,
    Source,
    SourceAssessment,
    SourceCategory,
    UrgencyLevel,
    Volatility,
    utc_now,
)
from .source_credibility import is_high_credibility_source, is_known_reliable
from .source_registry import SourceRegistry
from .vocabulary import DomainVocabulary, find_terms

log = get_logger("prioritizer")


# ============================================================================
# Configuration
# ============================================================================

ASSESSMENT_BLEND = 0.7
STORED_PRIORITY_BLEND = 0.3

ADJUSTMENT_VALID_FOR = timedelta(hours=24)
ADJUST_SUCCESS_RATE_BELOW = 0.7
ADJUST_RESPONSE_MS_ABOVE = 10_000
ADJUST_QUALITY_BELOW = 0.5

SLOW_SOURCE_MS = 10_000
FAILED_SHARE_SUGGESTION = 0.2
LOW_QUALITY_SUGGESTION = 0.6

TIMELINESS_HORIZON_MIN = 60.0
RELEVANCE_SATURATION = 10
ACTION_WORD_SCORE = 0.1
DEFAULT_CREDIBILITY = 0.7

VALUE_WEIGHTS = {
    "timeliness": 0.25,
    "relevance": 0.30,
    "uniqueness": 0.15,
    "actionability": 0.20,
    "credibility": 0.10,
}

# volatility -> (refresh interval, fetch timeout) in seconds
EMERGENCY_TIMINGS = {
    Volatility.EXTREME: (15, 10),
    Volatility.HIGH: (20, 12),
}
BASELINE_TIMINGS = (30, 15)

# sample size floor -> confidence
LEARNING_CONFIDENCE = ((100, 0.95), (50, 0.85), (20, 0.75), (10, 0.65))


def _clamp_int(value: float, lo: int = 1, hi: int = 10) -> int:
    return int(max(lo, min(hi, round(value))))


# ============================================================================
# Source analysis
# ============================================================================


class SourceAnalyzer(ABC):
    """Produces 1-10 quality, relevance and reliability scores for sources."""

    @abstractmethod
    def analyze(self, source: Source) -> SourceAssessment:
        ...

    def analyze_sources(self, sources: Iterable[Source]) -> List[SourceAssessment]:
        return [self.analyze(s) for s in sources]


class HeuristicSourceAnalyzer(SourceAnalyzer):
    """Scores sources from their statistics, category and reputation."""

    def quality(self, source: Source) -> int:
        score = 5
        if source.success_rate > 0.9:
            score += 2
        elif source.success_rate > 0.8:
            score += 1
        elif source.success_rate < 0.6:
            score -= 2
        if source.error_count < 5:
            score += 1
        elif source.error_count > 20:
            score -= 1
        return _clamp_int(score)

    def relevance(self, source: Source) -> int:
        score = 5
        if source.category == SourceCategory.FOREX:
            score += 3
        elif source.category == SourceCategory.FINANCE:
            score += 2
        elif source.category == SourceCategory.CRYPTO:
            score += 1
        if source.refresh_rate_minutes <= 15:
            score += 1
        elif source.refresh_rate_minutes >= 60:
            score -= 1
        return _clamp_int(score)

    def reliability(self, source: Source) -> int:
        score = 5.0
        if is_known_reliable(source.id, source.url):
            score += 3
        score += (source.success_rate - 0.5) * 8
        return _clamp_int(score)

    @staticmethod
    def reasoning(source: Source, quality: int, relevance: int, reliability: int) -> str:
        reasons = []
        if quality >= 8:
            reasons.append("high content quality")
        elif quality <= 4:
            reasons.append("quality concerns")
        if relevance >= 8:
            reasons.append("highly relevant to FX trading")
        elif relevance <= 4:
            reasons.append("limited FX relevance")
        if reliability >= 8:
            reasons.append("excellent reliability record")
        elif reliability <= 4:
            reasons.append("reliability issues")
        if source.category == SourceCategory.FOREX:
            reasons.append("specialized FX content")
        if not reasons:
            return "Standard priority based on basic metrics"
        return "Source prioritized due to: " + ", ".join(reasons)

    @staticmethod
    def strengths(source: Source) -> List[str]:
        out = []
        if source.success_rate > 0.9:
            out.append("High reliability")
        if source.category == SourceCategory.FOREX:
            out.append("FX specialized content")
        if source.refresh_rate_minutes <= 30:
            out.append("Frequent updates")
        if source.priority >= 8:
            out.append("High priority classification")
        return out

    @staticmethod
    def weaknesses(source: Source) -> List[str]:
        out = []
        if source.success_rate < 0.7:
            out.append("Reliability concerns")
        if source.error_count > 10:
            out.append("Frequent errors")
        if source.refresh_rate_minutes > 120:
            out.append("Infrequent updates")
        if not source.active:
            out.append("Currently inactive")
        return out

    def analyze(self, source: Source) -> SourceAssessment:
        quality = self.quality(source)
        relevance = self.relevance(source)
        reliability = self.reliability(source)
        return SourceAssessment(
            source_id=source.id,
            quality=quality,
            relevance=relevance,
            reliability=reliability,
            recommended_priority=_clamp_int((quality + relevance + reliability) / 3),
            reasoning=self.reasoning(source, quality, relevance, reliability),
            strengths=self.strengths(source),
            weaknesses=self.weaknesses(source),
        )


# ============================================================================
# Prioritizer
# ============================================================================


class SourcePrioritizer:
    def __init__(
        self,
        analyzer: Optional[SourceAnalyzer] = None,
        registry: Optional[SourceRegistry] = None,
        domain_vocab: Optional[DomainVocabulary] = None,
        history_limit: int = 50,
    ) -> None:
        self.analyzer = analyzer or HeuristicSourceAnalyzer()
        self.registry = registry
        self.domain_vocab = domain_vocab or DomainVocabulary()
        self.history_limit = history_limit
        self.weights: Dict[str, PriorityWeight] = {}
        self.emergency_config: Optional[EmergencyPriorityConfig] = None
        self._history: Dict[str, Deque[PerformanceMetrics]] = defaultdict(
            lambda: deque(maxlen=self.history_limit)
        )
        self._lock = threading.Lock()
        if registry is not None:
            for source in registry.all():
                self.weight_for(source)

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def weight_for(self, source: Source) -> PriorityWeight:
        """Stored weight for ``source``, seeding one on first sight."""
        with self._lock:
            weight = self.weights.get(source.id)
            if weight is None:
                if is_high_credibility_source(source.id, source.url):
                    weight = PriorityWeight(
                        relevance_score=0.85,
                        timeliness=0.95,
                        source_reliability=0.9,
                        market_impact=0.85,
                    )
                else:
                    weight = PriorityWeight()
                self.weights[source.id] = weight
            return weight

    def set_weight(self, source_id: str, weight: PriorityWeight) -> None:
        with self._lock:
            self.weights[source_id] = weight

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    @staticmethod
    def blended_priority(assessment: SourceAssessment, source: Source) -> int:
        score = (
            assessment.quality * 0.3
            + assessment.relevance * 0.4
            + assessment.reliability * 0.3
        ) / 10
        blended = score * ASSESSMENT_BLEND + (source.priority / 10) * STORED_PRIORITY_BLEND
        return _clamp_int(blended * 10)

    @staticmethod
    def expected_value(assessment: SourceAssessment) -> float:
        return float(
            round(
                assessment.quality * 0.25
                + assessment.relevance * 0.35
                + assessment.reliability * 0.25
                + assessment.recommended_priority * 0.15
            )
        )

    @staticmethod
    def urgency_level(assessment: SourceAssessment) -> UrgencyLevel:
        avg = (assessment.quality + assessment.relevance + assessment.reliability) / 3
        if avg >= 9:
            return UrgencyLevel.EMERGENCY
        if avg >= 7:
            return UrgencyLevel.HIGH
        if avg >= 5:
            return UrgencyLevel.MEDIUM
        return UrgencyLevel.LOW

    def prioritize_sources(self, sources: Sequence[Source]) -> List[PrioritizedSource]:
        """Rank ``sources`` by blended priority, highest first."""
        by_id = {s.id: s for s in sources}
        ranked: List[PrioritizedSource] = []
        for assessment in self.analyzer.analyze_sources(sources):
            source = by_id.get(assessment.source_id)
            if source is None:
                continue
            self.weight_for(source)
            ranked.append(
                PrioritizedSource(
                    source=source,
                    priority=self.blended_priority(assessment, source),
                    reasoning=assessment.reasoning,
                    expected_value=self.expected_value(assessment),
                    urgency_level=self.urgency_level(assessment),
                    processing_order=0,
                )
            )
        ranked.sort(key=lambda p: p.priority, reverse=True)
        for order, entry in enumerate(ranked, start=1):
            entry.processing_order = order
        log.debug(
            "sources_ranked order="
            + ",".join(f"{p.source.id}:{p.priority}" for p in ranked)
        )
        return ranked

    # ------------------------------------------------------------------
    # Feedback adjustment
    # ------------------------------------------------------------------

    @staticmethod
    def performance_factor(metrics: PerformanceMetrics) -> float:
        speed = max(0.0, 1 - metrics.average_response_time_ms / 10_000)
        return (
            metrics.success_rate * 0.5
            + speed * 0.3
            + metrics.content_quality_score * 0.2
        )

    @staticmethod
    def recency_factor(last_update: datetime, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        age = (now - last_update).total_seconds() / 60.0
        if age < 30:
            return 1.2
        if age < 60:
            return 1.1
        if age < 120:
            return 1.0
        if age < 360:
            return 0.9
        return 0.8

    @staticmethod
    def reliability_factor(metrics: PerformanceMetrics) -> float:
        return max(0.5, 1 - len(metrics.error_history) / 100)

    @staticmethod
    def adjustment_reason(performance: float, recency: float, reliability: float) -> str:
        reasons = []
        for value, good, bad in (
            (performance, "excellent recent performance", "poor recent performance"),
            (recency, "very recent updates", "outdated information"),
            (reliability, "high reliability", "reliability concerns"),
        ):
            if value > 1.1:
                reasons.append(good)
            elif value < 0.9:
                reasons.append(bad)
        if not reasons:
            return "Standard adjustment based on metrics"
        return "Adjusted due to: " + ", ".join(reasons)

    def adjust_priority(
        self,
        source: Source,
        metrics: PerformanceMetrics,
        now: Optional[datetime] = None,
    ) -> PriorityAdjustment:
        """Scale ``source.priority`` by its recent performance and store it."""
        now = now or utc_now()
        performance = self.performance_factor(metrics)
        recency = self.recency_factor(metrics.last_update_time, now)
        reliability = self.reliability_factor(metrics)
        combined = (performance + recency + reliability) / 3

        old = source.priority
        new = _clamp_int(old * combined)
        if self.registry is not None and source.id in self.registry:
            self.registry.set_priority(source.id, new)
        else:
            source.priority = new

        weight = self.weight_for(source)
        self.set_weight(
            source.id,
            PriorityWeight(
                relevance_score=weight.relevance_score,
                timeliness=min(1.0, recency),
                source_reliability=metrics.success_rate,
                content_quality=metrics.content_quality_score,
                market_impact=weight.market_impact,
            ),
        )
        return PriorityAdjustment(
            source_id=source.id,
            old_priority=old,
            new_priority=new,
            reason=self.adjustment_reason(performance, recency, reliability),
            factors={
                "performance": round(performance, 4),
                "recency": recency,
                "reliability": round(reliability, 4),
                "combined": round(combined, 4),
            },
            created_at=now,
            valid_until=now + ADJUSTMENT_VALID_FOR,
        )

    # ------------------------------------------------------------------
    # Information value
    # ------------------------------------------------------------------

    def calculate_information_value(
        self, item: FeedItem, now: Optional[datetime] = None
    ) -> InformationValue:
        """Value of one item on a 0-100 scale with a short explanation."""
        text = item.text
        timeliness = max(0.0, 1 - item.age_minutes(now) / TIMELINESS_HORIZON_MIN)
        matches = find_terms(text, self.domain_vocab.relevance_keywords)
        relevance = min(1.0, len(matches) / RELEVANCE_SATURATION)
        words = (item.title or "").lower().split()
        uniqueness = min(1.0, len(set(words)) / len(words)) if words else 0.0
        actionability = min(
            1.0, len(find_terms(text, self.domain_vocab.action_words)) * ACTION_WORD_SCORE
        )
        weight = self.weights.get(item.source_id)
        credibility = weight.source_reliability if weight else DEFAULT_CREDIBILITY

        raw = (
            timeliness * VALUE_WEIGHTS["timeliness"]
            + relevance * VALUE_WEIGHTS["relevance"]
            + uniqueness * VALUE_WEIGHTS["uniqueness"]
            + actionability * VALUE_WEIGHTS["actionability"]
            + credibility * VALUE_WEIGHTS["credibility"]
        )
        score = max(0.0, min(100.0, raw * 100))
        freshness = "very recent" if timeliness > 0.8 else "recent" if timeliness > 0 else "dated"
        source_kind = "credible" if credibility > 0.7 else "standard"
        return InformationValue(
            score=round(score, 2),
            timeliness=timeliness,
            relevance=relevance,
            uniqueness=uniqueness,
            actionability=actionability,
            credibility=credibility,
            explanation=(
                f"Score: {score:.0f}/100. Relevance {relevance:.0%}, {freshness} "
                f"content from a {source_kind} source."
            ),
        )

    # ------------------------------------------------------------------
    # Emergency prioritization
    # ------------------------------------------------------------------

    @staticmethod
    def _is_emergency_source(weight: PriorityWeight, condition: MarketCondition) -> bool:
        if condition.volatility in (Volatility.HIGH, Volatility.EXTREME):
            return weight.market_impact > 0.7 and weight.timeliness > 0.8
        if condition.news_intensity == NewsIntensity.BREAKING:
            return weight.timeliness > 0.9 and weight.relevance_score > 0.8
        return False

    def set_emergency_priority(
        self, condition: MarketCondition, sources: Iterable[Source]
    ) -> EmergencyPriorityConfig:
        """Split ``sources`` into emergency and normal sets for ``condition``."""
        emergency: List[Source] = []
        normal: List[Source] = []
        for source in sources:
            if self._is_emergency_source(self.weight_for(source), condition):
                emergency.append(source)
            else:
                normal.append(source)
        refresh, timeout = EMERGENCY_TIMINGS.get(condition.volatility, BASELINE_TIMINGS)
        config = EmergencyPriorityConfig(
            emergency_sources=emergency,
            normal_sources=normal,
            refresh_interval_secs=refresh,
            timeout_secs=timeout,
            emergency_mode=bool(emergency),
        )
        self.emergency_config = config
        log.info(
            f"emergency_priority_set volatility={condition.volatility.value} "
            f"news={condition.news_intensity.value} emergency={len(emergency)} "
            f"normal={len(normal)} refresh_s={refresh} timeout_s={timeout}"
        )
        return config

    # ------------------------------------------------------------------
    # Feedback learning
    # ------------------------------------------------------------------

    @staticmethod
    def metrics_from_results(
        source_id: str, results: Sequence[CollectionResult]
    ) -> PerformanceMetrics:
        n = len(results)
        return PerformanceMetrics(
            success_rate=sum(1 for r in results if r.ok) / n,
            average_response_time_ms=sum(r.processing_time_ms for r in results) / n,
            content_quality_score=sum(r.metadata.quality_score for r in results) / n,
            last_update_time=max(r.timestamp for r in results),
            error_history=[
                r.error_message or r.status.value for r in results if not r.ok
            ],
            source_id=source_id,
            sample_size=n,
        )

    @staticmethod
    def needs_adjustment(metrics: PerformanceMetrics) -> bool:
        return (
            metrics.success_rate < ADJUST_SUCCESS_RATE_BELOW
            or metrics.average_response_time_ms > ADJUST_RESPONSE_MS_ABOVE
            or metrics.content_quality_score < ADJUST_QUALITY_BELOW
        )

    def history(self, source_id: str) -> List[PerformanceMetrics]:
        with self._lock:
            return list(self._history.get(source_id, ()))

    @staticmethod
    def performance_patterns(results: Sequence[CollectionResult]) -> List[Pattern]:
        hourly: Dict[int, int] = defaultdict(int)
        for r in results:
            hourly[r.timestamp.hour] += 1 if r.ok else 0
        if not hourly:
            return []
        peak = sorted(hourly.items(), key=lambda kv: kv[1], reverse=True)[:3]
        hours = [h for h, _ in peak]
        return [
            Pattern(
                pattern_type="time_based_performance",
                description="Higher success rates during hours: "
                + ", ".join(str(h) for h in hours),
                confidence=0.7,
                data={"hours": hours, "successes": dict(peak)},
            )
        ]

    @staticmethod
    def improvement_suggestions(results: Sequence[CollectionResult]) -> List[str]:
        suggestions = []
        failed = sum(
            1
            for r in results
            if r.status in (CollectionStatus.FAILURE, CollectionStatus.TIMEOUT)
        )
        if results and failed > len(results) * FAILED_SHARE_SUGGESTION:
            suggestions.append(
                "Consider more robust error handling and retry policies for failing sources"
            )
        if any(r.processing_time_ms > SLOW_SOURCE_MS for r in results):
            suggestions.append(
                "Tune timeout settings and parallelism for slow sources"
            )
        ok = [r for r in results if r.ok]
        if ok and sum(r.metadata.quality_score for r in ok) / len(ok) < LOW_QUALITY_SUGGESTION:
            suggestions.append("Tighten content filtering to raise overall quality scores")
        return suggestions

    @staticmethod
    def learning_confidence(sample_size: int) -> float:
        for floor, confidence in LEARNING_CONFIDENCE:
            if sample_size >= floor:
                return confidence
        return 0.5

    def learn_from_feedback(
        self,
        results: Sequence[CollectionResult],
        sources: Optional[Iterable[Source]] = None,
        now: Optional[datetime] = None,
    ) -> LearningResult:
        """Fold a batch of results into per-source history and adjust priorities.

        ``sources`` resolves result ids to sources; when omitted the registry
        is used.  Results for unknown sources still feed history and
        patterns but produce no adjustment.
        """
        lookup: Dict[str, Source] = {s.id: s for s in sources or ()}
        grouped: Dict[str, List[CollectionResult]] = defaultdict(list)
        for r in results:
            grouped[r.source_id].append(r)

        adjustments: List[PriorityAdjustment] = []
        for source_id, group in grouped.items():
            metrics = self.metrics_from_results(source_id, group)
            with self._lock:
                self._history[source_id].append(metrics)
            source = lookup.get(source_id)
            if source is None and self.registry is not None:
                source = self.registry.get(source_id)
            if source is not None and self.needs_adjustment(metrics):
                adjustment = self.adjust_priority(source, metrics, now)
                adjustments.append(adjustment)
                log.info(
                    f"priority_adjusted source={source_id} "
                    f"old={adjustment.old_priority} new={adjustment.new_priority} "
                    f"reason={adjustment.reason!r}"
                )

        return LearningResult(
            priority_adjustments=adjustments,
            patterns=self.performance_patterns(results),
            suggestions=self.improvement_suggestions(results),
            confidence=self.learning_confidence(len(results)),
            sample_size=len(results),
        )
