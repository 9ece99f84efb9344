"""
Realtime detection over feed content and numeric series.

All classification here is synchronous and side-effect free; only
:meth:`RealtimeDetector.rapid_response` awaits, because the action
provider it delegates to may do I/O.  Malformed input never raises: empty
or non-string content classifies as a neutral, non-emergency result.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

import numpy as np

from .logging_utils import get_logger
from .models import (
    Alert,
    AlertSeverity,
    BreakoutSignal,
    DataPoint,
    Detection,
    EmergencyClassification,
    EmergencyInformation,
    EmergencyUrgency,
    FeedItem,
    MarketMovement,
    MovementSeverity,
    MovementType,
    RapidResponse,
    RecommendedAction,
    ResponseStatus,
    TrendChange,
    utc_now,
)
from .source_credibility import is_high_credibility_source
from .vocabulary import (
    EmergencyVocabulary,
    MovementVocabulary,
    ResponseVocabulary,
    contains_term,
    find_terms,
)

log = get_logger("detector")

ActionProvider = Callable[[EmergencyInformation, str], Awaitable[List[str]]]
Series = Sequence[Union[DataPoint, float, int]]

TREND_WINDOW = 10
TREND_THRESHOLD_PCT = 2.0
REVERSAL_THRESHOLD_PCT = 5.0
BREAKOUT_RECENT = 5
BREAKOUT_MIN_POINTS = 20
BREAKOUT_MARGIN = 0.02
BREAKOUT_CONFIDENCE = 0.7


def _as_text(content: Any) -> str:
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def _values(data: Series) -> np.ndarray:
    vals = [p.value if isinstance(p, DataPoint) else p for p in data or ()]
    return np.asarray(vals, dtype=float)


def _late_outcome_logger(emergency_id: str) -> Callable[["asyncio.Future[List[str]]"], None]:
    """Done-callback for action providers that outlived the response budget."""

    def _log(task: "asyncio.Future[List[str]]") -> None:
        if task.cancelled():
            log.info(f"rapid_response_late_cancelled emergency={emergency_id}")
            return
        err = task.exception()
        if err is not None:
            log.warning(
                f"rapid_response_late_failed emergency={emergency_id} "
                f"err={err.__class__.__name__}: {err}"
            )
        else:
            log.info(
                f"rapid_response_late_done emergency={emergency_id} "
                f"actions={len(task.result())}"
            )

    return _log


class RealtimeDetector:
    """Emergency, market-movement and trend detection."""

    def __init__(
        self,
        emergency_vocab: Optional[EmergencyVocabulary] = None,
        movement_vocab: Optional[MovementVocabulary] = None,
        response_vocab: Optional[ResponseVocabulary] = None,
        response_budget_secs: float = 30.0,
        action_provider: Optional[ActionProvider] = None,
    ) -> None:
        self.emergency_vocab = emergency_vocab or EmergencyVocabulary()
        self.movement_vocab = movement_vocab or MovementVocabulary()
        self.response_vocab = response_vocab or ResponseVocabulary()
        self.response_budget_secs = response_budget_secs
        self._action_provider = action_provider or self._default_actions

    # ------------------------------------------------------------------
    # Emergency classification
    # ------------------------------------------------------------------

    def find_emergency_keywords(self, content: str) -> List[str]:
        return find_terms(content, self.emergency_vocab.all_keywords())

    def urgency_score(self, content: str) -> float:
        v = self.emergency_vocab
        if not content:
            return 0.0
        score = v.urgent_word_score * len(find_terms(content, v.urgent_words))
        score += min(content.count("!") * v.exclamation_score, v.exclamation_cap)
        letters = [c for c in content if c.isalpha()]
        if letters:
            caps_ratio = sum(1 for c in letters if c.isupper()) / len(letters)
            if caps_ratio > v.caps_ratio_threshold:
                score += v.caps_score
        return min(score, 1.0)

    def impact_score(self, content: str) -> float:
        weights = self.emergency_vocab.impact_weights
        matched = find_terms(content, weights.keys())
        return min(sum(weights[t] for t in matched), 1.0)

    def emergency_score(self, keyword_count: int, urgency: float, impact: float) -> float:
        v = self.emergency_vocab
        keyword_term = min(keyword_count * v.keyword_step, v.keyword_cap) / v.keyword_cap
        return (
            v.keyword_weight * keyword_term
            + v.urgency_weight * urgency
            + v.impact_weight * impact
        )

    def classify_urgency(self, score: float) -> EmergencyUrgency:
        v = self.emergency_vocab
        if score >= v.critical_threshold:
            return EmergencyUrgency.CRITICAL
        if score >= v.high_threshold:
            return EmergencyUrgency.HIGH
        if score >= v.medium_threshold:
            return EmergencyUrgency.MEDIUM
        return EmergencyUrgency.LOW

    def categorize(self, triggers: Iterable[str]) -> str:
        matched = set(triggers)
        for category, terms in self.emergency_vocab.keyword_groups.items():
            if matched.intersection(terms):
                return category
        return "general"

    def identify_emergency_information(self, content: Any) -> EmergencyClassification:
        text = _as_text(content)
        triggers = self.find_emergency_keywords(text)
        urgency = self.urgency_score(text)
        impact = self.impact_score(text)
        score = self.emergency_score(len(triggers), urgency, impact)
        confidence = (
            min(len(triggers) / 5.0, 1.0) * 0.4 + urgency * 0.3 + impact * 0.3
        )
        result = EmergencyClassification(
            is_emergency=score >= self.emergency_vocab.medium_threshold,
            urgency_level=self.classify_urgency(score),
            category=self.categorize(triggers),
            confidence=round(min(confidence, 1.0), 4),
            triggers=triggers,
            estimated_impact=int(round(impact * 100)),
        )
        log.debug(
            f"emergency_classified score={score:.3f} urgency={result.urgency_level.value} "
            f"category={result.category} triggers={len(triggers)}"
        )
        return result

    def scan_items(self, items: Iterable[FeedItem]) -> List[EmergencyInformation]:
        """Classify each item; return the emergencies found."""
        found: List[EmergencyInformation] = []
        for item in items:
            classification = self.identify_emergency_information(item.text)
            if not classification.is_emergency:
                continue
            found.append(
                EmergencyInformation(
                    id=f"emg_{item.id[:16]}",
                    classification=classification,
                    content=item.text,
                    source_id=item.source_id,
                    affected_instruments=self.identify_affected_instruments(item.text),
                )
            )
        return found

    # ------------------------------------------------------------------
    # Market movements
    # ------------------------------------------------------------------

    def identify_movement_type(self, content: str) -> Optional[MovementType]:
        v = self.movement_vocab
        if find_terms(content, v.price_surge):
            return MovementType.PRICE_SURGE
        if find_terms(content, v.volume_terms) and find_terms(content, v.increase_terms):
            return MovementType.VOLUME_SPIKE
        if find_terms(content, v.news_impact):
            return MovementType.NEWS_IMPACT
        if find_terms(content, v.sentiment_shift):
            return MovementType.SENTIMENT_SHIFT
        return None

    def movement_severity_score(
        self, content: str, item: FeedItem, now: Optional[datetime] = None
    ) -> int:
        v = self.movement_vocab
        score = v.high_impact_score * len(find_terms(content, v.high_impact))
        score += v.medium_impact_score * len(find_terms(content, v.medium_impact))
        if is_high_credibility_source(item.source_id):
            score += v.credible_source_score
        age = item.age_minutes(now)
        if age < v.very_recent_minutes:
            score += v.very_recent_score
        elif age < v.recent_minutes:
            score += v.recent_score
        return score

    def severity_for_score(self, score: int) -> MovementSeverity:
        for cutoff, label in self.movement_vocab.severity_cutoffs:
            if score >= cutoff:
                return MovementSeverity(label)
        return MovementSeverity.MINOR

    def identify_affected_instruments(self, content: str) -> List[str]:
        v = self.movement_vocab
        text = _as_text(content)
        pairs: List[str] = []
        for pair in v.major_pairs:
            slashed = f"{pair[:3]}/{pair[3:]}"
            if contains_term(text, pair) or contains_term(text, slashed):
                pairs.append(pair)
        for token, pair in v.currency_pairs.items():
            if len(pairs) >= 3:
                break
            if pair not in pairs and contains_term(text, token):
                pairs.append(pair)
        return pairs[: v.max_instruments]

    def recommended_actions(
        self, movement_type: MovementType, severity: MovementSeverity
    ) -> List[RecommendedAction]:
        actions: List[RecommendedAction] = []
        if movement_type == MovementType.PRICE_SURGE:
            actions.append(
                RecommendedAction(
                    action="monitor_closely",
                    description="Monitor price levels and volume for continuation or reversal",
                    timeframe_secs=300,
                    parameters={"watch_level": "high", "alerts": True},
                )
            )
        elif movement_type == MovementType.NEWS_IMPACT:
            actions.append(
                RecommendedAction(
                    action="news_analysis",
                    description="Analyze news impact and market reaction",
                    timeframe_secs=600,
                    parameters={
                        "depth": "full" if severity == MovementSeverity.CRITICAL else "quick"
                    },
                )
            )
        elif movement_type == MovementType.SENTIMENT_SHIFT:
            actions.append(
                RecommendedAction(
                    action="sentiment_tracking",
                    description="Track sentiment indicators and risk assets",
                    timeframe_secs=900,
                    parameters={"indicators": ["vix", "gold", "bonds"]},
                )
            )
        if severity == MovementSeverity.CRITICAL:
            actions.append(
                RecommendedAction(
                    action="emergency_protocol",
                    description="Activate emergency trading protocols",
                    timeframe_secs=30,
                    parameters={"protocol": "high_impact_news", "level": "critical"},
                )
            )
        return actions

    def analyze_item_for_movement(
        self, item: FeedItem, now: Optional[datetime] = None
    ) -> Optional[MarketMovement]:
        now = now or utc_now()
        content = item.text.lower()
        movement_type = self.identify_movement_type(content)
        if movement_type is None:
            return None
        severity = self.severity_for_score(
            self.movement_severity_score(content, item, now)
        )
        return MarketMovement(
            type=movement_type,
            severity=severity,
            affected_instruments=self.identify_affected_instruments(content),
            detected_at=now,
            response_time_ms=max(0.0, (now - item.published_at).total_seconds() * 1000),
            recommended_actions=self.recommended_actions(movement_type, severity),
            source_id=item.source_id,
            item_id=item.id,
            content=item.text,
        )

    def detect_market_movements(
        self, items: Iterable[FeedItem], now: Optional[datetime] = None
    ) -> List[MarketMovement]:
        movements = []
        for item in items:
            movement = self.analyze_item_for_movement(item, now)
            if movement is not None:
                movements.append(movement)
        movements.sort(
            key=lambda m: (m.severity.rank, m.detected_at.timestamp()), reverse=True
        )
        return movements

    def movement_to_emergency(self, movement: MarketMovement) -> EmergencyInformation:
        """Wrap a critical/major movement as an emergency for the response path."""
        critical = movement.severity == MovementSeverity.CRITICAL
        if critical:
            impact = 95
        elif movement.severity == MovementSeverity.MAJOR:
            impact = 80
        else:
            impact = 65
        classification = self.identify_emergency_information(movement.content)
        category = classification.category
        if category == "general":
            category = "market_crisis"
        return EmergencyInformation(
            id=f"mov_{movement.item_id[:16] or uuid.uuid4().hex[:16]}",
            classification=EmergencyClassification(
                is_emergency=True,
                urgency_level=EmergencyUrgency.CRITICAL if critical else EmergencyUrgency.HIGH,
                category=category,
                confidence=0.85,
                triggers=[movement.type.value, *classification.triggers],
                estimated_impact=impact,
            ),
            content=movement.content,
            source_id=movement.source_id,
            detected_at=movement.detected_at,
            affected_instruments=list(movement.affected_instruments),
        )

    # ------------------------------------------------------------------
    # Rapid response
    # ------------------------------------------------------------------

    async def _default_actions(
        self, emergency: EmergencyInformation, response_type: str
    ) -> List[str]:
        return self.response_vocab.actions_for(response_type)

    async def rapid_response(self, emergency: EmergencyInformation) -> RapidResponse:
        """Produce immediate actions for ``emergency`` within the response budget.

        When the action provider overruns the budget the response comes back
        with ``status=executing`` and the default actions; the provider keeps
        running in the background.  Any other failure yields a ``failed``
        response carrying the error text.
        """
        start = time.perf_counter()
        try:
            response_type = self.response_vocab.response_type_for(
                emergency.classification.category
            )
            task = asyncio.ensure_future(self._action_provider(emergency, response_type))
            try:
                actions = await asyncio.wait_for(
                    asyncio.shield(task), timeout=self.response_budget_secs
                )
                status = ResponseStatus.COMPLETED
            except asyncio.TimeoutError:
                log.warning(
                    f"rapid_response_over_budget emergency={emergency.id} "
                    f"budget_s={self.response_budget_secs}"
                )
                task.add_done_callback(_late_outcome_logger(emergency.id))
                actions = self.response_vocab.actions_for(response_type)
                status = ResponseStatus.EXECUTING
            return RapidResponse(
                emergency_id=emergency.id,
                response_type=response_type,
                actions=list(actions),
                status=status,
                execution_time_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            log.warning(
                f"rapid_response_failed emergency={emergency.id} "
                f"err={e.__class__.__name__}"
            )
            return RapidResponse(
                emergency_id=emergency.id,
                response_type="error_response",
                actions=[],
                status=ResponseStatus.FAILED,
                execution_time_ms=(time.perf_counter() - start) * 1000,
                error=str(e) or e.__class__.__name__,
            )

    # ------------------------------------------------------------------
    # Trends and breakouts
    # ------------------------------------------------------------------

    def detect_breakout(self, data: Series) -> BreakoutSignal:
        values = _values(data)
        if values.size < BREAKOUT_MIN_POINTS:
            return BreakoutSignal(detected=False)
        recent = values[-BREAKOUT_RECENT:]
        baseline = values[-BREAKOUT_MIN_POINTS:-BREAKOUT_RECENT]
        recent_max, recent_min = float(recent.max()), float(recent.min())
        base_max, base_min = float(baseline.max()), float(baseline.min())
        if base_max != 0 and recent_max > base_max * (1 + BREAKOUT_MARGIN):
            return BreakoutSignal(
                detected=True,
                direction="up",
                confidence=BREAKOUT_CONFIDENCE,
                strength=(recent_max - base_max) / abs(base_max),
            )
        if base_min != 0 and recent_min < base_min * (1 - BREAKOUT_MARGIN):
            return BreakoutSignal(
                detected=True,
                direction="down",
                confidence=BREAKOUT_CONFIDENCE,
                strength=(base_min - recent_min) / abs(base_min),
            )
        return BreakoutSignal(detected=False)

    def detect_trend_changes(
        self,
        data: Series,
        metadata: Optional[Mapping[str, Any]] = None,
        timeframe: str = "",
    ) -> List[TrendChange]:
        values = _values(data)
        changes: List[TrendChange] = []
        if values.size < TREND_WINDOW:
            return changes

        instruments = list(
            (metadata or {}).get("pairs") or self.movement_vocab.default_trend_instruments
        )
        recent = values[-TREND_WINDOW:]
        previous = values[-2 * TREND_WINDOW : -TREND_WINDOW]
        recent_avg = float(np.mean(recent))
        previous_avg = float(np.mean(previous)) if previous.size else recent_avg

        if previous_avg != 0:
            pct = (recent_avg - previous_avg) / abs(previous_avg) * 100
            if abs(pct) > TREND_THRESHOLD_PCT:
                changes.append(
                    TrendChange(
                        type="trend_reversal"
                        if abs(pct) > REVERSAL_THRESHOLD_PCT
                        else "trend_acceleration",
                        direction="up" if pct > 0 else "down",
                        confidence=min(abs(pct) / 10, 1.0),
                        significance=min(abs(pct) / 5, 1.0),
                        affected_instruments=instruments,
                        timeframe=timeframe,
                    )
                )

        breakout = self.detect_breakout(values)
        if breakout.detected:
            changes.append(
                TrendChange(
                    type="breakout",
                    direction=breakout.direction or "",
                    confidence=breakout.confidence,
                    significance=breakout.strength,
                    affected_instruments=instruments,
                    timeframe=timeframe,
                )
            )
        return changes

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @staticmethod
    def severity_for_confidence(confidence: float) -> AlertSeverity:
        if confidence >= 0.9:
            return AlertSeverity.CRITICAL
        if confidence >= 0.7:
            return AlertSeverity.ERROR
        if confidence >= 0.5:
            return AlertSeverity.WARNING
        return AlertSeverity.INFO

    def generate_real_time_alerts(self, detections: Iterable[Detection]) -> List[Alert]:
        alerts: List[Alert] = []
        for detection in detections:
            severity = self.severity_for_confidence(detection.confidence)
            alerts.append(
                Alert(
                    id=f"alert_{uuid.uuid4().hex[:12]}",
                    type=detection.type,
                    severity=severity,
                    message=(
                        f"{detection.type} detected with "
                        f"{round(detection.confidence * 100)}% confidence "
                        f"from {detection.source_id}"
                    ),
                    timestamp=detection.timestamp,
                    source_id=detection.source_id,
                    action_required=severity
                    in (AlertSeverity.CRITICAL, AlertSeverity.ERROR),
                )
            )
        alerts.sort(key=lambda a: (a.severity.rank, a.timestamp.timestamp()), reverse=True)
        return alerts

    def movement_detections(self, movements: Iterable[MarketMovement]) -> List[Detection]:
        """Detections for alerting, confidence taken from movement severity."""
        confidence: Dict[MovementSeverity, float] = {
            MovementSeverity.CRITICAL: 0.95,
            MovementSeverity.MAJOR: 0.8,
            MovementSeverity.MODERATE: 0.6,
            MovementSeverity.MINOR: 0.4,
        }
        return [
            Detection(
                id=f"det_{m.item_id[:12]}",
                type=m.type.value,
                confidence=confidence[m.severity],
                source_id=m.source_id,
                timestamp=m.detected_at,
                data={"severity": m.severity.value, "instruments": m.affected_instruments},
            )
            for m in movements
        ]
