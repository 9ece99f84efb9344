"""
Data model for the feed collection pipeline.

Every component exchanges these dataclasses.  Closed vocabularies are
``str`` enums so values compare equal to their plain-string spelling
(``CollectionStatus.SUCCESS == "success"``) and serialize cleanly through
the JSON log formatter.  All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ============================================================================
# Enumerations
# ============================================================================


class SourceCategory(str, Enum):
    FOREX = "forex"
    CRYPTO = "crypto"
    FINANCE = "finance"
    NEWS = "news"
    ANALYSIS = "analysis"


class FeedFormat(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    JSON = "json"


class CollectionStatus(str, Enum):
    """Terminal state of one fetch against one source."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    RETRY = "retry"


class UrgencyLevel(str, Enum):
    """Urgency of a prioritized source."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class EmergencyUrgency(str, Enum):
    """Urgency of a classified piece of content."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Volatility(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class NewsIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BREAKING = "breaking"


class MovementType(str, Enum):
    PRICE_SURGE = "price_surge"
    VOLUME_SPIKE = "volume_spike"
    NEWS_IMPACT = "news_impact"
    SENTIMENT_SHIFT = "sentiment_shift"


class MovementSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    MovementSeverity.MINOR: 1,
    MovementSeverity.MODERATE: 2,
    MovementSeverity.MAJOR: 3,
    MovementSeverity.CRITICAL: 4,
}


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _ALERT_RANK[self]


_ALERT_RANK = {
    AlertSeverity.INFO: 1,
    AlertSeverity.WARNING: 2,
    AlertSeverity.ERROR: 3,
    AlertSeverity.CRITICAL: 4,
}


class ResponseStatus(str, Enum):
    """Outcome of an emergency response.

    ``EXECUTING`` means the response was returned after its time budget
    ran out; ``FAILED`` is the error-response variant.
    """
    COMPLETED = "completed"
    EXECUTING = "executing"
    FAILED = "failed"


# ============================================================================
# Sources and items
# ============================================================================


@dataclass
class Source:
    """A configured, independently fetchable feed.

    ``error_count`` and ``success_rate`` are rolling statistics maintained
    by :class:`feedsentry.source_registry.SourceRegistry`; sources are never
    removed, only deactivated.
    """

    id: str
    url: str
    name: str = ""
    category: SourceCategory = SourceCategory.NEWS
    format: FeedFormat = FeedFormat.RSS
    refresh_rate_minutes: int = 15
    priority: int = 5
    active: bool = True
    error_count: int = 0
    success_rate: float = 1.0

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id
        self.category = SourceCategory(self.category)
        self.format = FeedFormat(self.format)
        self.success_rate = _clamp(float(self.success_rate), 0.0, 1.0)


@dataclass(frozen=True)
class FeedItem:
    """One item retrieved from a source. Immutable once fetched."""

    id: str
    title: str
    description: str
    link: str
    published_at: datetime
    source_id: str
    author: Optional[str] = None
    categories: Tuple[str, ...] = ()
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def text(self) -> str:
        """Title and description joined, for keyword scanning."""
        return f"{self.title} {self.description or ''}".strip()

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return max(0.0, (now - self.published_at).total_seconds() / 60.0)


@dataclass
class ResourceSnapshot:
    """Process resource usage sampled around a fetch."""

    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    memory_mb: float = 0.0
    in_flight: int = 0


@dataclass
class CollectionMetadata:
    total_items: int = 0
    new_items: int = 0
    duplicates: int = 0
    resource_usage: Optional[ResourceSnapshot] = None
    quality_score: float = 0.0

    def __post_init__(self) -> None:
        self.quality_score = _clamp(float(self.quality_score), 0.0, 1.0)


@dataclass
class CollectionResult:
    """Outcome of one fetch attempt against one source."""

    source_id: str
    items: List[FeedItem] = field(default_factory=list)
    status: CollectionStatus = CollectionStatus.SUCCESS
    processing_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    error_message: Optional[str] = None
    metadata: CollectionMetadata = field(default_factory=CollectionMetadata)

    @property
    def ok(self) -> bool:
        return self.status == CollectionStatus.SUCCESS


# ============================================================================
# Prioritization
# ============================================================================


@dataclass
class PriorityWeight:
    relevance_score: float = 0.8
    timeliness: float = 0.9
    source_reliability: float = 0.7
    content_quality: float = 0.75
    market_impact: float = 0.6

    def __post_init__(self) -> None:
        for name in (
            "relevance_score",
            "timeliness",
            "source_reliability",
            "content_quality",
            "market_impact",
        ):
            setattr(self, name, _clamp(float(getattr(self, name)), 0.0, 1.0))


@dataclass
class SourceAssessment:
    """Heuristic 1-10 scores for one source."""

    source_id: str
    quality: int
    relevance: int
    reliability: int
    recommended_priority: int
    reasoning: str = ""
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)


@dataclass
class PrioritizedSource:
    source: Source
    priority: int
    reasoning: str
    expected_value: float
    urgency_level: UrgencyLevel
    processing_order: int


@dataclass
class MarketCondition:
    volatility: Volatility = Volatility.MEDIUM
    trend_direction: str = "sideways"
    news_intensity: NewsIntensity = NewsIntensity.MEDIUM
    session_time: str = ""
    major_event_scheduled: bool = False


@dataclass
class PerformanceMetrics:
    """Recent-performance sample for one source."""

    success_rate: float
    average_response_time_ms: float
    content_quality_score: float
    last_update_time: datetime
    error_history: List[str] = field(default_factory=list)
    source_id: str = ""
    sample_size: int = 1


@dataclass
class PriorityAdjustment:
    source_id: str
    old_priority: int
    new_priority: int
    reason: str
    factors: Dict[str, float] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    valid_until: datetime = field(
        default_factory=lambda: utc_now() + timedelta(hours=24)
    )


@dataclass
class EmergencyPriorityConfig:
    emergency_sources: List[Source]
    normal_sources: List[Source]
    refresh_interval_secs: int
    timeout_secs: int
    emergency_mode: bool


@dataclass
class InformationValue:
    score: float
    timeliness: float
    relevance: float
    uniqueness: float
    actionability: float
    credibility: float
    explanation: str


@dataclass
class Pattern:
    pattern_type: str
    description: str
    confidence: float
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LearningResult:
    priority_adjustments: List[PriorityAdjustment] = field(default_factory=list)
    patterns: List[Pattern] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    confidence: float = 0.5
    sample_size: int = 0


# ============================================================================
# Quality analysis
# ============================================================================


@dataclass
class RelevanceScore:
    item_id: str
    score: float
    keyword_matches: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)


@dataclass
class RejectedItem:
    item: FeedItem
    reason: str
    score: float = 0.0


@dataclass
class QualityFilterResult:
    accepted: List[FeedItem] = field(default_factory=list)
    rejected: List[RejectedItem] = field(default_factory=list)
    scores: Dict[str, RelevanceScore] = field(default_factory=dict)
    quality_score: float = 0.0
    duplicates: int = 0


# ============================================================================
# Detection
# ============================================================================


@dataclass
class EmergencyClassification:
    is_emergency: bool
    urgency_level: EmergencyUrgency
    category: str
    confidence: float
    triggers: List[str] = field(default_factory=list)
    estimated_impact: int = 0


@dataclass
class EmergencyInformation:
    id: str
    classification: EmergencyClassification
    content: str
    source_id: str = ""
    detected_at: datetime = field(default_factory=utc_now)
    affected_instruments: List[str] = field(default_factory=list)


@dataclass
class RecommendedAction:
    action: str
    description: str
    timeframe_secs: int
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MarketMovement:
    type: MovementType
    severity: MovementSeverity
    affected_instruments: List[str]
    detected_at: datetime
    response_time_ms: float
    recommended_actions: List[RecommendedAction] = field(default_factory=list)
    source_id: str = ""
    item_id: str = ""
    content: str = ""


@dataclass
class DataPoint:
    timestamp: datetime
    value: float


@dataclass
class TrendChange:
    type: str
    direction: str
    confidence: float
    significance: float
    affected_instruments: List[str] = field(default_factory=list)
    timeframe: str = ""


@dataclass
class BreakoutSignal:
    detected: bool
    direction: Optional[str] = None
    confidence: float = 0.0
    strength: float = 0.0


@dataclass
class Detection:
    id: str
    type: str
    confidence: float
    source_id: str
    timestamp: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Alert:
    id: str
    type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime
    source_id: str
    action_required: bool
    acknowledged: bool = False


@dataclass
class RapidResponse:
    """Immediate action list produced by the detector's rapid-response path."""

    emergency_id: str
    response_type: str
    actions: List[str]
    status: ResponseStatus
    execution_time_ms: float
    error: Optional[str] = None


# ============================================================================
# Emergency handling
# ============================================================================


@dataclass
class ResponseAction:
    action: str
    description: str
    status: str
    execution_time_ms: float = 0.0
    parameters: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class EmergencyResponse:
    id: str
    emergency_id: str
    protocol: str
    actions: List[ResponseAction]
    status: ResponseStatus
    response_time_ms: float
    notified: List[str] = field(default_factory=list)
    notification_failures: List[str] = field(default_factory=list)
    escalated: bool = False
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def within_time_limit(self) -> bool:
        return self.status == ResponseStatus.COMPLETED


@dataclass
class ResponseAnalysis:
    response_id: str
    effectiveness: int
    timeliness: int
    accuracy: int
    improvements: List[str] = field(default_factory=list)
    lessons_learned: List[str] = field(default_factory=list)
    next_actions: List[str] = field(default_factory=list)


@dataclass
class ImpactAssessment:
    market_impact: float
    risk_level: str
    timeframe: str = "short"
    affected_sectors: List[str] = field(default_factory=list)


@dataclass
class EmergencyResult:
    emergency: EmergencyInformation
    response: EmergencyResponse
    impact: ImpactAssessment
    follow_up_required: bool


# ============================================================================
# Processing, batching and optimization
# ============================================================================


@dataclass
class SystemLoad:
    cpu_percent: float
    memory_percent: float
    network_latency_ms: float = 0.0


@dataclass
class ConcurrencyConfig:
    max_concurrency: int
    timeout_secs: float
    reason: str = ""


@dataclass
class SourceBatch:
    batch_id: str
    sources: List[Source]
    priority: int
    estimated_time_ms: int
    resource_requirement: int


@dataclass
class ResourceAllocation:
    batch_id: str
    cpu_percent: float
    memory_percent: float
    connections: int


@dataclass
class LoadDistribution:
    batches: List[SourceBatch]
    allocations: List[ResourceAllocation]
    estimated_total_time_ms: int


@dataclass
class OptimizationRecommendation:
    kind: str
    description: str
    impact: str
    effort: str
    expected_improvement: int
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResourceOptimization:
    recommendations: List[OptimizationRecommendation]
    priority: int
    expected_improvement: int


@dataclass
class RetryResult:
    source_id: str
    attempts: int
    success: bool
    final_error: Optional[str] = None
    recovery_time_ms: float = 0.0
    result: Optional[CollectionResult] = None


@dataclass
class PerformanceSnapshot:
    average_response_time: float = 0.0
    success_rate: float = 0.0
    throughput: float = 0.0
    resource_efficiency: float = 0.0
    quality_score: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)


# ============================================================================
# Orchestration outputs
# ============================================================================


@dataclass
class CollectionRun:
    """Everything produced by one one-shot parallel collection."""

    results: List[CollectionResult]
    movements: List[MarketMovement] = field(default_factory=list)
    emergencies: List[EmergencyResult] = field(default_factory=list)
    snapshot: Optional[PerformanceSnapshot] = None

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful


@dataclass
class PrioritizedResult:
    source: PrioritizedSource
    result: CollectionResult
    realized_value: int


@dataclass
class BatchResult:
    batches: int
    successful: int
    failed: int
    total_time_ms: float
    results: List[CollectionResult] = field(default_factory=list)


@dataclass
class OptimizationResult:
    before: PerformanceSnapshot
    after: PerformanceSnapshot
    applied: List[OptimizationRecommendation]
    improvements: Dict[str, float]


@dataclass
class MonitoringSession:
    id: str
    sources: List[Source]
    start_time: datetime = field(default_factory=utc_now)
    is_active: bool = True
    collections_count: int = 0
    emergency_detections: int = 0
    average_response_time: float = 0.0
    successful: int = 0
    failed: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    interval_secs: float = 60.0
