"""
Collection orchestrator.

Wires the pipeline together and exposes its operating modes:

- ``collect_parallel``: one-shot pass (validate, fetch, quality-filter,
  detect, respond, record a performance snapshot)
- ``collect_by_priority``: ranked sources collected one by one in order
- ``start_continuous_monitoring``: a cancellable background loop per session
- ``process_in_batches`` and ``optimize_performance``
- ``detect_emergency_information`` over the high-priority sources, or the
  ones a ``MarketCondition`` promotes (``apply_market_condition``)

Every collaborator is injected; :meth:`CollectionOrchestrator.from_settings`
builds the default stack from :class:`feedsentry.config.Settings`.  The only
state shared between runs is the source registry, the prioritizer's
learning history and the rolling performance history.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence

from .config import Settings, get_settings
from .detector import RealtimeDetector
from .emergency import EmergencyHandler
from .errors import CollectionError, FeedSentryError, NoValidSourcesError
from .feed_state_manager import FeedStateManager
from .feeds import FeedFetcher, HttpFeedFetcher
from .logging_utils import get_logger
from .models import (
    BatchResult,
    CollectionResult,
    CollectionRun,
    EmergencyInformation,
    EmergencyPriorityConfig,
    EmergencyResult,
    EmergencyUrgency,
    FeedItem,
    ImpactAssessment,
    MarketCondition,
    MarketMovement,
    MonitoringSession,
    MovementSeverity,
    OptimizationResult,
    PerformanceSnapshot,
    PrioritizedResult,
    PrioritizedSource,
    SessionStatus,
    Source,
)
from .parallel_processor import ParallelFeedProcessor
from .prioritizer import SourcePrioritizer
from .quality import FeedQualityAnalyzer
from .source_registry import HIGH_PRIORITY, SourceRegistry, validate_sources

log = get_logger("orchestrator")

OPTIMIZATION_TEST_SOURCES = 3
_DISPATCH_URGENCY = (EmergencyUrgency.HIGH, EmergencyUrgency.CRITICAL)


def _pct_change(before: float, after: float) -> float:
    if not before:
        return 0.0
    return round((after - before) / before * 100, 2)


class CollectionOrchestrator:
    def __init__(
        self,
        registry: SourceRegistry,
        processor: ParallelFeedProcessor,
        quality: Optional[FeedQualityAnalyzer] = None,
        prioritizer: Optional[SourcePrioritizer] = None,
        detector: Optional[RealtimeDetector] = None,
        handler: Optional[EmergencyHandler] = None,
        monitor_interval_secs: float = 60.0,
        monitor_source_limit: int = 5,
        history_limit: int = 100,
    ) -> None:
        self.registry = registry
        self.processor = processor
        self.quality = quality or FeedQualityAnalyzer()
        self.prioritizer = prioritizer or SourcePrioritizer(registry=registry)
        self.detector = detector or RealtimeDetector()
        self.handler = handler or EmergencyHandler()
        self.monitor_interval_secs = monitor_interval_secs
        self.monitor_source_limit = monitor_source_limit
        self.performance_history: Deque[PerformanceSnapshot] = deque(maxlen=history_limit)
        self.recent_results: Deque[CollectionResult] = deque(maxlen=history_limit)
        self.sessions: Dict[str, MonitoringSession] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        # Fetch timeout to restore when the market leaves emergency mode
        self._baseline_timeout_secs: Optional[float] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        registry: Optional[SourceRegistry] = None,
        fetcher: Optional[FeedFetcher] = None,
    ) -> "CollectionOrchestrator":
        s = settings or get_settings()
        registry = registry or SourceRegistry.with_defaults()
        state = FeedStateManager()
        fetcher = fetcher or HttpFeedFetcher(
            state=state,
            user_agent=s.user_agent,
            request_timeout=s.fetch_timeout_secs,
            connection_limit=max(s.max_concurrency, 1),
        )
        processor = ParallelFeedProcessor(
            fetcher,
            state=state,
            max_concurrency=s.max_concurrency,
            timeout_secs=s.fetch_timeout_secs,
            max_retries=s.max_retries,
            backoff_base_secs=s.retry_backoff_base_secs,
        )
        return cls(
            registry=registry,
            processor=processor,
            quality=FeedQualityAnalyzer(
                relevance_floor=s.relevance_floor,
                duplicate_threshold=s.duplicate_threshold,
            ),
            prioritizer=SourcePrioritizer(
                registry=registry, history_limit=s.learning_history_limit
            ),
            detector=RealtimeDetector(
                response_budget_secs=s.emergency_response_budget_secs
            ),
            handler=EmergencyHandler.with_webhook(
                s.emergency_webhook_url,
                response_budget_secs=s.emergency_response_budget_secs,
                escalation_secs=s.emergency_escalation_secs,
                history_limit=s.emergency_history_limit,
            ),
            monitor_interval_secs=s.monitor_interval_secs,
            monitor_source_limit=s.monitor_source_limit,
            history_limit=s.performance_history_limit,
        )

    # ------------------------------------------------------------------
    # One-shot collection
    # ------------------------------------------------------------------

    async def collect_parallel(
        self, sources: Optional[Sequence[Source]] = None
    ) -> CollectionRun:
        """Run one full collection pass over ``sources`` (default: registry)."""
        valid = validate_sources(self.registry.all() if sources is None else sources)
        if not valid:
            raise NoValidSourcesError("no valid sources to collect")

        start = time.perf_counter()
        log.info(f"collection_started sources={len(valid)}")
        try:
            raw = await self.processor.process_sources_in_parallel(valid)
            results = self._filter_results(raw, valid)
            self._record_feedback(results, valid)

            items = [it for r in results if r.ok for it in r.items]
            movements = self.detector.detect_market_movements(items)
            candidates = self._emergency_candidates(items, movements)
            emergencies: List[EmergencyResult] = []
            if candidates:
                log.warning(f"emergencies_detected count={len(candidates)}")
                emergencies = await self._handle_emergencies(candidates)
        except FeedSentryError:
            raise
        except Exception as e:
            log.error(f"collection_failed err={e.__class__.__name__}: {e}")
            raise CollectionError(f"parallel collection failed: {e}") from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        snapshot = self._record_performance(results, elapsed_ms)
        # callers receive results ranked by quality, never in completion order
        results.sort(key=lambda r: (r.ok, r.metadata.quality_score), reverse=True)
        run = CollectionRun(
            results=results,
            movements=movements,
            emergencies=emergencies,
            snapshot=snapshot,
        )
        log.info(
            f"collection_done sources={len(results)} successful={run.successful} "
            f"failed={run.failed} items={len(items)} movements={len(movements)} "
            f"emergencies={len(emergencies)} elapsed_ms={elapsed_ms:.1f}"
        )
        return run

    def _filter_results(
        self, results: Sequence[CollectionResult], sources: Sequence[Source]
    ) -> List[CollectionResult]:
        by_id = {s.id: s for s in sources}
        filtered = []
        for result in results:
            if result.ok:
                result, _ = self.quality.apply(result, by_id.get(result.source_id))
            filtered.append(result)
        return filtered

    def _record_feedback(
        self, results: Sequence[CollectionResult], sources: Sequence[Source]
    ) -> None:
        self.registry.record_results(results)
        learning = self.prioritizer.learn_from_feedback(results, sources)
        for suggestion in learning.suggestions:
            log.info(f"learning_suggestion text={suggestion!r}")
        self.recent_results.extend(results)

    def _emergency_candidates(
        self, items: Sequence[FeedItem], movements: Sequence[MarketMovement]
    ) -> List[EmergencyInformation]:
        """Major/critical movements plus high-urgency classified items, one per item."""
        by_item: Dict[str, EmergencyInformation] = {}
        for movement in movements:
            if movement.severity.rank >= MovementSeverity.MAJOR.rank:
                by_item.setdefault(
                    movement.item_id, self.detector.movement_to_emergency(movement)
                )
        for item in items:
            if item.id in by_item:
                continue
            for info in self.detector.scan_items([item]):
                if info.classification.urgency_level in _DISPATCH_URGENCY:
                    by_item[item.id] = info
        return list(by_item.values())

    @staticmethod
    def assess_impact(emergency: EmergencyInformation) -> ImpactAssessment:
        c = emergency.classification
        return ImpactAssessment(
            market_impact=c.estimated_impact / 100,
            risk_level="critical" if c.urgency_level == EmergencyUrgency.CRITICAL else "high",
            timeframe="short",
            affected_sectors=["forex"],
        )

    async def _handle_emergencies(
        self, emergencies: Sequence[EmergencyInformation]
    ) -> List[EmergencyResult]:
        responses = await self.handler.handle_many(emergencies)
        out = []
        for emergency, response in zip(emergencies, responses):
            impact = self.assess_impact(emergency)
            out.append(
                EmergencyResult(
                    emergency=emergency,
                    response=response,
                    impact=impact,
                    follow_up_required=impact.risk_level in ("critical", "high"),
                )
            )
        return out

    def _record_performance(
        self, results: Sequence[CollectionResult], elapsed_ms: float
    ) -> PerformanceSnapshot:
        n = len(results) or 1
        ok = [r for r in results if r.ok]
        items = sum(len(r.items) for r in results)
        total_ms = sum(r.processing_time_ms for r in results)
        snapshot = PerformanceSnapshot(
            average_response_time=total_ms / n,
            success_rate=len(ok) / n,
            throughput=items / (elapsed_ms / 60_000) if elapsed_ms > 0 else 0.0,
            resource_efficiency=(
                sum(r.processing_time_ms for r in ok) / total_ms if total_ms else 0.0
            ),
            quality_score=(
                sum(r.metadata.quality_score for r in ok) / len(ok) if ok else 0.0
            ),
        )
        self.performance_history.append(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Priority-driven collection
    # ------------------------------------------------------------------

    @staticmethod
    def realized_value(result: CollectionResult, ranked: PrioritizedSource) -> int:
        if not result.ok:
            return 0
        quality = result.metadata.quality_score
        quantity = min(len(result.items) / 10, 1.0)
        priority = ranked.priority / 10
        return round((quality * 0.5 + quantity * 0.3 + priority * 0.2) * 100)

    async def collect_by_priority(
        self, sources: Optional[Sequence[Source]] = None
    ) -> List[PrioritizedResult]:
        """Collect the top-ranked sources in order; results sorted by realized value."""
        candidates = self.registry.valid() if sources is None else validate_sources(sources)
        ranked = self.prioritizer.prioritize_sources(candidates)
        ranked = ranked[: self.processor.max_concurrency]
        out: List[PrioritizedResult] = []
        for entry in ranked:
            try:
                run = await self.collect_parallel([entry.source])
            except FeedSentryError as e:
                log.warning(f"priority_collection_skipped source={entry.source.id} err={e}")
                continue
            result = run.results[0]
            if not result.ok:
                log.warning(
                    f"priority_collection_skipped source={entry.source.id} "
                    f"status={result.status.value} err={result.error_message}"
                )
                continue
            out.append(
                PrioritizedResult(
                    source=entry,
                    result=result,
                    realized_value=self.realized_value(result, entry),
                )
            )
        out.sort(key=lambda r: r.realized_value, reverse=True)
        log.info(f"priority_collection_done ranked={len(ranked)} collected={len(out)}")
        return out

    # ------------------------------------------------------------------
    # Batches and optimization
    # ------------------------------------------------------------------

    async def process_in_batches(
        self,
        sources: Optional[Sequence[Source]] = None,
        batch_size: Optional[int] = None,
        delay_secs: float = 0.0,
    ) -> BatchResult:
        sources = self.registry.all() if sources is None else list(sources)
        distribution = self.processor.distribute_processing_load(sources, batch_size)
        start = time.perf_counter()
        successful = failed = 0
        results: List[CollectionResult] = []
        for i, batch in enumerate(distribution.batches):
            if i and delay_secs > 0:
                await asyncio.sleep(delay_secs)
            try:
                run = await self.collect_parallel(batch.sources)
            except FeedSentryError as e:
                log.warning(
                    f"batch_failed batch={batch.batch_id} sources={len(batch.sources)} err={e}"
                )
                failed += len(batch.sources)
                continue
            results.extend(run.results)
            successful += run.successful
            failed += run.failed
        total_ms = (time.perf_counter() - start) * 1000
        log.info(
            f"batch_collection_done batches={len(distribution.batches)} "
            f"successful={successful} failed={failed} elapsed_ms={total_ms:.1f}"
        )
        return BatchResult(
            batches=len(distribution.batches),
            successful=successful,
            failed=failed,
            total_time_ms=total_ms,
            results=results,
        )

    async def optimize_performance(
        self, test_sources: Optional[Sequence[Source]] = None
    ) -> OptimizationResult:
        """Apply high-impact/low-effort tuning and measure it with a short live test."""
        pool = self.registry.valid() if test_sources is None else list(test_sources)
        sample = pool[:OPTIMIZATION_TEST_SOURCES]
        if self.performance_history:
            before = self.performance_history[-1]
        else:
            before = (await self.collect_parallel(sample)).snapshot or PerformanceSnapshot()

        plan = self.processor.optimize_resource_allocation(
            list(self.recent_results), self.processor.system_load()
        )
        applied = [
            r for r in plan.recommendations if r.impact == "high" and r.effort == "low"
        ]
        for rec in applied:
            self.processor.apply_recommendation(rec)

        after = (await self.collect_parallel(sample)).snapshot or PerformanceSnapshot()
        improvements = {
            "response_time": -_pct_change(
                before.average_response_time, after.average_response_time
            ),
            "success_rate": _pct_change(before.success_rate, after.success_rate),
            "throughput": _pct_change(before.throughput, after.throughput),
            "quality": _pct_change(before.quality_score, after.quality_score),
        }
        log.info(
            f"optimization_done recommended={len(plan.recommendations)} "
            f"applied={len(applied)} improvements={improvements}"
        )
        return OptimizationResult(
            before=before, after=after, applied=applied, improvements=improvements
        )

    # ------------------------------------------------------------------
    # Market conditions and the emergency detection pass
    # ------------------------------------------------------------------

    def apply_market_condition(
        self, condition: MarketCondition, sources: Sequence[Source]
    ) -> EmergencyPriorityConfig:
        """Split ``sources`` for ``condition`` and adopt its fetch timeout.

        In emergency mode the processor switches to the shortened timeout;
        once a later condition clears emergency mode the timeout in force
        before it is restored.
        """
        config = self.prioritizer.set_emergency_priority(condition, sources)
        if config.emergency_mode:
            if self._baseline_timeout_secs is None:
                self._baseline_timeout_secs = self.processor.timeout_secs
            self.processor.timeout_secs = float(config.timeout_secs)
        elif self._baseline_timeout_secs is not None:
            self.processor.timeout_secs = self._baseline_timeout_secs
            self._baseline_timeout_secs = None
        return config

    async def detect_emergency_information(
        self,
        sources: Optional[Sequence[Source]] = None,
        condition: Optional[MarketCondition] = None,
    ) -> List[EmergencyResult]:
        """Collect from high-priority sources and return the emergencies handled.

        With a ``condition`` the sources it promotes to emergency status are
        collected instead, falling back to the high-priority ones.
        """
        if condition is None:
            sources = self.registry.high_priority() if sources is None else sources
        else:
            pool = validate_sources(self.registry.all() if sources is None else sources)
            config = self.apply_market_condition(condition, pool)
            sources = config.emergency_sources or [
                s for s in pool if s.priority >= HIGH_PRIORITY
            ]
        try:
            run = await self.collect_parallel(sources)
        except FeedSentryError as e:
            log.warning(f"emergency_detection_failed err={e}")
            return []
        return run.emergencies

    # ------------------------------------------------------------------
    # Continuous monitoring
    # ------------------------------------------------------------------

    async def start_continuous_monitoring(
        self,
        sources: Optional[Sequence[Source]] = None,
        interval_secs: Optional[float] = None,
        condition: Optional[MarketCondition] = None,
    ) -> MonitoringSession:
        """Start a background session; it runs until stopped.

        A ``condition`` in emergency mode moves its emergency sources to the
        front of the session (so the per-tick cap keeps them) and, unless
        ``interval_secs`` is given, shortens the refresh interval.
        """
        pool = list(self.registry.valid() if sources is None else sources)
        interval = self.monitor_interval_secs if interval_secs is None else interval_secs
        if condition is not None:
            config = self.apply_market_condition(condition, pool)
            if config.emergency_mode:
                pool = config.emergency_sources + config.normal_sources
                if interval_secs is None:
                    interval = float(config.refresh_interval_secs)
        session = MonitoringSession(
            id=f"monitoring_{uuid.uuid4().hex[:12]}",
            sources=pool,
            interval_secs=interval,
        )
        self.sessions[session.id] = session
        self._tasks[session.id] = asyncio.ensure_future(
            self._monitor_loop(session, interval)
        )
        log.info(
            f"monitoring_started session={session.id} sources={len(session.sources)} "
            f"interval_s={interval}"
        )
        return session

    async def _monitor_loop(self, session: MonitoringSession, interval: float) -> None:
        try:
            while session.is_active:
                await self._monitor_tick(session)
                if not session.is_active:
                    break
                await asyncio.sleep(interval)
        finally:
            session.is_active = False
            session.status = SessionStatus.STOPPED
            self._tasks.pop(session.id, None)
            log.info(
                f"monitoring_stopped session={session.id} "
                f"collections={session.collections_count}"
            )

    async def _monitor_tick(self, session: MonitoringSession) -> None:
        try:
            run = await self.collect_parallel(session.sources[: self.monitor_source_limit])
        except Exception as e:
            log.warning(f"monitoring_tick_failed session={session.id} err={e}")
            return
        session.collections_count += 1
        session.successful += run.successful
        session.failed += run.failed
        session.emergency_detections += len(run.emergencies)
        if run.results:
            avg = sum(r.processing_time_ms for r in run.results) / len(run.results)
            n = session.collections_count
            session.average_response_time += (avg - session.average_response_time) / n

    async def stop_monitoring_session(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        session.is_active = False
        session.status = SessionStatus.STOPPED
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return True

    def get_active_sessions(self) -> List[MonitoringSession]:
        return [s for s in self.sessions.values() if s.is_active]

    async def shutdown(self) -> None:
        for session_id in list(self.sessions):
            await self.stop_monitoring_session(session_id)
        await self.processor.fetcher.close()
