"""
Bounded parallel fetch across many sources.

Every source gets exactly one :class:`CollectionResult` regardless of what
happens to its siblings.  One processor-wide semaphore caps in-flight fetches at the
configured ceiling (never above ``HARD_CONCURRENCY_CAP``).  Each source
has a total time budget covering all of its attempts; transient errors
are retried with exponential backoff while budget remains.

Status mapping for one source:

- ``success``  fetched and parsed (a 304 counts, with zero items)
- ``timeout``  the budget ran out during an attempt
- ``failure``  permanent error, parse error, or retries exhausted
- ``retry``    transient error with retries left but no budget for the
               backoff and another attempt
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Dict, Iterable, List, Optional, Sequence

import psutil

from .errors import FeedFetchError, FeedParseError
from .feed_state_manager import FeedStateManager
from .feeds import FeedFetcher
from .logging_utils import get_logger
from .models import (
    CollectionMetadata,
    CollectionResult,
    CollectionStatus,
    ConcurrencyConfig,
    LoadDistribution,
    OptimizationRecommendation,
    ResourceAllocation,
    ResourceOptimization,
    ResourceSnapshot,
    RetryResult,
    Source,
    SourceBatch,
    SystemLoad,
)

log = get_logger("parallel_processor")

HARD_CONCURRENCY_CAP = 20
MIN_ADAPTIVE_CONCURRENCY = 5
MAX_TIMEOUT_SECS = 60.0
FAILOVER_ATTEMPTS = 3

BASE_ESTIMATE_MS = 5000
_IMPACT_RANK = {"high": 3, "medium": 2, "low": 1}
_EXPECTED_IMPROVEMENT = {"high": 30, "medium": 20, "low": 10}


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 1)


class ParallelFeedProcessor:
    def __init__(
        self,
        fetcher: FeedFetcher,
        state: Optional[FeedStateManager] = None,
        max_concurrency: int = 15,
        timeout_secs: float = 15.0,
        max_retries: int = 2,
        backoff_base_secs: float = 1.0,
    ) -> None:
        self.fetcher = fetcher
        self.state = state or FeedStateManager()
        self.max_concurrency = max_concurrency
        self.timeout_secs = timeout_secs
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_secs = backoff_base_secs
        self.in_flight = 0
        self.peak_in_flight = 0
        self._process = psutil.Process()

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @max_concurrency.setter
    def max_concurrency(self, value: int) -> None:
        self._max_concurrency = max(1, min(HARD_CONCURRENCY_CAP, int(value)))
        # Shared by every pass and by failover so overlapping calls stay under
        # one ceiling. Fetches already holding the old one finish on it.
        self._semaphore = asyncio.Semaphore(self._max_concurrency)

    # ------------------------------------------------------------------
    # Resource sampling
    # ------------------------------------------------------------------

    def resource_snapshot(self) -> ResourceSnapshot:
        try:
            mem = self._process.memory_info()
            return ResourceSnapshot(
                cpu_percent=self._process.cpu_percent(interval=None),
                memory_percent=self._process.memory_percent(),
                memory_mb=mem.rss / (1024 * 1024),
                in_flight=self.in_flight,
            )
        except psutil.Error:
            return ResourceSnapshot(in_flight=self.in_flight)

    def system_load(self, network_latency_ms: float = 0.0) -> SystemLoad:
        return SystemLoad(
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=psutil.virtual_memory().percent,
            network_latency_ms=network_latency_ms,
        )

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def process_sources_in_parallel(
        self, sources: Sequence[Source]
    ) -> List[CollectionResult]:
        """Fetch every source under the concurrency ceiling.

        Results come back in input order; callers re-sort as needed.
        """
        if not sources:
            return []
        semaphore = self._semaphore
        start = time.perf_counter()
        results = await asyncio.gather(
            *(self._guarded(source, semaphore) for source in sources)
        )
        ok = sum(1 for r in results if r.ok)
        log.info(
            f"parallel_collection_done sources={len(sources)} successful={ok} "
            f"failed={len(results) - ok} peak_in_flight={self.peak_in_flight} "
            f"elapsed_ms={_elapsed_ms(start)}"
        )
        return list(results)

    async def _guarded(
        self, source: Source, semaphore: asyncio.Semaphore
    ) -> CollectionResult:
        async with semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await self.collect_source(source)
            finally:
                self.in_flight -= 1

    async def collect_source(self, source: Source) -> CollectionResult:
        """Fetch one source with retries inside its time budget. Never raises."""
        start = time.perf_counter()
        deadline = start + self.timeout_secs
        attempt = 0
        while True:
            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                return self._timed_out(source, start)
            try:
                items = await asyncio.wait_for(self.fetcher.fetch(source), remaining)
            except asyncio.TimeoutError:
                return self._timed_out(source, start)
            except FeedFetchError as e:
                if not e.transient or attempt >= self.max_retries:
                    return self._failed(source, start, str(e))
                backoff = self.backoff_base_secs * (2 ** attempt)
                if time.perf_counter() + backoff >= deadline:
                    log.warning(
                        f"feed_fetch_retry_deferred source={source.id} "
                        f"attempt={attempt + 1} err={e}"
                    )
                    return CollectionResult(
                        source_id=source.id,
                        status=CollectionStatus.RETRY,
                        processing_time_ms=_elapsed_ms(start),
                        error_message=str(e),
                        metadata=CollectionMetadata(
                            resource_usage=self.resource_snapshot()
                        ),
                    )
                log.debug(
                    f"feed_fetch_retrying source={source.id} attempt={attempt + 1} "
                    f"backoff_s={backoff}"
                )
                attempt += 1
                await asyncio.sleep(backoff)
                continue
            except FeedParseError as e:
                return self._failed(source, start, f"parse error: {e}")
            except Exception as e:
                return self._failed(source, start, f"{e.__class__.__name__}: {e}")

            new, dup = self.state.mark_seen(source.id, (it.id for it in items))
            result = CollectionResult(
                source_id=source.id,
                items=list(items),
                status=CollectionStatus.SUCCESS,
                processing_time_ms=_elapsed_ms(start),
                metadata=CollectionMetadata(
                    total_items=len(items),
                    new_items=new,
                    duplicates=dup,
                    resource_usage=self.resource_snapshot(),
                ),
            )
            log.debug(
                f"feed_fetch_ok source={source.id} items={len(items)} new={new} "
                f"elapsed_ms={result.processing_time_ms}"
            )
            return result

    def _timed_out(self, source: Source, start: float) -> CollectionResult:
        elapsed = _elapsed_ms(start)
        log.warning(f"feed_fetch_timeout source={source.id} elapsed_ms={elapsed}")
        return CollectionResult(
            source_id=source.id,
            status=CollectionStatus.TIMEOUT,
            processing_time_ms=elapsed,
            error_message=f"timed out after {self.timeout_secs}s",
            metadata=CollectionMetadata(resource_usage=self.resource_snapshot()),
        )

    def _failed(self, source: Source, start: float, message: str) -> CollectionResult:
        log.warning(f"feed_fetch_failed source={source.id} err={message}")
        return CollectionResult(
            source_id=source.id,
            status=CollectionStatus.FAILURE,
            processing_time_ms=_elapsed_ms(start),
            error_message=message,
            metadata=CollectionMetadata(resource_usage=self.resource_snapshot()),
        )

    # ------------------------------------------------------------------
    # Load distribution
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_processing_time_ms(source: Source) -> int:
        estimate = BASE_ESTIMATE_MS
        if source.error_count > 5:
            estimate += 2000
        if source.success_rate < 0.8:
            estimate += 1000
        return estimate

    def distribute_processing_load(
        self, sources: Iterable[Source], batch_size: Optional[int] = None
    ) -> LoadDistribution:
        """Partition sources into priority-ordered batches of at most ``batch_size``."""
        ordered = sorted(sources, key=lambda s: s.priority, reverse=True)
        size = max(1, batch_size or self.max_concurrency)
        batches: List[SourceBatch] = []
        for i in range(0, len(ordered), size):
            chunk = ordered[i : i + size]
            batches.append(
                SourceBatch(
                    batch_id=f"batch_{len(batches) + 1}",
                    sources=chunk,
                    priority=max(s.priority for s in chunk),
                    estimated_time_ms=max(
                        self.estimate_processing_time_ms(s) for s in chunk
                    ),
                    resource_requirement=len(chunk) * 10,
                )
            )

        allocations: List[ResourceAllocation] = []
        if batches:
            n = len(batches)
            for batch in batches:
                allocations.append(
                    ResourceAllocation(
                        batch_id=batch.batch_id,
                        cpu_percent=80.0 / n,
                        memory_percent=100.0 / n,
                        connections=max(1, math.floor(self.max_concurrency / n)),
                    )
                )
        return LoadDistribution(
            batches=batches,
            allocations=allocations,
            estimated_total_time_ms=sum(b.estimated_time_ms for b in batches),
        )

    # ------------------------------------------------------------------
    # Tuning
    # ------------------------------------------------------------------

    def optimize_resource_allocation(
        self,
        recent: Sequence[CollectionResult] = (),
        load: Optional[SystemLoad] = None,
    ) -> ResourceOptimization:
        """Ranked tuning recommendations from recent results and system load."""
        latency = (
            sum(r.processing_time_ms for r in recent) / len(recent) if recent else 0.0
        )
        error_rate = (
            sum(1 for r in recent if not r.ok) / len(recent) if recent else 0.0
        )
        memory = load.memory_percent if load is not None else 0.0

        recs: List[OptimizationRecommendation] = []
        if latency > 5000:
            recs.append(
                OptimizationRecommendation(
                    kind="timeout_adjustment",
                    description="Raise per-source timeout to absorb slow feeds",
                    impact="medium",
                    effort="low",
                    expected_improvement=_EXPECTED_IMPROVEMENT["medium"],
                    parameters={
                        "timeout_secs": min(
                            MAX_TIMEOUT_SECS,
                            max(self.timeout_secs, latency * 1.5 / 1000.0),
                        )
                    },
                )
            )
        if memory > 80:
            recs.append(
                OptimizationRecommendation(
                    kind="memory_optimization",
                    description="Reduce concurrent fetches to relieve memory pressure",
                    impact="high",
                    effort="medium",
                    expected_improvement=_EXPECTED_IMPROVEMENT["high"],
                    parameters={
                        "max_concurrency": max(
                            MIN_ADAPTIVE_CONCURRENCY, int(self.max_concurrency * 0.8)
                        )
                    },
                )
            )
        if error_rate > 0.1:
            recs.append(
                OptimizationRecommendation(
                    kind="retry_strategy",
                    description="Add a retry and lengthen backoff for flaky sources",
                    impact="medium",
                    effort="low",
                    expected_improvement=_EXPECTED_IMPROVEMENT["medium"],
                    parameters={
                        "max_retries": min(self.max_retries + 1, FAILOVER_ATTEMPTS),
                        "backoff_base_secs": self.backoff_base_secs * 1.5,
                    },
                )
            )
        if (
            load is not None
            and recent
            and error_rate <= 0.1
            and load.cpu_percent < 50
            and load.memory_percent < 60
            and self.max_concurrency < HARD_CONCURRENCY_CAP
        ):
            recs.append(
                OptimizationRecommendation(
                    kind="concurrency_scaling",
                    description="Raise the fetch ceiling while the host has headroom",
                    impact="high",
                    effort="low",
                    expected_improvement=_EXPECTED_IMPROVEMENT["high"],
                    parameters={
                        "max_concurrency": min(
                            HARD_CONCURRENCY_CAP, int(self.max_concurrency * 1.3)
                        )
                    },
                )
            )

        # impact desc, then effort asc
        recs.sort(key=lambda r: (-_IMPACT_RANK[r.impact], _IMPACT_RANK[r.effort]))
        if len(recs) > 2:
            priority = 3
        elif recs:
            priority = 2
        else:
            priority = 1
        return ResourceOptimization(
            recommendations=recs,
            priority=priority,
            expected_improvement=sum(r.expected_improvement for r in recs),
        )

    def apply_recommendation(self, rec: OptimizationRecommendation) -> None:
        params: Dict[str, float] = rec.parameters
        if "timeout_secs" in params:
            self.timeout_secs = float(params["timeout_secs"])
        if "max_concurrency" in params:
            self.max_concurrency = int(params["max_concurrency"])
        if "max_retries" in params:
            self.max_retries = int(params["max_retries"])
        if "backoff_base_secs" in params:
            self.backoff_base_secs = float(params["backoff_base_secs"])
        log.info(f"optimization_applied kind={rec.kind} params={params}")

    def adaptive_concurrency_control(self, load: SystemLoad) -> ConcurrencyConfig:
        """Shrink the ceiling under pressure, grow it when the host is idle."""
        current = self.max_concurrency
        reason = "load nominal"
        if load.cpu_percent > 80 or load.memory_percent > 85:
            self.max_concurrency = max(MIN_ADAPTIVE_CONCURRENCY, int(current * 0.6))
            reason = "high system load"
        elif (
            load.cpu_percent < 50
            and load.memory_percent < 60
            and load.network_latency_ms < 100
        ):
            self.max_concurrency = min(HARD_CONCURRENCY_CAP, int(current * 1.3))
            reason = "spare capacity"
        if self.max_concurrency != current:
            log.info(
                f"concurrency_adjusted old={current} new={self.max_concurrency} "
                f"cpu={load.cpu_percent} mem={load.memory_percent}"
            )
        return ConcurrencyConfig(
            max_concurrency=self.max_concurrency,
            timeout_secs=self.timeout_secs,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Failover
    # ------------------------------------------------------------------

    async def handle_failover_retry(self, sources: Sequence[Source]) -> List[RetryResult]:
        """Re-attempt failed sources up to three times each with backoff."""
        semaphore = self._semaphore

        async def retry_one(source: Source) -> RetryResult:
            async with semaphore:
                start = time.perf_counter()
                last_error: Optional[str] = None
                for attempt in range(1, FAILOVER_ATTEMPTS + 1):
                    try:
                        items = await asyncio.wait_for(
                            self.fetcher.fetch(source), self.timeout_secs
                        )
                    except asyncio.TimeoutError:
                        last_error = f"timed out after {self.timeout_secs}s"
                    except Exception as e:
                        last_error = f"{e.__class__.__name__}: {e}"
                    else:
                        new, dup = self.state.mark_seen(source.id, (i.id for i in items))
                        elapsed = _elapsed_ms(start)
                        log.info(
                            f"failover_recovered source={source.id} attempts={attempt} "
                            f"elapsed_ms={elapsed}"
                        )
                        return RetryResult(
                            source_id=source.id,
                            attempts=attempt,
                            success=True,
                            recovery_time_ms=elapsed,
                            result=CollectionResult(
                                source_id=source.id,
                                items=list(items),
                                processing_time_ms=elapsed,
                                metadata=CollectionMetadata(
                                    total_items=len(items),
                                    new_items=new,
                                    duplicates=dup,
                                    resource_usage=self.resource_snapshot(),
                                ),
                            ),
                        )
                    if attempt < FAILOVER_ATTEMPTS:
                        await asyncio.sleep(self.backoff_base_secs * (2 ** (attempt - 1)))
                log.warning(
                    f"failover_exhausted source={source.id} attempts={FAILOVER_ATTEMPTS} "
                    f"err={last_error}"
                )
                return RetryResult(
                    source_id=source.id,
                    attempts=FAILOVER_ATTEMPTS,
                    success=False,
                    final_error=last_error,
                    recovery_time_ms=_elapsed_ms(start),
                )

        return list(await asyncio.gather(*(retry_one(s) for s in sources)))
