import asyncio

import pytest

from feedsentry.errors import FeedFetchError, FeedParseError
from feedsentry.models import CollectionResult, CollectionStatus, SystemLoad
from feedsentry.parallel_processor import HARD_CONCURRENCY_CAP, ParallelFeedProcessor
from tests.fixtures import FakeFetcher, make_item, make_source


def _transient(status=503):
    return FeedFetchError(f"HTTP {status}", status=status, transient=True)


def _processor(fetcher, **kwargs):
    kwargs.setdefault("backoff_base_secs", 0.001)
    return ParallelFeedProcessor(fetcher, **kwargs)


def test_concurrency_is_clamped():
    assert _processor(FakeFetcher(), max_concurrency=50).max_concurrency == HARD_CONCURRENCY_CAP
    assert _processor(FakeFetcher(), max_concurrency=0).max_concurrency == 1


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_ceiling():
    sources = [make_source(f"src_{i:02d}") for i in range(40)]
    fetcher = FakeFetcher(default_delay=0.01)
    processor = _processor(fetcher, max_concurrency=15)

    results = await processor.process_sources_in_parallel(sources)

    assert [r.source_id for r in results] == [s.id for s in sources]
    assert all(r.ok for r in results)
    assert fetcher.peak_in_flight <= 15
    assert processor.peak_in_flight <= 15
    assert processor.in_flight == 0


@pytest.mark.asyncio
async def test_overlapping_passes_share_one_ceiling():
    """Test concurrent passes and failover never exceed the processor ceiling."""
    fetcher = FakeFetcher(default_delay=0.02)
    processor = _processor(fetcher, max_concurrency=3)

    first, second, failover = await asyncio.gather(
        processor.process_sources_in_parallel([make_source(f"a{i}") for i in range(3)]),
        processor.process_sources_in_parallel([make_source(f"b{i}") for i in range(3)]),
        processor.handle_failover_retry([make_source(f"c{i}") for i in range(2)]),
    )

    assert all(r.ok for r in first + second)
    assert all(r.success for r in failover)
    assert fetcher.peak_in_flight == 3
    assert processor.in_flight == 0


@pytest.mark.asyncio
async def test_ceiling_change_applies_to_later_passes():
    fetcher = FakeFetcher(default_delay=0.01)
    processor = _processor(fetcher, max_concurrency=10)
    processor.max_concurrency = 2

    await processor.process_sources_in_parallel([make_source(f"s{i}") for i in range(6)])

    assert fetcher.peak_in_flight == 2


@pytest.mark.asyncio
async def test_empty_input():
    assert await _processor(FakeFetcher()).process_sources_in_parallel([]) == []


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_siblings():
    fetcher = FakeFetcher(
        items={"good": [make_item("Fed holds rates", source_id="good")]},
        script={
            "gone": [FeedFetchError("HTTP 404", status=404, transient=False)],
            "broken": [ValueError("boom")],
            "garbled": [FeedParseError("no items array")],
        },
    )
    sources = [make_source(sid) for sid in ("good", "gone", "broken", "garbled")]

    results = await _processor(fetcher).process_sources_in_parallel(sources)
    by_id = {r.source_id: r for r in results}

    assert by_id["good"].status == CollectionStatus.SUCCESS
    assert len(by_id["good"].items) == 1
    assert by_id["gone"].status == CollectionStatus.FAILURE
    assert by_id["broken"].error_message == "ValueError: boom"
    assert by_id["garbled"].error_message.startswith("parse error:")
    # permanent failures are not retried
    assert fetcher.calls["gone"] == 1


@pytest.mark.asyncio
async def test_slow_source_times_out():
    fetcher = FakeFetcher(delays={"slow": 1.0})
    processor = _processor(fetcher, timeout_secs=0.05)

    results = await processor.process_sources_in_parallel(
        [make_source("slow"), make_source("fast")]
    )

    assert results[0].status == CollectionStatus.TIMEOUT
    assert results[0].items == []
    assert results[1].ok


@pytest.mark.asyncio
async def test_transient_error_is_retried():
    item = make_item("Yen jumps on intervention", source_id="flaky")
    fetcher = FakeFetcher(script={"flaky": [_transient(), [item]]})

    result = await _processor(fetcher).collect_source(make_source("flaky"))

    assert result.ok
    assert result.items == [item]
    assert fetcher.calls["flaky"] == 2


@pytest.mark.asyncio
async def test_retries_exhausted_is_failure():
    fetcher = FakeFetcher(script={"flaky": [_transient(), _transient(), _transient()]})

    result = await _processor(fetcher, max_retries=2).collect_source(make_source("flaky"))

    assert result.status == CollectionStatus.FAILURE
    assert fetcher.calls["flaky"] == 3


@pytest.mark.asyncio
async def test_no_budget_for_backoff_is_retry_status():
    fetcher = FakeFetcher(script={"flaky": [_transient(429)]})
    processor = ParallelFeedProcessor(fetcher, timeout_secs=1.0, backoff_base_secs=10.0)

    result = await processor.collect_source(make_source("flaky"))

    assert result.status == CollectionStatus.RETRY
    assert "429" in result.error_message
    assert fetcher.calls["flaky"] == 1


@pytest.mark.asyncio
async def test_second_pass_reports_duplicates():
    items = [make_item(f"Headline {i}", source_id="reuters_fx") for i in range(3)]
    fetcher = FakeFetcher(items={"reuters_fx": items})
    processor = _processor(fetcher)
    source = make_source("reuters_fx")

    first = await processor.collect_source(source)
    second = await processor.collect_source(source)

    assert (first.metadata.new_items, first.metadata.duplicates) == (3, 0)
    assert (second.metadata.new_items, second.metadata.duplicates) == (0, 3)
    assert second.metadata.resource_usage is not None


def test_distribute_processing_load():
    sources = [make_source(f"s{p}", priority=p) for p in (3, 9, 5, 7, 1, 8, 6)]
    sources[0].error_count = 6
    processor = _processor(FakeFetcher(), max_concurrency=15)

    dist = processor.distribute_processing_load(sources, batch_size=3)

    assert [b.batch_id for b in dist.batches] == ["batch_1", "batch_2", "batch_3"]
    assert [[s.priority for s in b.sources] for b in dist.batches] == [
        [9, 8, 7],
        [6, 5, 3],
        [1],
    ]
    assert dist.batches[1].estimated_time_ms == 7000
    assert dist.estimated_total_time_ms == 5000 + 7000 + 5000
    assert [a.connections for a in dist.allocations] == [5, 5, 5]
    assert dist.allocations[0].cpu_percent == pytest.approx(80 / 3)


def test_distribute_empty():
    dist = _processor(FakeFetcher()).distribute_processing_load([])
    assert dist.batches == [] and dist.allocations == []


def _results(n_ok, n_failed, elapsed_ms):
    ok = [CollectionResult(source_id=f"ok{i}", processing_time_ms=elapsed_ms) for i in range(n_ok)]
    bad = [
        CollectionResult(
            source_id=f"bad{i}",
            status=CollectionStatus.FAILURE,
            processing_time_ms=elapsed_ms,
        )
        for i in range(n_failed)
    ]
    return ok + bad


def test_optimize_under_stress_ranks_by_impact_then_effort():
    processor = _processor(FakeFetcher(), max_concurrency=15)
    opt = processor.optimize_resource_allocation(
        _results(2, 2, 6000), SystemLoad(cpu_percent=70, memory_percent=90)
    )
    assert [r.kind for r in opt.recommendations] == [
        "memory_optimization",
        "timeout_adjustment",
        "retry_strategy",
    ]
    assert opt.priority == 3
    assert opt.expected_improvement == 70
    assert opt.recommendations[0].parameters["max_concurrency"] == 12


def test_optimize_with_headroom_scales_concurrency():
    processor = _processor(FakeFetcher(), max_concurrency=15)
    opt = processor.optimize_resource_allocation(
        _results(5, 0, 300), SystemLoad(cpu_percent=10, memory_percent=20)
    )
    (rec,) = opt.recommendations
    assert rec.kind == "concurrency_scaling"
    assert rec.parameters == {"max_concurrency": 19}
    assert opt.priority == 2

    processor.apply_recommendation(rec)
    assert processor.max_concurrency == 19


def test_optimize_nothing_to_do():
    opt = _processor(FakeFetcher()).optimize_resource_allocation()
    assert opt.recommendations == []
    assert opt.priority == 1


def test_adaptive_concurrency_control():
    processor = _processor(FakeFetcher(), max_concurrency=15)

    busy = processor.adaptive_concurrency_control(SystemLoad(90, 50))
    assert (busy.max_concurrency, busy.reason) == (9, "high system load")

    idle = processor.adaptive_concurrency_control(SystemLoad(10, 20, 20))
    assert (idle.max_concurrency, idle.reason) == (11, "spare capacity")

    steady = processor.adaptive_concurrency_control(SystemLoad(60, 50))
    assert (steady.max_concurrency, steady.reason) == (11, "load nominal")

    for _ in range(10):
        processor.adaptive_concurrency_control(SystemLoad(95, 95))
    assert processor.max_concurrency == 5


@pytest.mark.asyncio
async def test_failover_retry():
    item = make_item("Swiss franc spikes", source_id="flaky")
    fetcher = FakeFetcher(
        script={
            "flaky": [_transient(), ValueError("reset"), [item]],
            "dead": [_transient(), _transient(), _transient()],
        }
    )
    results = await _processor(fetcher).handle_failover_retry(
        [make_source("flaky"), make_source("dead")]
    )
    recovered, dead = results

    assert recovered.success and recovered.attempts == 3
    assert recovered.result.items == [item]
    assert not dead.success
    assert dead.attempts == 3
    assert "503" in dead.final_error
