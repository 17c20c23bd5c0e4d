"""
Tests for the BatchAnalytics class in batchmux.analytics.
"""

import asyncio

import pytest

from batchmux.analytics import BatchAnalytics
from batchmux.core import BatchManager
from tests.mocks.batching import FakeBatchAPI, RecordingExecutor, make_client_factory
from tests.mocks.clock import FakeClock


async def _run_batch(manager: BatchManager, endpoints: list[str]) -> None:
    """
    Send ``endpoints`` as one batch and wait for it.

    Parameters
    ----------
    manager : BatchManager
        Manager under test.
    endpoints : list[str]
        Endpoints requested with ``GET``.
    """
    futures = [manager.get(endpoint) for endpoint in endpoints]
    manager.flush()
    await asyncio.gather(*futures, return_exceptions=True)


@pytest.fixture
def manager() -> BatchManager:
    return BatchManager(executor=RecordingExecutor(), clock=FakeClock())


@pytest.mark.asyncio
async def test_summary(manager: BatchManager) -> None:
    """Test derived metrics for 4 requests over 2 fingerprints."""
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a", "/a", "/b", "/b"])

    summary = analytics.get_summary()

    assert summary.potential_requests == 4
    assert summary.actual_requests == 1
    assert summary.efficiency == pytest.approx(0.75)
    assert summary.deduplication_rate == pytest.approx(0.5)
    assert summary.average_batch_size == pytest.approx(4.0)
    assert summary.requests_saved == 2
    assert summary.requests_deduped == 2
    assert summary.estimated_time_saved_seconds == pytest.approx(0.2)


def test_summary_without_traffic(manager: BatchManager) -> None:
    """Test that an idle manager reports zero efficiency."""
    summary = BatchAnalytics(manager).get_summary()

    assert summary.potential_requests == 0
    assert summary.efficiency == 0.0
    assert summary.estimated_time_saved_seconds == 0.0


@pytest.mark.asyncio
async def test_custom_time_estimate(manager: BatchManager) -> None:
    """Test that the per-request estimate scales time saved."""
    analytics = BatchAnalytics(manager, per_request_time_estimate_seconds=0.1)
    await _run_batch(manager, ["/a", "/a"])

    assert analytics.get_summary().estimated_time_saved_seconds == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_snapshot_history_is_bounded(manager: BatchManager) -> None:
    """Test that the oldest snapshot is evicted once the history is full."""
    analytics = BatchAnalytics(manager, history_size=2)

    first = analytics.snapshot()
    await _run_batch(manager, ["/a"])
    second = analytics.snapshot()
    third = analytics.snapshot()

    assert analytics.history == [second, third]
    assert first not in analytics.history
    assert second.manager["total_requests"] == 1
    assert second.scheduler["manual_flushes"] == 1
    assert second.deduplicator["total_requests"] == 1


def test_history_size_must_be_positive(manager: BatchManager) -> None:
    """Test that an empty ring buffer is rejected."""
    with pytest.raises(ValueError):
        BatchAnalytics(manager, history_size=0)


@pytest.mark.asyncio
async def test_duplicate_recommendation(manager: BatchManager) -> None:
    """Test the hint emitted when many requests are duplicates."""
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a", "/a", "/b", "/b"])

    recommendations = analytics.get_recommendations()

    assert len(recommendations) == 1
    assert "were duplicates" in recommendations[0]


@pytest.mark.asyncio
async def test_low_efficiency_recommendation(manager: BatchManager) -> None:
    """Test the hint emitted when batches carry a single request."""
    analytics = BatchAnalytics(manager)
    for index in range(10):
        await _run_batch(manager, [f"/items/{index}"])

    recommendations = analytics.get_recommendations()

    assert any("consider widening the batch window" in item for item in recommendations)


@pytest.mark.asyncio
async def test_low_efficiency_needs_enough_batches(manager: BatchManager) -> None:
    """Test that the efficiency hint waits for enough batches."""
    analytics = BatchAnalytics(manager)
    for index in range(3):
        await _run_batch(manager, [f"/items/{index}"])

    assert analytics.get_recommendations() == []


@pytest.mark.asyncio
async def test_large_batch_recommendation() -> None:
    """Test the hint emitted when batches fill up to the limit."""
    manager = BatchManager(executor=RecordingExecutor(), clock=FakeClock(), max_batch_size=5)
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, [f"/items/{index}" for index in range(5)])

    recommendations = analytics.get_recommendations()

    assert any("close to the limit of 5" in item for item in recommendations)


@pytest.mark.asyncio
async def test_fallback_recommendation() -> None:
    """Test the hint emitted when the batch endpoint failed."""
    api = FakeBatchAPI(batch_status=500)
    manager = BatchManager(client_factory=make_client_factory(api), clock=FakeClock())
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a", "/b"])

    summary = analytics.get_summary()
    recommendations = analytics.get_recommendations(summary=summary)

    assert summary.actual_requests == 3
    assert summary.efficiency == pytest.approx(-0.5)
    assert any("check the batch endpoint health" in item for item in recommendations)


@pytest.mark.asyncio
async def test_failed_batch_recommendation() -> None:
    """Test the hint emitted when whole batches failed."""
    manager = BatchManager(
        executor=RecordingExecutor(error=RuntimeError("boom")),
        clock=FakeClock(),
    )
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a"])

    recommendations = analytics.get_recommendations()

    assert any("1 batch(es) failed as a whole" in item for item in recommendations)


@pytest.mark.asyncio
async def test_report(manager: BatchManager) -> None:
    """Test that the report bundles summary, history and recommendations."""
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a", "/a"])
    analytics.snapshot()

    report = analytics.get_report()
    payload = report.to_dict()

    assert report.summary.potential_requests == 2
    assert len(report.history) == 1
    assert payload["summary"]["requests_deduped"] == 1
    assert payload["history"][0]["manager"]["total_batches"] == 1
    assert payload["recommendations"] == report.recommendations


@pytest.mark.asyncio
async def test_reset_stats(manager: BatchManager) -> None:
    """Test that reset clears every component and the history."""
    analytics = BatchAnalytics(manager)
    await _run_batch(manager, ["/a", "/a"])
    analytics.snapshot()

    analytics.reset_stats()

    summary = analytics.get_summary()
    assert summary.potential_requests == 0
    assert summary.requests_deduped == 0
    assert analytics.history == []
    assert manager.scheduler.get_stats()["scheduled"] == 0
