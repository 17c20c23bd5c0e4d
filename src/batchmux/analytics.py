"""
Read-only efficiency telemetry over a ``BatchManager`` and its components.
"""

from __future__ import annotations

import time
import typing as t
from collections import deque
from dataclasses import asdict, dataclass, field

import structlog

from batchmux.core import BatchManager

log = structlog.get_logger(__name__)

DEFAULT_HISTORY_SIZE = 100
DEFAULT_PER_REQUEST_TIME_SECONDS = 0.05

LOW_EFFICIENCY_THRESHOLD = 0.2
MIN_BATCHES_FOR_EFFICIENCY_HINT = 10
HIGH_BATCH_FILL_RATIO = 0.8
HIGH_DEDUPLICATION_RATE = 0.3


@dataclass(frozen=True)
class AnalyticsSummary:
    """
    Derived efficiency metrics.

    Notes
    -----
    ``efficiency`` compares network round trips to logical requests and is
    negative when fallbacks cost more round trips than unbatched calls would.
    """

    potential_requests: int
    actual_requests: int
    efficiency: float
    deduplication_rate: float
    average_batch_size: float
    requests_saved: int
    requests_deduped: int
    estimated_time_saved_seconds: float


@dataclass(frozen=True)
class AnalyticsSnapshot:
    timestamp: float
    manager: dict[str, t.Any]
    scheduler: dict[str, t.Any]
    deduplicator: dict[str, t.Any]


@dataclass
class BatchReport:
    summary: AnalyticsSummary
    history: list[AnalyticsSnapshot] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, t.Any]:
        return asdict(self)


class BatchAnalytics:
    """
    Aggregate stats of a manager, its scheduler and its deduplicator.

    Parameters
    ----------
    manager : BatchManager
        Observed manager. Its scheduler and deduplicator are observed too.
    per_request_time_estimate_seconds : float, optional
        Latency assumed for one avoided round trip.
    history_size : int, optional
        Capacity of the snapshot ring buffer.
    """

    def __init__(
        self,
        manager: BatchManager,
        *,
        per_request_time_estimate_seconds: float = DEFAULT_PER_REQUEST_TIME_SECONDS,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        if history_size <= 0:
            raise ValueError("history_size must be positive")
        self._manager = manager
        self._per_request_time_seconds = per_request_time_estimate_seconds
        self._history: deque[AnalyticsSnapshot] = deque(maxlen=history_size)

    @property
    def history(self) -> list[AnalyticsSnapshot]:
        return list(self._history)

    def get_summary(self) -> AnalyticsSummary:
        """
        Compute the current efficiency summary.

        Returns
        -------
        AnalyticsSummary
            Summary derived from live component stats.
        """
        manager_stats = self._manager.get_stats()
        dedup_stats = self._manager.deduplicator.get_stats()
        potential = manager_stats.total_requests
        actual = manager_stats.round_trips
        efficiency = 1 - actual / potential if potential > 0 else 0.0
        requests_deduped = dedup_stats["deduplicated_requests"]
        return AnalyticsSummary(
            potential_requests=potential,
            actual_requests=actual,
            efficiency=efficiency,
            deduplication_rate=dedup_stats["deduplication_rate"],
            average_batch_size=manager_stats.average_batch_size,
            requests_saved=manager_stats.requests_saved,
            requests_deduped=requests_deduped,
            estimated_time_saved_seconds=(
                (manager_stats.requests_saved + requests_deduped) * self._per_request_time_seconds
            ),
        )

    def snapshot(self) -> AnalyticsSnapshot:
        """
        Record the stats of all three components; the oldest entry is evicted when full.

        Returns
        -------
        AnalyticsSnapshot
            The recorded snapshot.
        """
        snapshot = AnalyticsSnapshot(
            timestamp=time.time(),
            manager=self._manager.get_stats().to_dict(),
            scheduler=self._manager.scheduler.get_stats(),
            deduplicator=self._manager.deduplicator.get_stats(),
        )
        self._history.append(snapshot)
        return snapshot

    def get_recommendations(self, summary: AnalyticsSummary | None = None) -> list[str]:
        """
        Build tuning hints from threshold rules.

        Parameters
        ----------
        summary : AnalyticsSummary | None, optional
            Precomputed summary; computed when omitted.

        Returns
        -------
        list[str]
            Human readable recommendations.
        """
        summary = summary or self.get_summary()
        manager_stats = self._manager.get_stats()
        config = self._manager.config
        recommendations: list[str] = []

        if (
            manager_stats.total_batches >= MIN_BATCHES_FOR_EFFICIENCY_HINT
            and summary.efficiency < LOW_EFFICIENCY_THRESHOLD
        ):
            recommendations.append(
                f"Batching efficiency is low ({summary.efficiency:.0%} over "
                f"{manager_stats.total_batches} batches): consider widening the batch window "
                f"(currently {config.batch_window_seconds * 1000:g}ms)."
            )
        if summary.average_batch_size >= config.max_batch_size * HIGH_BATCH_FILL_RATIO:
            recommendations.append(
                f"Average batch size {summary.average_batch_size:.1f} is close to the "
                f"limit of {config.max_batch_size}: large batches may add latency, "
                "consider a smaller max batch size or a shorter window."
            )
        if summary.deduplication_rate >= HIGH_DEDUPLICATION_RATE:
            recommendations.append(
                f"{summary.deduplication_rate:.0%} of requests were duplicates: several "
                "callers fetch the same data, consider sharing results between them."
            )
        if manager_stats.fallbacks:
            recommendations.append(
                f"The batch endpoint failed {manager_stats.fallbacks} time(s) and requests "
                "were executed individually: check the batch endpoint health."
            )
        if manager_stats.failed_batches:
            recommendations.append(
                f"{manager_stats.failed_batches} batch(es) failed as a whole: check the "
                "executor and transport errors in the logs."
            )
        return recommendations

    def get_report(self) -> BatchReport:
        summary = self.get_summary()
        return BatchReport(
            summary=summary,
            history=self.history,
            recommendations=self.get_recommendations(summary=summary),
        )

    def reset_stats(self) -> None:
        """
        Reset component stats through their own hooks and drop the history.
        """
        self._manager.reset_stats()
        self._manager.scheduler.reset_stats()
        self._manager.deduplicator.reset_stats()
        self._history.clear()
        log.debug(event="Analytics reset")
