"""
Request fingerprinting and in-flight tracking.
"""

from __future__ import annotations

import hashlib
import json
import typing as t
from dataclasses import asdict, dataclass

import structlog

log = structlog.get_logger(__name__)


@dataclass
class DeduplicatorStats:
    total_requests: int = 0
    deduplicated_requests: int = 0

    @property
    def deduplication_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.deduplicated_requests / self.total_requests


class Deduplicator:
    """
    Compute canonical request fingerprints and track which are in flight.

    A fingerprint is in flight from the moment its first request is
    registered until the batch carrying it settled all of its waiters.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._stats = DeduplicatorStats()

    @staticmethod
    def canonicalize(params: t.Any) -> str:
        """
        Serialize request parameters into a key-order independent string.

        Parameters
        ----------
        params : typing.Any
            JSON-like request parameters.

        Returns
        -------
        str
            Compact JSON with sorted keys. Mapping keys are stringified so
            mixed key types never get compared, and values JSON cannot
            encode are stringified.
        """
        return json.dumps(
            obj=_stringify_keys(params),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )

    def generate_key(self, endpoint: str, params: t.Any = None) -> str:
        """
        Build the dedup key for a request.

        Parameters
        ----------
        endpoint : str
            Request endpoint.
        params : typing.Any, optional
            Request parameters (including the method).

        Returns
        -------
        str
            Key formatted as ``endpoint:sha256``.
        """
        canonical_payload = self.canonicalize(params)
        digest = hashlib.sha256(canonical_payload.encode(encoding="utf-8")).hexdigest()
        return f"{endpoint}:{digest}"

    def register(self, key: str) -> bool:
        """
        Record one logical request for ``key``.

        Parameters
        ----------
        key : str
            Fingerprint of the request.

        Returns
        -------
        bool
            ``True`` when the fingerprint was already in flight, meaning the
            request collapses into an existing one.
        """
        self._stats.total_requests += 1
        if key in self._in_flight:
            self._stats.deduplicated_requests += 1
            log.debug(event="Deduplicated request", key=key)
            return True
        self._in_flight.add(key)
        return False

    def mark_in_flight(self, keys: t.Iterable[str]) -> None:
        """
        Mark fingerprints as executing without counting new requests.

        Parameters
        ----------
        keys : typing.Iterable[str]
            Fingerprints handed to an execution.
        """
        self._in_flight.update(keys)

    def release(self, keys: t.Iterable[str]) -> None:
        """
        Mark fingerprints as settled.

        Parameters
        ----------
        keys : typing.Iterable[str]
            Fingerprints whose waiters were all settled.
        """
        for key in keys:
            self._in_flight.discard(key)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> dict[str, t.Any]:
        return {
            **asdict(self._stats),
            "deduplication_rate": self._stats.deduplication_rate,
            "in_flight": len(self._in_flight),
        }

    def reset_stats(self) -> None:
        self._stats = DeduplicatorStats()


def _stringify_keys(value: t.Any) -> t.Any:
    # Keys become strings, as they do in the JSON payload.
    if isinstance(value, t.Mapping):
        return {str(object=key): _stringify_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_keys(item) for item in value]
    return value
