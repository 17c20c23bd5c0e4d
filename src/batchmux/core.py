"""
Core engine multiplexing individual requests into batched round trips.
Requests are grouped by fingerprint while a window is open, one representative
per fingerprint is sent, and each response fans out to every waiter sharing it.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
import uuid
from dataclasses import dataclass, replace

import httpx
import structlog
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from batchmux.clock import Clock
from batchmux.config import BatchManagerConfig
from batchmux.dedup import Deduplicator
from batchmux.exceptions import (
    BatchmuxError,
    ClientQueueError,
    CompletionStateError,
    ConfigurationError,
    ServerError,
    TransportError,
)
from batchmux.models import (
    BatchEnvelope,
    BatchError,
    BatchManagerStats,
    BatchRequest,
    BatchResponse,
    HttpMethod,
    Priority,
    batch_response_list_adapter,
)
from batchmux.scheduling import WindowScheduler
from batchmux.utils.logging import logging_context

log = structlog.get_logger(__name__)

Executor = t.Callable[
    [list[BatchRequest]],
    t.Awaitable[t.Sequence[BatchResponse | dict[str, t.Any]]],
]
_BODYLESS_METHODS = frozenset({"GET", "DELETE"})


@dataclass
class _Completion:
    """One-shot completion channel backing a waiter's future."""

    future: asyncio.Future[t.Any]
    settled: bool = False

    def resolve(self, value: t.Any) -> None:
        self._mark_settled()
        if not self.future.cancelled():
            self.future.set_result(value)

    def reject(self, error: BaseException) -> None:
        self._mark_settled()
        if not self.future.cancelled():
            self.future.set_exception(error)

    def _mark_settled(self) -> None:
        if self.settled:
            raise CompletionStateError("Waiter completed more than once")
        self.settled = True


@dataclass
class _PendingRequest:
    """A request waiting for its batch to settle."""

    request: BatchRequest
    completion: _Completion


class BatchManager:
    """
    Collect individual requests and execute them as deduplicated batches.

    Parameters
    ----------
    config : BatchManagerConfig | None, optional
        Validated options. Keyword ``options`` override its fields.
    executor : Executor | None, optional
        Coroutine function executing a list of requests. When omitted the
        configured batch endpoint is used over HTTP.
    scheduler : WindowScheduler | None, optional
        Scheduler deciding when to flush; built from ``config`` when omitted.
    deduplicator : Deduplicator | None, optional
        Fingerprinting component; a private one is built when omitted.
    clock : Clock | None, optional
        Timer capability forwarded to the default scheduler.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory for HTTP clients used by the default transport.
    **options : typing.Any
        ``BatchManagerConfig`` field overrides.

    Examples
    --------
    >>> manager = BatchManager(base_url="https://example.org")
    >>> user, posts = await asyncio.gather(
    ...     manager.get("/api/users/1"),
    ...     manager.get("/api/posts", {"user_id": 1}),
    ... )
    """

    def __init__(
        self,
        config: BatchManagerConfig | None = None,
        *,
        executor: Executor | None = None,
        scheduler: WindowScheduler | None = None,
        deduplicator: Deduplicator | None = None,
        clock: Clock | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
        **options: t.Any,
    ) -> None:
        if config is None:
            config = BatchManagerConfig.build(**options)
        elif options:
            config = BatchManagerConfig.build(**{**config.model_dump(), **options})
        if executor is not None and not callable(executor):
            raise ConfigurationError(f"Batch executor must be callable, got {type(executor)!r}")

        self._config = config
        self._executor = executor
        self._scheduler = scheduler or WindowScheduler(
            default_window_seconds=config.batch_window_seconds,
            max_window_seconds=config.max_batch_window_seconds,
            max_batch_size=config.max_batch_size,
            clock=clock,
        )
        self._deduplicator = deduplicator or Deduplicator()
        self._client_factory: t.Callable[[], httpx.AsyncClient] = client_factory or (
            lambda: httpx.AsyncClient(
                base_url=config.base_url,
                timeout=config.request_timeout_seconds,
            )
        )

        # Fingerprint -> waiters. A fingerprint lives in exactly one of these maps.
        self._pending: dict[str, list[_PendingRequest]] = {}
        self._executing: dict[str, list[_PendingRequest]] = {}
        self._batch_tasks: set[asyncio.Task[None]] = set()
        self._stats = BatchManagerStats()

        log.debug(
            event="Initialized BatchManager",
            batch_endpoint=config.batch_endpoint,
            max_batch_size=config.max_batch_size,
            batch_window_seconds=config.batch_window_seconds,
            max_batch_window_seconds=config.max_batch_window_seconds,
            dedupe=config.dedupe,
            dry_run=config.dry_run,
            custom_executor=executor is not None,
        )

    @property
    def config(self) -> BatchManagerConfig:
        return self._config

    @property
    def scheduler(self) -> WindowScheduler:
        return self._scheduler

    @property
    def deduplicator(self) -> Deduplicator:
        return self._deduplicator

    def add(
        self,
        endpoint: str,
        method: HttpMethod | str = "GET",
        data: t.Any = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        """
        Queue a request and return a future settled when its batch resolves.

        Parameters
        ----------
        endpoint : str
            Request endpoint.
        method : HttpMethod | str, optional
            HTTP method.
        data : typing.Any, optional
            Query parameters for ``GET`` and ``DELETE``, body otherwise.
        priority : Priority | str, optional
            ``urgent`` flushes the current window immediately.

        Returns
        -------
        asyncio.Future[typing.Any]
            Future resolved with the response data, or rejected with a
            ``BatchmuxError``.
        """
        loop = asyncio.get_running_loop()
        priority = Priority(priority)
        request = self._build_request(
            endpoint=endpoint,
            method=method,
            data=data,
            priority=priority,
        )
        key = self._build_key(request=request)
        pending = _PendingRequest(request=request, completion=_Completion(future=loop.create_future()))
        duplicate = self._deduplicator.register(key)

        executing = self._executing.get(key)
        if executing is not None:
            executing.append(pending)
            log.debug(
                event="Joined in-flight request",
                endpoint=endpoint,
                method=request.method,
                request_id=request.id,
            )
            return pending.completion.future

        self._pending.setdefault(key, []).append(pending)
        self._stats.pending_requests = self.get_pending_count()
        log.debug(
            event="Queued request for batch",
            endpoint=endpoint,
            method=request.method,
            priority=str(priority),
            request_id=request.id,
            duplicate=duplicate,
            pending_count=self._stats.pending_requests,
        )

        self._scheduler.schedule(self._on_flush, priority)
        return pending.completion.future

    def get(
        self,
        endpoint: str,
        params: t.Mapping[str, t.Any] | None = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        return self.add(endpoint, "GET", params, priority)

    def post(
        self,
        endpoint: str,
        data: t.Any = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        return self.add(endpoint, "POST", data, priority)

    def put(
        self,
        endpoint: str,
        data: t.Any = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        return self.add(endpoint, "PUT", data, priority)

    def patch(
        self,
        endpoint: str,
        data: t.Any = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        return self.add(endpoint, "PATCH", data, priority)

    def delete(
        self,
        endpoint: str,
        params: t.Mapping[str, t.Any] | None = None,
        priority: Priority | str = Priority.normal,
    ) -> asyncio.Future[t.Any]:
        return self.add(endpoint, "DELETE", params, priority)

    async def immediate(
        self,
        endpoint: str,
        method: HttpMethod | str = "GET",
        data: t.Any = None,
    ) -> t.Any:
        """
        Execute a request right away, outside of any window.

        Parameters
        ----------
        endpoint : str
            Request endpoint.
        method : HttpMethod | str, optional
            HTTP method.
        data : typing.Any, optional
            Query parameters for ``GET`` and ``DELETE``, body otherwise.

        Returns
        -------
        typing.Any
            Response data.

        Notes
        -----
        When the fingerprint is already executing the call joins it. Queued
        requests sharing the fingerprint are pulled into this execution so
        that only one representative call exists for it.
        """
        loop = asyncio.get_running_loop()
        request = self._build_request(
            endpoint=endpoint,
            method=method,
            data=data,
            priority=Priority.urgent,
        )
        key = self._build_key(request=request)
        pending = _PendingRequest(request=request, completion=_Completion(future=loop.create_future()))
        self._deduplicator.register(key)

        executing = self._executing.get(key)
        if executing is not None:
            executing.append(pending)
        else:
            waiters = [pending, *self._pending.pop(key, [])]
            self._stats.pending_requests = self.get_pending_count()
            log.debug(
                event="Executing immediate request",
                endpoint=endpoint,
                method=request.method,
                request_id=request.id,
                joined_queued=len(waiters) - 1,
            )
            self._spawn_batch(groups={key: waiters})
        return await pending.completion.future

    def flush(self) -> None:
        """
        Execute all pending requests now, without waiting for the window.
        """
        self._scheduler.flush()

    async def drain(self) -> None:
        """
        Wait until every batch started so far has settled its waiters.
        """
        while self._batch_tasks:
            await asyncio.gather(*list(self._batch_tasks), return_exceptions=True)

    async def close(self) -> None:
        """
        Flush pending requests and wait for all running batches.
        """
        if self._pending:
            log.info(event="Submitting final batch on close", pending_count=self.get_pending_count())
            self.flush()
        await self.drain()
        log.debug(event="BatchManager closed")

    def clear(self) -> None:
        """
        Reject every queued waiter with ``ClientQueueError`` and reset pending state.

        Notes
        -----
        Batches already executing are not affected and settle normally.
        """
        groups, self._pending = self._pending, {}
        self._scheduler.clear()
        self._deduplicator.release(groups.keys())
        cleared = 0
        for waiters in groups.values():
            error = ClientQueueError("Batch cleared")
            for pending in waiters:
                pending.completion.reject(error)
                cleared += 1
        self._stats.pending_requests = 0
        if cleared:
            log.info(event="Cleared pending requests", cleared_count=cleared)

    def get_stats(self) -> BatchManagerStats:
        return replace(self._stats, pending_requests=self.get_pending_count())

    def reset_stats(self) -> None:
        self._stats = BatchManagerStats(pending_requests=self.get_pending_count())

    def get_pending_count(self) -> int:
        return sum(len(waiters) for waiters in self._pending.values())

    async def execute_requests(self, requests: list[BatchRequest]) -> list[BatchResponse]:
        """
        Execute already-deduplicated requests and return their responses.

        Parameters
        ----------
        requests : list[BatchRequest]
            One representative request per fingerprint.

        Returns
        -------
        list[BatchResponse]
            Responses keyed by request id. Order is not significant.

        Raises
        ------
        ConfigurationError
            If the custom executor raised or returned malformed responses.
        TransportError
            If the custom executor reported a transport failure.
        """
        if self._executor is not None:
            return await self._run_executor(requests=requests)
        if self._config.dry_run:
            self._stats.round_trips += 1
            return [self._build_dry_run_response(request=request) for request in requests]
        try:
            return await self._post_batch(requests=requests)
        except (TransportError, ServerError) as error:
            self._stats.fallbacks += 1
            log.warning(
                event="Batch endpoint failed, falling back to individual requests",
                batch_endpoint=self._config.batch_endpoint,
                request_count=len(requests),
                error=str(object=error),
            )
            return await self._execute_individually(requests=requests)

    def _build_request(
        self,
        *,
        endpoint: str,
        method: HttpMethod | str,
        data: t.Any,
        priority: Priority,
    ) -> BatchRequest:
        return BatchRequest(
            id=str(object=uuid.uuid4()),
            endpoint=endpoint,
            method=t.cast(HttpMethod, method.upper()),
            data=data,
            priority=priority,
            timestamp=time.time(),
        )

    def _build_key(self, *, request: BatchRequest) -> str:
        """
        Compute the fingerprint grouping a request.

        Parameters
        ----------
        request : BatchRequest
            Request to fingerprint.

        Returns
        -------
        str
            Dedup key. Unique per request when deduplication is disabled.
        """
        key = self._deduplicator.generate_key(
            request.endpoint,
            {"method": request.method, "data": request.data},
        )
        if not self._config.dedupe:
            return f"{key}#{request.id}"
        return key

    def _on_flush(self) -> None:
        """
        Scheduler callback: move the pending map into a new batch.
        """
        # Snapshot and clear without yielding to the loop.
        groups, self._pending = self._pending, {}
        self._stats.pending_requests = 0
        if not groups:
            return
        self._spawn_batch(groups=groups)

    def _spawn_batch(self, *, groups: dict[str, list[_PendingRequest]]) -> None:
        self._executing.update(groups)
        self._deduplicator.mark_in_flight(groups.keys())
        batch_id = str(object=uuid.uuid4())
        task = asyncio.create_task(
            self._execute_batch(batch_id=batch_id, groups=groups),
            name=f"batchmux_batch_{batch_id}",
        )
        self._batch_tasks.add(task)
        task.add_done_callback(self._on_batch_task_done)

    def _on_batch_task_done(self, task: asyncio.Task[None]) -> None:
        """
        Cleanup callback for background batch tasks.

        Parameters
        ----------
        task : asyncio.Task[None]
            Completed task.
        """
        self._batch_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(event="Batch task crashed", task=task.get_name(), error=str(object=error))

    async def _execute_batch(
        self,
        *,
        batch_id: str,
        groups: dict[str, list[_PendingRequest]],
    ) -> None:
        """
        Execute one batch and settle every waiter registered under it.

        Parameters
        ----------
        batch_id : str
            Identifier used for log correlation.
        groups : dict[str, list[_PendingRequest]]
            Waiters grouped by fingerprint. Lists may still grow while the
            batch executes as duplicates join in-flight fingerprints.
        """
        representatives = {key: waiters[0].request for key, waiters in groups.items()}
        unique_requests = list(representatives.values())

        with logging_context(batch_id=batch_id):
            log.info(
                event="Executing batch",
                unique_count=len(unique_requests),
                waiter_count=sum(len(waiters) for waiters in groups.values()),
            )
            started_at = time.perf_counter()
            try:
                responses = await self.execute_requests(unique_requests)
            except asyncio.CancelledError:
                self._fail_groups(groups=groups, error=ClientQueueError("Batch cancelled"))
                raise
            except BatchmuxError as error:
                self._stats.failed_batches += 1
                log.error(event="Batch execution failed", error=str(object=error))
                self._fail_groups(groups=groups, error=error)
                return
            except Exception as error:
                self._stats.failed_batches += 1
                log.error(event="Batch execution failed", error=str(object=error))
                self._fail_groups(
                    groups=groups,
                    error=TransportError(f"Batch execution failed: {error}"),
                )
                return

            # From here on nothing yields, so no waiter can join after settling.
            self._finish_groups(groups=groups)
            responses_by_id = {response.id: response for response in responses}
            total_waiters = 0
            for key, waiters in groups.items():
                total_waiters += len(waiters)
                request = representatives[key]
                self._settle_waiters(
                    waiters=waiters,
                    request=request,
                    response=responses_by_id.get(request.id),
                )
            self._update_stats(total_requests=total_waiters, unique_requests=len(unique_requests))
            log.info(
                event="Batch settled",
                unique_count=len(unique_requests),
                waiter_count=total_waiters,
                requests_saved=total_waiters - len(unique_requests),
                duration_ms=round((time.perf_counter() - started_at) * 1000, 3),
            )

    def _finish_groups(self, *, groups: dict[str, list[_PendingRequest]]) -> None:
        for key in groups:
            self._executing.pop(key, None)
        self._deduplicator.release(groups.keys())

    def _fail_groups(
        self,
        *,
        groups: dict[str, list[_PendingRequest]],
        error: BaseException,
    ) -> None:
        self._finish_groups(groups=groups)
        for waiters in groups.values():
            for pending in waiters:
                pending.completion.reject(error)

    @staticmethod
    def _settle_waiters(
        *,
        waiters: list[_PendingRequest],
        request: BatchRequest,
        response: BatchResponse | None,
    ) -> None:
        """
        Fan one response out to every waiter sharing its fingerprint.

        Parameters
        ----------
        waiters : list[_PendingRequest]
            Waiters of the fingerprint.
        request : BatchRequest
            Representative request that was executed.
        response : BatchResponse | None
            Matching response, ``None`` when the server omitted it.
        """
        if response is None:
            log.error(event="Missing batch response", request_id=request.id, endpoint=request.endpoint)
            outcome: BaseException | None = ServerError(
                f"No response for request {request.id}",
                code="MISSING_RESPONSE",
            )
        elif response.success:
            outcome = None
        else:
            error = response.error
            outcome = ServerError(
                error.message if error is not None else "Batch request failed",
                code=error.code if error is not None else "SERVER_ERROR",
                details=error.details if error is not None else None,
            )

        for pending in waiters:
            if outcome is None:
                pending.completion.resolve(t.cast(BatchResponse, response).data)
            else:
                pending.completion.reject(outcome)

    async def _run_executor(self, *, requests: list[BatchRequest]) -> list[BatchResponse]:
        executor = t.cast(Executor, self._executor)
        self._stats.round_trips += 1
        try:
            raw_responses = await executor(requests)
        except BatchmuxError:
            raise
        except httpx.HTTPError as error:
            raise TransportError(str(object=error)) from error
        except Exception as error:
            raise ConfigurationError(f"Batch executor raised {type(error).__name__}: {error}") from error
        try:
            return batch_response_list_adapter.validate_python(list(raw_responses))
        except (ValidationError, TypeError) as error:
            raise ConfigurationError("Batch executor returned malformed responses") from error

    async def _post_batch(self, *, requests: list[BatchRequest]) -> list[BatchResponse]:
        """
        Send the whole batch to the batch endpoint.

        Parameters
        ----------
        requests : list[BatchRequest]
            Requests to send.

        Returns
        -------
        list[BatchResponse]
            Responses returned by the endpoint.

        Raises
        ------
        TransportError
            On network failures.
        ServerError
            On non-2xx statuses or an unreadable response body.
        ConfigurationError
            If request data cannot be serialized to JSON.
        """
        try:
            payload = {"requests": [request.model_dump(mode="json") for request in requests]}
        except PydanticSerializationError as error:
            raise ConfigurationError(f"Request data is not JSON serializable: {error}") from error
        self._stats.round_trips += 1
        try:
            async with self._client_factory() as client:
                response = await client.post(url=self._config.batch_endpoint, json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as error:
            status_code = error.response.status_code
            raise ServerError(
                f"Batch request failed: {status_code}",
                code=f"HTTP_{status_code}",
            ) from error
        except httpx.HTTPError as error:
            raise TransportError(str(object=error) or type(error).__name__) from error
        except ValueError as error:
            raise ServerError("Batch endpoint returned invalid JSON", code="INVALID_RESPONSE") from error

        try:
            envelope = BatchEnvelope.model_validate(body)
        except ValidationError as error:
            raise ServerError(
                "Batch endpoint returned an invalid envelope",
                code="INVALID_RESPONSE",
            ) from error
        log.debug(
            event="Batch endpoint responded",
            response_count=len(envelope.responses),
            total_time=envelope.total_time,
        )
        return envelope.responses

    async def _execute_individually(self, *, requests: list[BatchRequest]) -> list[BatchResponse]:
        """
        Execute each request against its own endpoint, one at a time.

        Parameters
        ----------
        requests : list[BatchRequest]
            Representative requests, already deduplicated.

        Returns
        -------
        list[BatchResponse]
            One response per request; failures are reported per item.
        """
        responses: list[BatchResponse] = []
        async with self._client_factory() as client:
            for request in requests:
                responses.append(await self._execute_one(client=client, request=request))
        return responses

    async def _execute_one(self, *, client: httpx.AsyncClient, request: BatchRequest) -> BatchResponse:
        params = None
        body = None
        if request.method in _BODYLESS_METHODS:
            if isinstance(request.data, t.Mapping):
                params = _build_query_params(data=request.data)
            elif request.data is not None:
                # Never send a bodyless request without the data that scopes it.
                return BatchResponse(
                    id=request.id,
                    success=False,
                    error=BatchError(
                        code="INVALID_REQUEST",
                        message=f"{request.method} data must be a mapping of query parameters",
                    ),
                )
        elif request.data is not None:
            body = request.data

        self._stats.round_trips += 1

        try:
            response = await client.request(
                method=request.method,
                url=request.endpoint,
                params=params,
                json=body,
            )
        except httpx.HTTPError as error:
            log.debug(
                event="Individual request failed",
                request_id=request.id,
                endpoint=request.endpoint,
                error=str(object=error),
            )
            return BatchResponse(
                id=request.id,
                success=False,
                error=BatchError(code="FETCH_ERROR", message=str(object=error) or type(error).__name__),
            )

        data = _decode_body(response=response)
        if response.is_success:
            return BatchResponse(id=request.id, success=True, data=data)

        message = None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
        return BatchResponse(
            id=request.id,
            success=False,
            error=BatchError(
                code=f"HTTP_{response.status_code}",
                message=str(object=message) if message else f"Request failed with status {response.status_code}",
                details=data,
            ),
        )

    @staticmethod
    def _build_dry_run_response(*, request: BatchRequest) -> BatchResponse:
        return BatchResponse(
            id=request.id,
            success=True,
            data={
                "dry_run": True,
                "id": request.id,
                "endpoint": request.endpoint,
                "method": request.method,
                "data": request.data,
            },
        )

    def _update_stats(self, *, total_requests: int, unique_requests: int) -> None:
        stats = self._stats
        stats.total_batches += 1
        stats.total_requests += total_requests
        stats.requests_saved += total_requests - unique_requests
        stats.average_batch_size = stats.total_requests / stats.total_batches
        stats.efficiency = stats.requests_saved / stats.total_requests if stats.total_requests else 0.0
        stats.pending_requests = self.get_pending_count()


def _build_query_params(*, data: t.Mapping[str, t.Any]) -> dict[str, t.Any]:
    """
    Drop ``None`` values and stringify anything httpx cannot encode as a query value.
    """
    params: dict[str, t.Any] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool, list, tuple)):
            params[str(object=key)] = value
        else:
            params[str(object=key)] = str(object=value)
    return params


def _decode_body(*, response: httpx.Response) -> t.Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
