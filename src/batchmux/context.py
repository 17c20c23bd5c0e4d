"""
Scoped and process-wide access to a ``BatchManager``.
Explicitly constructed managers are the primary API. ``use_batch_manager``
activates one for the current task through a context var, and a lazily built
process default backs the ``batch_get`` / ``batch_post`` helpers.
"""

from __future__ import annotations

import asyncio
import contextvars
import typing as t
import warnings

import structlog

from batchmux.core import BatchManager
from batchmux.models import Priority

log = structlog.get_logger(__name__)

active_batch_manager: contextvars.ContextVar[BatchManager | None] = contextvars.ContextVar(
    "active_batch_manager", default=None
)

_default_manager: BatchManager | None = None


def get_default_batch_manager(**options: t.Any) -> BatchManager:
    """
    Return the process-wide manager, building it on first use.

    Parameters
    ----------
    **options : typing.Any
        ``BatchManager`` keyword arguments, only honored on first use.

    Returns
    -------
    BatchManager
        Process default manager.
    """
    global _default_manager
    if _default_manager is None:
        _default_manager = BatchManager(**options)
    elif options:
        log.warning(
            event="Ignoring options for already initialized default BatchManager",
            options=sorted(options),
        )
    return _default_manager


def reset_default_batch_manager() -> None:
    """
    Clear and drop the process-wide manager. Meant for tests.
    """
    global _default_manager
    if _default_manager is not None:
        _default_manager.clear()
        _default_manager = None


def current_batch_manager() -> BatchManager:
    """
    Resolve the manager active for the current context.

    Returns
    -------
    BatchManager
        Manager set by ``use_batch_manager``, else the process default.
    """
    manager = active_batch_manager.get()
    if manager is not None:
        return manager
    return get_default_batch_manager()


def batch_get(
    endpoint: str,
    params: t.Mapping[str, t.Any] | None = None,
    priority: Priority | str = Priority.normal,
) -> asyncio.Future[t.Any]:
    return current_batch_manager().get(endpoint, params, priority)


def batch_post(
    endpoint: str,
    data: t.Any = None,
    priority: Priority | str = Priority.normal,
) -> asyncio.Future[t.Any]:
    return current_batch_manager().post(endpoint, data, priority)


class BatchManagerContext:
    """
    Context manager that activates a manager for the current context.

    Parameters
    ----------
    manager : BatchManager
        Manager made current for the scope of the context manager.
    close_on_exit : bool, optional
        Flush and wait for pending work when leaving the scope.
    """

    def __init__(self, manager: BatchManager, *, close_on_exit: bool = True) -> None:
        self._manager = manager
        self._close_on_exit = close_on_exit
        self._context_token: contextvars.Token[BatchManager | None] | None = None

    def __enter__(self) -> BatchManager:
        self._context_token = active_batch_manager.set(self._manager)
        return self._manager

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        """
        Reset the active manager and schedule its close on the running loop.

        Parameters
        ----------
        exc_type : type[BaseException] | None
            Exception type, if any.
        exc_val : BaseException | None
            Exception value, if any.
        exc_tb : typing.Any
            Exception traceback, if any.
        """
        self._reset()
        if not self._close_on_exit:
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(self._manager.close())
        except RuntimeError:
            warnings.warn(
                message=(
                    "BatchManagerContext used with sync context manager. "
                    "Use 'async with' for proper cleanup, or manually call await "
                    "manager.close()"
                ),
                category=UserWarning,
                stacklevel=2,
            )

    async def __aenter__(self) -> BatchManager:
        self._context_token = active_batch_manager.set(self._manager)
        return self._manager

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        self._reset()
        if self._close_on_exit:
            await self._manager.close()

    def _reset(self) -> None:
        if self._context_token is not None:
            active_batch_manager.reset(self._context_token)
            self._context_token = None


def use_batch_manager(manager: BatchManager, *, close_on_exit: bool = True) -> BatchManagerContext:
    """
    Activate ``manager`` for ``batch_get`` / ``batch_post`` within a scope.

    Parameters
    ----------
    manager : BatchManager
        Manager to activate.
    close_on_exit : bool, optional
        Flush and wait for pending work when leaving the scope.

    Returns
    -------
    BatchManagerContext
        Sync and async context manager yielding ``manager``.

    Examples
    --------
    >>> async with use_batch_manager(BatchManager(dry_run=True)):
    ...     payload = await batch_get("/api/items", {"id": 1})
    """
    return BatchManagerContext(manager=manager, close_on_exit=close_on_exit)
