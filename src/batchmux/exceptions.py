"""
Batchmux-specific runtime exceptions.
"""

from __future__ import annotations

import typing as t


class BatchmuxError(Exception):
    """
    Base class for every error surfaced through a batched future.
    """


class ClientQueueError(BatchmuxError):
    """
    Raised on waiters that were still queued when the manager was cleared.
    """


class TransportError(BatchmuxError):
    """
    Network-level failure while talking to the batch endpoint or a fallback endpoint.
    """


class ConfigurationError(BatchmuxError):
    """
    Invalid manager configuration, or an executor that raised or returned garbage.
    """


class ServerError(BatchmuxError):
    """
    Server-reported failure for a single fingerprint.

    Parameters
    ----------
    message : str
        Human readable error message.
    code : str
        Machine readable error code (e.g. ``HTTP_404`` or ``MISSING_RESPONSE``).
    details : typing.Any, optional
        Raw error payload reported by the server.
    """

    def __init__(self, message: str, *, code: str = "SERVER_ERROR", details: t.Any = None):
        super().__init__(message)
        self.code = code
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={str(object=self)!r})"


class CompletionStateError(RuntimeError):
    """
    A waiter was completed more than once.

    Notes
    -----
    This is a programming error inside the engine, never a runtime condition
    callers are expected to handle.
    """


def is_batch_level_error(*, error: BaseException) -> bool:
    """
    Detect whether an error failed a whole batch rather than a single fingerprint.

    Parameters
    ----------
    error : BaseException
        Error raised from a batched future.

    Returns
    -------
    bool
        ``True`` when the error or any exception in its cause chain is a
        transport, configuration or queue error.
    """
    seen: set[int] = set()
    to_visit: list[BaseException] = [error]
    while to_visit:
        current = to_visit.pop()
        current_id = id(current)
        if current_id in seen:
            continue
        seen.add(current_id)

        if isinstance(current, (TransportError, ConfigurationError, ClientQueueError)):
            return True

        cause = getattr(current, "__cause__", None)
        if isinstance(cause, BaseException):
            to_visit.append(cause)

    return False
