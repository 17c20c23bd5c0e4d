import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(level: int = logging.DEBUG) -> None:
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("batchmux").setLevel(level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # batch_id from logging_context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(*, batch_id: str) -> Iterator[None]:
    """Bind ``batch_id`` to every log line emitted while a batch executes

    Args:
        batch_id (str): Identifier of the batch. It replaces any id bound by an
            enclosing batch and the previous binding is restored on exit
    """
    with structlog.contextvars.bound_contextvars(batch_id=batch_id):
        yield
