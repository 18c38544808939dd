import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(format="%(message)s")
    logging.getLogger("facebook_batch").setLevel(logging.DEBUG if verbose else logging.WARNING)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
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
def batch_logging_context(**context) -> Iterator[None]:
    """Bind batch run context (graph version, request count...) to every log line

    Options left to ``None`` are not bound.
    """
    with structlog.contextvars.bound_contextvars(
        **{key: value for key, value in context.items() if value is not None}
    ):
        yield
