"""
structlog setup for the deal workflow core.

Log lines carry the deal / participant (and optional trace) IDs of the
operation in progress: logging_context() sets them in context variables and
the add_context_info processor copies them onto every event. LOG_JSON picks
JSON lines over the coloured console renderer.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator

import structlog
from structlog.types import Processor

from .config import config

_CONTEXT_IDS: dict[str, ContextVar[str | None]] = {
    'trace_id': ContextVar('trace_id', default=None),
    'deal_id': ContextVar('deal_id', default=None),
    'participant_id': ContextVar('participant_id', default=None),
}


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Copy the IDs set by logging_context() onto the event."""
    for key, var in _CONTEXT_IDS.items():
        value = var.get()
        if value:
            event_dict[key] = value
    return event_dict


def configure_logging(json_output: bool = False, log_level: str | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_output: JSON lines when True, coloured console output otherwise
        log_level: Overrides config.LOG_LEVEL
    """
    level_num = getattr(logging, (log_level or config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level_num)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_context_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso'),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**ids: str | None) -> Generator[None, None, None]:
    """
    Attach deal_id / participant_id / trace_id to every log line in the block.

    None leaves the enclosing value in place; nested blocks restore it on exit.
    """
    tokens = []
    for key, value in ids.items():
        if key not in _CONTEXT_IDS:
            raise TypeError(f'Unknown logging context key: {key}')
        if value is not None:
            tokens.append((_CONTEXT_IDS[key], _CONTEXT_IDS[key].set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class EvaluationTimer:
    """Per-stage wall-clock timings (ms) for one evaluation pass."""

    def __init__(self):
        self.stages: dict[str, float] = {}
        self.start_time = time.perf_counter()

    @contextmanager
    def stage(self, name: str) -> Generator[None, None, None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.stages[name] = (time.perf_counter() - started) * 1000

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    def summary(self) -> dict[str, Any]:
        return {
            'total_ms': round(self.total_ms, 2),
            'stages': {name: round(ms, 2) for name, ms in self.stages.items()},
        }


configure_logging(json_output=config.LOG_JSON)
