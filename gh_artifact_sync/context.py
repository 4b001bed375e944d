"""Utilities for tracing the stages of a sync pipeline."""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


stages: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "stages", default=()
)


def current_stage() -> str:
    """Return the label of the innermost active stage, or an empty string."""
    return " > ".join(stages.get())


@contextmanager
def stage_context(name: str) -> Generator[None, None, None]:
    """Record a nested pipeline stage and log how long it took.

    Each asyncio task has its own copy of the stage stack so concurrent
    pipelines do not interleave labels.
    """
    token = stages.set(stages.get() + (name,))
    label = current_stage()
    started = perf_counter()
    _LOGGER.debug("[Stage] > %s", label)
    try:
        yield
    finally:
        elapsed = perf_counter() - started
        stages.reset(token)
        _LOGGER.debug("[Stage] < %s (%0.2fs)", label, elapsed)
