"""Utilities for tracing reconcile passes."""

import contextvars
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@dataclass
class TraceCollector:
    """Accumulates the time spent in each traced stage."""

    timings: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, name: str, duration: float) -> None:
        self.timings[name] += duration
        self.counts[name] += 1

    def summary(self) -> str:
        """Return a compact one line summary of the collected stages."""
        return ", ".join(
            f"{name}={duration:0.3f}s" for name, duration in self.timings.items()
        )


_collector: contextvars.ContextVar[TraceCollector | None] = contextvars.ContextVar(
    "_collector", default=None
)


@contextmanager
def get_trace_collector() -> Generator[TraceCollector, None, None]:
    """Collect the stage timings of everything traced within the block."""
    collector = TraceCollector()
    token = _collector.set(collector)
    try:
        yield collector
    finally:
        _collector.reset(token)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Label a stage of a reconcile pass and log how long it took.

    Stages nest, so a pass for a GitRepo logs as `GitRepo/ns/name > job`.
    """
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        duration = perf_counter() - t1
        trace.reset(token)
        if (collector := _collector.get()) is not None:
            collector.add(name, duration)
        _LOGGER.debug("[Trace] < %s (%0.3fs)", label, duration)
