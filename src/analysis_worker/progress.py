"""
Progress reporting and cooperative cancellation.

Engines never talk to the host directly. They receive a ProgressReporter
bound to one correlation id and an optional CancellationToken, report
progress through the former, and call ``checkpoint`` at their suspension
points so the event loop can deliver messages and cancellation requests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .exceptions import TaskCancelledError

FAILED_PERCENT = -1.0

ProgressSink = Callable[["ProgressEvent"], None]


@dataclass
class ProgressEvent:
    """A single progress update for one task."""

    correlation_id: Optional[str]
    percent: float
    phase: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.percent == FAILED_PERCENT

    def to_message(self) -> Dict[str, Any]:
        """Wire form of the event."""
        return {
            "type": "PROGRESS",
            "correlationId": self.correlation_id,
            "percent": self.percent,
            "phase": self.phase,
            "data": self.data,
        }


class ProgressReporter:
    """
    Forwards progress events for one correlation id to a sink.

    Percentages are clamped so a task's stream never goes backwards; the
    failure sentinel (-1) bypasses the clamp and closes the stream, after
    which further reports are dropped.
    """

    def __init__(self, sink: Optional[ProgressSink] = None, correlation_id: Optional[str] = None):
        self.sink = sink
        self.correlation_id = correlation_id
        self.last_percent = 0.0
        self.closed = False

    def report(self, percent: float, phase: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.closed:
            return
        if percent == FAILED_PERCENT:
            self.closed = True
        else:
            percent = max(float(percent), self.last_percent)
            self.last_percent = percent
        if self.sink is not None:
            self.sink(ProgressEvent(self.correlation_id, float(percent), phase, data or {}))

    def fail(self, phase: str, error: BaseException) -> None:
        self.report(FAILED_PERCENT, phase, {"error": str(error)})


class CancellationToken:
    """Cancellation flag checked by engines at every suspension point."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError("Task cancelled by host request")


async def checkpoint(token: Optional[CancellationToken] = None) -> None:
    """Yield to the event loop, then honour any pending cancellation."""
    await asyncio.sleep(0)
    if token is not None:
        token.raise_if_cancelled()
