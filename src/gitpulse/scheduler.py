"""Task scheduler contract.

Handlers are referenced by name and invoked with a single args dict.
Delivery is at-least-once: every handler must tolerate being re-invoked
with the same arguments.

InMemoryScheduler records calls and runs them on demand; the worker
service drains it on each tick.
"""

import heapq
import inspect
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .models import now_ms

__all__ = [
    "GENERATE_REPORT",
    "PROCESS_SYNC_JOB",
    "PROCESS_WEBHOOK",
    "InMemoryScheduler",
    "ScheduledCall",
    "Scheduler",
]

logger = logging.getLogger("gitpulse.scheduler")

PROCESS_SYNC_JOB = "sync.process_job"
PROCESS_WEBHOOK = "webhooks.process"
GENERATE_REPORT = "reports.generate_today_daily"

Handler = Callable[[dict[str, Any]], Any | Awaitable[Any]]


@dataclass(order=True)
class ScheduledCall:
    run_at: int
    seq: int
    handler: str = field(compare=False)
    args: dict[str, Any] = field(compare=False, default_factory=dict)
    call_id: str = field(compare=False, default="")


class Scheduler(ABC):
    """Schedule a named handler for later execution."""

    @abstractmethod
    def schedule_at(self, timestamp_ms: int, handler: str, args: dict[str, Any]) -> str:
        """Run ``handler(args)`` at or after ``timestamp_ms``; returns a call id."""

    def schedule_after(self, delay_ms: int, handler: str, args: dict[str, Any]) -> str:
        """Run ``handler(args)`` after ``delay_ms``; returns a call id."""
        return self.schedule_at(now_ms() + max(0, delay_ms), handler, args)


class InMemoryScheduler(Scheduler):
    """Priority-queue scheduler with a handler registry.

    Example:
        >>> scheduler = InMemoryScheduler()
        >>> scheduler.register(PROCESS_SYNC_JOB, runner.handle)
        >>> scheduler.schedule_after(0, PROCESS_SYNC_JOB, {"job_id": job_id})
        >>> await scheduler.run_due()
    """

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._queue: list[ScheduledCall] = []
        self._handlers: dict[str, Handler] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self.history: list[ScheduledCall] = []

    def register(self, handler: str, fn: Handler) -> None:
        self._handlers[handler] = fn

    def schedule_at(self, timestamp_ms: int, handler: str, args: dict[str, Any]) -> str:
        seq = next(self._seq)
        call = ScheduledCall(
            run_at=timestamp_ms,
            seq=seq,
            handler=handler,
            args=dict(args),
            call_id=f"call-{seq}",
        )
        with self._lock:
            heapq.heappush(self._queue, call)
            self.history.append(call)
        logger.debug(
            "call_scheduled",
            extra={"handler": handler, "run_at": timestamp_ms, "call_id": call.call_id},
        )
        return call.call_id

    def schedule_after(self, delay_ms: int, handler: str, args: dict[str, Any]) -> str:
        return self.schedule_at(self._clock() + max(0, delay_ms), handler, args)

    @property
    def pending(self) -> list[ScheduledCall]:
        with self._lock:
            return sorted(self._queue)

    def calls_for(self, handler: str) -> list[ScheduledCall]:
        """Every call ever scheduled for ``handler``, in scheduling order."""
        return [c for c in self.history if c.handler == handler]

    def _pop_due(self, now: int) -> ScheduledCall | None:
        with self._lock:
            if self._queue and self._queue[0].run_at <= now:
                return heapq.heappop(self._queue)
        return None

    async def run_due(self, now: int | None = None, max_calls: int = 1000) -> int:
        """Invoke every call due at ``now`` (including calls they schedule).

        Calls for handlers with no registration are dropped with a warning.
        Handler exceptions are logged and do not stop the drain.

        Returns:
            Number of calls invoked.
        """
        ran = 0
        while ran < max_calls:
            call = self._pop_due(self._clock() if now is None else now)
            if call is None:
                break
            fn = self._handlers.get(call.handler)
            if fn is None:
                logger.warning(
                    "no_handler_registered",
                    extra={"handler": call.handler, "call_id": call.call_id},
                )
                continue
            ran += 1
            try:
                result = fn(call.args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "scheduled_call_failed",
                    extra={
                        "handler": call.handler,
                        "call_id": call.call_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
        return ran
