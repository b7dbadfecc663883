"""
taskdash Scheduler — day-boundary timer for cache rollover and recomputation.

A MidnightScheduler owns one asyncio task running an explicit control loop:

    compute delay to next local midnight -> sleep -> fire callback -> repeat

The delay is recomputed from the wall clock on every cycle, so DST
transitions and host sleep never accumulate drift. Cancelling before a
boundary guarantees the callback does not run for that cycle.

Failure to arm (no running event loop, double start, a broken timer) is the
one engine condition raised to callers, as TaskDashSchedulerError.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from taskdash.analytics.buckets import TimezoneLike, resolve_tz
from taskdash.engine.errors import TaskDashSchedulerError
from taskdash.engine.logging import log, log_scheduler_event

logger = logging.getLogger("taskdash.process.scheduler")

DAY_MS = 24 * 60 * 60 * 1000

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


def ms_until_next_midnight(
    now: Optional[datetime] = None,
    tz: TimezoneLike = None,
) -> int:
    """
    Milliseconds from *now* to the next local midnight in *tz*.

    Computed on absolute time, so a day with a DST switch is 23 or 25 hours
    long. Exactly at midnight the next boundary is a full day away.
    """
    zone = resolve_tz(tz)
    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=zone)

    local = now.astimezone(zone)
    midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)
    delta = midnight.astimezone(timezone.utc) - local.astimezone(timezone.utc)
    return max(1, round(delta / timedelta(milliseconds=1)))


class MidnightScheduler:
    """
    Self-perpetuating midnight timer.

    Args:
        callback: Called once per midnight; may be sync or async. An exception
            from it is logged and the scheduler keeps running.
        tz: Zone whose midnight counts. Defaults to ``calendar.timezone``.
        clock: Returns the current aware datetime (injectable for tests).
        sleep: Awaitable sleep in seconds (injectable for tests).
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        *,
        tz: TimezoneLike = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        name: str = "midnight",
    ):
        self._callback = callback
        self._tz = resolve_tz(tz)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._sleep = sleep or asyncio.sleep
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._fired_count = 0
        self._next_delay_ms: Optional[int] = None

    # ── Lifecycle ──

    def start(self) -> "MidnightScheduler":
        """Arm the timer on the running event loop."""
        if self.is_running:
            raise TaskDashSchedulerError(
                f"Scheduler '{self._name}' is already running",
                component="scheduler",
            )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TaskDashSchedulerError(
                f"Scheduler '{self._name}' needs a running event loop to arm its timer",
                component="scheduler",
            ) from e

        self._cancelled = False
        self._arm()
        self._task = loop.create_task(self._run(), name=f"taskdash-{self._name}")
        return self

    def cancel(self) -> bool:
        """Stop the timer. False when it was not running."""
        if not self.is_running:
            return False
        self._cancelled = True
        self._task.cancel()
        self._next_delay_ms = None
        logger.info(f"Scheduler '{self._name}' cancelled")
        log(log_scheduler_event("cancelled"))
        return True

    async def wait(self) -> None:
        """Wait for the loop to finish; a cancelled loop finishes quietly."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise

    async def stop(self) -> None:
        self.cancel()
        await self.wait()

    # ── Control loop ──

    def _arm(self) -> int:
        delay_ms = ms_until_next_midnight(self._clock(), self._tz)
        self._next_delay_ms = delay_ms
        logger.info(f"Scheduler '{self._name}' armed: next midnight in {delay_ms} ms")
        log(log_scheduler_event("armed", delay_ms=delay_ms))
        return delay_ms

    async def _run(self) -> None:
        delay_ms = self._next_delay_ms
        while not self._cancelled:
            try:
                await self._sleep(delay_ms / 1000)
            except Exception as e:
                log(log_scheduler_event("failed", delay_ms=delay_ms, error=str(e)))
                raise TaskDashSchedulerError(
                    f"Scheduler '{self._name}' timer failed: {e}",
                    component="scheduler",
                    delay_ms=delay_ms,
                ) from e

            if self._cancelled:
                break
            await self._fire()
            if self._cancelled:
                break
            delay_ms = self._arm()

    async def _fire(self) -> None:
        self._fired_count += 1
        logger.info(f"Scheduler '{self._name}' fired (#{self._fired_count})")
        log(log_scheduler_event("fired"))
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Scheduler '{self._name}' callback failed: {e}")
            log(log_scheduler_event("callback_failed", error=str(e)))

    # ── State ──

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def fired_count(self) -> int:
        return self._fired_count

    @property
    def next_delay_ms(self) -> Optional[int]:
        return self._next_delay_ms


def schedule_at_next_midnight(
    callback: Callable[[], Any],
    **kwargs: Any,
) -> MidnightScheduler:
    """
    Start a MidnightScheduler for *callback* and return it as the handle.

    ``handle.cancel()`` stops it. Must be called from a running event loop.
    """
    return MidnightScheduler(callback, **kwargs).start()
