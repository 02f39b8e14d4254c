"""
Named timers on top of asyncio tasks.

Every timer lives under a string id; registering an id that already exists
cancels the previous timer first (replace, never stack). `clear_all()` is the
teardown path and leaves zero live tasks behind. Durations are in seconds.
"""
import asyncio
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from merchant_onboarding.observability.logging import log


@dataclass
class IntervalConfig:
    id: str
    interval: float
    callback: Callable[[], Any]
    immediate: bool = False
    max_executions: Optional[int] = None


class _Timer:
    __slots__ = ("id", "kind", "task", "cancelled", "executions")

    def __init__(self, timer_id: str, kind: str):
        self.id = timer_id
        self.kind = kind
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False
        self.executions = 0


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TimerRegistry:
    def __init__(self, owner: str = "timers"):
        self.owner = owner
        self._timers: Dict[str, _Timer] = {}
        # Execution counts of timers that ran to completion (cleared timers forget theirs)
        self._finished_counts: Dict[str, int] = {}

    # --- lifecycle helpers ---

    def _install(self, timer: _Timer, coro) -> None:
        loop = asyncio.get_running_loop()
        timer.task = loop.create_task(coro, name=f"{self.owner}:{timer.id}")
        self._timers[timer.id] = timer
        self._finished_counts.pop(timer.id, None)

    def _discard(self, timer: _Timer) -> None:
        if self._timers.get(timer.id) is timer:
            del self._timers[timer.id]
            if not timer.cancelled:
                self._finished_counts[timer.id] = timer.executions

    async def _invoke(self, timer: _Timer, callback: Callable, *args) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log(
                event="timer_callback_failed",
                owner=self.owner,
                timerId=timer.id,
                kind=timer.kind,
                errorType=type(e).__name__,
                error=str(e)[:200],
            )

    # --- public API ---

    def set_timeout(self, timer_id: str, callback: Callable[[], Any], delay: float) -> None:
        self.clear(timer_id)
        timer = _Timer(timer_id, "timeout")

        async def run():
            try:
                await asyncio.sleep(max(0.0, float(delay)))
                if timer.cancelled:
                    return
                timer.executions += 1
                await self._invoke(timer, callback)
            finally:
                self._discard(timer)

        self._install(timer, run())

    def set_interval(self, config: IntervalConfig) -> None:
        self.clear(config.id)
        timer = _Timer(config.id, "interval")
        max_exec = config.max_executions

        async def tick() -> bool:
            timer.executions += 1
            await self._invoke(timer, config.callback)
            return timer.cancelled or (max_exec is not None and timer.executions >= max_exec)

        async def run():
            try:
                if max_exec is not None and max_exec <= 0:
                    return
                if config.immediate and await tick():
                    return
                while True:
                    await asyncio.sleep(max(0.0, float(config.interval)))
                    if timer.cancelled or await tick():
                        return
            finally:
                self._discard(timer)

        self._install(timer, run())

    def countdown(
        self,
        timer_id: str,
        duration: float,
        on_tick: Callable[[float], Any],
        on_complete: Callable[[], Any],
        tick_interval: float = 1.0,
    ) -> None:
        """
        Tick immediately and then every `tick_interval` with the seconds left
        until a fixed end instant; `on_complete` runs once when it hits zero.
        """
        self.clear(timer_id)
        timer = _Timer(timer_id, "countdown")
        loop = asyncio.get_running_loop()
        ends_at = loop.time() + max(0.0, float(duration))

        async def run():
            try:
                while True:
                    remaining = max(0.0, ends_at - loop.time())
                    timer.executions += 1
                    await self._invoke(timer, on_tick, remaining)
                    if timer.cancelled:
                        return
                    if remaining <= 0:
                        break
                    await asyncio.sleep(min(float(tick_interval), remaining))
                    if timer.cancelled:
                        return
                # Deregister before completing so on_complete may start a new countdown under the same id
                self._discard(timer)
                await self._invoke(timer, on_complete)
            finally:
                self._discard(timer)

        self._install(timer, run())

    def debounced(self, timer_id: str, callback: Callable[..., Any], delay: float) -> Callable[..., None]:
        """Return a trigger that (re)arms a one-shot timer; only the last call within `delay` runs."""

        def trigger(*args, **kwargs):
            self.set_timeout(timer_id, functools.partial(callback, *args, **kwargs), delay)

        return trigger

    def clear(self, timer_id: str) -> bool:
        self._finished_counts.pop(timer_id, None)
        timer = self._timers.pop(timer_id, None)
        if timer is None:
            return False
        timer.cancelled = True
        # A callback clearing its own timer: the loop exits on the flag instead
        if timer.task is not None and timer.task is not _current_task():
            timer.task.cancel()
        return True

    def clear_all(self) -> int:
        ids = list(self._timers.keys())
        for timer_id in ids:
            self.clear(timer_id)
        self._finished_counts.clear()
        return len(ids)

    def has(self, timer_id: str) -> bool:
        return timer_id in self._timers

    def execution_count(self, timer_id: str) -> int:
        timer = self._timers.get(timer_id)
        if timer is not None:
            return timer.executions
        return self._finished_counts.get(timer_id, 0)

    def active_count(self) -> int:
        return len(self._timers)
