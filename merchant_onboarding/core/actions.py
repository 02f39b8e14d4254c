"""
Double-submit protection for named async operations.

An action id is "pending" while its operation runs; a second `execute` under a
pending id fails fast with DuplicateActionError. With a debounce window, calls
under the same id inside the window collapse into the last one and every
caller gets that call's result. The window comes before the pending mark.
"""
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from merchant_onboarding.errors import DuplicateActionError, MaxRetriesExceededError
from merchant_onboarding.observability.logging import log
from merchant_onboarding.settings import settings
from merchant_onboarding.utils.timers import TimerRegistry

Operation = Callable[[], Awaitable[Any]]


@dataclass
class ActionStatus:
    pending: bool
    retry_count: int
    can_retry: bool
    last_error: Optional[str] = None


class _DebouncedCall:
    __slots__ = ("future", "operation", "optimistic_update", "on_revert")

    def __init__(self, future: asyncio.Future):
        self.future = future
        self.operation: Optional[Operation] = None
        self.optimistic_update: Optional[Callable[[], Any]] = None
        self.on_revert: Optional[Callable[[], Any]] = None


def _debounce_timer_id(action_id: str) -> str:
    return f"debounce:{action_id}"


class ActionCoordinator:
    def __init__(
        self,
        *,
        max_retries: Optional[int] = None,
        debounce_ms: Optional[int] = None,
        timers: Optional[TimerRegistry] = None,
    ):
        self.max_retries = int(max_retries if max_retries is not None else settings.ACTION_MAX_RETRIES)
        self.debounce_ms = int(debounce_ms if debounce_ms is not None else settings.ACTION_DEBOUNCE_MS)
        self.timers = timers or TimerRegistry(owner="actions")

        self._pending: Set[str] = set()
        self._retry_counts: Dict[str, int] = {}
        self._errors: Dict[str, str] = {}
        self._debounced: Dict[str, _DebouncedCall] = {}
        self._settling: Set[asyncio.Task] = set()

    async def execute(
        self,
        action_id: str,
        operation: Operation,
        *,
        optimistic_update: Optional[Callable[[], Any]] = None,
        on_revert: Optional[Callable[[], Any]] = None,
        debounce_ms: Optional[int] = None,
        skip_debounce: bool = False,
    ) -> Any:
        if action_id in self._pending:
            log(event="action_duplicate_rejected", actionId=action_id)
            raise DuplicateActionError(action_id)

        window = self.debounce_ms if debounce_ms is None else int(debounce_ms)
        if skip_debounce or window <= 0:
            return await self._run(action_id, operation, optimistic_update, on_revert)
        return await self._schedule(action_id, window, operation, optimistic_update, on_revert)

    async def retry(self, action_id: str, operation: Operation, **kwargs) -> Any:
        if self._retry_counts.get(action_id, 0) >= self.max_retries:
            raise MaxRetriesExceededError(action_id, self.max_retries)
        return await self.execute(action_id, operation, skip_debounce=True, **kwargs)

    # --- debounce ---

    async def _schedule(self, action_id, window_ms, operation, optimistic_update, on_revert) -> Any:
        call = self._debounced.get(action_id)
        if call is None:
            call = _DebouncedCall(asyncio.get_running_loop().create_future())
            # Outcome counts as retrieved even if every caller went away
            call.future.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._debounced[action_id] = call
        else:
            log(event="action_debounce_coalesced", actionId=action_id)
        call.operation = operation
        call.optimistic_update = optimistic_update
        call.on_revert = on_revert

        # Re-arming replaces the previous timer under the same id
        self.timers.set_timeout(_debounce_timer_id(action_id), lambda: self._fire(action_id), window_ms / 1000.0)
        return await asyncio.shield(call.future)

    def _fire(self, action_id: str) -> None:
        call = self._debounced.pop(action_id, None)
        if call is None or call.future.done():
            return
        # Run outside the timer task so clearing timers never cancels a running operation
        task = asyncio.get_running_loop().create_task(self._settle(action_id, call))
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)

    async def _settle(self, action_id: str, call: _DebouncedCall) -> None:
        try:
            result = await self._run(action_id, call.operation, call.optimistic_update, call.on_revert)
        except Exception as e:
            if not call.future.done():
                call.future.set_exception(e)
            return
        if not call.future.done():
            call.future.set_result(result)

    # --- execution ---

    async def _run(self, action_id, operation, optimistic_update, on_revert) -> Any:
        if action_id in self._pending:
            raise DuplicateActionError(action_id)
        self._pending.add(action_id)
        self._errors.pop(action_id, None)
        log(event="action_started", actionId=action_id)
        try:
            if optimistic_update is not None:
                optimistic_update()
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if on_revert is not None:
                try:
                    on_revert()
                except Exception as revert_err:
                    log(event="action_revert_failed", actionId=action_id, errorType=type(revert_err).__name__)
            count = self._retry_counts.get(action_id, 0) + 1
            self._retry_counts[action_id] = count
            self._errors[action_id] = str(e) or type(e).__name__
            log(event="action_failed", actionId=action_id, retryCount=count, errorType=type(e).__name__)
            raise
        else:
            self._retry_counts.pop(action_id, None)
            log(event="action_succeeded", actionId=action_id)
            return result
        finally:
            self._pending.discard(action_id)

    # --- queries ---

    def is_pending(self, action_id: str) -> bool:
        return action_id in self._pending

    def is_any_pending(self) -> bool:
        return bool(self._pending)

    def is_scheduled(self, action_id: str) -> bool:
        """True while the action waits in its debounce window."""
        return action_id in self._debounced

    def get_status(self, action_id: str) -> ActionStatus:
        count = self._retry_counts.get(action_id, 0)
        error = self._errors.get(action_id)
        return ActionStatus(
            pending=action_id in self._pending,
            retry_count=count,
            can_retry=error is not None and count < self.max_retries,
            last_error=error,
        )

    def clear_error(self, action_id: Optional[str] = None) -> None:
        if action_id is None:
            self._errors.clear()
        else:
            self._errors.pop(action_id, None)

    def clear_pending(self) -> None:
        """Cancel debounce windows (their callers get CancelledError) and forget pending ids."""
        for action_id, call in list(self._debounced.items()):
            self.timers.clear(_debounce_timer_id(action_id))
            if not call.future.done():
                call.future.cancel()
        self._debounced.clear()
        self._pending.clear()
        self._errors.clear()
        log(event="action_pending_cleared")
