"""
Typed publish/subscribe between the network layer and whatever sits above it.

The credential manager publishes `SessionExpired`/`ForcedLogout` here instead of
calling presentation code; subscribers decide how to react. Every `subscribe`
returns a disposer so callers can prove they unsubscribed.
"""
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from merchant_onboarding.observability.logging import log

T = TypeVar("T")
Disposer = Callable[[], None]


@dataclass(frozen=True)
class SessionExpired:
    kind: str  # "hard" (401) | "soft" (403)
    reason: str = ""


@dataclass(frozen=True)
class ForcedLogout:
    reason: str = ""


@dataclass(frozen=True)
class VerificationStatusChanged:
    request_id: str
    status: str


def _dispatch(handler: Callable, payload: Any, topic: str) -> None:
    try:
        result = handler(payload)
    except Exception as e:
        log(event="subscriber_failed", topic=topic, errorType=type(e).__name__, error=str(e)[:200])
        return
    if inspect.isawaitable(result):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log(event="subscriber_skipped_no_loop", topic=topic)
            if inspect.iscoroutine(result):
                result.close()
            return
        # Fire-and-forget: publishers never wait on subscribers
        task = asyncio.ensure_future(result, loop=loop)
        _pending.add(task)
        task.add_done_callback(lambda t: _log_task_failure(t, topic))


# Strong refs to scheduled async handlers until they finish
_pending: set = set()


def _log_task_failure(task: "asyncio.Future", topic: str) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log(event="subscriber_failed", topic=topic, errorType=type(exc).__name__, error=str(exc)[:200])


class Subject(Generic[T]):
    """Single-topic observer; handlers run in subscription order."""

    def __init__(self, topic: str = "subject"):
        self.topic = topic
        self._handlers: List[Callable[[T], Any]] = []

    def subscribe(self, handler: Callable[[T], Any]) -> Disposer:
        self._handlers.append(handler)

        def dispose() -> None:
            self.unsubscribe(handler)

        return dispose

    def unsubscribe(self, handler: Callable[[T], Any]) -> bool:
        try:
            self._handlers.remove(handler)
            return True
        except ValueError:
            return False

    def publish(self, value: T) -> int:
        handlers = list(self._handlers)
        for handler in handlers:
            _dispatch(handler, value, self.topic)
        return len(handlers)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)


class EventBus:
    """Routes events to subscribers by event class."""

    def __init__(self):
        self._subjects: Dict[type, Subject] = {}

    def _subject(self, event_type: type) -> Subject:
        subject = self._subjects.get(event_type)
        if subject is None:
            subject = Subject(topic=event_type.__name__)
            self._subjects[event_type] = subject
        return subject

    def subscribe(self, event_type: Type[T], handler: Callable[[T], Any]) -> Disposer:
        return self._subject(event_type).subscribe(handler)

    def publish(self, event: Any) -> int:
        subject: Optional[Subject] = self._subjects.get(type(event))
        delivered = subject.publish(event) if subject is not None else 0
        log(event="bus_event_published", eventType=type(event).__name__, subscribers=delivered)
        return delivered

    def subscriber_count(self, event_type: type) -> int:
        subject = self._subjects.get(event_type)
        return len(subject) if subject is not None else 0

    def clear(self) -> None:
        for subject in self._subjects.values():
            subject.clear()
        self._subjects.clear()
