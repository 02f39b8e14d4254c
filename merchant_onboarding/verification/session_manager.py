"""
External identity-verification session: initiate, poll, expire, fan out.

Status moves pending -> sent -> under-review -> received, or lands in one of
the absorbing failures (failed, rejected). Two independent timers run per
session: a fixed-period poll and a one-shot expiry at `expiresAt`. Whichever
of the two first records a terminal status wins; the other is dropped.
"""
import webbrowser
from typing import Any, Callable, Optional

from merchant_onboarding.errors import OnboardingError, SessionExpiredHard
from merchant_onboarding.events.bus import Disposer, Subject
from merchant_onboarding.observability import metrics
from merchant_onboarding.observability.logging import log
from merchant_onboarding.settings import settings
from merchant_onboarding.store.models import VerificationSession, VerificationStatus
from merchant_onboarding.utils.time import format_mm_ss, ms_until, now_ms
from merchant_onboarding.utils.timers import IntervalConfig, TimerRegistry
from merchant_onboarding.verification.client import VerificationClient

POLL_TIMER = "verification:poll"
EXPIRY_TIMER = "verification:expiry"

StatusHandler = Callable[[VerificationStatus], Any]


class VerificationSessionManager:
    def __init__(
        self,
        client: VerificationClient,
        *,
        timers: Optional[TimerRegistry] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], int] = now_ms,
        opener: Callable[[str], Any] = webbrowser.open_new_tab,
    ):
        self.client = client
        self.timers = timers or TimerRegistry(owner="verification")
        self.poll_interval = float(poll_interval if poll_interval is not None else settings.VERIFICATION_POLL_INTERVAL_SEC)
        self._clock = clock
        self._opener = opener

        self._session: Optional[VerificationSession] = None
        self._subject_id: Optional[str] = None
        self._status = Subject[VerificationStatus](topic="verification_status")
        self._expiry_callback: Optional[Callable[[], Any]] = None

    # --- lifecycle ---

    async def initiate(self, subject_id: str) -> VerificationSession:
        if self._session is not None:
            # A second initiate replaces the session the same way resend does
            log(event="verification_replaced", previousRequestId=self._session.requestId)
            self.cleanup()
        session = await self.client.initiate(subject_id)
        self._session = session
        self._subject_id = subject_id

        delay_sec = ms_until(session.expiresAt, now=self._clock()) / 1000.0
        self.timers.set_interval(IntervalConfig(id=POLL_TIMER, interval=self.poll_interval, callback=self._poll_tick))
        self.timers.set_timeout(EXPIRY_TIMER, self._expiry_tick, delay_sec)

        metrics.increment_verification_started()
        log(
            event="verification_initiated",
            requestId=session.requestId,
            subjectId=subject_id,
            expiresInSec=round(delay_sec, 3),
            pollIntervalSec=self.poll_interval,
        )
        return session

    async def resend(self, subject_id: Optional[str] = None) -> VerificationSession:
        """Destroy the current session (timers, subscribers) and start a new one."""
        subject_id = subject_id or self._subject_id
        if not subject_id:
            raise ValueError("resend() needs a subject id when no session was started")
        previous = self._session.requestId if self._session else None
        self.cleanup()
        log(event="verification_resend", previousRequestId=previous)
        return await self.initiate(subject_id)

    def cleanup(self) -> None:
        """Idempotent teardown: timers, session reference, subscribers, expiry callback."""
        self.timers.clear(POLL_TIMER)
        self.timers.clear(EXPIRY_TIMER)
        had_session = self._session is not None
        self._session = None
        self._status.clear()
        self._expiry_callback = None
        if had_session:
            log(event="verification_cleanup")

    # --- timer callbacks ---

    async def _poll_tick(self) -> None:
        session = self._session
        if session is None or session.is_terminal:
            self.timers.clear(POLL_TIMER)
            return

        request_id = session.requestId
        metrics.increment_verification_poll()
        try:
            status = await self.client.fetch_status(request_id)
        except SessionExpiredHard:
            log(event="verification_poll_stopped", requestId=request_id, reason="session_expired")
            if self._session is session:
                self.timers.clear(POLL_TIMER)
            return
        except OnboardingError as e:
            # Transient: keep polling
            log(event="verification_poll_failed", requestId=request_id, errorType=type(e).__name__, error=e.message[:200])
            return

        # Resend/cleanup or expiry happened while the request was in flight
        if self._session is not session or session.is_terminal:
            log(event="verification_poll_stale_dropped", requestId=request_id, status=status.value)
            return

        session.status = status
        log(event="verification_status_polled", requestId=request_id, status=status.value)
        if status.is_terminal:
            self.timers.clear(POLL_TIMER)
        self._status.publish(status)

    def _expiry_tick(self) -> None:
        session = self._session
        if session is None:
            return
        if session.is_terminal:
            log(event="verification_expiry_ignored", requestId=session.requestId, status=session.status.value)
            return

        session.status = VerificationStatus.FAILED
        self.timers.clear(POLL_TIMER)
        metrics.increment_verification_expired()
        log(event="verification_expired", requestId=session.requestId)

        self._status.publish(VerificationStatus.FAILED)
        callback = self._expiry_callback
        if callback is not None:
            try:
                callback()
            except Exception as e:
                log(event="verification_expiry_callback_failed", errorType=type(e).__name__, error=str(e)[:200])

    # --- subscribers ---

    def subscribe(self, handler: StatusHandler) -> Disposer:
        return self._status.subscribe(handler)

    def unsubscribe(self, handler: StatusHandler) -> bool:
        return self._status.unsubscribe(handler)

    def on_expiry(self, callback: Callable[[], Any]) -> None:
        # Single slot: last registration wins
        self._expiry_callback = callback

    @property
    def subscriber_count(self) -> int:
        return len(self._status)

    # --- queries ---

    @property
    def current_session(self) -> Optional[VerificationSession]:
        return self._session

    def open_external_url(self) -> None:
        if self._session is None or not self._session.externalUrl:
            return
        log(event="verification_url_opened", requestId=self._session.requestId)
        self._opener(self._session.externalUrl)

    def time_remaining_ms(self) -> int:
        if self._session is None:
            return 0
        return ms_until(self._session.expiresAt, now=self._clock())

    def formatted_time_remaining(self) -> str:
        return format_mm_ss(self.time_remaining_ms())

    def is_expired(self) -> bool:
        return self.time_remaining_ms() <= 0
