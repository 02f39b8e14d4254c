import time
from dataclasses import asdict
from typing import Any, Callable, Optional

from redis import Redis

from merchant_onboarding.api.schemas import (
    CrVerifyRequest,
    CrVerifyResponse,
    IdVerifyRequest,
    IdVerifyResponse,
    KybResponse,
    OtpSendRequest,
    OtpVerifyRequest,
    OtpVerifyResponse,
    PasswordRequest,
    PhoneCheckRequest,
    PhoneCheckResponse,
    ScreeningResponse,
)
from merchant_onboarding.auth.credentials import CredentialLifecycleManager
from merchant_onboarding.core import route_guard
from merchant_onboarding.core import state_machine as sm
from merchant_onboarding.core.actions import ActionCoordinator
from merchant_onboarding.core.workflow import WorkflowStore
from merchant_onboarding.errors import (
    DuplicateResourceError,
    ExternalVerificationFailedError,
    ExternalVerificationMismatchError,
    HttpStatusError,
    OnboardingError,
    ValidationError,
)
from merchant_onboarding.events.bus import Disposer, EventBus, VerificationStatusChanged
from merchant_onboarding.navigation import InMemoryNavigator, Navigator
from merchant_onboarding.observability.logging import log
from merchant_onboarding.settings import settings
from merchant_onboarding.store.credential_repo import CredentialRepo
from merchant_onboarding.store.models import (
    BusinessProfile,
    CredentialPair,
    Step,
    VerificationSession,
    VerificationStatus,
)
from merchant_onboarding.store.snapshot_repo import WorkflowSnapshotRepo
from merchant_onboarding.transport.http import HttpTransport
from merchant_onboarding.utils.timers import TimerRegistry
from merchant_onboarding.verification.client import VerificationClient
from merchant_onboarding.verification.session_manager import VerificationSessionManager

OTP_RESEND_TIMER = "otp:resend"

PATH_PHONE_CHECK = "/onboarding/phone/check"
PATH_OTP_SEND = "/onboarding/otp/send"
PATH_OTP_VERIFY = "/onboarding/otp/verify"
PATH_CR_VERIFY = "/onboarding/cr/verify"
PATH_ID_VERIFY = "/onboarding/id/verify"
PATH_SCREENING = "/onboarding/screening"
PATH_KYB = "/onboarding/kyb"
PATH_PASSWORD = "/onboarding/password"


def _translate(err: HttpStatusError, field: str, check: str) -> OnboardingError:
    """Map a backend status onto the error taxonomy screens understand."""
    kind = err.classify()
    if kind == ValidationError.code:
        return ValidationError(field, err.detail)
    if kind == DuplicateResourceError.code:
        return DuplicateResourceError(field, err.detail)
    if kind == ExternalVerificationFailedError.code:
        if err.body_code == ExternalVerificationMismatchError.code:
            return ExternalVerificationMismatchError(check, err.detail)
        return ExternalVerificationFailedError(check, err.detail)
    return err


def _require(field: str, value: Optional[str], message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(field, message)
    return value


class OnboardingOrchestrator:
    """
    Screen-level operations. Each one runs through the ActionCoordinator,
    talks to the backend via the credential wrapper and then dispatches
    workflow actions; field-level ValidationErrors end up in
    `state.validationErrors` and the operation returns False.
    """

    def __init__(
        self,
        *,
        store: WorkflowStore,
        credentials: CredentialLifecycleManager,
        verification: VerificationSessionManager,
        actions: Optional[ActionCoordinator] = None,
        timers: Optional[TimerRegistry] = None,
        bus: Optional[EventBus] = None,
        navigator: Optional[Navigator] = None,
        otp_cooldown_sec: Optional[float] = None,
    ):
        self.store = store
        self.credentials = credentials
        self.verification = verification
        self.actions = actions or ActionCoordinator()
        self.timers = timers or TimerRegistry(owner="onboarding")
        self.bus = bus or credentials.bus
        self.navigator = navigator or credentials.navigator or InMemoryNavigator()
        self.otp_cooldown_sec = float(otp_cooldown_sec if otp_cooldown_sec is not None else settings.OTP_RESEND_COOLDOWN_SEC)

        self.otp_resend_remaining: float = 0.0
        self._verification_disposer: Optional[Disposer] = None

    @classmethod
    def build(
        cls,
        *,
        redis: Optional[Redis] = None,
        transport: Optional[HttpTransport] = None,
        navigator: Optional[Navigator] = None,
        opener: Optional[Callable[[str], Any]] = None,
    ) -> "OnboardingOrchestrator":
        """Wire every component from settings; one instance per signed-in client."""
        transport = transport or HttpTransport()
        navigator = navigator or InMemoryNavigator()
        bus = EventBus()
        credentials = CredentialLifecycleManager(
            transport, repo=CredentialRepo(redis), bus=bus, navigator=navigator
        )
        vkwargs = {"opener": opener} if opener is not None else {}
        verification = VerificationSessionManager(VerificationClient(credentials), **vkwargs)
        return cls(
            store=WorkflowStore(WorkflowSnapshotRepo(redis)),
            credentials=credentials,
            verification=verification,
            bus=bus,
            navigator=navigator,
        )

    # --- plumbing ---

    @property
    def state(self):
        return self.store.state

    async def _run_step(
        self, action_id: str, field: str, operation, *, step: Optional[Step] = None, **options
    ) -> bool:
        if step is not None and not sm.can_advance_to(self.state, step):
            decision = self.guard(route_guard.path_for(step))
            log(event="step_blocked", actionId=action_id, step=step.value, redirectTo=decision.redirect_to)
            return False
        t0 = time.time()
        self.store.dispatch(sm.clear_validation_error(field))
        self.store.dispatch(sm.set_loading(True))
        try:
            await self.actions.execute(action_id, operation, **options)
        except ValidationError as e:
            self.store.dispatch(sm.set_validation_error(e.field, e.message))
            log(event="step_validation_failed", actionId=action_id, field=e.field)
            return False
        except OnboardingError as e:
            log(event="step_failed", actionId=action_id, errorType=type(e).__name__, code=e.code)
            raise
        finally:
            self.store.dispatch(sm.set_loading(False))
        log(
            event="step_processed",
            actionId=action_id,
            currentStep=self.state.currentStep.value,
            elapsedMs=int((time.time() - t0) * 1000),
        )
        return True

    async def _post(self, path: str, payload: dict, field: str, check: str) -> Any:
        try:
            return await self.credentials.post(path, json=payload)
        except HttpStatusError as e:
            translated = _translate(e, field, check)
            if translated is e:
                raise
            raise translated from e

    def _advance_from(self, step: Step, *, path: Optional[str] = None) -> None:
        current = self.state.currentStep
        if current != step:
            # Resubmitting an earlier screen; only ever onto a step whose guard holds
            if not sm.can_advance_to(self.state, step):
                log(event="workflow_step_move_refused", fromStep=current.value, toStep=step.value)
                return
            self.store.dispatch(sm.set_step(step))
            log(event="workflow_step_moved", fromStep=current.value, toStep=step.value)
        before = self.state.currentStep
        self.store.dispatch(sm.advance())
        after = self.state.currentStep
        if after != before:
            self.navigator.navigate(path or route_guard.path_for(after))

    # --- steps ---

    async def select_business_type(self, business_type: str) -> bool:
        async def op():
            value = _require("businessType", business_type, "Please select a business type")
            self.store.dispatch(sm.set_field("businessType", value))
            self._advance_from(Step.BUSINESS_TYPE)

        return await self._run_step("select_business_type", "businessType", op, step=Step.BUSINESS_TYPE)

    async def submit_phone(self, phone: str) -> bool:
        async def op():
            value = _require("phone", phone, "Phone number is required")
            # 1) Duplicate check
            check = PhoneCheckResponse.model_validate(
                await self._post(PATH_PHONE_CHECK, PhoneCheckRequest(phone=value).model_dump(), "phone", "phone")
            )
            if not check.unique:
                raise DuplicateResourceError("phone", "This phone number is already registered")
            # 2) Send OTP
            await self._post(
                PATH_OTP_SEND,
                OtpSendRequest(phone=value, businessType=self.state.data.businessType).model_dump(),
                "phone",
                "otp",
            )
            self.store.dispatch(sm.set_field("phone", value))
            self._advance_from(Step.PHONE)
            self.start_otp_resend_countdown()

        return await self._run_step("submit_phone", "phone", op, step=Step.PHONE)

    async def resend_otp(self) -> bool:
        if not self.can_resend_otp:
            self.store.dispatch(sm.set_validation_error("otp", "Please wait before requesting a new code"))
            return False

        async def op():
            phone = _require("phone", self.state.data.phone, "Phone number is required")
            await self._post(
                PATH_OTP_SEND,
                OtpSendRequest(phone=phone, businessType=self.state.data.businessType).model_dump(),
                "otp",
                "otp",
            )
            self.start_otp_resend_countdown()

        return await self._run_step("resend_otp", "otp", op, step=Step.OTP)

    async def verify_otp(self, otp: str) -> bool:
        async def op():
            code = _require("otp", otp, "Verification code is required")
            phone = _require("phone", self.state.data.phone, "Phone number is required")
            resp = OtpVerifyResponse.model_validate(
                await self._post(PATH_OTP_VERIFY, OtpVerifyRequest(phone=phone, otp=code).model_dump(), "otp", "otp")
            )
            if not resp.verified:
                raise ValidationError("otp", "Invalid verification code")
            if resp.accessToken:
                self.credentials.set_credentials(
                    CredentialPair(accessToken=resp.accessToken, refreshToken=resp.refreshToken or ""),
                    userId=resp.userId or "",
                    phone=phone,
                )
            self.timers.clear(OTP_RESEND_TIMER)
            self.otp_resend_remaining = 0.0
            self.store.dispatch(sm.mark_verified(Step.OTP))
            self._advance_from(Step.OTP)

        return await self._run_step("verify_otp", "otp", op, step=Step.OTP)

    async def submit_cr(self, cr_number: str) -> bool:
        async def op():
            value = _require("crNumber", cr_number, "CR number is required")
            resp = CrVerifyResponse.model_validate(
                await self._post(PATH_CR_VERIFY, CrVerifyRequest(crNumber=value).model_dump(), "crNumber", "cr")
            )
            if not resp.valid:
                raise ExternalVerificationFailedError("cr", resp.error or "")
            self.store.dispatch(sm.set_field("crNumber", value))
            self.store.dispatch(sm.mark_verified(Step.CR))
            self._advance_from(Step.CR)

        return await self._run_step("submit_cr", "crNumber", op, step=Step.CR)

    async def submit_id(self, id_number: str) -> bool:
        async def op():
            value = _require("idNumber", id_number, "ID number is required")
            resp = IdVerifyResponse.model_validate(
                await self._post(
                    PATH_ID_VERIFY,
                    IdVerifyRequest(idNumber=value, phone=self.state.data.phone).model_dump(),
                    "idNumber",
                    "id",
                )
            )
            if not resp.valid:
                raise ExternalVerificationFailedError("id", resp.error or "")
            if not resp.match:
                raise ExternalVerificationMismatchError("id")
            self.store.dispatch(sm.set_field("idNumber", value))
            self.store.dispatch(sm.mark_verified(Step.ID))
            self._advance_from(Step.ID)

        return await self._run_step("submit_id", "idNumber", op, step=Step.ID)

    # --- identity verification ---

    def _wire_verification(self, session: VerificationSession) -> None:
        # Subscribers don't survive resend/cleanup, so wire again for every new session
        if self._verification_disposer is not None:
            self._verification_disposer()
        self._verification_disposer = self.verification.subscribe(self._on_verification_status)
        self.verification.on_expiry(self._on_verification_expired)
        self.store.dispatch(sm.set_field("verificationStatus", session.status))

    async def start_verification(self) -> Optional[VerificationSession]:
        holder = {}

        async def op():
            subject = _require("idNumber", self.state.data.idNumber, "ID number is required")
            session = await self.verification.initiate(subject)
            self._wire_verification(session)
            holder["session"] = session

        ok = await self._run_step("start_verification", "verification", op, step=Step.VERIFICATION)
        return holder.get("session") if ok else None

    async def resend_verification(self) -> Optional[VerificationSession]:
        holder = {}

        async def op():
            subject = _require("idNumber", self.state.data.idNumber, "ID number is required")
            session = await self.verification.resend(subject)
            self._wire_verification(session)
            holder["session"] = session

        ok = await self._run_step("resend_verification", "verification", op, step=Step.VERIFICATION)
        return holder.get("session") if ok else None

    def _on_verification_status(self, status: VerificationStatus) -> None:
        session = self.verification.current_session
        request_id = session.requestId if session else ""
        self.store.dispatch(sm.set_field("verificationStatus", status))
        self.bus.publish(VerificationStatusChanged(request_id=request_id, status=status.value))
        if status == VerificationStatus.RECEIVED:
            # Screening sits between verification and the business profile
            self._advance_from(Step.VERIFICATION, path=route_guard.GLOBAL_SCREENING_PATH)
        elif status.is_terminal:
            log(event="verification_terminal_failure", requestId=request_id, status=status.value)

    def _on_verification_expired(self) -> None:
        self.store.dispatch(sm.set_validation_error("verification", "Verification session expired"))

    def open_verification_url(self) -> None:
        self.verification.open_external_url()

    # --- post-verification ---

    async def run_global_screening(self) -> bool:
        decision = route_guard.check_path(self.state, route_guard.GLOBAL_SCREENING_PATH)
        if not decision.allowed:
            log(event="global_screening_blocked", redirectTo=decision.redirect_to)
            return False

        async def op():
            resp = ScreeningResponse.model_validate(await self._post(PATH_SCREENING, {}, "screening", "screening"))
            if resp.hit or not resp.approved:
                raise ExternalVerificationFailedError("screening", "Global screening did not pass")
            self.navigator.navigate(route_guard.path_for(Step.KYB))

        return await self._run_step("run_global_screening", "screening", op)

    async def submit_business_profile(self, profile: BusinessProfile) -> bool:
        previous = self.state.data.kybData

        async def op():
            resp = KybResponse.model_validate(await self._post(PATH_KYB, asdict(profile), "kybData", "kyb"))
            if not resp.accepted:
                raise ExternalVerificationFailedError("kyb", "Business profile was not accepted")
            self._advance_from(Step.KYB)

        return await self._run_step(
            "submit_business_profile",
            "kybData",
            op,
            step=Step.KYB,
            optimistic_update=lambda: self.store.dispatch(sm.set_field("kybData", profile)),
            on_revert=lambda: self.store.dispatch(sm.set_field("kybData", previous)),
        )

    async def set_password(self, password: str) -> bool:
        async def op():
            value = _require("password", password, "Password is required")
            await self._post(PATH_PASSWORD, PasswordRequest(password=value).model_dump(), "password", "password")
            self.store.dispatch(sm.mark_verified(Step.PASSWORD))
            self._advance_from(Step.PASSWORD)
            self.verification.cleanup()

        return await self._run_step("set_password", "password", op, step=Step.PASSWORD)

    # --- navigation / lifecycle ---

    def guard(self, path: str) -> route_guard.RouteDecision:
        return route_guard.enforce(self.state, path, self.navigator)

    def start_otp_resend_countdown(self, on_tick: Optional[Callable[[float], Any]] = None) -> None:
        self.otp_resend_remaining = self.otp_cooldown_sec

        def tick(remaining: float) -> None:
            self.otp_resend_remaining = remaining
            if on_tick is not None:
                on_tick(remaining)

        def done() -> None:
            self.otp_resend_remaining = 0.0
            log(event="otp_resend_available")

        self.timers.countdown(OTP_RESEND_TIMER, self.otp_cooldown_sec, tick, done)

    @property
    def can_resend_otp(self) -> bool:
        return not self.timers.has(OTP_RESEND_TIMER)

    def _teardown(self) -> None:
        if self._verification_disposer is not None:
            self._verification_disposer()
            self._verification_disposer = None
        self.verification.cleanup()
        self.timers.clear_all()
        self.actions.clear_pending()

    def restart(self) -> None:
        """Abandon the flow: stop every timer and start over from the first step."""
        self._teardown()
        self.otp_resend_remaining = 0.0
        self.store.reset()
        self.navigator.navigate(route_guard.path_for(Step.BUSINESS_TYPE), replace=True)
        log(event="onboarding_restarted")

    async def shutdown(self) -> None:
        self._teardown()
        self.store.close()
        await self.credentials.transport.aclose()
        log(event="onboarding_shutdown")
