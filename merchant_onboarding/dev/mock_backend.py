"""
Dev/test double of the onboarding backend and the verification provider.

Not a production server: state lives in the Scenario object handed to
`create_mock_app`, so every test builds its own isolated backend.
"""
import uuid
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException

from merchant_onboarding.api.schemas import (
    BusinessProfileModel,
    CrVerifyRequest,
    CrVerifyResponse,
    IdVerifyRequest,
    IdVerifyResponse,
    InitiateVerificationRequest,
    InitiateVerificationResponse,
    KybResponse,
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    PasswordRequest,
    PasswordResponse,
    PhoneCheckRequest,
    PhoneCheckResponse,
    RefreshRequest,
    RefreshResponse,
    ScreeningResponse,
    VerificationStatusResponse,
)
from merchant_onboarding.dev.scenario import Scenario
from merchant_onboarding.observability.logging import log
from merchant_onboarding.settings import settings
from merchant_onboarding.utils.time import now_ms


def api_prefix(base_url: Optional[str] = None) -> str:
    return urlparse(base_url or settings.API_BASE_URL).path.rstrip("/")


def create_mock_app(scenario: Optional[Scenario] = None, *, prefix: Optional[str] = None) -> FastAPI:
    scenario = scenario or Scenario()
    app = FastAPI(title="Merchant Onboarding Mock Backend")
    app.state.scenario = scenario
    router = APIRouter(prefix=api_prefix() if prefix is None else prefix)

    def require_bearer(authorization: str = Header(default="")):
        token = authorization[7:].strip() if authorization.lower().startswith("bearer ") else ""
        if not token or token not in scenario.access_tokens:
            raise HTTPException(status_code=401, detail="Invalid or expired access token")
        return token

    # --- auth ---

    @router.post("/auth/refresh", response_model=RefreshResponse)
    def refresh(req: RefreshRequest):
        scenario.refresh_calls += 1
        if scenario.refresh_fails or req.refreshToken not in scenario.refresh_tokens:
            log(event="mock_refresh_rejected", calls=scenario.refresh_calls)
            raise HTTPException(status_code=401, detail="Invalid refresh token")
        access, refresh_token = scenario.rotate(req.refreshToken)
        return RefreshResponse(accessToken=access, refreshToken=refresh_token)

    # --- onboarding (public until OTP verified) ---

    @router.post("/onboarding/phone/check", response_model=PhoneCheckResponse)
    def phone_check(req: PhoneCheckRequest):
        return PhoneCheckResponse(phone=req.phone, unique=not scenario.duplicate_phone)

    @router.post("/onboarding/otp/send", response_model=OtpSendResponse)
    def otp_send(req: OtpSendRequest):
        return OtpSendResponse(success=True, message="OTP sent")

    @router.post("/onboarding/otp/verify", response_model=OtpVerifyResponse)
    def otp_verify(req: OtpVerifyRequest):
        if req.otp != scenario.otp_accept_code:
            return OtpVerifyResponse(verified=False)
        access, refresh_token = scenario.issue_tokens()
        return OtpVerifyResponse(
            verified=True, userId=f"u-{uuid.uuid4().hex[:12]}", accessToken=access, refreshToken=refresh_token
        )

    # --- onboarding (authenticated) ---

    @router.post("/onboarding/cr/verify", response_model=CrVerifyResponse)
    def cr_verify(req: CrVerifyRequest, _token: str = Depends(require_bearer)):
        if not req.crNumber.isdigit() or len(req.crNumber) != 10:
            raise HTTPException(status_code=400, detail="CR number must be 10 digits")
        if not scenario.cr_valid:
            return CrVerifyResponse(valid=False, error="Commercial registration not found")
        return CrVerifyResponse(valid=True, companyName="Mock Trading Co.")

    @router.post("/onboarding/id/verify", response_model=IdVerifyResponse)
    def id_verify(req: IdVerifyRequest, _token: str = Depends(require_bearer)):
        if not scenario.id_valid:
            return IdVerifyResponse(valid=False, error="ID number could not be verified")
        return IdVerifyResponse(valid=True, match=not scenario.id_phone_mismatch)

    @router.post("/onboarding/screening", response_model=ScreeningResponse)
    def screening(_token: str = Depends(require_bearer)):
        return ScreeningResponse(hit=scenario.global_hit, approved=scenario.compliance_approved)

    @router.post("/onboarding/kyb", response_model=KybResponse)
    def kyb(profile: BusinessProfileModel, _token: str = Depends(require_bearer)):
        if not scenario.kyb_accepted:
            return KybResponse(accepted=False)
        return KybResponse(accepted=True, profileId=f"p-{uuid.uuid4().hex[:12]}")

    @router.post("/onboarding/password", response_model=PasswordResponse)
    def password(req: PasswordRequest, _token: str = Depends(require_bearer)):
        if len(req.password) < 8:
            raise HTTPException(status_code=400, detail="Password must be at least 8 characters long")
        return PasswordResponse(success=True, message="Password set")

    # --- verification provider ---

    @router.post("/verification/initiate", response_model=InitiateVerificationResponse)
    def initiate(req: InitiateVerificationRequest, _token: str = Depends(require_bearer)):
        request_id = f"vr-{uuid.uuid4().hex[:16]}"
        scenario.verification_polls[request_id] = 0
        return InitiateVerificationResponse(
            requestId=request_id,
            externalUrl=f"https://verify.example.test/session/{request_id}",
            expiresAt=now_ms() + int(scenario.verification_ttl_sec) * 1000,
        )

    @router.get("/verification/status", response_model=VerificationStatusResponse)
    def status(requestId: str, _token: str = Depends(require_bearer)):
        if requestId not in scenario.verification_polls:
            raise HTTPException(status_code=404, detail="Unknown verification request")
        return VerificationStatusResponse(requestId=requestId, status=scenario.next_verification_status(requestId))

    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
