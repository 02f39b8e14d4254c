from typing import List, Optional, Union
from pydantic import BaseModel, Field, field_validator

from merchant_onboarding.store.models import VerificationStatus


# --- auth ---

class RefreshRequest(BaseModel):
    refreshToken: str


class RefreshResponse(BaseModel):
    accessToken: str = Field(min_length=1)
    # Backends that don't rotate refresh tokens may omit it
    refreshToken: Optional[str] = None


# --- identity verification ---

class InitiateVerificationRequest(BaseModel):
    subjectId: str


class InitiateVerificationResponse(BaseModel):
    requestId: str = Field(min_length=1)
    externalUrl: str
    # Epoch ms, epoch seconds or ISO-8601
    expiresAt: Union[int, float, str]


class VerificationStatusResponse(BaseModel):
    requestId: Optional[str] = None
    status: VerificationStatus

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        if isinstance(v, str):
            return v.strip().upper().replace("-", "_").replace(" ", "_")
        return v


# --- onboarding steps ---

class PhoneCheckRequest(BaseModel):
    phone: str


class PhoneCheckResponse(BaseModel):
    phone: Optional[str] = None
    unique: bool


class OtpSendRequest(BaseModel):
    phone: str
    businessType: Optional[str] = None


class OtpSendResponse(BaseModel):
    success: bool = True
    message: str = ""


class OtpVerifyRequest(BaseModel):
    phone: str
    otp: str


class OtpVerifyResponse(BaseModel):
    verified: bool
    userId: Optional[str] = None
    accessToken: Optional[str] = None
    refreshToken: Optional[str] = None


class CrVerifyRequest(BaseModel):
    crNumber: str


class CrVerifyResponse(BaseModel):
    valid: bool
    companyName: Optional[str] = None
    error: Optional[str] = None


class IdVerifyRequest(BaseModel):
    idNumber: str
    phone: Optional[str] = None


class IdVerifyResponse(BaseModel):
    valid: bool
    # Phone/ID cross-match; only meaningful when valid
    match: bool = False
    error: Optional[str] = None


class ScreeningResponse(BaseModel):
    hit: bool = False
    approved: bool = True


class ExpectedVolumeModel(BaseModel):
    payroll: Optional[str] = None
    domestic: Optional[str] = None
    international: Optional[str] = None
    deposits: Optional[str] = None


class BusinessProfileModel(BaseModel):
    annualRevenue: Optional[str] = None
    businessActivity: Optional[str] = None
    purposeOfAccount: List[str] = Field(default_factory=list)
    purposeOther: Optional[str] = None
    expectedVolume: ExpectedVolumeModel = Field(default_factory=ExpectedVolumeModel)


class KybResponse(BaseModel):
    accepted: bool = True
    profileId: Optional[str] = None


class PasswordRequest(BaseModel):
    password: str


class PasswordResponse(BaseModel):
    success: bool = True
    message: str = ""
