from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


class Step(str, Enum):
    BUSINESS_TYPE = "businessType"
    PHONE = "phone"
    OTP = "otp"
    CR = "cr"
    ID = "id"
    VERIFICATION = "verification"
    KYB = "kyb"
    PASSWORD = "password"
    DONE = "done"


STEP_ORDER: List[Step] = [
    Step.BUSINESS_TYPE,
    Step.PHONE,
    Step.OTP,
    Step.CR,
    Step.ID,
    Step.VERIFICATION,
    Step.KYB,
    Step.PASSWORD,
    Step.DONE,
]


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    UNDER_REVIEW = "UNDER_REVIEW"
    RECEIVED = "RECEIVED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {VerificationStatus.RECEIVED, VerificationStatus.FAILED, VerificationStatus.REJECTED}
)


@dataclass
class ExpectedVolume:
    payroll: Optional[str] = None
    domestic: Optional[str] = None
    international: Optional[str] = None
    deposits: Optional[str] = None


@dataclass
class BusinessProfile:
    """KYB answers collected on the business-profile screen."""
    annualRevenue: Optional[str] = None
    businessActivity: Optional[str] = None
    purposeOfAccount: List[str] = field(default_factory=list)
    purposeOther: Optional[str] = None
    expectedVolume: ExpectedVolume = field(default_factory=ExpectedVolume)


@dataclass
class WorkflowData:
    # Accumulated facts; verification flags gate the steps that follow them.
    businessType: Optional[str] = None
    phone: Optional[str] = None
    otpVerified: bool = False
    crNumber: Optional[str] = None
    crVerified: bool = False
    idNumber: Optional[str] = None
    # True only once the ID matched the verified phone number
    idVerified: bool = False
    verificationStatus: Optional[VerificationStatus] = None
    kybData: Optional[BusinessProfile] = None
    passwordSet: bool = False


@dataclass
class WorkflowState:
    currentStep: Step = Step.BUSINESS_TYPE
    completedSteps: Set[Step] = field(default_factory=set)
    data: WorkflowData = field(default_factory=WorkflowData)
    validationErrors: Dict[str, str] = field(default_factory=dict)
    isLoading: bool = False


@dataclass
class VerificationSession:
    requestId: str
    expiresAt: int  # epoch ms
    externalUrl: str
    status: VerificationStatus = VerificationStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class CredentialPair:
    accessToken: str
    refreshToken: str
