from pydantic import ValidationError as SchemaError

from merchant_onboarding.api.schemas import (
    InitiateVerificationRequest,
    InitiateVerificationResponse,
    VerificationStatusResponse,
)
from merchant_onboarding.auth.credentials import CredentialLifecycleManager
from merchant_onboarding.errors import ExternalVerificationFailedError
from merchant_onboarding.store.models import VerificationSession, VerificationStatus
from merchant_onboarding.utils.time import parse_timestamp_ms

INITIATE_PATH = "/verification/initiate"
STATUS_PATH = "/verification/status"


class VerificationClient:
    """Provider calls, routed through the credential wrapper."""

    def __init__(
        self,
        credentials: CredentialLifecycleManager,
        *,
        initiate_path: str = INITIATE_PATH,
        status_path: str = STATUS_PATH,
    ):
        self.credentials = credentials
        self.initiate_path = initiate_path
        self.status_path = status_path

    async def initiate(self, subject_id: str) -> VerificationSession:
        body = await self.credentials.post(
            self.initiate_path, json=InitiateVerificationRequest(subjectId=subject_id).model_dump()
        )
        try:
            resp = InitiateVerificationResponse.model_validate(body)
        except SchemaError as e:
            raise ExternalVerificationFailedError("verification", "Malformed initiate response") from e
        return VerificationSession(
            requestId=resp.requestId,
            expiresAt=parse_timestamp_ms(resp.expiresAt),
            externalUrl=resp.externalUrl,
        )

    async def fetch_status(self, request_id: str) -> VerificationStatus:
        body = await self.credentials.get(self.status_path, params={"requestId": request_id})
        try:
            return VerificationStatusResponse.model_validate(body).status
        except SchemaError as e:
            raise ExternalVerificationFailedError("verification", "Malformed status response") from e
