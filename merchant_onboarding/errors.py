"""
Typed exception hierarchy for the onboarding core.

Every error carries a machine-readable ``code`` so presentation layers map
errors to modals by type/code, never by message text.

    OnboardingError
    +-- ValidationError                     field-level, recovered by the form
    +-- DuplicateResourceError              e.g. phone already registered
    +-- ExternalVerificationFailedError     registry / ID lookup failed
    +-- ExternalVerificationMismatchError   phone/ID cross-match failed
    +-- SessionExpiredHard  (Unauthorized)  401 after one refresh-and-retry
    +-- SessionExpiredSoft  (Forbidden)     403 after one refresh-and-retry
    +-- NetworkError                        transport failure, passed through
    +-- HttpStatusError                     non-2xx response from the transport
    +-- DuplicateActionError                re-entrant ActionCoordinator call
    +-- MaxRetriesExceededError             ActionCoordinator retry cap hit

Guard failures are not errors. Verification failure/rejection is reported
through status subscribers, not raised.
"""
from typing import Any, Optional


class OnboardingError(Exception):
    code: str = "ONBOARDING_ERROR"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class ValidationError(OnboardingError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class DuplicateResourceError(OnboardingError):
    code = "DUPLICATE_RESOURCE"

    def __init__(self, resource: str, message: str = ""):
        super().__init__(message or f"{resource} is already registered")
        self.resource = resource


class ExternalVerificationFailedError(OnboardingError):
    code = "EXTERNAL_VERIFICATION_FAILED"

    def __init__(self, check: str, message: str = ""):
        super().__init__(message or f"{check} verification failed")
        self.check = check


class ExternalVerificationMismatchError(OnboardingError):
    code = "EXTERNAL_VERIFICATION_MISMATCH"

    def __init__(self, check: str, message: str = ""):
        super().__init__(message or f"{check} does not match the registered phone number")
        self.check = check


class SessionExpiredHard(OnboardingError):
    code = "SESSION_EXPIRED"


class SessionExpiredSoft(OnboardingError):
    code = "SESSION_FORBIDDEN"


Unauthorized = SessionExpiredHard
Forbidden = SessionExpiredSoft


class NetworkError(OnboardingError):
    code = "NETWORK_ERROR"


class HttpStatusError(OnboardingError):
    code = "HTTP_ERROR"

    def __init__(self, status: int, body: Any = None, *, method: str = "", path: str = ""):
        self.status = int(status)
        self.body = body
        self.method = method
        self.path = path
        super().__init__(f"{method} {path} -> {self.status}".strip())

    @property
    def detail(self) -> str:
        """Best-effort human message from an error body ({"error"|"message"|"detail": ...})."""
        if isinstance(self.body, dict):
            for key in ("error", "message", "detail"):
                val = self.body.get(key)
                if isinstance(val, str) and val:
                    return val
        if isinstance(self.body, str) and self.body:
            return self.body[:200]
        return self.message

    @property
    def body_code(self) -> str:
        if isinstance(self.body, dict):
            return str(self.body.get("code") or "")
        return ""

    def classify(self) -> str:
        """HTTP-status-derived classification consumed by presentation layers."""
        if self.status == 401:
            return SessionExpiredHard.code
        if self.status == 403:
            return SessionExpiredSoft.code
        if self.status == 409:
            return DuplicateResourceError.code
        if self.status == 400:
            return ValidationError.code
        if self.status == 422:
            return ExternalVerificationFailedError.code
        return self.code


class DuplicateActionError(OnboardingError):
    code = "DUPLICATE_ACTION"

    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} is already in progress")
        self.action_id = action_id


class MaxRetriesExceededError(OnboardingError):
    code = "MAX_RETRIES_EXCEEDED"

    def __init__(self, action_id: str, max_retries: int):
        super().__init__(f"Maximum retry attempts ({max_retries}) exceeded for {action_id}")
        self.action_id = action_id
        self.max_retries = max_retries
