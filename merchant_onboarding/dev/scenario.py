import uuid
from dataclasses import dataclass, field, fields
from typing import Dict, List, Set, Tuple

from merchant_onboarding.settings import settings


@dataclass
class Scenario:
    """
    Behaviour switches for the dev mock backend, passed in explicitly at app
    construction. Tests flip fields (or call `apply`) between requests.
    """

    duplicate_phone: bool = False
    otp_accept_code: str = "1234"
    cr_valid: bool = True
    id_valid: bool = True
    id_phone_mismatch: bool = False
    # Status returned by successive polls; the last value repeats
    verification_sequence: List[str] = field(default_factory=lambda: ["SENT", "UNDER_REVIEW", "RECEIVED"])
    verification_ttl_sec: int = settings.MOCK_VERIFICATION_TTL_SEC
    global_hit: bool = False
    compliance_approved: bool = True
    kyb_accepted: bool = True
    refresh_fails: bool = False

    # Runtime bookkeeping (not behaviour switches)
    access_tokens: Set[str] = field(default_factory=set)
    refresh_tokens: Set[str] = field(default_factory=set)
    refresh_calls: int = 0
    verification_polls: Dict[str, int] = field(default_factory=dict)

    def apply(self, **patch) -> "Scenario":
        known = {f.name for f in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise ValueError(f"Unknown scenario fields: {sorted(unknown)}")
        for k, v in patch.items():
            setattr(self, k, v)
        return self

    def issue_tokens(self) -> Tuple[str, str]:
        access = f"at-{uuid.uuid4().hex}"
        refresh = f"rt-{uuid.uuid4().hex}"
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return access, refresh

    def rotate(self, refresh_token: str) -> Tuple[str, str]:
        self.refresh_tokens.discard(refresh_token)
        return self.issue_tokens()

    def expire_access_tokens(self) -> int:
        """Invalidate every issued access token; refresh tokens stay valid."""
        n = len(self.access_tokens)
        self.access_tokens.clear()
        return n

    def revoke_refresh_tokens(self) -> None:
        self.refresh_tokens.clear()

    def next_verification_status(self, request_id: str) -> str:
        idx = self.verification_polls.get(request_id, 0)
        self.verification_polls[request_id] = idx + 1
        seq = self.verification_sequence or ["PENDING"]
        return seq[min(idx, len(seq) - 1)]
