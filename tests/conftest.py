import fnmatch

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from merchant_onboarding.auth.credentials import CredentialLifecycleManager
from merchant_onboarding.core.orchestrator import OnboardingOrchestrator
from merchant_onboarding.core.workflow import WorkflowStore
from merchant_onboarding.dev.mock_backend import create_mock_app
from merchant_onboarding.dev.scenario import Scenario
from merchant_onboarding.events.bus import EventBus
from merchant_onboarding.navigation import InMemoryNavigator
from merchant_onboarding.store.credential_repo import CredentialRepo
from merchant_onboarding.store.snapshot_repo import WorkflowSnapshotRepo
from merchant_onboarding.transport.http import HttpTransport
from merchant_onboarding.verification.client import VerificationClient
from merchant_onboarding.verification.session_manager import VerificationSessionManager

BASE_URL = "http://testserver/api/v1"


class FakeRedis:
    """Dict-backed stand-in for the handful of Redis commands the package uses."""

    def __init__(self):
        self.store = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def set(self, key, value, ex=None, px=None, nx=False):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value if isinstance(value, (str, list)) else str(value)
        return True

    def mget(self, keys):
        self._check()
        return [self.store.get(k) for k in keys]

    def mset(self, mapping):
        self._check()
        for k, v in mapping.items():
            self.store[k] = str(v)
        return True

    def delete(self, *keys):
        self._check()
        n = 0
        for k in keys:
            if self.store.pop(k, None) is not None:
                n += 1
        return n

    def scan_iter(self, match="*"):
        self._check()
        return iter([k for k in list(self.store) if fnmatch.fnmatchcase(k, match)])

    def incr(self, key, amount=1):
        self._check()
        value = int(self.store.get(key) or 0) + amount
        self.store[key] = str(value)
        return value

    def lpush(self, key, *values):
        self._check()
        lst = self.store.setdefault(key, [])
        for v in values:
            lst.insert(0, str(v))
        return len(lst)

    def ltrim(self, key, start, end):
        self._check()
        lst = self.store.get(key) or []
        self.store[key] = lst[start:end + 1]
        return True

    def lrange(self, key, start, end):
        self._check()
        lst = self.store.get(key) or []
        return lst[start:end + 1]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def _isolated_redis(monkeypatch, fake_redis):
    # Nothing in the suite may reach a real Redis
    for target in (
        "merchant_onboarding.observability.metrics.get_redis",
        "merchant_onboarding.store.snapshot_repo.get_redis",
        "merchant_onboarding.store.credential_repo.get_redis",
    ):
        monkeypatch.setattr(target, lambda: fake_redis)


@pytest.fixture
def scenario():
    return Scenario(verification_sequence=["SENT", "UNDER_REVIEW", "RECEIVED"], verification_ttl_sec=60)


@pytest.fixture
def make_orchestrator(fake_redis, scenario):
    """Orchestrator wired against the in-process mock backend."""

    def build(*, navigator=None, poll_interval=0.01, opener=None):
        app = create_mock_app(scenario)
        transport = HttpTransport(BASE_URL, transport=httpx.ASGITransport(app=app))
        navigator = navigator or InMemoryNavigator("/onboarding/business-type")
        bus = EventBus()
        credentials = CredentialLifecycleManager(
            transport, repo=CredentialRepo(fake_redis), bus=bus, navigator=navigator
        )
        verification = VerificationSessionManager(
            VerificationClient(credentials),
            poll_interval=poll_interval,
            opener=opener or (lambda url: None),
        )
        return OnboardingOrchestrator(
            store=WorkflowStore(WorkflowSnapshotRepo(fake_redis)),
            credentials=credentials,
            verification=verification,
            bus=bus,
            navigator=navigator,
            otp_cooldown_sec=0.05,
        )

    return build
