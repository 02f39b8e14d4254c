from typing import Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from merchant_onboarding.settings import settings
from merchant_onboarding.store.models import CredentialPair
from merchant_onboarding.store.redis_conn import get_redis
from merchant_onboarding.observability.logging import log

TOKEN_FIELDS = ("accessToken", "refreshToken")
# Identity state wiped together with the tokens on forced logout
IDENTITY_FIELDS = ("userId", "deviceId", "phone")


class CredentialRepo:
    """Durable copy of the token pair and the signed-in identity."""

    def __init__(self, redis: Optional[Redis] = None, *, prefix: Optional[str] = None):
        self._redis = redis
        self.prefix = prefix or settings.CREDENTIALS_KEY_PREFIX

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def load(self) -> Optional[CredentialPair]:
        try:
            access, refresh = self.redis.mget([self._key(f) for f in TOKEN_FIELDS])
        except (RedisError, OSError) as e:
            log(event="credentials_load_failed", errorType=type(e).__name__, error=str(e)[:200])
            return None
        if not access and not refresh:
            return None
        return CredentialPair(accessToken=access or "", refreshToken=refresh or "")

    def save(self, pair: CredentialPair) -> bool:
        # MSET replaces both tokens in one step
        try:
            self.redis.mset({
                self._key("accessToken"): pair.accessToken,
                self._key("refreshToken"): pair.refreshToken,
            })
            return True
        except (RedisError, OSError) as e:
            log(event="credentials_persist_failed", errorType=type(e).__name__, error=str(e)[:200])
            return False

    def load_identity(self) -> Dict[str, str]:
        try:
            values = self.redis.mget([self._key(f) for f in IDENTITY_FIELDS])
        except (RedisError, OSError) as e:
            log(event="identity_load_failed", errorType=type(e).__name__, error=str(e)[:200])
            return {}
        return {f: v for f, v in zip(IDENTITY_FIELDS, values) if v}

    def save_identity(self, **identity: str) -> bool:
        mapping = {self._key(k): str(v) for k, v in identity.items() if k in IDENTITY_FIELDS and v}
        if not mapping:
            return True
        try:
            self.redis.mset(mapping)
            return True
        except (RedisError, OSError) as e:
            log(event="identity_persist_failed", errorType=type(e).__name__, error=str(e)[:200])
            return False

    def clear(self) -> bool:
        """Remove tokens and identity keys."""
        try:
            self.redis.delete(*[self._key(f) for f in TOKEN_FIELDS + IDENTITY_FIELDS])
            return True
        except (RedisError, OSError) as e:
            log(event="credentials_clear_failed", errorType=type(e).__name__, error=str(e)[:200])
            return False
