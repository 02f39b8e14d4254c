from typing import Optional

from redis import Redis
from merchant_onboarding.settings import settings


def get_redis(url: Optional[str] = None) -> Redis:
    """Shared connection factory for the snapshot, credential and metrics stores."""
    return Redis.from_url(url or settings.REDIS_URL, decode_responses=True)
