from merchant_onboarding.store.credential_repo import CredentialRepo
from merchant_onboarding.store.models import CredentialPair


def test_save_and_load_pair(fake_redis):
    repo = CredentialRepo(fake_redis, prefix="auth")

    assert repo.load() is None
    repo.save(CredentialPair(accessToken="at-1", refreshToken="rt-1"))

    assert fake_redis.store["auth:accessToken"] == "at-1"
    assert repo.load() == CredentialPair(accessToken="at-1", refreshToken="rt-1")


def test_identity_round_trip_ignores_unknown_keys(fake_redis):
    repo = CredentialRepo(fake_redis)

    repo.save_identity(userId="u-1", phone="+966500000001", favouriteColour="blue")

    assert repo.load_identity() == {"userId": "u-1", "phone": "+966500000001"}
    assert "auth:favouriteColour" not in fake_redis.store


def test_clear_removes_tokens_and_identity(fake_redis):
    repo = CredentialRepo(fake_redis)
    repo.save(CredentialPair(accessToken="at-1", refreshToken="rt-1"))
    repo.save_identity(userId="u-1", deviceId="d-1")
    fake_redis.store["unrelated"] = "keep"

    assert repo.clear() is True

    assert repo.load() is None
    assert repo.load_identity() == {}
    assert fake_redis.store == {"unrelated": "keep"}


def test_storage_failure_returns_false(fake_redis):
    repo = CredentialRepo(fake_redis)
    fake_redis.fail = True

    assert repo.save(CredentialPair(accessToken="a", refreshToken="r")) is False
    assert repo.load() is None
    assert repo.clear() is False
