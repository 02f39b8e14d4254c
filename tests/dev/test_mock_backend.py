import pytest
from fastapi.testclient import TestClient

from merchant_onboarding.dev.mock_backend import api_prefix, create_mock_app
from merchant_onboarding.dev.scenario import Scenario


@pytest.fixture
def scenario():
    return Scenario(verification_sequence=["SENT", "RECEIVED"])


@pytest.fixture
def client(scenario):
    return TestClient(create_mock_app(scenario, prefix="/api/v1"))


def _login(client):
    resp = client.post("/api/v1/onboarding/otp/verify", json={"phone": "+966500000001", "otp": "1234"})
    body = resp.json()
    assert body["verified"] is True
    return body


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_api_prefix_is_path_of_base_url():
    assert api_prefix("http://localhost:8080/api/v1/") == "/api/v1"
    assert api_prefix("http://localhost:8080") == ""


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_phone_check_follows_duplicate_switch(client, scenario):
    url = "/api/v1/onboarding/phone/check"
    assert client.post(url, json={"phone": "+966500000001"}).json()["unique"] is True

    scenario.apply(duplicate_phone=True)
    assert client.post(url, json={"phone": "+966500000001"}).json()["unique"] is False


def test_wrong_otp_issues_no_tokens(client, scenario):
    resp = client.post("/api/v1/onboarding/otp/verify", json={"phone": "+966500000001", "otp": "0000"})

    assert resp.json()["verified"] is False
    assert scenario.access_tokens == set()


def test_authenticated_routes_need_a_live_bearer(client, scenario):
    body = _login(client)
    url = "/api/v1/onboarding/cr/verify"

    assert client.post(url, json={"crNumber": "1010101010"}).status_code == 401
    assert client.post(url, json={"crNumber": "1010101010"}, headers=_auth(body["accessToken"])).json()["valid"] is True

    scenario.expire_access_tokens()
    assert client.post(url, json={"crNumber": "1010101010"}, headers=_auth(body["accessToken"])).status_code == 401


def test_refresh_rotates_the_pair(client, scenario):
    body = _login(client)
    scenario.expire_access_tokens()

    resp = client.post("/api/v1/auth/refresh", json={"refreshToken": body["refreshToken"]})
    rotated = resp.json()

    assert resp.status_code == 200
    assert rotated["accessToken"] in scenario.access_tokens
    assert rotated["refreshToken"] != body["refreshToken"]
    # The old refresh token is single-use
    again = client.post("/api/v1/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert again.status_code == 401
    assert scenario.refresh_calls == 2


def test_cr_format_is_validated(client):
    token = _login(client)["accessToken"]

    resp = client.post("/api/v1/onboarding/cr/verify", json={"crNumber": "12"}, headers=_auth(token))

    assert resp.status_code == 400
    assert resp.json()["detail"] == "CR number must be 10 digits"


def test_id_mismatch_and_screening_switches(client, scenario):
    token = _login(client)["accessToken"]
    scenario.apply(id_phone_mismatch=True, global_hit=True)

    id_resp = client.post("/api/v1/onboarding/id/verify", json={"idNumber": "1012345678"}, headers=_auth(token))
    screening = client.post("/api/v1/onboarding/screening", headers=_auth(token))

    assert id_resp.json()["match"] is False
    assert screening.json()["hit"] is True


def test_verification_status_walks_the_sequence(client):
    token = _login(client)["accessToken"]
    session = client.post(
        "/api/v1/verification/initiate", json={"subjectId": "1012345678"}, headers=_auth(token)
    ).json()

    statuses = [
        client.get(
            "/api/v1/verification/status", params={"requestId": session["requestId"]}, headers=_auth(token)
        ).json()["status"]
        for _ in range(3)
    ]

    assert statuses == ["SENT", "RECEIVED", "RECEIVED"]
    assert session["externalUrl"].endswith(session["requestId"])


def test_unknown_verification_request_is_404(client):
    token = _login(client)["accessToken"]

    resp = client.get("/api/v1/verification/status", params={"requestId": "nope"}, headers=_auth(token))

    assert resp.status_code == 404


def test_short_password_rejected(client):
    token = _login(client)["accessToken"]

    resp = client.post("/api/v1/onboarding/password", json={"password": "short"}, headers=_auth(token))

    assert resp.status_code == 400


def test_scenario_apply_rejects_unknown_switch(scenario):
    with pytest.raises(ValueError):
        scenario.apply(nafath_down=True)
