import json
from unittest.mock import patch

from merchant_onboarding.observability.logging import log


def _emitted(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_sensitive_fields_are_redacted(capsys):
    log(event="credentials_set", accessToken="at-secret", phone="+966500000001", step="otp")

    line = _emitted(capsys)
    assert line["event"] == "credentials_set"
    assert line["accessToken"] == "[REDACTED:9chars]"
    assert line["phone"] == "[REDACTED:13chars]"
    assert line["step"] == "otp"
    assert isinstance(line["ts"], int)


def test_nested_dicts_are_redacted(capsys):
    log(event="x", request={"idNumber": "1012345678", "path": "/onboarding/id/verify"})

    line = _emitted(capsys)
    assert line["request"] == {"idNumber": "[REDACTED:10chars]", "path": "/onboarding/id/verify"}


def test_redaction_can_be_disabled(capsys):
    with patch("merchant_onboarding.observability.logging.settings") as mock_settings:
        mock_settings.ENABLE_PII_REDACTION = False
        log(event="x", otp="1234")

    assert _emitted(capsys)["otp"] == "1234"


def test_non_json_values_are_stringified(capsys):
    log(event="x", value=object())

    assert _emitted(capsys)["value"].startswith("<object object")
