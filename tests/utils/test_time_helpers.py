import pytest

from merchant_onboarding.utils.time import format_mm_ss, ms_until, parse_timestamp_ms


@pytest.mark.parametrize(
    "value,expected",
    [
        (1_700_000_000_000, 1_700_000_000_000),
        (1_700_000_000, 1_700_000_000_000),
        ("1700000000000", 1_700_000_000_000),
        ("2023-11-14T22:13:20Z", 1_700_000_000_000),
        ("2023-11-14T22:13:20+00:00", 1_700_000_000_000),
    ],
)
def test_parse_timestamp_ms(value, expected):
    assert parse_timestamp_ms(value) == expected


@pytest.mark.parametrize("value", [None, "", "tomorrow", True])
def test_parse_timestamp_ms_falls_back(value):
    assert parse_timestamp_ms(value, default=42) == 42


def test_ms_until_clamps_at_zero():
    assert ms_until(5_000, now=1_000) == 4_000
    assert ms_until(1_000, now=5_000) == 0


@pytest.mark.parametrize(
    "remaining,expected",
    [(0, "00:00"), (-5, "00:00"), (59_999, "00:59"), (125_000, "02:05"), (3_600_000, "60:00")],
)
def test_format_mm_ss(remaining, expected):
    assert format_mm_ss(remaining) == expected
