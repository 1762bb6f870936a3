from __future__ import annotations

import pytest

from ambulance_dispatch.utils.phone import display_phone, messaging_phone, normalize_phone


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("9876543210", "+919876543210"),
        ("98765 43210", "+919876543210"),
        ("987-654-3210", "+919876543210"),
        ("919876543210", "+919876543210"),
        ("+91 98765 43210", "+919876543210"),
        ("+44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_phone(raw: str, expected: str) -> None:
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "12345", "abc", "0012345678901234"])
def test_normalize_phone_rejects_malformed(raw) -> None:
    assert normalize_phone(raw) is None


def test_custom_country_code() -> None:
    assert normalize_phone("2025550143", country_code="1") == "+12025550143"


def test_messaging_phone_drops_plus() -> None:
    assert messaging_phone("+91 98765 43210") == "919876543210"
    assert messaging_phone("bad") is None


def test_display_phone() -> None:
    assert display_phone("9876543210") == "+91 9876543210"
    assert display_phone("+919876543210") == "+919876543210"
    assert display_phone(None) is None
