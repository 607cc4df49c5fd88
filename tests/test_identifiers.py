import pytest

from qwiksale_auth.errors import InvalidIdentifierError
from qwiksale_auth.services.identifiers import (
    mask_email,
    mask_msisdn,
    normalize_kenyan_phone,
    parse_identifier,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0712345678", "254712345678"),
        ("0112345678", "254112345678"),
        ("+254 712 345 678", "254712345678"),
        ("254712345678", "254712345678"),
        ("712345678", "254712345678"),
        ("112345678", "254112345678"),
        ("020 123 4567", None),
        ("12345", None),
        ("", None),
        ("٠٧١٢٣٤٥٦٧٨", None),
    ],
)
def test_normalize_kenyan_phone(raw, expected):
    assert normalize_kenyan_phone(raw) == expected


def test_email_identifier_is_trimmed_and_lowercased():
    identifier = parse_identifier("  Jane.Doe@Example.COM ")
    assert identifier.channel == "email"
    assert identifier.value == "jane.doe@example.com"
    assert identifier.key == "email:jane.doe@example.com"


def test_phone_identifier_uses_tel_key():
    identifier = parse_identifier("0712-345-678")
    assert identifier.channel == "sms"
    assert identifier.key == "tel:254712345678"


@pytest.mark.parametrize("raw", [None, "", "   ", "jane@", "not a phone", "a@b"])
def test_invalid_identifiers(raw):
    with pytest.raises(InvalidIdentifierError):
        parse_identifier(raw)


def test_masking():
    assert mask_email("jane@example.com") == "ja***@example.com"
    assert mask_email("j@example.com") == "j***@example.com"
    assert mask_msisdn("254712345678") == "254712***678"
    assert parse_identifier("0712345678").masked == "254712***678"
