from __future__ import annotations

import hashlib
import hmac

import pytest

from hookline.services.webhooks.signing import (
    parse_signature,
    serialize_payload,
    sign_payload,
    signature_header,
    verify_signature,
)


def test_serialize_payload_is_independent_of_key_order() -> None:
    # Retries and other workers must sign byte-identical bodies.
    first = serialize_payload({"event": "deployment.started", "data": {"b": 2, "a": 1}})
    second = serialize_payload({"data": {"a": 1, "b": 2}, "event": "deployment.started"})
    assert first == second
    assert first == b'{"data":{"a":1,"b":2},"event":"deployment.started"}'


def test_serialize_payload_keeps_unicode_as_utf8() -> None:
    body = serialize_payload({"message": "déploiement"})
    assert body == '{"message":"déploiement"}'.encode("utf-8")


def test_signature_matches_plain_hmac_sha256() -> None:
    body = b'{"event":"agent.error"}'
    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert sign_payload("s3cret", body) == expected
    assert signature_header("s3cret", body) == f"sha256={expected}"


def test_subscriber_verification_accepts_equal_bytes_and_rejects_one_changed_byte() -> None:
    secret = "a" * 64
    body = serialize_payload({"event": "story.created", "data": {"id": 7}})
    header = signature_header(secret, body)
    assert verify_signature(secret, body, header) is True

    tampered = bytearray(body)
    tampered[-2] = ord("8")
    assert verify_signature(secret, bytes(tampered), header) is False
    assert sign_payload(secret, bytes(tampered)) != sign_payload(secret, body)


def test_verification_rejects_wrong_secret_and_missing_header() -> None:
    body = b"{}"
    header = signature_header("right", body)
    assert verify_signature("wrong", body, header) is False
    assert verify_signature("right", body, None) is False
    assert verify_signature("right", body, "") is False


@pytest.mark.parametrize(
    "header_value",
    [
        "deadbeef",
        "sha1=" + "0" * 64,
        "sha256=" + "0" * 63,
        "sha256=" + "z" * 64,
    ],
)
def test_parse_signature_rejects_malformed_headers(header_value: str) -> None:
    with pytest.raises(ValueError, match="invalid_signature_format"):
        parse_signature(header_value)


def test_parse_signature_normalizes_case_and_whitespace() -> None:
    parsed = parse_signature("  SHA256=" + "AB" * 32 + " ")
    assert parsed.algorithm == "sha256"
    assert parsed.digest_hex == "ab" * 32
