from __future__ import annotations

import re

import pytest

from hookline.core.errors import KeyringConfigurationError, SecretDecryptionError
from hookline.services.security.keyring import (
    decrypt_headers,
    decrypt_secret,
    encrypt_headers,
    encrypt_secret,
    generate_signing_secret,
)


def test_generated_secret_is_32_bytes_of_hex() -> None:
    secret = generate_signing_secret()
    assert re.fullmatch(r"[0-9a-f]{64}", secret)
    assert generate_signing_secret() != secret


def test_secret_is_stored_as_opaque_token() -> None:
    token = encrypt_secret("plain-secret")
    assert "plain-secret" not in token
    assert decrypt_secret(token) == "plain-secret"


def test_empty_header_map_is_not_stored() -> None:
    assert encrypt_headers({}) is None
    assert decrypt_headers(None) == {}


def test_header_map_is_encrypted_as_one_blob() -> None:
    token = encrypt_headers({"Authorization": "Bearer abc"})
    assert token is not None
    assert "Bearer abc" not in token
    assert decrypt_headers(token) == {"Authorization": "Bearer abc"}


def test_tampered_token_raises_decryption_error() -> None:
    token = encrypt_secret("value")
    with pytest.raises(SecretDecryptionError):
        decrypt_secret(token[:-4] + "AAAA")


def test_token_from_another_master_key_is_rejected(monkeypatch, settings) -> None:
    token = encrypt_secret("value")
    monkeypatch.setattr(settings, "keyring_master_key", "a-different-master-key")
    with pytest.raises(SecretDecryptionError):
        decrypt_secret(token)


def test_missing_master_key_never_falls_back_to_plaintext(monkeypatch, settings) -> None:
    monkeypatch.setattr(settings, "keyring_master_key", None)
    with pytest.raises(KeyringConfigurationError):
        encrypt_secret("value")


@pytest.mark.parametrize("plain", ["{not json", "[\"Authorization\"]"])
def test_header_blob_that_is_not_a_json_object_raises_decryption_error(plain: str) -> None:
    with pytest.raises(SecretDecryptionError):
        decrypt_headers(encrypt_secret(plain))
