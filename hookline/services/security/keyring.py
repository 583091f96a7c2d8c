from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import json
import secrets

from cryptography.fernet import Fernet, InvalidToken

from hookline.core.config import get_settings
from hookline.core.errors import KeyringConfigurationError, SecretDecryptionError


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Never fall back to plaintext storage when the master key is missing.
    source = (settings.keyring_master_key or "").strip()
    if not source:
        raise KeyringConfigurationError("KEYRING_MASTER_KEY is required for webhook secret encryption")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def generate_signing_secret() -> str:
    # 32 random bytes, hex encoded; shown to the caller once and stored only encrypted.
    return secrets.token_hex(32)


def encrypt_secret(plain: str) -> str:
    token = _build_fernet().encrypt(plain.encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_secret(token: str) -> str:
    try:
        return _build_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise SecretDecryptionError("Stored secret could not be decrypted") from exc


def encrypt_headers(headers: dict[str, str]) -> str | None:
    # Store the whole header map as one opaque blob; an empty map means no custom headers.
    if not headers:
        return None
    return encrypt_secret(json.dumps(headers, sort_keys=True))


def decrypt_headers(token: str | None) -> dict[str, str]:
    if not token:
        return {}
    try:
        decoded = json.loads(decrypt_secret(token))
    except ValueError as exc:
        raise SecretDecryptionError("Stored custom headers are not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise SecretDecryptionError("Stored custom headers are not a JSON object")
    return {str(key): str(value) for key, value in decoded.items()}
