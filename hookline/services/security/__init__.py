from __future__ import annotations

from hookline.services.security.keyring import (
    decrypt_headers,
    decrypt_secret,
    encrypt_headers,
    encrypt_secret,
    generate_signing_secret,
)

__all__ = [
    "decrypt_headers",
    "decrypt_secret",
    "encrypt_headers",
    "encrypt_secret",
    "generate_signing_secret",
]
