from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
from typing import Any


HEADER_SIGNATURE = "X-Hookline-Signature"
HEADER_EVENT = "X-Hookline-Event"
HEADER_DELIVERY = "X-Hookline-Delivery"
HEADER_TIMESTAMP = "X-Hookline-Timestamp"

# Contract headers a destination's custom headers may not override.
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        HEADER_SIGNATURE,
        HEADER_EVENT,
        HEADER_DELIVERY,
        HEADER_TIMESTAMP,
        "Content-Type",
        "Content-Length",
        "Host",
    )
)

SIGNATURE_ALGORITHM = "sha256"


@dataclass(frozen=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the exact bytes that are signed and transmitted.

    Keys are sorted and separators compact so the same payload always maps to
    the same bytes across retries and worker processes.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    """Return the hex HMAC-SHA256 digest of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_header(secret: str, body: bytes) -> str:
    return f"{SIGNATURE_ALGORITHM}={sign_payload(secret, body)}"


def parse_signature(header_value: str) -> ParsedSignature:
    # Accept only `sha256=<64 hex chars>`.
    algorithm, separator, digest = header_value.strip().partition("=")
    if separator != "=":
        raise ValueError("invalid_signature_format")
    normalized_algorithm = algorithm.strip().lower()
    digest_hex = digest.strip().lower()
    if normalized_algorithm != SIGNATURE_ALGORITHM or len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return ParsedSignature(algorithm=normalized_algorithm, digest_hex=digest_hex)


def verify_signature(secret: str, body: bytes, header_value: str | None) -> bool:
    """Subscriber-side check of a received signature header against raw body bytes."""
    if not header_value:
        return False
    try:
        parsed = parse_signature(header_value)
    except ValueError:
        return False
    return hmac.compare_digest(sign_payload(secret, body), parsed.digest_hex)
