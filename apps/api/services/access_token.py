"""Email-bound access tokens embedded in payment and account links.

Format: base64url(JSON payload) + "." + hex HMAC-SHA256(JSON payload).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import settings


PAYMENT_TOKEN = "payment"
VERIFICATION_TOKEN = "verification"
ACCOUNT_SETUP_TOKEN = "account_setup"
PASSWORD_RESET_TOKEN = "password_reset"

TOKEN_EXPIRY_MS = {
    PAYMENT_TOKEN: 30 * 24 * 60 * 60 * 1000,
    VERIFICATION_TOKEN: 24 * 60 * 60 * 1000,
    ACCOUNT_SETUP_TOKEN: 7 * 24 * 60 * 60 * 1000,
    PASSWORD_RESET_TOKEN: 60 * 60 * 1000,
}


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(payload_string: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_string.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_access_token(
    email: str,
    request_id: Optional[str],
    token_type: str = PAYMENT_TOKEN,
    *,
    secret: Optional[str] = None,
    issued_at_ms: Optional[int] = None,
) -> str:
    if token_type not in TOKEN_EXPIRY_MS:
        raise ValueError(f"Unknown token type: {token_type}")
    payload = {
        "email": (email or "").strip().lower(),
        "requestId": str(request_id) if request_id else None,
        "type": token_type,
        "issuedAtMs": int(issued_at_ms if issued_at_ms is not None else _now_ms()),
    }
    payload_string = json.dumps(payload, separators=(",", ":"))
    signature = _sign(payload_string, secret or settings.TOKEN_SECRET)
    return f"{_b64url_encode(payload_string.encode('utf-8'))}.{signature}"


def verify_access_token(
    token: str,
    expected_email: str,
    expected_request_id: Optional[str] = None,
    token_type: str = PAYMENT_TOKEN,
    *,
    secret: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> TokenVerification:
    """Check signature, email binding, request binding, type and age."""
    parts = (token or "").split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return TokenVerification(valid=False, error="Invalid token format")
    payload_segment, signature = parts

    try:
        raw = _b64url_decode(payload_segment)
        payload_string = raw.decode("utf-8")
        payload = json.loads(payload_string)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return TokenVerification(valid=False, error="Invalid token payload")

    # Reject non-canonical encodings so every payload character is covered by the signature.
    if _b64url_encode(raw) != payload_segment or not isinstance(payload, dict):
        return TokenVerification(valid=False, error="Invalid token payload")

    expected_signature = _sign(payload_string, secret or settings.TOKEN_SECRET)
    if not hmac.compare_digest(signature, expected_signature):
        return TokenVerification(valid=False, error="Invalid token signature")

    payload_email = str(payload.get("email") or "").strip().lower()
    if payload_email != (expected_email or "").strip().lower():
        return TokenVerification(valid=False, error="Email mismatch")

    if payload.get("type") != token_type:
        return TokenVerification(valid=False, error="Token type mismatch")

    if expected_request_id is not None and payload.get("requestId") != str(expected_request_id):
        return TokenVerification(valid=False, error="Request ID mismatch")

    issued_at = payload.get("issuedAtMs")
    if not isinstance(issued_at, int):
        return TokenVerification(valid=False, error="Invalid token payload")
    current = now_ms if now_ms is not None else _now_ms()
    if current - issued_at >= TOKEN_EXPIRY_MS[token_type]:
        return TokenVerification(valid=False, error="Token expired")

    return TokenVerification(
        valid=True,
        payload={
            "email": payload_email,
            "requestId": payload.get("requestId"),
            "type": payload.get("type"),
        },
    )
