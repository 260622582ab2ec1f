"""
Admission token codec and admin-surface guard.

Token format: base64url("<registration_id>:<issued_at_ms>:<hmac_sha256_hex>"),
unpadded. The tag covers the first two fields and is keyed with TOKEN_SECRET,
so a token can be validated at the gate without any database lookup.

Verification is all-or-nothing: every failure (bad alphabet, bad base64,
non-canonical encoding, wrong field count, tag mismatch) yields
`valid=False`. `reason` exists for logs only and must never grant partial trust.
"""

import base64
import binascii
import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Header, HTTPException, status

from gatepass.core.clock import from_epoch_ms, to_epoch_ms, utcnow
from gatepass.core.config import get_settings

_FIELD_SEPARATOR = ":"
_TOKEN_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    registration_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    reason: Optional[str] = None


def _invalid(reason: str) -> TokenVerification:
    return TokenVerification(valid=False, reason=reason)


def _tag(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def sign_admission_token(
    registration_id: str,
    issued_at: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> str:
    """Create the signed, URL-safe admission token for a registration."""
    if not registration_id or _FIELD_SEPARATOR in registration_id:
        raise ValueError("registration_id must be non-empty and must not contain ':'")

    secret = secret or get_settings().TOKEN_SECRET
    payload = f"{registration_id}{_FIELD_SEPARATOR}{to_epoch_ms(issued_at or utcnow())}"
    raw = f"{payload}{_FIELD_SEPARATOR}{_tag(payload, secret)}"
    return _encode(raw.encode("utf-8"))


def verify_admission_token(token: str, secret: Optional[str] = None) -> TokenVerification:
    """Check a scanned token's signature and decode its fields."""
    if not token or not _TOKEN_ALPHABET.match(token):
        return _invalid("Malformed token")

    try:
        raw = _decode(token)
    except (binascii.Error, ValueError):
        return _invalid("Decode error")

    # Padding bits are ignored by the decoder; only the canonical spelling is accepted
    if _encode(raw) != token:
        return _invalid("Non-canonical encoding")

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return _invalid("Decode error")

    parts = text.split(_FIELD_SEPARATOR)
    if len(parts) != 3:
        return _invalid("Malformed token")
    registration_id, issued_ms, tag = parts

    secret = secret or get_settings().TOKEN_SECRET
    expected = _tag(f"{registration_id}{_FIELD_SEPARATOR}{issued_ms}", secret)
    if not hmac.compare_digest(tag.encode("utf-8"), expected.encode("utf-8")):
        return _invalid("Signature mismatch")

    if not issued_ms.isdigit():
        return _invalid("Malformed token")

    return TokenVerification(
        valid=True,
        registration_id=registration_id,
        issued_at=from_epoch_ms(int(issued_ms)),
    )


async def require_admin(
    x_admin_key: Optional[str] = Header(None),
    x_admin_actor: Optional[str] = Header(None),
) -> str:
    """
    Guard for administrative routes.
    Returns the actor name recorded in the audit log.
    """
    expected = get_settings().ADMIN_API_KEY
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin key required",
        )
    return x_admin_actor or "admin"
