"""Compact signed session tokens.

Wire format is the three-segment HS256 JWT layout:

    base64url(header).base64url(payload).base64url(hmac_sha256_signature)

The payload holds the caller's claims plus ``iat`` and ``exp`` (Unix
seconds). Signing and signature checks are delegated to PyJWT; expiry is
judged here against an injectable clock so it can be tested without sleeping.

``verify`` never raises: every failure becomes a typed ``TokenResult`` so the
HTTP layer can map all of them to one "unauthorized" answer.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import jwt
from jwt.utils import base64url_decode, base64url_encode

__all__ = [
    "ALGORITHM",
    "TokenResult",
    "TokenStatus",
    "issue",
    "verify",
]

ALGORITHM = "HS256"
_RESERVED_CLAIMS = ("iat", "exp")
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
}


class TokenStatus(Enum):
    """Outcome of token verification."""

    VALID = "valid"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"
    REVOKED_OR_UNKNOWN_SUBJECT = "revoked_or_unknown_subject"


@dataclass(frozen=True)
class TokenResult:
    """Typed verification result.

    Attributes:
        status: Verification outcome.
        claims: Caller claims (without iat/exp). Empty unless the
            signature verified.
        issued_at: ``iat`` claim, if the signature verified.
        expires_at: ``exp`` claim, if the signature verified.
    """

    status: TokenStatus
    claims: dict[str, Any] = field(default_factory=dict)
    issued_at: int | None = None
    expires_at: int | None = None

    @property
    def valid(self) -> bool:
        return self.status is TokenStatus.VALID

    @property
    def subject(self) -> str | None:
        """The ``sub`` claim, if present."""
        sub = self.claims.get("sub")
        return sub if isinstance(sub, str) else None

    def with_status(self, status: TokenStatus) -> "TokenResult":
        """Copy of this result with a different status."""
        return TokenResult(
            status=status,
            claims=dict(self.claims),
            issued_at=self.issued_at,
            expires_at=self.expires_at,
        )


def _now(now: int | None) -> int:
    return int(time.time()) if now is None else int(now)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def issue(
    claims: dict[str, Any],
    secret: str,
    ttl: int,
    now: int | None = None,
) -> str:
    """Issue a signed token.

    Args:
        claims: Claims to embed. Must not contain ``iat`` or ``exp``.
        secret: HMAC signing secret.
        ttl: Lifetime in seconds. ``0`` yields a token that expires as
            soon as the clock moves past the issuing second.
        now: Issue time (Unix seconds). Defaults to the current time.

    Returns:
        Token string.

    Raises:
        ValueError: If claims use a reserved name or ttl is negative.
    """
    reserved = [name for name in _RESERVED_CLAIMS if name in claims]
    if reserved:
        raise ValueError(f"Reserved claim names: {', '.join(reserved)}")
    if ttl < 0:
        raise ValueError("ttl must be >= 0")

    issued_at = _now(now)
    payload = dict(claims)
    payload["iat"] = issued_at
    payload["exp"] = issued_at + int(ttl)

    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def _signature_is_canonical(segment: str) -> bool:
    """Check the signature segment re-encodes to itself.

    base64url leaves spare bits in the final character; rejecting
    non-canonical encodings makes every character of the segment significant.
    """
    try:
        raw = base64url_decode(segment.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return False
    return base64url_encode(raw).decode("ascii") == segment


def verify(token: Any, secret: str, now: int | None = None) -> TokenResult:
    """Verify a token.

    Args:
        token: Token to check. Non-string input is reported as malformed.
        secret: HMAC signing secret.
        now: Verification time (Unix seconds). Defaults to current time.

    Returns:
        TokenResult. Status is MALFORMED for structural problems,
        BAD_SIGNATURE when the HMAC does not match, EXPIRED when
        ``exp < now`` and VALID otherwise.
    """
    if not isinstance(token, str) or not token:
        return TokenResult(TokenStatus.MALFORMED)

    segments = token.split(".")
    if len(segments) != 3 or not all(segments):
        return TokenResult(TokenStatus.MALFORMED)

    if not _signature_is_canonical(segments[2]):
        return TokenResult(TokenStatus.BAD_SIGNATURE)

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options=_DECODE_OPTIONS,
        )
    except jwt.InvalidSignatureError:
        return TokenResult(TokenStatus.BAD_SIGNATURE)
    except jwt.InvalidTokenError:
        return TokenResult(TokenStatus.MALFORMED)

    issued_at = payload.get("iat")
    expires_at = payload.get("exp")
    if not (_is_int(issued_at) and _is_int(expires_at)):
        return TokenResult(TokenStatus.MALFORMED)

    claims = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
    result = TokenResult(
        status=TokenStatus.VALID,
        claims=claims,
        issued_at=issued_at,
        expires_at=expires_at,
    )

    if expires_at < _now(now):
        return result.with_status(TokenStatus.EXPIRED)

    return result
