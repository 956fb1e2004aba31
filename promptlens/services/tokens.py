"""
Token Verifier - Turns a bearer credential into a verified claim.

Two encodings are accepted:
- 5 segments: encrypted web-session token (JWE compact, dir + A256GCM),
  content key derived from NEXTAUTH_SECRET with HKDF-SHA256.
- 3 segments: signed backend access token (JWS compact, HS256) checked
  against JWT_SECRET.

The encrypted path runs first. When it fails, its reason is kept and the
signed path gets a chance; if neither applies the caller sees one
InvalidFormat error carrying both reasons.
"""

import base64
import binascii
import json
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from structlog import get_logger

from promptlens.exceptions import (
    InvalidTokenFormatError,
    InvalidTokenSignatureError,
    MissingClaimError,
    TokenExpiredError,
    TokenVerificationError,
)
from promptlens.models.domain import IssuedToken, VerifiedClaim
from promptlens.observability.metrics import metrics

logger = get_logger(__name__)

ENCRYPTION_KEY_INFO = b"NextAuth.js Generated Encryption Key"
ENCRYPTION_KEY_LENGTH = 32
SIGNING_ALGORITHM = "HS256"

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def derive_encryption_key(secret: str) -> bytes:
    """Derive the A256GCM content key used for encrypted session tokens."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=ENCRYPTION_KEY_LENGTH,
        salt=b"",
        info=ENCRYPTION_KEY_INFO,
    ).derive(secret.encode("utf-8"))


def strip_bearer(raw: str) -> str:
    """Remove an optional `Bearer ` prefix and surrounding whitespace."""
    return _BEARER_PREFIX.sub("", raw.strip()).strip()


class _DecryptionFailed(Exception):
    """Internal: the encrypted path could not open the token."""


class TokenVerifier:
    """
    Stateless bearer token verifier.

    Immutable after construction and safe to share across requests.
    """

    def __init__(
        self,
        session_secret: str = "",
        token_secret: str = "",
        leeway_seconds: int = 0,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._encryption_key = derive_encryption_key(session_secret) if session_secret else None
        self._token_secret = token_secret
        self._leeway = timedelta(seconds=leeway_seconds)
        self._now = now

    def verify(self, raw: str) -> VerifiedClaim:
        """
        Verify a bearer credential.

        Raises:
            TokenVerificationError: subclass naming the failure reason
        """
        token = strip_bearer(raw or "")
        if not token:
            raise InvalidTokenFormatError("No token provided")

        segments = token.split(".")
        diagnostics: list[str] = []

        if len(segments) == 5:
            try:
                claims = self._decrypt(segments)
            except _DecryptionFailed as exc:
                diagnostics.append(f"encrypted: {exc}")
                logger.info("encrypted_token_rejected", reason=str(exc))
            else:
                return self._finish(claims, "encrypted")

        if len(segments) == 3:
            return self._finish(self._decode_signed(token), "signed")

        metrics.record_token_verification("unknown", "InvalidFormat")
        raise InvalidTokenFormatError("Invalid token", diagnostics=tuple(diagnostics))

    # ------------------------------------------------------------------
    # Encrypted path
    # ------------------------------------------------------------------

    def _decrypt(self, segments: list[str]) -> dict[str, Any]:
        if self._encryption_key is None:
            raise _DecryptionFailed("session secret not configured")

        header_b64, encrypted_key_b64, iv_b64, ciphertext_b64, tag_b64 = segments
        try:
            header = json.loads(_b64url_decode(header_b64))
            iv = _b64url_decode(iv_b64)
            ciphertext = _b64url_decode(ciphertext_b64)
            tag = _b64url_decode(tag_b64)
        except (binascii.Error, ValueError) as exc:
            raise _DecryptionFailed(f"undecodable segment ({type(exc).__name__})") from exc

        if not isinstance(header, dict):
            raise _DecryptionFailed("protected header is not an object")
        if header.get("alg") != "dir" or header.get("enc") != "A256GCM":
            raise _DecryptionFailed(
                f"unsupported alg/enc {header.get('alg')}/{header.get('enc')}"
            )
        if encrypted_key_b64:
            raise _DecryptionFailed("direct encryption must not carry an encrypted key")

        try:
            plaintext = AESGCM(self._encryption_key).decrypt(
                iv, ciphertext + tag, header_b64.encode("ascii")
            )
        except (InvalidTag, ValueError) as exc:
            raise _DecryptionFailed("decryption failed") from exc

        try:
            claims = json.loads(plaintext)
        except ValueError as exc:
            raise _DecryptionFailed("payload is not JSON") from exc
        if not isinstance(claims, dict):
            raise _DecryptionFailed("payload is not an object")

        exp = claims.get("exp")
        if exp is None:
            metrics.record_token_verification("encrypted", "MissingClaim")
            raise MissingClaimError("exp")
        if not isinstance(exp, (int, float)):
            metrics.record_token_verification("encrypted", "InvalidFormat")
            raise InvalidTokenFormatError("Invalid token: exp is not numeric")
        self._check_expiry(exp, "encrypted")
        return claims

    # ------------------------------------------------------------------
    # Signed path
    # ------------------------------------------------------------------

    def _decode_signed(self, token: str) -> dict[str, Any]:
        if not self._token_secret:
            metrics.record_token_verification("signed", "InvalidSignature")
            raise InvalidTokenSignatureError("Signed tokens are not accepted")

        try:
            # Expiry is checked below against the injected clock.
            claims: dict[str, Any] = jwt.decode(
                token,
                self._token_secret,
                algorithms=[SIGNING_ALGORITHM],
                options={"require": ["exp"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidSignatureError as exc:
            metrics.record_token_verification("signed", "InvalidSignature")
            raise InvalidTokenSignatureError("Invalid token") from exc
        except jwt.InvalidAlgorithmError as exc:
            metrics.record_token_verification("signed", "InvalidSignature")
            raise InvalidTokenSignatureError("Invalid token algorithm") from exc
        except jwt.MissingRequiredClaimError as exc:
            metrics.record_token_verification("signed", "MissingClaim")
            raise MissingClaimError(exc.claim) from exc
        except jwt.InvalidTokenError as exc:
            metrics.record_token_verification("signed", "InvalidFormat")
            raise InvalidTokenFormatError("Invalid token") from exc

        exp = claims["exp"]
        if not isinstance(exp, (int, float)):
            metrics.record_token_verification("signed", "InvalidFormat")
            raise InvalidTokenFormatError("Invalid token: exp is not numeric")
        self._check_expiry(exp, "signed")
        return claims

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _timestamp(self, value: float, source: str, claim: str) -> datetime:
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, ValueError, OSError) as exc:
            metrics.record_token_verification(source, "InvalidFormat")
            raise InvalidTokenFormatError(f"Invalid token: {claim} out of range") from exc

    def _check_expiry(self, exp: float, source: str) -> None:
        expires_at = self._timestamp(exp, source, "exp")
        if self._now() - self._leeway >= expires_at:
            metrics.record_token_verification(source, "Expired")
            raise TokenExpiredError(expired_at=expires_at)

    def _finish(self, claims: dict[str, Any], source: str) -> VerifiedClaim:
        email = claims.get("email")
        if not isinstance(email, str) or not email.strip():
            metrics.record_token_verification(source, "MissingClaim")
            raise MissingClaimError("email")

        email = email.strip().lower()
        name = claims.get("name")
        iat = claims.get("iat")
        subject = claims.get("sub")
        expires_at = self._timestamp(claims["exp"], source, "exp")
        issued_at = (
            self._timestamp(iat, source, "iat") if isinstance(iat, (int, float)) else None
        )

        metrics.record_token_verification(source, "ok")
        return VerifiedClaim(
            email=email,
            subject=subject if isinstance(subject, str) and subject else email,
            expires_at=expires_at,
            source="encrypted" if source == "encrypted" else "signed",
            name=name if isinstance(name, str) and name else None,
            issued_at=issued_at,
        )


def issue_access_token(
    email: str,
    name: str | None = None,
    *,
    secret: str,
    issuer: str = "promptlens-backend",
    ttl: timedelta = timedelta(days=7),
    now: datetime | None = None,
) -> IssuedToken:
    """
    Mint a signed backend access token.

    The token verifies through the signed path of TokenVerifier with the
    same secret.
    """
    if not secret:
        raise ValueError("A signing secret is required to issue access tokens")

    issued_at = now or _utc_now()
    expires_at = issued_at + ttl
    normalized = email.strip().lower()
    token = jwt.encode(
        {
            "sub": normalized,
            "email": normalized,
            "name": name or normalized,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": issuer,
        },
        secret,
        algorithm=SIGNING_ALGORITHM,
    )
    return IssuedToken(token=token, expires_at=expires_at)


__all__ = [
    "TokenVerificationError",
    "TokenVerifier",
    "derive_encryption_key",
    "issue_access_token",
    "strip_bearer",
]
