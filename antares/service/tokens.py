from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from antares.config import MIN_SIGNING_KEY_BYTES, Settings
from antares.logging import get_logger
from antares.storage.models import User

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Verified access-token claims."""

    subject: str
    principal_id: Optional[str]
    role: Optional[str]
    issuer: str
    audience: str | list[str]
    token_id: str
    issued_at: int
    expires_at: int


class TokenSigner(Protocol):
    def issue(self, user: User) -> str:
        ...

    def validate(self, token: str) -> Optional[TokenClaims]:
        ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class HS256TokenSigner:
    """Compact JWS access tokens signed with HMAC-SHA256.

    ``validate`` returns ``None`` for every failure. The reason is only logged,
    so callers cannot tell an expired token from a forged one.
    """

    algorithm = "HS256"

    def __init__(
        self,
        key: bytes,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if len(key) < MIN_SIGNING_KEY_BYTES:
            raise ValueError("signing key must be at least 256 bits")
        self._key = key
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "HS256TokenSigner":
        return cls(
            settings.signing_key(),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_seconds=settings.access_token_ttl_seconds,
            leeway_seconds=settings.jwt_clock_skew_seconds,
            clock=clock,
        )

    def __repr__(self) -> str:
        return f"HS256TokenSigner(issuer={self.issuer!r}, audience={self.audience!r})"

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, user: User) -> str:
        now = int(self._clock())
        payload = {
            "sub": user.email,
            "uid": user.id,
            "role": user.role,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return self.encode(payload)

    def _reject(self, reason: str, **context: Any) -> None:
        logger.info("token_rejected", reason=reason, **context)
        return None

    def validate(self, token: str) -> Optional[TokenClaims]:
        if not token or not isinstance(token, str):
            return self._reject("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return self._reject("malformed")

        # Pin the algorithm before trusting anything else in the header
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return self._reject("header_decode_failed")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=str(alg))
            return self._reject("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return self._reject("signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return self._reject("payload_decode_failed")
        if not isinstance(payload, dict):
            return self._reject("payload_decode_failed")

        if payload.get("iss") != self.issuer:
            return self._reject("issuer")

        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return self._reject("audience")

        now = self._clock()
        exp = _numeric(payload.get("exp"))
        if exp is None:
            return self._reject("expiry_missing")
        if exp <= now - self.leeway_seconds:
            return self._reject("expired")

        if "nbf" in payload:
            nbf = _numeric(payload.get("nbf"))
            if nbf is None or nbf > now + self.leeway_seconds:
                return self._reject("not_yet_valid")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return self._reject("subject_missing")

        return TokenClaims(
            subject=subject,
            principal_id=payload.get("uid"),
            role=payload.get("role"),
            issuer=payload["iss"],
            audience=aud,
            token_id=str(payload.get("jti", "")),
            issued_at=int(_numeric(payload.get("iat")) or 0),
            expires_at=int(exp),
        )
