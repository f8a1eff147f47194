"""Compact HS256 access tokens.

Tokens are standard three-segment JWTs signed with a server-held secret. The
codec is stateless: any process holding the secret can verify any token.

Expiry is compared against the same clock the codec issued with and no skew
leeway is applied. Deployments with drifting clocks will see tokens expire
early or late by the drift; this is a known limitation.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping

from tenantauth.config import MIN_SECRET_LENGTH
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthenticationError, ConfigurationError

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "tenant_id", "role")


class TokenError(AuthenticationError):
    reason = "invalid"

    def __init__(self, message: str = "invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(TokenError):
    reason = "expired"

    def __init__(self, message: str = "access token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMalformed(TokenError):
    reason = "malformed"


class SignatureInvalid(TokenError):
    reason = "signature_invalid"


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    tenant_id: str
    role: str
    iat: int
    exp: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    def __init__(
        self,
        secret: str | None,
        *,
        issuer: str,
        audience: str,
        max_lifetime: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("JWT_SECRET is not set; refusing to sign access tokens")
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.max_lifetime = max_lifetime
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, claims: Mapping[str, Any], lifetime: timedelta) -> str:
        """Sign ``claims`` (sub, tenant_id, role) for ``lifetime``.

        ``iat`` and ``exp`` are stamped from the codec clock; a lifetime longer
        than the configured maximum is rejected rather than clamped.
        """
        missing = [name for name in _REQUIRED_CLAIMS if not claims.get(name)]
        if missing:
            raise ValueError(f"missing token claims: {', '.join(missing)}")
        seconds = int(lifetime.total_seconds())
        if seconds <= 0 or lifetime > self.max_lifetime:
            raise ValueError("access token lifetime out of range")
        issued_at = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(claims["sub"]),
            "tenant_id": str(claims["tenant_id"]),
            "role": str(claims["role"]),
            "iat": issued_at,
            "exp": issued_at + seconds,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> AccessClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenMalformed()

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformed()
        # Only HS256 is accepted; anything else, "none" included, is tampering.
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformed()

        # compare_digest refuses non-ASCII str input
        if not sig_b64.isascii():
            raise TokenMalformed()
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise SignatureInvalid()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed()
        if not isinstance(payload, dict):
            raise TokenMalformed()
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("unexpected token issuer")
        aud = payload.get("aud")
        if aud != self.audience and not (isinstance(aud, list) and self.audience in aud):
            raise TokenMalformed("unexpected token audience")

        try:
            claims = AccessClaims(
                sub=str(payload["sub"]),
                tenant_id=str(payload["tenant_id"]),
                role=str(payload["role"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenMalformed()

        if self._clock() >= claims.exp:
            raise TokenExpired()
        return claims
