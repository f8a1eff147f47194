"""Unit tests for the access token codec."""

import base64
import json
from datetime import timedelta

import pytest

from conftest import FakeClock
from tenantauth.service.errors import AuthenticationError, ConfigurationError
from tenantauth.service.tokens import (
    AccessClaims,
    SignatureInvalid,
    TokenCodec,
    TokenExpired,
    TokenMalformed,
)

SECRET = "unit-test-signing-secret-with-enough-length"
CLAIMS = {"sub": "user-1", "tenant_id": "acme", "role": "member"}
LIFETIME = timedelta(minutes=15)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SECRET,
        issuer="tenantauth",
        audience="tenantauth-clients",
        max_lifetime=timedelta(minutes=60),
        clock=clock,
    )


class TestRoundTrip:
    def test_verify_returns_issued_claims(self, codec, clock):
        claims = codec.verify(codec.issue(CLAIMS, LIFETIME))

        assert claims == AccessClaims(
            sub="user-1",
            tenant_id="acme",
            role="member",
            iat=int(clock.now),
            exp=int(clock.now) + 900,
        )

    def test_valid_until_just_before_expiry(self, codec, clock):
        token = codec.issue(CLAIMS, LIFETIME)
        clock.advance(899)

        assert codec.verify(token).sub == "user-1"

    def test_expired_at_expiry_instant(self, codec, clock):
        token = codec.issue(CLAIMS, LIFETIME)
        clock.advance(900)

        with pytest.raises(TokenExpired):
            codec.verify(token)

    def test_expired_long_after(self, codec, clock):
        token = codec.issue(CLAIMS, LIFETIME)
        clock.advance(86400)

        with pytest.raises(TokenExpired) as excinfo:
            codec.verify(token)
        assert excinfo.value.reason == "expired"
        assert isinstance(excinfo.value, AuthenticationError)
        assert excinfo.value.status_code == 401


class TestTampering:
    def test_other_secret_is_rejected(self, codec, clock):
        other = TokenCodec(
            SECRET + "-rotated",
            issuer="tenantauth",
            audience="tenantauth-clients",
            max_lifetime=timedelta(minutes=60),
            clock=clock,
        )
        with pytest.raises(SignatureInvalid):
            codec.verify(other.issue(CLAIMS, LIFETIME))

    def test_swapped_payload_is_rejected(self, codec):
        header, _, signature = codec.issue(CLAIMS, LIFETIME).split(".")
        forged_payload = _b64({**CLAIMS, "role": "admin", "iat": 1, "exp": 9_999_999_999})

        with pytest.raises(SignatureInvalid):
            codec.verify(f"{header}.{forged_payload}.{signature}")

    def test_alg_none_is_rejected(self, codec):
        _, payload, signature = codec.issue(CLAIMS, LIFETIME).split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenMalformed):
            codec.verify(f"{header}.{payload}.{signature}")

    def test_non_ascii_signature_is_malformed(self, codec):
        header, payload, _ = codec.issue(CLAIMS, LIFETIME).split(".")

        with pytest.raises(TokenMalformed):
            codec.verify(f"{header}.{payload}.\u00e9\u00e9")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_garbage_is_malformed(self, codec, token):
        with pytest.raises(TokenMalformed):
            codec.verify(token)

    def test_foreign_issuer_is_rejected(self, codec, clock):
        other = TokenCodec(
            SECRET,
            issuer="someone-else",
            audience="tenantauth-clients",
            max_lifetime=timedelta(minutes=60),
            clock=clock,
        )
        with pytest.raises(TokenMalformed):
            codec.verify(other.issue(CLAIMS, LIFETIME))


class TestIssueValidation:
    def test_missing_claim_is_refused(self, codec):
        with pytest.raises(ValueError):
            codec.issue({"sub": "user-1", "role": "member"}, LIFETIME)

    def test_lifetime_above_maximum_is_refused(self, codec):
        with pytest.raises(ValueError):
            codec.issue(CLAIMS, timedelta(hours=2))

    def test_non_positive_lifetime_is_refused(self, codec):
        with pytest.raises(ValueError):
            codec.issue(CLAIMS, timedelta(0))


class TestConfiguration:
    @pytest.mark.parametrize("secret", [None, "", "too-short"])
    def test_unusable_secret_is_a_configuration_error(self, secret):
        with pytest.raises(ConfigurationError) as excinfo:
            TokenCodec(
                secret,
                issuer="tenantauth",
                audience="tenantauth-clients",
                max_lifetime=timedelta(minutes=60),
            )
        assert excinfo.value.status_code == 503
        assert excinfo.value.error_code == "service_unavailable"
