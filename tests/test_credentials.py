from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app.services.credentials import (
    ELEVATION_HINTS,
    CredentialError,
    CredentialIssuer,
    extract_jwt_from_header,
)
from conftest import TEST_JWT_SECRET, FakeClock


class TestCreateLevel2Jwt:
    def test_claims(self, issuer):
        issued = issuer.create_level2_jwt("patient-anna", "magic_link")
        claims = jwt.decode(issued.jwt, TEST_JWT_SECRET, algorithms=["HS256"])
        assert claims["sub"] == "patient-anna"
        assert claims["level"] == 2
        assert claims["method"] == "magic_link"
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60

    def test_payload_matches_token(self, issuer):
        issued = issuer.create_level2_jwt("patient-anna", "sms_otp")
        assert issuer.verify_jwt(issued.jwt) == issued.payload

    def test_requires_secret(self):
        with pytest.raises(CredentialError):
            CredentialIssuer("")


class TestVerifyJwt:
    def test_rejects_wrong_signature(self, issuer):
        issued = CredentialIssuer("another-secret-that-is-long-enough-0000").create_level2_jwt(
            "patient-anna", "magic_link"
        )
        with pytest.raises(CredentialError):
            issuer.verify_jwt(issued.jwt)

    def test_rejects_expired(self):
        past = FakeClock(datetime.now(timezone.utc) - timedelta(days=2))
        old_issuer = CredentialIssuer(TEST_JWT_SECRET, clock=past)
        issued = old_issuer.create_level2_jwt("patient-anna", "magic_link")
        with pytest.raises(CredentialError, match="expired"):
            CredentialIssuer(TEST_JWT_SECRET).verify_jwt(issued.jwt)

    def test_rejects_garbage(self, issuer):
        with pytest.raises(CredentialError):
            issuer.verify_jwt("invalid-jwt-token")

    def test_rejects_level_out_of_range(self, issuer):
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {"sub": "p", "level": 7, "method": "x", "iat": now, "exp": now + 60},
            TEST_JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(CredentialError):
            issuer.verify_jwt(token)


class TestElevateJwt:
    def test_preserves_expiry_and_raises_level(self, issuer):
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        level3 = issuer.elevate_jwt(level2.payload, 3, "address")
        assert level3.payload.exp == level2.payload.exp
        assert level3.payload.level == 3
        assert level3.payload.sub == "patient-anna"
        assert level3.payload.method == "address"
        assert level3.payload.elevated_at is not None
        assert level3.jwt != level2.jwt

    def test_later_elevation_does_not_extend(self):
        clock = FakeClock()
        issuer = CredentialIssuer(TEST_JWT_SECRET, clock=clock)
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        clock.advance(hours=5)
        level3 = issuer.elevate_jwt(level2.payload, 3, "address")
        assert level3.payload.exp == level2.payload.exp

    def test_rejects_non_increasing_level(self, issuer):
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        with pytest.raises(CredentialError):
            issuer.elevate_jwt(level2.payload, 2, "address")

    def test_rejects_level_above_four(self, issuer):
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        with pytest.raises(CredentialError):
            issuer.elevate_jwt(level2.payload, 5, "address")


class TestLevel4ActionJwt:
    def test_short_lived_and_scoped(self, issuer):
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        level3 = issuer.elevate_jwt(level2.payload, 3, "address")
        action = issuer.create_level4_action_jwt(level3.payload, "prescription.request")
        assert action.payload.level == 4
        assert action.payload.action_scope == "prescription.request"
        assert action.payload.exp - action.payload.iat == 300
        assert action.payload.exp <= level3.payload.exp

    def test_never_outlives_parent(self):
        clock = FakeClock()
        issuer = CredentialIssuer(TEST_JWT_SECRET, clock=clock)
        level2 = issuer.create_level2_jwt("patient-anna", "magic_link")
        level3 = issuer.elevate_jwt(level2.payload, 3, "address")
        clock.advance(hours=23, minutes=58)
        action = issuer.create_level4_action_jwt(level3.payload, "prescription.request")
        assert action.payload.exp == level3.payload.exp


class TestExtractJwtFromHeader:
    def test_bearer(self):
        assert extract_jwt_from_header("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_case_insensitive_scheme(self):
        assert extract_jwt_from_header("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer ", "Basic abc", "abc", "Bearer a b"])
    def test_malformed_returns_none(self, header):
        assert extract_jwt_from_header(header) is None


class TestElevationHints:
    def test_level3_hint_lists_address_factors(self):
        hint = ELEVATION_HINTS[3].to_dict()
        assert "postalCode" in hint["factors"]
        assert hint["promptDe"]

    def test_level4_requires_otp(self):
        assert ELEVATION_HINTS[4].to_dict()["requiresOtp"] is True
