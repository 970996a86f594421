from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Any, Callable, Optional

import jwt

JWT_EXPIRY_SECONDS = 24 * 60 * 60
LEVEL4_EXPIRY_SECONDS = 5 * 60
MIN_LEVEL = 2
MAX_LEVEL = 4

_BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


class CredentialError(ValueError):
    pass


@dataclass(frozen=True)
class ElevationHint:
    factors: tuple[str, ...]
    prompt: str
    prompt_de: str
    requires_otp: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "factors": list(self.factors),
            "prompt": self.prompt,
            "promptDe": self.prompt_de,
        }
        if self.requires_otp:
            data["requiresOtp"] = True
        return data


ELEVATION_HINTS: dict[int, ElevationHint] = {
    1: ElevationHint(
        factors=("birthDate",),
        prompt="Please enter your date of birth to continue",
        prompt_de="Bitte geben Sie Ihr Geburtsdatum ein",
    ),
    2: ElevationHint(
        factors=("birthDate",),
        prompt="Please confirm your date of birth",
        prompt_de="Bitte bestätigen Sie Ihr Geburtsdatum",
    ),
    3: ElevationHint(
        factors=("postalCode", "city", "streetName"),
        prompt="Please enter your postal code to continue",
        prompt_de="Bitte geben Sie Ihre Postleitzahl ein",
    ),
    4: ElevationHint(
        factors=("otp",),
        prompt="We will send a verification code to your phone",
        prompt_de="Wir senden einen Bestätigungscode an Ihr Telefon",
        requires_otp=True,
    ),
}


@dataclass(frozen=True)
class CredentialPayload:
    sub: str
    level: int
    method: str
    iat: int
    exp: int
    elevated_at: Optional[str] = None
    action_scope: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": self.sub,
            "level": self.level,
            "method": self.method,
            "iat": self.iat,
            "exp": self.exp,
        }
        if self.elevated_at is not None:
            claims["elevatedAt"] = self.elevated_at
        if self.action_scope is not None:
            claims["actionScope"] = self.action_scope
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "CredentialPayload":
        try:
            level = int(claims["level"])
            payload = cls(
                sub=str(claims["sub"]),
                level=level,
                method=str(claims["method"]),
                iat=int(claims["iat"]),
                exp=int(claims["exp"]),
                elevated_at=claims.get("elevatedAt"),
                action_scope=claims.get("actionScope"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CredentialError("Credential is missing required claims") from exc
        if not payload.sub or not MIN_LEVEL <= level <= MAX_LEVEL:
            raise CredentialError("Credential claims are out of range")
        return payload


@dataclass(frozen=True)
class IssuedCredential:
    jwt: str
    payload: CredentialPayload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialIssuer:
    """Signs and verifies patient credentials.

    Elevation re-signs the claims with a higher level but keeps the original
    ``exp``, so chaining factors never extends a session.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl_seconds: int = JWT_EXPIRY_SECONDS,
        action_ttl_seconds: int = LEVEL4_EXPIRY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise CredentialError("JWT secret is not configured")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl_seconds = ttl_seconds
        self._action_ttl_seconds = action_ttl_seconds
        self._clock = clock

    def create_level2_jwt(self, patient_id: str, method: str) -> IssuedCredential:
        now = int(self._clock().timestamp())
        payload = CredentialPayload(
            sub=patient_id,
            level=2,
            method=method,
            iat=now,
            exp=now + self._ttl_seconds,
        )
        return self._sign(payload)

    def verify_jwt(self, token: str) -> CredentialPayload:
        if not token:
            raise CredentialError("Token is missing")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise CredentialError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise CredentialError("Invalid token") from exc
        return CredentialPayload.from_claims(claims)

    def elevate_jwt(
        self, current: CredentialPayload, new_level: int, method: str
    ) -> IssuedCredential:
        if new_level <= current.level:
            raise CredentialError("New level must be higher than current level")
        if new_level > MAX_LEVEL:
            raise CredentialError("Requested level does not exist")
        now = self._clock()
        payload = CredentialPayload(
            sub=current.sub,
            level=new_level,
            method=method,
            iat=int(now.timestamp()),
            exp=current.exp,
            elevated_at=now.isoformat(),
        )
        return self._sign(payload)

    def create_level4_action_jwt(
        self, current: CredentialPayload, action: str
    ) -> IssuedCredential:
        """Short-lived Level 4 credential usable for one named action."""
        if current.level >= MAX_LEVEL:
            raise CredentialError("Credential is already at the highest level")
        now = self._clock()
        issued_at = int(now.timestamp())
        payload = CredentialPayload(
            sub=current.sub,
            level=MAX_LEVEL,
            method="action_otp",
            iat=issued_at,
            exp=min(current.exp, issued_at + self._action_ttl_seconds),
            elevated_at=now.isoformat(),
            action_scope=action,
        )
        return self._sign(payload)

    def _sign(self, payload: CredentialPayload) -> IssuedCredential:
        token = jwt.encode(payload.to_claims(), self._secret, algorithm=self._algorithm)
        return IssuedCredential(jwt=token, payload=payload)


def extract_jwt_from_header(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _BEARER_PATTERN.match(header.strip())
    return match.group(1) if match else None
