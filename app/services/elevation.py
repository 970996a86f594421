"""Stepwise elevation of an issued credential.

Level 2 -> 3 is earned with one knowledge factor about the patient's address.
Level 3 -> 4 is earned with an SMS code and is scoped to a single action.
"""

from dataclasses import dataclass
import hmac
import logging
from typing import Callable, Optional

from fastapi import status

from app.errors import AuthError, DeliveryError
from app.services.credentials import (
    ELEVATION_HINTS,
    CredentialIssuer,
    CredentialPayload,
    IssuedCredential,
)
from app.services.delivery import Notifier
from app.services.identifiers import mask_phone
from app.services.patients import Address, Patient, PatientDirectory, PatientLookupError
from app.services.rate_limit import RateLimiter
from app.services.secrets_gen import generate_sms_otp, hash_token
from app.services.token_store import TokenStore

LOGGER = logging.getLogger(__name__)

ADDRESS_LEVEL = 3
ACTION_LEVEL = 4
MAX_TOKEN_ATTEMPTS = 5


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _postal_code_matches(presented: str, address: Address) -> bool:
    return _clean(address.postal_code).replace(" ", "") == presented.replace(" ", "")


def _city_matches(presented: str, address: Address) -> bool:
    return _clean(address.city).casefold() == presented.casefold()


def _street_matches(presented: str, address: Address) -> bool:
    wanted = presented.casefold()
    return any(wanted in line.casefold() for line in address.lines)


# Evaluated in this order; only the first supplied factor is checked.
ADDRESS_FACTORS: tuple[tuple[str, Callable[[str, Address], bool]], ...] = (
    ("postalCode", _postal_code_matches),
    ("city", _city_matches),
    ("streetName", _street_matches),
)


@dataclass(frozen=True)
class FactorResult:
    factor: str
    matched: bool


def evaluate_address_factors(
    presented: dict[str, Optional[str]], address: Optional[Address]
) -> Optional[FactorResult]:
    """Check the first non-empty factor in priority order.

    Returns ``None`` when no factor was supplied.
    """
    for name, matcher in ADDRESS_FACTORS:
        value = _clean(presented.get(name))
        if not value:
            continue
        matched = address is not None and matcher(value, address)
        return FactorResult(factor=name, matched=matched)
    return None


@dataclass(frozen=True)
class ActionOtpChallenge:
    action: str
    expires_in: int
    masked_identifier: str


def action_otp_secret(patient_id: str, action: str, code: str) -> str:
    return f"{patient_id}:{action}:{code}"


class ElevationEngine:
    def __init__(
        self,
        issuer: CredentialIssuer,
        patients: PatientDirectory,
        token_store: TokenStore,
        rate_limiter: RateLimiter,
        notifier: Notifier,
        max_attempts: int = MAX_TOKEN_ATTEMPTS,
    ) -> None:
        self._issuer = issuer
        self._patients = patients
        self._tokens = token_store
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._max_attempts = max_attempts

    def elevate(
        self,
        payload: CredentialPayload,
        postal_code: Optional[str] = None,
        city: Optional[str] = None,
        street_name: Optional[str] = None,
    ) -> IssuedCredential:
        if payload.level >= ADDRESS_LEVEL:
            raise AuthError(
                "already_at_level",
                "Credential already satisfies the address factor",
                status.HTTP_400_BAD_REQUEST,
                currentLevel=payload.level,
            )
        presented = {"postalCode": postal_code, "city": city, "streetName": street_name}
        if not any(_clean(value) for value in presented.values()):
            raise AuthError(
                "validation_failed",
                "At least one of postalCode, city or streetName is required",
                status.HTTP_400_BAD_REQUEST,
            )

        patient = self._load_patient(payload.sub)
        result = evaluate_address_factors(presented, patient.address)
        if result is None or not result.matched:
            failed = result.factor if result else "postalCode"
            LOGGER.info("Elevation rejected for patient=%s factor=%s", payload.sub, failed)
            raise AuthError(
                "invalid_factor",
                "The provided information does not match our records",
                failedFactor=failed,
            )

        credential = self._issuer.elevate_jwt(payload, ADDRESS_LEVEL, "address")
        LOGGER.info(
            "Elevated patient=%s to level %s via %s",
            payload.sub,
            ADDRESS_LEVEL,
            result.factor,
        )
        return credential

    def request_action_otp(self, payload: CredentialPayload, action: str) -> ActionOtpChallenge:
        self._require_action_prerequisite(payload)
        expires_in = self._tokens.ttl_seconds("sms_otp")

        self._rate_limiter.cleanup_expired_windows()
        decision = self._rate_limiter.hit(f"action:{payload.sub}")
        if not decision.allowed:
            raise AuthError(
                "rate_limited",
                "Too many requests. Please try again later.",
                status.HTTP_429_TOO_MANY_REQUESTS,
                headers={"Retry-After": str(decision.retry_after_seconds)},
                retryAfterSeconds=decision.retry_after_seconds,
            )

        try:
            patient = self._patients.get_patient_by_id(payload.sub)
        except PatientLookupError:
            LOGGER.exception("Patient lookup failed for action OTP patient=%s", payload.sub)
            patient = None
        phone = patient.phone if patient is not None else None
        masked = mask_phone(phone or "")
        if not phone:
            LOGGER.warning("No phone on record for patient=%s; action OTP not sent", payload.sub)
            return ActionOtpChallenge(action=action, expires_in=expires_in, masked_identifier=masked)

        self._tokens.discard_pending(payload.sub, action)
        code = generate_sms_otp()
        self._tokens.store_auth_token(
            action_otp_secret(payload.sub, action, code),
            payload.sub,
            "sms_otp",
            purpose=action,
        )
        try:
            self._notifier.send_otp(phone, code, action)
        except DeliveryError:
            LOGGER.exception("Action OTP delivery failed for %s", masked)
        return ActionOtpChallenge(action=action, expires_in=expires_in, masked_identifier=masked)

    def confirm_action_otp(
        self, payload: CredentialPayload, action: str, code: str
    ) -> IssuedCredential:
        self._require_action_prerequisite(payload)
        token = self._tokens.find_pending(payload.sub, action)
        if token is None:
            raise AuthError("invalid_token", "No pending verification code for this action")
        if token.attempts >= self._max_attempts:
            self._tokens.delete_token(token.token_hash)
            raise AuthError("max_attempts", "Too many failed attempts. Request a new code.")

        expected = hash_token(action_otp_secret(payload.sub, action, code.strip()))
        if not hmac.compare_digest(expected, token.token_hash):
            attempts = self._tokens.increment_token_attempts(token.token_hash, self._max_attempts)
            if attempts >= self._max_attempts:
                raise AuthError("max_attempts", "Too many failed attempts. Request a new code.")
            raise AuthError(
                "invalid_code",
                "Verification code is incorrect",
                attemptsRemaining=self._max_attempts - attempts,
            )

        if not self._tokens.mark_token_used(token.token_hash, self._max_attempts):
            current = self._tokens.find_token_by_hash(token.token_hash)
            if current is not None and not current.used:
                self._tokens.delete_token(token.token_hash)
                raise AuthError("max_attempts", "Too many failed attempts. Request a new code.")
            raise AuthError("invalid_token", "Verification code was already used")
        credential = self._issuer.create_level4_action_jwt(payload, action)
        LOGGER.info("Issued level 4 credential patient=%s action=%s", payload.sub, action)
        return credential

    def _require_action_prerequisite(self, payload: CredentialPayload) -> None:
        if payload.level >= ACTION_LEVEL:
            raise AuthError(
                "already_at_level",
                "Credential is already at the highest level",
                status.HTTP_400_BAD_REQUEST,
                currentLevel=payload.level,
            )
        if payload.level < ADDRESS_LEVEL:
            raise AuthError(
                "insufficient_level",
                "Address verification is required first",
                status.HTTP_403_FORBIDDEN,
                currentLevel=payload.level,
                requiredLevel=ADDRESS_LEVEL,
                elevation=ELEVATION_HINTS[ADDRESS_LEVEL].to_dict(),
            )

    def _load_patient(self, patient_id: str) -> Patient:
        try:
            patient = self._patients.get_patient_by_id(patient_id)
        except PatientLookupError as exc:
            LOGGER.error("Patient lookup failed during elevation patient=%s", patient_id)
            raise AuthError(
                "identity_unavailable",
                "Identity service is temporarily unavailable",
                status.HTTP_503_SERVICE_UNAVAILABLE,
            ) from exc
        if patient is None:
            raise AuthError("invalid_token", "Credential subject is unknown")
        return patient
