"""Sign-in initiation and secret redemption.

Initiation answers with the same success shape whether or not the identifier
belongs to a patient, so callers cannot probe which identifiers exist.
"""

from dataclasses import dataclass
import logging
from typing import Optional

from fastapi import status

from app.errors import AuthError, DeliveryError
from app.services.credentials import CredentialIssuer, IssuedCredential
from app.services.delivery import Notifier
from app.services.identifiers import (
    is_valid_e164_phone,
    is_valid_email,
    mask_email,
    mask_phone,
    normalize_phone_to_e164,
)
from app.services.patients import Patient, PatientDirectory, PatientLookupError
from app.services.rate_limit import RateLimiter
from app.services.secrets_gen import generate_magic_link_token, generate_sms_otp, hash_token
from app.services.token_store import AuthMethod, TokenStore

LOGGER = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 5


@dataclass(frozen=True)
class InitiateResult:
    expires_in: int
    masked_identifier: str


@dataclass(frozen=True)
class VerifyResult:
    credential: IssuedCredential
    patient: Patient


def validate_identifier(method: AuthMethod, identifier: str) -> None:
    if method == "magic_link" and not is_valid_email(identifier):
        raise AuthError(
            "validation_failed", "Invalid email format", status.HTTP_400_BAD_REQUEST
        )
    if method == "sms_otp" and not is_valid_e164_phone(identifier):
        raise AuthError(
            "validation_failed",
            "Invalid phone number format. Use E.164 format (e.g., +491719876543)",
            status.HTTP_400_BAD_REQUEST,
        )


class AuthService:
    def __init__(
        self,
        token_store: TokenStore,
        rate_limiter: RateLimiter,
        patients: PatientDirectory,
        notifier: Notifier,
        issuer: CredentialIssuer,
        max_attempts: int = MAX_TOKEN_ATTEMPTS,
        default_country_code: str = "+49",
        sweep_on_initiate: bool = True,
    ) -> None:
        self._tokens = token_store
        self._rate_limiter = rate_limiter
        self._patients = patients
        self._notifier = notifier
        self._issuer = issuer
        self._max_attempts = max_attempts
        self._default_country_code = default_country_code
        self._sweep_on_initiate = sweep_on_initiate

    def initiate(self, method: AuthMethod, identifier: str) -> InitiateResult:
        identifier = identifier.strip()
        validate_identifier(method, identifier)

        if self._sweep_on_initiate:
            self._tokens.cleanup_expired_tokens()
            self._rate_limiter.cleanup_expired_windows()

        decision = self._rate_limiter.hit(identifier)
        if not decision.allowed:
            raise AuthError(
                "rate_limited",
                "Too many requests. Please try again later.",
                status.HTTP_429_TOO_MANY_REQUESTS,
                headers={"Retry-After": str(decision.retry_after_seconds)},
                retryAfterSeconds=decision.retry_after_seconds,
            )

        result = InitiateResult(
            expires_in=self._tokens.ttl_seconds(method),
            masked_identifier=(
                mask_email(identifier) if method == "magic_link" else mask_phone(identifier)
            ),
        )

        patient = self._lookup(method, identifier, result.masked_identifier)
        if patient is None:
            LOGGER.info(
                "No patient found for %s: %s (returning generic success)",
                method,
                result.masked_identifier,
            )
            return result

        raw_token = generate_magic_link_token() if method == "magic_link" else generate_sms_otp()
        self._tokens.store_auth_token(raw_token, patient.id, method)
        try:
            if method == "magic_link":
                self._notifier.send_magic_link(identifier, raw_token)
            else:
                # The number on file, never the one typed by the caller.
                self._notifier.send_otp(
                    normalize_phone_to_e164(patient.phone or identifier, self._default_country_code),
                    raw_token,
                )
        except DeliveryError:
            LOGGER.exception("Delivery failed for %s via %s", result.masked_identifier, method)
        return result

    def verify_token(self, raw_token: str, birth_date: str) -> VerifyResult:
        token_hash = hash_token(raw_token.strip())
        token = self._tokens.find_token_by_hash(token_hash)
        if token is None or token.used:
            raise AuthError("invalid_token", "Token is invalid, expired or already used")
        if self._tokens.is_expired(token):
            self._tokens.delete_token(token_hash)
            raise AuthError("invalid_token", "Token is invalid, expired or already used")
        if token.attempts >= self._max_attempts:
            self._tokens.delete_token(token_hash)
            raise AuthError("max_attempts", "Too many failed attempts. Please start again.")

        try:
            patient = self._patients.get_patient_by_id(token.patient_id)
        except PatientLookupError as exc:
            LOGGER.error("Patient lookup failed while verifying token patient=%s", token.patient_id)
            raise AuthError(
                "identity_unavailable",
                "Identity service is temporarily unavailable",
                status.HTTP_503_SERVICE_UNAVAILABLE,
            ) from exc
        if patient is None:
            self._tokens.delete_token(token_hash)
            raise AuthError("invalid_token", "Token is invalid, expired or already used")

        if (patient.birth_date or "").strip() != birth_date.strip():
            attempts = self._tokens.increment_token_attempts(token_hash, self._max_attempts)
            LOGGER.info("Birth date mismatch patient=%s attempts=%s", patient.id, attempts)
            if attempts >= self._max_attempts:
                raise AuthError("max_attempts", "Too many failed attempts. Please start again.")
            raise AuthError(
                "invalid_birthdate",
                "Birth date does not match",
                attemptsRemaining=self._max_attempts - attempts,
            )

        if not self._tokens.mark_token_used(token_hash, self._max_attempts):
            self._reject_unredeemable(token_hash)
        credential = self._issuer.create_level2_jwt(patient.id, token.method)
        LOGGER.info("Issued level 2 credential patient=%s method=%s", patient.id, token.method)
        return VerifyResult(credential=credential, patient=patient)

    def _reject_unredeemable(self, token_hash: str) -> None:
        # Lost a race: another request used the token or spent its last attempt.
        current = self._tokens.find_token_by_hash(token_hash)
        if current is not None and not current.used and current.attempts >= self._max_attempts:
            self._tokens.delete_token(token_hash)
            raise AuthError("max_attempts", "Too many failed attempts. Please start again.")
        raise AuthError("invalid_token", "Token is invalid, expired or already used")

    def _lookup(self, method: AuthMethod, identifier: str, masked: str) -> Optional[Patient]:
        try:
            if method == "magic_link":
                return self._patients.find_patient_by_email(identifier)
            return self._patients.find_patient_by_phone(
                normalize_phone_to_e164(identifier, self._default_country_code)
            )
        except PatientLookupError:
            LOGGER.exception("Patient lookup error for %s", masked)
            return None
