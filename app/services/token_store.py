from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional

from app.services.secrets_gen import hash_token
from app.storage import KeyValueStore, MemoryStore

AuthMethod = Literal["magic_link", "sms_otp"]

MAGIC_LINK_EXPIRY_SECONDS = 15 * 60
SMS_OTP_EXPIRY_SECONDS = 10 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthToken:
    token_hash: str
    patient_id: str
    method: AuthMethod
    expires_at: datetime
    used: bool
    attempts: int
    created_at: datetime
    purpose: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TokenStore:
    """Issued secrets, keyed by their SHA-256 hash.

    Lookups never check expiry; callers compare ``expires_at`` themselves.
    """

    def __init__(
        self,
        backend: Optional[KeyValueStore[AuthToken]] = None,
        magic_link_ttl_seconds: int = MAGIC_LINK_EXPIRY_SECONDS,
        sms_otp_ttl_seconds: int = SMS_OTP_EXPIRY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend if backend is not None else MemoryStore()
        self._ttl = {
            "magic_link": magic_link_ttl_seconds,
            "sms_otp": sms_otp_ttl_seconds,
        }
        self._clock = clock

    def ttl_seconds(self, method: AuthMethod) -> int:
        return self._ttl[method]

    def is_expired(self, token: AuthToken) -> bool:
        return token.is_expired(self._clock())

    def store_auth_token(
        self,
        raw_token: str,
        patient_id: str,
        method: AuthMethod,
        purpose: Optional[str] = None,
    ) -> AuthToken:
        now = self._clock()
        token = AuthToken(
            token_hash=hash_token(raw_token),
            patient_id=patient_id,
            method=method,
            expires_at=now + timedelta(seconds=self._ttl[method]),
            used=False,
            attempts=0,
            created_at=now,
            purpose=purpose,
        )
        self._backend.put(token.token_hash, token)
        return token

    def find_token_by_hash(self, token_hash: str) -> Optional[AuthToken]:
        return self._backend.get(token_hash)

    def mark_token_used(self, token_hash: str, max_attempts: Optional[int] = None) -> bool:
        """Flag the token as used; False if it was missing, already used or out of attempts."""
        transitioned = False

        def _mark(current: Optional[AuthToken]) -> Optional[AuthToken]:
            nonlocal transitioned
            if current is None or current.used:
                return current
            if max_attempts is not None and current.attempts >= max_attempts:
                return current
            transitioned = True
            return replace(current, used=True)

        self._backend.update(token_hash, _mark)
        return transitioned

    def increment_token_attempts(self, token_hash: str, max_attempts: Optional[int] = None) -> int:
        """Count one failed attempt; the counter never moves past ``max_attempts``."""

        def _bump(current: Optional[AuthToken]) -> Optional[AuthToken]:
            if current is None:
                return None
            if max_attempts is not None and current.attempts >= max_attempts:
                return current
            return replace(current, attempts=current.attempts + 1)

        updated = self._backend.update(token_hash, _bump)
        return updated.attempts if updated is not None else 0

    def delete_token(self, token_hash: str) -> None:
        self._backend.delete(token_hash)

    def cleanup_expired_tokens(self) -> int:
        now = self._clock()
        return self._backend.sweep_expired(lambda token: token.expires_at < now)

    def find_pending(self, patient_id: str, purpose: str) -> Optional[AuthToken]:
        now = self._clock()
        candidates = [
            token
            for token in self._backend.values()
            if token.patient_id == patient_id
            and token.purpose == purpose
            and not token.used
            and not token.is_expired(now)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda token: token.created_at)

    def discard_pending(self, patient_id: str, purpose: str) -> int:
        return self._backend.sweep_expired(
            lambda token: token.patient_id == patient_id and token.purpose == purpose
        )
