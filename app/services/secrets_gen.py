import hashlib
import secrets

MAGIC_LINK_TOKEN_BYTES = 32
OTP_MIN = 100000
OTP_MAX = 999999


def generate_magic_link_token() -> str:
    """Return 256 random bits as a 64 character hex string."""
    return secrets.token_hex(MAGIC_LINK_TOKEN_BYTES)


def generate_sms_otp() -> str:
    """Return a six digit code drawn uniformly from 100000-999999."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
