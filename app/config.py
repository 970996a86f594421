import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv(override=True)

DEV_JWT_SECRET = "development-secret-change-in-production"


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    environment: str = os.getenv("APP_ENV", "development").strip().lower()
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    jwt_secret: str = os.getenv("JWT_SECRET", DEV_JWT_SECRET)
    jwt_algorithm: str = os.getenv("ALGORITHM", "HS256")
    credential_ttl_seconds: int = int(os.getenv("CREDENTIAL_TTL_SECONDS", "86400"))
    action_credential_ttl_seconds: int = int(
        os.getenv("ACTION_CREDENTIAL_TTL_SECONDS", "300")
    )
    magic_link_ttl_seconds: int = int(os.getenv("MAGIC_LINK_TTL_SECONDS", "900"))
    sms_otp_ttl_seconds: int = int(os.getenv("SMS_OTP_TTL_SECONDS", "600"))
    max_token_attempts: int = int(os.getenv("MAX_TOKEN_ATTEMPTS", "5"))
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "3"))
    rate_limit_window_seconds: int = int(
        os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600")
    )
    magic_link_base_url: str = os.getenv(
        "MAGIC_LINK_BASE_URL", "http://localhost:3000/auth/verify"
    )
    default_country_code: str = os.getenv("DEFAULT_COUNTRY_CODE", "+49")
    delivery_mode: str = os.getenv("DELIVERY_MODE", "log").strip().lower()
    fhir_base_url: str = os.getenv("FHIR_BASE_URL", "").rstrip("/")
    fhir_username: str = os.getenv("FHIR_USERNAME", "")
    fhir_password: str = os.getenv("FHIR_PASSWORD", "")
    fhir_timeout_seconds: float = float(os.getenv("FHIR_TIMEOUT_SECONDS", "10"))
    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_phone_number: str = os.getenv("TWILIO_PHONE_NUMBER", "")
    email_sender: str = os.getenv("AUTH_EMAIL_SENDER") or os.getenv("FROM_EMAIL", "")
    email_subject: str = os.getenv("AUTH_EMAIL_SUBJECT", "Your patient portal sign-in link")
    gmail_token_file: str = os.getenv("GMAIL_TOKEN_FILE", "")
    delivery_timeout_seconds: float = float(
        os.getenv("DELIVERY_TIMEOUT_SECONDS", "10")
    )
    sweep_on_initiate: bool = _env_bool("SWEEP_ON_INITIATE", True)
    cors_origins: tuple[str, ...] = field(
        default=_env_list("CORS_ORIGINS", "http://localhost:3000")
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> None:
        if self.is_production and self.jwt_secret == DEV_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be set in production")
        if self.delivery_mode not in {"log", "live"}:
            raise RuntimeError("DELIVERY_MODE must be 'log' or 'live'")


settings = Settings()
