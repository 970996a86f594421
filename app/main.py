import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.errors import register_error_handlers
from app.routers import auth, health
from app.services.auth import AuthService
from app.services.credentials import CredentialIssuer
from app.services.delivery import LiveNotifier, LogNotifier, Notifier
from app.services.elevation import ElevationEngine
from app.services.email import GmailSender
from app.services.patients import (
    FhirPatientDirectory,
    InMemoryPatientDirectory,
    PatientDirectory,
)
from app.services.rate_limit import RateLimiter
from app.services.sms import TwilioSmsSender
from app.services.token_store import TokenStore

LOGGER = logging.getLogger(__name__)


def _build_patient_directory(config: Settings) -> PatientDirectory:
    if config.fhir_base_url:
        return FhirPatientDirectory(
            config.fhir_base_url,
            timeout_seconds=config.fhir_timeout_seconds,
            username=config.fhir_username,
            password=config.fhir_password,
            default_country_code=config.default_country_code,
        )
    LOGGER.warning("FHIR_BASE_URL is not set; using an empty in-memory patient directory")
    return InMemoryPatientDirectory(default_country_code=config.default_country_code)


def _build_notifier(config: Settings) -> Notifier:
    if config.delivery_mode == "live":
        return LiveNotifier(
            email_sender=GmailSender(
                config.email_sender,
                config.gmail_token_file,
                timeout_seconds=config.delivery_timeout_seconds,
            ),
            sms_sender=TwilioSmsSender(
                config.twilio_account_sid,
                config.twilio_auth_token,
                config.twilio_phone_number,
                timeout_seconds=config.delivery_timeout_seconds,
            ),
            magic_link_base_url=config.magic_link_base_url,
            email_subject=config.email_subject,
            magic_link_ttl_seconds=config.magic_link_ttl_seconds,
            sms_otp_ttl_seconds=config.sms_otp_ttl_seconds,
        )
    return LogNotifier(config.magic_link_base_url)


def create_app(
    config: Settings = settings,
    patients: Optional[PatientDirectory] = None,
    notifier: Optional[Notifier] = None,
    token_store: Optional[TokenStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
    issuer: Optional[CredentialIssuer] = None,
) -> FastAPI:
    config.validate()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    patients = patients if patients is not None else _build_patient_directory(config)
    notifier = notifier if notifier is not None else _build_notifier(config)
    token_store = token_store if token_store is not None else TokenStore(
        magic_link_ttl_seconds=config.magic_link_ttl_seconds,
        sms_otp_ttl_seconds=config.sms_otp_ttl_seconds,
    )
    rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
    )
    issuer = issuer if issuer is not None else CredentialIssuer(
        config.jwt_secret,
        algorithm=config.jwt_algorithm,
        ttl_seconds=config.credential_ttl_seconds,
        action_ttl_seconds=config.action_credential_ttl_seconds,
    )

    app = FastAPI(title="Patient Portal Auth")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.state.issuer = issuer
    app.state.auth_service = AuthService(
        token_store,
        rate_limiter,
        patients,
        notifier,
        issuer,
        max_attempts=config.max_token_attempts,
        default_country_code=config.default_country_code,
        sweep_on_initiate=config.sweep_on_initiate,
    )
    # Action OTP quota is tracked apart from sign-in quota.
    app.state.elevation_engine = ElevationEngine(
        issuer,
        patients,
        token_store,
        RateLimiter(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
        ),
        notifier,
        max_attempts=config.max_token_attempts,
    )

    app.include_router(health.router)
    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router)
    app.include_router(auth.router, prefix="/api")  # Clients calling /api/auth/*.
    return app


app = create_app()
