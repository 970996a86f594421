from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.errors import DeliveryError
from app.main import create_app
from app.services.auth import AuthService
from app.services.credentials import CredentialIssuer
from app.services.elevation import ElevationEngine
from app.services.patients import Address, InMemoryPatientDirectory, Patient
from app.services.rate_limit import RateLimiter
from app.services.token_store import TokenStore

# Test-only signing secret.
TEST_JWT_SECRET = "test-secret-key-that-is-at-least-32-characters-long"

ANNA = Patient(
    id="patient-anna",
    birth_date="1985-03-14",
    address=Address(postal_code="10115", city="Berlin", lines=("Invalidenstraße 42",)),
    name="Anna Schmidt",
    email="anna@example.de",
    phone="+491719876543",
)
MARIA = Patient(
    id="patient-maria",
    birth_date="1990-07-02",
    address=Address(postal_code="80331", city="München", lines=("Marienplatz 1", "3. OG")),
    name="Maria Weber",
    email="maria@example.de",
    phone=None,
)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.magic_links: list[tuple[str, str]] = []
        self.otps: list[tuple[str, str, Optional[str]]] = []
        self.fail = False

    def send_magic_link(self, email: str, token: str) -> None:
        if self.fail:
            raise DeliveryError("email provider down")
        self.magic_links.append((email, token))

    def send_otp(self, phone: str, code: str, action: Optional[str] = None) -> None:
        if self.fail:
            raise DeliveryError("sms provider down")
        self.otps.append((phone, code, action))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def patients() -> InMemoryPatientDirectory:
    return InMemoryPatientDirectory([ANNA, MARIA])


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def token_store(clock: FakeClock) -> TokenStore:
    return TokenStore(clock=clock)


@pytest.fixture
def rate_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(clock=clock)


@pytest.fixture
def issuer() -> CredentialIssuer:
    return CredentialIssuer(TEST_JWT_SECRET)


@pytest.fixture
def auth_service(token_store, rate_limiter, patients, notifier, issuer) -> AuthService:
    return AuthService(token_store, rate_limiter, patients, notifier, issuer)


@pytest.fixture
def elevation_engine(token_store, patients, notifier, issuer, clock) -> ElevationEngine:
    return ElevationEngine(issuer, patients, token_store, RateLimiter(clock=clock), notifier)


@pytest.fixture
def app(patients, notifier, token_store, rate_limiter, issuer):
    return create_app(
        config=Settings(),
        patients=patients,
        notifier=notifier,
        token_store=token_store,
        rate_limiter=rate_limiter,
        issuer=issuer,
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
