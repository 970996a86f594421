from datetime import date
import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.services.identifiers import is_valid_e164_phone, is_valid_email

ACTION_PATTERN = r"^[a-z][a-z0-9_.:-]{1,63}$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthInitiateRequest(CamelModel):
    method: Literal["magic_link", "sms_otp"]
    identifier: str = Field(min_length=1, max_length=255)

    @model_validator(mode="after")
    def validate_identifier_format(self) -> "AuthInitiateRequest":
        identifier = self.identifier.strip()
        if self.method == "magic_link" and not is_valid_email(identifier):
            raise ValueError("Invalid email format")
        if self.method == "sms_otp" and not is_valid_e164_phone(identifier):
            raise ValueError(
                "Invalid phone number format. Use E.164 format (e.g., +491719876543)"
            )
        self.identifier = identifier
        return self


class AuthInitiateResponse(CamelModel):
    success: bool
    expires_in: int
    masked_identifier: str


class VerifyTokenRequest(CamelModel):
    token: str = Field(min_length=1, max_length=512)
    birth_date: str

    @field_validator("birth_date")
    @classmethod
    def validate_birth_date(cls, value: str) -> str:
        cleaned = value.strip()
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", cleaned):
            raise ValueError("birthDate must use the YYYY-MM-DD format")
        try:
            date.fromisoformat(cleaned)
        except ValueError as exc:
            raise ValueError("birthDate is not a valid date") from exc
        return cleaned


class PatientSummary(CamelModel):
    id: str
    name: str


class VerifyTokenResponse(CamelModel):
    jwt: str
    level: int
    expires_at: str
    patient: PatientSummary


class ElevateRequest(CamelModel):
    postal_code: Optional[str] = Field(default=None, max_length=20)
    city: Optional[str] = Field(default=None, max_length=100)
    street_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("postal_code", "city", "street_name")
    @classmethod
    def normalize_optional_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @model_validator(mode="after")
    def require_one_factor(self) -> "ElevateRequest":
        if not (self.postal_code or self.city or self.street_name):
            raise ValueError("At least one of postalCode, city or streetName is required")
        return self


class ElevateResponse(CamelModel):
    jwt: str
    level: int
    expires_at: str


class ActionOtpRequest(CamelModel):
    action: str = Field(pattern=ACTION_PATTERN)


class ActionOtpResponse(CamelModel):
    success: bool
    expires_in: int
    masked_identifier: str
    action: str


class ConfirmActionRequest(CamelModel):
    action: str = Field(pattern=ACTION_PATTERN)
    code: str = Field(pattern=r"^\d{6}$")


class ConfirmActionResponse(CamelModel):
    jwt: str
    level: int
    expires_at: str
    action: str


class SessionInfoResponse(CamelModel):
    patient_id: str
    level: int
    method: str
    expires_at: str
    action_scope: Optional[str] = None


class AuthStatusResponse(CamelModel):
    authenticated: bool
    level: int
    elevation: Optional[dict] = None
