from typing import Optional

from fastapi import APIRouter, Depends

from app.dependencies import (
    get_auth_service,
    get_elevation_engine,
    optional_credential,
    require_level,
)
from app.schemas.auth import (
    ActionOtpRequest,
    ActionOtpResponse,
    AuthInitiateRequest,
    AuthInitiateResponse,
    AuthStatusResponse,
    ConfirmActionRequest,
    ConfirmActionResponse,
    ElevateRequest,
    ElevateResponse,
    PatientSummary,
    SessionInfoResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
)
from app.services.auth import AuthService
from app.services.credentials import ELEVATION_HINTS, CredentialPayload
from app.services.elevation import ElevationEngine

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/initiate", response_model=AuthInitiateResponse)
def initiate(
    payload: AuthInitiateRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthInitiateResponse:
    result = service.initiate(payload.method, payload.identifier)
    return AuthInitiateResponse(
        success=True,
        expires_in=result.expires_in,
        masked_identifier=result.masked_identifier,
    )


@router.post("/verify-token", response_model=VerifyTokenResponse)
def verify_token(
    payload: VerifyTokenRequest,
    service: AuthService = Depends(get_auth_service),
) -> VerifyTokenResponse:
    result = service.verify_token(payload.token, payload.birth_date)
    credential = result.credential
    return VerifyTokenResponse(
        jwt=credential.jwt,
        level=credential.payload.level,
        expires_at=credential.payload.expires_at.isoformat(),
        patient=PatientSummary(id=result.patient.id, name=result.patient.name),
    )


@router.post("/elevate", response_model=ElevateResponse)
def elevate(
    payload: ElevateRequest,
    credential: CredentialPayload = Depends(require_level(2)),
    engine: ElevationEngine = Depends(get_elevation_engine),
) -> ElevateResponse:
    elevated = engine.elevate(
        credential,
        postal_code=payload.postal_code,
        city=payload.city,
        street_name=payload.street_name,
    )
    return ElevateResponse(
        jwt=elevated.jwt,
        level=elevated.payload.level,
        expires_at=elevated.payload.expires_at.isoformat(),
    )


@router.post("/action-otp", response_model=ActionOtpResponse)
def request_action_otp(
    payload: ActionOtpRequest,
    credential: CredentialPayload = Depends(require_level(3)),
    engine: ElevationEngine = Depends(get_elevation_engine),
) -> ActionOtpResponse:
    challenge = engine.request_action_otp(credential, payload.action)
    return ActionOtpResponse(
        success=True,
        expires_in=challenge.expires_in,
        masked_identifier=challenge.masked_identifier,
        action=challenge.action,
    )


@router.post("/confirm-action", response_model=ConfirmActionResponse)
def confirm_action(
    payload: ConfirmActionRequest,
    credential: CredentialPayload = Depends(require_level(3)),
    engine: ElevationEngine = Depends(get_elevation_engine),
) -> ConfirmActionResponse:
    issued = engine.confirm_action_otp(credential, payload.action, payload.code)
    return ConfirmActionResponse(
        jwt=issued.jwt,
        level=issued.payload.level,
        expires_at=issued.payload.expires_at.isoformat(),
        action=payload.action,
    )


@router.get("/me", response_model=SessionInfoResponse, response_model_exclude_none=True)
def me(credential: CredentialPayload = Depends(require_level(2))) -> SessionInfoResponse:
    return SessionInfoResponse(
        patient_id=credential.sub,
        level=credential.level,
        method=credential.method,
        expires_at=credential.expires_at.isoformat(),
        action_scope=credential.action_scope,
    )


@router.get("/status", response_model=AuthStatusResponse, response_model_exclude_none=True)
def auth_status(
    credential: Optional[CredentialPayload] = Depends(optional_credential),
) -> AuthStatusResponse:
    if credential is None:
        return AuthStatusResponse(
            authenticated=False, level=1, elevation=ELEVATION_HINTS[1].to_dict()
        )
    next_hint = ELEVATION_HINTS.get(credential.level + 1)
    return AuthStatusResponse(
        authenticated=True,
        level=credential.level,
        elevation=next_hint.to_dict() if next_hint else None,
    )
