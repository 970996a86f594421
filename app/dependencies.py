from typing import Callable, Optional

from fastapi import Depends, Header, Request, status

from app.errors import AuthError
from app.services.auth import AuthService
from app.services.credentials import (
    ELEVATION_HINTS,
    CredentialError,
    CredentialIssuer,
    CredentialPayload,
    extract_jwt_from_header,
)
from app.services.elevation import ElevationEngine


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_elevation_engine(request: Request) -> ElevationEngine:
    return request.app.state.elevation_engine


def get_issuer(request: Request) -> CredentialIssuer:
    return request.app.state.issuer


def current_credential(
    authorization: Optional[str] = Header(default=None),
    issuer: CredentialIssuer = Depends(get_issuer),
) -> CredentialPayload:
    token = extract_jwt_from_header(authorization)
    if token is None:
        raise AuthError("unauthorized", "Authorization header missing or invalid")
    try:
        return issuer.verify_jwt(token)
    except CredentialError as exc:
        raise AuthError("invalid_token", "Token is invalid or expired") from exc


def optional_credential(
    authorization: Optional[str] = Header(default=None),
    issuer: CredentialIssuer = Depends(get_issuer),
) -> Optional[CredentialPayload]:
    token = extract_jwt_from_header(authorization)
    if token is None:
        return None
    try:
        return issuer.verify_jwt(token)
    except CredentialError:
        return None


def require_level(min_level: int) -> Callable[..., CredentialPayload]:
    """Dependency factory rejecting credentials below ``min_level``.

    The 403 body carries the elevation hint for the required level so the
    client knows which factor to ask for.
    """

    def _dependency(
        payload: CredentialPayload = Depends(current_credential),
    ) -> CredentialPayload:
        if payload.level < min_level:
            raise AuthError(
                "insufficient_level",
                "Authentication level is insufficient",
                status.HTTP_403_FORBIDDEN,
                currentLevel=payload.level,
                requiredLevel=min_level,
                elevation=ELEVATION_HINTS[min_level].to_dict(),
            )
        return payload

    return _dependency
