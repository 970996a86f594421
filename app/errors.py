import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class AuthError(Exception):
    """Client-visible failure carrying a machine-readable error code.

    Extra keyword arguments are merged into the response body next to
    ``error`` and ``message`` (for example ``attemptsRemaining``).
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_401_UNAUTHORIZED,
        headers: dict[str, str] | None = None,
        **extra: Any,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.headers = headers
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


class DeliveryError(RuntimeError):
    pass


def _auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers,
    )


def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    messages = []
    for issue in exc.errors():
        message = str(issue.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "validation_failed",
            "message": "; ".join(messages) or "Invalid request",
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, _auth_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
