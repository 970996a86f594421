from __future__ import annotations

import base64
import json
import logging
import re
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from app.errors import DeliveryError
from app.services.identifiers import mask_phone

LOGGER = logging.getLogger(__name__)

TWILIO_MESSAGES_ENDPOINT = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SmsSendError(DeliveryError):
    pass


class TwilioSmsSender:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_phone: str,
        timeout_seconds: float = 10,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_phone = from_phone
        self._timeout = timeout_seconds

    def send(self, to_phone: str, body: str) -> None:
        if not self._account_sid or not self._auth_token or not self._from_phone:
            raise SmsSendError("Twilio is not configured")

        to_number = _ensure_e164(to_phone)
        endpoint = TWILIO_MESSAGES_ENDPOINT.format(sid=self._account_sid)
        payload = urlencode(
            {"To": to_number, "From": _ensure_e164(self._from_phone), "Body": body}
        ).encode("utf-8")
        credentials = f"{self._account_sid}:{self._auth_token}".encode("utf-8")
        request = Request(
            endpoint,
            data=payload,
            headers={
                "Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                response.read()
        except HTTPError as exc:
            LOGGER.error(
                "Twilio API error to=%s status=%s code=%s",
                mask_phone(to_number),
                exc.code,
                _twilio_error_code(exc),
            )
            raise SmsSendError("Failed to send SMS") from exc
        except (URLError, TimeoutError) as exc:
            raise SmsSendError("Failed to reach Twilio API") from exc


def _twilio_error_code(exc: HTTPError) -> str:
    # The error message can echo the destination number; only the code is logged.
    try:
        body = json.loads(exc.read().decode("utf-8", errors="replace"))
    except (ValueError, OSError):
        return "unknown"
    code = body.get("code") if isinstance(body, dict) else None
    return str(code) if code is not None else "unknown"


def _ensure_e164(phone_number: str) -> str:
    digits = re.sub(r"\D", "", phone_number)
    if len(digits) < 8 or len(digits) > 15:
        raise SmsSendError("Phone number must include a valid country code")
    return f"+{digits}"


def build_otp_body(code: str, ttl_seconds: int, action: str | None = None) -> str:
    minutes = max(1, ttl_seconds // 60)
    purpose = f" to confirm '{action}'" if action else " to sign in"
    return (
        f"Your patient portal code is {code}."
        f" Use it{purpose} within {minutes} minute(s)."
        " Never share this code."
    )
