from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from app.errors import DeliveryError
from app.services.identifiers import mask_email

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"


class EmailSendError(DeliveryError):
    pass


class GmailSender:
    """Sends mail through the Gmail API using a stored OAuth token file.

    The token file holds ``token``, ``expiry``, ``refresh_token``,
    ``client_id`` and ``client_secret``; a refreshed access token is written
    back to it.
    """

    def __init__(self, sender: str, token_file: str, timeout_seconds: float = 10) -> None:
        self._sender = sender
        self._token_path = Path(token_file) if token_file else None
        self._timeout = timeout_seconds

    def send(self, to_email: str, subject: str, body: str) -> None:
        if not self._sender or self._token_path is None:
            raise EmailSendError("Email sender is not configured")

        raw_message = build_raw_message(self._sender, to_email, subject, body)
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token()}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                response.read()
        except HTTPError as exc:
            LOGGER.error(
                "Gmail API error to=%s status=%s", mask_email(to_email), exc.code
            )
            raise EmailSendError("Failed to send email") from exc
        except (URLError, TimeoutError) as exc:
            raise EmailSendError("Failed to reach Gmail API") from exc

    def _access_token(self) -> str:
        token_data = self._load_token_file()
        token = token_data.get("token")
        expiry = _parse_expiry(token_data.get("expiry"))
        if token and expiry and expiry > datetime.now(timezone.utc) + timedelta(minutes=1):
            return token

        required = ("refresh_token", "client_id", "client_secret")
        if not all(token_data.get(key) for key in required):
            raise EmailSendError("Gmail token file is missing refresh credentials")

        payload = urlencode(
            {
                "client_id": token_data["client_id"],
                "client_secret": token_data["client_secret"],
                "refresh_token": token_data["refresh_token"],
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        token_uri = token_data.get("token_uri") or GOOGLE_TOKEN_ENDPOINT
        try:
            with urlopen(Request(token_uri, data=payload, method="POST"), timeout=self._timeout) as response:
                refreshed = json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            LOGGER.error("Gmail token refresh failed status=%s", exc.code)
            raise EmailSendError("Failed to refresh Gmail token") from exc
        except (URLError, TimeoutError) as exc:
            raise EmailSendError("Failed to reach Gmail token endpoint") from exc

        access_token = refreshed.get("access_token")
        if not access_token:
            raise EmailSendError("Gmail token refresh did not return an access token")
        expires_in = int(refreshed.get("expires_in", 3600))
        token_data["token"] = access_token
        token_data["expiry"] = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        ).isoformat()
        self._token_path.write_text(json.dumps(token_data), encoding="utf-8")
        return access_token

    def _load_token_file(self) -> dict[str, Any]:
        if not self._token_path.exists():
            raise EmailSendError(f"Missing Gmail token file: {self._token_path}")
        with self._token_path.open("r", encoding="utf-8") as handle:
            return json.load(handle)


def build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    lines = [
        f"From: {sender}",
        f"To: {recipient}",
        f"Subject: {subject}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "",
        body,
    ]
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode("\r\n".join(lines).encode("utf-8")).decode("ascii")


def build_magic_link_body(link: str, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return (
        "Use the link below to sign in to your patient portal.\n\n"
        f"{link}\n\n"
        f"The link expires in {minutes} minute(s) and can be used once.\n"
        "If you did not request it, you can ignore this email."
    )


def _parse_expiry(raw_value: Optional[str]) -> Optional[datetime]:
    if not raw_value:
        return None
    try:
        return datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None
