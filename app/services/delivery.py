import logging
from typing import Optional, Protocol
from urllib.parse import urlencode

from app.services.email import GmailSender, build_magic_link_body
from app.services.identifiers import mask_email, mask_phone
from app.services.sms import TwilioSmsSender, build_otp_body

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_magic_link(self, email: str, token: str) -> None:
        ...

    def send_otp(self, phone: str, code: str, action: Optional[str] = None) -> None:
        ...


def build_magic_link(base_url: str, token: str) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'token': token})}"


class LogNotifier:
    """Development notifier: writes the link or code to the log instead of sending it."""

    def __init__(self, magic_link_base_url: str) -> None:
        self._base_url = magic_link_base_url

    def send_magic_link(self, email: str, token: str) -> None:
        LOGGER.info(
            "Magic link for %s: %s", mask_email(email), build_magic_link(self._base_url, token)
        )

    def send_otp(self, phone: str, code: str, action: Optional[str] = None) -> None:
        LOGGER.info("SMS OTP for %s (action=%s): %s", mask_phone(phone), action, code)


class LiveNotifier:
    def __init__(
        self,
        email_sender: GmailSender,
        sms_sender: TwilioSmsSender,
        magic_link_base_url: str,
        email_subject: str,
        magic_link_ttl_seconds: int,
        sms_otp_ttl_seconds: int,
    ) -> None:
        self._email = email_sender
        self._sms = sms_sender
        self._base_url = magic_link_base_url
        self._subject = email_subject
        self._magic_link_ttl = magic_link_ttl_seconds
        self._otp_ttl = sms_otp_ttl_seconds

    def send_magic_link(self, email: str, token: str) -> None:
        link = build_magic_link(self._base_url, token)
        self._email.send(email, self._subject, build_magic_link_body(link, self._magic_link_ttl))
        LOGGER.info("Magic link sent to %s", mask_email(email))

    def send_otp(self, phone: str, code: str, action: Optional[str] = None) -> None:
        self._sms.send(phone, build_otp_body(code, self._otp_ttl, action))
        LOGGER.info("SMS OTP sent to %s", mask_phone(phone))
