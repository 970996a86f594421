import re

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_valid_e164_phone(phone: str) -> bool:
    return bool(E164_PATTERN.match(_PHONE_SEPARATORS.sub("", phone)))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone_to_e164(phone: str, default_country_code: str = "+49") -> str:
    cleaned = _PHONE_SEPARATORS.sub("", phone)
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("0"):
        country_digits = re.sub(r"\D", "", default_country_code)
        return f"+{country_digits}{cleaned[1:]}"
    return f"+{cleaned}"


def mask_email(email: str) -> str:
    local_part, _, domain = email.strip().partition("@")
    if not local_part or not domain:
        return "***@***.***"
    return f"{local_part[0]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 6:
        return "****" + digits[-3:]
    return f"+{digits[:2]} ****{digits[-3:]}"


def mask_identifier(identifier: str) -> str:
    if "@" in identifier:
        return mask_email(identifier)
    return mask_phone(identifier)
