import pytest

from app.services.identifiers import (
    is_valid_e164_phone,
    is_valid_email,
    mask_email,
    mask_identifier,
    mask_phone,
    normalize_phone_to_e164,
)


class TestValidation:
    @pytest.mark.parametrize("email", ["anna@example.de", "a.b+c@sub.example.com"])
    def test_valid_emails(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["anna", "anna@", "anna@example", "an na@example.de"])
    def test_invalid_emails(self, email):
        assert not is_valid_email(email)

    @pytest.mark.parametrize("phone", ["+491719876543", "+49 171 9876543", "+1 (555) 123-4567"])
    def test_valid_phones(self, phone):
        assert is_valid_e164_phone(phone)

    @pytest.mark.parametrize("phone", ["01719876543", "+0123", "+49abc", ""])
    def test_invalid_phones(self, phone):
        assert not is_valid_e164_phone(phone)


class TestNormalizePhone:
    def test_keeps_e164(self):
        assert normalize_phone_to_e164("+49 171 987-6543") == "+491719876543"

    def test_national_number_uses_default_country(self):
        assert normalize_phone_to_e164("0171 9876543") == "+491719876543"
        assert normalize_phone_to_e164("0171 9876543", "+43") == "+431719876543"


class TestMasking:
    def test_mask_email(self):
        assert mask_email("max@example.com") == "m***@example.com"

    def test_mask_malformed_email(self):
        assert mask_email("nope") == "***@***.***"

    def test_mask_phone(self):
        assert mask_phone("+49 171 9876543") == "+49 ****543"

    def test_mask_short_phone(self):
        assert mask_phone("12345") == "****345"

    def test_mask_identifier_dispatches(self):
        assert mask_identifier("anna@example.de") == "a***@example.de"
        assert mask_identifier("+491719876543") == "+49 ****543"
