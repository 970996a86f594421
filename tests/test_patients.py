import io
import json
from unittest.mock import patch
from urllib.error import HTTPError, URLError

import pytest

from app.services.patients import (
    FhirPatientDirectory,
    PatientLookupError,
    parse_fhir_patient,
    phones_match,
)

FHIR_PATIENT = {
    "resourceType": "Patient",
    "id": "pt-1",
    "birthDate": "1985-03-14",
    "name": [{"use": "official", "given": ["Anna"], "family": "Schmidt"}],
    "telecom": [
        {"system": "email", "value": "Anna@Example.de"},
        {"system": "phone", "value": "+49 171 9876543"},
    ],
    "address": [
        {"use": "home", "line": ["Invalidenstraße 42"], "city": "Berlin", "postalCode": "10115"}
    ],
}


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _respond(body):
    return _FakeResponse(json.dumps(body).encode("utf-8"))


class TestPhonesMatch:
    def test_identical(self):
        assert phones_match("+491719876543", "+49 171 9876543")

    def test_national_and_international(self):
        assert phones_match("01719876543", "+491719876543")

    def test_different_numbers(self):
        assert not phones_match("+491719876543", "+491719876544")

    def test_short_number_is_not_a_suffix_match(self):
        assert not phones_match("+491719876543", "+4913")
        assert not phones_match("+491719876543", "9876543")

    def test_other_default_country(self):
        assert phones_match("+431719876543", "01719876543", "+43")
        assert not phones_match("+491719876543", "01719876543", "+43")


class TestParseFhirPatient:
    def test_extracts_fields(self):
        patient = parse_fhir_patient(FHIR_PATIENT)
        assert patient.id == "pt-1"
        assert patient.birth_date == "1985-03-14"
        assert patient.name == "Anna Schmidt"
        assert patient.address.postal_code == "10115"
        assert patient.address.lines == ("Invalidenstraße 42",)
        assert patient.phone == "+49 171 9876543"

    def test_missing_address(self):
        patient = parse_fhir_patient({"resourceType": "Patient", "id": "x"})
        assert patient.address is None
        assert patient.name == ""


class TestInMemoryPatientDirectory:
    def test_email_lookup_is_case_insensitive(self, patients):
        assert patients.find_patient_by_email("ANNA@example.de").id == "patient-anna"

    def test_phone_lookup(self, patients):
        assert patients.find_patient_by_phone("+49 171 9876543").id == "patient-anna"

    def test_short_number_finds_nobody(self, patients):
        assert patients.find_patient_by_phone("+4913") is None

    def test_unknown(self, patients):
        assert patients.find_patient_by_email("nobody@example.de") is None
        assert patients.get_patient_by_id("missing") is None


class TestFhirPatientDirectory:
    def test_requires_base_url(self):
        with pytest.raises(PatientLookupError):
            FhirPatientDirectory("")

    def test_email_search_matches_exactly(self):
        bundle = {"resourceType": "Bundle", "entry": [{"resource": FHIR_PATIENT}]}
        directory = FhirPatientDirectory("http://fhir.test/fhir", username="u", password="p")
        with patch("app.services.patients.urlopen", return_value=_respond(bundle)) as mocked:
            patient = directory.find_patient_by_email("anna@example.de")
        assert patient.id == "pt-1"
        request = mocked.call_args.args[0]
        assert request.full_url.startswith("http://fhir.test/fhir/Patient?telecom=email|")
        assert request.get_header("Authorization").startswith("Basic ")
        assert mocked.call_args.kwargs["timeout"] == 10

    def test_email_search_without_exact_match(self):
        bundle = {"resourceType": "Bundle", "entry": [{"resource": FHIR_PATIENT}]}
        directory = FhirPatientDirectory("http://fhir.test/fhir")
        with patch("app.services.patients.urlopen", return_value=_respond(bundle)):
            assert directory.find_patient_by_email("other@example.de") is None

    def test_phone_search(self):
        bundle = {"resourceType": "Bundle", "entry": [{"resource": FHIR_PATIENT}]}
        directory = FhirPatientDirectory("http://fhir.test/fhir")
        with patch("app.services.patients.urlopen", return_value=_respond(bundle)):
            assert directory.find_patient_by_phone("+491719876543").id == "pt-1"

    def test_not_found_returns_none(self):
        error = HTTPError("http://fhir.test", 404, "Not Found", {}, io.BytesIO(b""))
        directory = FhirPatientDirectory("http://fhir.test/fhir")
        with patch("app.services.patients.urlopen", side_effect=error):
            assert directory.get_patient_by_id("missing") is None

    def test_server_error_raises(self):
        error = HTTPError("http://fhir.test", 500, "Boom", {}, io.BytesIO(b""))
        directory = FhirPatientDirectory("http://fhir.test/fhir")
        with patch("app.services.patients.urlopen", side_effect=error):
            with pytest.raises(PatientLookupError):
                directory.get_patient_by_id("pt-1")

    def test_unreachable_raises(self):
        directory = FhirPatientDirectory("http://fhir.test/fhir")
        with patch("app.services.patients.urlopen", side_effect=URLError("timed out")):
            with pytest.raises(PatientLookupError):
                directory.find_patient_by_email("anna@example.de")
