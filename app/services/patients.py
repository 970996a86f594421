from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from app.services.identifiers import (
    is_valid_e164_phone,
    mask_email,
    mask_phone,
    normalize_email,
    normalize_phone_to_e164,
)

LOGGER = logging.getLogger(__name__)

_PHONE_SEPARATORS = re.compile(r"[\s\-()]")


class PatientLookupError(RuntimeError):
    pass


@dataclass(frozen=True)
class Address:
    postal_code: Optional[str] = None
    city: Optional[str] = None
    lines: tuple[str, ...] = ()


@dataclass(frozen=True)
class Patient:
    id: str
    birth_date: Optional[str]
    address: Optional[Address] = None
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


class PatientDirectory(Protocol):
    def find_patient_by_email(self, email: str) -> Optional[Patient]:
        ...

    def find_patient_by_phone(self, phone: str) -> Optional[Patient]:
        ...

    def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        ...


def phones_match(stored: str, requested: str, default_country_code: str = "+49") -> bool:
    """Compare phone numbers as E.164; national numbers take the default country code."""
    stored_clean = _PHONE_SEPARATORS.sub("", stored)
    requested_clean = _PHONE_SEPARATORS.sub("", requested)
    if not stored_clean or not requested_clean:
        return False
    stored_e164 = normalize_phone_to_e164(stored_clean, default_country_code)
    requested_e164 = normalize_phone_to_e164(requested_clean, default_country_code)
    return is_valid_e164_phone(stored_e164) and stored_e164 == requested_e164


class InMemoryPatientDirectory:
    def __init__(self, patients: Iterable[Patient] = (), default_country_code: str = "+49") -> None:
        self._patients = {patient.id: patient for patient in patients}
        self._default_country_code = default_country_code

    def add(self, patient: Patient) -> None:
        self._patients[patient.id] = patient

    def find_patient_by_email(self, email: str) -> Optional[Patient]:
        wanted = normalize_email(email)
        for patient in self._patients.values():
            if patient.email and normalize_email(patient.email) == wanted:
                return patient
        return None

    def find_patient_by_phone(self, phone: str) -> Optional[Patient]:
        for patient in self._patients.values():
            if patient.phone and phones_match(patient.phone, phone, self._default_country_code):
                return patient
        return None

    def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        return self._patients.get(patient_id)


class FhirPatientDirectory:
    """Patient lookups against a FHIR R4 server's ``Patient`` resource."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10,
        username: str = "",
        password: str = "",
        default_country_code: str = "+49",
    ) -> None:
        if not base_url:
            raise PatientLookupError("FHIR base URL is not configured")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._username = username
        self._password = password
        self._default_country_code = default_country_code

    def find_patient_by_email(self, email: str) -> Optional[Patient]:
        wanted = normalize_email(email)
        bundle = self._get(f"Patient?telecom=email|{quote(wanted, safe='')}")
        if bundle is None:
            return None
        for resource in _bundle_patients(bundle):
            for telecom in resource.get("telecom") or []:
                value = telecom.get("value") or ""
                if telecom.get("system") == "email" and value.lower() == wanted:
                    return parse_fhir_patient(resource)
        LOGGER.info("No exact email match for %s", mask_email(wanted))
        return None

    def find_patient_by_phone(self, phone: str) -> Optional[Patient]:
        wanted = normalize_phone_to_e164(phone, self._default_country_code)
        bundle = self._get(f"Patient?telecom=phone|{quote(wanted, safe='')}")
        if bundle is None:
            return None
        for resource in _bundle_patients(bundle):
            for telecom in resource.get("telecom") or []:
                value = telecom.get("value") or ""
                if telecom.get("system") == "phone" and phones_match(
                    value, wanted, self._default_country_code
                ):
                    return parse_fhir_patient(resource)
        LOGGER.info("No exact phone match for %s", mask_phone(wanted))
        return None

    def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        resource = self._get(f"Patient/{quote(patient_id, safe='')}")
        if resource is None or resource.get("resourceType") != "Patient":
            return None
        return parse_fhir_patient(resource)

    def _get(self, path: str) -> Optional[dict[str, Any]]:
        headers = {"Accept": "application/fhir+json"}
        if self._username:
            credentials = f"{self._username}:{self._password}".encode("utf-8")
            headers["Authorization"] = (
                f"Basic {base64.b64encode(credentials).decode('ascii')}"
            )
        request = Request(f"{self._base_url}/{path}", headers=headers, method="GET")
        try:
            with urlopen(request, timeout=self._timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            if exc.code == 404:
                return None
            LOGGER.error("FHIR server returned HTTP %s for patient lookup", exc.code)
            raise PatientLookupError("Patient lookup failed") from exc
        except (URLError, TimeoutError) as exc:
            raise PatientLookupError("Failed to reach FHIR server") from exc
        except ValueError as exc:
            raise PatientLookupError("FHIR server returned invalid JSON") from exc


def _bundle_patients(bundle: dict[str, Any]) -> list[dict[str, Any]]:
    resources = [entry.get("resource") or {} for entry in bundle.get("entry") or []]
    return [resource for resource in resources if resource.get("resourceType") == "Patient"]


def _display_name(names: list[dict[str, Any]]) -> str:
    if not names:
        return ""
    official = next((name for name in names if name.get("use") == "official"), names[0])
    if official.get("text"):
        return official["text"]
    parts = list(official.get("given") or [])
    if official.get("family"):
        parts.append(official["family"])
    return " ".join(parts)


def parse_fhir_patient(resource: dict[str, Any]) -> Patient:
    addresses = resource.get("address") or []
    address = None
    if addresses:
        home = next((item for item in addresses if item.get("use") == "home"), addresses[0])
        address = Address(
            postal_code=home.get("postalCode"),
            city=home.get("city"),
            lines=tuple(home.get("line") or ()),
        )
    email = None
    phone = None
    for telecom in resource.get("telecom") or []:
        if telecom.get("system") == "email" and email is None:
            email = telecom.get("value")
        elif telecom.get("system") == "phone" and phone is None:
            phone = telecom.get("value")
    return Patient(
        id=str(resource.get("id", "")),
        birth_date=resource.get("birthDate"),
        address=address,
        name=_display_name(resource.get("name") or []),
        email=email,
        phone=phone,
    )
