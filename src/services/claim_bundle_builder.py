"""
Claim Bundle Builder.

Maps a stored ClaimSubmission (with items, diagnoses, patient, provider and
insurer) onto the NPHIES claim-request message Bundle, and builds the
status-check, cancel and poll messages that refer back to it.

Fields are mapped one to one: every stored item, diagnosis and supporting
info entry appears in the bundle, in stored sequence order. Required fields
are checked before anything is built so an incomplete claim never reaches the
transport.

Source: https://portal.nphies.sa/ig/Claim-483070.html
Verified: 2025-12-18
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from src.api.config import settings
from src.services.nphies_fhir import (
    NPHIES_CS,
    NPHIES_LICENSE_SYSTEM,
    NPHIES_SD,
    PAYER_LICENSE_SYSTEM,
    PROVIDER_LICENSE_SYSTEM,
    MessageEvent,
    claim_identifier_system,
    fhir_date,
    fhir_datetime,
    message_bundle,
    message_header_entry,
    money,
    new_id,
    provider_domain,
)

if TYPE_CHECKING:
    from src.models.claim_submission import ClaimSubmission
    from src.models.patient import Patient
    from src.models.provider import Insurer, Provider

logger = logging.getLogger(__name__)


# =============================================================================
# Code tables
# =============================================================================

CLAIM_PROFILES = {
    "institutional": f"{NPHIES_SD}/institutional-claim|1.0.0",
    "professional": f"{NPHIES_SD}/professional-claim|1.0.0",
    "pharmacy": f"{NPHIES_SD}/pharmacy-claim|1.0.0",
    "dental": f"{NPHIES_SD}/oral-claim|1.0.0",
    "vision": f"{NPHIES_SD}/vision-claim|1.0.0",
}

CLAIM_TYPE_CODES = {
    "institutional": "institutional",
    "professional": "professional",
    "pharmacy": "pharmacy",
    "dental": "oral",
    "vision": "vision",
}

ENCOUNTER_CLASS_CODES = {
    "ambulatory": ("AMB", "ambulatory"),
    "outpatient": ("AMB", "ambulatory"),
    "emergency": ("EMER", "emergency"),
    "home": ("HH", "home health"),
    "inpatient": ("IMP", "inpatient encounter"),
    "daycase": ("SS", "short stay"),
    "telemedicine": ("VR", "virtual"),
}

CLAIM_SUBTYPES = {
    "inpatient": "ip",
    "daycase": "ip",
    "emergency": "emr",
    "outpatient": "op",
    "ambulatory": "op",
    "home": "op",
    "telemedicine": "op",
}

PATIENT_IDENTIFIER_TYPES = {
    "national_id": ("NI", "http://nphies.sa/identifier/nationalid"),
    "iqama": ("PRC", "http://nphies.sa/identifier/iqama"),
    "passport": ("PPN", "http://nphies.sa/identifier/passportnumber"),
    "mrn": ("MR", "http://provider.com/identifier/mrn"),
}

# Categories are lowercase locally; NPHIES capitalizes one of them
SUPPORTING_INFO_CATEGORIES = {
    "estimated-length-of-stay": "estimated-Length-of-Stay",
}

SUPPORTING_INFO_CODE_SYSTEMS = {
    "chief-complaint": "http://snomed.info/sct",
    "investigation-result": f"{NPHIES_CS}/investigation-result",
    "onset": "http://hl7.org/fhir/sid/icd-10-am",
}

UCUM_UNITS = {
    "mmHg": "mm[Hg]",
    "bpm": "/min",
    "celsius": "Cel",
    "day": "d",
}

# task-reason-code values; free-text reasons are matched by keyword
CANCEL_REASONS = {
    "wi": ("WI", "wrong information"),
    "np": ("NP", "service not performed"),
    "tas": ("TAS", "transaction already submitted"),
    "su": ("SU", "Product/Service is unavailable"),
    "resubmission": ("resubmission", "Claim Re-submission."),
}
CANCEL_REASON_KEYWORDS = (
    (("wrong", "incorrect", "error"), "wi"),
    (("not performed", "not done", "cancelled"), "np"),
    (("already", "duplicate", "submitted"), "tas"),
    (("unavailable", "not available"), "su"),
    (("resubmit", "re-submit"), "resubmission"),
)

ICD10_AM = "http://hl7.org/fhir/sid/icd-10-am"
DEFAULT_PROCEDURE_SYSTEM = f"{NPHIES_CS}/procedures"
DEFAULT_PRACTICE_CODE = "08.00"
POLL_MESSAGE_TYPES = (
    MessageEvent.CLAIM_RESPONSE,
    MessageEvent.COMMUNICATION_REQUEST,
    MessageEvent.COMMUNICATION,
)


class BundleValidationError(ValueError):
    """Raised when a claim lacks fields the claim-request message requires."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Claim is missing required fields: {', '.join(missing)}")
        self.missing = missing


def _normalize_diagnosis_system(system: Optional[str]) -> str:
    # NPHIES only accepts the Australian modification of ICD-10
    if not system or system.lower() in ("icd-10", "http://hl7.org/fhir/sid/icd-10"):
        return ICD10_AM
    return system


def _dec(value: Any, default: str) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(default)


def item_net(item: Any) -> Decimal:
    """quantity * unit_price * factor + tax, rounded to cents."""
    quantity = _dec(item.quantity, "1")
    unit_price = _dec(item.unit_price, "0")
    factor = _dec(item.factor, "1")
    tax = _dec(item.tax, "0")
    return (quantity * unit_price * factor + tax).quantize(Decimal("0.01"))


def cancel_reason_code(reason: Optional[str]) -> tuple[str, str]:
    """
    Map a cancellation reason onto a task-reason-code (code, display).

    Accepts the code itself or free text; defaults to "service not performed".
    """
    text = (reason or "").strip().lower()
    if text in CANCEL_REASONS:
        return CANCEL_REASONS[text]
    for keywords, key in CANCEL_REASON_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return CANCEL_REASONS[key]
    return CANCEL_REASONS["np"]


class ClaimBundleBuilder:
    """
    Builds claim-request, status-check, cancel and poll messages for a claim.

    Example:
        >>> builder = ClaimBundleBuilder()
        >>> builder.validate(claim)
        >>> bundle = builder.build_claim_bundle(claim)
    """

    def __init__(
        self,
        provider_endpoint: Optional[str] = None,
        default_provider_id: Optional[str] = None,
        default_insurer_id: Optional[str] = None,
        poll_count: Optional[int] = None,
    ):
        self.provider_endpoint = provider_endpoint or settings.NPHIES_PROVIDER_ENDPOINT
        self.default_provider_id = default_provider_id or settings.NPHIES_PROVIDER_ID
        self.default_insurer_id = default_insurer_id or settings.NPHIES_INSURER_ID
        self.poll_count = poll_count or settings.NPHIES_POLL_COUNT

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def missing_fields(claim: "ClaimSubmission") -> list[str]:
        """Names of required fields that are absent; empty when sendable."""
        missing = []
        if not claim.claim_number:
            missing.append("claim_number")
        if not claim.claim_type:
            missing.append("claim_type")

        if claim.patient is None:
            missing.append("patient")
        else:
            if not claim.patient.identifier:
                missing.append("patient.identifier")
            if not claim.patient.name:
                missing.append("patient.name")
        if claim.provider is None:
            missing.append("provider")
        if claim.insurer is None:
            missing.append("insurer")

        if not claim.diagnoses:
            missing.append("diagnoses")
        for index, diagnosis in enumerate(claim.diagnoses or [], start=1):
            if not diagnosis.diagnosis_code:
                missing.append(f"diagnoses[{index}].diagnosis_code")

        if not claim.items:
            missing.append("items")
        for index, item in enumerate(claim.items or [], start=1):
            if not item.product_or_service_code:
                missing.append(f"items[{index}].product_or_service_code")

        return missing

    def validate(self, claim: "ClaimSubmission") -> None:
        """
        Raises:
            BundleValidationError: listing every missing required field
        """
        missing = self.missing_fields(claim)
        if missing:
            raise BundleValidationError(missing)

    # =========================================================================
    # Claim request
    # =========================================================================

    def build_claim_bundle(self, claim: "ClaimSubmission") -> dict[str, Any]:
        """
        Build the claim-request message for a validated claim.

        Entry order: MessageHeader, Claim, Encounter, Coverage, Practitioner,
        provider Organization, insurer Organization, Patient.

        Raises:
            BundleValidationError: if required fields are missing
        """
        self.validate(claim)

        ids = {
            "claim": new_id(),
            "patient": str(claim.patient.id),
            "provider": str(claim.provider.id),
            "insurer": str(claim.insurer.id),
            "coverage": new_id(),
            "encounter": new_id(),
            "practitioner": new_id(),
        }

        claim_entry = self._claim_entry(claim, ids)
        header = message_header_entry(
            MessageEvent.CLAIM_REQUEST,
            sender_id=self._provider_license(claim.provider),
            source_endpoint=self.provider_endpoint,
            receiver_id=self._insurer_license(claim.insurer),
            focus_url=claim_entry["fullUrl"],
        )

        entries = [
            header,
            claim_entry,
            self._encounter_entry(claim, ids),
            self._coverage_entry(claim, ids),
            self._practitioner_entry(claim, ids),
            self._provider_entry(claim.provider, ids["provider"]),
            self._insurer_entry(claim.insurer, ids["insurer"]),
            self._patient_entry(claim.patient, ids["patient"]),
        ]
        logger.debug(
            f"Built claim bundle for {claim.claim_number}: "
            f"{len(claim.items)} items, {len(claim.diagnoses)} diagnoses"
        )
        return message_bundle(entries)

    def _claim_entry(self, claim: "ClaimSubmission", ids: dict[str, str]) -> dict[str, Any]:
        provider_name = claim.provider.provider_name
        currency = claim.currency or "SAR"
        encounter_class = claim.encounter_class or "ambulatory"
        diagnosis_sequences = [d.sequence for d in claim.diagnoses]
        information_sequences = [info.sequence for info in claim.supporting_info]

        items = [
            self._claim_item(item, currency, diagnosis_sequences, claim, information_sequences)
            for item in claim.items
        ]
        if claim.items:
            total = sum((item_net(item) for item in claim.items), Decimal("0"))
        else:
            total = claim.total_amount or Decimal("0")

        service_date = claim.service_date or (claim.request_date or datetime.now()).date()
        episode_system = f"http://{provider_domain(provider_name)}/identifiers/episode"

        insurance: dict[str, Any] = {
            "sequence": 1,
            "focal": True,
            "coverage": {"reference": f"Coverage/{ids['coverage']}"},
        }
        if claim.pre_auth_ref:
            insurance["preAuthRef"] = [claim.pre_auth_ref]

        supporting_info = [self._supporting_info(info) for info in claim.supporting_info]

        resource = {
            "resourceType": "Claim",
            "id": ids["claim"],
            "meta": {
                "profile": [CLAIM_PROFILES.get(claim.claim_type, CLAIM_PROFILES["professional"])]
            },
            "extension": [
                {
                    "url": f"{NPHIES_SD}/extension-encounter",
                    "valueReference": {"reference": f"Encounter/{ids['encounter']}"},
                },
                {
                    "url": f"{NPHIES_SD}/extension-episode",
                    "valueIdentifier": {
                        "system": episode_system,
                        "value": f"EpisodeID_{claim.claim_number}",
                    },
                },
                {
                    # Accounting period is always the first day of the service month
                    "url": f"{NPHIES_SD}/extension-accountingPeriod",
                    "valueDate": service_date.replace(day=1).isoformat(),
                },
            ],
            "identifier": [
                {
                    "system": claim_identifier_system(provider_name),
                    "value": claim.claim_number,
                }
            ],
            "status": "active",
            "type": {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/claim-type",
                        "code": CLAIM_TYPE_CODES.get(claim.claim_type, "professional"),
                    }
                ]
            },
            "subType": {
                "coding": [
                    {
                        "system": f"{NPHIES_CS}/claim-subtype",
                        "code": claim.sub_type or CLAIM_SUBTYPES.get(encounter_class, "op"),
                    }
                ]
            },
            "use": "claim",
            "patient": {"reference": f"Patient/{ids['patient']}"},
            "created": fhir_datetime(claim.request_date),
            "insurer": {"reference": f"Organization/{ids['insurer']}"},
            "provider": {"reference": f"Organization/{ids['provider']}"},
            "priority": {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/processpriority",
                        "code": claim.priority or "normal",
                    }
                ]
            },
            "payee": {
                "type": {
                    "coding": [
                        {
                            "system": "http://terminology.hl7.org/CodeSystem/payeetype",
                            "code": "provider",
                        }
                    ]
                }
            },
            "careTeam": [
                {
                    "sequence": 1,
                    "provider": {"reference": f"Practitioner/{ids['practitioner']}"},
                    "role": {
                        "coding": [
                            {
                                "system": "http://terminology.hl7.org/CodeSystem/claimcareteamrole",
                                "code": "primary",
                            }
                        ]
                    },
                    "qualification": {
                        "coding": [
                            {
                                "system": f"{NPHIES_CS}/practice-codes",
                                "code": claim.practice_code or DEFAULT_PRACTICE_CODE,
                            }
                        ]
                    },
                }
            ],
            "diagnosis": [self._diagnosis(d) for d in claim.diagnoses],
            "insurance": [insurance],
            "item": items,
            "total": {"value": money(total), "currency": currency},
        }
        if supporting_info:
            resource["supportingInfo"] = supporting_info

        return {
            "fullUrl": f"{self.provider_endpoint}/Claim/{ids['claim']}",
            "resource": resource,
        }

    @staticmethod
    def _diagnosis(diagnosis: Any) -> dict[str, Any]:
        coding = {
            "system": _normalize_diagnosis_system(diagnosis.diagnosis_system),
            "code": diagnosis.diagnosis_code,
        }
        if diagnosis.diagnosis_display:
            coding["display"] = diagnosis.diagnosis_display
        return {
            "sequence": diagnosis.sequence,
            "diagnosisCodeableConcept": {"coding": [coding]},
            "type": [
                {
                    "coding": [
                        {
                            "system": f"{NPHIES_CS}/diagnosis-type",
                            "code": diagnosis.diagnosis_type or "principal",
                        }
                    ]
                }
            ],
        }

    @staticmethod
    def _supporting_info(info: Any) -> dict[str, Any]:
        category = (info.category or "").lower()
        built: dict[str, Any] = {
            "sequence": info.sequence,
            "category": {
                "coding": [
                    {
                        "system": f"{NPHIES_CS}/claim-information-category",
                        "code": SUPPORTING_INFO_CATEGORIES.get(category, info.category),
                    }
                ]
            },
        }

        if info.code_text:
            built["code"] = {"text": info.code_text}
        elif info.code:
            coding = {
                "system": info.code_system
                or SUPPORTING_INFO_CODE_SYSTEMS.get(category, f"{NPHIES_CS}/supporting-info-code"),
                "code": info.code,
            }
            if info.code_display:
                coding["display"] = info.code_display
            built["code"] = {"coding": [coding]}

        if info.timing_period_start:
            built["timingPeriod"] = {
                "start": fhir_datetime(info.timing_period_start),
                "end": fhir_datetime(info.timing_period_end or info.timing_period_start),
            }
        elif info.timing_date:
            built["timingDate"] = fhir_date(info.timing_date)

        if info.value_string is not None:
            built["valueString"] = info.value_string
        elif info.value_quantity is not None:
            unit = info.value_quantity_unit or ""
            built["valueQuantity"] = {
                "value": float(info.value_quantity),
                "system": "http://unitsofmeasure.org",
                "code": UCUM_UNITS.get(unit, unit),
            }
        elif info.value_boolean is not None:
            built["valueBoolean"] = info.value_boolean
        return built

    @staticmethod
    def _claim_item(
        item: Any,
        currency: str,
        diagnosis_sequences: list[int],
        claim: "ClaimSubmission",
        information_sequences: Optional[list[int]] = None,
    ) -> dict[str, Any]:
        coding = {
            "system": item.product_or_service_system or DEFAULT_PROCEDURE_SYSTEM,
            "code": item.product_or_service_code,
        }
        if item.product_or_service_display:
            coding["display"] = item.product_or_service_display

        serviced = item.serviced_date or claim.service_date
        built: dict[str, Any] = {
            "extension": [
                {"url": f"{NPHIES_SD}/extension-package", "valueBoolean": False},
                {
                    "url": f"{NPHIES_SD}/extension-tax",
                    "valueMoney": {"value": money(item.tax), "currency": currency},
                },
                {
                    "url": f"{NPHIES_SD}/extension-patient-share",
                    "valueMoney": {"value": money(item.patient_share), "currency": currency},
                },
            ],
            "sequence": item.sequence,
            "careTeamSequence": [1],
            "diagnosisSequence": list(item.diagnosis_sequences or diagnosis_sequences[:1]),
            "productOrService": {"coding": [coding]},
            "quantity": {"value": float(_dec(item.quantity, "1"))},
            "unitPrice": {"value": money(item.unit_price), "currency": currency},
            "net": {"value": money(item_net(item)), "currency": currency},
        }
        # Items without their own list point at every supporting info entry
        linked_info = item.information_sequences or information_sequences
        if linked_info:
            built["informationSequence"] = list(linked_info)
        if serviced is not None:
            built["servicedDate"] = fhir_date(serviced)
        return built

    def _encounter_entry(self, claim: "ClaimSubmission", ids: dict[str, str]) -> dict[str, Any]:
        code, display = ENCOUNTER_CLASS_CODES.get(
            claim.encounter_class or "ambulatory", ENCOUNTER_CLASS_CODES["ambulatory"]
        )
        resource: dict[str, Any] = {
            "resourceType": "Encounter",
            "id": ids["encounter"],
            "meta": {"profile": [f"{NPHIES_SD}/encounter|1.0.0"]},
            "identifier": [
                {
                    "system": f"http://{provider_domain(claim.provider.provider_name)}/identifiers/encounter",
                    "value": f"Enc-{claim.claim_number}",
                }
            ],
            "status": "finished",
            "class": {
                "system": "http://terminology.hl7.org/CodeSystem/v3-ActCode",
                "code": code,
                "display": display,
            },
            "subject": {"reference": f"Patient/{ids['patient']}"},
            "serviceProvider": {"reference": f"Organization/{ids['provider']}"},
        }
        if claim.service_date:
            resource["period"] = {"start": fhir_date(claim.service_date)}
        return {
            "fullUrl": f"{self.provider_endpoint}/Encounter/{ids['encounter']}",
            "resource": resource,
        }

    def _coverage_entry(self, claim: "ClaimSubmission", ids: dict[str, str]) -> dict[str, Any]:
        member_id = claim.member_id or claim.patient.identifier
        return {
            "fullUrl": f"{self.provider_endpoint}/Coverage/{ids['coverage']}",
            "resource": {
                "resourceType": "Coverage",
                "id": ids["coverage"],
                "meta": {"profile": [f"{NPHIES_SD}/coverage|1.0.0"]},
                "identifier": [{"system": "http://payer.com/memberid", "value": member_id}],
                "status": "active",
                "type": {
                    "coding": [
                        {
                            "system": f"{NPHIES_CS}/coverage-type",
                            "code": "EHCPOL",
                            "display": "extended healthcare",
                        }
                    ]
                },
                "policyHolder": {"reference": f"Patient/{ids['patient']}"},
                "subscriber": {"reference": f"Patient/{ids['patient']}"},
                "beneficiary": {"reference": f"Patient/{ids['patient']}"},
                "relationship": {
                    "coding": [
                        {
                            "system": "http://terminology.hl7.org/CodeSystem/subscriber-relationship",
                            "code": "self",
                        }
                    ]
                },
                "payor": [{"reference": f"Organization/{ids['insurer']}"}],
            },
        }

    def _practitioner_entry(
        self, claim: "ClaimSubmission", ids: dict[str, str]
    ) -> dict[str, Any]:
        practitioner_id = ids["practitioner"]
        return {
            "fullUrl": f"{self.provider_endpoint}/Practitioner/{practitioner_id}",
            "resource": {
                "resourceType": "Practitioner",
                "id": practitioner_id,
                "meta": {"profile": [f"{NPHIES_SD}/practitioner|1.0.0"]},
                "identifier": [
                    {
                        "type": {
                            "coding": [
                                {"system": "http://terminology.hl7.org/CodeSystem/v2-0203", "code": "MD"}
                            ]
                        },
                        "system": "http://nphies.sa/license/practitioner-license",
                        "value": f"PRACT-{practitioner_id[:8]}",
                    }
                ],
                "active": True,
                "qualification": [
                    {
                        "code": {
                            "coding": [
                                {
                                    "system": f"{NPHIES_CS}/practice-codes",
                                    "code": claim.practice_code or DEFAULT_PRACTICE_CODE,
                                }
                            ]
                        }
                    }
                ],
            },
        }

    def _provider_entry(self, provider: "Provider", provider_id: str) -> dict[str, Any]:
        resource: dict[str, Any] = {
            "resourceType": "Organization",
            "id": provider_id,
            "meta": {"profile": [f"{NPHIES_SD}/provider-organization|1.0.0"]},
            "identifier": [
                {"system": PROVIDER_LICENSE_SYSTEM, "value": self._provider_license(provider)}
            ],
            "active": True,
            "name": provider.provider_name,
        }
        if provider.provider_type:
            resource["type"] = [
                {
                    "coding": [
                        {
                            "system": f"{NPHIES_CS}/organization-type",
                            "code": provider.provider_type,
                        }
                    ]
                }
            ]
        return {
            "fullUrl": f"{self.provider_endpoint}/Organization/{provider_id}",
            "resource": resource,
        }

    def _insurer_entry(self, insurer: "Insurer", insurer_id: str) -> dict[str, Any]:
        return {
            "fullUrl": f"{self.provider_endpoint}/Organization/{insurer_id}",
            "resource": {
                "resourceType": "Organization",
                "id": insurer_id,
                "meta": {"profile": [f"{NPHIES_SD}/insurer-organization|1.0.0"]},
                "identifier": [
                    {"system": PAYER_LICENSE_SYSTEM, "value": self._insurer_license(insurer)}
                ],
                "active": True,
                "type": [
                    {
                        "coding": [
                            {
                                "system": "http://hl7.org/fhir/organization-type",
                                "code": "ins",
                            }
                        ]
                    }
                ],
                "name": insurer.insurer_name,
            },
        }

    def _patient_entry(self, patient: "Patient", patient_id: str) -> dict[str, Any]:
        type_code, system = PATIENT_IDENTIFIER_TYPES.get(
            patient.identifier_type or "national_id", PATIENT_IDENTIFIER_TYPES["national_id"]
        )
        resource: dict[str, Any] = {
            "resourceType": "Patient",
            "id": patient_id,
            "meta": {"profile": [f"{NPHIES_SD}/patient|1.0.0"]},
            "extension": [
                {
                    "url": f"{NPHIES_SD}/extension-occupation",
                    "valueCodeableConcept": {
                        "coding": [
                            {
                                "system": f"{NPHIES_CS}/occupation",
                                "code": patient.occupation or "business",
                            }
                        ]
                    },
                }
            ],
            "identifier": [
                {
                    "type": {
                        "coding": [
                            {
                                "system": "http://terminology.hl7.org/CodeSystem/v2-0203",
                                "code": type_code,
                            }
                        ]
                    },
                    "system": system,
                    "value": patient.identifier,
                }
            ],
            "active": True,
            "name": [{"use": "official", "text": patient.name}],
            "gender": (patient.gender or "unknown").lower(),
        }
        if patient.birth_date:
            resource["birthDate"] = fhir_date(patient.birth_date)
        if patient.phone:
            resource["telecom"] = [{"system": "phone", "value": patient.phone}]
        return {
            "fullUrl": f"{self.provider_endpoint}/Patient/{patient_id}",
            "resource": resource,
        }

    # =========================================================================
    # Status check, cancel and poll
    # =========================================================================

    def build_status_check_bundle(self, claim: "ClaimSubmission") -> dict[str, Any]:
        """
        Task-based status-check message asking NPHIES where a sent claim is.

        The Task focuses on the claim by its business identifier.
        """
        provider = claim.provider
        provider_name = provider.provider_name if provider else None
        task_id = new_id()
        task_url = f"{self.provider_endpoint}/Task/{task_id}"
        now = fhir_datetime()

        task: dict[str, Any] = {
            "resourceType": "Task",
            "id": task_id,
            "meta": {"profile": [f"{NPHIES_SD}/status-check|1.0.0"]},
            "identifier": [
                {
                    "system": f"http://{provider_domain(provider_name)}/identifiers/statuscheck",
                    "value": f"StatReq_{task_id[:8]}",
                }
            ],
            "status": "requested",
            "intent": "order",
            "priority": "routine",
            "code": {
                "coding": [{"system": f"{NPHIES_CS}/task-code", "code": "status"}]
            },
            "focus": {
                "type": "Claim",
                "identifier": {
                    "system": claim_identifier_system(provider_name),
                    "value": claim.nphies_identifier,
                },
            },
            "authoredOn": now,
            "lastModified": now,
            "requester": {
                "type": "Organization",
                "identifier": {
                    "system": PROVIDER_LICENSE_SYSTEM,
                    "value": self._provider_license(provider),
                },
            },
            "owner": {
                "type": "Organization",
                "identifier": {
                    "system": PAYER_LICENSE_SYSTEM,
                    "value": self._insurer_license(claim.insurer),
                },
            },
        }

        header = message_header_entry(
            MessageEvent.STATUS_CHECK,
            sender_id=self._provider_license(provider),
            source_endpoint=self.provider_endpoint,
            receiver_id=self._insurer_license(claim.insurer),
            focus_url=task_url,
        )
        return message_bundle([header, {"fullUrl": task_url, "resource": task}])

    def build_cancel_bundle(
        self, claim: "ClaimSubmission", reason: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Cancel-request message withdrawing a sent claim.

        Entry order: MessageHeader, Task, insurer Organization, provider
        Organization. The Task focuses on the claim identifier and carries
        the reason as a task-reason-code.
        """
        provider = claim.provider
        provider_name = provider.provider_name if provider else None
        task_id = new_id()
        task_url = f"{self.provider_endpoint}/Task/{task_id}"
        today = fhir_date(datetime.now())
        reason_code, reason_display = cancel_reason_code(reason)

        task: dict[str, Any] = {
            "resourceType": "Task",
            "id": task_id,
            "meta": {"profile": [f"{NPHIES_SD}/task|1.0.0"]},
            "identifier": [
                {
                    "system": f"http://{provider_domain(provider_name)}/identifiers/task",
                    "value": f"Cancel_{claim.nphies_identifier}",
                }
            ],
            "status": "requested",
            "intent": "order",
            "priority": "routine",
            "code": {
                "coding": [{"system": f"{NPHIES_CS}/task-code", "code": "cancel"}]
            },
            "focus": {
                "type": "Claim",
                "identifier": {
                    "system": claim_identifier_system(provider_name),
                    "value": claim.nphies_identifier,
                },
            },
            "reasonCode": {
                "coding": [
                    {
                        "system": f"{NPHIES_CS}/task-reason-code",
                        "code": reason_code,
                        "display": reason_display,
                    }
                ]
            },
            "authoredOn": today,
            "lastModified": today,
            "requester": {
                "type": "Organization",
                "identifier": {
                    "system": PROVIDER_LICENSE_SYSTEM,
                    "value": self._provider_license(provider),
                },
            },
            "owner": {
                "type": "Organization",
                "identifier": {
                    "system": PAYER_LICENSE_SYSTEM,
                    "value": self._insurer_license(claim.insurer),
                },
            },
        }

        header = message_header_entry(
            MessageEvent.CANCEL_REQUEST,
            sender_id=self._provider_license(provider),
            source_endpoint=self.provider_endpoint,
            receiver_id=self._insurer_license(claim.insurer),
            focus_url=task_url,
        )
        entries = [header, {"fullUrl": task_url, "resource": task}]
        if claim.insurer is not None:
            entries.append(self._insurer_entry(claim.insurer, str(claim.insurer.id)))
        if provider is not None:
            entries.append(self._provider_entry(provider, str(provider.id)))
        return message_bundle(entries)

    def build_poll_bundle(
        self,
        claim: Optional["ClaimSubmission"] = None,
        message_types: tuple[str, ...] = POLL_MESSAGE_TYPES,
    ) -> dict[str, Any]:
        """
        Poll message (Parameters) addressed to NPHIES itself.

        When a claim is given the poll is narrowed to messages about it.
        """
        provider = claim.provider if claim is not None else None
        parameters: list[dict[str, Any]] = [
            {"name": "message-type", "valueCode": message_type}
            for message_type in message_types
        ]
        if claim is not None:
            parameters.append(
                {
                    "name": "focus",
                    "valueReference": {
                        "type": "Claim",
                        "identifier": {
                            "system": claim_identifier_system(
                                provider.provider_name if provider else None
                            ),
                            "value": claim.nphies_identifier,
                        },
                    },
                }
            )
        parameters.append({"name": "count", "valueInteger": self.poll_count})

        parameters_id = new_id()
        header = message_header_entry(
            MessageEvent.POLL,
            sender_id=self._provider_license(provider),
            source_endpoint=self.provider_endpoint,
            receiver_id="nphies",
            receiver_system=NPHIES_LICENSE_SYSTEM,
        )
        return message_bundle(
            [
                header,
                {
                    "fullUrl": f"urn:uuid:{parameters_id}",
                    "resource": {
                        "resourceType": "Parameters",
                        "id": parameters_id,
                        "parameter": parameters,
                    },
                },
            ]
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _provider_license(self, provider: Optional["Provider"]) -> str:
        return (provider.nphies_id if provider else None) or self.default_provider_id

    def _insurer_license(self, insurer: Optional["Insurer"]) -> str:
        return (insurer.nphies_id if insurer else None) or self.default_insurer_id


# =============================================================================
# Response parsing
# =============================================================================


def _total_amount(claim_response: dict[str, Any], category: str) -> Optional[Decimal]:
    for total in claim_response.get("total") or []:
        codings = (total.get("category") or {}).get("coding") or [{}]
        if codings[0].get("code") == category:
            value = (total.get("amount") or {}).get("value")
            if value is not None:
                return Decimal(str(value))
    return None


def parse_claim_response(claim_response: Optional[dict[str, Any]]) -> dict[str, Any]:
    """
    Read the adjudication result out of a ClaimResponse resource.

    ``success`` is true for a complete or partial outcome that was not
    rejected by the insurer.
    """
    if not claim_response:
        return {
            "success": False,
            "outcome": "error",
            "adjudication_outcome": None,
            "disposition": "No ClaimResponse found",
            "nphies_claim_id": None,
            "total_submitted": None,
            "total_benefit": None,
        }

    adjudication_outcome = None
    for extension in claim_response.get("extension") or []:
        if "extension-adjudication-outcome" in (extension.get("url") or ""):
            codings = (extension.get("valueCodeableConcept") or {}).get("coding") or [{}]
            adjudication_outcome = codings[0].get("code")
            break

    outcome = claim_response.get("outcome") or "complete"
    identifiers = claim_response.get("identifier") or [{}]
    return {
        "success": outcome in ("complete", "partial") and adjudication_outcome != "rejected",
        "outcome": outcome,
        "adjudication_outcome": adjudication_outcome,
        "disposition": claim_response.get("disposition"),
        "nphies_claim_id": identifiers[0].get("value") or claim_response.get("id"),
        "total_submitted": _total_amount(claim_response, "submitted"),
        "total_benefit": _total_amount(claim_response, "benefit"),
    }
