"""
Communication Mapper.

Builds outbound NPHIES Communication messages (unsolicited and solicited) and
parses the CommunicationRequest / Communication resources delivered by poll.

Source: https://portal.nphies.sa/ig/StructureDefinition-communication.html
Verified: 2025-12-18
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from src.api.config import settings
from src.core.enums import PayloadContentType
from src.services.nphies_fhir import (
    CLAIM_ITEM_SEQUENCE_EXTENSION,
    NPHIES_CS,
    NPHIES_SD,
    PAYER_LICENSE_SYSTEM,
    PROVIDER_LICENSE_SYSTEM,
    MessageEvent,
    fhir_datetime,
    message_bundle,
    message_header_entry,
    new_id,
    reference_id,
    reference_type,
)

if TYPE_CHECKING:
    from src.models.claim_submission import ClaimSubmission
    from src.models.communication import CommunicationRequest

logger = logging.getLogger(__name__)

COMMUNICATION_PROFILE = f"{NPHIES_SD}/communication|1.0.0"
COMMUNICATION_CATEGORY_SYSTEM = f"{NPHIES_CS}/communication-category"


class CommunicationPayloadError(ValueError):
    """Raised when no usable payload is left after mapping."""


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable FHIR dateTime: {value}")
        return None


class CommunicationMapper:
    """Maps Communication payloads to and from FHIR."""

    def __init__(
        self,
        provider_endpoint: Optional[str] = None,
        default_provider_id: Optional[str] = None,
        default_insurer_id: Optional[str] = None,
    ):
        self.provider_endpoint = provider_endpoint or settings.NPHIES_PROVIDER_ENDPOINT
        self.default_provider_id = default_provider_id or settings.NPHIES_PROVIDER_ID
        self.default_insurer_id = default_insurer_id or settings.NPHIES_INSURER_ID

    # =========================================================================
    # Outbound
    # =========================================================================

    @staticmethod
    def build_payloads(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Map payload dicts to FHIR ``Communication.payload`` entries.

        Each payload carries exactly one content element chosen by its
        ``content_type``. Payloads whose content is missing are dropped.
        """
        built = []
        for index, payload in enumerate(payloads or [], start=1):
            content_type = payload.get("content_type")
            fhir_payload: dict[str, Any] = {}

            if content_type == PayloadContentType.STRING.value and payload.get("content_string"):
                fhir_payload["contentString"] = payload["content_string"]
            elif content_type == PayloadContentType.ATTACHMENT.value and payload.get("attachment"):
                attachment = payload["attachment"]
                content_attachment = {
                    "contentType": attachment.get("content_type") or "application/octet-stream",
                    "title": attachment.get("title") or f"Attachment {index}",
                }
                for key in ("data", "url", "size"):
                    if attachment.get(key):
                        content_attachment[key] = attachment[key]
                fhir_payload["contentAttachment"] = content_attachment
            elif content_type == PayloadContentType.REFERENCE.value and payload.get("reference"):
                reference = payload["reference"]
                content_reference = {"reference": reference.get("value")}
                if reference.get("type"):
                    content_reference["type"] = reference["type"]
                fhir_payload["contentReference"] = content_reference
            else:
                continue

            sequences = payload.get("claim_item_sequences") or []
            if sequences:
                fhir_payload["extension"] = [
                    {"url": CLAIM_ITEM_SEQUENCE_EXTENSION, "valuePositiveInt": int(seq)}
                    for seq in sequences
                ]
            built.append(fhir_payload)
        return built

    def claim_about_reference(self, claim: "ClaimSubmission") -> str:
        return f"{self.provider_endpoint}/Claim/{claim.nphies_identifier}"

    def build_communication_bundle(
        self,
        claim: "ClaimSubmission",
        payloads: list[dict[str, Any]],
        communication_id: Optional[str] = None,
        communication_request: Optional["CommunicationRequest"] = None,
    ) -> dict[str, Any]:
        """
        Build a Communication message about a claim.

        With ``communication_request`` the Communication is solicited: it is
        ``basedOn`` the request and reuses the request's ``about``.

        Raises:
            CommunicationPayloadError: if no payload survives mapping
        """
        fhir_payloads = self.build_payloads(payloads)
        if not fhir_payloads:
            raise CommunicationPayloadError("At least one payload with content is required")

        communication_id = communication_id or new_id()
        full_url = f"{self.provider_endpoint}/Communication/{communication_id}"
        sender_id = self._provider_license(claim)
        recipient_id = self._insurer_license(claim)

        about_reference = self.claim_about_reference(claim)
        about_type = "Claim"
        if communication_request is not None and communication_request.about_reference:
            about_reference = communication_request.about_reference
            about_type = communication_request.about_type or "Claim"

        resource: dict[str, Any] = {
            "resourceType": "Communication",
            "id": communication_id,
            "meta": {"profile": [COMMUNICATION_PROFILE]},
            "status": "completed",
            "category": [
                {"coding": [{"system": COMMUNICATION_CATEGORY_SYSTEM, "code": "alert"}]}
            ],
            "priority": "routine",
            "subject": {"reference": f"Patient/{claim.patient_id}", "type": "Patient"},
            "about": [{"reference": about_reference, "type": about_type}],
            "sent": fhir_datetime(),
            "sender": {
                "type": "Organization",
                "identifier": {"system": PROVIDER_LICENSE_SYSTEM, "value": sender_id},
            },
            "recipient": [
                {
                    "type": "Organization",
                    "identifier": {"system": PAYER_LICENSE_SYSTEM, "value": recipient_id},
                }
            ],
            "payload": fhir_payloads,
        }
        if communication_request is not None:
            resource["basedOn"] = [
                {"reference": f"CommunicationRequest/{communication_request.request_id}"}
            ]

        header = message_header_entry(
            MessageEvent.COMMUNICATION_REQUEST,
            sender_id=sender_id,
            source_endpoint=self.provider_endpoint,
            receiver_id=recipient_id,
            focus_url=full_url,
        )
        return message_bundle([header, {"fullUrl": full_url, "resource": resource}])

    # =========================================================================
    # Inbound
    # =========================================================================

    @staticmethod
    def parse_communication_request(resource: dict[str, Any]) -> dict[str, Any]:
        """Flatten a CommunicationRequest into CommunicationRequest column values."""
        categories = (resource.get("category") or [{}])[0].get("coding") or [{}]
        identifiers = resource.get("identifier") or [{}]
        parsed: dict[str, Any] = {
            "request_id": resource.get("id"),
            "status": resource.get("status") or "active",
            "category": categories[0].get("code"),
            "priority": resource.get("priority"),
            "authored_on": _parse_datetime(resource.get("authoredOn")),
            "identifier": identifiers[0].get("value"),
            "identifier_system": identifiers[0].get("system"),
            "about_reference": None,
            "about_type": None,
            "sender_identifier": ((resource.get("sender") or {}).get("identifier") or {}).get("value"),
            "recipient_identifier": None,
            "payload_content_type": None,
            "payload_content_string": None,
        }

        about = resource.get("about") or []
        if about:
            parsed["about_reference"] = about[0].get("reference")
            parsed["about_type"] = about[0].get("type") or reference_type(about[0].get("reference"))

        recipients = resource.get("recipient") or []
        if recipients:
            parsed["recipient_identifier"] = (recipients[0].get("identifier") or {}).get("value")

        payloads = resource.get("payload") or []
        if payloads:
            first = payloads[0]
            if first.get("contentString"):
                parsed["payload_content_type"] = PayloadContentType.STRING.value
                parsed["payload_content_string"] = first["contentString"]
            elif first.get("contentAttachment"):
                parsed["payload_content_type"] = PayloadContentType.ATTACHMENT.value
            elif first.get("contentReference"):
                parsed["payload_content_type"] = PayloadContentType.REFERENCE.value

        return parsed

    @staticmethod
    def parse_communication(resource: dict[str, Any]) -> dict[str, Any]:
        """
        Parse an inbound Communication.

        An acknowledgment points at our Communication through
        ``inResponseTo``; ``in_response_to_id`` is that id.
        """
        in_response_to = resource.get("inResponseTo") or []
        reference = in_response_to[0].get("reference") if in_response_to else None
        based_on = resource.get("basedOn") or []
        about = resource.get("about") or []
        return {
            "communication_id": resource.get("id"),
            "status": resource.get("status"),
            "sent": _parse_datetime(resource.get("sent")),
            "in_response_to": reference,
            "in_response_to_id": reference_id(reference),
            "is_acknowledgment": reference is not None,
            "about_reference": about[0].get("reference") if about else None,
            "based_on": based_on[0].get("reference") if based_on else None,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _provider_license(self, claim: "ClaimSubmission") -> str:
        provider = claim.provider
        return (provider.nphies_id if provider else None) or self.default_provider_id

    def _insurer_license(self, claim: "ClaimSubmission") -> str:
        insurer = claim.insurer
        return (insurer.nphies_id if insurer else None) or self.default_insurer_id
