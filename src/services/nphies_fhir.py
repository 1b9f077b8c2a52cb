"""
Shared NPHIES FHIR building blocks.

Profiles, code systems and the MessageHeader/Bundle envelope used by every
outbound message (claim, status-check, poll, communication).

Source: https://portal.nphies.sa/ig/
Verified: 2025-12-18
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import uuid4

# =============================================================================
# Canonical URLs
# =============================================================================

NPHIES_SD = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition"
NPHIES_CS = "http://nphies.sa/terminology/CodeSystem"

BUNDLE_PROFILE = f"{NPHIES_SD}/bundle|1.0.0"
MESSAGE_HEADER_PROFILE = f"{NPHIES_SD}/message-header|1.0.0"
MESSAGE_EVENTS_SYSTEM = f"{NPHIES_CS}/ksa-message-events"

PROVIDER_LICENSE_SYSTEM = "http://nphies.sa/license/provider-license"
PAYER_LICENSE_SYSTEM = "http://nphies.sa/license/payer-license"
NPHIES_LICENSE_SYSTEM = "http://nphies.sa/license/nphies-license"

CLAIM_ITEM_SEQUENCE_EXTENSION = f"{NPHIES_SD}/extension-claimItemSequence"


class MessageEvent:
    """ksa-message-events codes used by this service."""

    CLAIM_REQUEST = "claim-request"
    CLAIM_RESPONSE = "claim-response"
    STATUS_CHECK = "status-check"
    POLL = "poll"
    COMMUNICATION_REQUEST = "communication-request"
    COMMUNICATION = "communication"
    CANCEL_REQUEST = "cancel-request"


# =============================================================================
# Value helpers
# =============================================================================


def new_id() -> str:
    return str(uuid4())


def fhir_datetime(value: Optional[datetime] = None) -> str:
    """ISO-8601 instant; naive datetimes are treated as UTC."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds")


def fhir_date(value: Union[date, datetime, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def money(value: Union[Decimal, float, int, None]) -> float:
    """JSON-safe amount rounded to 2 decimals."""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.01")))


def provider_domain(provider_name: Optional[str]) -> str:
    """
    Domain used to namespace provider-issued identifiers.

    "King Fahad Hospital" -> "kingfahadhospital.com.sa"
    """
    slug = re.sub(r"\s+", "", (provider_name or "provider").lower())
    return f"{slug}.com.sa"


def claim_identifier_system(provider_name: Optional[str]) -> str:
    return f"http://{provider_domain(provider_name)}/identifiers/claim"


def reference_id(reference: Optional[str]) -> Optional[str]:
    """Last path segment of a FHIR reference ("Communication/abc" -> "abc")."""
    if not reference:
        return None
    return reference.rstrip("/").split("/")[-1] or None


def reference_type(reference: Optional[str]) -> Optional[str]:
    """Resource type segment of a FHIR reference ("Claim/123" -> "Claim")."""
    if not reference:
        return None
    parts = reference.rstrip("/").split("/")
    return parts[-2] if len(parts) > 1 else None


# =============================================================================
# Envelope
# =============================================================================


def message_header_entry(
    event: str,
    sender_id: str,
    source_endpoint: str,
    receiver_id: str,
    receiver_system: str = PAYER_LICENSE_SYSTEM,
    focus_url: Optional[str] = None,
) -> dict[str, Any]:
    """MessageHeader entry; destination endpoint is derived from the receiver."""
    header_id = new_id()
    if receiver_system == NPHIES_LICENSE_SYSTEM:
        destination_endpoint = "http://nphies.sa"
    else:
        destination_endpoint = f"{receiver_system}/{receiver_id}"

    resource: dict[str, Any] = {
        "resourceType": "MessageHeader",
        "id": header_id,
        "meta": {"profile": [MESSAGE_HEADER_PROFILE]},
        "eventCoding": {"system": MESSAGE_EVENTS_SYSTEM, "code": event},
        "destination": [
            {
                "endpoint": destination_endpoint,
                "receiver": {
                    "type": "Organization",
                    "identifier": {"system": receiver_system, "value": receiver_id},
                },
            }
        ],
        "sender": {
            "type": "Organization",
            "identifier": {"system": PROVIDER_LICENSE_SYSTEM, "value": sender_id},
        },
        "source": {"endpoint": source_endpoint},
    }
    if focus_url:
        resource["focus"] = [{"reference": focus_url}]

    return {"fullUrl": f"urn:uuid:{header_id}", "resource": resource}


def message_bundle(entries: list[dict[str, Any]]) -> dict[str, Any]:
    """Wrap entries (MessageHeader first) in a message Bundle."""
    return {
        "resourceType": "Bundle",
        "id": new_id(),
        "meta": {"profile": [BUNDLE_PROFILE]},
        "type": "message",
        "timestamp": fhir_datetime(),
        "entry": entries,
    }
