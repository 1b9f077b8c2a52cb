"""
Core Enumerations for the NPHIES Claim Submission workflow.
Source: https://portal.nphies.sa/ig/
Verified: 2025-12-18
"""

from enum import Enum


# =============================================================================
# Claim Submission Enums
# =============================================================================


class ClaimSubmissionStatus(str, Enum):
    """Claim submission lifecycle status.

    Status values are stored as plain strings. There is no transition table;
    the workflow only guards which operations may start from which status:

    send:   DRAFT | ERROR
    poll:   PENDING | QUEUED
    update: DRAFT | ERROR
    delete: DRAFT
    """

    DRAFT = "draft"
    PENDING = "pending"  # Sent, awaiting immediate response
    QUEUED = "queued"  # Accepted by NPHIES, adjudication pending
    APPROVED = "approved"
    DENIED = "denied"
    ERROR = "error"
    CANCELLED = "cancelled"
    PAID = "paid"


class ClaimType(str, Enum):
    """NPHIES claim types."""

    INSTITUTIONAL = "institutional"
    PROFESSIONAL = "professional"
    PHARMACY = "pharmacy"
    DENTAL = "dental"
    VISION = "vision"


class EncounterClass(str, Enum):
    """Encounter classes accepted on a claim submission."""

    AMBULATORY = "ambulatory"
    OUTPATIENT = "outpatient"
    EMERGENCY = "emergency"
    HOME = "home"
    INPATIENT = "inpatient"
    DAYCASE = "daycase"
    TELEMEDICINE = "telemedicine"


class ResponseType(str, Enum):
    """Kinds of NPHIES responses kept in the response history."""

    INITIAL = "initial"  # Immediate answer to the claim request
    POLL = "poll"  # Status-check or poll round trip
    FINAL = "final"  # Adjudicated ClaimResponse delivered via poll
    CANCEL = "cancel"  # Answer to a cancel-request Task


class NphiesOutcome(str, Enum):
    """ClaimResponse.outcome values plus local error marker."""

    QUEUED = "queued"
    COMPLETE = "complete"
    PARTIAL = "partial"
    ERROR = "error"


class AdjudicationOutcome(str, Enum):
    """Adjudication outcome extension values."""

    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIAL = "partial"
    PENDED = "pended"


# =============================================================================
# Communication Enums
# =============================================================================


class CommunicationType(str, Enum):
    """Direction of an outbound Communication."""

    UNSOLICITED = "unsolicited"  # Provider-initiated
    SOLICITED = "solicited"  # Answer to a CommunicationRequest


class CommunicationStatus(str, Enum):
    """FHIR Communication.status values used locally."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ENTERED_IN_ERROR = "entered-in-error"


class PayloadContentType(str, Enum):
    """Communication payload content kinds (exactly one per payload)."""

    STRING = "string"
    ATTACHMENT = "attachment"
    REFERENCE = "reference"


class AcknowledgmentStatus(str, Enum):
    """MessageHeader.response.code values seen on acknowledgments."""

    QUEUED = "queued"
    OK = "ok"
    TRANSIENT_ERROR = "transient-error"
    FATAL_ERROR = "fatal-error"
