"""
Unit tests for core enumerations.
"""

import pytest

from src.core.enums import (
    AcknowledgmentStatus,
    AdjudicationOutcome,
    ClaimSubmissionStatus,
    ClaimType,
    CommunicationStatus,
    CommunicationType,
    EncounterClass,
    NphiesOutcome,
    PayloadContentType,
    ResponseType,
)


@pytest.mark.unit
class TestClaimSubmissionEnums:
    """Tests for claim submission enums."""

    def test_status_values(self):
        assert [s.value for s in ClaimSubmissionStatus] == [
            "draft",
            "pending",
            "queued",
            "approved",
            "denied",
            "error",
            "cancelled",
            "paid",
        ]

    def test_claim_types(self):
        assert ClaimType.DENTAL == "dental"
        assert ClaimType("institutional") is ClaimType.INSTITUTIONAL

    def test_encounter_classes(self):
        assert EncounterClass.DAYCASE == "daycase"
        assert EncounterClass.TELEMEDICINE == "telemedicine"

    def test_response_types(self):
        assert {r.value for r in ResponseType} == {"initial", "poll", "final", "cancel"}

    def test_outcomes(self):
        assert NphiesOutcome.QUEUED == "queued"
        assert NphiesOutcome.ERROR == "error"
        assert AdjudicationOutcome.REJECTED == "rejected"


@pytest.mark.unit
class TestCommunicationEnums:
    """Tests for Communication enums."""

    def test_communication_types(self):
        assert CommunicationType.UNSOLICITED == "unsolicited"
        assert CommunicationType.SOLICITED == "solicited"

    def test_communication_status(self):
        assert CommunicationStatus.ENTERED_IN_ERROR == "entered-in-error"

    def test_payload_content_types(self):
        assert {p.value for p in PayloadContentType} == {"string", "attachment", "reference"}

    def test_acknowledgment_status(self):
        assert AcknowledgmentStatus.OK == "ok"
        assert AcknowledgmentStatus.FATAL_ERROR == "fatal-error"
