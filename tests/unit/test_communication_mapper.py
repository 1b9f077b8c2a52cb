"""
Unit tests for the Communication mapper.
"""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from src.services.communication_mapper import CommunicationMapper, CommunicationPayloadError
from src.services.nphies_fhir import CLAIM_ITEM_SEQUENCE_EXTENSION


@pytest.fixture
def mapper():
    return CommunicationMapper(
        provider_endpoint="http://provider.test",
        default_provider_id="DEFAULT-PR",
        default_insurer_id="DEFAULT-INS",
    )


@pytest.fixture
def claim():
    return SimpleNamespace(
        id=uuid4(),
        patient_id=uuid4(),
        nphies_identifier="CLM-2002",
        provider=SimpleNamespace(nphies_id="PR-FHIR"),
        insurer=SimpleNamespace(nphies_id="INS-FHIR"),
    )


@pytest.mark.unit
class TestBuildPayloads:
    """Payload mapping: one content element per payload."""

    def test_string_payload(self):
        built = CommunicationMapper.build_payloads(
            [{"content_type": "string", "content_string": "Lab report attached"}]
        )

        assert built == [{"contentString": "Lab report attached"}]

    def test_attachment_payload(self):
        built = CommunicationMapper.build_payloads(
            [
                {
                    "content_type": "attachment",
                    "attachment": {"content_type": "application/pdf", "data": "SGVsbG8=", "title": "Report"},
                }
            ]
        )

        assert built == [
            {
                "contentAttachment": {
                    "contentType": "application/pdf",
                    "title": "Report",
                    "data": "SGVsbG8=",
                }
            }
        ]

    def test_attachment_defaults(self):
        built = CommunicationMapper.build_payloads(
            [{"content_type": "attachment", "attachment": {"url": "http://files.test/1"}}]
        )

        attachment = built[0]["contentAttachment"]
        assert attachment["contentType"] == "application/octet-stream"
        assert attachment["title"] == "Attachment 1"
        assert attachment["url"] == "http://files.test/1"

    def test_reference_payload(self):
        built = CommunicationMapper.build_payloads(
            [{"content_type": "reference", "reference": {"value": "DocumentReference/9", "type": "DocumentReference"}}]
        )

        assert built == [
            {"contentReference": {"reference": "DocumentReference/9", "type": "DocumentReference"}}
        ]

    def test_claim_item_sequences_become_extensions(self):
        built = CommunicationMapper.build_payloads(
            [{"content_type": "string", "content_string": "x", "claim_item_sequences": [1, 3]}]
        )

        assert built[0]["extension"] == [
            {"url": CLAIM_ITEM_SEQUENCE_EXTENSION, "valuePositiveInt": 1},
            {"url": CLAIM_ITEM_SEQUENCE_EXTENSION, "valuePositiveInt": 3},
        ]

    def test_empty_payloads_are_dropped(self):
        built = CommunicationMapper.build_payloads(
            [
                {"content_type": "string", "content_string": ""},
                {"content_type": "attachment", "attachment": None},
                {"content_type": "string", "content_string": "kept"},
            ]
        )

        assert built == [{"contentString": "kept"}]


@pytest.mark.unit
class TestBuildCommunicationBundle:
    """Tests for outbound Communication messages."""

    def test_unsolicited_bundle(self, mapper, claim):
        bundle = mapper.build_communication_bundle(
            claim,
            [{"content_type": "string", "content_string": "Additional notes"}],
            communication_id="comm-1",
        )
        header = bundle["entry"][0]["resource"]
        communication = bundle["entry"][1]["resource"]

        assert header["eventCoding"]["code"] == "communication-request"
        assert header["focus"][0]["reference"] == "http://provider.test/Communication/comm-1"
        assert communication["id"] == "comm-1"
        assert communication["status"] == "completed"
        assert communication["about"] == [
            {"reference": "http://provider.test/Claim/CLM-2002", "type": "Claim"}
        ]
        assert communication["sender"]["identifier"]["value"] == "PR-FHIR"
        assert communication["recipient"][0]["identifier"]["value"] == "INS-FHIR"
        assert "basedOn" not in communication

    def test_solicited_bundle_reuses_request_about(self, mapper, claim):
        request = SimpleNamespace(
            request_id="CR-REQ-9",
            about_reference="http://insurer.test/Claim/abc",
            about_type="Claim",
        )

        bundle = mapper.build_communication_bundle(
            claim,
            [{"content_type": "string", "content_string": "Answer"}],
            communication_request=request,
        )
        communication = bundle["entry"][1]["resource"]

        assert communication["basedOn"] == [{"reference": "CommunicationRequest/CR-REQ-9"}]
        assert communication["about"][0]["reference"] == "http://insurer.test/Claim/abc"

    def test_no_usable_payload_raises(self, mapper, claim):
        with pytest.raises(CommunicationPayloadError):
            mapper.build_communication_bundle(
                claim, [{"content_type": "string", "content_string": None}]
            )


@pytest.mark.unit
class TestParseInbound:
    """Tests for resources delivered by poll."""

    def test_parse_communication_request(self, fhir):
        parsed = CommunicationMapper.parse_communication_request(
            fhir.communication_request("CR-REQ-1", "Send the discharge summary")
        )

        assert parsed["request_id"] == "CR-REQ-1"
        assert parsed["category"] == "alert"
        assert parsed["about_reference"] == "http://provider.com/Claim/CLM-1001"
        assert parsed["about_type"] == "Claim"
        assert parsed["sender_identifier"] == "INS-FHIR"
        assert parsed["recipient_identifier"] == "PR-FHIR"
        assert parsed["payload_content_type"] == "string"
        assert parsed["payload_content_string"] == "Send the discharge summary"
        assert parsed["authored_on"].year == 2025

    def test_parse_acknowledgment(self, fhir):
        parsed = CommunicationMapper.parse_communication(fhir.acknowledgment("comm-1"))

        assert parsed["is_acknowledgment"] is True
        assert parsed["in_response_to_id"] == "comm-1"
        assert parsed["status"] == "completed"

    def test_parse_communication_without_in_response_to(self):
        parsed = CommunicationMapper.parse_communication(
            {"resourceType": "Communication", "id": "x", "status": "completed"}
        )

        assert parsed["is_acknowledgment"] is False
        assert parsed["in_response_to_id"] is None
