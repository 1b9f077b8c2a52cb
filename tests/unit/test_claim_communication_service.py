"""
Unit tests for the claim communication service.
Status-check, poll, Communications and acknowledgment polling against an
in-memory SQLite database and a recorded NPHIES transport.
"""

from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from src.models import CommunicationRequest
from src.services.claim_bundle_builder import ClaimBundleBuilder
from src.services.claim_communication_service import (
    MESSAGE_CLAIM_RESPONSE,
    MESSAGE_COMMUNICATION_REQUEST,
    MESSAGE_NO_NEW_MESSAGES,
    ClaimCommunicationService,
    acknowledgment_status_for,
    poll_status_for,
)
from src.services.claim_submission_service import (
    ClaimSubmissionGatewayError,
    ClaimSubmissionNotFoundError,
    ClaimSubmissionService,
    ClaimSubmissionStateError,
    ClaimSubmissionValidationError,
)
from src.services.communication_mapper import CommunicationMapper

PROVIDER_ENDPOINT = "http://provider.test"
TEXT_PAYLOAD = [{"content_type": "string", "content_string": "Discharge summary attached"}]


@pytest.fixture
def service(session, nphies):
    return ClaimCommunicationService(
        session,
        gateway=nphies.gateway,
        builder=ClaimBundleBuilder(provider_endpoint=PROVIDER_ENDPOINT),
        mapper=CommunicationMapper(provider_endpoint=PROVIDER_ENDPOINT),
    )


@pytest.fixture
def submissions(session, nphies):
    return ClaimSubmissionService(
        session,
        gateway=nphies.gateway,
        builder=ClaimBundleBuilder(provider_endpoint=PROVIDER_ENDPOINT),
    )


@pytest.fixture
async def queued_claim(make_claim):
    return await make_claim(status="queued", nphies_request_id="clm-req-1")


async def _stored_requests(session):
    result = await session.execute(select(CommunicationRequest))
    return list(result.scalars().all())


def _parsed(outcome, adjudication_outcome=None, disposition=None):
    return {
        "outcome": outcome,
        "adjudication_outcome": adjudication_outcome,
        "disposition": disposition,
    }


@pytest.mark.unit
class TestStatusMapping:
    """Poll outcome to claim status."""

    @pytest.mark.parametrize(
        "parsed, expected",
        [
            (_parsed("queued"), ("queued", None)),
            (_parsed("error"), ("error", None)),
            (_parsed("partial", "approved"), ("approved", "partial")),
            (_parsed("complete", "approved"), ("approved", "approved")),
            (_parsed("complete", "rejected"), ("denied", "rejected")),
            (_parsed("complete", None, "Claim DENIED by payer"), ("denied", None)),
            (_parsed("complete", None, "Items rejected"), ("denied", None)),
        ],
    )
    def test_poll_status_for(self, parsed, expected):
        assert poll_status_for(parsed) == expected

    def test_acknowledgment_status_for(self):
        assert acknowledgment_status_for("completed") == "ok"
        assert acknowledgment_status_for(None) == "ok"
        assert acknowledgment_status_for("entered-in-error") == "fatal-error"


@pytest.mark.unit
class TestPoll:
    """One poll round trip per call for pending/queued claims."""

    async def test_adjudicated_claim_is_not_polled(self, service, make_claim, nphies):
        claim = await make_claim(status="approved")

        result = await service.poll(claim.id)

        assert result.polled is False
        assert result.claim.status == "approved"
        assert "nothing to poll" in result.message
        assert nphies.call_count == 0

    async def test_draft_claim_is_not_polled(self, service, make_claim, nphies):
        claim = await make_claim()

        result = await service.poll(claim.id)

        assert result.polled is False
        assert nphies.call_count == 0

    async def test_unknown_claim(self, service):
        with pytest.raises(ClaimSubmissionNotFoundError):
            await service.poll(uuid4())

    async def test_poll_request_focuses_claim(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle())

        await service.poll(queued_claim.id)

        header, parameters = [e["resource"] for e in nphies.last_request["entry"]]
        assert header["eventCoding"]["code"] == "poll"
        focus = next(p for p in parameters["parameter"] if p["name"] == "focus")
        assert focus["valueReference"]["identifier"]["value"] == queued_claim.claim_number

    async def test_no_messages_keeps_claim_queued(self, service, submissions, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle())

        result = await service.poll(queued_claim.id)

        assert result.polled is True
        assert result.claim.status == "queued"
        assert result.message == MESSAGE_NO_NEW_MESSAGES
        responses = await submissions.list_responses(queued_claim.id)
        assert [(r.response_type, r.outcome) for r in responses] == [("poll", "queued")]

    async def test_pending_claim_moves_to_queued(self, service, make_claim, nphies, fhir):
        claim = await make_claim(status="pending")
        nphies.reply(fhir.response_bundle())

        result = await service.poll(claim.id)

        assert result.claim.status == "queued"

    async def test_claim_response_approves_claim(self, service, submissions, queued_claim, nphies, fhir):
        nphies.reply(
            fhir.response_bundle(
                fhir.nested_message(
                    fhir.claim_response(identifier="CR-9", submitted=280, benefit=230.5)
                )
            )
        )

        result = await service.poll(queued_claim.id)

        claim = result.claim
        assert result.message == MESSAGE_CLAIM_RESPONSE
        assert result.claim_responses == 1
        assert claim.status == "approved"
        assert claim.nphies_claim_id == "CR-9"
        assert claim.total_amount == Decimal("280")
        assert claim.approved_amount == Decimal("230.5")
        responses = await submissions.list_responses(claim.id)
        assert [(r.response_type, r.outcome) for r in responses] == [("final", "complete")]

    async def test_partial_outcome_is_approved(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(fhir.claim_response(outcome="partial")))

        result = await service.poll(queued_claim.id)

        assert result.claim.status == "approved"
        assert result.claim.adjudication_outcome == "partial"

    async def test_denied_disposition(self, service, queued_claim, nphies, fhir):
        nphies.reply(
            fhir.response_bundle(
                fhir.claim_response(adjudication_outcome=None, disposition="Claim denied: no coverage")
            )
        )

        result = await service.poll(queued_claim.id)

        assert result.claim.status == "denied"

    async def test_queued_claim_response_is_a_poll_row(self, service, submissions, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(fhir.claim_response(outcome="queued", adjudication_outcome=None)))

        result = await service.poll(queued_claim.id)

        assert result.claim.status == "queued"
        responses = await submissions.list_responses(queued_claim.id)
        assert [r.response_type for r in responses] == ["poll"]

    async def test_sequential_polls_make_one_call_each(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(), fhir.response_bundle(fhir.claim_response()))

        first = await service.poll(queued_claim.id)
        assert nphies.call_count == 1
        second = await service.poll(queued_claim.id)
        assert nphies.call_count == 2
        third = await service.poll(queued_claim.id)
        assert nphies.call_count == 2

        valid = {"queued", "approved", "denied", "error"}
        assert first.claim.status in valid
        assert second.claim.status == "approved"
        assert third.polled is False

    async def test_failed_poll_keeps_status(self, service, submissions, queued_claim, nphies, fhir):
        nphies.reply(httpx.Response(400, json=fhir.response_bundle(fhir.operation_outcome())))

        with pytest.raises(ClaimSubmissionGatewayError):
            await service.poll(queued_claim.id)

        assert queued_claim.status == "queued"
        responses = await submissions.list_responses(queued_claim.id)
        assert [(r.response_type, r.outcome) for r in responses] == [("poll", "error")]

    async def test_transport_failure_keeps_status(self, service, queued_claim, nphies):
        nphies.reply(httpx.ConnectError("refused"))

        with pytest.raises(ClaimSubmissionGatewayError):
            await service.poll(queued_claim.id)

        assert queued_claim.status == "queued"


@pytest.mark.unit
class TestCommunicationRequests:
    """CommunicationRequests delivered by poll."""

    async def test_poll_stores_communication_request(self, service, session, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(fhir.nested_message(fhir.communication_request("CR-REQ-1"))))

        result = await service.poll(queued_claim.id)

        assert result.message == MESSAGE_COMMUNICATION_REQUEST
        assert result.communication_requests == 1
        requests = await service.list_communication_requests(queued_claim.id)
        assert [r.request_id for r in requests] == ["CR-REQ-1"]
        assert requests[0].claim_id == queued_claim.id
        assert requests[0].is_pending is True

    async def test_requests_are_deduplicated(self, service, session, queued_claim, nphies, fhir):
        request = fhir.communication_request("CR-REQ-1")
        nphies.reply(
            fhir.response_bundle(fhir.nested_message(request), fhir.nested_message(request)),
            fhir.response_bundle(fhir.nested_message(request)),
        )

        await service.poll(queued_claim.id)
        second = await service.poll(queued_claim.id)

        assert second.communication_requests == 0
        assert len(await _stored_requests(session)) == 1


@pytest.mark.unit
class TestStatusCheck:
    async def test_draft_claim_is_rejected(self, service, make_claim, nphies):
        claim = await make_claim()

        with pytest.raises(ClaimSubmissionStateError):
            await service.status_check(claim.id)

        assert nphies.call_count == 0

    async def test_status_check_records_poll_row(self, service, submissions, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(response_code="ok"))

        result = await service.status_check(queued_claim.id)

        assert result.outcome == "queued"
        assert result.response_code == "ok"
        assert result.claim.status == "queued"
        assert nphies.last_request["entry"][1]["resource"]["resourceType"] == "Task"
        responses = await submissions.list_responses(queued_claim.id)
        assert [(r.response_type, r.outcome) for r in responses] == [("poll", "queued")]

    async def test_status_check_error_answer(self, service, queued_claim, nphies, fhir):
        nphies.reply(httpx.Response(422, json=fhir.response_bundle(fhir.operation_outcome())))

        result = await service.status_check(queued_claim.id)

        assert result.outcome == "error"
        assert result.errors
        assert result.claim.status == "queued"

    async def test_status_check_transport_failure(self, service, queued_claim, nphies):
        nphies.reply(httpx.Response(500, text="down"))

        with pytest.raises(ClaimSubmissionGatewayError):
            await service.status_check(queued_claim.id)

    async def test_preview_status_check(self, service, queued_claim, nphies):
        bundle = await service.preview_status_check(queued_claim.id)

        assert bundle["entry"][1]["resource"]["resourceType"] == "Task"
        assert nphies.call_count == 0


@pytest.mark.unit
class TestCommunications:
    """Unsolicited and solicited Communications."""

    async def test_unsolicited_requires_sent_claim(self, service, make_claim, nphies):
        claim = await make_claim()

        with pytest.raises(ClaimSubmissionStateError):
            await service.send_unsolicited(claim.id, TEXT_PAYLOAD)

        assert nphies.call_count == 0

    async def test_empty_payloads_are_rejected(self, service, queued_claim, nphies):
        with pytest.raises(ClaimSubmissionValidationError):
            await service.send_unsolicited(queued_claim.id, [{"content_type": "string"}])

        assert nphies.call_count == 0

    async def test_unsolicited_send(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(response_code="ok"))

        communication = await service.send_unsolicited(queued_claim.id, TEXT_PAYLOAD)

        sent = nphies.last_request["entry"][1]["resource"]
        assert sent["resourceType"] == "Communication"
        assert sent["id"] == communication.communication_id
        assert communication.communication_type == "unsolicited"
        assert communication.status == "completed"
        assert communication.acknowledgment_received is True
        assert communication.acknowledgment_status == "ok"
        assert communication.about_reference == f"{PROVIDER_ENDPOINT}/Claim/{queued_claim.claim_number}"
        assert [p.content_string for p in communication.payloads] == ["Discharge summary attached"]

    async def test_listed_once_in_creation_order(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(), fhir.response_bundle())

        first = await service.send_unsolicited(queued_claim.id, TEXT_PAYLOAD)
        second = await service.send_unsolicited(
            queued_claim.id, [{"content_type": "string", "content_string": "Second note"}]
        )

        listed = await service.list_communications(queued_claim.id)
        assert [c.id for c in listed] == [first.id, second.id]

    async def test_failed_send_is_stored(self, service, queued_claim, nphies):
        nphies.reply(httpx.Response(503, text="unavailable"))

        with pytest.raises(ClaimSubmissionGatewayError):
            await service.send_unsolicited(queued_claim.id, TEXT_PAYLOAD)

        listed = await service.list_communications(queued_claim.id)
        assert len(listed) == 1
        assert listed[0].status == "entered-in-error"

    async def test_preview_does_not_send(self, service, queued_claim, nphies):
        communication_type, bundle = await service.preview_communication(queued_claim.id, TEXT_PAYLOAD)

        assert communication_type == "unsolicited"
        assert bundle["entry"][1]["resource"]["payload"] == [
            {"contentString": "Discharge summary attached"}
        ]
        assert nphies.call_count == 0

    async def test_solicited_answers_request(self, service, queued_claim, nphies, fhir):
        nphies.reply(
            fhir.response_bundle(fhir.nested_message(fhir.communication_request("CR-REQ-5"))),
            fhir.response_bundle(response_code="ok"),
        )
        await service.poll(queued_claim.id)
        request = (await service.list_communication_requests(queued_claim.id))[0]

        communication = await service.send_solicited(queued_claim.id, request.id, TEXT_PAYLOAD)

        sent = nphies.last_request["entry"][1]["resource"]
        assert sent["basedOn"] == [{"reference": "CommunicationRequest/CR-REQ-5"}]
        assert communication.communication_type == "solicited"
        assert communication.based_on_request_id == request.id
        assert request.responded_at is not None
        assert request.response_communication_id == communication.id
        assert await service.list_communication_requests(queued_claim.id, pending_only=True) == []

    async def test_solicited_unknown_request(self, service, queued_claim, nphies):
        with pytest.raises(ClaimSubmissionNotFoundError):
            await service.send_solicited(queued_claim.id, uuid4(), TEXT_PAYLOAD)

        assert nphies.call_count == 0


@pytest.mark.unit
class TestAcknowledgmentPolling:
    """Operator-driven acknowledgment polls."""

    async def _unacknowledged(self, service, claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(response_code=None))
        communication = await service.send_unsolicited(claim.id, TEXT_PAYLOAD)
        assert communication.acknowledgment_received is False
        assert communication.acknowledgment_status == "queued"
        return communication

    async def test_poll_receives_acknowledgment(self, service, queued_claim, nphies, fhir):
        communication = await self._unacknowledged(service, queued_claim, nphies, fhir)
        nphies.reply(
            fhir.response_bundle(fhir.nested_message(fhir.acknowledgment(communication.communication_id)))
        )

        result = await service.poll_acknowledgment(queued_claim.id, communication.communication_id)

        assert result.polled is True
        assert result.message == "Acknowledgment received: ok"
        assert communication.acknowledgment_received is True
        assert communication.acknowledgment_status == "ok"
        assert queued_claim.status == "queued"

    async def test_poll_without_acknowledgment(self, service, queued_claim, nphies, fhir):
        communication = await self._unacknowledged(service, queued_claim, nphies, fhir)
        nphies.reply(fhir.response_bundle())

        result = await service.poll_acknowledgment(queued_claim.id, communication.communication_id)

        assert result.message == "No acknowledgment found. The message may still be processing."
        assert communication.acknowledgment_received is False

    async def test_error_acknowledgment(self, service, queued_claim, nphies, fhir):
        communication = await self._unacknowledged(service, queued_claim, nphies, fhir)
        nphies.reply(
            fhir.response_bundle(
                fhir.acknowledgment(communication.communication_id, status="entered-in-error")
            )
        )

        await service.poll_acknowledgment(queued_claim.id, communication.communication_id)

        assert communication.acknowledgment_status == "fatal-error"

    async def test_already_acknowledged_is_not_polled(self, service, queued_claim, nphies, fhir):
        nphies.reply(fhir.response_bundle(response_code="ok"))
        communication = await service.send_unsolicited(queued_claim.id, TEXT_PAYLOAD)

        result = await service.poll_acknowledgment(queued_claim.id, communication.communication_id)

        assert result.already_acknowledged is True
        assert result.polled is False
        assert nphies.call_count == 1

    async def test_unknown_communication(self, service, queued_claim):
        with pytest.raises(ClaimSubmissionNotFoundError):
            await service.poll_acknowledgment(queued_claim.id, "missing")

    async def test_poll_all_sends_one_poll(self, service, queued_claim, nphies, fhir):
        first = await self._unacknowledged(service, queued_claim, nphies, fhir)
        await self._unacknowledged(service, queued_claim, nphies, fhir)
        nphies.reply(fhir.response_bundle(fhir.acknowledgment(first.communication_id)))

        result = await service.poll_all_acknowledgments(queued_claim.id)

        assert nphies.call_count == 3
        assert result.checked == 2
        assert result.acknowledged == 1
        assert result.still_queued == 1
        assert result.errors == []

    async def test_poll_all_with_nothing_waiting(self, service, queued_claim, nphies):
        result = await service.poll_all_acknowledgments(queued_claim.id)

        assert result.checked == 0
        assert nphies.call_count == 0

    async def test_poll_all_reports_gateway_error(self, service, queued_claim, nphies, fhir):
        await self._unacknowledged(service, queued_claim, nphies, fhir)
        nphies.reply(httpx.Response(500, text="down"))

        result = await service.poll_all_acknowledgments(queued_claim.id)

        assert result.checked == 1
        assert result.still_queued == 1
        assert len(result.errors) == 1
