"""
Claim Communication Service.

Provides the NPHIES exchanges that follow a claim submission:
- Status-check (preview and send)
- Poll for ClaimResponse, CommunicationRequest and acknowledgments
- Unsolicited and solicited Communications
- Acknowledgment polling for sent Communications

Each call performs at most one outbound round trip. Acknowledgment
advancement is operator driven through the poll operations; nothing polls in
the background.

Source: https://portal.nphies.sa/ig/usecase-communication.html
Verified: 2025-12-18
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import (
    AcknowledgmentStatus,
    ClaimSubmissionStatus,
    CommunicationStatus,
    CommunicationType,
    NphiesOutcome,
    ResponseType,
)
from src.gateways.nphies_gateway import (
    NphiesGateway,
    NphiesGatewayError,
    NphiesResponse,
    extract_resources,
    get_nphies_gateway,
    message_header_response_code,
)
from src.models.base import utcnow
from src.models.claim_submission import ClaimSubmission, ClaimSubmissionResponse
from src.models.communication import (
    Communication,
    CommunicationPayload,
    CommunicationRequest,
)
from src.services.claim_bundle_builder import ClaimBundleBuilder, parse_claim_response
from src.services.claim_submission_service import (
    ClaimSubmissionGatewayError,
    ClaimSubmissionNotFoundError,
    ClaimSubmissionStateError,
    ClaimSubmissionValidationError,
)
from src.services.communication_mapper import (
    CommunicationMapper,
    CommunicationPayloadError,
)
from src.services.nphies_fhir import new_id

logger = logging.getLogger(__name__)

POLLABLE_STATUSES = (
    ClaimSubmissionStatus.PENDING.value,
    ClaimSubmissionStatus.QUEUED.value,
)
UNSENT_STATUSES = (ClaimSubmissionStatus.DRAFT.value,)

MESSAGE_CLAIM_RESPONSE = "ClaimResponse received - claim has been adjudicated"
MESSAGE_COMMUNICATION_REQUEST = (
    "CommunicationRequest received - insurer needs additional information"
)
MESSAGE_NO_NEW_MESSAGES = "No new messages. The insurer may still be processing."


@dataclass
class PollResult:
    """Outcome of one claim poll."""

    claim: ClaimSubmission
    polled: bool
    message: str
    claim_responses: int = 0
    communication_requests: int = 0
    acknowledgments: int = 0


@dataclass
class StatusCheckResult:
    claim: ClaimSubmission
    outcome: str
    response_code: Optional[str] = None
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AcknowledgmentPollResult:
    communication: Communication
    message: str
    already_acknowledged: bool = False
    polled: bool = False


@dataclass
class AcknowledgmentPollAllResult:
    checked: int = 0
    acknowledged: int = 0
    still_queued: int = 0
    errors: list[str] = field(default_factory=list)


def poll_status_for(parsed: dict[str, Any]) -> tuple[str, Optional[str]]:
    """
    Claim status (and adjudication outcome override) for a polled
    ClaimResponse.
    """
    outcome = parsed["outcome"]
    if outcome == NphiesOutcome.QUEUED.value:
        return ClaimSubmissionStatus.QUEUED.value, parsed["adjudication_outcome"]
    if outcome == NphiesOutcome.ERROR.value:
        return ClaimSubmissionStatus.ERROR.value, parsed["adjudication_outcome"]
    if outcome == NphiesOutcome.PARTIAL.value:
        return ClaimSubmissionStatus.APPROVED.value, "partial"

    disposition = (parsed["disposition"] or "").lower()
    if (
        parsed["adjudication_outcome"] == "rejected"
        or "denied" in disposition
        or "reject" in disposition
    ):
        return ClaimSubmissionStatus.DENIED.value, parsed["adjudication_outcome"]
    return ClaimSubmissionStatus.APPROVED.value, parsed["adjudication_outcome"]


def acknowledgment_status_for(communication_status: Optional[str]) -> str:
    """Acknowledgment status recorded when an acknowledgment arrives."""
    if communication_status == CommunicationStatus.ENTERED_IN_ERROR.value:
        return AcknowledgmentStatus.FATAL_ERROR.value
    return AcknowledgmentStatus.OK.value


class ClaimCommunicationService:
    """Status-check, poll and Communication exchanges for submitted claims."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[NphiesGateway] = None,
        builder: Optional[ClaimBundleBuilder] = None,
        mapper: Optional[CommunicationMapper] = None,
    ):
        self.session = session
        self.gateway = gateway or get_nphies_gateway()
        self.builder = builder or ClaimBundleBuilder()
        self.mapper = mapper or CommunicationMapper()

    async def _get_claim(self, claim_id: UUID) -> ClaimSubmission:
        result = await self.session.execute(
            select(ClaimSubmission).where(ClaimSubmission.id == claim_id)
        )
        claim = result.scalar_one_or_none()
        if claim is None:
            raise ClaimSubmissionNotFoundError(f"Claim submission not found: {claim_id}")
        return claim

    def _require_sent(self, claim: ClaimSubmission, operation: str) -> None:
        if claim.status in UNSENT_STATUSES:
            raise ClaimSubmissionStateError(
                f"Cannot {operation} a claim that has not been sent (status: {claim.status})"
            )

    def _record_response(
        self,
        claim: ClaimSubmission,
        response_type: str,
        outcome: str,
        disposition: Optional[str] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        bundle: Optional[dict[str, Any]] = None,
        nphies_claim_id: Optional[str] = None,
    ) -> None:
        self.session.add(
            ClaimSubmissionResponse(
                claim_id=claim.id,
                response_type=response_type,
                outcome=outcome,
                disposition=disposition,
                errors=errors or None,
                bundle_json=bundle,
                nphies_claim_id=nphies_claim_id,
            )
        )

    # =========================================================================
    # Status Check
    # =========================================================================

    async def preview_status_check(self, claim_id: UUID) -> dict[str, Any]:
        claim = await self._get_claim(claim_id)
        return self.builder.build_status_check_bundle(claim)

    async def status_check(self, claim_id: UUID) -> StatusCheckResult:
        """
        Ask NPHIES for the processing status of a sent claim.

        The claim status is not changed; a ``poll`` response row records the
        round trip.
        """
        claim = await self._get_claim(claim_id)
        self._require_sent(claim, "status-check")
        bundle = self.builder.build_status_check_bundle(claim)

        try:
            result = await self.gateway.send_status_check(bundle)
        except NphiesGatewayError as e:
            logger.error(f"Status-check for {claim.claim_number} failed: {e}")
            self._record_response(
                claim,
                ResponseType.POLL.value,
                NphiesOutcome.ERROR.value,
                disposition=str(e),
                errors=e.errors or [{"code": e.code, "details": str(e)}],
                bundle=e.response_data,
            )
            await self.session.commit()
            raise ClaimSubmissionGatewayError(str(e), e.errors) from e

        failed = not result.success or result.has_errors
        outcome = NphiesOutcome.ERROR.value if failed else NphiesOutcome.QUEUED.value
        self._record_response(
            claim,
            ResponseType.POLL.value,
            outcome,
            disposition=result.error_message() if failed else None,
            errors=result.errors,
            bundle=result.data,
        )
        await self.session.commit()

        logger.info(f"Status-check for {claim.claim_number}: {outcome}")
        return StatusCheckResult(
            claim=claim,
            outcome=outcome,
            response_code=result.response_code,
            errors=result.errors,
        )

    # =========================================================================
    # Poll
    # =========================================================================

    async def poll(self, claim_id: UUID) -> PollResult:
        """
        Poll NPHIES for messages about a claim.

        Claims outside pending/queued are returned unchanged without an
        outbound call. A failed poll leaves the status untouched.

        Raises:
            ClaimSubmissionNotFoundError: if the claim does not exist
            ClaimSubmissionGatewayError: if the poll round trip failed
        """
        claim = await self._get_claim(claim_id)
        if claim.status not in POLLABLE_STATUSES:
            return PollResult(
                claim=claim,
                polled=False,
                message=f"Claim is '{claim.status}'; nothing to poll",
            )

        result = await self._send_poll(claim)

        claim_responses = extract_resources(result.data, "ClaimResponse")
        if claim_responses:
            self._apply_claim_response(claim, claim_responses[-1], result.data)
        else:
            claim.status = ClaimSubmissionStatus.QUEUED.value
            self._record_response(
                claim,
                ResponseType.POLL.value,
                NphiesOutcome.QUEUED.value,
                bundle=result.data,
            )

        new_requests = await self._store_communication_requests(claim, result.data)
        acknowledged = await self._apply_acknowledgments(result.data)
        await self.session.commit()

        if claim_responses:
            message = MESSAGE_CLAIM_RESPONSE
        elif new_requests:
            message = MESSAGE_COMMUNICATION_REQUEST
        else:
            message = MESSAGE_NO_NEW_MESSAGES

        logger.info(f"Polled claim {claim.claim_number}: status={claim.status}; {message}")
        return PollResult(
            claim=claim,
            polled=True,
            message=message,
            claim_responses=len(claim_responses),
            communication_requests=len(new_requests),
            acknowledgments=len(acknowledged),
        )

    async def _send_poll(self, claim: ClaimSubmission) -> NphiesResponse:
        """One poll round trip; failures are recorded and raised."""
        bundle = self.builder.build_poll_bundle(claim)
        try:
            result = await self.gateway.send_poll(bundle)
        except NphiesGatewayError as e:
            await self._record_poll_failure(claim, str(e), e.errors, e.response_data)
            raise ClaimSubmissionGatewayError(str(e), e.errors) from e

        if not result.success or result.has_errors:
            message = result.error_message()
            await self._record_poll_failure(claim, message, result.errors, result.data)
            raise ClaimSubmissionGatewayError(message, result.errors)
        return result

    async def _record_poll_failure(
        self,
        claim: ClaimSubmission,
        message: str,
        errors: list[dict[str, Any]],
        bundle: Optional[dict[str, Any]],
    ) -> None:
        logger.error(f"Poll for {claim.claim_number} failed: {message}")
        self._record_response(
            claim,
            ResponseType.POLL.value,
            NphiesOutcome.ERROR.value,
            disposition=message,
            errors=errors or [{"code": "POLL_FAILED", "details": message}],
            bundle=bundle,
        )
        await self.session.commit()

    def _apply_claim_response(
        self,
        claim: ClaimSubmission,
        claim_response: dict[str, Any],
        bundle: Optional[dict[str, Any]],
    ) -> None:
        parsed = parse_claim_response(claim_response)
        claim.status, claim.adjudication_outcome = poll_status_for(parsed)
        claim.outcome = parsed["outcome"]
        claim.disposition = parsed["disposition"]
        if parsed["nphies_claim_id"]:
            claim.nphies_claim_id = parsed["nphies_claim_id"]
        if parsed["total_submitted"] is not None:
            claim.total_amount = parsed["total_submitted"]
        if parsed["total_benefit"] is not None:
            claim.approved_amount = parsed["total_benefit"]
        claim.response_bundle = bundle
        claim.response_date = utcnow()

        response_type = (
            ResponseType.POLL.value
            if parsed["outcome"] == NphiesOutcome.QUEUED.value
            else ResponseType.FINAL.value
        )
        self._record_response(
            claim,
            response_type,
            parsed["outcome"],
            disposition=parsed["disposition"],
            bundle=bundle,
            nphies_claim_id=parsed["nphies_claim_id"],
        )

    async def _store_communication_requests(
        self, claim: ClaimSubmission, bundle: Optional[dict[str, Any]]
    ) -> list[CommunicationRequest]:
        """Store CommunicationRequests not seen before (deduplicated by id)."""
        stored = []
        seen: set[str] = set()
        for resource in extract_resources(bundle, "CommunicationRequest"):
            parsed = self.mapper.parse_communication_request(resource)
            if not parsed["request_id"] or parsed["request_id"] in seen:
                continue
            seen.add(parsed["request_id"])
            existing = await self.session.execute(
                select(CommunicationRequest.id).where(
                    CommunicationRequest.request_id == parsed["request_id"]
                )
            )
            if existing.scalar_one_or_none() is not None:
                logger.debug(f"CommunicationRequest {parsed['request_id']} already stored")
                continue

            request = CommunicationRequest(
                claim_id=claim.id,
                request_bundle=resource,
                received_at=utcnow(),
                **parsed,
            )
            self.session.add(request)
            stored.append(request)
            logger.info(
                f"Stored CommunicationRequest {parsed['request_id']} for {claim.claim_number}"
            )
        if stored:
            await self.session.flush()
        return stored

    async def _apply_acknowledgments(
        self, bundle: Optional[dict[str, Any]]
    ) -> list[Communication]:
        """Record acknowledgments on the Communications they answer."""
        acknowledged = []
        for resource in extract_resources(bundle, "Communication"):
            parsed = self.mapper.parse_communication(resource)
            if not parsed["in_response_to_id"]:
                continue
            result = await self.session.execute(
                select(Communication).where(
                    Communication.communication_id == parsed["in_response_to_id"]
                )
            )
            communication = result.scalar_one_or_none()
            if communication is None:
                logger.warning(
                    f"Acknowledgment for unknown Communication {parsed['in_response_to_id']}"
                )
                continue

            communication.acknowledgment_received = True
            communication.acknowledgment_at = utcnow()
            communication.acknowledgment_status = acknowledgment_status_for(parsed["status"])
            communication.acknowledgment_bundle = resource
            acknowledged.append(communication)
        return acknowledged

    # =========================================================================
    # Communications
    # =========================================================================

    async def _get_communication_request(
        self, claim: ClaimSubmission, request_id: UUID
    ) -> CommunicationRequest:
        result = await self.session.execute(
            select(CommunicationRequest).where(
                CommunicationRequest.id == request_id,
                CommunicationRequest.claim_id == claim.id,
            )
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise ClaimSubmissionNotFoundError(
                f"Communication request not found: {request_id}"
            )
        return request

    def _build_bundle(
        self,
        claim: ClaimSubmission,
        payloads: list[dict[str, Any]],
        communication_id: str,
        communication_request: Optional[CommunicationRequest] = None,
    ) -> dict[str, Any]:
        try:
            return self.mapper.build_communication_bundle(
                claim,
                payloads,
                communication_id=communication_id,
                communication_request=communication_request,
            )
        except CommunicationPayloadError as e:
            raise ClaimSubmissionValidationError(str(e), ["payloads"]) from e

    async def preview_communication(
        self,
        claim_id: UUID,
        payloads: list[dict[str, Any]],
        communication_request_id: Optional[UUID] = None,
    ) -> tuple[str, dict[str, Any]]:
        """Build a Communication bundle without sending it."""
        claim = await self._get_claim(claim_id)
        request = None
        if communication_request_id is not None:
            request = await self._get_communication_request(claim, communication_request_id)
        communication_type = (
            CommunicationType.SOLICITED.value if request else CommunicationType.UNSOLICITED.value
        )
        return communication_type, self._build_bundle(claim, payloads, new_id(), request)

    async def send_unsolicited(
        self, claim_id: UUID, payloads: list[dict[str, Any]]
    ) -> Communication:
        """Provider-initiated Communication about a claim."""
        claim = await self._get_claim(claim_id)
        self._require_sent(claim, "send a communication for")
        return await self._send_communication(claim, payloads)

    async def send_solicited(
        self,
        claim_id: UUID,
        communication_request_id: UUID,
        payloads: list[dict[str, Any]],
    ) -> Communication:
        """Answer a stored CommunicationRequest. A request may be answered more than once."""
        claim = await self._get_claim(claim_id)
        request = await self._get_communication_request(claim, communication_request_id)
        return await self._send_communication(claim, payloads, request)

    async def _send_communication(
        self,
        claim: ClaimSubmission,
        payloads: list[dict[str, Any]],
        request: Optional[CommunicationRequest] = None,
    ) -> Communication:
        communication_id = new_id()
        bundle = self._build_bundle(claim, payloads, communication_id, request)
        resource = bundle["entry"][1]["resource"]

        communication = Communication(
            id=uuid4(),
            communication_id=communication_id,
            claim_id=claim.id,
            communication_type=(
                CommunicationType.SOLICITED.value
                if request
                else CommunicationType.UNSOLICITED.value
            ),
            based_on_request_id=request.id if request else None,
            about_reference=resource["about"][0]["reference"],
            about_type=resource["about"][0]["type"],
            sender_identifier=resource["sender"]["identifier"]["value"],
            recipient_identifier=resource["recipient"][0]["identifier"]["value"],
            sent_at=utcnow(),
            request_bundle=bundle,
            payloads=self._payload_rows(payloads),
        )
        self.session.add(communication)

        gateway_error: Optional[ClaimSubmissionGatewayError] = None
        try:
            result = await self.gateway.send_communication(bundle)
        except NphiesGatewayError as e:
            communication.status = CommunicationStatus.ENTERED_IN_ERROR.value
            communication.response_bundle = e.response_data
            gateway_error = ClaimSubmissionGatewayError(str(e), e.errors)
        else:
            communication.response_bundle = result.data
            if not result.success or result.has_errors:
                communication.status = CommunicationStatus.ENTERED_IN_ERROR.value
                gateway_error = ClaimSubmissionGatewayError(result.error_message(), result.errors)
            else:
                code = message_header_response_code(result.data)
                communication.status = CommunicationStatus.COMPLETED.value
                communication.acknowledgment_received = code is not None
                communication.acknowledgment_at = utcnow() if code else None
                communication.acknowledgment_status = code or AcknowledgmentStatus.QUEUED.value
                if request is not None:
                    request.responded_at = utcnow()
                    request.response_communication_id = communication.id

        await self.session.commit()

        if gateway_error is not None:
            logger.error(
                f"Communication {communication_id} for {claim.claim_number} failed: {gateway_error}"
            )
            raise gateway_error

        logger.info(
            f"Sent {communication.communication_type} communication {communication_id} "
            f"for {claim.claim_number} (ack={communication.acknowledgment_status})"
        )
        return communication

    @staticmethod
    def _payload_rows(payloads: list[dict[str, Any]]) -> list[CommunicationPayload]:
        rows = []
        for payload in payloads:
            if not CommunicationMapper.build_payloads([payload]):
                continue
            attachment = payload.get("attachment") or {}
            reference = payload.get("reference") or {}
            rows.append(
                CommunicationPayload(
                    sequence=len(rows) + 1,
                    content_type=payload.get("content_type"),
                    content_string=payload.get("content_string"),
                    attachment_content_type=attachment.get("content_type"),
                    attachment_data=attachment.get("data"),
                    attachment_url=attachment.get("url"),
                    attachment_title=attachment.get("title"),
                    attachment_size=attachment.get("size"),
                    reference_value=reference.get("value"),
                    reference_type=reference.get("type"),
                    claim_item_sequences=payload.get("claim_item_sequences") or None,
                    created_at=utcnow(),
                )
            )
        return rows

    async def list_communication_requests(
        self, claim_id: UUID, pending_only: bool = False
    ) -> list[CommunicationRequest]:
        claim = await self._get_claim(claim_id)
        query = select(CommunicationRequest).where(CommunicationRequest.claim_id == claim.id)
        if pending_only:
            query = query.where(CommunicationRequest.responded_at.is_(None))
        result = await self.session.execute(query.order_by(CommunicationRequest.received_at))
        return list(result.scalars().all())

    async def list_communications(self, claim_id: UUID) -> list[Communication]:
        """Communications for a claim in creation order."""
        claim = await self._get_claim(claim_id)
        result = await self.session.execute(
            select(Communication)
            .where(Communication.claim_id == claim.id)
            .order_by(Communication.created_at, Communication.sent_at)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Acknowledgment Polling
    # =========================================================================

    async def poll_acknowledgment(
        self, claim_id: UUID, communication_id: str
    ) -> AcknowledgmentPollResult:
        """
        Poll once for the acknowledgment of one Communication.

        ``communication_id`` is the Communication.id sent to NPHIES.
        """
        claim = await self._get_claim(claim_id)
        result = await self.session.execute(
            select(Communication).where(
                Communication.claim_id == claim.id,
                Communication.communication_id == communication_id,
            )
        )
        communication = result.scalar_one_or_none()
        if communication is None:
            raise ClaimSubmissionNotFoundError(f"Communication not found: {communication_id}")

        if (
            communication.acknowledgment_received
            and communication.acknowledgment_status == AcknowledgmentStatus.OK.value
        ):
            return AcknowledgmentPollResult(
                communication=communication,
                message="Communication was already acknowledged",
                already_acknowledged=True,
            )

        poll_result = await self._send_poll(claim)
        await self._store_communication_requests(claim, poll_result.data)
        acknowledged = await self._apply_acknowledgments(poll_result.data)
        await self.session.commit()

        if communication in acknowledged:
            message = f"Acknowledgment received: {communication.acknowledgment_status}"
        else:
            message = "No acknowledgment found. The message may still be processing."
        return AcknowledgmentPollResult(
            communication=communication, message=message, polled=True
        )

    async def poll_all_acknowledgments(self, claim_id: UUID) -> AcknowledgmentPollAllResult:
        """
        Poll once for every Communication of a claim still awaiting an
        acknowledgment.
        """
        claim = await self._get_claim(claim_id)
        result = await self.session.execute(
            select(Communication).where(
                Communication.claim_id == claim.id,
                or_(
                    Communication.acknowledgment_status == AcknowledgmentStatus.QUEUED.value,
                    and_(
                        Communication.acknowledgment_received.is_(False),
                        Communication.status == CommunicationStatus.COMPLETED.value,
                    ),
                ),
            )
        )
        waiting = list(result.scalars().all())
        if not waiting:
            return AcknowledgmentPollAllResult()

        try:
            poll_result = await self._send_poll(claim)
        except ClaimSubmissionGatewayError as e:
            return AcknowledgmentPollAllResult(
                checked=len(waiting), still_queued=len(waiting), errors=[str(e)]
            )

        await self._store_communication_requests(claim, poll_result.data)
        acknowledged = await self._apply_acknowledgments(poll_result.data)
        await self.session.commit()

        acknowledged_count = sum(1 for c in waiting if c in acknowledged)
        return AcknowledgmentPollAllResult(
            checked=len(waiting),
            acknowledged=acknowledged_count,
            still_queued=len(waiting) - acknowledged_count,
        )

