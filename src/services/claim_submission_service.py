"""
Claim Submission Service.

Provides:
- Claim submission CRUD (drafts are editable, sent claims are not)
- Send to NPHIES: one claim-request round trip per call
- Bundle preview and stored bundle retrieval
- Cancellation (cancel-request Task for claims already sent)

Every NPHIES operation loads the claim, builds one message, performs one
outbound call, parses one response and writes the result back. Nothing is
retried.

Source: https://portal.nphies.sa/ig/usecase-claims.html
Verified: 2025-12-18
"""

import logging
import time
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import (
    AdjudicationOutcome,
    ClaimSubmissionStatus,
    NphiesOutcome,
    ResponseType,
)
from src.gateways.nphies_gateway import (
    NphiesGateway,
    NphiesGatewayError,
    extract_resources,
    get_nphies_gateway,
)
from src.models.base import utcnow
from src.models.claim_submission import (
    ClaimSubmission,
    ClaimSubmissionDiagnosis,
    ClaimSubmissionItem,
    ClaimSubmissionResponse,
    ClaimSubmissionSupportingInfo,
)
from src.schemas.claim_submission import (
    ClaimSubmissionCreate,
    ClaimSubmissionDiagnosisCreate,
    ClaimSubmissionItemCreate,
    ClaimSubmissionSupportingInfoCreate,
    ClaimSubmissionUpdate,
)
from src.services.claim_bundle_builder import (
    BundleValidationError,
    ClaimBundleBuilder,
    parse_claim_response,
)

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = (ClaimSubmissionStatus.DRAFT.value, ClaimSubmissionStatus.ERROR.value)
EDITABLE_STATUSES = SENDABLE_STATUSES
DELETABLE_STATUSES = (ClaimSubmissionStatus.DRAFT.value,)
UNCANCELLABLE_STATUSES = (
    ClaimSubmissionStatus.CANCELLED.value,
    ClaimSubmissionStatus.PAID.value,
)
CANCEL_REFUSED_TASK_STATUSES = ("failed", "rejected")
REQUIRED_COLUMNS = ("claim_number", "claim_type", "encounter_class", "priority", "currency")


# =============================================================================
# Exceptions
# =============================================================================


class ClaimSubmissionError(Exception):
    """Base exception for claim submission workflow errors."""

    pass


class ClaimSubmissionNotFoundError(ClaimSubmissionError):
    """Raised when a claim submission (or a record under it) is not found."""

    pass


class ClaimSubmissionValidationError(ClaimSubmissionError):
    """Raised when a claim or payload is incomplete."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ClaimSubmissionStateError(ClaimSubmissionError):
    """Raised when an operation is not allowed from the current status."""

    pass


class ClaimSubmissionGatewayError(ClaimSubmissionError):
    """Raised when NPHIES could not be reached or answered with errors."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


# =============================================================================
# Helpers
# =============================================================================


def generate_claim_number() -> str:
    """CLM-<epoch milliseconds>"""
    return f"CLM-{int(time.time() * 1000)}"


def _build_items(items: list[ClaimSubmissionItemCreate]) -> list[ClaimSubmissionItem]:
    return [
        ClaimSubmissionItem(
            sequence=item.sequence or position,
            product_or_service_code=item.product_or_service_code,
            product_or_service_system=item.product_or_service_system,
            product_or_service_display=item.product_or_service_display,
            quantity=item.quantity,
            unit_price=item.unit_price,
            factor=item.factor,
            tax=item.tax,
            patient_share=item.patient_share,
            serviced_date=item.serviced_date,
            diagnosis_sequences=item.diagnosis_sequences,
            information_sequences=item.information_sequences,
        )
        for position, item in enumerate(items, start=1)
    ]


def _build_diagnoses(
    diagnoses: list[ClaimSubmissionDiagnosisCreate],
) -> list[ClaimSubmissionDiagnosis]:
    return [
        ClaimSubmissionDiagnosis(
            sequence=diagnosis.sequence or position,
            diagnosis_code=diagnosis.diagnosis_code,
            diagnosis_system=diagnosis.diagnosis_system,
            diagnosis_display=diagnosis.diagnosis_display,
            diagnosis_type=diagnosis.diagnosis_type,
        )
        for position, diagnosis in enumerate(diagnoses, start=1)
    ]


def _build_supporting_info(
    entries: list[ClaimSubmissionSupportingInfoCreate],
) -> list[ClaimSubmissionSupportingInfo]:
    return [
        ClaimSubmissionSupportingInfo(
            sequence=entry.sequence or position,
            **entry.model_dump(exclude={"sequence"}),
        )
        for position, entry in enumerate(entries, start=1)
    ]


def send_status_for(parsed: dict[str, Any]) -> tuple[str, Optional[str]]:
    """
    Claim status (and adjudication outcome override) after the immediate
    answer to a claim request. Partial outcomes read as approved, as on poll.
    """
    adjudication_outcome = parsed["adjudication_outcome"]
    if parsed["outcome"] == NphiesOutcome.QUEUED.value:
        return ClaimSubmissionStatus.QUEUED.value, adjudication_outcome
    if parsed["outcome"] == NphiesOutcome.PARTIAL.value:
        return ClaimSubmissionStatus.APPROVED.value, AdjudicationOutcome.PARTIAL.value
    if adjudication_outcome == AdjudicationOutcome.REJECTED.value or not parsed["success"]:
        return ClaimSubmissionStatus.DENIED.value, adjudication_outcome
    return ClaimSubmissionStatus.APPROVED.value, adjudication_outcome


# =============================================================================
# Claim Submission Service
# =============================================================================


class ClaimSubmissionService:
    """
    Service for claim submission CRUD and sending.

    Status guards:
    - update: draft | error
    - delete: draft
    - send: draft | error
    - cancel: anything except cancelled | paid (drafts locally, others via NPHIES)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[NphiesGateway] = None,
        builder: Optional[ClaimBundleBuilder] = None,
    ):
        self.session = session
        self.gateway = gateway or get_nphies_gateway()
        self.builder = builder or ClaimBundleBuilder()

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def get_claim(self, claim_id: UUID, reload: bool = False) -> Optional[ClaimSubmission]:
        """Get a claim with parties and child rows loaded."""
        query = select(ClaimSubmission).where(ClaimSubmission.id == claim_id)
        if reload:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_claim_or_raise(
        self, claim_id: UUID, reload: bool = False
    ) -> ClaimSubmission:
        claim = await self.get_claim(claim_id, reload=reload)
        if claim is None:
            raise ClaimSubmissionNotFoundError(f"Claim submission not found: {claim_id}")
        return claim

    async def list_claims(
        self,
        skip: int = 0,
        limit: int = 20,
        status: Optional[str] = None,
    ) -> tuple[list[ClaimSubmission], int]:
        """
        List claims newest first.

        Returns:
            Tuple of (claims list, total count)
        """
        query = select(ClaimSubmission)
        if status:
            query = query.where(ClaimSubmission.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar_one()

        query = (
            query.order_by(ClaimSubmission.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all()), total

    async def list_responses(self, claim_id: UUID) -> list[ClaimSubmissionResponse]:
        result = await self.session.execute(
            select(ClaimSubmissionResponse)
            .where(ClaimSubmissionResponse.claim_id == claim_id)
            .order_by(ClaimSubmissionResponse.received_at)
        )
        return list(result.scalars().all())

    async def get_bundles(self, claim_id: UUID) -> dict[str, Any]:
        """Stored request/response bundles and the response history."""
        claim = await self.get_claim_or_raise(claim_id)
        return {
            "claim_id": claim.id,
            "request_bundle": claim.request_bundle,
            "response_bundle": claim.response_bundle,
            "responses": await self.list_responses(claim.id),
        }

    # =========================================================================
    # Create / Update / Delete
    # =========================================================================

    async def create_claim(self, data: ClaimSubmissionCreate) -> ClaimSubmission:
        """Create a draft. Incomplete drafts are accepted."""
        claim = ClaimSubmission(
            claim_number=data.claim_number or generate_claim_number(),
            claim_type=data.claim_type.value,
            sub_type=data.sub_type,
            encounter_class=data.encounter_class.value,
            priority=data.priority,
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            insurer_id=data.insurer_id,
            service_date=data.service_date,
            member_id=data.member_id,
            practice_code=data.practice_code,
            pre_auth_ref=data.pre_auth_ref,
            total_amount=data.total_amount,
            currency=data.currency,
            status=ClaimSubmissionStatus.DRAFT.value,
            items=_build_items(data.items),
            diagnoses=_build_diagnoses(data.diagnoses),
            supporting_info=_build_supporting_info(data.supporting_info),
        )
        self.session.add(claim)
        await self.session.commit()

        logger.info(f"Created claim submission {claim.claim_number} ({claim.id})")
        return await self.get_claim_or_raise(claim.id, reload=True)

    async def update_claim(
        self, claim_id: UUID, data: ClaimSubmissionUpdate
    ) -> ClaimSubmission:
        """
        Apply a partial update.

        Raises:
            ClaimSubmissionNotFoundError: if the claim does not exist
            ClaimSubmissionStateError: if the claim is not draft or error
        """
        claim = await self.get_claim_or_raise(claim_id)
        if claim.status not in EDITABLE_STATUSES:
            raise ClaimSubmissionStateError(
                f"Cannot update claim in '{claim.status}' status"
            )

        changes = data.model_dump(
            exclude_unset=True, exclude={"items", "diagnoses", "supporting_info"}
        )
        for field, value in changes.items():
            if value is None and field in REQUIRED_COLUMNS:
                continue
            setattr(claim, field, value.value if hasattr(value, "value") else value)

        # Replaced lists are flushed empty first so sequence uniqueness holds
        if data.items is not None:
            claim.items.clear()
            await self.session.flush()
            claim.items.extend(_build_items(data.items))
        if data.diagnoses is not None:
            claim.diagnoses.clear()
            await self.session.flush()
            claim.diagnoses.extend(_build_diagnoses(data.diagnoses))
        if data.supporting_info is not None:
            claim.supporting_info.clear()
            await self.session.flush()
            claim.supporting_info.extend(_build_supporting_info(data.supporting_info))

        await self.session.commit()
        logger.info(f"Updated claim submission {claim.claim_number}")
        return await self.get_claim_or_raise(claim.id, reload=True)

    async def delete_claim(self, claim_id: UUID) -> None:
        """Delete a draft claim with its child rows."""
        claim = await self.get_claim_or_raise(claim_id)
        if claim.status not in DELETABLE_STATUSES:
            raise ClaimSubmissionStateError(
                f"Can only delete draft claims, current: {claim.status}"
            )
        await self.session.delete(claim)
        await self.session.commit()
        logger.info(f"Deleted claim submission {claim_id}")

    async def cancel_claim(
        self, claim_id: UUID, reason: Optional[str] = None
    ) -> ClaimSubmission:
        """
        Cancel a claim.

        Drafts never reached NPHIES and are cancelled locally. Any other claim
        is withdrawn with a cancel-request Task and is only marked cancelled
        once NPHIES accepts it; a refused or failed request leaves the status
        unchanged and records an error row.

        Raises:
            ClaimSubmissionNotFoundError: if the claim does not exist
            ClaimSubmissionStateError: if the claim is cancelled or paid
            ClaimSubmissionGatewayError: if NPHIES failed or refused the cancel
        """
        claim = await self.get_claim_or_raise(claim_id)
        if claim.status in UNCANCELLABLE_STATUSES:
            raise ClaimSubmissionStateError(
                f"Cannot cancel claim in '{claim.status}' status"
            )

        if claim.status == ClaimSubmissionStatus.DRAFT.value:
            claim.status = ClaimSubmissionStatus.CANCELLED.value
            claim.cancellation_reason = reason
            await self.session.commit()
            logger.info(f"Cancelled draft claim submission {claim.claim_number}")
            return claim

        bundle = self.builder.build_cancel_bundle(claim, reason)
        try:
            result = await self.gateway.send_cancel_request(bundle)
        except NphiesGatewayError as e:
            await self._record_cancel_failure(claim, str(e), e.errors, e.response_data)
            raise ClaimSubmissionGatewayError(str(e), e.errors) from e

        tasks = extract_resources(result.data, "Task")
        task_status = tasks[0].get("status") if tasks else None
        message = None
        if not result.success or result.has_errors:
            message = result.error_message()
        elif task_status in CANCEL_REFUSED_TASK_STATUSES:
            message = f"NPHIES refused the cancel request (task status: {task_status})"
        if message:
            await self._record_cancel_failure(claim, message, result.errors, result.data)
            raise ClaimSubmissionGatewayError(message, result.errors)

        claim.status = ClaimSubmissionStatus.CANCELLED.value
        claim.cancellation_reason = reason
        self.session.add(
            ClaimSubmissionResponse(
                claim_id=claim.id,
                response_type=ResponseType.CANCEL.value,
                outcome=NphiesOutcome.COMPLETE.value,
                disposition=task_status,
                nphies_claim_id=claim.nphies_claim_id,
                bundle_json=result.data,
            )
        )
        await self.session.commit()
        logger.info(f"Cancelled claim submission {claim.claim_number} (task: {task_status})")
        return claim

    # =========================================================================
    # NPHIES Send
    # =========================================================================

    def _validated_bundle(self, claim: ClaimSubmission) -> dict[str, Any]:
        try:
            return self.builder.build_claim_bundle(claim)
        except BundleValidationError as e:
            raise ClaimSubmissionValidationError(str(e), e.missing) from e

    async def preview_bundle(self, claim_id: UUID) -> dict[str, Any]:
        """Build the claim-request bundle without sending or storing it."""
        claim = await self.get_claim_or_raise(claim_id)
        return self._validated_bundle(claim)

    async def send_claim(self, claim_id: UUID) -> ClaimSubmission:
        """
        Send a claim to NPHIES.

        The claim is validated and the bundle built before any outbound call.
        On failure the error state is committed before the exception is
        raised.

        Raises:
            ClaimSubmissionNotFoundError: if the claim does not exist
            ClaimSubmissionStateError: if the claim is not draft or error
            ClaimSubmissionValidationError: if required fields are missing
            ClaimSubmissionGatewayError: if NPHIES failed or returned errors
        """
        claim = await self.get_claim_or_raise(claim_id)
        if claim.status not in SENDABLE_STATUSES:
            raise ClaimSubmissionStateError(
                f"Only draft or error claims can be sent, current: {claim.status}"
            )

        sent_at = utcnow()
        claim.request_date = sent_at
        bundle = self._validated_bundle(claim)

        claim.status = ClaimSubmissionStatus.PENDING.value
        claim.nphies_request_id = f"clm-req-{int(sent_at.timestamp() * 1000)}"
        claim.request_bundle = bundle
        await self.session.commit()

        try:
            result = await self.gateway.submit_claim(bundle)
        except NphiesGatewayError as e:
            await self._record_send_failure(claim, str(e), e.errors, e.response_data)
            raise ClaimSubmissionGatewayError(str(e), e.errors) from e

        claim_responses = extract_resources(result.data, "ClaimResponse")
        message = None
        if not result.success or result.has_errors:
            message = result.error_message()
        elif not claim_responses:
            message = "No ClaimResponse in NPHIES response"
        if message:
            await self._record_send_failure(claim, message, result.errors, result.data)
            raise ClaimSubmissionGatewayError(message, result.errors)

        parsed = parse_claim_response(claim_responses[0])
        claim.status, claim.adjudication_outcome = send_status_for(parsed)
        claim.outcome = parsed["outcome"]
        claim.disposition = parsed["disposition"]
        claim.nphies_claim_id = parsed["nphies_claim_id"]
        if parsed["total_benefit"] is not None:
            claim.approved_amount = parsed["total_benefit"]
        claim.response_bundle = result.data
        claim.response_date = utcnow()

        self.session.add(
            ClaimSubmissionResponse(
                claim_id=claim.id,
                response_type=ResponseType.INITIAL.value,
                outcome=parsed["outcome"],
                disposition=parsed["disposition"],
                nphies_claim_id=parsed["nphies_claim_id"],
                bundle_json=result.data,
            )
        )
        await self.session.commit()

        logger.info(
            f"Sent claim {claim.claim_number}: status={claim.status} outcome={claim.outcome}"
        )
        return claim

    async def _record_send_failure(
        self,
        claim: ClaimSubmission,
        message: str,
        errors: list[dict[str, Any]],
        response_data: Optional[dict[str, Any]],
    ) -> None:
        logger.error(f"Claim {claim.claim_number} send failed: {message}")
        claim.status = ClaimSubmissionStatus.ERROR.value
        claim.outcome = NphiesOutcome.ERROR.value
        claim.disposition = message
        claim.response_bundle = response_data
        claim.response_date = utcnow()
        self.session.add(
            ClaimSubmissionResponse(
                claim_id=claim.id,
                response_type=ResponseType.INITIAL.value,
                outcome=NphiesOutcome.ERROR.value,
                disposition=message,
                errors=errors or [{"code": "SEND_FAILED", "details": message}],
                bundle_json=response_data,
            )
        )
        await self.session.commit()


    async def _record_cancel_failure(
        self,
        claim: ClaimSubmission,
        message: str,
        errors: list[dict[str, Any]],
        response_data: Optional[dict[str, Any]],
    ) -> None:
        logger.error(f"Claim {claim.claim_number} cancel failed: {message}")
        self.session.add(
            ClaimSubmissionResponse(
                claim_id=claim.id,
                response_type=ResponseType.CANCEL.value,
                outcome=NphiesOutcome.ERROR.value,
                disposition=message,
                errors=errors or [{"code": "CANCEL_FAILED", "details": message}],
                bundle_json=response_data,
            )
        )
        await self.session.commit()
