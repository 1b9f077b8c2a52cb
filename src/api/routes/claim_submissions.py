"""
Claim Submission API Endpoints.

Provides:
- Claim submission CRUD
- Send, bundle preview and stored bundles
- Status-check and poll
- Unsolicited / solicited Communications and acknowledgment polling

Source: https://portal.nphies.sa/ig/usecase-claims.html
Verified: 2025-12-18
"""

import logging
from typing import NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from src.api.deps import get_claim_communication_service, get_claim_submission_service
from src.core.enums import ClaimSubmissionStatus
from src.schemas.claim_submission import (
    BundlePreviewResponse,
    ClaimBundlesResponse,
    ClaimSubmissionCancel,
    ClaimSubmissionCreate,
    ClaimSubmissionListResponse,
    ClaimSubmissionResponse,
    ClaimSubmissionResponseRecord,
    ClaimSubmissionSummary,
    ClaimSubmissionUpdate,
    PollResultResponse,
    StatusCheckResponse,
)
from src.schemas.communication import (
    AcknowledgmentPollAllResponse,
    AcknowledgmentPollResponse,
    CommunicationPreviewIn,
    CommunicationPreviewResponse,
    CommunicationRequestResponse,
    CommunicationResponse,
    SolicitedCommunicationIn,
    UnsolicitedCommunicationIn,
)
from src.services.claim_communication_service import ClaimCommunicationService
from src.services.claim_submission_service import (
    ClaimSubmissionError,
    ClaimSubmissionGatewayError,
    ClaimSubmissionNotFoundError,
    ClaimSubmissionService,
    ClaimSubmissionStateError,
    ClaimSubmissionValidationError,
)
from src.utils.errors import ConflictError, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/claim-submissions",
    tags=["claim-submissions"],
)


def _raise_http(error: ClaimSubmissionError) -> NoReturn:
    """Translate a workflow error into its HTTP response."""
    if isinstance(error, ClaimSubmissionNotFoundError):
        raise NotFoundError(str(error)) from error
    if isinstance(error, ClaimSubmissionStateError):
        raise ConflictError(str(error)) from error
    if isinstance(error, ClaimSubmissionValidationError):
        raise ValidationError(
            {"message": str(error), "missing_fields": error.errors}
        ) from error
    if isinstance(error, ClaimSubmissionGatewayError):
        raise UpstreamError(str(error)) from error
    logger.error(f"Unhandled claim submission error: {error}", exc_info=True)
    raise error


def _payloads(body) -> list[dict]:
    return [payload.model_dump(mode="json") for payload in body.payloads]


# =============================================================================
# CRUD
# =============================================================================


@router.get("/", response_model=ClaimSubmissionListResponse)
async def list_claim_submissions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[ClaimSubmissionStatus] = Query(None, alias="status"),
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionListResponse:
    """List claim submissions newest first."""
    claims, total = await service.list_claims(
        skip=(page - 1) * limit,
        limit=limit,
        status=status_filter.value if status_filter else None,
    )
    return ClaimSubmissionListResponse(
        items=[ClaimSubmissionSummary.model_validate(c) for c in claims],
        total=total,
        page=page,
        size=limit,
    )


@router.get("/{claim_id}", response_model=ClaimSubmissionResponse)
async def get_claim_submission(
    claim_id: UUID,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionResponse:
    try:
        claim = await service.get_claim_or_raise(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return ClaimSubmissionResponse.model_validate(claim)


@router.post("/", response_model=ClaimSubmissionResponse, status_code=status.HTTP_201_CREATED)
async def create_claim_submission(
    data: ClaimSubmissionCreate,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionResponse:
    """Create a draft claim submission."""
    claim = await service.create_claim(data)
    return ClaimSubmissionResponse.model_validate(claim)


@router.put("/{claim_id}", response_model=ClaimSubmissionResponse)
async def update_claim_submission(
    claim_id: UUID,
    data: ClaimSubmissionUpdate,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionResponse:
    try:
        claim = await service.update_claim(claim_id, data)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return ClaimSubmissionResponse.model_validate(claim)


@router.delete("/{claim_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_claim_submission(
    claim_id: UUID,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> Response:
    try:
        await service.delete_claim(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{claim_id}/cancel", response_model=ClaimSubmissionResponse)
async def cancel_claim_submission(
    claim_id: UUID,
    data: Optional[ClaimSubmissionCancel] = None,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionResponse:
    try:
        claim = await service.cancel_claim(claim_id, reason=data.reason if data else None)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return ClaimSubmissionResponse.model_validate(claim)


# =============================================================================
# Send / Bundles
# =============================================================================


@router.post("/{claim_id}/send", response_model=ClaimSubmissionResponse)
async def send_claim_submission(
    claim_id: UUID,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimSubmissionResponse:
    """Send a draft (or previously failed) claim to NPHIES."""
    try:
        claim = await service.send_claim(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return ClaimSubmissionResponse.model_validate(claim)


@router.get("/{claim_id}/bundle", response_model=ClaimBundlesResponse)
async def get_claim_bundles(
    claim_id: UUID,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> ClaimBundlesResponse:
    try:
        bundles = await service.get_bundles(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return ClaimBundlesResponse(
        claim_id=bundles["claim_id"],
        request_bundle=bundles["request_bundle"],
        response_bundle=bundles["response_bundle"],
        responses=[ClaimSubmissionResponseRecord.model_validate(r) for r in bundles["responses"]],
    )


@router.get("/{claim_id}/preview", response_model=BundlePreviewResponse)
async def preview_claim_bundle(
    claim_id: UUID,
    service: ClaimSubmissionService = Depends(get_claim_submission_service),
) -> BundlePreviewResponse:
    """Build the claim-request bundle without sending it."""
    try:
        bundle = await service.preview_bundle(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return BundlePreviewResponse(claim_id=claim_id, bundle=bundle)


# =============================================================================
# Status Check / Poll
# =============================================================================


@router.get("/{claim_id}/status-check/preview", response_model=BundlePreviewResponse)
async def preview_status_check(
    claim_id: UUID,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> BundlePreviewResponse:
    try:
        bundle = await service.preview_status_check(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return BundlePreviewResponse(claim_id=claim_id, bundle=bundle)


@router.post("/{claim_id}/status-check", response_model=StatusCheckResponse)
async def status_check(
    claim_id: UUID,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> StatusCheckResponse:
    try:
        result = await service.status_check(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return StatusCheckResponse(
        claim=ClaimSubmissionResponse.model_validate(result.claim),
        outcome=result.outcome,
        response_code=result.response_code,
        errors=result.errors,
    )


@router.post("/{claim_id}/poll", response_model=PollResultResponse)
async def poll_claim(
    claim_id: UUID,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> PollResultResponse:
    """Poll NPHIES for adjudication results and insurer messages."""
    try:
        result = await service.poll(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return PollResultResponse(
        claim=ClaimSubmissionResponse.model_validate(result.claim),
        polled=result.polled,
        message=result.message,
        claim_responses=result.claim_responses,
        communication_requests=result.communication_requests,
        acknowledgments=result.acknowledgments,
    )


# =============================================================================
# Communications
# =============================================================================


@router.post(
    "/{claim_id}/communication/unsolicited",
    response_model=CommunicationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_unsolicited_communication(
    claim_id: UUID,
    body: UnsolicitedCommunicationIn,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> CommunicationResponse:
    try:
        communication = await service.send_unsolicited(claim_id, _payloads(body))
    except ClaimSubmissionError as e:
        _raise_http(e)
    return CommunicationResponse.model_validate(communication)


@router.post(
    "/{claim_id}/communication/solicited",
    response_model=CommunicationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_solicited_communication(
    claim_id: UUID,
    body: SolicitedCommunicationIn,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> CommunicationResponse:
    try:
        communication = await service.send_solicited(
            claim_id, body.communication_request_id, _payloads(body)
        )
    except ClaimSubmissionError as e:
        _raise_http(e)
    return CommunicationResponse.model_validate(communication)


@router.post("/{claim_id}/communication/preview", response_model=CommunicationPreviewResponse)
async def preview_communication(
    claim_id: UUID,
    body: CommunicationPreviewIn,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> CommunicationPreviewResponse:
    try:
        communication_type, bundle = await service.preview_communication(
            claim_id, _payloads(body), body.communication_request_id
        )
    except ClaimSubmissionError as e:
        _raise_http(e)
    return CommunicationPreviewResponse(
        claim_id=claim_id, communication_type=communication_type, bundle=bundle
    )


@router.get(
    "/{claim_id}/communication-requests",
    response_model=list[CommunicationRequestResponse],
)
async def list_communication_requests(
    claim_id: UUID,
    pending: bool = Query(False, description="Only requests not yet answered"),
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> list[CommunicationRequestResponse]:
    try:
        requests = await service.list_communication_requests(claim_id, pending_only=pending)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return [CommunicationRequestResponse.model_validate(r) for r in requests]


@router.get("/{claim_id}/communications", response_model=list[CommunicationResponse])
async def list_communications(
    claim_id: UUID,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> list[CommunicationResponse]:
    try:
        communications = await service.list_communications(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return [CommunicationResponse.model_validate(c) for c in communications]


@router.post(
    "/{claim_id}/communications/poll-all-acknowledgments",
    response_model=AcknowledgmentPollAllResponse,
)
async def poll_all_acknowledgments(
    claim_id: UUID,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> AcknowledgmentPollAllResponse:
    try:
        result = await service.poll_all_acknowledgments(claim_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return AcknowledgmentPollAllResponse(
        checked=result.checked,
        acknowledged=result.acknowledged,
        still_queued=result.still_queued,
        errors=result.errors,
    )


@router.post(
    "/{claim_id}/communications/{communication_id}/poll-acknowledgment",
    response_model=AcknowledgmentPollResponse,
)
async def poll_acknowledgment(
    claim_id: UUID,
    communication_id: str,
    service: ClaimCommunicationService = Depends(get_claim_communication_service),
) -> AcknowledgmentPollResponse:
    try:
        result = await service.poll_acknowledgment(claim_id, communication_id)
    except ClaimSubmissionError as e:
        _raise_http(e)
    return AcknowledgmentPollResponse(
        communication=CommunicationResponse.model_validate(result.communication),
        already_acknowledged=result.already_acknowledged,
        polled=result.polled,
        message=result.message,
    )
