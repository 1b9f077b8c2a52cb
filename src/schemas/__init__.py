"""
Pydantic Schemas for the NPHIES claim submission backend.

This module exports all request/response schemas for the API.
"""

from src.schemas.claim_submission import (
    BundlePreviewResponse,
    ClaimBundlesResponse,
    ClaimSubmissionCancel,
    ClaimSubmissionCreate,
    ClaimSubmissionDiagnosisCreate,
    ClaimSubmissionItemCreate,
    ClaimSubmissionListResponse,
    ClaimSubmissionResponse,
    ClaimSubmissionResponseRecord,
    ClaimSubmissionSummary,
    ClaimSubmissionSupportingInfoCreate,
    ClaimSubmissionUpdate,
    PollResultResponse,
    StatusCheckResponse,
)
from src.schemas.communication import (
    AcknowledgmentPollAllResponse,
    AcknowledgmentPollResponse,
    CommunicationPayloadIn,
    CommunicationPreviewIn,
    CommunicationPreviewResponse,
    CommunicationRequestResponse,
    CommunicationResponse,
    SolicitedCommunicationIn,
    UnsolicitedCommunicationIn,
)

__all__ = [
    # Claim submissions
    "ClaimSubmissionCreate",
    "ClaimSubmissionUpdate",
    "ClaimSubmissionCancel",
    "ClaimSubmissionItemCreate",
    "ClaimSubmissionDiagnosisCreate",
    "ClaimSubmissionSupportingInfoCreate",
    "ClaimSubmissionResponse",
    "ClaimSubmissionSummary",
    "ClaimSubmissionListResponse",
    "ClaimSubmissionResponseRecord",
    "ClaimBundlesResponse",
    "BundlePreviewResponse",
    "StatusCheckResponse",
    "PollResultResponse",
    # Communications
    "CommunicationPayloadIn",
    "UnsolicitedCommunicationIn",
    "SolicitedCommunicationIn",
    "CommunicationPreviewIn",
    "CommunicationResponse",
    "CommunicationRequestResponse",
    "CommunicationPreviewResponse",
    "AcknowledgmentPollResponse",
    "AcknowledgmentPollAllResponse",
]
