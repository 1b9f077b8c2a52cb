"""
Services Layer for the NPHIES claim submission backend.

Exports the claim submission and claim communication services and the
message builders they use.
"""

from src.services.claim_bundle_builder import (
    BundleValidationError,
    ClaimBundleBuilder,
    parse_claim_response,
)
from src.services.communication_mapper import (
    CommunicationMapper,
    CommunicationPayloadError,
)
from src.services.claim_submission_service import (
    ClaimSubmissionError,
    ClaimSubmissionGatewayError,
    ClaimSubmissionNotFoundError,
    ClaimSubmissionService,
    ClaimSubmissionStateError,
    ClaimSubmissionValidationError,
)
from src.services.claim_communication_service import (
    AcknowledgmentPollAllResult,
    AcknowledgmentPollResult,
    ClaimCommunicationService,
    PollResult,
    StatusCheckResult,
)

__all__ = [
    # Builders
    "ClaimBundleBuilder",
    "BundleValidationError",
    "parse_claim_response",
    "CommunicationMapper",
    "CommunicationPayloadError",
    # Claim submission
    "ClaimSubmissionService",
    "ClaimSubmissionError",
    "ClaimSubmissionNotFoundError",
    "ClaimSubmissionValidationError",
    "ClaimSubmissionStateError",
    "ClaimSubmissionGatewayError",
    # Communication
    "ClaimCommunicationService",
    "PollResult",
    "StatusCheckResult",
    "AcknowledgmentPollResult",
    "AcknowledgmentPollAllResult",
]
