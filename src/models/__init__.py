"""
SQLAlchemy Models for the NPHIES claim submission backend.

This module exports all database models for the application.
"""

from src.models.base import Base, TimeStampedModel, UUIDModel
from src.models.patient import Patient
from src.models.provider import Insurer, Provider
from src.models.claim_submission import (
    ClaimSubmission,
    ClaimSubmissionDiagnosis,
    ClaimSubmissionItem,
    ClaimSubmissionResponse,
    ClaimSubmissionSupportingInfo,
)
from src.models.communication import (
    Communication,
    CommunicationPayload,
    CommunicationRequest,
)

__all__ = [
    # Base classes
    "Base",
    "TimeStampedModel",
    "UUIDModel",
    # Parties
    "Patient",
    "Provider",
    "Insurer",
    # Claim submissions
    "ClaimSubmission",
    "ClaimSubmissionItem",
    "ClaimSubmissionDiagnosis",
    "ClaimSubmissionSupportingInfo",
    "ClaimSubmissionResponse",
    # Communications
    "CommunicationRequest",
    "Communication",
    "CommunicationPayload",
]
