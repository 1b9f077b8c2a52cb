"""
Pydantic Schemas for NPHIES Claim Submissions.
Source: https://portal.nphies.sa/ig/Claim-483070.html
Verified: 2025-12-18
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.core.enums import ClaimType, EncounterClass


# =============================================================================
# Item / Diagnosis Schemas
# =============================================================================


class ClaimSubmissionItemCreate(BaseModel):
    """Billed line item. Sequence is assigned from list position when omitted."""

    sequence: Optional[int] = Field(None, ge=1)
    product_or_service_code: Optional[str] = Field(None, max_length=50)
    product_or_service_system: Optional[str] = Field(None, max_length=255)
    product_or_service_display: Optional[str] = Field(None, max_length=500)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    factor: Decimal = Field(default=Decimal("1"), gt=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    patient_share: Decimal = Field(default=Decimal("0"), ge=0)
    serviced_date: Optional[date] = None
    diagnosis_sequences: Optional[list[int]] = None
    information_sequences: Optional[list[int]] = None


class ClaimSubmissionItemResponse(ClaimSubmissionItemCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    net: Decimal


class ClaimSubmissionDiagnosisCreate(BaseModel):
    """Coded diagnosis; system defaults to ICD-10-AM when sent."""

    sequence: Optional[int] = Field(None, ge=1)
    diagnosis_code: Optional[str] = Field(None, max_length=20)
    diagnosis_system: Optional[str] = Field(None, max_length=255)
    diagnosis_display: Optional[str] = Field(None, max_length=500)
    diagnosis_type: str = Field(default="principal", max_length=30)


class ClaimSubmissionDiagnosisResponse(ClaimSubmissionDiagnosisCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int


class ClaimSubmissionSupportingInfoCreate(BaseModel):
    """Supporting information entry (vital sign, chief complaint, ...)."""

    sequence: Optional[int] = Field(None, ge=1)
    category: str = Field(..., min_length=1, max_length=50)
    code: Optional[str] = Field(None, max_length=50)
    code_system: Optional[str] = Field(None, max_length=255)
    code_display: Optional[str] = Field(None, max_length=255)
    code_text: Optional[str] = None
    timing_date: Optional[date] = None
    timing_period_start: Optional[datetime] = None
    timing_period_end: Optional[datetime] = None
    value_string: Optional[str] = None
    value_quantity: Optional[Decimal] = None
    value_quantity_unit: Optional[str] = Field(None, max_length=50)
    value_boolean: Optional[bool] = None


class ClaimSubmissionSupportingInfoResponse(ClaimSubmissionSupportingInfoCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int


# =============================================================================
# Party Summaries
# =============================================================================


class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    identifier: str
    identifier_type: str
    gender: Optional[str] = None
    birth_date: Optional[date] = None


class ProviderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_name: str
    nphies_id: Optional[str] = None


class InsurerSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    insurer_name: str
    nphies_id: Optional[str] = None


# =============================================================================
# Claim Submission Schemas
# =============================================================================


class ClaimSubmissionBase(BaseModel):
    """Fields shared by create and update."""

    claim_type: ClaimType = Field(default=ClaimType.INSTITUTIONAL)
    sub_type: Optional[str] = Field(None, max_length=10)
    encounter_class: EncounterClass = Field(default=EncounterClass.AMBULATORY)
    priority: str = Field(default="normal", max_length=20)
    patient_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    insurer_id: Optional[UUID] = None
    service_date: Optional[date] = None
    member_id: Optional[str] = Field(None, max_length=50)
    practice_code: Optional[str] = Field(None, max_length=20)
    pre_auth_ref: Optional[str] = Field(None, max_length=100)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    currency: str = Field(default="SAR", min_length=3, max_length=3)


class ClaimSubmissionCreate(ClaimSubmissionBase):
    """
    Schema for creating a draft claim submission.

    ``claim_number`` defaults to ``CLM-<epoch ms>`` when omitted. Drafts may be
    incomplete; required fields are only enforced when the claim is sent.
    """

    claim_number: Optional[str] = Field(None, max_length=50)
    items: list[ClaimSubmissionItemCreate] = Field(default_factory=list)
    diagnoses: list[ClaimSubmissionDiagnosisCreate] = Field(default_factory=list)
    supporting_info: list[ClaimSubmissionSupportingInfoCreate] = Field(default_factory=list)

    @field_validator("claim_number")
    @classmethod
    def strip_claim_number(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class ClaimSubmissionUpdate(BaseModel):
    """
    Partial update. Only fields that are set are applied; ``items``,
    ``diagnoses`` and ``supporting_info`` replace the stored lists when present.
    """

    claim_number: Optional[str] = Field(None, max_length=50)
    claim_type: Optional[ClaimType] = None
    sub_type: Optional[str] = Field(None, max_length=10)
    encounter_class: Optional[EncounterClass] = None
    priority: Optional[str] = Field(None, max_length=20)
    patient_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    insurer_id: Optional[UUID] = None
    service_date: Optional[date] = None
    member_id: Optional[str] = Field(None, max_length=50)
    practice_code: Optional[str] = Field(None, max_length=20)
    pre_auth_ref: Optional[str] = Field(None, max_length=100)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    items: Optional[list[ClaimSubmissionItemCreate]] = None
    diagnoses: Optional[list[ClaimSubmissionDiagnosisCreate]] = None
    supporting_info: Optional[list[ClaimSubmissionSupportingInfoCreate]] = None


class ClaimSubmissionCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ClaimSubmissionResponse(BaseModel):
    """Full claim submission with items, diagnoses and parties."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_number: str
    claim_type: str
    sub_type: Optional[str] = None
    encounter_class: str
    priority: str
    status: str
    outcome: Optional[str] = None
    adjudication_outcome: Optional[str] = None
    disposition: Optional[str] = None
    cancellation_reason: Optional[str] = None

    patient_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    insurer_id: Optional[UUID] = None
    patient: Optional[PatientSummary] = None
    provider: Optional[ProviderSummary] = None
    insurer: Optional[InsurerSummary] = None

    service_date: Optional[date] = None
    member_id: Optional[str] = None
    practice_code: Optional[str] = None
    pre_auth_ref: Optional[str] = None
    total_amount: Optional[Decimal] = None
    approved_amount: Optional[Decimal] = None
    currency: str

    nphies_request_id: Optional[str] = None
    nphies_claim_id: Optional[str] = None
    request_date: Optional[datetime] = None
    response_date: Optional[datetime] = None

    items: list[ClaimSubmissionItemResponse] = []
    diagnoses: list[ClaimSubmissionDiagnosisResponse] = []
    supporting_info: list[ClaimSubmissionSupportingInfoResponse] = []

    created_at: datetime
    updated_at: datetime


class ClaimSubmissionSummary(BaseModel):
    """Row in the claim submission list."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_number: str
    claim_type: str
    status: str
    outcome: Optional[str] = None
    patient_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    insurer_id: Optional[UUID] = None
    service_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    approved_amount: Optional[Decimal] = None
    request_date: Optional[datetime] = None
    created_at: datetime


class ClaimSubmissionListResponse(BaseModel):
    """Paginated claim submission list."""

    items: list[ClaimSubmissionSummary]
    total: int
    page: int
    size: int


# =============================================================================
# NPHIES Exchange Schemas
# =============================================================================


class ClaimSubmissionResponseRecord(BaseModel):
    """One row of the NPHIES response history."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    response_type: str
    outcome: Optional[str] = None
    disposition: Optional[str] = None
    nphies_claim_id: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None
    received_at: datetime


class ClaimBundlesResponse(BaseModel):
    """Stored request/response bundles plus the response history."""

    claim_id: UUID
    request_bundle: Optional[dict[str, Any]] = None
    response_bundle: Optional[dict[str, Any]] = None
    responses: list[ClaimSubmissionResponseRecord] = []


class BundlePreviewResponse(BaseModel):
    """A message bundle built without being sent."""

    claim_id: UUID
    bundle: dict[str, Any]


class StatusCheckResponse(BaseModel):
    claim: ClaimSubmissionResponse
    outcome: str
    response_code: Optional[str] = None
    errors: list[dict[str, Any]] = []


class PollResultResponse(BaseModel):
    """Result of a poll round trip."""

    claim: ClaimSubmissionResponse
    polled: bool
    message: str
    claim_responses: int = 0
    communication_requests: int = 0
    acknowledgments: int = 0
