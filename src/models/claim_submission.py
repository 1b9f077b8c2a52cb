"""
Claim Submission Models for the NPHIES claim workflow.
Source: https://portal.nphies.sa/ig/Claim-483070.html
Verified: 2025-12-18
"""

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.enums import ClaimSubmissionStatus
from src.models.base import Base, JSONType, TimeStampedModel, UUIDModel, utcnow

if TYPE_CHECKING:
    from src.models.patient import Patient
    from src.models.provider import Insurer, Provider


class ClaimSubmission(Base, UUIDModel, TimeStampedModel):
    """
    Claim submitted (or to be submitted) to NPHIES.

    Status is a plain string column; the workflow services decide which
    operations may start from which value. Bundles exchanged with NPHIES are
    kept verbatim for audit and preview.
    """

    __tablename__ = "claim_submissions"

    # Identification
    claim_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Provider claim identifier (e.g. CLM-1734567890123)",
    )
    claim_type: Mapped[str] = mapped_column(
        String(20),
        default="institutional",
        nullable=False,
        comment="institutional | professional | pharmacy | dental | vision",
    )
    sub_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    encounter_class: Mapped[str] = mapped_column(
        String(20), default="ambulatory", nullable=False
    )
    priority: Mapped[str] = mapped_column(String(20), default="normal", nullable=False)

    # Parties (nullable so drafts can be saved incomplete)
    patient_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("patients.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    provider_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("providers.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    insurer_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("insurers.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    # Clinical / coverage context
    service_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    member_id: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, comment="Coverage member id"
    )
    practice_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pre_auth_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Financials
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    currency: Mapped[str] = mapped_column(String(3), default="SAR", nullable=False)

    # Workflow status
    status: Mapped[str] = mapped_column(
        String(20),
        default=ClaimSubmissionStatus.DRAFT.value,
        nullable=False,
        index=True,
    )
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    adjudication_outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # NPHIES tracking
    nphies_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    nphies_claim_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True
    )
    request_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )
    response_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )
    request_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    response_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    patient: Mapped[Optional["Patient"]] = relationship(lazy="selectin")
    provider: Mapped[Optional["Provider"]] = relationship(lazy="selectin")
    insurer: Mapped[Optional["Insurer"]] = relationship(lazy="selectin")
    items: Mapped[list["ClaimSubmissionItem"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimSubmissionItem.sequence",
        lazy="selectin",
    )
    diagnoses: Mapped[list["ClaimSubmissionDiagnosis"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimSubmissionDiagnosis.sequence",
        lazy="selectin",
    )
    supporting_info: Mapped[list["ClaimSubmissionSupportingInfo"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimSubmissionSupportingInfo.sequence",
        lazy="selectin",
    )
    responses: Mapped[list["ClaimSubmissionResponse"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimSubmissionResponse.received_at",
        passive_deletes=True,
        lazy="raise",
    )

    __table_args__ = (Index("ix_claim_submissions_status_created", "status", "created_at"),)

    def __repr__(self) -> str:
        return f"<ClaimSubmission(id={self.id}, number='{self.claim_number}', status='{self.status}')>"

    @property
    def nphies_identifier(self) -> Optional[str]:
        """Identifier NPHIES knows this claim by, in order of preference."""
        return self.claim_number or self.nphies_claim_id or self.nphies_request_id


class ClaimSubmissionItem(Base, UUIDModel):
    """Billed line item of a claim submission."""

    __tablename__ = "claim_submission_items"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    product_or_service_code: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    product_or_service_system: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    product_or_service_display: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("1"), nullable=False
    )
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    factor: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), default=Decimal("1"), nullable=False
    )
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    patient_share: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    serviced_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    diagnosis_sequences: Mapped[Optional[list[int]]] = mapped_column(
        JSONType, nullable=True
    )
    information_sequences: Mapped[Optional[list[int]]] = mapped_column(
        JSONType, nullable=True, comment="Supporting info sequences; all when unset"
    )

    claim: Mapped["ClaimSubmission"] = relationship(back_populates="items")

    __table_args__ = (UniqueConstraint("claim_id", "sequence", name="uq_claim_item_sequence"),)

    @property
    def net(self) -> Decimal:
        """quantity * unit_price * factor + tax"""
        return (self.quantity * self.unit_price * self.factor + self.tax).quantize(
            Decimal("0.01")
        )


class ClaimSubmissionDiagnosis(Base, UUIDModel):
    """Coded diagnosis attached to a claim submission."""

    __tablename__ = "claim_submission_diagnoses"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    diagnosis_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    diagnosis_system: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    diagnosis_display: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    diagnosis_type: Mapped[str] = mapped_column(
        String(30), default="principal", nullable=False
    )

    claim: Mapped["ClaimSubmission"] = relationship(back_populates="diagnoses")

    __table_args__ = (
        UniqueConstraint("claim_id", "sequence", name="uq_claim_diagnosis_sequence"),
    )


class ClaimSubmissionSupportingInfo(Base, UUIDModel):
    """
    Clinical supporting information (vital signs, chief complaint, ...).

    At most one value column is emitted, checked in the order string,
    quantity, boolean.
    """

    __tablename__ = "claim_submission_supporting_info"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="claim-information-category code"
    )
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    code_system: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    code_display: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    code_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    timing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    timing_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    timing_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    value_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    value_quantity_unit: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    value_boolean: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    claim: Mapped["ClaimSubmission"] = relationship(back_populates="supporting_info")

    __table_args__ = (
        UniqueConstraint("claim_id", "sequence", name="uq_claim_supporting_info_sequence"),
    )


class ClaimSubmissionResponse(Base, UUIDModel):
    """History row for every NPHIES answer about a claim."""

    __tablename__ = "claim_submission_responses"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    response_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="initial | poll | final | cancel"
    )
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    nphies_claim_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    errors: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONType, nullable=True)
    bundle_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    claim: Mapped["ClaimSubmission"] = relationship(back_populates="responses")
