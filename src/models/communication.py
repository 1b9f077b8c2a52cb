"""
NPHIES Communication Models.
CommunicationRequest (insurer asks for information) and Communication
(provider sends information), with per-payload rows.
Source: https://portal.nphies.sa/ig/StructureDefinition-communication.html
Verified: 2025-12-18
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.enums import CommunicationStatus
from src.models.base import Base, JSONType, TimeStampedModel, UUIDModel, utcnow


class CommunicationRequest(Base, UUIDModel, TimeStampedModel):
    """
    Request for additional information received from the insurer via poll.

    Deduplicated on ``request_id`` (the FHIR resource id); a single request
    may be answered by several solicited Communications.
    """

    __tablename__ = "nphies_communication_requests"

    request_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        comment="CommunicationRequest.id assigned by the insurer",
    )
    claim_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    about_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    about_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    identifier_system: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload_content_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payload_content_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipient_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    authored_on: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    # Response tracking
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    response_communication_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, comment="Latest answering Communication row"
    )

    request_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    def __repr__(self) -> str:
        return f"<CommunicationRequest(request_id='{self.request_id}', claim_id={self.claim_id})>"

    @property
    def is_pending(self) -> bool:
        """Not yet answered by any Communication."""
        return self.responded_at is None


class Communication(Base, UUIDModel, TimeStampedModel):
    """Outbound Communication sent to the insurer about a claim."""

    __tablename__ = "nphies_communications"

    communication_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        comment="Communication.id we generated; acks reference it via inResponseTo",
    )
    nphies_communication_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claim_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    communication_type: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, comment="unsolicited | solicited"
    )
    based_on_request_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("nphies_communication_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20), default=CommunicationStatus.IN_PROGRESS.value, nullable=False
    )
    category: Mapped[str] = mapped_column(String(50), default="alert", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="routine", nullable=False)
    about_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    about_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sender_type: Mapped[str] = mapped_column(
        String(50), default="Organization", nullable=False
    )
    sender_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipient_type: Mapped[str] = mapped_column(
        String(50), default="Organization", nullable=False
    )
    recipient_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Acknowledgment tracking (set from the send response or a later poll)
    acknowledgment_received: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    acknowledgment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    acknowledgment_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    acknowledgment_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    request_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )
    response_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    payloads: Mapped[list["CommunicationPayload"]] = relationship(
        back_populates="communication",
        cascade="all, delete-orphan",
        order_by="CommunicationPayload.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Communication(communication_id='{self.communication_id}', "
            f"type='{self.communication_type}', ack='{self.acknowledgment_status}')>"
        )


class CommunicationPayload(Base, UUIDModel):
    """
    One payload of a Communication.

    Exactly one of string, attachment or reference content is populated,
    as indicated by ``content_type``.
    """

    __tablename__ = "nphies_communication_payloads"

    communication_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("nphies_communications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="string | attachment | reference"
    )
    content_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attachment_content_type: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    attachment_data: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Base64 encoded"
    )
    attachment_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    attachment_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attachment_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    reference_value: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    claim_item_sequences: Mapped[Optional[list[int]]] = mapped_column(
        JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    communication: Mapped["Communication"] = relationship(back_populates="payloads")

    __table_args__ = (
        UniqueConstraint("communication_id", "sequence", name="uq_comm_payload_sequence"),
    )
