"""
Pydantic Schemas for NPHIES Communications.
Source: https://portal.nphies.sa/ig/StructureDefinition-communication.html
Verified: 2025-12-18
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.enums import PayloadContentType


# =============================================================================
# Payload Schemas
# =============================================================================


class AttachmentIn(BaseModel):
    content_type: Optional[str] = Field(None, max_length=100)
    data: Optional[str] = Field(None, description="Base64 encoded content")
    url: Optional[str] = Field(None, max_length=500)
    title: Optional[str] = Field(None, max_length=255)
    size: Optional[int] = Field(None, ge=0)


class ReferenceIn(BaseModel):
    value: str = Field(..., max_length=255)
    type: Optional[str] = Field(None, max_length=50)


class CommunicationPayloadIn(BaseModel):
    """
    One payload; the element named by ``content_type`` carries the content.

    A payload whose matching element is empty is dropped when the message is
    built.
    """

    content_type: PayloadContentType = PayloadContentType.STRING
    content_string: Optional[str] = None
    attachment: Optional[AttachmentIn] = None
    reference: Optional[ReferenceIn] = None
    claim_item_sequences: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def single_content(self) -> "CommunicationPayloadIn":
        present = [
            name
            for name, value in (
                ("string", self.content_string),
                ("attachment", self.attachment),
                ("reference", self.reference),
            )
            if value
        ]
        if len(present) > 1:
            raise ValueError(
                f"A payload carries exactly one content element, got: {', '.join(present)}"
            )
        return self


class UnsolicitedCommunicationIn(BaseModel):
    payloads: list[CommunicationPayloadIn] = Field(default_factory=list)


class SolicitedCommunicationIn(BaseModel):
    communication_request_id: UUID = Field(
        ..., description="Local id of the CommunicationRequest being answered"
    )
    payloads: list[CommunicationPayloadIn] = Field(default_factory=list)


class CommunicationPreviewIn(BaseModel):
    """Preview a Communication; solicited when a request id is given."""

    communication_request_id: Optional[UUID] = None
    payloads: list[CommunicationPayloadIn] = Field(default_factory=list)


# =============================================================================
# Response Schemas
# =============================================================================


class CommunicationPayloadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    content_type: str
    content_string: Optional[str] = None
    attachment_content_type: Optional[str] = None
    attachment_url: Optional[str] = None
    attachment_title: Optional[str] = None
    attachment_size: Optional[int] = None
    reference_value: Optional[str] = None
    reference_type: Optional[str] = None
    claim_item_sequences: Optional[list[int]] = None


class CommunicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    communication_id: str
    nphies_communication_id: Optional[str] = None
    claim_id: UUID
    communication_type: str
    based_on_request_id: Optional[UUID] = None
    status: str
    category: str
    priority: str
    about_reference: Optional[str] = None
    about_type: Optional[str] = None
    sender_identifier: Optional[str] = None
    recipient_identifier: Optional[str] = None
    sent_at: Optional[datetime] = None
    acknowledgment_received: bool
    acknowledgment_at: Optional[datetime] = None
    acknowledgment_status: Optional[str] = None
    payloads: list[CommunicationPayloadResponse] = []
    created_at: datetime


class CommunicationRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    request_id: str
    claim_id: Optional[UUID] = None
    status: str
    category: Optional[str] = None
    priority: Optional[str] = None
    about_reference: Optional[str] = None
    about_type: Optional[str] = None
    payload_content_type: Optional[str] = None
    payload_content_string: Optional[str] = None
    sender_identifier: Optional[str] = None
    recipient_identifier: Optional[str] = None
    authored_on: Optional[datetime] = None
    received_at: datetime
    responded_at: Optional[datetime] = None
    response_communication_id: Optional[UUID] = None
    is_pending: bool


class CommunicationPreviewResponse(BaseModel):
    claim_id: UUID
    communication_type: str
    bundle: dict[str, Any]


class AcknowledgmentPollResponse(BaseModel):
    communication: CommunicationResponse
    already_acknowledged: bool = False
    polled: bool = False
    message: str


class AcknowledgmentPollAllResponse(BaseModel):
    checked: int
    acknowledged: int
    still_queued: int
    errors: list[str] = []
