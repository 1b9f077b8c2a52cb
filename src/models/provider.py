"""
Provider and Insurer Models.
Organizations that appear as sender and receiver of NPHIES messages.
Source: https://portal.nphies.sa/ig/StructureDefinition-provider-organization.html
Verified: 2025-12-18
"""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimeStampedModel, UUIDModel


class Provider(Base, UUIDModel, TimeStampedModel):
    """Healthcare provider organization (message sender)."""

    __tablename__ = "providers"

    provider_name: Mapped[str] = mapped_column(String(255), nullable=False)
    nphies_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="NPHIES provider license id",
    )
    provider_type: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="NPHIES organization type code (e.g. 1 = hospital)",
    )

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, nphies_id='{self.nphies_id}')>"


class Insurer(Base, UUIDModel, TimeStampedModel):
    """Insurance company (message receiver)."""

    __tablename__ = "insurers"

    insurer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    nphies_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="NPHIES payer license id",
    )

    def __repr__(self) -> str:
        return f"<Insurer(id={self.id}, nphies_id='{self.nphies_id}')>"
