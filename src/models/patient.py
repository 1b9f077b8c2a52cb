"""
Patient Model.
Beneficiary details mapped into the FHIR Patient resource of a claim bundle.
Source: https://portal.nphies.sa/ig/StructureDefinition-patient.html
Verified: 2025-12-18
"""

from datetime import date
from typing import Optional

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimeStampedModel, UUIDModel


class Patient(Base, UUIDModel, TimeStampedModel):
    """
    Patient (beneficiary) model.

    Maintained outside the claim submission workflow; the workflow only reads
    it when building a bundle.
    """

    __tablename__ = "patients"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="National id, iqama, passport or MRN value",
    )
    identifier_type: Mapped[str] = mapped_column(
        String(20),
        default="national_id",
        nullable=False,
        comment="national_id | iqama | passport | mrn",
    )
    gender: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    occupation: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, identifier='{self.identifier}')>"
