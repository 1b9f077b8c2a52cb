"""
FastAPI Dependencies
Dependency injection for database sessions, the NPHIES gateway and services
Source: https://fastapi.tiangolo.com/tutorial/dependencies/
Verified: 2025-12-18
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.connection import get_session
from src.gateways.nphies_gateway import NphiesGateway, get_nphies_gateway
from src.services.claim_communication_service import ClaimCommunicationService
from src.services.claim_submission_service import ClaimSubmissionService


def get_gateway() -> NphiesGateway:
    """Shared NPHIES gateway; overridden in tests."""
    return get_nphies_gateway()


async def get_claim_submission_service(
    session: AsyncSession = Depends(get_session),
    gateway: NphiesGateway = Depends(get_gateway),
) -> ClaimSubmissionService:
    return ClaimSubmissionService(session, gateway=gateway)


async def get_claim_communication_service(
    session: AsyncSession = Depends(get_session),
    gateway: NphiesGateway = Depends(get_gateway),
) -> ClaimCommunicationService:
    return ClaimCommunicationService(session, gateway=gateway)
