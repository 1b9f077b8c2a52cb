"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

import os

# Settings are read at import time; configure before any src import
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("POSTGRES_PASSWORD", "test-password")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import json
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.gateways.base import GatewayConfig
from src.gateways.nphies_gateway import FHIR_HEADERS, NphiesGateway
from src.models import (
    Base,
    ClaimSubmission,
    ClaimSubmissionDiagnosis,
    ClaimSubmissionItem,
    Insurer,
    Patient,
    Provider,
)

NPHIES_TEST_URL = "http://nphies.test"


# =============================================================================
# NPHIES response bundles
# =============================================================================


def response_bundle(*resources: dict[str, Any], response_code: Optional[str] = "ok") -> dict[str, Any]:
    """Message Bundle as NPHIES returns it: MessageHeader first."""
    header: dict[str, Any] = {
        "resourceType": "MessageHeader",
        "id": str(uuid4()),
        "eventCoding": {"code": "claim-response"},
    }
    if response_code:
        header["response"] = {"identifier": str(uuid4()), "code": response_code}
    return {
        "resourceType": "Bundle",
        "id": str(uuid4()),
        "type": "message",
        "entry": [{"resource": header}] + [{"resource": r} for r in resources],
    }


def claim_response(
    outcome: str = "complete",
    adjudication_outcome: Optional[str] = "approved",
    disposition: Optional[str] = None,
    identifier: str = "CR-0001",
    submitted: Optional[float] = None,
    benefit: Optional[float] = None,
) -> dict[str, Any]:
    resource: dict[str, Any] = {
        "resourceType": "ClaimResponse",
        "id": str(uuid4()),
        "identifier": [{"system": "http://payer.test/claimresponse", "value": identifier}],
        "outcome": outcome,
    }
    if adjudication_outcome:
        resource["extension"] = [
            {
                "url": "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition/extension-adjudication-outcome",
                "valueCodeableConcept": {"coding": [{"code": adjudication_outcome}]},
            }
        ]
    if disposition:
        resource["disposition"] = disposition
    totals = []
    if submitted is not None:
        totals.append({"category": {"coding": [{"code": "submitted"}]}, "amount": {"value": submitted}})
    if benefit is not None:
        totals.append({"category": {"coding": [{"code": "benefit"}]}, "amount": {"value": benefit}})
    if totals:
        resource["total"] = totals
    return resource


def operation_outcome(code: str = "BV-00027", display: str = "Invalid claim") -> dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": "error",
                "code": "business-rule",
                "details": {"coding": [{"code": code, "display": display}]},
            }
        ],
    }


def communication_request(request_id: str = "CR-REQ-1", text: str = "Please send the lab report") -> dict[str, Any]:
    return {
        "resourceType": "CommunicationRequest",
        "id": request_id,
        "status": "active",
        "category": [{"coding": [{"code": "alert"}]}],
        "priority": "routine",
        "authoredOn": "2025-12-01T10:00:00+03:00",
        "about": [{"reference": "http://provider.com/Claim/CLM-1001", "type": "Claim"}],
        "sender": {"identifier": {"value": "INS-FHIR"}},
        "recipient": [{"identifier": {"value": "PR-FHIR"}}],
        "payload": [{"contentString": text}],
    }


def acknowledgment(communication_id: str, status: str = "completed") -> dict[str, Any]:
    return {
        "resourceType": "Communication",
        "id": str(uuid4()),
        "status": status,
        "inResponseTo": [{"reference": f"Communication/{communication_id}"}],
    }


def task(status: str = "completed", code: str = "cancel") -> dict[str, Any]:
    """Task echoed back in a cancel-request answer."""
    return {
        "resourceType": "Task",
        "id": str(uuid4()),
        "status": status,
        "intent": "order",
        "code": {"coding": [{"code": code}]},
    }


def nested_message(*resources: dict[str, Any]) -> dict[str, Any]:
    """A delivered message as it appears inside a poll response."""
    return {
        "resourceType": "Bundle",
        "type": "message",
        "entry": [{"resource": {"resourceType": "MessageHeader", "id": str(uuid4())}}]
        + [{"resource": r} for r in resources],
    }


@pytest.fixture
def fhir() -> SimpleNamespace:
    """Builders for NPHIES response resources."""
    return SimpleNamespace(
        response_bundle=response_bundle,
        claim_response=claim_response,
        operation_outcome=operation_outcome,
        communication_request=communication_request,
        acknowledgment=acknowledgment,
        nested_message=nested_message,
        task=task,
    )


# =============================================================================
# NPHIES transport
# =============================================================================


Reply = Union[dict[str, Any], httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeNphies:
    """
    Records posted bundles and answers from a queue.

    Queue items are a JSON body (200), an ``httpx.Response``, an exception to
    raise, or a callable taking the request.
    """

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.replies: list[Reply] = []
        self.gateway = NphiesGateway(
            config=GatewayConfig(base_url=NPHIES_TEST_URL, timeout_seconds=5.0, headers=dict(FHIR_HEADERS)),
            transport=httpx.MockTransport(self._handle),
        )

    def reply(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    @property
    def last_request(self) -> dict[str, Any]:
        return self.requests[-1]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if not self.replies:
            raise AssertionError("Unexpected NPHIES call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        if callable(reply):
            return reply(request)
        return httpx.Response(200, json=reply)


@pytest.fixture
async def nphies():
    fake = FakeNphies()
    yield fake
    await fake.gateway.close()


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


@pytest.fixture
async def parties(session):
    """Patient, provider and insurer rows."""
    patient = Patient(
        name="Ahmed Al-Harbi",
        identifier="1012345678",
        identifier_type="national_id",
        gender="male",
        birth_date=date(1985, 4, 12),
        occupation="business",
    )
    provider = Provider(provider_name="King Fahad Hospital", nphies_id="PR-FHIR", provider_type="1")
    insurer = Insurer(insurer_name="Bupa Arabia", nphies_id="INS-FHIR")
    session.add_all([patient, provider, insurer])
    await session.commit()
    return SimpleNamespace(patient=patient, provider=provider, insurer=insurer)


@pytest.fixture
def make_claim(session, parties):
    """Factory for complete draft claims with two items and one diagnosis."""

    async def _make(**overrides: Any) -> ClaimSubmission:
        values: dict[str, Any] = {
            "claim_number": f"CLM-{uuid4().hex[:10]}",
            "claim_type": "institutional",
            "encounter_class": "ambulatory",
            "priority": "normal",
            "currency": "SAR",
            "status": "draft",
            "service_date": date(2025, 12, 10),
            "patient_id": parties.patient.id,
            "provider_id": parties.provider.id,
            "insurer_id": parties.insurer.id,
            "items": [
                ClaimSubmissionItem(
                    sequence=1,
                    product_or_service_code="83600-00-00",
                    product_or_service_display="Consultation",
                    quantity=Decimal("1"),
                    unit_price=Decimal("200.00"),
                    factor=Decimal("1"),
                    tax=Decimal("30.00"),
                    patient_share=Decimal("0"),
                ),
                ClaimSubmissionItem(
                    sequence=2,
                    product_or_service_code="73050-00-00",
                    quantity=Decimal("2"),
                    unit_price=Decimal("50.00"),
                    factor=Decimal("0.5"),
                    tax=Decimal("0"),
                    patient_share=Decimal("10.00"),
                ),
            ],
            "diagnoses": [
                ClaimSubmissionDiagnosis(
                    sequence=1,
                    diagnosis_code="J06.9",
                    diagnosis_system="icd-10",
                    diagnosis_display="Acute upper respiratory infection",
                    diagnosis_type="principal",
                )
            ],
        }
        values.update(overrides)
        claim = ClaimSubmission(**values)
        session.add(claim)
        await session.commit()

        # Reload so relationship attributes are eagerly populated
        from sqlalchemy import select

        result = await session.execute(
            select(ClaimSubmission)
            .where(ClaimSubmission.id == claim.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _make


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "api: mark test as an API test")
