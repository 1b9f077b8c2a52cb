"""
NPHIES Gateway.

HTTP transport to the NPHIES clearinghouse. Every message (claim, poll,
status-check, communication) is a FHIR Bundle of type ``message`` posted to
the single ``$process-message`` endpoint.

There is no retry: each call is exactly one round trip and the
caller decides what to persist from the result.

Source: https://portal.nphies.sa/ig/messaging.html
Verified: 2025-12-18
"""

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import httpx

from src.api.config import settings
from src.gateways.base import GatewayConfig, GatewayError, GatewayResult
from src.utils.logging import get_logger

logger = get_logger(__name__)

FHIR_JSON = "application/fhir+json"
FHIR_HEADERS = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
PROVIDER_NAME = "nphies"


class NphiesGatewayError(GatewayError):
    """
    Raised when NPHIES could not produce a usable answer.

    Codes:
        HTTP_<status>     server-side failure (status >= 500)
        NO_RESPONSE       request sent, nothing came back (timeout, connect)
        REQUEST_ERROR     request could not be issued
        INVALID_RESPONSE  body is not a valid message Bundle
        UNKNOWN_ERROR     anything else
    """

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: Optional[int] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        response_data: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, provider=PROVIDER_NAME, original_error=original_error)
        self.code = code
        self.status_code = status_code
        self.errors = errors or []
        self.response_data = response_data

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "errors": self.errors,
        }


@dataclass
class NphiesResponse(GatewayResult[dict[str, Any]]):
    """Decoded NPHIES answer.

    ``success`` mirrors a 2xx HTTP status. ``errors`` holds the issues of any
    OperationOutcome found in the bundle, which NPHIES may return even on 200.
    """

    errors: list[dict[str, Any]] = field(default_factory=list)
    response_code: Optional[str] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def error_message(self) -> str:
        """Human readable summary of what went wrong."""
        if self.errors:
            return "; ".join(
                f"{e.get('code')}: {e.get('details')}"
                + (f" ({e['location']})" if e.get("location") else "")
                for e in self.errors
            )
        return self.error or "NPHIES request failed"


# =============================================================================
# Bundle inspection helpers
# =============================================================================


def _resources(bundle: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    if not isinstance(bundle, dict):
        return []
    return [
        entry["resource"]
        for entry in bundle.get("entry") or []
        if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
    ]


def find_resource(
    bundle: Optional[dict[str, Any]], resource_type: str
) -> Optional[dict[str, Any]]:
    """First direct entry of the given type."""
    for resource in _resources(bundle):
        if resource.get("resourceType") == resource_type:
            return resource
    return None


def extract_resources(
    bundle: Optional[dict[str, Any]], resource_type: str
) -> list[dict[str, Any]]:
    """
    Collect resources of one type from a response or poll Bundle.

    Poll responses wrap each delivered message in its own nested ``message``
    Bundle, so both direct entries and nested message bundles are scanned.
    """
    if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
        return []

    found = []
    for resource in _resources(bundle):
        if resource.get("resourceType") == resource_type:
            found.append(resource)
        elif resource.get("resourceType") == "Bundle" and resource.get("type") == "message":
            nested = find_resource(resource, resource_type)
            if nested is not None:
                found.append(nested)
    return found


def extract_operation_outcome_errors(
    operation_outcome: Optional[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Flatten OperationOutcome.issue into severity/code/details/location dicts."""
    if not operation_outcome:
        return []

    errors = []
    for issue in operation_outcome.get("issue") or []:
        details = issue.get("details") or {}
        coding = (details.get("coding") or [{}])[0]
        location = issue.get("location") or issue.get("expression")
        errors.append(
            {
                "severity": issue.get("severity"),
                "code": coding.get("code") or issue.get("code"),
                "details": coding.get("display") or details.get("text") or issue.get("diagnostics"),
                "location": ", ".join(location) if location else None,
            }
        )
    return errors


def collect_operation_outcome_errors(bundle: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    """Errors from every OperationOutcome in the bundle (direct or nested)."""
    if isinstance(bundle, dict) and bundle.get("resourceType") == "OperationOutcome":
        outcomes = [bundle]
    else:
        outcomes = extract_resources(bundle, "OperationOutcome")

    errors: list[dict[str, Any]] = []
    for outcome in outcomes:
        errors.extend(
            e for e in extract_operation_outcome_errors(outcome)
            if e["severity"] in ("error", "fatal")
        )
    return errors


def message_header_response_code(bundle: Optional[dict[str, Any]]) -> Optional[str]:
    """MessageHeader.response.code of a response bundle (ok, queued, ...)."""
    header = find_resource(bundle, "MessageHeader")
    if header is None:
        return None
    return (header.get("response") or {}).get("code")


def validate_bundle_response(
    data: Any, expected_types: Iterable[str] = ()
) -> list[str]:
    """
    Structural checks on a response Bundle.

    Returns a list of problems; an empty list means the bundle is usable.
    OperationOutcome is always accepted in place of the expected resources.
    """
    if not data:
        return ["Response is empty"]
    if not isinstance(data, dict) or data.get("resourceType") != "Bundle":
        return ["Response is not a FHIR Bundle"]

    problems = []
    if data.get("type") != "message":
        problems.append('Bundle type is not "message"')

    entries = data.get("entry")
    if not isinstance(entries, list) or not entries:
        problems.append("Bundle has no entries")
        return problems

    resource_types = [r.get("resourceType") for r in _resources(data)]
    if not resource_types or resource_types[0] != "MessageHeader":
        problems.append("First entry must be MessageHeader")

    expected = list(expected_types)
    if expected and not any(t in resource_types for t in expected):
        if "OperationOutcome" not in resource_types:
            problems.append(f"Bundle must contain {' or '.join(expected)} or OperationOutcome")

    return problems


def _message_event(bundle: dict[str, Any]) -> str:
    header = find_resource(bundle, "MessageHeader") or {}
    return (header.get("eventCoding") or {}).get("code") or "unknown"


# =============================================================================
# Gateway
# =============================================================================


class NphiesGateway:
    """
    Async client for the NPHIES ``$process-message`` endpoint.

    Example:
        >>> gateway = NphiesGateway()
        >>> result = await gateway.submit_claim(bundle)
        >>> result.success, result.response_code
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if config is None:
            config = GatewayConfig(
                base_url=settings.NPHIES_BASE_URL,
                timeout_seconds=settings.NPHIES_TIMEOUT,
                headers=dict(FHIR_HEADERS),
            )
        self.config = config
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def gateway_name(self) -> str:
        return "NPHIES"

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/$process-message"

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers=self.config.headers,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def process_message(
        self,
        bundle: dict[str, Any],
        expected_types: Iterable[str] = (),
    ) -> NphiesResponse:
        """
        Post one message Bundle and decode the answer.

        Args:
            bundle: Request Bundle (type ``message``)
            expected_types: Resource types a 2xx answer must contain

        Returns:
            NphiesResponse; ``success`` is False for 4xx answers

        Raises:
            NphiesGatewayError: on 5xx, transport failure or malformed body
        """
        client = self._get_client()
        event = _message_event(bundle)
        started = time.perf_counter()

        try:
            response = await client.post(self.endpoint, json=bundle, headers=FHIR_HEADERS)
        except httpx.TimeoutException as e:
            logger.error(f"NPHIES {event} timed out after {self.config.timeout_seconds}s")
            raise NphiesGatewayError(
                "No response received from NPHIES", code="NO_RESPONSE", original_error=e
            ) from e
        except httpx.TransportError as e:
            logger.error(f"NPHIES {event} transport error: {e}")
            raise NphiesGatewayError(
                "No response received from NPHIES", code="NO_RESPONSE", original_error=e
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"NPHIES {event} request error: {e}")
            raise NphiesGatewayError(
                str(e) or "Request failed", code="REQUEST_ERROR", original_error=e
            ) from e

        latency_ms = (time.perf_counter() - started) * 1000
        status_code = response.status_code
        logger.info(f"NPHIES {event} -> HTTP {status_code} ({latency_ms:.0f} ms)")

        try:
            data = response.json()
        except ValueError:
            data = None

        if status_code >= 500:
            raise NphiesGatewayError(
                response.reason_phrase or "HTTP Error",
                code=f"HTTP_{status_code}",
                status_code=status_code,
                errors=collect_operation_outcome_errors(data),
                response_data=data if isinstance(data, dict) else None,
            )

        if not isinstance(data, dict):
            raise NphiesGatewayError(
                "NPHIES response is not a JSON object",
                code="INVALID_RESPONSE",
                status_code=status_code,
            )

        if response.is_success:
            problems = validate_bundle_response(data, expected_types)
            if problems:
                logger.warning(f"NPHIES {event} invalid response: {problems}")
                raise NphiesGatewayError(
                    f"Invalid NPHIES response: {', '.join(problems)}",
                    code="INVALID_RESPONSE",
                    status_code=status_code,
                    response_data=data,
                )

        return NphiesResponse(
            success=response.is_success,
            status_code=status_code,
            data=data,
            error=None if response.is_success else f"HTTP_{status_code}",
            latency_ms=latency_ms,
            errors=collect_operation_outcome_errors(data),
            response_code=message_header_response_code(data),
        )

    async def submit_claim(self, bundle: dict[str, Any]) -> NphiesResponse:
        """Send a claim-request message; a 2xx answer must carry a ClaimResponse."""
        return await self.process_message(bundle, expected_types=("ClaimResponse",))

    async def send_status_check(self, bundle: dict[str, Any]) -> NphiesResponse:
        return await self.process_message(bundle)

    async def send_poll(self, bundle: dict[str, Any]) -> NphiesResponse:
        return await self.process_message(bundle)

    async def send_communication(self, bundle: dict[str, Any]) -> NphiesResponse:
        return await self.process_message(bundle)

    async def send_cancel_request(self, bundle: dict[str, Any]) -> NphiesResponse:
        """Send a cancel-request message; a 2xx answer must carry the Task."""
        return await self.process_message(bundle, expected_types=("Task",))


_gateway: Optional[NphiesGateway] = None


def get_nphies_gateway() -> NphiesGateway:
    """Shared gateway instance (FastAPI dependency)."""
    global _gateway
    if _gateway is None:
        _gateway = NphiesGateway()
    return _gateway


async def close_nphies_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
