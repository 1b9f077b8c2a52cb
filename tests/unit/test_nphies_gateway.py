"""
Unit tests for the NPHIES gateway.
HTTP is served by httpx.MockTransport; no network access.
"""

import httpx
import pytest

from src.gateways.base import GatewayConfig
from src.gateways.nphies_gateway import (
    FHIR_JSON,
    NphiesGateway,
    NphiesGatewayError,
    collect_operation_outcome_errors,
    extract_resources,
    message_header_response_code,
    validate_bundle_response,
)

BASE_URL = "http://nphies.test/"
REQUEST_BUNDLE = {
    "resourceType": "Bundle",
    "type": "message",
    "entry": [{"resource": {"resourceType": "MessageHeader", "eventCoding": {"code": "claim-request"}}}],
}


def _gateway(handler) -> NphiesGateway:
    return NphiesGateway(
        config=GatewayConfig(base_url=BASE_URL, timeout_seconds=2.0),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.unit
class TestBundleHelpers:
    """Tests for response bundle inspection."""

    def test_extract_resources_scans_nested_messages(self, fhir):
        bundle = fhir.response_bundle(
            fhir.claim_response(identifier="A"),
            fhir.nested_message(fhir.claim_response(identifier="B")),
            fhir.nested_message(fhir.communication_request()),
        )

        found = extract_resources(bundle, "ClaimResponse")

        assert [r["identifier"][0]["value"] for r in found] == ["A", "B"]
        assert len(extract_resources(bundle, "CommunicationRequest")) == 1

    def test_extract_resources_ignores_non_bundles(self):
        assert extract_resources({"resourceType": "Claim"}, "Claim") == []
        assert extract_resources(None, "Claim") == []

    def test_message_header_response_code(self, fhir):
        assert message_header_response_code(fhir.response_bundle(response_code="queued")) == "queued"
        assert message_header_response_code(fhir.response_bundle(response_code=None)) is None

    def test_operation_outcome_errors_keep_errors_only(self, fhir):
        outcome = fhir.operation_outcome("BV-00163", "Member not eligible")
        outcome["issue"].append({"severity": "warning", "code": "informational"})

        errors = collect_operation_outcome_errors(fhir.response_bundle(outcome))

        assert errors == [
            {"severity": "error", "code": "BV-00163", "details": "Member not eligible", "location": None}
        ]

    def test_validate_bundle_response(self, fhir):
        assert validate_bundle_response(fhir.response_bundle(fhir.claim_response()), ["ClaimResponse"]) == []
        assert validate_bundle_response(fhir.response_bundle(fhir.operation_outcome()), ["ClaimResponse"]) == []
        assert validate_bundle_response(None) == ["Response is empty"]
        assert validate_bundle_response({"resourceType": "Claim"}) == ["Response is not a FHIR Bundle"]

        problems = validate_bundle_response(fhir.response_bundle(), ["ClaimResponse"])
        assert problems == ["Bundle must contain ClaimResponse or OperationOutcome"]


@pytest.mark.unit
class TestProcessMessage:
    """Tests for one $process-message round trip."""

    async def test_posts_fhir_json_to_process_message(self, fhir):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(200, json=fhir.response_bundle(fhir.claim_response()))

        gateway = _gateway(handler)
        result = await gateway.submit_claim(REQUEST_BUNDLE)
        await gateway.close()

        assert seen["url"] == "http://nphies.test/$process-message"
        assert seen["content_type"] == FHIR_JSON
        assert result.success is True
        assert result.status_code == 200
        assert result.response_code == "ok"
        assert result.has_errors is False

    async def test_ok_with_operation_outcome_reports_errors(self, fhir):
        body = fhir.response_bundle(fhir.operation_outcome("BV-00027", "Invalid claim"))
        gateway = _gateway(lambda request: httpx.Response(200, json=body))

        result = await gateway.submit_claim(REQUEST_BUNDLE)
        await gateway.close()

        assert result.success is True
        assert result.has_errors is True
        assert result.error_message() == "BV-00027: Invalid claim"

    async def test_client_error_is_returned_not_raised(self, fhir):
        body = fhir.response_bundle(fhir.operation_outcome("GE-00001", "Bad request"))
        gateway = _gateway(lambda request: httpx.Response(400, json=body))

        result = await gateway.send_poll(REQUEST_BUNDLE)
        await gateway.close()

        assert result.success is False
        assert result.status_code == 400
        assert result.error == "HTTP_400"
        assert result.errors[0]["code"] == "GE-00001"

    async def test_server_error_raises(self):
        gateway = _gateway(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.send_status_check(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "HTTP_503"
        assert exc_info.value.status_code == 503
        assert exc_info.value.to_dict()["code"] == "HTTP_503"

    async def test_timeout_raises_no_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = _gateway(handler)
        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.send_communication(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "NO_RESPONSE"
        assert isinstance(exc_info.value.original_error, httpx.ReadTimeout)

    async def test_connect_error_raises_no_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = _gateway(handler)
        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.send_poll(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "NO_RESPONSE"

    async def test_non_json_body_raises_invalid_response(self):
        gateway = _gateway(lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.send_poll(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_claim_answer_without_claim_response_is_invalid(self, fhir):
        gateway = _gateway(lambda request: httpx.Response(200, json=fhir.response_bundle()))

        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.submit_claim(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.response_data is not None

    async def test_cancel_answer_without_task_is_invalid(self, fhir):
        gateway = _gateway(lambda request: httpx.Response(200, json=fhir.response_bundle()))

        with pytest.raises(NphiesGatewayError) as exc_info:
            await gateway.send_cancel_request(REQUEST_BUNDLE)
        await gateway.close()

        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_cancel_answer_with_task(self, fhir):
        body = fhir.response_bundle(fhir.task(status="completed"))
        gateway = _gateway(lambda request: httpx.Response(200, json=body))

        result = await gateway.send_cancel_request(REQUEST_BUNDLE)
        await gateway.close()

        assert result.success is True
        assert result.has_errors is False

    async def test_exactly_one_request_per_call(self, fhir):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(502, text="bad gateway")

        gateway = _gateway(handler)
        with pytest.raises(NphiesGatewayError):
            await gateway.submit_claim(REQUEST_BUNDLE)
        await gateway.close()

        assert len(calls) == 1
