"""Tests for the e-mail gateway's request shape and failure classification."""

import json

import httpx
import pytest

from app.services.notification_gateway import (
    DeliveryStatus,
    EmailGateway,
    LogOnlyGateway,
    build_gateway,
)

API_URL = "https://mail.example.test/v1/send"


def _gateway(handler) -> EmailGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EmailGateway(
        api_url=API_URL,
        api_key="test-key",
        from_address="Pawbook <no-reply@pawbook.test>",
        client=client,
    )


async def test_send_posts_template_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg-42"})

    gateway = _gateway(handler)
    result = await gateway.send(
        "appointment_confirmation", "owner@example.com", {"appointment_id": "abc"}
    )

    assert result.status is DeliveryStatus.SUCCESS
    assert result.message_id == "msg-42"

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == API_URL
    assert request.headers["Authorization"] == "Bearer test-key"
    assert json.loads(request.content) == {
        "from": "Pawbook <no-reply@pawbook.test>",
        "to": ["owner@example.com"],
        "template_id": "appointment_confirmation",
        "data": {"appointment_id": "abc"},
    }


async def test_success_without_json_body() -> None:
    gateway = _gateway(lambda request: httpx.Response(202, text="queued"))

    result = await gateway.send("appointment_confirmation", "owner@example.com", {})

    assert result.status is DeliveryStatus.SUCCESS
    assert result.message_id is None


async def test_success_with_malformed_json_body() -> None:
    """An accepted message stays a success even if the reply body is garbled."""
    gateway = _gateway(
        lambda request: httpx.Response(
            202, content=b"queued", headers={"content-type": "application/json"}
        )
    )

    result = await gateway.send("appointment_confirmation", "owner@example.com", {})

    assert result.status is DeliveryStatus.SUCCESS
    assert result.message_id is None


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (500, DeliveryStatus.TRANSIENT_FAILURE),
        (503, DeliveryStatus.TRANSIENT_FAILURE),
        (429, DeliveryStatus.TRANSIENT_FAILURE),
        (408, DeliveryStatus.TRANSIENT_FAILURE),
        (400, DeliveryStatus.FATAL_FAILURE),
        (401, DeliveryStatus.FATAL_FAILURE),
        (422, DeliveryStatus.FATAL_FAILURE),
    ],
)
async def test_error_status_classification(status_code: int, expected: DeliveryStatus) -> None:
    gateway = _gateway(lambda request: httpx.Response(status_code, text="nope"))

    result = await gateway.send("appointment_confirmation", "owner@example.com", {})

    assert result.status is expected
    assert str(status_code) in result.detail


@pytest.mark.parametrize(
    "error",
    [httpx.ConnectError("connection refused"), httpx.ReadTimeout("read timed out")],
)
async def test_network_errors_are_transient(error: httpx.HTTPError) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    gateway = _gateway(handler)
    result = await gateway.send("appointment_confirmation", "owner@example.com", {})

    assert result.status is DeliveryStatus.TRANSIENT_FAILURE


async def test_aclose_leaves_injected_client_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    gateway = EmailGateway(API_URL, "key", "from@pawbook.test", client=client)

    await gateway.aclose()

    assert not client.is_closed
    await client.aclose()


async def test_log_only_gateway_reports_success() -> None:
    result = await LogOnlyGateway().send("appointment_confirmation", "owner@example.com", {})
    assert result.status is DeliveryStatus.SUCCESS


def test_build_gateway_without_provider(test_settings) -> None:
    dev = test_settings.model_copy(update={"mail_api_url": "", "environment": "development"})
    assert isinstance(build_gateway(dev), LogOnlyGateway)

    prod = test_settings.model_copy(update={"mail_api_url": "", "environment": "production"})
    with pytest.raises(RuntimeError):
        build_gateway(prod)


async def test_build_gateway_with_provider(test_settings) -> None:
    configured = test_settings.model_copy(
        update={"mail_api_url": API_URL, "mail_api_key": "k", "mail_from_address": "a@b.test"}
    )
    gateway = build_gateway(configured)

    assert isinstance(gateway, EmailGateway)
    assert gateway.api_url == API_URL
    await gateway.aclose()
