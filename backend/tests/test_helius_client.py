import json

import httpx
import pytest

from app.services.helius import HeliusWebhookClient, SubscriptionEditError


def _client(handler, **overrides) -> HeliusWebhookClient:
    options = {
        "api_key": "key-123",
        "webhook_id": "wh-1",
        "receiver_url": "https://indexer.test/api/webhooks/helius",
        "api_base": "https://helius.test/v0/",
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return HeliusWebhookClient(**options)


@pytest.mark.asyncio
async def test_edit_replaces_full_subscription() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"webhookID": "wh-1"})

    result = await _client(handler).edit_webhook(["M1", "M2", "M1"])

    assert result == {"webhookID": "wh-1"}
    request = seen[0]
    assert request.method == "PUT"
    assert request.url.path == "/v0/webhooks/wh-1"
    assert request.url.params["api-key"] == "key-123"
    assert json.loads(request.content) == {
        "webhookURL": "https://indexer.test/api/webhooks/helius",
        "transactionTypes": ["ANY"],
        "accountAddresses": ["M1", "M2"],
        "webhookType": "enhanced",
        "txnStatus": "all",
    }


@pytest.mark.asyncio
async def test_empty_address_list_is_sent() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    await _client(handler).edit_webhook([])

    assert bodies[0]["accountAddresses"] == []


@pytest.mark.asyncio
async def test_error_status_raises_with_remote_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid address"})

    with pytest.raises(SubscriptionEditError, match="invalid address"):
        await _client(handler).edit_webhook(["bad"])


@pytest.mark.asyncio
async def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SubscriptionEditError, match="connection refused"):
        await _client(handler).edit_webhook(["M1"])


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["api_key", "webhook_id", "receiver_url"])
async def test_missing_configuration_fails_without_request(missing) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(SubscriptionEditError):
        await _client(handler, **{missing: ""}).edit_webhook(["M1"])
