from typing import Any, Dict, Iterable, List

import httpx
from loguru import logger

from app.core.config import settings


class SubscriptionEditError(RuntimeError):
    """The platform webhook could not be updated."""


class HeliusWebhookClient:
    """Edits the single platform-wide Helius webhook.

    Every edit replaces the whole subscription document, so callers always send
    the complete address list they want monitored.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        webhook_id: str | None = None,
        receiver_url: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.helius_api_key
        self.webhook_id = webhook_id if webhook_id is not None else settings.helius_webhook_id
        self.receiver_url = receiver_url if receiver_url is not None else settings.webhook_receiver_url
        self.api_base = (api_base or settings.helius_api_base).rstrip("/")
        self.timeout = timeout or settings.helius_timeout
        self._transport = transport

    def build_payload(self, addresses: Iterable[str]) -> Dict[str, Any]:
        return {
            "webhookURL": self.receiver_url,
            "transactionTypes": ["ANY"],
            "accountAddresses": list(dict.fromkeys(addresses)),
            "webhookType": "enhanced",
            "txnStatus": "all",
        }

    async def edit_webhook(self, addresses: List[str]) -> Dict[str, Any]:
        if not self.api_key or not self.webhook_id:
            raise SubscriptionEditError("Platform Helius config missing (API key or webhook id)")
        if not self.receiver_url:
            raise SubscriptionEditError("Webhook receiver URL is not configured")

        payload = self.build_payload(addresses)
        logger.info(
            "Editing platform webhook {} with {} addresses",
            self.webhook_id,
            len(payload["accountAddresses"]),
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.put(
                    f"{self.api_base}/webhooks/{self.webhook_id}",
                    params={"api-key": self.api_key},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise SubscriptionEditError(f"Helius API edit request failed: {exc}") from exc

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("error") if isinstance(body, dict) else response.text
            logger.error(
                "Helius API error while editing webhook",
                status_code=response.status_code,
                detail=detail,
            )
            raise SubscriptionEditError(detail or f"Helius API edit request failed with status {response.status_code}")

        logger.info("Platform webhook {} edited successfully", self.webhook_id)
        try:
            return response.json()
        except ValueError:
            return {}
