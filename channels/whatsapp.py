"""
WhatsApp Gateway — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Inbound: text and interactive replies (button_reply, list_reply)
- Outbound: free-form text via POST {base_url}/{api_version}/{phone_number_id}/messages

Status callbacks (sent, delivered, read) carry no customer input and are ignored.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import GatewayError, MessagingGateway
from config.settings import WhatsAppConfig, get_settings
from models.schemas import InboundMessage

logger = structlog.get_logger()


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if mode == "subscribe" and verify_token and token == verify_token:
        return challenge
    return None


def parse_webhook(raw_payload: dict[str, Any]) -> Optional[InboundMessage]:
    """Parse a Cloud API webhook payload into an InboundMessage (None if it carries no text)."""
    try:
        entry = raw_payload.get("entry", [{}])[0]
        changes = entry.get("changes", [{}])[0]
        value = changes.get("value", {})
    except (IndexError, KeyError, AttributeError):
        return None

    # Status updates (delivered/read) carry no message
    if "statuses" in value and "messages" not in value:
        return None

    messages = value.get("messages", [])
    if not messages:
        return None

    msg = messages[0]
    sender = normalize_phone(msg.get("from", ""))
    msg_type = msg.get("type", "text")

    contacts = value.get("contacts", [])
    sender_name = None
    if contacts:
        sender_name = contacts[0].get("profile", {}).get("name") or None

    content = ""
    if msg_type == "text":
        content = msg.get("text", {}).get("body", "")
    elif msg_type == "interactive":
        interactive = msg.get("interactive", {})
        itype = interactive.get("type", "")
        if itype in ("button_reply", "list_reply"):
            content = interactive.get(itype, {}).get("title", "")
    elif msg_type == "button":
        content = msg.get("button", {}).get("text", "")

    if not sender or not content:
        logger.debug("whatsapp_inbound_skipped", msg_type=msg_type, has_sender=bool(sender))
        return None

    timestamp = datetime.now(timezone.utc)
    if msg.get("timestamp"):
        try:
            timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)
        except (TypeError, ValueError):
            pass

    return InboundMessage(
        sender=sender,
        text=content,
        timestamp=timestamp,
        customer_name=sender_name,
        message_id=msg.get("id", ""),
    )


class WhatsAppGateway(MessagingGateway):
    """
    WhatsApp Business Cloud API gateway.

    Transport failures are retried; a non-2xx answer is reported as a
    failed delivery without retrying.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().whatsapp
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @property
    def messages_path(self) -> str:
        return f"/{self.config.api_version}/{self.config.phone_number_id}/messages"

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(
            self.messages_path,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.access_token}"},
        )
        response.raise_for_status()
        return response.json()

    async def send_message(self, to: str, text: str) -> bool:
        if not self.config.phone_number_id or not self.config.access_token:
            raise GatewayError("WhatsApp gateway is not configured", gateway=self.name)

        phone = normalize_phone(to)
        payload = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": text},
        }
        try:
            result = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error("whatsapp_send_failed", to=phone, error=str(e))
            return False

        msg_id = (result.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_text_sent", to=phone, msg_id=msg_id)
        return True

    async def close(self):
        if self.client:
            await self.client.aclose()
