"""Messaging gateways used to deliver bot replies."""
from channels.base import GatewayError, MessagingGateway, RecordingGateway, SentMessage
from channels.whatsapp import WhatsAppGateway, normalize_phone, parse_webhook, verify_webhook

__all__ = [
    "GatewayError", "MessagingGateway", "RecordingGateway", "SentMessage",
    "WhatsAppGateway", "normalize_phone", "parse_webhook", "verify_webhook",
]
