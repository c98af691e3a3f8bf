"""
Messaging gateways — outbound delivery of bot replies.

Provides:
- GatewayError: raised by a gateway that cannot attempt delivery
- MessagingGateway: abstract send interface used by the conversation engine
- RecordingGateway: keeps sent messages in memory (development and tests)
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from dataclasses import dataclass, field

logger = structlog.get_logger()


class GatewayError(Exception):
    """Base exception for gateway operations."""

    def __init__(self, message: str, gateway: str = "", retryable: bool = False):
        self.gateway = gateway
        self.retryable = retryable
        super().__init__(message)


class MessagingGateway(abc.ABC):
    """
    Outbound text delivery. send_message returns True when the provider
    accepted the message; the engine treats delivery as fire-and-forget.
    """

    name: str = "base"

    @abc.abstractmethod
    async def send_message(self, to: str, text: str) -> bool:
        ...

    async def close(self) -> None:
        pass


@dataclass
class SentMessage:
    to: str
    text: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecordingGateway(MessagingGateway):
    """In-memory gateway. Set `fail=True` to simulate an unavailable provider."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[SentMessage] = []

    async def send_message(self, to: str, text: str) -> bool:
        if self.fail:
            raise GatewayError("Gateway unavailable", gateway=self.name, retryable=True)
        self.sent.append(SentMessage(to=to, text=text))
        logger.debug("gateway_message_recorded", to=to, length=len(text))
        return True

    def messages_to(self, to: str) -> list[str]:
        return [m.text for m in self.sent if m.to == to]
