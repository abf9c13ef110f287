"""
Notifier capability: hands SMS and email off to a delivery provider
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from ..clock import utcnow
from ..exceptions import NotifierTransientError


logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivery provider interface; success means accepted for delivery"""

    @abstractmethod
    async def send_sms(self, to: str, body: str) -> str:
        """Send an SMS, returns the provider delivery reference"""
        pass

    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> str:
        """Send an email, returns the provider delivery reference"""
        pass


class LoggingNotifier(Notifier):
    """Accepts everything and writes it to the log"""

    async def send_sms(self, to: str, body: str) -> str:
        ref = f"sms_{uuid4().hex[:12]}"
        logger.info(f"SMS to {to} accepted ({ref}): {body}")
        return ref

    async def send_email(self, to: str, subject: str, body: str) -> str:
        ref = f"email_{uuid4().hex[:12]}"
        logger.info(f"Email to {to} accepted ({ref}): {subject}")
        return ref


@dataclass
class SentMessage:
    channel: str
    to: str
    body: str
    subject: Optional[str] = None
    ref: str = field(default_factory=lambda: uuid4().hex)
    sent_at: datetime = field(default_factory=utcnow)


class MockNotifier(Notifier):
    """Records sends; can be told to fail the next N calls"""

    def __init__(self):
        self.sent: List[SentMessage] = []
        self.failures_remaining = 0
        self.failure: Optional[Exception] = None

    def fail_next(self, times: int = 1, error: Exception = None):
        self.failures_remaining = times
        self.failure = error

    def _maybe_fail(self):
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.failure or NotifierTransientError("Provider unavailable")

    async def send_sms(self, to: str, body: str) -> str:
        self._maybe_fail()
        message = SentMessage(channel="sms", to=to, body=body)
        self.sent.append(message)
        return message.ref

    async def send_email(self, to: str, subject: str, body: str) -> str:
        self._maybe_fail()
        message = SentMessage(channel="email", to=to, body=body, subject=subject)
        self.sent.append(message)
        return message.ref

    def sms(self) -> List[SentMessage]:
        return [m for m in self.sent if m.channel == "sms"]

    def emails(self) -> List[SentMessage]:
        return [m for m in self.sent if m.channel == "email"]
