"""
SMS delivery for one-time codes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from twilio.rest import Client as TwilioClient

logger = logging.getLogger(__name__)

OTP_MESSAGE = "Your GlowChat OTP: {code}"


class SmsSender(Protocol):
    """Sends a one-time code to a phone number."""

    #: When True the code is echoed back to the caller instead of texted.
    demo: bool

    def send_code(self, phone: str, code: str) -> None:
        ...


@dataclass
class DemoSmsSender:
    """Records codes instead of sending them. Used when Twilio is not configured."""

    demo: bool = True
    sent: list[tuple[str, str]] = field(default_factory=list)

    def send_code(self, phone: str, code: str) -> None:
        logger.info("Demo mode: OTP for %s not sent over SMS", phone)
        self.sent.append((phone, code))


@dataclass
class TwilioSmsSender:
    account_sid: str
    auth_token: str
    from_number: str
    demo: bool = False

    def __post_init__(self):
        self._client = TwilioClient(self.account_sid, self.auth_token)

    def send_code(self, phone: str, code: str) -> None:
        self._client.messages.create(
            from_=self.from_number,
            to=phone,
            body=OTP_MESSAGE.format(code=code),
        )
