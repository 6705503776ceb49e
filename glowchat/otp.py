"""
One-time code storage for phone login.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis

OTP_KEY = "glowchat:otp:{phone}"
CONSUME_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def generate_code() -> str:
    """Return a six digit code in the range 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


class OtpStore(Protocol):
    """Minimal interface for issuing and checking one-time codes."""

    def save(self, phone: str, code: str, ttl_seconds: int) -> None:
        ...

    def verify(self, phone: str, code: str) -> bool:
        ...


@dataclass
class InMemoryOtpStore:
    """Dictionary of phone -> (code, expires_at) for testing/dev."""

    codes: dict[str, tuple[str, float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def save(self, phone: str, code: str, ttl_seconds: int) -> None:
        with self._lock:
            self.codes[phone] = (code, time.time() + ttl_seconds)

    def verify(self, phone: str, code: str) -> bool:
        with self._lock:
            entry = self.codes.pop(phone, None)
            if entry is None:
                return False
            stored, expires_at = entry
            if expires_at <= time.time():
                return False
            if not secrets.compare_digest(stored, code):
                self.codes[phone] = entry
                return False
            return True


@dataclass
class RedisOtpStore:
    """Redis-backed store; expiry is delegated to key TTLs."""

    url: str
    client: Optional[redis.Redis] = None

    def __post_init__(self):
        if self.client is None:
            self.client = redis.Redis.from_url(self.url)
        # GET and DEL in one step so a code can only be redeemed once.
        self._consume = self.client.register_script(CONSUME_SCRIPT)

    def save(self, phone: str, code: str, ttl_seconds: int) -> None:
        self.client.setex(OTP_KEY.format(phone=phone), ttl_seconds, code)

    def verify(self, phone: str, code: str) -> bool:
        key = OTP_KEY.format(phone=phone)
        return bool(self._consume(keys=[key], args=[code]))
