from __future__ import annotations

import hmac
import re
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from ditto.logging import get_logger
from ditto.service.clock import Clock, utcnow
from ditto.service.errors import InvalidPhoneFormat

logger = get_logger(__name__)

# E.164: leading +, no leading zero, at most 15 digits
PHONE_PATTERN = re.compile(r"^\+[1-9][0-9]{1,14}$")
CODE_LENGTH = 6


def validate_phone(phone: str) -> str:
    if not isinstance(phone, str) or not PHONE_PATTERN.fullmatch(phone):
        raise InvalidPhoneFormat()
    return phone


@dataclass(frozen=True)
class VerificationRequest:
    phone: str
    code: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class CodeGenerator(Protocol):
    def generate(self, phone: str) -> str: ...

    def expected_for(self, phone: str) -> Optional[str]:
        """Code derivable from the phone alone, or None if only the issued record counts."""
        ...


class RandomCodeGenerator:
    """Six-digit codes from the OS CSPRNG."""

    def generate(self, phone: str) -> str:
        return str(secrets.randbelow(10**CODE_LENGTH)).zfill(CODE_LENGTH)

    def expected_for(self, phone: str) -> Optional[str]:
        return None


class DeterministicCodeGenerator:
    """Bypass mode: the code is the last six digits of the phone number.

    Numbers with fewer than six digits are left-padded with zeros.
    """

    def generate(self, phone: str) -> str:
        digits = "".join(ch for ch in phone if ch in string.digits)
        return digits[-CODE_LENGTH:].zfill(CODE_LENGTH)

    def expected_for(self, phone: str) -> Optional[str]:
        return self.generate(phone)


class CodeIssuer:
    """Issues and checks one-time verification codes keyed by phone."""

    def __init__(
        self,
        generator: CodeGenerator,
        *,
        ttl_minutes: int = 5,
        debug_channel: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        self.generator = generator
        self.ttl = timedelta(minutes=ttl_minutes)
        self.debug_channel = debug_channel
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._requests: dict[str, VerificationRequest] = {}
        self.last_issued: Optional[VerificationRequest] = None

    def _now(self) -> datetime:
        return self._clock()

    @property
    def bypass(self) -> bool:
        return isinstance(self.generator, DeterministicCodeGenerator)

    def issue(self, phone: str) -> VerificationRequest:
        """Generate a code for ``phone`` and record it, replacing any earlier one.

        Raises:
            InvalidPhoneFormat: if ``phone`` is not E.164; nothing is recorded.
        """
        validate_phone(phone)
        code = self.generator.generate(phone)
        now = self._now()
        request = VerificationRequest(
            phone=phone, code=code, issued_at=now, expires_at=now + self.ttl
        )
        with self._lock:
            self._requests[phone] = request
            if self.debug_channel:
                self.last_issued = request
        if self.debug_channel:
            logger.debug("verification_code_issued", phone=phone, code=code)
        logger.info("verification_code_recorded", phone=phone, bypass=self.bypass)
        return request

    def check(self, phone: str, code: str) -> bool:
        """Return True when ``code`` is valid for ``phone``.

        A successful check consumes the record. An expired record is dropped.
        A mismatch leaves the record in place so the caller can retry.
        """
        if not isinstance(code, str):
            return False
        derived = self.generator.expected_for(phone)
        now = self._now()
        with self._lock:
            if derived is not None:
                matched = hmac.compare_digest(derived.encode(), code.encode())
                if matched:
                    self._requests.pop(phone, None)
                return matched
            request = self._requests.get(phone)
            if request is None:
                return False
            if request.is_expired(now):
                self._requests.pop(phone, None)
                logger.info("verification_code_expired", phone=phone)
                return False
            if not hmac.compare_digest(request.code.encode(), code.encode()):
                return False
            self._requests.pop(phone, None)
            return True

    def pending(self, phone: str) -> Optional[VerificationRequest]:
        with self._lock:
            return self._requests.get(phone)

    def sweep(self) -> int:
        """Drop expired, never-verified records. Returns how many were removed."""
        now = self._now()
        with self._lock:
            expired = [
                phone for phone, request in self._requests.items() if request.is_expired(now)
            ]
            for phone in expired:
                self._requests.pop(phone, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)
