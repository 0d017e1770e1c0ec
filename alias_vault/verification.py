"""
Verification — one-time codes for passwordless registration and login.

Pending codes live in a :class:`VerificationCodeStore` keyed by email. Expired
entries are removed by an explicit :meth:`VerificationCodeStore.sweep`, which
:class:`VerificationManager` runs on every verification attempt.

Delivery is a strategy picked once at startup by :func:`build_code_sender`:
``ResendCodeSender`` when ``RESEND_API_KEY`` is configured, otherwise
``ConsoleCodeSender``. The strategy never changes while the process runs.

Security Note:
    Only ``ConsoleCodeSender`` writes codes to the log, and it is meant for
    development. Never log codes anywhere else.
"""
import secrets
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional
from datetime import datetime, timedelta

import aiohttp
from pydantic import BaseModel

from .models import utcnow
from .vault.config import VaultConfig

logger = logging.getLogger("alias_vault.verification")

CODE_LENGTH = 6
MAX_FAILED_ATTEMPTS = 5
RESEND_API_URL = "https://api.resend.com/emails"


class VerificationPurpose(str, Enum):
    REGISTER = "register"
    LOGIN = "login"


class VerificationCode(BaseModel):
    email: str
    code: str
    expires_at: datetime
    purpose: VerificationPurpose
    failed_attempts: int = 0

    def expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def generate_code() -> str:
    """Return a random 6-digit numeric code (never starting with 0)."""
    return str(100000 + secrets.randbelow(900000))


class VerificationCodeStore:
    """In-memory pending codes, one per email, with explicit TTL sweeping.

    Args:
        ttl: Code lifetime in seconds.
        clock: Callable returning the current aware datetime.
        max_failed_attempts: Wrong guesses after which the pending code is
            discarded and a new one must be requested.
    """

    def __init__(
        self,
        ttl: int = 600,
        clock: Optional[Callable[[], datetime]] = None,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
    ):
        if max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        self._ttl = timedelta(seconds=ttl)
        self._max_failed = max_failed_attempts
        self._clock = clock or utcnow
        self._codes: dict[str, VerificationCode] = {}

    def __len__(self) -> int:
        return len(self._codes)

    def __contains__(self, email: object) -> bool:
        return email in self._codes

    def create(self, email: str, purpose: VerificationPurpose) -> str:
        """Issue a code for ``email``, replacing any pending one."""
        code = generate_code()
        self._codes[email] = VerificationCode(
            email=email,
            code=code,
            expires_at=self._clock() + self._ttl,
            purpose=VerificationPurpose(purpose),
        )
        return code

    def verify(self, email: str, code: str) -> Optional[VerificationCode]:
        """Consume and return the pending code if it matches and is unexpired.

        A wrong guess counts against the code; reaching the limit discards it.
        """
        stored = self._codes.get(email)
        if stored is None:
            return None
        if stored.expired(self._clock()):
            del self._codes[email]
            return None
        if not secrets.compare_digest(stored.code, code):
            stored.failed_attempts += 1
            if stored.failed_attempts >= self._max_failed:
                logger.warning(
                    "Discarding verification code for %s after %d failed attempts",
                    email, stored.failed_attempts,
                )
                del self._codes[email]
            return None
        del self._codes[email]
        return stored

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Remove expired codes.

        Returns:
            Number of entries removed.
        """
        now = now or self._clock()
        expired = [email for email, c in self._codes.items() if c.expired(now)]
        for email in expired:
            del self._codes[email]
        if expired:
            logger.debug("Swept %d expired verification code(s)", len(expired))
        return len(expired)


# ---------------------------------------------------------------------------
# Delivery strategies
# ---------------------------------------------------------------------------

def _subject(purpose: VerificationPurpose) -> str:
    if purpose is VerificationPurpose.REGISTER:
        return "Welcome to EmailAlies - Verify Your Account"
    return "EmailAlies - Sign In Code"


def _html_body(code: str, purpose: VerificationPurpose, ttl_minutes: int) -> str:
    action = "create your account" if purpose is VerificationPurpose.REGISTER else "sign in"
    return (
        "<!DOCTYPE html><html><body>"
        "<h1>EmailAlies</h1>"
        f"<p>Use this verification code to {action}:</p>"
        f'<p style="font-size:32px;font-weight:bold;letter-spacing:4px">{code}</p>'
        f"<p>This code will expire in {ttl_minutes} minutes.</p>"
        "<p>If you didn't request this code, you can safely ignore this email.</p>"
        "</body></html>"
    )


class CodeSender(ABC):
    """Delivers a verification code to an email address."""

    name = "base"

    @abstractmethod
    async def send(self, email: str, code: str, purpose: VerificationPurpose) -> bool:
        """Deliver ``code``; return False if the provider rejected it."""

    async def close(self) -> None:
        """Release any held resources."""


class ConsoleCodeSender(CodeSender):
    """Development sender: writes the code to the log instead of mailing it."""

    name = "console"

    async def send(self, email: str, code: str, purpose: VerificationPurpose) -> bool:
        logger.warning(
            "Email delivery disabled; %s code for %s is %s",
            VerificationPurpose(purpose).value, email, code,
        )
        return True


class ResendCodeSender(CodeSender):
    """Sends codes through the Resend HTTP email API.

    Args:
        api_key: Resend API key.
        sender: ``From`` header value.
        ttl: Code lifetime in seconds (shown in the email body).
        session: Optional shared ``aiohttp.ClientSession``.
        timeout: Request timeout in seconds.
    """

    name = "resend"

    def __init__(
        self,
        api_key: str,
        sender: str,
        ttl: int = 600,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        self._api_key = api_key
        self._sender = sender
        self._ttl_minutes = max(1, ttl // 60)
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def send(self, email: str, code: str, purpose: VerificationPurpose) -> bool:
        purpose = VerificationPurpose(purpose)
        body = {
            "from": self._sender,
            "to": [email],
            "subject": _subject(purpose),
            "html": _html_body(code, purpose, self._ttl_minutes),
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with self._get_session().post(
                RESEND_API_URL, json=body, headers=headers
            ) as response:
                if response.status >= 300:
                    logger.error(
                        "Failed to send verification email to %s: HTTP %s",
                        email, response.status,
                    )
                    return False
        except aiohttp.ClientError as err:
            logger.error("Email service error for %s: %s", email, err)
            return False
        logger.info("Verification code sent to %s", email)
        return True

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def build_code_sender(
    config: VaultConfig, session: Optional[aiohttp.ClientSession] = None
) -> CodeSender:
    """Pick the delivery strategy once, from configuration."""
    if config.email_delivery_enabled:
        logger.info("Verification delivery: resend")
        return ResendCodeSender(
            config.resend_api_key,
            config.email_from,
            ttl=config.code_ttl,
            session=session,
        )
    logger.warning("RESEND_API_KEY not set; verification codes will be logged")
    return ConsoleCodeSender()


class VerificationManager:
    """Issue, deliver and check one-time codes."""

    def __init__(self, store: VerificationCodeStore, sender: CodeSender):
        self._store = store
        self._sender = sender

    @classmethod
    def from_config(
        cls, config: VaultConfig, session: Optional[aiohttp.ClientSession] = None
    ) -> "VerificationManager":
        return cls(
            VerificationCodeStore(ttl=config.code_ttl),
            build_code_sender(config, session),
        )

    @property
    def sender(self) -> CodeSender:
        return self._sender

    @property
    def store(self) -> VerificationCodeStore:
        return self._store

    async def request_code(self, email: str, purpose: VerificationPurpose) -> bool:
        """Create a code for ``email`` and deliver it.

        Returns:
            True if the sender accepted the message.
        """
        code = self._store.create(email, purpose)
        return await self._sender.send(email, code, VerificationPurpose(purpose))

    def verify_code(self, email: str, code: str) -> Optional[VerificationCode]:
        self._store.sweep()
        return self._store.verify(email, code)

    async def close(self) -> None:
        await self._sender.close()
