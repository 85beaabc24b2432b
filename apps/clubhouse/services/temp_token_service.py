"""
Temp-account verification tokens.

Registration can start before an account exists: the visitor gets a
verification link and the pending credentials wait here, keyed by email.
The store is in-memory and not durable across restarts. A background
sweeper evicts expired entries every hour.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from clubhouse.services.errors import NotFound, RateLimited, ValidationError
from clubhouse.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_TTL = timedelta(minutes=30)
RESEND_INTERVAL = timedelta(minutes=2)

# How often the sweeper evicts expired entries (seconds)
SWEEP_INTERVAL_SECONDS = 3600


@dataclass
class TempToken:
    token: str
    expires: datetime
    password_hash: str
    created_at: datetime
    verified: bool = False


class TempTokenStore:
    """In-memory map of lower-cased email -> pending verification token."""

    def __init__(self):
        self._tokens: Dict[str, TempToken] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def issue(self, email: str, password_hash: str, now: Optional[datetime] = None) -> TempToken:
        """
        Create (or replace) the token for ``email``.

        Raises:
            RateLimited: If a token was issued for this email less than two
                minutes ago
        """
        now = now or utcnow()
        key = email.strip().lower()
        existing = self._tokens.get(key)
        if existing is not None and now - existing.created_at < RESEND_INTERVAL:
            wait_seconds = int((RESEND_INTERVAL - (now - existing.created_at)).total_seconds())
            raise RateLimited(
                "Please wait before requesting another verification email",
                details={"retryAfterSeconds": max(wait_seconds, 1)},
            )
        entry = TempToken(
            token=secrets.token_hex(32),
            expires=now + TOKEN_TTL,
            password_hash=password_hash,
            created_at=now,
        )
        self._tokens[key] = entry
        return entry

    def get(self, email: str) -> Optional[TempToken]:
        return self._tokens.get(email.strip().lower())

    def resend(self, email: str, now: Optional[datetime] = None) -> TempToken:
        """
        Return the pending token again and restart the resend throttle.

        Raises:
            NotFound: If nothing is pending for ``email``
            RateLimited: Within two minutes of the last send
        """
        now = now or utcnow()
        entry = self.get(email)
        if entry is None or entry.expires <= now:
            raise NotFound("No pending registration found. Please start the registration process again.")
        if now - entry.created_at < RESEND_INTERVAL:
            raise RateLimited(
                "Verification email was recently sent. Please wait 2 minutes before requesting another."
            )
        entry.created_at = now
        return entry

    def verify(self, email: str, token: str, now: Optional[datetime] = None) -> TempToken:
        """
        Check a token and mark the pending account verified.

        Raises:
            ValidationError: If no token exists, it does not match, or it expired
        """
        now = now or utcnow()
        key = email.strip().lower()
        entry = self._tokens.get(key)
        if entry is None or not secrets.compare_digest(entry.token, token):
            raise ValidationError("Invalid or expired verification token")
        if entry.expires <= now:
            del self._tokens[key]
            raise ValidationError("Invalid or expired verification token")
        entry.verified = True
        return entry

    def get_verified(self, email: str, now: Optional[datetime] = None) -> Optional[TempToken]:
        """The entry for ``email`` if it was verified and has not expired."""
        now = now or utcnow()
        entry = self.get(email)
        if entry is None or not entry.verified or entry.expires <= now:
            return None
        return entry

    def discard(self, email: str) -> None:
        self._tokens.pop(email.strip().lower(), None)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Evict expired entries. Returns the number removed."""
        now = now or utcnow()
        expired = [key for key, entry in self._tokens.items() if entry.expires <= now]
        for key in expired:
            del self._tokens[key]
        if expired:
            logger.info(f"Evicted {len(expired)} expired temp-account tokens")
        return len(expired)


class TempTokenSweeper:
    """Background worker that sweeps a TempTokenStore on an interval."""

    def __init__(self, store: TempTokenStore, interval_seconds: float = SWEEP_INTERVAL_SECONDS):
        self.store = store
        self.interval_seconds = interval_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background sweep worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Temp token sweeper started")

    def stop(self) -> None:
        """Stop the background sweep worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Temp token sweeper stopped")

    async def _poll_loop(self) -> None:
        """Wait one interval, sweep, repeat until stopped."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                # stop_event was set
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.store.sweep()
            except Exception as e:
                logger.error(f"Error in temp token sweeper: {e}", exc_info=True)


# Global singletons
_temp_token_store = TempTokenStore()
_temp_token_sweeper = TempTokenSweeper(_temp_token_store)


def get_temp_token_store() -> TempTokenStore:
    return _temp_token_store


def get_temp_token_sweeper() -> TempTokenSweeper:
    return _temp_token_sweeper
