"""
Tests for the in-memory temp-account token store and its sweeper.
"""
import asyncio
from datetime import timedelta

import pytest

from clubhouse.services.errors import NotFound, RateLimited, ValidationError
from clubhouse.services.temp_token_service import (
    RESEND_INTERVAL,
    TOKEN_TTL,
    TempTokenStore,
    TempTokenSweeper,
)
from clubhouse.utils.datetime_utils import utcnow


@pytest.fixture
def store():
    return TempTokenStore()


class TestIssue:
    def test_issue_keys_by_lowercased_email(self, store):
        entry = store.issue("New@Example.com", "hash")
        assert store.get("new@example.com") is entry
        assert entry.expires - entry.created_at == TOKEN_TTL
        assert entry.verified is False

    def test_issue_throttled_within_two_minutes(self, store):
        now = utcnow()
        store.issue("new@example.com", "hash", now=now)
        with pytest.raises(RateLimited) as exc_info:
            store.issue("new@example.com", "hash", now=now + timedelta(seconds=30))
        assert exc_info.value.details["retryAfterSeconds"] == 90

    def test_issue_allowed_after_interval(self, store):
        now = utcnow()
        first = store.issue("new@example.com", "hash", now=now)
        second = store.issue("new@example.com", "hash2", now=now + RESEND_INTERVAL)
        assert second.token != first.token
        assert store.get("new@example.com").password_hash == "hash2"


class TestVerify:
    def test_verify_marks_entry_verified_without_consuming(self, store):
        entry = store.issue("new@example.com", "hash")
        verified = store.verify("NEW@example.com", entry.token)

        assert verified.verified is True
        assert store.get_verified("new@example.com") is entry

    def test_wrong_token(self, store):
        store.issue("new@example.com", "hash")
        with pytest.raises(ValidationError):
            store.verify("new@example.com", "0" * 64)
        assert store.get_verified("new@example.com") is None

    def test_unknown_email(self, store):
        with pytest.raises(ValidationError):
            store.verify("nobody@example.com", "token")

    def test_expired_entry_removed(self, store):
        now = utcnow()
        entry = store.issue("new@example.com", "hash", now=now)
        with pytest.raises(ValidationError):
            store.verify("new@example.com", entry.token, now=now + TOKEN_TTL)
        assert store.get("new@example.com") is None

    def test_get_verified_ignores_expired(self, store):
        now = utcnow()
        entry = store.issue("new@example.com", "hash", now=now)
        store.verify("new@example.com", entry.token, now=now)
        assert store.get_verified("new@example.com", now=now + TOKEN_TTL) is None


class TestResend:
    def test_resend_nothing_pending(self, store):
        with pytest.raises(NotFound):
            store.resend("nobody@example.com")

    def test_resend_throttled(self, store):
        now = utcnow()
        store.issue("new@example.com", "hash", now=now)
        with pytest.raises(RateLimited):
            store.resend("new@example.com", now=now + timedelta(minutes=1))

    def test_resend_restarts_throttle(self, store):
        now = utcnow()
        entry = store.issue("new@example.com", "hash", now=now)
        later = now + RESEND_INTERVAL
        resent = store.resend("new@example.com", now=later)

        assert resent.token == entry.token
        assert resent.created_at == later
        with pytest.raises(RateLimited):
            store.resend("new@example.com", now=later + timedelta(seconds=10))

    def test_resend_expired(self, store):
        now = utcnow()
        store.issue("new@example.com", "hash", now=now)
        with pytest.raises(NotFound):
            store.resend("new@example.com", now=now + TOKEN_TTL)


class TestSweep:
    def test_sweep_evicts_only_expired(self, store):
        now = utcnow()
        store.issue("old@example.com", "hash", now=now - TOKEN_TTL)
        store.issue("fresh@example.com", "hash", now=now)

        assert store.sweep(now=now) == 1
        assert len(store) == 1
        assert store.get("fresh@example.com") is not None

    def test_discard(self, store):
        store.issue("new@example.com", "hash")
        store.discard("NEW@example.com")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_sweeper_runs_on_interval(self, store):
        store.issue("old@example.com", "hash", now=utcnow() - TOKEN_TTL)
        sweeper = TempTokenSweeper(store, interval_seconds=0.01)

        sweeper.start()
        await asyncio.sleep(0.1)
        sweeper.stop()
        await asyncio.sleep(0.01)

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_sweeper_stop_cancels_task(self, store):
        sweeper = TempTokenSweeper(store, interval_seconds=60)
        sweeper.start()
        task = sweeper._worker_task
        sweeper.stop()
        await asyncio.sleep(0.01)
        assert task.cancelled() or task.done()
