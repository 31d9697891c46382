"""Tests for WebhookQueue storage and transitions."""
from datetime import datetime, timedelta

import pytest

from ghmirror.models.webhook import (
    DEAD_LETTER,
    DELIVERY_FAILED,
    DELIVERY_PROCESSED,
    FAILED,
    PENDING,
    PROCESSED,
    PROCESSING,
)
from ghmirror.webhooks.ledger import DeliveryLedger
from ghmirror.webhooks.queue import DISCARDED_ERROR, WebhookQueue

NOW = datetime(2025, 1, 15, 12, 0)


@pytest.fixture
def ledger(engine):
    return DeliveryLedger(engine)


@pytest.fixture
def queue(engine, ledger):
    return WebhookQueue(engine, ledger, max_attempts=5)


def _enqueue(queue, delivery_id="abc123", event="pull_request", now=NOW):
    result = queue.enqueue(delivery_id, event, "opened", '{"action": "opened"}', now=now)
    return result.queue_item_id


class TestEnqueue:
    def test_creates_pending_item(self, queue):
        result = queue.enqueue("abc123", "pull_request", "opened", "{}")
        assert result.queued is True
        assert result.duplicate is False
        item = queue.get(result.queue_item_id)
        assert item.status == PENDING
        assert item.attempts == 0
        assert item.max_attempts == 5

    def test_in_flight_redelivery_is_duplicate(self, queue):
        queue.enqueue("abc123", "pull_request", "opened", "{}")
        result = queue.enqueue("abc123", "pull_request", "opened", "{}")
        assert result.queued is False
        assert result.duplicate is True
        assert len(queue.list_all()) == 1

    def test_settled_delivery_is_duplicate(self, queue, ledger):
        ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_PROCESSED)
        result = queue.enqueue("abc123", "pull_request", "opened", "{}")
        assert result.duplicate is True
        assert queue.list_all() == []

    def test_empty_action_stored_as_none(self, queue):
        result = queue.enqueue("d-1", "push", "", "{}")
        assert queue.get(result.queue_item_id).action is None

    def test_owner_recorded(self, queue):
        result = queue.enqueue("d-1", "push", None, "{}", owner_user_id=7)
        assert queue.get(result.queue_item_id).owner_user_id == 7


class TestClaim:
    def test_claim_moves_to_processing_and_counts_attempt(self, queue):
        item_id = _enqueue(queue)
        assert queue.claim(item_id, NOW) is True
        item = queue.get(item_id)
        assert item.status == PROCESSING
        assert item.attempts == 1
        assert item.claimed_at == NOW

    def test_second_claim_fails(self, queue):
        item_id = _enqueue(queue)
        assert queue.claim(item_id, NOW) is True
        assert queue.claim(item_id, NOW) is False
        assert queue.get(item_id).attempts == 1

    def test_finish_requires_processing(self, queue):
        item_id = _enqueue(queue)
        assert queue.mark_processed(item_id, NOW) is False
        queue.claim(item_id, NOW)
        assert queue.mark_processed(item_id, NOW) is True
        assert queue.get(item_id).status == PROCESSED


class TestDueItems:
    def test_oldest_first_and_limited(self, queue):
        _enqueue(queue, "d-2", now=NOW - timedelta(minutes=1))
        _enqueue(queue, "d-1", now=NOW - timedelta(minutes=2))
        _enqueue(queue, "d-3", now=NOW)
        due = queue.due_items(2, NOW)
        assert [i.delivery_id for i in due] == ["d-1", "d-2"]

    def test_failed_items_wait_for_retry_time(self, queue):
        item_id = _enqueue(queue)
        queue.claim(item_id, NOW)
        queue.mark_failed(item_id, "db locked", NOW + timedelta(seconds=30), NOW)
        assert queue.due_items(10, NOW) == []

        assert queue.rearm_due_retries(NOW + timedelta(seconds=10)) == 0
        assert queue.rearm_due_retries(NOW + timedelta(seconds=30)) == 1
        item = queue.get(item_id)
        assert item.status == PENDING
        assert item.next_retry_at is None
        assert item.attempts == 1
        assert [i.id for i in queue.due_items(10, NOW + timedelta(seconds=30))] == [item_id]


class TestRecoverStaleClaims:
    def test_stale_processing_item_returns_to_pending(self, queue):
        item_id = _enqueue(queue)
        queue.claim(item_id, NOW)
        assert queue.recover_stale_claims(timedelta(minutes=5), NOW + timedelta(minutes=1)) == 0
        assert queue.recover_stale_claims(timedelta(minutes=5), NOW + timedelta(minutes=6)) == 1
        item = queue.get(item_id)
        assert item.status == PENDING
        assert item.attempts == 1


class TestOperatorActions:
    def _dead_letter(self, queue, delivery_id="abc123"):
        item_id = _enqueue(queue, delivery_id)
        queue.claim(item_id, NOW)
        queue.mark_dead_letter(item_id, "PermanentError: bad", NOW)
        return item_id

    def test_retry_keeps_attempts(self, queue):
        item_id = self._dead_letter(queue)
        assert queue.retry(item_id) == 1
        item = queue.get(item_id)
        assert item.status == PENDING
        assert item.attempts == 1
        assert item.last_error is None

    def test_retry_forgets_ledger_tombstone(self, queue, ledger):
        item_id = self._dead_letter(queue)
        ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_FAILED)
        queue.retry(item_id)
        assert ledger.has_processed("abc123") is False

    def test_retry_and_tombstone_removal_commit_together(self, queue, ledger, monkeypatch):
        item_id = self._dead_letter(queue)
        ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_FAILED)
        real_forget = ledger.forget

        def forget_then_crash(delivery_id, session=None):
            real_forget(delivery_id, session=session)
            raise RuntimeError("connection lost")

        monkeypatch.setattr(ledger, "forget", forget_then_crash)

        with pytest.raises(RuntimeError):
            queue.retry(item_id)

        # Neither half of the re-arm was committed.
        assert queue.get(item_id).status == DEAD_LETTER
        assert ledger.has_processed("abc123") is True

    def test_settling_a_retried_item_records_a_fresh_tombstone(self, queue, ledger):
        item_id = self._dead_letter(queue)
        ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_FAILED)

        queue.retry(item_id)
        # A worker picks the item up as soon as the retry commits.
        assert queue.claim(item_id, NOW) is True
        queue.mark_processed(item_id, NOW)
        assert ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_PROCESSED) is True
        queue.delete(item_id)

        assert ledger.get("abc123").status == DELIVERY_PROCESSED
        assert queue.enqueue("abc123", "pull_request", "opened", "{}").duplicate is True

    def test_retry_is_idempotent(self, queue):
        item_id = self._dead_letter(queue)
        assert queue.retry(item_id) == 1
        assert queue.retry(item_id) == 0
        assert queue.retry(9999) == 0

    def test_retry_all_only_touches_dead_letter(self, queue):
        self._dead_letter(queue, "d-1")
        self._dead_letter(queue, "d-2")
        failed_id = _enqueue(queue, "d-3")
        queue.claim(failed_id, NOW)
        queue.mark_failed(failed_id, "x", NOW + timedelta(hours=1), NOW)

        assert queue.retry_all() == 2
        assert queue.get(failed_id).status == FAILED

    def test_discard_pending_writes_tombstone(self, queue, ledger):
        item_id = _enqueue(queue)
        assert queue.discard(item_id) == 1
        assert queue.get(item_id) is None
        record = ledger.get("abc123")
        assert record.status == DELIVERY_FAILED
        assert record.error == DISCARDED_ERROR
        # A redelivery of a discarded event stays dropped.
        assert queue.enqueue("abc123", "pull_request", "opened", "{}").duplicate is True

    def test_discard_skips_processing_items(self, queue):
        item_id = _enqueue(queue)
        queue.claim(item_id, NOW)
        assert queue.discard(item_id) == 0
        assert queue.get(item_id).status == PROCESSING

    def test_discard_losing_to_a_claim_leaves_ledger_alone(self, queue, ledger, monkeypatch):
        item_id = _enqueue(queue)
        real_get = queue.get

        def get_then_claimed(item_id):
            item = real_get(item_id)
            # A worker claims the item between the read and the delete.
            queue.claim(item_id, NOW)
            return item

        monkeypatch.setattr(queue, "get", get_then_claimed)

        assert queue.discard(item_id) == 0
        assert ledger.get("abc123") is None
        assert real_get(item_id).status == PROCESSING

    def test_discard_dead_letter_keeps_existing_tombstone(self, queue, ledger):
        item_id = self._dead_letter(queue)
        ledger.record_terminal("abc123", "pull_request", "opened", DELIVERY_FAILED, error="PermanentError: bad")

        assert queue.discard(item_id) == 1
        assert queue.get(item_id) is None
        assert ledger.get("abc123").error == "PermanentError: bad"

    def test_discard_missing_item(self, queue):
        assert queue.discard(12345) == 0

    def test_discard_all_dead_letter(self, queue):
        self._dead_letter(queue, "d-1")
        self._dead_letter(queue, "d-2")
        _enqueue(queue, "d-3")
        assert queue.discard_all() == 2
        assert queue.discard_all() == 0
        assert len(queue.list_all()) == 1

    def test_list_problem_items_and_counts(self, queue):
        self._dead_letter(queue, "d-1")
        _enqueue(queue, "d-2")
        problems = queue.list_problem_items()
        assert [i.delivery_id for i in problems] == ["d-1"]
        assert queue.counts_by_status() == {DEAD_LETTER: 1, PENDING: 1}


class TestPurgeTerminal:
    def test_only_old_terminal_items(self, queue):
        old_done = _enqueue(queue, "d-1")
        queue.claim(old_done, NOW)
        queue.mark_processed(old_done, NOW - timedelta(days=10))
        pending = _enqueue(queue, "d-2")

        assert queue.purge_terminal(NOW - timedelta(days=7)) == 1
        assert queue.get(old_done) is None
        assert queue.get(pending) is not None

    def test_owner_filters(self, queue):
        a = queue.enqueue("d-a", "push", None, "{}", owner_user_id=1).queue_item_id
        b = queue.enqueue("d-b", "push", None, "{}", owner_user_id=2).queue_item_id
        for item_id in (a, b):
            queue.claim(item_id, NOW)
            queue.mark_processed(item_id, NOW - timedelta(days=10))

        assert queue.purge_terminal(NOW, exclude_owner_user_ids=[2]) == 1
        assert queue.get(b) is not None
        assert queue.purge_terminal(NOW, owner_user_ids=[2]) == 1
