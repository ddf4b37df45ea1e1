"""
Tests for the idempotent message store and its trigger-fed change log.

Tests cover:
- Insert-if-absent upsert, first-writer-wins content
- Status patches by primary id / correlation id, no-op and not-found cases
- Bulk read-marking of inbound messages
- Conversation ordering
- Change log entries written by the database triggers
- Storage failures surfaced as StorageError
"""

from datetime import datetime

import pytest
from sqlalchemy.orm import Query

from relay.errors import StorageError
from relay.models import Base
from relay.schemas import Direction, MessageRecord, MessageStatus, PatchOutcome


def make_record(primary_id="m1", conversation_id="111", **overrides) -> MessageRecord:
    fields = {
        "primary_id": primary_id,
        "conversation_id": conversation_id,
        "counterparty_display_name": conversation_id,
        "direction": Direction.INBOUND,
        "body": "hi",
        "status": MessageStatus.RECEIVED,
        "occurred_at": datetime(2025, 1, 15, 9, 0, 0),
    }
    fields.update(overrides)
    return MessageRecord(**fields)


class TestUpsert:
    def test_first_upsert_inserts(self, store):
        assert store.upsert(make_record()) is True
        assert store.count() == 1

    def test_duplicate_is_noop_on_content(self, store):
        store.upsert(make_record(body="original"))
        before = store.get_by_primary_id("m1")

        inserted = store.upsert(make_record(body="changed", status=MessageStatus.READ))

        after = store.get_by_primary_id("m1")
        assert inserted is False
        assert store.count() == 1
        assert after.body == "original"
        assert after.status is MessageStatus.RECEIVED
        assert after.created_at == before.created_at
        assert after.updated_at > before.updated_at

    def test_concurrent_duplicate_insert_is_noop(self, store, monkeypatch):
        store.upsert(make_record(body="original"))
        before = store.get_by_primary_id("m1")

        # Another writer inserted m1 after this upsert's existence check
        with monkeypatch.context() as patch:
            patch.setattr(Query, "first", lambda self: None)
            inserted = store.upsert(make_record(body="racing"))

        after = store.get_by_primary_id("m1")
        assert inserted is False
        assert store.count() == 1
        assert after.body == "original"
        assert after.created_at == before.created_at
        assert after.updated_at > before.updated_at

    def test_insert_returns_stored_record(self, store, clock):
        record = store.insert(make_record(primary_id="local-1"))

        assert record.created_at == clock.now
        assert record.updated_at == clock.now


class TestStatusPatch:
    def test_patch_by_primary_id(self, store):
        store.upsert(make_record())

        outcome = store.apply_status_patch("m1", MessageStatus.DELIVERED)

        assert outcome is PatchOutcome.UPDATED
        assert store.get_by_primary_id("m1").status is MessageStatus.DELIVERED

    def test_patch_by_correlation_id(self, store):
        store.upsert(make_record(correlation_id="ctx-1"))

        outcome = store.apply_status_patch("ctx-1", MessageStatus.READ)

        assert outcome is PatchOutcome.UPDATED
        assert store.get_by_primary_id("m1").status is MessageStatus.READ

    def test_patch_only_first_match(self, store):
        store.upsert(make_record(primary_id="m1", correlation_id="ctx"))
        store.upsert(make_record(primary_id="m2", correlation_id="ctx"))

        store.apply_status_patch("ctx", MessageStatus.READ)

        assert store.get_by_primary_id("m1").status is MessageStatus.READ
        assert store.get_by_primary_id("m2").status is MessageStatus.RECEIVED

    def test_unmatched_patch_is_noop(self, store):
        store.upsert(make_record())

        outcome = store.apply_status_patch("missing", MessageStatus.READ)

        assert outcome is PatchOutcome.NOT_FOUND
        assert store.count() == 1

    def test_same_status_twice_is_unchanged(self, store):
        store.upsert(make_record())
        store.apply_status_patch("m1", MessageStatus.DELIVERED)
        updated_at = store.get_by_primary_id("m1").updated_at

        outcome = store.apply_status_patch("m1", MessageStatus.DELIVERED)

        assert outcome is PatchOutcome.UNCHANGED
        assert store.get_by_primary_id("m1").updated_at == updated_at


class TestMarkConversationRead:
    def test_marks_only_unread_inbound(self, store):
        store.upsert(make_record(primary_id="in-1"))
        store.upsert(make_record(primary_id="in-2", status=MessageStatus.READ))
        store.upsert(make_record(primary_id="out-1", direction=Direction.OUTBOUND, status=MessageStatus.SENT))
        store.upsert(make_record(primary_id="other", conversation_id="222"))

        changed = store.mark_conversation_read("111")

        assert changed == 1
        assert store.get_by_primary_id("in-1").status is MessageStatus.READ
        assert store.get_by_primary_id("out-1").status is MessageStatus.SENT
        assert store.get_by_primary_id("other").status is MessageStatus.RECEIVED

    def test_second_call_changes_nothing(self, store):
        store.upsert(make_record())
        store.mark_conversation_read("111")
        assert store.mark_conversation_read("111") == 0


class TestListByConversation:
    def test_ordered_by_occurred_then_created(self, store):
        late = datetime(2025, 1, 15, 12, 0, 0)
        early = datetime(2025, 1, 15, 8, 0, 0)
        store.upsert(make_record(primary_id="late", occurred_at=late))
        store.upsert(make_record(primary_id="tie-first", occurred_at=early))
        store.upsert(make_record(primary_id="tie-second", occurred_at=early))
        store.upsert(make_record(primary_id="elsewhere", conversation_id="222"))

        ids = [record.primary_id for record in store.list_by_conversation("111")]

        assert ids == ["tie-first", "tie-second", "late"]

    def test_unknown_conversation_is_empty(self, store):
        assert store.list_by_conversation("nobody") == []


class TestChangeLog:
    def test_triggers_record_insert_and_update(self, store):
        store.upsert(make_record())
        store.apply_status_patch("m1", MessageStatus.DELIVERED)

        changes = store.read_changes(0)

        assert [change.operation for change in changes] == ["insert", "update"]
        assert changes[0].change_id < changes[1].change_id

    def test_each_change_carries_post_mutation_record(self, store):
        store.upsert(make_record(correlation_id="ctx"))
        store.apply_status_patch("m1", MessageStatus.DELIVERED)

        inserted, updated = store.read_changes(0)

        assert inserted.record.status is MessageStatus.RECEIVED
        assert inserted.record.correlation_id == "ctx"
        assert inserted.record.occurred_at == datetime(2025, 1, 15, 9, 0, 0)
        assert updated.record.status is MessageStatus.DELIVERED
        assert updated.record.updated_at > inserted.record.updated_at

    def test_duplicate_upsert_logs_an_update(self, store):
        store.upsert(make_record())
        store.upsert(make_record())

        assert [change.operation for change in store.read_changes(0)] == ["insert", "update"]

    def test_bulk_read_logs_one_update_per_row(self, store):
        store.upsert(make_record(primary_id="a"))
        store.upsert(make_record(primary_id="b"))
        head = store.latest_change_id()

        store.mark_conversation_read("111")

        changes = store.read_changes(head)
        assert sorted(change.record.primary_id for change in changes) == ["a", "b"]
        assert all(change.record.status is MessageStatus.READ for change in changes)

    def test_read_changes_after_cursor_with_limit(self, store):
        for index in range(5):
            store.upsert(make_record(primary_id=f"m{index}"))

        first_page = store.read_changes(0, limit=2)
        second_page = store.read_changes(first_page[-1].change_id, limit=10)

        assert [c.record.primary_id for c in first_page] == ["m0", "m1"]
        assert [c.record.primary_id for c in second_page] == ["m2", "m3", "m4"]
        assert store.latest_change_id() == second_page[-1].change_id

    def test_empty_log_head_is_zero(self, store):
        assert store.latest_change_id() == 0


class TestStorageFailures:
    def test_health_check(self, store):
        assert store.check_health() is True

        Base.metadata.drop_all(bind=store.engine)

        assert store.check_health() is False

    def test_missing_schema_raises_storage_error(self, store):
        Base.metadata.drop_all(bind=store.engine)

        with pytest.raises(StorageError):
            store.upsert(make_record())
        with pytest.raises(StorageError):
            store.read_changes(0)
