"""
Tests for the element store data access layer.
"""

import asyncio
import sqlite3
import threading
from unittest.mock import MagicMock, patch

import pytest

from portfolio.core.dao import (
    bulk_upsert,
    count_elements,
    get_backup,
    get_element,
    get_elements,
    list_audit_log,
    list_backups,
    soft_delete_element,
    upsert_element,
)
from portfolio.core.errors import BackupError, ValidationFailed
from portfolio.core.realtime import ChangeFeed, change_feed
from portfolio.core.validation import validate_element_value

OWNER = "owner-1"


class TestUpsert:
    def test_insert_then_update_increments_version(self):
        record, previous = upsert_element(OWNER, "text", "hero_title", "Interior Design")
        assert record.version == 1
        assert previous is None

        record, previous = upsert_element(OWNER, "text", "hero_title", "Interior Architecture")
        assert record.version == 2
        assert previous == "Interior Design"
        assert get_element(OWNER, "text", "hero_title").value == "Interior Architecture"

    def test_update_refreshes_updated_at(self):
        first, _ = upsert_element(OWNER, "text", "t", "a")
        second, _ = upsert_element(OWNER, "text", "t", "b")
        assert second.updated_at >= first.updated_at

    def test_structured_values_round_trip(self):
        project = {"title": "Loft", "images": ["a.jpg", "b.jpg"], "year": 2024}
        upsert_element(OWNER, "project", "p1", project, metadata={"auto_save": True})
        record = get_element(OWNER, "project", "p1")
        assert record.value == project
        assert record.metadata == {"auto_save": True}

    def test_text_is_sanitized_server_side(self):
        record, _ = upsert_element(OWNER, "text", "bio", "<script>x()</script>Hello")
        assert record.value == "Hello"

    def test_already_sanitized_text_is_stored_unchanged(self):
        clean = "&lt;b&gt;bold&lt;/b&gt;"
        record, _ = upsert_element(OWNER, "text", "bio", clean)
        assert record.value == clean

    def test_client_sanitized_quotes_are_accepted(self):
        """Text the client validated and escaped is not rejected for its escaped length."""
        text = 'Tom\'s "loft" ' * 690
        clean = validate_element_value(text).sanitized
        assert len(clean) > 10000

        record, _ = upsert_element(OWNER, "text", "bio", clean)
        assert record.value == clean

    def test_rejects_unknown_type_and_oversized_values(self):
        with pytest.raises(ValidationFailed) as exc_info:
            upsert_element(OWNER, "widget", "w1", "x")
        assert "Invalid element_type: widget" in exc_info.value.errors

        with pytest.raises(ValidationFailed):
            upsert_element(OWNER, "text", "big", "x" * 10001)

        with pytest.raises(ValidationFailed):
            upsert_element(OWNER, "text", "  ", "x")

    def test_update_writes_backup_and_audit(self):
        upsert_element(OWNER, "text", "t", "old")
        upsert_element(OWNER, "text", "t", "new")

        backups = list_backups(OWNER, "text", "t")
        assert len(backups) == 1
        assert backups[0].value == "old"
        assert backups[0].backup_reason == "pre_update_backup"

        audit = list_audit_log(OWNER)
        assert [e.action for e in audit] == ["UPDATE", "INSERT"]
        assert audit[0].old_data == {"value": "old", "version": 1}
        assert audit[0].new_data == {"value": "new", "version": 2}
        assert audit[0].changed_fields == ["element_value"]

    def test_owners_are_isolated(self):
        upsert_element(OWNER, "text", "t", "mine")
        upsert_element("owner-2", "text", "t", "theirs")
        assert get_element(OWNER, "text", "t").value == "mine"
        assert count_elements(OWNER) == 1
        assert count_elements() == 2

    def test_write_is_published_on_change_feed(self):
        with patch('portfolio.core.dao.change_feed') as mock_feed:
            upsert_element(OWNER, "text", "t", "a")
            upsert_element(OWNER, "text", "t", "b")

        calls = mock_feed.publish.call_args_list
        assert calls[0].args == (OWNER, "text", "t", "INSERT")
        assert calls[1].args == (OWNER, "text", "t", "UPDATE")
        assert calls[1].kwargs == {"data": "b", "old_data": "a"}


class TestRead:
    def test_filters_and_newest_first(self):
        upsert_element(OWNER, "text", "a", "1")
        upsert_element(OWNER, "image", "b", {"url": "https://x/y.jpg"})
        upsert_element(OWNER, "text", "c", "3")

        assert [r.element_id for r in get_elements(OWNER)] == ["c", "b", "a"]
        assert [r.element_id for r in get_elements(OWNER, "text")] == ["c", "a"]
        assert [r.element_id for r in get_elements(OWNER, element_id="b")] == ["b"]

    def test_not_found_is_none(self):
        assert get_element(OWNER, "text", "missing") is None
        assert get_elements("") == []


class TestBulk:
    def test_partial_application(self):
        """A bad item fails alone; earlier and later items stay applied."""
        saved_count, errors = bulk_upsert(OWNER, [
            {"element_type": "text", "element_id": "id1", "value": "v1"},
            {"element_type": "bogus", "element_id": "id2", "value": "v2"},
            {"element_type": "text", "element_id": "id3", "value": "v3"},
        ])

        assert saved_count == 2
        assert len(errors) == 1
        assert errors[0]["element_id"] == "id2"
        assert "Invalid element_type" in errors[0]["message"]
        assert get_element(OWNER, "text", "id1").value == "v1"
        assert get_element(OWNER, "text", "id3").value == "v3"


class TestSoftDelete:
    def test_delete_backs_up_and_deactivates(self):
        upsert_element(OWNER, "text", "t", "keep me")

        assert soft_delete_element(OWNER, "text", "t") is True
        assert get_element(OWNER, "text", "t") is None

        backups = list_backups(OWNER, "text", "t")
        assert backups[0].backup_reason == "pre_deletion_backup"
        assert backups[0].value == "keep me"
        assert get_backup(OWNER, backups[0].id).value == "keep me"
        assert list_audit_log(OWNER, limit=1)[0].action == "DELETE"

    def test_delete_missing_returns_false(self):
        assert soft_delete_element(OWNER, "text", "nothing") is False

    def test_upsert_reactivates_deleted_row(self):
        upsert_element(OWNER, "text", "t", "v1")
        soft_delete_element(OWNER, "text", "t")
        record, previous = upsert_element(OWNER, "text", "t", "v2")
        assert record.is_active
        assert record.version == 2
        assert previous is None

    def test_backup_failure_is_best_effort_by_default(self):
        upsert_element(OWNER, "text", "t", "v")
        with patch('portfolio.core.dao._insert_backup', side_effect=sqlite3.OperationalError("disk full")):
            assert soft_delete_element(OWNER, "text", "t", strict_backup=False) is True
        assert get_element(OWNER, "text", "t") is None

    def test_strict_backup_failure_aborts_delete(self):
        upsert_element(OWNER, "text", "t", "v")
        with patch('portfolio.core.dao._insert_backup', side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(BackupError):
                soft_delete_element(OWNER, "text", "t", strict_backup=True)
        assert get_element(OWNER, "text", "t").value == "v"

    def test_strict_mode_from_environment(self, monkeypatch):
        monkeypatch.setenv("STRICT_DELETE_BACKUP", "true")
        upsert_element(OWNER, "text", "t", "v")
        with patch('portfolio.core.dao._insert_backup', side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(BackupError):
                soft_delete_element(OWNER, "text", "t")


class TestChangeFeed:
    def test_publish_from_worker_thread_reaches_subscriber(self):
        feed = ChangeFeed()

        async def scenario():
            subscription = feed.subscribe(owner_id=OWNER)
            worker = threading.Thread(target=feed.publish, args=(OWNER, "text", "t", "UPDATE"),
                                      kwargs={"data": "v"})
            worker.start()
            worker.join()
            return await asyncio.wait_for(subscription.queue.get(), timeout=2)

        notification = asyncio.run(scenario())
        assert notification["element_id"] == "t"
        assert notification["data"] == "v"
        assert notification["action"] == "UPDATE"

    def test_owner_and_prefix_filters(self):
        feed = ChangeFeed()

        async def scenario():
            form_only = feed.subscribe(owner_id=OWNER, prefix="form1")
            feed.publish("someone-else", "form", "form1_name", "UPDATE")
            feed.publish(OWNER, "form", "form2_name", "UPDATE")
            feed.publish(OWNER, "form", "form1_name", "UPDATE", data="x")
            await asyncio.sleep(0)
            received = []
            while not form_only.queue.empty():
                received.append(form_only.queue.get_nowait())
            feed.unsubscribe(form_only)
            return received

        received = asyncio.run(scenario())
        assert [n["element_id"] for n in received] == ["form1_name"]
        assert feed.subscriber_count == 0

    def test_dao_write_reaches_global_feed(self):
        async def scenario():
            subscription = change_feed.subscribe(owner_id=OWNER)
            try:
                await asyncio.to_thread(upsert_element, OWNER, "text", "live", "hello")
                return await asyncio.wait_for(subscription.queue.get(), timeout=2)
            finally:
                change_feed.unsubscribe(subscription)

        notification = asyncio.run(scenario())
        assert notification["action"] == "INSERT"
        assert notification["data"] == "hello"

    def test_full_queue_drops_notification(self):
        feed = ChangeFeed(max_queue=1)

        async def scenario():
            subscription = feed.subscribe()
            feed.publish(OWNER, "text", "a", "UPDATE")
            feed.publish(OWNER, "text", "b", "UPDATE")
            await asyncio.sleep(0)
            return subscription.queue.qsize()

        assert asyncio.run(scenario()) == 1


def test_reads_do_not_publish():
    """Reads never publish."""
    with patch('portfolio.core.dao.change_feed', MagicMock()) as mock_feed:
        get_elements(OWNER)
        list_backups(OWNER)
    mock_feed.publish.assert_not_called()
