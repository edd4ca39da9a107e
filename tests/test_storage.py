"""
Unit tests for storage layer.

Tests schema creation, conditional usage writes, and the append-only
conversation and journal stores.
"""

from datetime import datetime, timedelta, timezone

import pytest

from calm_gateway.storage.db import get_connection
from calm_gateway.storage.models import ConversationTurn, TurnRole, UsageRecord
from calm_gateway.storage.repository import (
    JournalRepository,
    MessageRepository,
    StoreConflictError,
    UserRepository,
    initialize_schema,
)

BASE_TIME = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_turn(user_id="ana@example.com", role=TurnRole.USER, content="hello", offset_minutes=0):
    return ConversationTurn(
        user_id=user_id,
        role=role,
        content=content,
        timestamp=BASE_TIME + timedelta(minutes=offset_minutes),
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_tables_created(self, db_path):
        """Verify all three tables exist."""
        conn = get_connection(db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()
        assert {"user_usage", "conversation_turn", "journal_entry"} <= tables

    def test_usage_columns(self, db_path):
        """Verify the usage table carries the version column."""
        conn = get_connection(db_path)
        try:
            columns = [col[1] for col in conn.execute("PRAGMA table_info(user_usage)").fetchall()]
        finally:
            conn.close()
        assert columns == ["user_id", "credits_used_today", "last_request_date", "version", "created_at"]

    def test_journal_comment_column_added_to_older_database(self, tmp_path):
        """Verify a journal table without the comment column gains it."""
        path = str(tmp_path / "old.db")
        conn = get_connection(path)
        try:
            conn.execute(
                "CREATE TABLE journal_entry (id INTEGER PRIMARY KEY AUTOINCREMENT, user_id TEXT NOT NULL, "
                "content TEXT NOT NULL, created_at TEXT NOT NULL)"
            )
            conn.execute(
                "INSERT INTO journal_entry (user_id, content, created_at) VALUES (?, ?, ?)",
                ("ana@example.com", "kept", BASE_TIME.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

        initialize_schema(path)

        entries = JournalRepository(path).recent_entries("ana@example.com")
        assert [(e.content, e.comment) for e in entries] == [("kept", None)]


class TestUserRepository:
    """Test usage record persistence."""

    def test_unknown_user_is_none(self, db_path):
        """Verify a missing user yields None rather than an error."""
        assert UserRepository(db_path).get_user("nobody@example.com") is None

    def test_create_and_get(self, db_path):
        """Verify a new user starts with an empty counter."""
        users = UserRepository(db_path)
        users.create_user("ana@example.com")

        record = users.get_user("ana@example.com")
        assert record == UsageRecord(user_id="ana@example.com", credits_used_today=0, last_request_date=None, version=0)

    def test_create_duplicate_raises_error(self, db_path):
        """Verify a user cannot be registered twice."""
        users = UserRepository(db_path)
        users.create_user("ana@example.com")
        with pytest.raises(ValueError, match="User already exists"):
            users.create_user("ana@example.com")

    def test_create_empty_id_raises_error(self, db_path):
        """Verify empty user ids are rejected."""
        with pytest.raises(ValueError, match="user_id is required"):
            UserRepository(db_path).create_user("  ")

    def test_save_bumps_version(self, db_path):
        """Verify a successful write increments the version."""
        users = UserRepository(db_path)
        record = users.create_user("ana@example.com")

        stored = users.save_user(UsageRecord("ana@example.com", 500, "2026-10-01", record.version))

        assert stored.version == 1
        assert users.get_user("ana@example.com") == stored

    def test_stale_save_raises_conflict(self, db_path):
        """Verify a write based on an old version is refused and changes nothing."""
        users = UserRepository(db_path)
        record = users.create_user("ana@example.com")
        users.save_user(UsageRecord("ana@example.com", 100, "2026-10-01", record.version))

        with pytest.raises(StoreConflictError) as excinfo:
            users.save_user(UsageRecord("ana@example.com", 999, "2026-10-01", record.version))

        assert excinfo.value.expected_version == 0
        assert users.get_user("ana@example.com").credits_used_today == 100

    def test_save_missing_user_raises_lookup_error(self, db_path):
        """Verify saving a record for an unknown user is not a conflict."""
        with pytest.raises(LookupError, match="User not found"):
            UserRepository(db_path).save_user(UsageRecord("ghost@example.com", 1, "2026-10-01", 0))


class TestMessageRepository:
    """Test the append-only conversation log."""

    def test_append_and_fetch_chronological(self, db_path):
        """Verify turns come back oldest first when asked."""
        messages = MessageRepository(db_path)
        messages.append_turn(make_turn(content="first", offset_minutes=0))
        messages.append_turn(make_turn(role=TurnRole.ASSISTANT, content="second", offset_minutes=1))
        messages.append_turn(make_turn(content="third", offset_minutes=2))

        turns = messages.recent_turns("ana@example.com", limit=10, newest_first=False)

        assert [t.content for t in turns] == ["first", "second", "third"]
        assert turns[1].role == TurnRole.ASSISTANT
        assert all(t.id is not None for t in turns)

    def test_limit_keeps_most_recent(self, db_path):
        """Verify the limit selects the newest turns in either order."""
        messages = MessageRepository(db_path)
        for i in range(5):
            messages.append_turn(make_turn(content=f"m{i}", offset_minutes=i))

        newest = messages.recent_turns("ana@example.com", limit=2)
        oldest_first = messages.recent_turns("ana@example.com", limit=2, newest_first=False)

        assert [t.content for t in newest] == ["m4", "m3"]
        assert [t.content for t in oldest_first] == ["m3", "m4"]

    def test_timestamps_strictly_increase(self, db_path):
        """Verify a turn stamped at or before the latest one is nudged forward."""
        messages = MessageRepository(db_path)
        first = messages.append_turn(make_turn(content="a", offset_minutes=5))
        second = messages.append_turn(make_turn(content="b", offset_minutes=5))
        third = messages.append_turn(make_turn(content="c", offset_minutes=0))

        assert first.timestamp < second.timestamp < third.timestamp
        turns = messages.recent_turns("ana@example.com", newest_first=False)
        assert [t.content for t in turns] == ["a", "b", "c"]

    def test_users_are_isolated(self, db_path):
        """Verify one user's turns never appear in another's history."""
        messages = MessageRepository(db_path)
        messages.append_turn(make_turn(user_id="ana@example.com", content="mine"))
        messages.append_turn(make_turn(user_id="ben@example.com", content="his"))

        turns = messages.recent_turns("ana@example.com")
        assert [t.content for t in turns] == ["mine"]

    def test_clear_all_scoped_to_user(self, db_path):
        """Verify clearing removes only the given user's turns."""
        messages = MessageRepository(db_path)
        messages.append_turn(make_turn(user_id="ana@example.com", content="one"))
        messages.append_turn(make_turn(user_id="ana@example.com", content="two", offset_minutes=1))
        messages.append_turn(make_turn(user_id="ben@example.com", content="keep"))

        removed = messages.clear_all("ana@example.com")

        assert removed == 2
        assert messages.count_turns("ana@example.com") == 0
        assert messages.count_turns("ben@example.com") == 1

    def test_empty_content_rejected(self, db_path):
        """Verify blank turns are not stored."""
        with pytest.raises(ValueError, match="content is required"):
            MessageRepository(db_path).append_turn(make_turn(content="   "))

    def test_non_positive_limit_returns_nothing(self, db_path):
        """Verify a zero limit short-circuits."""
        messages = MessageRepository(db_path)
        messages.append_turn(make_turn())
        assert messages.recent_turns("ana@example.com", limit=0) == []


class TestJournalRepository:
    """Test journal entry storage."""

    def test_append_and_fetch_newest_first(self, db_path):
        """Verify entries are returned newest first."""
        journal = JournalRepository(db_path)
        journal.append_entry("ana@example.com", "older", created_at=BASE_TIME)
        journal.append_entry("ana@example.com", "newer", created_at=BASE_TIME + timedelta(days=1))

        entries = journal.recent_entries("ana@example.com")

        assert [e.content for e in entries] == ["newer", "older"]

    def test_days_window(self, db_path):
        """Verify the day window excludes old entries."""
        journal = JournalRepository(db_path)
        now = datetime.now(timezone.utc)
        journal.append_entry("ana@example.com", "ancient", created_at=now - timedelta(days=60))
        journal.append_entry("ana@example.com", "recent", created_at=now - timedelta(days=2))

        entries = journal.recent_entries("ana@example.com", days=30)

        assert [e.content for e in entries] == ["recent"]

    def test_empty_content_rejected(self, db_path):
        """Verify blank entries are rejected."""
        with pytest.raises(ValueError, match="content is required"):
            JournalRepository(db_path).append_entry("ana@example.com", "")

    def test_comment_saved_with_entry(self, db_path):
        """Verify a comment given at append time is returned with the entry."""
        journal = JournalRepository(db_path)
        journal.append_entry("ana@example.com", "Walked by the sea", created_at=BASE_TIME, comment="So calm.")

        entries = journal.recent_entries("ana@example.com")

        assert entries[0].comment == "So calm."

    def test_set_comment(self, db_path):
        """Verify a comment attached later is stored on that entry only."""
        journal = JournalRepository(db_path)
        first = journal.append_entry("ana@example.com", "first", created_at=BASE_TIME)
        journal.append_entry("ana@example.com", "second", created_at=BASE_TIME + timedelta(hours=1))

        updated = journal.set_comment(first.id, "  I'm grateful you shared this.  ")

        assert updated.comment == "I'm grateful you shared this."
        assert updated.content == "first"
        entries = journal.recent_entries("ana@example.com")
        assert [(e.content, e.comment) for e in entries] == [
            ("second", None),
            ("first", "I'm grateful you shared this."),
        ]

    def test_set_comment_unknown_entry(self, db_path):
        """Verify commenting on a missing entry fails."""
        with pytest.raises(ValueError, match="Journal entry not found"):
            JournalRepository(db_path).set_comment(999, "hello")

    def test_set_empty_comment_rejected(self, db_path):
        """Verify blank comments are rejected."""
        journal = JournalRepository(db_path)
        entry = journal.append_entry("ana@example.com", "entry", created_at=BASE_TIME)

        with pytest.raises(ValueError, match="comment is required"):
            journal.set_comment(entry.id, "   ")
