"""
Repository pattern for data access.

Handles the user usage counters, the append-only conversation log and the
journal. Usage counters are written with a version check so concurrent
writers from any number of processes never lose an update.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ConversationTurn, JournalEntry, TurnRole, UsageRecord

logger = logging.getLogger(__name__)


class StoreConflictError(Exception):
    """Raised when a usage record was changed by another writer since it was read."""

    def __init__(self, user_id: str, expected_version: int):
        super().__init__(
            f"Usage record for {user_id} changed concurrently "
            f"(expected version {expected_version})"
        )
        self.user_id = user_id
        self.expected_version = expected_version


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the user, conversation and journal tables if they don't exist.

    ``conversation_turn`` and ``journal_entry`` are append-only; rows are
    only ever removed by an explicit per-user clear. A journal entry's
    ``comment`` is the one column filled in after insert. Databases created
    before that column existed gain it here.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_usage (
                user_id TEXT PRIMARY KEY,
                credits_used_today INTEGER NOT NULL DEFAULT 0,
                last_request_date TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversation_turn (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_turn_user_timestamp
            ON conversation_turn (user_id, timestamp)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS journal_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                comment TEXT
            )
        """)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(journal_entry)")}
        if "comment" not in columns:
            conn.execute("ALTER TABLE journal_entry ADD COLUMN comment TEXT")
        conn.commit()
    finally:
        conn.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _entry_from_row(row) -> JournalEntry:
    return JournalEntry(
        id=row[0],
        user_id=row[1],
        content=row[2],
        created_at=datetime.fromisoformat(row[3]),
        comment=row[4],
    )


class UserRepository:
    """Durable store for per-user usage records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_user(self, user_id: str) -> Optional[UsageRecord]:
        """Load a user's usage record, or None if the user is unknown."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT user_id, credits_used_today, last_request_date, version
                FROM user_usage WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return UsageRecord(
            user_id=row[0],
            credits_used_today=row[1],
            last_request_date=row[2],
            version=row[3],
        )

    def create_user(self, user_id: str) -> UsageRecord:
        """Register a user with an empty usage counter.

        Raises:
            ValueError: If user_id is empty or already registered
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO user_usage (user_id, credits_used_today, last_request_date, version, created_at)
                VALUES (?, 0, NULL, 0, ?)
                """,
                (user_id, _utcnow().isoformat()),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"User already exists: {user_id}")
        finally:
            conn.close()
        return UsageRecord(user_id=user_id)

    def save_user(self, record: UsageRecord) -> UsageRecord:
        """Write a usage record if nobody else wrote it since it was read.

        The write is a single conditional UPDATE keyed on ``record.version``,
        so it is atomic across threads and processes.

        Args:
            record: Record carrying the version it was read at

        Returns:
            The stored record with its new version

        Raises:
            StoreConflictError: If the stored version no longer matches
            LookupError: If the user does not exist
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE user_usage
                SET credits_used_today = ?, last_request_date = ?, version = version + 1
                WHERE user_id = ? AND version = ?
                """,
                (
                    record.credits_used_today,
                    record.last_request_date,
                    record.user_id,
                    record.version,
                ),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        if updated == 1:
            return UsageRecord(
                user_id=record.user_id,
                credits_used_today=record.credits_used_today,
                last_request_date=record.last_request_date,
                version=record.version + 1,
            )
        if self.get_user(record.user_id) is None:
            raise LookupError(f"User not found: {record.user_id}")
        raise StoreConflictError(record.user_id, record.version)


class MessageRepository:
    """Append-only conversation log, one ordered stream per user."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append_turn(self, turn: ConversationTurn) -> ConversationTurn:
        """Append a turn, keeping timestamps strictly increasing per user.

        If the turn's timestamp is not after the user's latest turn it is
        nudged forward by one microsecond past it.

        Returns:
            The stored turn with its id and effective timestamp
        """
        if not turn.content or not turn.content.strip():
            raise ValueError("content is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT MAX(timestamp) FROM conversation_turn WHERE user_id = ?",
                (turn.user_id,),
            ).fetchone()
            timestamp = turn.timestamp
            if row[0] is not None:
                latest = datetime.fromisoformat(row[0])
                if timestamp <= latest:
                    timestamp = latest + timedelta(microseconds=1)
            cursor = conn.execute(
                """
                INSERT INTO conversation_turn (user_id, role, content, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (turn.user_id, turn.role.value, turn.content, timestamp.isoformat()),
            )
            conn.commit()
            turn_id = cursor.lastrowid
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return ConversationTurn(
            user_id=turn.user_id,
            role=turn.role,
            content=turn.content,
            timestamp=timestamp,
            id=turn_id,
        )

    def recent_turns(
        self,
        user_id: str,
        limit: int = 100,
        newest_first: bool = True,
    ) -> List[ConversationTurn]:
        """Fetch the user's ``limit`` most recent turns.

        Args:
            user_id: Owner of the conversation
            limit: Maximum number of turns to return
            newest_first: Return newest first if True, else chronological order

        Returns:
            List of turns in the requested order
        """
        if limit <= 0:
            return []

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT id, user_id, role, content, timestamp
                FROM conversation_turn
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            turns = [
                ConversationTurn(
                    id=row[0],
                    user_id=row[1],
                    role=TurnRole(row[2]),
                    content=row[3],
                    timestamp=datetime.fromisoformat(row[4]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

        if not newest_first:
            turns.reverse()
        return turns

    def count_turns(self, user_id: str) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM conversation_turn WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    def clear_all(self, user_id: str) -> int:
        """Delete every turn of one user. Returns the number of turns removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM conversation_turn WHERE user_id = ?",
                (user_id,),
            )
            conn.commit()
            removed = cursor.rowcount
        finally:
            conn.close()
        logger.info("Cleared %d conversation turns for %s", removed, user_id)
        return removed


class JournalRepository:
    """Append-only journal entries."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append_entry(
        self,
        user_id: str,
        content: str,
        created_at: Optional[datetime] = None,
        comment: Optional[str] = None,
    ) -> JournalEntry:
        if not content or not content.strip():
            raise ValueError("content is required and cannot be empty")

        created_at = created_at or _utcnow()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO journal_entry (user_id, content, created_at, comment) VALUES (?, ?, ?, ?)",
                (user_id, content.strip(), created_at.isoformat(), comment),
            )
            conn.commit()
            entry_id = cursor.lastrowid
        finally:
            conn.close()
        return JournalEntry(
            user_id=user_id,
            content=content.strip(),
            created_at=created_at,
            id=entry_id,
            comment=comment,
        )

    def set_comment(self, entry_id: int, comment: str) -> JournalEntry:
        """Attach the companion's comment to a stored entry.

        Raises:
            ValueError: If the comment is empty or no such entry exists
        """
        if not comment or not comment.strip():
            raise ValueError("comment is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE journal_entry SET comment = ? WHERE id = ?",
                (comment.strip(), entry_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Journal entry not found: {entry_id}")
            conn.commit()
            row = conn.execute(
                "SELECT id, user_id, content, created_at, comment FROM journal_entry WHERE id = ?",
                (entry_id,),
            ).fetchone()
        finally:
            conn.close()
        return _entry_from_row(row)

    def recent_entries(
        self,
        user_id: str,
        days: Optional[int] = None,
        limit: int = 100,
    ) -> List[JournalEntry]:
        """Fetch a user's entries, newest first, optionally within the last ``days`` days."""
        query = "SELECT id, user_id, content, created_at, comment FROM journal_entry WHERE user_id = ?"
        params: list = [user_id]
        if days is not None:
            query += " AND created_at >= ?"
            params.append((_utcnow() - timedelta(days=days)).isoformat())
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [_entry_from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()
