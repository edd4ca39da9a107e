"""
Data models for storage layer.

Defines the per-user usage counter and the append-only conversation and
journal records.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TurnRole(Enum):
    """Author of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class UsageRecord:
    """Credit counter for one user.

    Mutated only through the usage ledger. ``version`` increases on every
    successful write and guards against lost updates.
    """
    user_id: str
    credits_used_today: int = 0
    last_request_date: Optional[str] = None  # UTC date, YYYY-MM-DD
    version: int = 0


@dataclass(frozen=True)
class ConversationTurn:
    """Immutable message in a user's conversation with the companion."""
    user_id: str
    role: TurnRole
    content: str
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class JournalEntry:
    """Immutable journal entry written by a user.

    ``comment`` holds the companion's reply to the entry, once one was generated.
    """
    user_id: str
    content: str
    created_at: datetime
    id: Optional[int] = None
    comment: Optional[str] = None
