"""
Prompt context assembly.

A query is either casual (answered from the last few in-memory turns) or
historical (the user asks about their own past, so the persisted
conversation is fetched, summarized and included in full).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence, Union

from calm_gateway.storage.models import ConversationTurn, TurnRole
from calm_gateway.storage.repository import MessageRepository

logger = logging.getLogger(__name__)

CASUAL_WINDOW = 6
HISTORY_FETCH_LIMIT = 100
DEFAULT_LANGUAGE = "English"
NO_HISTORY_TEXT = "No previous conversation."

# Closed list, matched as case-insensitive substrings.
HISTORICAL_CUES = (
    "what did i",
    "what did we",
    "what have i",
    "what have we",
    "did i tell you",
    "did i mention",
    "have i told you",
    "remember when",
    "do you remember",
    "you remember",
    "summarize our",
    "summarise our",
    "summary of our",
    "our conversation",
    "our conversations",
    "our chat",
    "we talked about",
    "we discussed",
    "last time",
    "earlier today",
    "previous conversation",
    "chat history",
)

ROLE_LABELS = {
    TurnRole.USER: "User",
    TurnRole.ASSISTANT: "Calm Sphere",
}

CASUAL_TEMPLATE = """You are Calm Sphere, a gentle, compassionate AI friend who provides emotional support in {language}.
Your tone should be kind, nurturing, and uplifting. Give short replies to keep the conversation flowing so the user talks more.

If the user expresses a mood (e.g., sad, anxious, happy, angry, lost), gently acknowledge it and suggest soothing ideas or activities.

Recent conversation:
{history}

User: {query}
Calm Sphere:"""

HISTORICAL_TEMPLATE = """You are Calm Sphere, a gentle, compassionate AI friend who provides emotional support in {language}.
The user is asking about their own conversation history with you. Answer analytically and accurately from the transcript below:
refer to what was actually said and when, point out patterns or changes in how they felt, and say so plainly if the transcript
does not contain the answer. Keep your warm tone.

Conversation summary:
{summary}

Full transcript (oldest first):
{transcript}

User question: {query}
Calm Sphere:"""


class ContextMode(Enum):
    """How much conversation a prompt carries."""
    CASUAL = "casual"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class ContextLimits:
    """Bounds on the conversation carried into a prompt."""
    casual_window: int = CASUAL_WINDOW
    history_fetch_limit: int = HISTORY_FETCH_LIMIT

    def __post_init__(self):
        if self.casual_window <= 0:
            raise ValueError("casual_window must be > 0")
        if self.history_fetch_limit <= 0:
            raise ValueError("history_fetch_limit must be > 0")


@dataclass(frozen=True)
class ConversationSummary:
    """Counts and time span of a fetched conversation."""
    user_turns: int
    assistant_turns: int
    earliest: Optional[datetime]
    latest: Optional[datetime]

    @property
    def total_turns(self) -> int:
        return self.user_turns + self.assistant_turns

    def render(self) -> str:
        if self.total_turns == 0:
            return NO_HISTORY_TEXT
        return (
            f"- Messages from the user: {self.user_turns}\n"
            f"- Replies from Calm Sphere: {self.assistant_turns}\n"
            f"- First message: {_format_timestamp(self.earliest)}\n"
            f"- Latest message: {_format_timestamp(self.latest)}"
        )


@dataclass(frozen=True)
class CasualContext:
    """Prompt built from the recent in-memory window."""
    prompt: str
    query: str
    turns_included: int
    mode: ContextMode = ContextMode.CASUAL


@dataclass(frozen=True)
class HistoricalContext:
    """Prompt built from the user's persisted history."""
    prompt: str
    query: str
    summary: ConversationSummary
    mode: ContextMode = ContextMode.HISTORICAL


GenerationRequest = Union[CasualContext, HistoricalContext]


def classify_query(query: str) -> ContextMode:
    """Tag a query HISTORICAL if it contains a retrospective cue, else CASUAL."""
    lowered = (query or "").lower()
    if any(cue in lowered for cue in HISTORICAL_CUES):
        return ContextMode.HISTORICAL
    return ContextMode.CASUAL


def summarize_turns(turns: Sequence[ConversationTurn]) -> ConversationSummary:
    """Summarize turns given in chronological order."""
    user_turns = sum(1 for turn in turns if turn.role == TurnRole.USER)
    return ConversationSummary(
        user_turns=user_turns,
        assistant_turns=len(turns) - user_turns,
        earliest=turns[0].timestamp if turns else None,
        latest=turns[-1].timestamp if turns else None,
    )


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "unknown"
    return value.strftime("%Y-%m-%d %H:%M UTC")


def render_turn(turn: ConversationTurn, with_timestamp: bool = False) -> str:
    line = f"{ROLE_LABELS[turn.role]}: {turn.content}"
    if with_timestamp:
        return f"[{_format_timestamp(turn.timestamp)}] {line}"
    return line


class ContextAssembler:
    """Builds bounded prompts for the companion chat."""

    def __init__(self, messages: MessageRepository, limits: ContextLimits = ContextLimits()):
        self.messages = messages
        self.limits = limits

    def assemble(
        self,
        user_id: str,
        query: str,
        recent_turns: Sequence[ConversationTurn],
        language: str = DEFAULT_LANGUAGE,
    ) -> GenerationRequest:
        """Build the prompt for one user query.

        Args:
            user_id: User asking
            query: The new message, not included in recent_turns
            recent_turns: Conversation the caller already holds, oldest first
            language: Language the reply should be written in

        Returns:
            CasualContext or HistoricalContext depending on the query
        """
        language = (language or "").strip() or DEFAULT_LANGUAGE
        if classify_query(query) == ContextMode.HISTORICAL:
            return self._historical(user_id, query, language)
        return self._casual(query, recent_turns, language)

    def _casual(self, query: str, recent_turns: Sequence[ConversationTurn], language: str) -> CasualContext:
        window = list(recent_turns)[-self.limits.casual_window:]
        history = "\n".join(render_turn(turn) for turn in window) or NO_HISTORY_TEXT
        prompt = CASUAL_TEMPLATE.format(language=language, history=history, query=query)
        return CasualContext(prompt=prompt, query=query, turns_included=len(window))

    def _historical(self, user_id: str, query: str, language: str) -> HistoricalContext:
        turns: List[ConversationTurn] = self.messages.recent_turns(
            user_id,
            limit=self.limits.history_fetch_limit,
            newest_first=False,
        )
        logger.debug("Loaded %d turns of history for %s", len(turns), user_id)

        summary = summarize_turns(turns)
        transcript = "\n".join(render_turn(turn, with_timestamp=True) for turn in turns) or NO_HISTORY_TEXT
        prompt = HISTORICAL_TEMPLATE.format(
            language=language,
            summary=summary.render(),
            transcript=transcript,
            query=query,
        )
        return HistoricalContext(prompt=prompt, query=query, summary=summary)
