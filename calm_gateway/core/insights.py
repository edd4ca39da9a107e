"""
Mood and music insights.

Dashboard mood analysis, per-day mood trends, song recommendations and
journal comments, all metered through the gateway and all degrading to a
fixed fallback when the model output is missing or unusable.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .gateway import Gateway, StructuredOutcome
from .parser import ShapeRule
from calm_gateway.sdk.generation_client import (
    CUSTOM_SONG_OPTIONS,
    DAY_MOOD_OPTIONS,
    MOOD_ANALYSIS_OPTIONS,
    SONG_OPTIONS,
    GenerationOptions,
)
from calm_gateway.storage.models import ConversationTurn, JournalEntry, TurnRole

logger = logging.getLogger(__name__)

MOOD_SCORE_RANGE = (-5, 5)
MAX_JOURNALS_ANALYZED = 10
MAX_CHATS_ANALYZED = 50
MAX_SONGS = 6
STREAK_WINDOW_DAYS = 30
RECENT_ACTIVITY_LIMIT = 8
RECENT_PER_SOURCE = 5
PREVIEW_CHARS = 100

JOURNAL_COMMENT_OPTIONS = GenerationOptions(temperature=0.7, max_output_tokens=300, top_p=0.9)

JOURNAL_COMMENT_FALLBACK = (
    "Thank you for sharing your thoughts. Your reflections are valuable and I appreciate "
    "you taking the time to journal today. 💙"
)

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

MOOD_KEYWORDS = OrderedDict([
    ("happy", ("happy", "joy", "excited", "cheerful", "delighted")),
    ("sad", ("sad", "down", "melancholy", "blue", "dejected")),
    ("anxious", ("anxious", "worried", "nervous", "stressed", "tense")),
    ("calm", ("calm", "peaceful", "serene", "tranquil", "relaxed")),
    ("angry", ("angry", "frustrated", "irritated", "mad", "furious")),
    ("grateful", ("grateful", "thankful", "appreciative", "blessed")),
    ("hopeful", ("hopeful", "optimistic", "positive", "confident")),
])

MOOD_ANALYSIS_TEMPLATE = """You are an expert mood analyst. Analyze the following journal entries and chat messages to provide comprehensive mood insights.

{sources}

Please provide a JSON response with the following structure:
{
  "overallMood": "string (e.g., 'Optimistic', 'Reflective', 'Anxious', 'Peaceful', 'Energetic')",
  "moodScore": number (-5 to +5, where -5 is very negative, 0 is neutral, +5 is very positive),
  "emotions": ["array", "of", "detected", "emotions"],
  "insights": ["array", "of", "meaningful", "insights", "about", "the", "person's", "mental", "state"],
  "trends": [
    {"date": "YYYY-MM-DD", "mood": "mood_name", "score": number}
  ]
}

Focus on:
- Emotional patterns and changes over time
- Stress indicators and coping mechanisms
- Positive developments and growth
- Areas that might need attention or support
- Overall mental wellness trajectory

Be empathetic, insightful, and constructive in your analysis."""

DAY_MOOD_TEMPLATE = """Analyze the following text and determine the overall mood and emotional score for this day.

Text: "{sources}"

Respond with only a JSON object in this format:
{
  "mood": "one word mood (e.g., happy, sad, anxious, calm, excited, peaceful, stressed, grateful)",
  "score": number between -5 and 5 (-5 very negative, 0 neutral, 5 very positive)
}"""

SONG_TEMPLATE = """You are a music therapist and DJ specializing in mood-based music curation. Based on the current mood analysis, recommend 6 songs.

Current Analysis:
{sources}

CRITICAL: Respond with ONLY a valid JSON array in this exact format. Do not include any other text.
[
  {
    "title": "Song Title",
    "artist": "Artist Name",
    "reason": "Why this song matches the mood and emotions.",
    "mood": "the mood",
    "genre": "Genre"
  }
]"""

JOURNAL_COMMENT_TEMPLATE = """You are a compassionate and supportive AI journal companion. Your role is to provide thoughtful, empathetic, and encouraging responses to journal entries.

Guidelines:
- Be warm, understanding, and non-judgmental
- Offer gentle insights or reflections when appropriate
- Acknowledge the person's feelings and experiences
- Provide encouragement and positive reinforcement
- Keep responses concise but meaningful (2-4 sentences)
- Avoid giving medical or professional advice
- Focus on emotional support and validation
- Use emojis sparingly but meaningfully
{prompt_line}
Please respond to this journal entry with empathy and support:

Journal Entry: "{content}\""""

TREND_SHAPE = ShapeRule(
    container=dict,
    required_keys=("date", "mood", "score"),
    bounds={"score": MOOD_SCORE_RANGE},
)

MOOD_ANALYSIS_SHAPE = ShapeRule(
    container=dict,
    required_keys=("overallMood", "moodScore"),
    bounds={"moodScore": MOOD_SCORE_RANGE},
    fields={
        "emotions": ShapeRule(container=list),
        "insights": ShapeRule(container=list),
        "trends": ShapeRule(container=list, items=TREND_SHAPE),
    },
)

DAY_MOOD_SHAPE = ShapeRule(
    container=dict,
    required_keys=("mood", "score"),
    bounds={"score": MOOD_SCORE_RANGE},
)

SONG_LIST_SHAPE = ShapeRule(
    container=list,
    items=ShapeRule(container=dict, required_keys=("title", "artist")),
    min_items=1,
    max_items=MAX_SONGS,
)


def mood_analysis_fallback() -> Dict[str, Any]:
    return {
        "overallMood": "Neutral",
        "moodScore": 0,
        "emotions": ["calm", "reflective"],
        "insights": ["Continue journaling for better mood tracking"],
        "trends": [],
    }


def day_mood_fallback() -> Dict[str, Any]:
    return {"mood": "neutral", "score": 0}


@dataclass(frozen=True)
class DayMood:
    """Mood of one UTC day of activity."""
    date: str
    mood: str
    score: float
    activities: int


def _day(value) -> str:
    return value.date().isoformat()


def analyze_mood(
    gateway: Gateway,
    user_id: str,
    journal_entries: Sequence[JournalEntry],
    chat_turns: Sequence[ConversationTurn],
) -> StructuredOutcome[Dict[str, Any]]:
    """Overall mood analysis for the dashboard.

    Uses the 10 most recent journal entries and the user's messages among
    the 50 most recent turns, each prefixed with its UTC date.
    """
    journals = sorted(journal_entries, key=lambda entry: entry.created_at)[-MAX_JOURNALS_ANALYZED:]
    chats = [
        turn
        for turn in sorted(chat_turns, key=lambda turn: turn.timestamp)[-MAX_CHATS_ANALYZED:]
        if turn.role == TurnRole.USER
    ]

    sources = ["JOURNAL ENTRIES:"]
    sources.extend(f"[{_day(entry.created_at)}] {entry.content}" for entry in journals)
    if not journals:
        sources.append("(none)")
    sources.extend(["", "CHAT MESSAGES:"])
    sources.extend(f"[{_day(turn.timestamp)}] {turn.content}" for turn in chats)
    if not chats:
        sources.append("(none)")

    return gateway.request_structured_analysis(
        user_id,
        sources,
        MOOD_ANALYSIS_TEMPLATE,
        mood_analysis_fallback(),
        shape=MOOD_ANALYSIS_SHAPE,
        options=MOOD_ANALYSIS_OPTIONS,
    )


def analyze_day_mood(gateway: Gateway, user_id: str, texts: Iterable[str]) -> StructuredOutcome[Dict[str, Any]]:
    """Mood and score of one day's texts. Empty input costs nothing."""
    content = " ".join(text.strip() for text in texts if text and text.strip())
    if not content:
        return StructuredOutcome(value=day_mood_fallback(), usage=gateway.ledger.snapshot(user_id))

    return gateway.request_structured_analysis(
        user_id,
        [content],
        DAY_MOOD_TEMPLATE,
        day_mood_fallback(),
        shape=DAY_MOOD_SHAPE,
        options=DAY_MOOD_OPTIONS,
    )


def mood_trends(
    gateway: Gateway,
    user_id: str,
    journal_entries: Sequence[JournalEntry],
    chat_turns: Sequence[ConversationTurn],
) -> List[DayMood]:
    """Mood per active UTC day, oldest day first.

    Only the user's own chat messages count as activity.
    """
    days: Dict[str, List[str]] = {}
    for entry in journal_entries:
        days.setdefault(_day(entry.created_at), []).append(entry.content)
    for turn in chat_turns:
        if turn.role == TurnRole.USER:
            days.setdefault(_day(turn.timestamp), []).append(turn.content)

    trends = []
    for day in sorted(days):
        outcome = analyze_day_mood(gateway, user_id, days[day])
        trends.append(DayMood(
            date=day,
            mood=str(outcome.value["mood"]),
            score=outcome.value["score"],
            activities=len(days[day]),
        ))
    return trends


def recommend_songs(
    gateway: Gateway,
    user_id: str,
    mood: str,
    score: float = 0,
    emotions: Sequence[str] = ("neutral",),
    genre: Optional[str] = None,
    energy: Optional[str] = None,
) -> StructuredOutcome[List[Dict[str, Any]]]:
    """Up to six songs matching a mood; an empty list when nothing usable comes back."""
    if not mood or not mood.strip():
        raise ValueError("mood is required and cannot be empty")

    sources = [
        f"- Primary Mood: {mood}",
        f"- Mood Score: {score} (scale: -5 to +5)",
        f"- Emotions: {', '.join(emotions) or 'neutral'}",
    ]
    if genre:
        sources.append(f"- Preferred genre: {genre}")
    if energy:
        sources.append(f"- Energy level: {energy}")
    custom = bool(genre or energy)

    return gateway.request_structured_analysis(
        user_id,
        sources,
        SONG_TEMPLATE,
        [],
        shape=SONG_LIST_SHAPE,
        options=CUSTOM_SONG_OPTIONS if custom else SONG_OPTIONS,
    )


def comment_on_journal(
    gateway: Gateway,
    user_id: str,
    content: str,
    prompt: Optional[str] = None,
) -> StructuredOutcome[str]:
    """Supportive comment on a journal entry, or a fixed kind reply on failure."""
    if not content or not content.strip():
        raise ValueError("content is required and cannot be empty")

    prompt_line = ""
    if prompt:
        prompt_line = f'\nThe journal entry was written in response to this prompt: "{prompt}"\n'
    full_prompt = JOURNAL_COMMENT_TEMPLATE.replace("{prompt_line}", prompt_line).replace(
        "{content}", content.strip()
    )

    outcome = gateway.request_completion(user_id, full_prompt, JOURNAL_COMMENT_OPTIONS)
    if outcome.degraded:
        return StructuredOutcome(value=JOURNAL_COMMENT_FALLBACK, usage=outcome.usage, failure=outcome.failure)
    return StructuredOutcome(value=outcome.text, usage=outcome.usage)


def mood_from_text(text: Optional[str]) -> Optional[str]:
    """First mood whose keywords appear in text, or None."""
    if not text:
        return None
    lowered = text.lower()
    for mood, keywords in MOOD_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return mood
    return None


@dataclass(frozen=True)
class ActivityItem:
    """One line of a user's recent activity."""
    kind: str  # "journal" or "chat"
    preview: str
    timestamp: datetime
    mood: Optional[str] = None


def _preview(text: str) -> str:
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


def recent_activity(
    entries: Sequence[JournalEntry],
    turns: Sequence[ConversationTurn],
    limit: int = RECENT_ACTIVITY_LIMIT,
) -> List[ActivityItem]:
    """Newest journal entries and user messages, merged newest first.

    Journal entries are tagged with the mood their stored comment suggests;
    chat messages carry no mood.
    """
    journal_items = [
        ActivityItem("journal", _preview(entry.content), entry.created_at, mood_from_text(entry.comment))
        for entry in sorted(entries, key=lambda e: e.created_at, reverse=True)[:RECENT_PER_SOURCE]
    ]
    user_turns = sorted(
        (turn for turn in turns if turn.role == TurnRole.USER),
        key=lambda t: t.timestamp,
        reverse=True,
    )
    chat_items = [
        ActivityItem("chat", _preview(turn.content), turn.timestamp)
        for turn in user_turns[:RECENT_PER_SOURCE]
    ]
    merged = sorted(journal_items + chat_items, key=lambda item: item.timestamp, reverse=True)
    return merged[:limit]


def activity_streak_days(active_dates: Iterable[date], today: date) -> int:
    """Consecutive active days ending today (or yesterday, if today is still empty)."""
    active = set(active_dates)
    streak = 0
    for offset in range(STREAK_WINDOW_DAYS):
        day = today - timedelta(days=offset)
        if day in active:
            streak += 1
        elif offset > 0:
            break
    return streak


def most_active_weekday(active_dates: Iterable[date]) -> str:
    counts = Counter(WEEKDAYS[day.weekday()] for day in active_dates)
    if not counts:
        return "Monday"
    return max(WEEKDAYS, key=lambda name: counts[name])
