"""
Credit-metered generation gateway.

Every request runs through the same stages:

    ESTIMATING -> RESERVING -> ASSEMBLING -> GENERATING -> RECONCILING -> (PARSING) -> DONE

RESERVING ends the request at QUOTA_REJECTED when the daily allowance is
spent; nothing is fetched or generated. GENERATING ends it at
GENERATION_FAILED when the service fails; the reservation then stands as the
charge (no refund, no reconcile) and the caller gets a stand-in reply or the
fallback value. Reservations are never rolled back, including for requests
the caller abandons.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, Sequence, TypeVar

from .context import ContextAssembler, ContextMode, DEFAULT_LANGUAGE
from .ledger import UsageLedger, UsageSnapshot
from .parser import ShapeRule, parse_structured
from .token_counter import estimate_tokens
from calm_gateway.sdk.generation_client import (
    CHAT_OPTIONS,
    GenerationClient,
    GenerationError,
    GenerationOptions,
)
from calm_gateway.storage.models import ConversationTurn, TurnRole
from calm_gateway.storage.repository import MessageRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OUTPUT_ESTIMATE = 200
SOURCES_PLACEHOLDER = "{sources}"
NO_SOURCES_TEXT = "No entries."

GENERATION_UNAVAILABLE_REPLY = (
    "I'm sorry, I'm having a little trouble finding my words right now. "
    "I'm still here with you, so please try again in a moment. 💜"
)


class GatewayStage(Enum):
    """Where a request ended up."""
    ESTIMATING = "estimating"
    RESERVING = "reserving"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    RECONCILING = "reconciling"
    PARSING = "parsing"
    DONE = "done"
    QUOTA_REJECTED = "quota_rejected"
    GENERATION_FAILED = "generation_failed"


@dataclass(frozen=True)
class CompletionOutcome:
    """Result of a metered call. ``text`` is None when generation failed."""
    text: Optional[str]
    usage: UsageSnapshot
    stage: GatewayStage
    failure: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.failure is not None


@dataclass(frozen=True)
class ChatReply:
    """Companion reply plus the user's credit position."""
    reply_text: str
    usage: UsageSnapshot
    mode: ContextMode
    stage: GatewayStage
    failure: Optional[str] = None

    @property
    def degraded(self) -> bool:
        """True when reply_text is the stand-in because generation failed."""
        return self.failure is not None


@dataclass(frozen=True)
class StructuredOutcome(Generic[T]):
    """Parsed (or fallback) value plus the user's credit position."""
    value: T
    usage: UsageSnapshot
    failure: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.failure is not None


class Gateway:
    """Runs generation requests under the daily credit allowance."""

    def __init__(
        self,
        ledger: UsageLedger,
        client: GenerationClient,
        assembler: ContextAssembler,
        messages: MessageRepository,
        output_estimate: int = DEFAULT_OUTPUT_ESTIMATE,
        timeout: Optional[float] = None,
    ):
        if output_estimate <= 0:
            raise ValueError("output_estimate must be > 0")
        self.ledger = ledger
        self.client = client
        self.assembler = assembler
        self.messages = messages
        self.output_estimate = output_estimate
        self.timeout = timeout

    def _reserve(self, user_id: str, estimate_text: str, output_estimate: Optional[int]) -> UsageSnapshot:
        # ESTIMATING
        input_tokens = estimate_tokens(estimate_text, self.ledger.policy.chars_per_token)
        output_tokens = output_estimate or self.output_estimate
        # RESERVING; QuotaExceededError and UserNotFoundError propagate
        reservation = self.ledger.reserve(user_id, input_tokens, output_tokens)
        logger.debug(
            "Reserved %d credits for %s (%d remaining)", reservation.charged, user_id, reservation.remaining
        )
        return reservation

    def _generate(
        self,
        user_id: str,
        prompt: str,
        reservation: UsageSnapshot,
        options: Optional[GenerationOptions],
    ) -> CompletionOutcome:
        try:
            result = self.client.generate(prompt, options, timeout=self.timeout)
        except GenerationError as e:
            logger.warning(
                "Generation failed for %s (%s); keeping the %d reserved credits",
                user_id,
                e.kind,
                reservation.charged,
            )
            return CompletionOutcome(
                text=None,
                usage=reservation,
                stage=GatewayStage.GENERATION_FAILED,
                failure=e.kind,
            )

        chars_per_token = self.ledger.policy.chars_per_token
        prompt_tokens = result.prompt_tokens
        if prompt_tokens is None:
            prompt_tokens = estimate_tokens(prompt, chars_per_token)
        usage = self.ledger.reconcile(
            user_id,
            prompt_tokens,
            result.billed_output_tokens(chars_per_token),
            reservation,
        )
        return CompletionOutcome(text=result.text, usage=usage, stage=GatewayStage.DONE)

    def request_completion(
        self,
        user_id: str,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        output_estimate: Optional[int] = None,
    ) -> CompletionOutcome:
        """Run a metered generation call for an already built prompt.

        Raises:
            QuotaExceededError: If the request does not fit today's allowance
            UserNotFoundError: If the user is unknown
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        reservation = self._reserve(user_id, prompt, output_estimate)
        return self._generate(user_id, prompt, reservation, options)

    def request_generation(
        self,
        user_id: str,
        query: str,
        recent_turns: Sequence[ConversationTurn] = (),
        language: str = DEFAULT_LANGUAGE,
        options: Optional[GenerationOptions] = None,
    ) -> ChatReply:
        """Answer a chat message from the companion.

        The accepted user message is appended to the conversation log, and so
        is the reply when one was generated. The stand-in reply used after a
        generation failure is not stored.

        Args:
            user_id: User sending the message
            query: The new message
            recent_turns: Conversation the caller holds in memory, oldest first,
                not including query
            language: Reply language
            options: Sampling controls, defaults to the chat preset

        Returns:
            ChatReply with the reply text and the usage snapshot

        Raises:
            QuotaExceededError: If the message does not fit today's allowance
            UserNotFoundError: If the user is unknown
        """
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")
        received_at = datetime.now(timezone.utc)

        reservation = self._reserve(user_id, query, None)
        context = self.assembler.assemble(user_id, query, recent_turns, language)
        logger.debug("Assembled %s context for %s", context.mode.value, user_id)

        outcome = self._generate(user_id, context.prompt, reservation, options or CHAT_OPTIONS)

        self.messages.append_turn(
            ConversationTurn(user_id=user_id, role=TurnRole.USER, content=query, timestamp=received_at)
        )
        if outcome.degraded:
            return ChatReply(
                reply_text=GENERATION_UNAVAILABLE_REPLY,
                usage=outcome.usage,
                mode=context.mode,
                stage=outcome.stage,
                failure=outcome.failure,
            )

        self.messages.append_turn(
            ConversationTurn(
                user_id=user_id,
                role=TurnRole.ASSISTANT,
                content=outcome.text,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return ChatReply(
            reply_text=outcome.text,
            usage=outcome.usage,
            mode=context.mode,
            stage=GatewayStage.DONE,
        )

    def request_structured_analysis(
        self,
        user_id: str,
        source_texts: Sequence[str],
        prompt_template: str,
        fallback: T,
        shape: Optional[ShapeRule] = None,
        options: Optional[GenerationOptions] = None,
        output_estimate: Optional[int] = None,
    ) -> StructuredOutcome[T]:
        """Ask the model for JSON about some texts, falling back on failure.

        Args:
            user_id: User to charge
            source_texts: Texts spliced into the template, one per line
            prompt_template: Prompt containing the ``{sources}`` placeholder
            fallback: Value returned when generation or parsing fails
            shape: Optional structural rule for the parsed value
            options: Sampling controls
            output_estimate: Reply tokens to pre-charge, defaults to the gateway's

        Returns:
            StructuredOutcome with the parsed value or the fallback

        Raises:
            ValueError: If the template has no ``{sources}`` placeholder
            QuotaExceededError: If the request does not fit today's allowance
            UserNotFoundError: If the user is unknown
        """
        if SOURCES_PLACEHOLDER not in prompt_template:
            raise ValueError(f"prompt_template must contain {SOURCES_PLACEHOLDER}")
        sources = "\n".join(text for text in source_texts if text and text.strip()) or NO_SOURCES_TEXT
        prompt = prompt_template.replace(SOURCES_PLACEHOLDER, sources)

        outcome = self.request_completion(user_id, prompt, options, output_estimate)
        if outcome.degraded:
            return StructuredOutcome(value=fallback, usage=outcome.usage, failure=outcome.failure)

        # PARSING
        value = parse_structured(outcome.text, fallback, shape)
        return StructuredOutcome(value=value, usage=outcome.usage)
