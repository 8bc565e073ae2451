"""
Dialogic Feedback Coach - category-scoped coaching replies.

Builds a system prompt anchored to the refinement payload and the per-item
scores of the active MIRS category, trims history to a character budget and
asks the coach model for a reply (blocking or streamed).
"""

import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)

from mirs_coach.config.categories import MIRS_CATEGORIES, MirsCategory, category_label
from mirs_coach.config.providers import provider_manager
from mirs_coach.models.detection import ConversationTurn
from mirs_coach.models.feedback import RefinementPayload, ScoreEntry
from mirs_coach.prompts.coach import (
    COACH_SYSTEM_PROMPT,
    ERROR_REPLY,
    NO_ITEMS_PLACEHOLDER,
    NO_QUOTES_PLACEHOLDER,
    NO_SCORES_PLACEHOLDER,
    NO_SUGGESTIONS_PLACEHOLDER,
)

logger = logging.getLogger(__name__)

# Per-turn allowance for role markers when trimming history
ROLE_OVERHEAD_CHARS = 20


def _format_score(score: float) -> str:
    return f"{score:g}"


class DialogicFeedbackCoach:
    """Coach that replies within one MIRS category per turn."""

    def __init__(
        self,
        max_history_chars: int = 4000,
        target_sentence_range: Tuple[int, int] = (3, 6),
        temperature: Optional[float] = None,
        model=None,
    ):
        """
        Args:
            max_history_chars: Character budget for history sent with each request
            target_sentence_range: (min, max) sentences per reply
            temperature: Sampling temperature; defaults to the "coach" provider config
            model: Optional pydantic-ai model; defaults to the "coach" provider config
        """
        self.max_history_chars = max_history_chars
        self.target_sentence_range = target_sentence_range
        self.temperature = temperature
        self._model = model
        self._agent: Optional[Agent] = None

    def _get_agent(self) -> Agent:
        if self._agent is None:
            model = self._model or provider_manager.get_model("coach")
            # System prompt travels in the message history, rebuilt every turn
            self._agent = Agent(model=model)
        return self._agent

    def _get_temperature(self) -> float:
        if self.temperature is not None:
            return self.temperature
        return provider_manager.get_temperature("coach")

    def build_system_prompt(
        self,
        category: MirsCategory,
        refinement: RefinementPayload,
        metrics: Dict[str, ScoreEntry]
    ) -> str:
        """Assemble the coaching system prompt for one category."""
        category_items = MIRS_CATEGORIES.get(category, ())

        score_lines = [
            f"- {item}: score={_format_score(metrics[item].score)}; why: {metrics[item].explanation}"
            for item in category_items
            if item in metrics
        ]

        suggestions = "\n".join(f"- {s}" for s in refinement.actionable_suggestions)

        quote_lines = []
        for quote in refinement.quotes:
            text = (quote.quote or "").strip()
            if not text:
                continue
            idx = quote.index if quote.index is not None else "?"
            speaker = quote.speaker or "?"
            quote_lines.append(f'[{idx}] {speaker}: "{text}"')

        min_sentences, max_sentences = self.target_sentence_range

        return COACH_SYSTEM_PROMPT.format(
            category=category.value,
            category_label=category_label(category),
            min_sentences=min_sentences,
            max_sentences=max_sentences,
            final_feedback=refinement.final_feedback,
            rationale=refinement.rationale,
            score=_format_score(refinement.score),
            explanation=refinement.explanation,
            suggestions=suggestions or NO_SUGGESTIONS_PLACEHOLDER,
            quotes="\n".join(quote_lines) or NO_QUOTES_PLACEHOLDER,
            items="\n".join(f"- {item}" for item in category_items) or NO_ITEMS_PLACEHOLDER,
            scores="\n".join(score_lines) or NO_SCORES_PLACEHOLDER,
        )

    def trim_history_to_char_limit(
        self,
        history: Sequence[ConversationTurn]
    ) -> List[ConversationTurn]:
        """
        Keep the most recent turns that fit in max_history_chars.

        The newest turn is always kept, even when it alone exceeds the budget.
        """
        result: List[ConversationTurn] = []
        total_chars = 0

        for turn in reversed(history):
            content = (turn.content or "").strip()
            total_chars += len(content) + ROLE_OVERHEAD_CHARS
            if total_chars >= self.max_history_chars and result:
                break
            result.insert(0, turn)

        return result

    def build_messages(
        self,
        system_prompt: str,
        history: Sequence[ConversationTurn]
    ) -> List[ModelMessage]:
        """System prompt followed by the trimmed, role-tagged history."""
        messages: List[ModelMessage] = [
            ModelRequest(parts=[SystemPromptPart(content=system_prompt)])
        ]
        for turn in self.trim_history_to_char_limit(history):
            if turn.role == "assistant":
                messages.append(ModelResponse(parts=[TextPart(content=turn.content)]))
            else:
                messages.append(ModelRequest(parts=[UserPromptPart(content=turn.content)]))
        return messages

    async def generate_response(
        self,
        user_text: str,
        category: MirsCategory,
        history: Sequence[ConversationTurn],
        refinement: RefinementPayload,
        metrics: Dict[str, ScoreEntry]
    ) -> str:
        """
        Generate one coaching reply.

        Returns:
            Reply text, or an apology embedding the error if the completion failed
        """
        try:
            system_prompt = self.build_system_prompt(category, refinement, metrics)
            messages = self.build_messages(system_prompt, history)
            result = await self._get_agent().run(
                user_text,
                message_history=messages,
                model_settings={"temperature": self._get_temperature()}
            )
            return result.output
        except Exception as e:
            logger.error(f"Feedback generation failed for {category.value}: {e}")
            return ERROR_REPLY.format(error=e)

    async def stream_response(
        self,
        user_text: str,
        category: MirsCategory,
        history: Sequence[ConversationTurn],
        refinement: RefinementPayload,
        metrics: Dict[str, ScoreEntry]
    ) -> AsyncIterator[str]:
        """
        Stream one coaching reply as text fragments.

        Errors propagate to the caller, which decides how to report them.
        """
        system_prompt = self.build_system_prompt(category, refinement, metrics)
        messages = self.build_messages(system_prompt, history)

        async with self._get_agent().run_stream(
            user_text,
            message_history=messages,
            model_settings={"temperature": self._get_temperature()}
        ) as result:
            async for delta in result.stream_text(delta=True, debounce_by=None):
                if delta:
                    yield delta
