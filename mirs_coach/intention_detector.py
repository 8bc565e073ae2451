"""
Intention Detector - MIRS category detection for dialogic feedback turns.

Maps each learner message to exactly one MIRS category:
- OPEN, GATH, PERS, SHARE, AGREE, CLOSE, REL

Detection Flow (first hit wins):
1. Direct category match: text equals a key ("gath") or label ("gathers information")
2. Item match: text contains a configured rubric item name
3. Trigger match: a regex trigger matches, unless it only appears inside quotes
4. Sticky: keep the previous category of this conversation
5. LLM fallback (optional): structured {category, reason} at temperature 0
6. Default: OPEN

The detector never raises; every failure degrades to a weaker signal.
One instance per conversation, since it remembers the last category.
"""

import logging
import re
from typing import List, Optional, Sequence

from pydantic_ai import Agent

from mirs_coach.config.categories import (
    CATEGORY_LABELS,
    DEFAULT_CATEGORY,
    MIRS_CATEGORIES,
    SYNONYMS,
    MirsCategory,
    parse_category,
)
from mirs_coach.config.providers import provider_manager
from mirs_coach.models.detection import CategoryChoice, ConversationTurn, DetectionResult
from mirs_coach.prompts.intention import INTENTION_SYSTEM_PROMPT, INTENTION_USER_PROMPT

logger = logging.getLogger(__name__)

QUOTE_CHARS = "\"'“”‘’"

ROLE_PREFIXES = {
    "user": "LEARNER: ",
    "assistant": "DIALOGIC_FEEDBACK: ",
}


def normalize_text(text: Optional[str]) -> str:
    """Straighten smart quotes, collapse whitespace, trim and lowercase."""
    if not text:
        return ""
    normalized = re.sub(r"[“”]", '"', text)
    normalized = re.sub(r"[‘’]", "'", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return normalized.lower()


def is_quoted(pattern: str, original_text: str) -> bool:
    """
    True if the pattern appears bracketed by quote characters in the raw text.

    Whitespace is collapsed first so the check sees the same spacing the
    trigger was matched against; quote characters and case are left alone.
    """
    collapsed = re.sub(r"\s+", " ", original_text or "").strip()
    quoted = re.compile(
        f"[{QUOTE_CHARS}].*(?:{pattern}).*[{QUOTE_CHARS}]",
        re.IGNORECASE | re.DOTALL,
    )
    return quoted.search(collapsed) is not None


class IntentionDetector:
    """
    Layered category detector for one coaching conversation.

    Deterministic checks run first so the common case never touches the LLM.
    """

    def __init__(
        self,
        use_llm_fallback: bool = True,
        max_history_chars: int = 2400,
        model=None,
        last_category: Optional[MirsCategory] = None,
    ):
        """
        Args:
            use_llm_fallback: Ask the LLM when no deterministic signal and no sticky category
            max_history_chars: Character budget of the history snippet sent to the LLM
            model: Optional pydantic-ai model; defaults to the "intention" provider config
            last_category: Category to resume from (e.g. last stored assistant message)
        """
        self.use_llm_fallback = use_llm_fallback
        self.max_history_chars = max_history_chars
        self.last_category = last_category
        self._model = model
        self._agent: Optional[Agent] = None

    async def detect(
        self,
        user_text: str,
        history: Optional[Sequence[ConversationTurn]] = None
    ) -> DetectionResult:
        """
        Detect the MIRS category for a learner message.

        Args:
            user_text: Raw learner message
            history: Prior turns, oldest first

        Returns:
            DetectionResult with category and reason; last_category is updated
        """
        history = list(history or [])
        normalized = normalize_text(user_text)

        result = (
            self._match_label(normalized)
            or self._match_item(normalized)
            or self._match_trigger(normalized, user_text)
        )

        if result is None and self.last_category is not None:
            return DetectionResult(
                category=self.last_category,
                reason="kept previous due to ambiguity"
            )

        if result is None and self.use_llm_fallback:
            result = await self._fallback_llm(user_text, history)

        if result is None:
            result = DetectionResult(
                category=DEFAULT_CATEGORY,
                reason=f"default to {DEFAULT_CATEGORY.value} (no clear signal)"
            )

        self.last_category = result.category
        logger.debug(f"Detected {result.category.value}: {result.reason}")
        return result

    def reset(self) -> None:
        """Forget the sticky category."""
        self.last_category = None

    # ========== DETERMINISTIC STAGES ==========

    @staticmethod
    def _match_label(normalized: str) -> Optional[DetectionResult]:
        """Text equals a category key or its label."""
        for category, label in CATEGORY_LABELS.items():
            if normalized == category.value.lower() or normalized == label.lower():
                return DetectionResult(category=category, reason="direct category match")
        return None

    @staticmethod
    def _match_item(normalized: str) -> Optional[DetectionResult]:
        """First configured item contained in the text, in declaration order."""
        for category, items in MIRS_CATEGORIES.items():
            for item in items:
                if item.lower() in normalized:
                    return DetectionResult(category=category, reason=f"matched item '{item}'")
        return None

    @staticmethod
    def _match_trigger(normalized: str, original_text: str) -> Optional[DetectionResult]:
        """First trigger regex that matches outside quotes."""
        for category, patterns in SYNONYMS.items():
            for pattern in patterns:
                if not re.search(pattern, normalized, re.IGNORECASE):
                    continue
                # Quoted mentions must not switch category
                if is_quoted(pattern, original_text):
                    logger.debug(f"Skipping quoted trigger '{pattern}' for {category.value}")
                    continue
                return DetectionResult(category=category, reason=f"trigger '{pattern}'")
        return None

    # ========== LLM FALLBACK ==========

    def _get_agent(self) -> Agent:
        if self._agent is None:
            model = self._model or provider_manager.get_model("intention")
            categories = ", ".join(category.value for category in MIRS_CATEGORIES)
            self._agent = Agent(
                model=model,
                system_prompt=INTENTION_SYSTEM_PROMPT.format(categories=categories),
                output_type=CategoryChoice,
            )
        return self._agent

    async def _fallback_llm(
        self,
        user_text: str,
        history: List[ConversationTurn]
    ) -> Optional[DetectionResult]:
        """Ask the LLM for a category. Returns None on any failure."""
        try:
            agent = self._get_agent()
            prompt = INTENTION_USER_PROMPT.format(
                history=self.create_history_snippet(history),
                user_text=user_text,
            )
            result = await agent.run(
                prompt,
                model_settings={"temperature": provider_manager.get_temperature("intention")}
            )
            choice = result.output
        except Exception as e:
            logger.warning(f"LLM fallback error: {e}")
            return None

        try:
            category = parse_category(choice.category)
        except ValueError:
            logger.warning(f"LLM fallback returned unknown category '{choice.category}'")
            return None

        logger.info(f"LLM fallback chose {category.value}: {choice.reason}")
        return DetectionResult(category=category, reason=choice.reason)

    def create_history_snippet(self, history: Sequence[ConversationTurn]) -> str:
        """
        Render the most recent turns within max_history_chars.

        The newest turn is always included, even when it alone exceeds the budget.
        """
        buffer: List[str] = []
        total_chars = 0

        for turn in reversed(history):
            piece = ROLE_PREFIXES.get(turn.role, "LEARNER: ") + (turn.content or "").strip()
            total_chars += len(piece) + 1
            if total_chars > self.max_history_chars and buffer:
                break
            buffer.insert(0, piece)

        return "\n".join(buffer)
