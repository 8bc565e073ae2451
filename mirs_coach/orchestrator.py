"""Feedback pipeline: one learner message in, one streamed coaching reply out.

Per message, strictly in order:
1) Resolve the conversation grade from the score id.
2) Persist the learner turn.
3) Load the conversation history.
4) Fetch the refinement payload and metrics.
5) Detect the MIRS category with this conversation's detector.
6) Stream the coach reply as text-delta events.
7) Persist the assistant turn with its category and send a finish event.

The first failing step ends the stream with a single error event. Nothing is
retried. A cancelled stream discards the partial reply without persisting it.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import aclosing
from typing import AsyncIterator, Callable, List, Optional, Tuple

import asyncpg

from mirs_coach.coach import DialogicFeedbackCoach
from mirs_coach.config.categories import category_label, parse_category
from mirs_coach.config.settings import FeedbackSettings
from mirs_coach.errors import FeedbackError, NotFoundError
from mirs_coach.intention_detector import IntentionDetector
from mirs_coach.models.detection import ConversationTurn
from mirs_coach.models.feedback import (
    ConversationHistory,
    ErrorEvent,
    FinishEvent,
    StoredMessage,
    StreamEvent,
    TextDeltaEvent,
)
from mirs_coach.tools.grades import GradeTools
from mirs_coach.tools.messages import MessageStore

logger = logging.getLogger(__name__)

ConversationKey = Tuple[int, int]
DetectorFactory = Callable[[Optional[str]], IntentionDetector]


def to_turns(messages: List[StoredMessage]) -> List[ConversationTurn]:
    """Drop system messages and keep role/content for the detector and coach."""
    return [
        ConversationTurn(role=message.role, content=message.content)
        for message in messages
        if message.role != "system"
    ]


def last_assistant_category(messages: List[StoredMessage]) -> Optional[str]:
    """Category stored on the most recent assistant message, if any."""
    for message in reversed(messages):
        if message.role == "assistant" and message.category_detected:
            return message.category_detected
    return None


class DialogicFeedbackService:
    """Chains persistence, grade context, detection and coaching for each message.

    Holds one IntentionDetector per (user_id, grade_id) so the sticky category
    follows a conversation and never leaks into another one. The least recently
    used detectors are evicted past detector.max_conversations; an evicted
    conversation is reseeded from its stored category on the next message.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        settings: Optional[FeedbackSettings] = None,
        coach: Optional[DialogicFeedbackCoach] = None,
        detector_factory: Optional[DetectorFactory] = None,
    ) -> None:
        self.settings = settings or FeedbackSettings()
        self.grades = GradeTools(pool)
        self.messages = MessageStore(pool)
        self.coach = coach or DialogicFeedbackCoach(
            max_history_chars=self.settings.coach.max_history_chars,
            target_sentence_range=self.settings.coach.target_sentence_range,
        )
        self.detector_factory = detector_factory or self._default_detector
        self._detectors: OrderedDict[ConversationKey, IntentionDetector] = OrderedDict()

    def _default_detector(self, last_category: Optional[str]) -> IntentionDetector:
        detector = IntentionDetector(
            use_llm_fallback=self.settings.detector.use_llm_fallback,
            max_history_chars=self.settings.detector.max_history_chars,
        )
        if last_category:
            try:
                detector.last_category = parse_category(last_category)
            except ValueError:
                logger.warning(f"Ignoring stored category '{last_category}'")
        return detector

    def detector_for(
        self,
        user_id: int,
        grade_id: int,
        messages: List[StoredMessage],
    ) -> IntentionDetector:
        """Get (or create) the detector for one conversation."""
        key = (user_id, grade_id)
        detector = self._detectors.get(key)
        if detector is not None:
            self._detectors.move_to_end(key)
            return detector

        detector = self.detector_factory(last_assistant_category(messages))
        self._detectors[key] = detector
        while len(self._detectors) > self.settings.detector.max_conversations:
            evicted, _ = self._detectors.popitem(last=False)
            logger.debug(f"Evicted detector for conversation {evicted}")
        return detector

    def forget_conversation(self, user_id: int, grade_id: int) -> None:
        self._detectors.pop((user_id, grade_id), None)

    async def _require_grade_id(self, score_id: str) -> int:
        grade_id = await self.grades.find_grade_by_score_id(score_id)
        if grade_id is None:
            raise NotFoundError("Conversation grade not found")
        return grade_id

    async def get_conversation_history(self, user_id: int, score_id: str) -> ConversationHistory:
        """List the stored messages of a conversation.

        Raises:
            NotFoundError: Unknown score id
            UpstreamError: Database failure
        """
        grade_id = await self._require_grade_id(score_id)
        messages = await self.messages.list_messages(user_id, grade_id)
        return ConversationHistory(success=True, messages=messages)

    async def send_message(
        self,
        user_id: int,
        score_id: str,
        message: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the pipeline for one learner message, yielding stream events."""
        try:
            grade_id = await self._require_grade_id(score_id)
            await self.messages.insert_message(user_id, grade_id, "user", message)
            stored = await self.messages.list_messages(user_id, grade_id)
            context = await self.grades.fetch_refinement_and_metrics(score_id)
        except FeedbackError as e:
            logger.warning(f"Feedback pipeline stopped for score {score_id}: {e.message}")
            yield ErrorEvent(error=e.message, kind=e.kind)
            return
        except Exception as e:
            logger.error(f"Unexpected failure preparing feedback for score {score_id}: {e}", exc_info=True)
            yield ErrorEvent(error=f"Failed to prepare feedback: {e}", kind="upstream")
            return

        # The just-saved learner turn goes to the model once, as the new prompt
        if stored and stored[-1].role == "user" and stored[-1].content == message:
            stored = stored[:-1]
        history = to_turns(stored)

        detector = self.detector_for(user_id, grade_id, stored)
        detection = await detector.detect(message, history)
        logger.info(
            f"Score {score_id}: category={detection.category.value} ({detection.reason})"
        )

        full_response: List[str] = []
        try:
            stream = self.coach.stream_response(
                message,
                detection.category,
                history,
                context.refinement,
                context.metrics,
            )
            async with aclosing(stream):
                async for delta in stream:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info(
                            f"Stream cancelled for score {score_id}; "
                            f"discarding {len(''.join(full_response))} chars"
                        )
                        return
                    full_response.append(delta)
                    yield TextDeltaEvent(text_delta=delta)
        except Exception as e:
            logger.error(f"Failed to generate response for score {score_id}: {e}", exc_info=True)
            yield ErrorEvent(error=f"Failed to generate response: {e}", kind="upstream")
            return

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Stream cancelled for score {score_id} after completion; not saved")
            return

        try:
            await self.messages.insert_message(
                user_id,
                grade_id,
                "assistant",
                "".join(full_response),
                detection.category.value,
            )
        except FeedbackError as e:
            yield ErrorEvent(error=e.message, kind=e.kind)
            return

        yield FinishEvent(
            category=detection.category.value,
            category_label=category_label(detection.category),
            reason=detection.reason,
        )
