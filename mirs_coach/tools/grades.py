"""
Tools for loading grade data that anchors dialogic feedback.

Provides retrieval of:
- The conversation grade id behind a score id
- The refinement payload and per-item metrics built from the annotated transcript

Schema: conversation_grade (id, score_id, annotated_transcript_v1 jsonb, mirs_scores jsonb)
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg
from pydantic import ValidationError

from mirs_coach.errors import NotFoundError, NotReadyError, UpstreamError
from mirs_coach.models.feedback import (
    ConversationQuote,
    GradeContext,
    RefinementPayload,
    ScoreEntry,
)

logger = logging.getLogger(__name__)

SQL_SELECT_GRADE_ID = """
SELECT id FROM conversation_grade
WHERE score_id = $1
LIMIT 1;
"""

SQL_SELECT_GRADE = """
SELECT id, annotated_transcript_v1, mirs_scores
FROM conversation_grade
WHERE score_id = $1
LIMIT 1;
"""

NOT_PROCESSED_MESSAGE = (
    "Conversation has not been fully processed yet. "
    "Please wait for scoring to complete."
)
NO_ITEMS_MESSAGE = "No refined feedback items available for this conversation."
INVALID_ITEMS_MESSAGE = "No valid feedback items found with required MIRS data."

DEFAULT_SCORE = 3


def _decode_json(value: Any) -> Any:
    """asyncpg returns json/jsonb as text unless a codec is registered."""
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_valid_item(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("mirs_name"), str)
        and bool(item["mirs_name"].strip())
        and _is_number(item.get("score"))
        and isinstance(item.get("quotes"), list)
    )


def build_grade_context(annotated_transcript: Any, mirs_scores: Any = None) -> GradeContext:
    """
    Build the refinement payload and metrics from stored grade JSON.

    The first valid feedback item is the primary source; quotes and metrics
    are gathered from every valid item, then topped up from mirs_scores.

    Raises:
        NotReadyError: Transcript not annotated yet, or no usable feedback items
    """
    if not isinstance(annotated_transcript, dict):
        raise NotReadyError(NOT_PROCESSED_MESSAGE)

    selected_items = annotated_transcript.get("selected_feedback_items") or []
    if not isinstance(selected_items, list) or not selected_items:
        raise NotReadyError(NO_ITEMS_MESSAGE)

    valid_items = [item for item in selected_items if _is_valid_item(item)]
    if not valid_items:
        raise NotReadyError(INVALID_ITEMS_MESSAGE)

    try:
        return _assemble_context(valid_items, mirs_scores)
    except ValidationError as e:
        logger.warning(f"Grade data failed validation: {e}")
        raise NotReadyError(INVALID_ITEMS_MESSAGE) from e


def _to_quote(raw: Any) -> Optional[ConversationQuote]:
    """Quote from stored JSON; None when the quote text is unusable."""
    if not isinstance(raw, dict):
        return None
    text = raw.get("quote")
    if text is None:
        text = ""
    if not isinstance(text, str):
        return None

    index = raw.get("transcript_index")
    if index is None:
        index = 0
    elif not isinstance(index, int) or isinstance(index, bool):
        # Unknown position; rendered as "?" in the coaching prompt
        index = None

    return ConversationQuote(index=index, speaker="unknown", quote=text)


def _rationale(item: Dict[str, Any]) -> Optional[str]:
    value = item.get("selection_rationale")
    return value if isinstance(value, str) and value.strip() else None


def _assemble_context(valid_items: List[Dict[str, Any]], mirs_scores: Any) -> GradeContext:
    primary = valid_items[0]
    mirs_name = primary["mirs_name"]
    rationale = _rationale(primary)
    score = primary.get("score") or DEFAULT_SCORE

    quotes: List[ConversationQuote] = []
    for item in valid_items:
        for raw in item["quotes"]:
            quote = _to_quote(raw)
            if quote is None:
                logger.debug(f"Skipping malformed quote in '{item['mirs_name']}': {raw!r}")
                continue
            quotes.append(quote)

    refinement = RefinementPayload(
        final_feedback=(
            f"Based on your performance in {mirs_name}, here are key areas for growth: "
            f"{rationale or 'Multiple aspects of your communication show potential for improvement.'}"
        ),
        rationale=rationale or "This skill matters because it improves patient understanding, trust, and safety.",
        score=score,
        explanation=(
            f"Score: {score}/5. "
            f"{rationale or 'Areas for improvement have been identified based on communication effectiveness.'}"
        ),
        quotes=quotes,
        index=[q.index for q in quotes if q.index is not None],
        actionable_suggestions=[
            f"Focus on improving your {mirs_name}",
            "Practice the specific behaviors identified in the feedback",
            "Review the highlighted conversation moments for learning opportunities",
        ],
    )

    metrics: Dict[str, ScoreEntry] = {}
    for item in valid_items:
        metrics[item["mirs_name"]] = ScoreEntry(
            score=item["score"],
            explanation=_rationale(item)
            or f"{item['mirs_name']} scored {item['score']}/5 based on performance analysis.",
        )

    if isinstance(mirs_scores, dict):
        for item_name, item_data in mirs_scores.items():
            if item_name in metrics or not isinstance(item_data, dict):
                continue
            if item_data.get("score") is None or not item_data.get("explanation"):
                continue
            try:
                item_score = float(item_data["score"])
            except (TypeError, ValueError):
                item_score = 0.0
            metrics[item_name] = ScoreEntry(
                score=item_score,
                explanation=str(item_data["explanation"]),
            )

    return GradeContext(refinement=refinement, metrics=metrics)


class GradeTools:
    """
    Tools for retrieving grades behind a dialogic feedback conversation.

    Failures are raised as domain errors so the pipeline can stop on the first one.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        """
        Args:
            db_pool: AsyncPG connection pool for database access
        """
        self.pool = db_pool

    async def find_grade_by_score_id(self, score_id: str) -> Optional[int]:
        """
        Get the conversation grade id for a score id.

        Returns:
            Grade id, or None if no grade exists

        Raises:
            UpstreamError: Database failure
        """
        try:
            async with self.pool.acquire() as conn:
                grade_id = await conn.fetchval(SQL_SELECT_GRADE_ID, score_id)
        except Exception as e:
            logger.error(f"Failed to get conversation grade id for score {score_id}: {e}")
            raise UpstreamError("Failed to get conversation grade") from e

        if grade_id is None:
            logger.info(f"No conversation grade for score {score_id}")
        return grade_id

    async def fetch_refinement_and_metrics(self, score_id: str) -> GradeContext:
        """
        Fetch the refinement payload and per-item metrics for a score id.

        Raises:
            NotFoundError: No grade for this score id
            NotReadyError: Grade exists but scoring has not produced usable items
            UpstreamError: Database failure
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(SQL_SELECT_GRADE, score_id)
        except Exception as e:
            logger.error(f"Failed to fetch grade data for score {score_id}: {e}")
            raise UpstreamError("Failed to fetch grade data") from e

        if row is None:
            raise NotFoundError("Grade not found")

        context = build_grade_context(
            _decode_json(row["annotated_transcript_v1"]),
            _decode_json(row["mirs_scores"]),
        )
        logger.info(
            f"Loaded grade context for score {score_id}: "
            f"{len(context.metrics)} metrics, {len(context.refinement.quotes)} quotes"
        )
        return context
