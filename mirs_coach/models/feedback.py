"""
Pydantic models for the Dialogic Feedback Coach and the feedback pipeline.

Defines the refinement payload the coach is anchored to, per-item metrics,
stored messages, and the events streamed back to the transport layer.
"""

from datetime import datetime
from typing import List, Dict, Optional, Literal, Union
from pydantic import BaseModel, Field


class ConversationQuote(BaseModel):
    """A transcript quote cited as evidence for the refinement."""

    index: Optional[int] = Field(None, description="Transcript index of the quoted turn")
    speaker: Optional[str] = Field(None, description="Who said it (may be unknown)")
    quote: Optional[str] = Field(None, description="Verbatim quoted text")


class ScoreEntry(BaseModel):
    """Fixed score and explanation for one MIRS item."""

    score: float
    explanation: str = ""


class RefinementPayload(BaseModel):
    """
    Pre-computed evidentiary basis for coaching.

    Produced upstream from the grade; the coach must not contradict it.
    """

    final_feedback: str
    rationale: str
    score: float
    explanation: str
    quotes: List[ConversationQuote] = Field(default_factory=list)
    index: List[int] = Field(
        default_factory=list,
        description="Transcript indices of the quotes, in quote order"
    )
    actionable_suggestions: List[str] = Field(default_factory=list)


class GradeContext(BaseModel):
    """Refinement payload plus per-item metrics for one scored conversation."""

    refinement: RefinementPayload
    metrics: Dict[str, ScoreEntry] = Field(default_factory=dict)


class StoredMessage(BaseModel):
    """A persisted dialogic feedback message."""

    id: int
    role: Literal["user", "assistant", "system"]
    content: str
    category_detected: Optional[str] = None
    created_at: datetime


class ConversationHistory(BaseModel):
    """History listing returned to the transport layer."""

    success: bool = True
    messages: List[StoredMessage] = Field(default_factory=list)


# ========== STREAM EVENTS ==========

class TextDeltaEvent(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    text_delta: str


class FinishEvent(BaseModel):
    type: Literal["finish"] = "finish"
    category: str
    category_label: str
    reason: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    kind: Literal["not_found", "not_ready", "upstream"] = "upstream"


StreamEvent = Union[TextDeltaEvent, FinishEvent, ErrorEvent]
