"""
Pydantic models for the Intention Detector.

DetectionResult is what the detector returns for every turn; CategoryChoice is
the structured output requested from the LLM fallback.
"""

from typing import Literal
from pydantic import BaseModel, Field

from mirs_coach.config.categories import MirsCategory


class ConversationTurn(BaseModel):
    """One persisted turn of the coaching conversation."""

    role: Literal["user", "assistant"]
    content: str = ""


class DetectionResult(BaseModel):
    """Category detected for a learner turn."""

    category: MirsCategory = Field(
        ...,
        description="The single active MIRS category for this turn"
    )
    reason: str = Field(
        ...,
        description="Free-text explanation of which rule fired (observability only)"
    )


class CategoryChoice(BaseModel):
    """Structured output of the LLM fallback."""

    category: str = Field(
        ...,
        description="Exactly one MIRS category key, e.g. OPEN, GATH, PERS, SHARE, AGREE, CLOSE, REL"
    )
    reason: str = Field(
        ...,
        description="One sentence explaining why this category was chosen"
    )
