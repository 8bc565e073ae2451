"""
Pipeline settings loaded from .env.

LLM provider/model/temperature live in providers.py; this module covers the
knobs of the detector, the coach and the database connection.
"""

import os
import logging
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()

logger = logging.getLogger(__name__)


class DetectorSettings(BaseModel):
    """Configuration for the intention detector."""

    use_llm_fallback: bool = True
    max_history_chars: int = Field(2400, ge=1)
    max_conversations: int = Field(1000, ge=1)


class CoachSettings(BaseModel):
    """Configuration for the dialogic feedback coach."""

    max_history_chars: int = Field(4000, ge=1)
    target_sentence_range: Tuple[int, int] = (3, 6)

    @field_validator("target_sentence_range")
    @classmethod
    def check_sentence_range(cls, v):
        low, high = v
        if low < 1 or high < low:
            raise ValueError("Sentence range must be 1 <= min <= max.")
        return v


class FeedbackSettings(BaseModel):
    """Top-level settings for the feedback pipeline."""

    database_url: Optional[str] = None
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    coach: CoachSettings = Field(default_factory=CoachSettings)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_sentence_range(name: str, default: Tuple[int, int]) -> Tuple[int, int]:
    value = os.getenv(name)
    if not value:
        return default
    try:
        low, high = (int(part) for part in value.split("-", 1))
    except ValueError:
        raise ValueError(f"Invalid {name}: '{value}'. Expected format like '3-6'")
    return (low, high)


def load_settings() -> FeedbackSettings:
    """
    Build FeedbackSettings from the environment.

    Environment:
        DATABASE_URL
        INTENTION_USE_LLM_FALLBACK (default: true)
        INTENTION_MAX_HISTORY_CHARS (default: 2400)
        INTENTION_MAX_CONVERSATIONS (default: 1000)
        COACH_MAX_HISTORY_CHARS (default: 4000)
        COACH_SENTENCE_RANGE (default: 3-6)

    Raises:
        ValueError: If a value cannot be parsed or fails validation
    """
    detector = DetectorSettings(
        use_llm_fallback=_env_bool("INTENTION_USE_LLM_FALLBACK", True),
        max_history_chars=int(os.getenv("INTENTION_MAX_HISTORY_CHARS", "2400")),
        max_conversations=int(os.getenv("INTENTION_MAX_CONVERSATIONS", "1000")),
    )
    coach = CoachSettings(
        max_history_chars=int(os.getenv("COACH_MAX_HISTORY_CHARS", "4000")),
        target_sentence_range=_env_sentence_range("COACH_SENTENCE_RANGE", (3, 6)),
    )
    settings = FeedbackSettings(
        database_url=os.getenv("DATABASE_URL"),
        detector=detector,
        coach=coach,
    )
    logger.debug(
        f"Loaded settings: llm_fallback={detector.use_llm_fallback}, "
        f"detector_history={detector.max_history_chars}, "
        f"coach_history={coach.max_history_chars}, "
        f"sentences={coach.target_sentence_range}"
    )
    return settings
