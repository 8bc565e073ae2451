"""
Prompts for the Intention Detector LLM fallback.

Only used when no label, item or trigger matched and there is no previous
category to keep.
"""

INTENTION_SYSTEM_PROMPT = """You map learner input to exactly one MIRS category: {categories}.
Prefer OPEN/GATH/PERS/SHARE/AGREE/CLOSE over REL when an item there is named.
Never return confidence. Return the category and reason for your choice."""

INTENTION_USER_PROMPT = """HISTORY:
{history}

INPUT:
{user_text}"""
