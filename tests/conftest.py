"""Shared pytest fixtures for the dialogic feedback test suite.

These fixtures provide:
* An in-memory asyncpg pool stand-in answering the adapters' SQL
* Canonical grade JSON, refinement payloads and metrics
* pydantic-ai FunctionModel factories in place of the completion service
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from pydantic_ai import models
from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import AgentInfo, FunctionModel

from mirs_coach.models.detection import ConversationTurn
from mirs_coach.models.feedback import (
    ConversationQuote,
    RefinementPayload,
    ScoreEntry,
)
from mirs_coach.tools.grades import SQL_SELECT_GRADE, SQL_SELECT_GRADE_ID
from mirs_coach.tools.messages import SQL_INSERT_MESSAGE, SQL_SELECT_MESSAGES

# Never reach a real provider from tests
models.ALLOW_MODEL_REQUESTS = False


class FakeConnection:
    """Answers the handful of queries the adapters issue."""

    def __init__(self, db: "FakeDatabase") -> None:
        self.db = db

    def _check(self, sql: str) -> None:
        if sql in self.db.failing:
            raise ConnectionError("database is unavailable")

    async def fetchval(self, sql: str, *args: Any) -> Any:
        self._check(sql)
        if sql == SQL_SELECT_GRADE_ID:
            grade = self.db.grades.get(args[0])
            return grade["id"] if grade else None
        raise AssertionError(f"Unexpected fetchval: {sql}")

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        self._check(sql)
        if sql == SQL_SELECT_GRADE:
            return self.db.grades.get(args[0])
        raise AssertionError(f"Unexpected fetchrow: {sql}")

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        self._check(sql)
        if sql == SQL_SELECT_MESSAGES:
            user_id, grade_id = args
            return [
                dict(row)
                for row in self.db.messages
                if row["user_id"] == user_id and row["conversation_grade_id"] == grade_id
            ]
        raise AssertionError(f"Unexpected fetch: {sql}")

    async def execute(self, sql: str, *args: Any) -> str:
        self._check(sql)
        if sql == SQL_INSERT_MESSAGE:
            user_id, grade_id, role, content, category = args
            self.db.messages.append({
                "id": len(self.db.messages) + 1,
                "user_id": user_id,
                "conversation_grade_id": grade_id,
                "role": role,
                "content": content,
                "category_detected": category,
                "created_at": self.db.base_time + timedelta(seconds=len(self.db.messages)),
            })
            return "INSERT 0 1"
        raise AssertionError(f"Unexpected execute: {sql}")


class FakeDatabase:
    """In-memory tables plus a pool-like acquire()."""

    def __init__(self) -> None:
        self.grades: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.failing: set = set()
        self.base_time = datetime(2024, 5, 1, 9, 0, 0)

    def add_grade(self, score_id: str, grade_id: int, annotated: Any, mirs_scores: Any = None) -> None:
        self.grades[score_id] = {
            "id": grade_id,
            "annotated_transcript_v1": annotated,
            "mirs_scores": mirs_scores,
        }

    def fail(self, sql: str) -> None:
        self.failing.add(sql)

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def annotated_transcript() -> Dict[str, Any]:
    """Annotated transcript as written by the scoring job."""
    return {
        "selected_feedback_items": [
            {
                "mirs_name": "agenda setting",
                "score": 2,
                "selection_rationale": "The learner never asked what else the patient wanted to discuss.",
                "quotes": [
                    {"transcript_index": 4, "quote": "So, what brings you in today?"},
                    {"transcript_index": 9, "quote": "Okay, let's move on to your medications."},
                ],
            },
            {
                "mirs_name": "empathy",
                "score": 4,
                "selection_rationale": "Acknowledged the patient's fear about surgery.",
                "quotes": [{"transcript_index": 12, "quote": "That sounds really frightening."}],
            },
            {"mirs_name": "timeline", "score": "high", "quotes": []},
        ]
    }


@pytest.fixture
def mirs_scores() -> Dict[str, Any]:
    return {
        "questioning skills": {"score": 3, "explanation": "Mostly closed questions."},
        "empathy": {"score": 1, "explanation": "Should not override the feedback item."},
        "summarizing": {"score": 4},
    }


@pytest.fixture
def sample_refinement() -> RefinementPayload:
    return RefinementPayload(
        final_feedback="You gathered the history efficiently but skipped agenda setting.",
        rationale="Setting the agenda early keeps the patient's concerns in scope.",
        score=2,
        explanation="Score: 2/5. No attempt to elicit the full list of concerns.",
        quotes=[
            ConversationQuote(index=4, speaker="student", quote="So, what brings you in today?"),
            ConversationQuote(index=7, speaker="patient", quote="   "),
            ConversationQuote(index=None, speaker=None, quote="Anything else?"),
        ],
        index=[4, 7],
        actionable_suggestions=[
            "Ask 'What else?' until the patient has no more concerns",
            "Summarize the agenda before diving in",
        ],
    )


@pytest.fixture
def sample_metrics() -> Dict[str, ScoreEntry]:
    return {
        "agenda setting": ScoreEntry(score=2, explanation="No agenda was set."),
        "timeline": ScoreEntry(score=4.5, explanation="Clear chronology of symptoms."),
        "empathy": ScoreEntry(score=4, explanation="Acknowledged fear."),
    }


@pytest.fixture
def sample_history() -> List[ConversationTurn]:
    return [
        ConversationTurn(role="user", content="How did I do on gathering information?"),
        ConversationTurn(role="assistant", content="You kept a clear timeline. What would you ask next?"),
        ConversationTurn(role="user", content="Maybe ask about other concerns."),
    ]


@pytest.fixture
def text_model():
    """FunctionModel replying with fixed text; returns (model, calls)."""

    def _factory(reply: str = "Nice work. What would you try next time?"):
        calls: List[Dict[str, Any]] = []

        def _respond(messages, info: AgentInfo) -> ModelResponse:
            calls.append({"messages": messages, "info": info})
            return ModelResponse(parts=[TextPart(content=reply)])

        async def _stream(messages, info: AgentInfo):
            calls.append({"messages": messages, "info": info})
            words = reply.split(" ")
            for i, word in enumerate(words):
                yield word if i == len(words) - 1 else word + " "

        return FunctionModel(_respond, stream_function=_stream), calls

    return _factory


@pytest.fixture
def failing_model():
    """FunctionModel whose every call fails like a dropped connection."""

    def _fail(messages, info: AgentInfo) -> ModelResponse:
        raise ConnectionError("completion service unavailable")

    async def _fail_stream(messages, info: AgentInfo):
        raise ConnectionError("completion service unavailable")
        yield ""  # pragma: no cover

    return FunctionModel(_fail, stream_function=_fail_stream)
