"""Integration tests for the feedback pipeline against the in-memory database."""

import asyncio

import pytest
from pydantic_ai.messages import UserPromptPart

from mirs_coach.coach import DialogicFeedbackCoach
from mirs_coach.config.settings import DetectorSettings, FeedbackSettings
from mirs_coach.errors import NotFoundError
from mirs_coach.models.feedback import ErrorEvent, FinishEvent, TextDeltaEvent
from mirs_coach.orchestrator import DialogicFeedbackService
from mirs_coach.tools.messages import SQL_INSERT_MESSAGE

REPLY = "Try asking what else. What would you say first?"


class ScriptedCoach:
    """Coach stand-in streaming fixed fragments and recording whether it was closed."""

    def __init__(self, fragments):
        self.fragments = fragments
        self.closed = False

    async def stream_response(self, user_text, category, history, refinement, metrics):
        try:
            for fragment in self.fragments:
                yield fragment
        finally:
            self.closed = True


@pytest.fixture
def settings() -> FeedbackSettings:
    return FeedbackSettings(detector=DetectorSettings(use_llm_fallback=False))


@pytest.fixture
def graded_db(fake_db, annotated_transcript, mirs_scores):
    fake_db.add_grade("score-1", 11, annotated_transcript, mirs_scores)
    return fake_db


@pytest.fixture
def service_factory(graded_db, settings, text_model):
    def _factory(reply: str = REPLY):
        model, calls = text_model(reply)
        coach = DialogicFeedbackCoach(model=model, temperature=0.7)
        return DialogicFeedbackService(graded_db, settings=settings, coach=coach), calls

    return _factory


async def collect(stream):
    return [event async for event in stream]


def user_prompts(messages):
    return [
        part.content
        for message in messages
        for part in message.parts
        if isinstance(part, UserPromptPart)
    ]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.asyncio
async def test_send_message_streams_and_persists(graded_db, service_factory):
    service, calls = service_factory()

    events = await collect(service.send_message(1, "score-1", "How was my agenda setting?"))

    deltas, finish = events[:-1], events[-1]
    assert deltas and all(isinstance(e, TextDeltaEvent) for e in deltas)
    assert "".join(e.text_delta for e in deltas) == REPLY
    assert isinstance(finish, FinishEvent)
    assert finish.category == "GATH"
    assert finish.category_label == "Gathers Information"
    assert finish.reason == "matched item 'agenda setting'"

    rows = [(r["role"], r["content"], r["category_detected"]) for r in graded_db.messages]
    assert rows == [
        ("user", "How was my agenda setting?", None),
        ("assistant", REPLY, "GATH"),
    ]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_learner_turn_reaches_model_once(service_factory):
    service, calls = service_factory()

    await collect(service.send_message(1, "score-1", "How was my agenda setting?"))
    await collect(service.send_message(1, "score-1", "What should I ask instead?"))

    assert len(calls) == 2
    second = user_prompts(calls[1]["messages"])
    assert second == ["How was my agenda setting?", "What should I ask instead?"]
    contents = [
        getattr(part, "content", None)
        for message in calls[1]["messages"]
        for part in message.parts
    ]
    assert REPLY in contents


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_score_id(fake_db, service_factory):
    service, calls = service_factory()

    events = await collect(service.send_message(1, "missing", "hello"))

    assert events == [ErrorEvent(error="Conversation grade not found", kind="not_found")]
    assert fake_db.messages == []
    assert calls == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_grade_not_ready(fake_db, settings, text_model):
    fake_db.add_grade("pending", 12, None)
    model, calls = text_model()
    service = DialogicFeedbackService(
        fake_db, settings=settings, coach=DialogicFeedbackCoach(model=model, temperature=0.7)
    )

    events = await collect(service.send_message(1, "pending", "hello"))

    assert len(events) == 1
    assert events[0].kind == "not_ready"
    assert "Please wait for scoring to complete" in events[0].error
    # The learner turn was already saved before the grade check failed
    assert [r["role"] for r in fake_db.messages] == ["user"]
    assert calls == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_user_insert_failure(graded_db, service_factory):
    service, calls = service_factory()
    graded_db.fail(SQL_INSERT_MESSAGE)

    events = await collect(service.send_message(1, "score-1", "hello"))

    assert events == [ErrorEvent(error="Failed to save user message", kind="upstream")]
    assert calls == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stream_failure_reports_error_and_saves_nothing(graded_db, settings, failing_model):
    coach = DialogicFeedbackCoach(model=failing_model, temperature=0.7)
    service = DialogicFeedbackService(graded_db, settings=settings, coach=coach)

    events = await collect(service.send_message(1, "score-1", "hello"))

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].kind == "upstream"
    assert events[0].error.startswith("Failed to generate response:")
    assert "completion service unavailable" in events[0].error
    assert [r["role"] for r in graded_db.messages] == ["user"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_malformed_quote_row_still_finishes(fake_db, settings, text_model):
    fake_db.add_grade("score-2", 21, {
        "selected_feedback_items": [
            {
                "mirs_name": "agenda setting",
                "score": 2,
                "quotes": [{"transcript_index": "n/a", "quote": "hi"}],
            }
        ]
    })
    model, calls = text_model()
    service = DialogicFeedbackService(
        fake_db, settings=settings, coach=DialogicFeedbackCoach(model=model, temperature=0.7)
    )

    events = await collect(service.send_message(1, "score-2", "hello"))

    assert isinstance(events[-1], FinishEvent)
    system_prompt = calls[0]["messages"][0].parts[0].content
    assert '[?] unknown: "hi"' in system_prompt


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unexpected_failure_before_streaming_is_one_error_event(
    graded_db, service_factory, monkeypatch
):
    service, calls = service_factory()

    async def broken_fetch(score_id):
        raise RuntimeError("grade row could not be decoded")

    monkeypatch.setattr(service.grades, "fetch_refinement_and_metrics", broken_fetch)

    events = await collect(service.send_message(1, "score-1", "hello"))

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].kind == "upstream"
    assert "grade row could not be decoded" in events[0].error
    assert calls == []


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cancel_discards_partial_reply(graded_db, settings):
    coach = ScriptedCoach(["one ", "two ", "three"])
    service = DialogicFeedbackService(graded_db, settings=settings, coach=coach)
    cancel = asyncio.Event()

    events = []
    async for event in service.send_message(1, "score-1", "hello", cancel_event=cancel):
        events.append(event)
        cancel.set()

    assert events == [TextDeltaEvent(text_delta="one ")]
    assert coach.closed
    assert [r["role"] for r in graded_db.messages] == ["user"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_uncancelled_scripted_stream_finishes(graded_db, settings):
    coach = ScriptedCoach(["one ", "two"])
    service = DialogicFeedbackService(graded_db, settings=settings, coach=coach)

    events = await collect(service.send_message(1, "score-1", "hello", cancel_event=asyncio.Event()))

    assert isinstance(events[-1], FinishEvent)
    assert graded_db.messages[-1]["content"] == "one two"


# ---------------------------------------------------------------------------
# Per-conversation category memory
# ---------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.asyncio
async def test_category_sticks_within_conversation(service_factory):
    service, _ = service_factory()

    first = await collect(service.send_message(1, "score-1", "Let's talk about rapport"))
    second = await collect(service.send_message(1, "score-1", "ok, and then?"))

    assert first[-1].category == "REL"
    assert second[-1].category == "REL"
    assert second[-1].reason == "kept previous due to ambiguity"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_category_memory_is_isolated_between_users(service_factory):
    service, _ = service_factory()

    await collect(service.send_message(1, "score-1", "Let's talk about rapport"))
    other = await collect(service.send_message(2, "score-1", "ok, and then?"))

    assert other[-1].category == "OPEN"
    assert other[-1].reason == "default to OPEN (no clear signal)"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_detector_seeded_from_stored_category(graded_db, service_factory):
    graded_db.messages.append({
        "id": 1,
        "user_id": 1,
        "conversation_grade_id": 11,
        "role": "assistant",
        "content": "Let's wrap up.",
        "category_detected": "CLOSE",
        "created_at": graded_db.base_time,
    })
    service, _ = service_factory()

    events = await collect(service.send_message(1, "score-1", "go on"))

    assert events[-1].category == "CLOSE"
    assert events[-1].reason == "kept previous due to ambiguity"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_stored_category_is_ignored(graded_db, service_factory):
    graded_db.messages.append({
        "id": 1,
        "user_id": 1,
        "conversation_grade_id": 11,
        "role": "assistant",
        "content": "Earlier reply.",
        "category_detected": "LEGACY",
        "created_at": graded_db.base_time,
    })
    service, _ = service_factory()

    events = await collect(service.send_message(1, "score-1", "go on"))

    assert events[-1].category == "OPEN"
    assert events[-1].reason == "default to OPEN (no clear signal)"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_forget_conversation_reseeds_from_history(service_factory):
    service, _ = service_factory()

    await collect(service.send_message(1, "score-1", "Let's talk about rapport"))
    service.forget_conversation(1, 11)
    assert (1, 11) not in service._detectors

    events = await collect(service.send_message(1, "score-1", "go on"))
    assert events[-1].category == "REL"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_evicted_detector_restores_sticky_category(graded_db, text_model):
    settings = FeedbackSettings(
        detector=DetectorSettings(use_llm_fallback=False, max_conversations=1)
    )
    model, _ = text_model()
    service = DialogicFeedbackService(
        graded_db, settings=settings, coach=DialogicFeedbackCoach(model=model, temperature=0.7)
    )

    await collect(service.send_message(1, "score-1", "Let's talk about rapport"))
    await collect(service.send_message(2, "score-1", "hello"))
    assert list(service._detectors) == [(2, 11)]

    events = await collect(service.send_message(1, "score-1", "go on"))

    assert events[-1].category == "REL"
    assert events[-1].reason == "kept previous due to ambiguity"
    assert list(service._detectors) == [(1, 11)]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_recently_used_detector_is_kept(graded_db, text_model):
    settings = FeedbackSettings(
        detector=DetectorSettings(use_llm_fallback=False, max_conversations=2)
    )
    model, _ = text_model()
    service = DialogicFeedbackService(
        graded_db, settings=settings, coach=DialogicFeedbackCoach(model=model, temperature=0.7)
    )

    await collect(service.send_message(1, "score-1", "hello"))
    await collect(service.send_message(2, "score-1", "hello"))
    await collect(service.send_message(1, "score-1", "hello again"))
    await collect(service.send_message(3, "score-1", "hello"))

    assert list(service._detectors) == [(1, 11), (3, 11)]


# ---------------------------------------------------------------------------
# History listing
# ---------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.asyncio
async def test_get_conversation_history(service_factory):
    service, _ = service_factory()
    await collect(service.send_message(1, "score-1", "How was my agenda setting?"))

    history = await service.get_conversation_history(1, "score-1")

    assert history.success
    assert [m.role for m in history.messages] == ["user", "assistant"]
    assert history.messages[1].category_detected == "GATH"

    empty = await service.get_conversation_history(2, "score-1")
    assert empty.messages == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_get_conversation_history_unknown_score(service_factory):
    service, _ = service_factory()
    with pytest.raises(NotFoundError):
        await service.get_conversation_history(1, "missing")
