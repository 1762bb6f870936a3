from __future__ import annotations

import json

from sqlalchemy.exc import OperationalError

from ambulance_dispatch.schemas.classification import Verdict
from ambulance_dispatch.services.classifier import KeywordResponseClassifier
from ambulance_dispatch.services.transcripts import CallTranscriptRetriever, extract_transcript


def _retriever(voice, sleeps, **overrides) -> CallTranscriptRetriever:
    options = {"max_wait_seconds": 10, "poll_interval_seconds": 2}
    options.update(overrides)
    return CallTranscriptRetriever(
        voice_client=voice,
        classifier=KeywordResponseClassifier(),
        sleep=sleeps.append,
        **options,
    )


def test_plain_string_is_returned_trimmed() -> None:
    assert extract_transcript("  yes I can come  ") == "yes I can come"


def test_driver_response_wins_over_other_fields() -> None:
    payload = {"summary": "driver declined", "driver_response": "haan aa raha hoon"}
    assert extract_transcript(payload) == "haan aa raha hoon"


def test_message_list_keeps_caller_turns_only() -> None:
    payload = {
        "messages": [
            {"role": "assistant", "content": "Can you take a pickup at MG Road?"},
            {"role": "user", "content": "Yes, on my way"},
            {"role": "agent", "content": "Thank you"},
            {"role": "user", "content": "  "},
        ]
    }
    assert extract_transcript(payload) == "user: Yes, on my way"


def test_json_encoded_conversation_data() -> None:
    conversation = json.dumps([{"speaker": "bot", "message": "Hello"}, {"speaker": "user", "message": "no"}])
    assert extract_transcript({"conversation_data": conversation}) == "user: no"


def test_unparseable_json_falls_back_to_raw_text() -> None:
    assert extract_transcript("{not json") == "{not json"


def test_summary_is_last_resort() -> None:
    payload = {"transcript": "", "extracted_data": {}, "summary": "Driver agreed to come"}
    assert extract_transcript(payload) == "Driver agreed to come"


def test_unknown_shapes_give_empty_text() -> None:
    assert extract_transcript(None) == ""
    assert extract_transcript({"unrelated": "value"}) == ""
    assert extract_transcript(42) == ""


def test_await_completion_returns_classified_transcript(voice, sleeps) -> None:
    voice.finish("exec-9", "Yes I can come")

    completion = _retriever(voice, sleeps).await_completion("exec-9")

    assert completion.completed is True
    assert completion.transcript == "Yes I can come"
    assert completion.classification.verdict is Verdict.ACCEPTED
    assert sleeps == []


def test_await_completion_times_out_within_budget(voice, sleeps) -> None:
    completion = _retriever(voice, sleeps).await_completion("exec-missing")

    assert completion.completed is False
    assert completion.abandoned is False
    assert sleeps
    assert sum(sleeps) <= 10 + 2


def test_call_overrides_budget(voice, sleeps) -> None:
    completion = _retriever(voice, sleeps).await_completion("exec-missing", max_wait_seconds=4, poll_interval_seconds=1)

    assert completion.completed is False
    assert sum(sleeps) <= 4 + 1


def test_transient_fetch_errors_are_retried(voice, sleeps) -> None:
    voice.finish("exec-3", "no, too far")
    voice.fetch_errors = 2

    completion = _retriever(voice, sleeps).await_completion("exec-3")

    assert completion.completed is True
    assert completion.classification.verdict is Verdict.DECLINED
    assert sleeps == [2, 2]


def test_failed_call_completes_with_empty_transcript(voice, sleeps) -> None:
    voice.finish("exec-4", "voicemail greeting", status="no-answer")

    completion = _retriever(voice, sleeps).await_completion("exec-4")

    assert completion.completed is True
    assert completion.transcript == ""
    assert completion.classification.verdict is Verdict.NO_RESPONSE


def test_should_stop_abandons_polling(voice, sleeps) -> None:
    completion = _retriever(voice, sleeps).await_completion("exec-5", should_stop=lambda: True)

    assert completion.abandoned is True
    assert completion.completed is False
    assert sleeps == []


def test_store_error_while_checking_state_is_retried(voice, sleeps) -> None:
    voice.finish("exec-6", "yes I can come")
    checks: list[int] = []

    def locked_once() -> bool:
        checks.append(1)
        if len(checks) == 1:
            raise OperationalError("SELECT status FROM driver_queue_entries", {}, Exception("database is locked"))
        return False

    completion = _retriever(voice, sleeps).await_completion("exec-6", should_stop=locked_once)

    assert completion.completed is True
    assert completion.classification.verdict is Verdict.ACCEPTED
    assert len(checks) == 2
    assert sleeps == [2]
