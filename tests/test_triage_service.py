"""
Test session orchestration

Session lifecycle, submission on completion and escalation, divergence
recording, metrics and the knowledge base.
"""

import pytest
from conftest import HEADACHE_CONVERSATION, ScriptedGenerator, make_service

from triage_backend.database.storage import InMemoryStorage
from triage_backend.models.triage_models import (
    RiskBand,
    SessionStatus,
    Stage,
    TriageAnswers,
)
from triage_backend.services.chat_state_machine import EMERGENCY_RESPONSE, OPENING_QUESTION
from triage_backend.services.rules_engine import EMERGENCY_ESCALATION_FLAG
from triage_backend.services.triage_service import (
    SUMMARY_NOT_AVAILABLE,
    SessionInactiveError,
    SessionNotFoundError,
)

CHEST_PAIN_OPENING = ["I have chest pain", "centre of chest", "this morning", "worse", "7"]


class BrokenDivergenceStorage(InMemoryStorage):
    """Storage whose divergence table is unavailable."""

    async def record_divergence(self, event):
        raise RuntimeError("divergence table unavailable")


async def run_conversation(service, texts):
    session = await service.start_session()
    result = None
    for text in texts:
        session, result = await service.process_message(session.id, text)
    return session, result


# ========== Session Lifecycle ==========

async def test_start_session_opens_with_question(service, storage):
    session = await service.start_session()

    assert session.stage == Stage.OPENING
    assert session.status == SessionStatus.ACTIVE
    assert [m.role for m in session.messages] == ["assistant"]
    assert session.messages[0].content == OPENING_QUESTION
    assert await storage.get_session(session.id) is not None


async def test_turn_appends_both_messages(service):
    session, result = await run_conversation(service, ["I have a headache"])

    assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]
    assert session.messages[1].content == "I have a headache"
    assert session.messages[2].content == result.response
    assert session.stage == Stage.LOCALISATION
    assert session.state.complaint == "headache"


async def test_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        await service.process_message("missing", "hello")


async def test_escalation_submits_red_and_closes_session(service, storage):
    session, result = await run_conversation(service, ["I can't breathe"])

    assert result.is_escalation
    assert result.response == EMERGENCY_RESPONSE
    assert session.status == SessionStatus.ESCALATED
    assert session.handoff.severity.rules_engine_category == "RED"

    submission = await storage.get_submission(session.submission_id)
    assert submission.risk_band == RiskBand.RED
    assert submission.red_flags[0] == EMERGENCY_ESCALATION_FLAG
    assert submission.session_id == session.id

    with pytest.raises(SessionInactiveError):
        await service.process_message(session.id, "hello?")


async def test_full_conversation_completes_green(service, storage):
    session, result = await run_conversation(service, HEADACHE_CONVERSATION)

    assert result.is_complete
    assert not result.is_escalation
    assert session.status == SessionStatus.COMPLETED
    assert session.state.patient_name == "Alex Smith"

    submission = await storage.get_submission(session.submission_id)
    assert submission.risk_band == RiskBand.GREEN
    assert submission.red_flags == []
    assert submission.complaint == "headache"
    assert submission.answers["patient_name"] == "Alex Smith"
    assert submission.rules_version == service.settings.rules_version
    assert session.rules_severity == "GREEN"


# ========== Finish ==========

async def test_finish_mid_conversation(service, storage):
    session, _ = await run_conversation(service, CHEST_PAIN_OPENING)

    finished = await service.finish_session(session.id)

    assert finished.risk_band == RiskBand.AMBER
    assert finished.handoff.presenting_complaint.severity == "7/10"
    assert finished.recommendations == []
    stored = await storage.get_session(session.id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.submission_id == finished.submission_id


async def test_finish_is_idempotent(service, storage):
    session, _ = await run_conversation(service, ["I have a headache", "front of my head"])

    first = await service.finish_session(session.id)
    second = await service.finish_session(session.id)

    assert first.submission_id == second.submission_id
    assert first.handoff == second.handoff
    assert await storage.count_submissions() == 1


async def test_finish_after_completion_does_not_resubmit(service, storage):
    session, _ = await run_conversation(service, HEADACHE_CONVERSATION)

    finished = await service.finish_session(session.id)

    assert finished.submission_id == session.submission_id
    assert finished.risk_band == RiskBand.GREEN
    assert len(finished.recommendations) == 5
    assert await storage.count_submissions() == 1


async def test_finish_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        await service.finish_session("missing")


# ========== Divergences ==========

async def test_divergence_is_recorded_and_reported(storage, settings):
    generator = ScriptedGenerator(extraction={"facts": [
        {"key": "severity_score", "value": 9, "confidence": 95},
    ]})
    service = make_service(storage, settings, generator=generator)
    session, _ = await run_conversation(service, CHEST_PAIN_OPENING)

    finished = await service.finish_session(session.id)

    assert await storage.divergence_metrics() == (1, 1)
    # handoff narrative was not scripted, so the minimal handoff is used
    assert finished.handoff.severity.ai_confidence == "LOW"
    assert finished.risk_band == RiskBand.AMBER

    metrics = await service.get_metrics()
    assert metrics.hallucination_proxy.extraction_divergence_count == 1
    assert metrics.hallucination_proxy.sessions_with_at_least_one_divergence == 1
    assert metrics.hallucination_proxy.hallucination_rate_percentage == 100


async def test_divergence_storage_failure_does_not_block_submission(settings):
    storage = BrokenDivergenceStorage()
    generator = ScriptedGenerator(extraction={"facts": [
        {"key": "severity_score", "value": 9, "confidence": 95},
    ]})
    service = make_service(storage, settings, generator=generator)
    session, _ = await run_conversation(service, CHEST_PAIN_OPENING)

    finished = await service.finish_session(session.id)

    assert await storage.get_submission(finished.submission_id) is not None


# ========== Handoff and Summary ==========

async def test_summary_not_available_before_handoff(service):
    session = await service.start_session()

    assert await service.get_summary(session.id) == SUMMARY_NOT_AVAILABLE


async def test_handoff_on_demand_is_cached(service, storage):
    session, _ = await run_conversation(service, CHEST_PAIN_OPENING)

    first = await service.get_handoff(session.id)
    second = await service.get_handoff(session.id)

    assert first == second
    stored = await storage.get_session(session.id)
    assert stored.handoff == first
    assert stored.status == SessionStatus.ACTIVE
    assert await service.get_summary(session.id) == first.summary_for_reception


async def test_handoff_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        await service.get_handoff("missing")


# ========== Structured Submissions ==========

async def test_submit_answers_red(service, storage):
    submission = await service.submit_answers(
        TriageAnswers(complaint="fever", age=20, severity=0, confusion=True)
    )

    assert submission.risk_band == RiskBand.RED
    assert submission.red_flags == ["New confusion"]
    assert submission.session_id is None
    assert await service.get_submission(submission.id) == submission


async def test_submissions_listed_newest_first(service):
    first = await service.submit_answers(TriageAnswers(complaint="headache", age=30, severity=2))
    second = await service.submit_answers(TriageAnswers(complaint="headache", age=30, severity=7))

    listed = await service.list_submissions()

    assert {s.id for s in listed} == {first.id, second.id}
    assert listed[0].created_at >= listed[1].created_at


# ========== Metrics ==========

async def test_empty_metrics_are_zero(service):
    metrics = await service.get_metrics()

    assert metrics.chat_completion.total_sessions == 0
    assert metrics.chat_completion.completion_rate_percentage == 0
    assert metrics.hallucination_proxy.extraction_divergence_count == 0
    assert metrics.hallucination_proxy.hallucination_rate_percentage == 0


async def test_completion_metrics(service):
    await run_conversation(service, HEADACHE_CONVERSATION)
    await run_conversation(service, ["I can't breathe"])
    await service.start_session()

    completion = (await service.get_metrics()).chat_completion

    assert completion.total_sessions == 3
    assert completion.completed == 1
    assert completion.escalated == 1
    assert completion.active == 1
    assert completion.completion_rate_percentage == 33


# ========== Knowledge Base ==========

async def test_ingest_document_chunks_on_blank_lines(service, storage):
    document = await service.ingest_document(
        "Headache guidance", "Red flags for headache.\n\nSafety netting advice.\n\n\nReferral routes."
    )

    assert document.chunk_count == 3
    assert document.source == "Upload"
    assert await service.list_documents() == [document]
    chunks = await storage.list_chunks()
    assert [c.chunk_text for c in chunks] == [
        "Red flags for headache.", "Safety netting advice.", "Referral routes."
    ]
    assert all(c.document_id == document.id for c in chunks)


# ========== Session Locks ==========

async def test_unknown_sessions_do_not_allocate_locks(service):
    for i in range(50):
        with pytest.raises(SessionNotFoundError):
            await service.get_handoff(f"missing-{i}")
        with pytest.raises(SessionNotFoundError):
            await service.process_message(f"missing-{i}", "hello")
        with pytest.raises(SessionNotFoundError):
            await service.finish_session(f"missing-{i}")

    assert len(service._locks) == 0


async def test_session_lock_released_after_turns(service):
    session, _ = await run_conversation(service, ["I have a headache", "front of my head"])
    await service.finish_session(session.id)

    assert session.id not in service._locks
