"""
Test the intake dialogue state machine

Emergency precedence, retry ceiling, danger checks, red-flag and
follow-up loops, summary confirmation and collaborator fallbacks.
"""

import pytest
from conftest import FailingGenerator, ScriptedGenerator, StaticRetriever

from triage_backend.models.triage_models import ChatState, Stage
from triage_backend.services.chat_state_machine import (
    COMPLETED_RESPONSE,
    FALLBACK_PROMPTS,
    GENERIC_FOLLOWUP_QUESTIONS,
    OPENING_ACKNOWLEDGEMENT,
    OPENING_QUESTION,
    RESTART_PREFIX,
    SAFETY_NET,
    SELF_CARE_RESPONSE,
    STAGE_TABLE,
    ChatStateMachine,
    FallbackCategory,
    detect_emergency,
    parse_complaint,
    parse_number,
    parse_yes_no,
)
from triage_backend.services.rules_engine import RulesEngine


@pytest.fixture
def machine(settings):
    return ChatStateMachine(rules_engine=RulesEngine(), settings=settings)


def question(stage: Stage) -> str:
    return STAGE_TABLE[stage].question


# ========== Parsers ==========

@pytest.mark.parametrize("text,expected", [
    ("yes", True),
    ("Yeah, a little", True),
    ("no", False),
    ("Nope", False),
    ("I can", True),
    ("I have not", False),
    ("not really", False),
    ("I'm not sure", None),
    ("maybe", None),
    ("", None),
    ("purple", None),
])
def test_parse_yes_no(text, expected):
    assert parse_yes_no(text) is expected


@pytest.mark.parametrize("text,expected", [
    ("7", 7),
    ("about 8/10", 8),
    ("seven", 7),
    ("I'd say a five", 5),
    ("bad", None),
])
def test_parse_number(text, expected):
    assert parse_number(text) == expected


@pytest.mark.parametrize("text,expected", [
    ("I have chest pain", "chest pain"),
    ("my tummy hurts", "abdominal pain"),
    ("terrible migraine", "headache"),
    ("I'm short of breath", "shortness of breath"),
    ("I feel hot and shivery", "fever"),
    ("sore knee", None),
])
def test_parse_complaint(text, expected):
    assert parse_complaint(text) == expected


@pytest.mark.parametrize("text,expected", [
    ("I can't breathe", "can't breathe"),
    ("My lips are blue", "lips are blue"),
    ("I have a stiff neck and a fever", "stiff neck with fever"),
    ("I have a stiff neck", None),
    ("I have a fever", None),
    ("I'm not confused", None),
    ("there's no heavy bleeding", None),
    ("I have not collapsed", None),
    ("No, I collapsed at work", "collapsed"),
    ("no I'm confused and it's worse", "confused"),
    ("not better, I'm confused now", "confused"),
    ("I'm not dizzy but I collapsed", "collapsed"),
    ("I have a headache", None),
])
def test_detect_emergency(text, expected):
    assert detect_emergency(text) == expected


# ========== Emergency Precedence ==========

async def test_cant_breathe_at_opening_escalates(machine):
    result = await machine.advance("I can't breathe", [], ChatState(), Stage.OPENING)

    assert result.stage == Stage.ESCALATED
    assert result.is_escalation is True
    assert result.is_complete is True
    assert "999" in result.response or "A&E" in result.response
    assert result.state.complaint is None
    assert result.state.emergency_escalation is True


@pytest.mark.parametrize("stage", [
    Stage.OPENING,
    Stage.SEVERITY,
    Stage.DANGER_BLEEDING,
    Stage.RED_FLAGS,
    Stage.CONTEXT_MEDICATIONS,
    Stage.COLLECT_NAME,
    Stage.SUMMARY,
])
async def test_emergency_keyword_escalates_at_any_stage(machine, stage):
    result = await machine.advance("my husband collapsed", [], ChatState(complaint="headache"), stage)

    assert result.stage == Stage.ESCALATED
    assert result.is_complete is True


async def test_emergency_keyword_beats_retry_ceiling(machine):
    result = await machine.advance("having a seizure", [], ChatState(), Stage.SEVERITY, retry_count=3)

    assert result.stage == Stage.ESCALATED


@pytest.mark.parametrize("text", ["No, I collapsed at work", "no I'm confused and it's worse"])
async def test_leading_no_does_not_hide_an_emergency(machine, text):
    result = await machine.advance(text, [], ChatState(complaint="headache"), Stage.TIME_TREND)

    assert result.stage == Stage.ESCALATED
    assert result.is_escalation is True


async def test_terminal_stage_returns_completed_message(machine):
    result = await machine.advance("hello?", [], ChatState(), Stage.COMPLETE)

    assert result.stage == Stage.COMPLETE
    assert result.response == COMPLETED_RESPONSE
    assert result.is_complete is True


# ========== Retry Ceiling ==========

async def test_fourth_unparseable_answer_forces_advance(machine):
    state = ChatState(complaint="headache")
    retry_count = 0
    responses = []
    for _ in range(3):
        result = await machine.advance("dunno", [], state, Stage.SEVERITY, retry_count)
        assert result.stage == Stage.SEVERITY
        responses.append(result.response)
        retry_count = result.retry_count

    assert retry_count == 3
    assert responses == list(FALLBACK_PROMPTS[FallbackCategory.SEVERITY])

    result = await machine.advance("dunno", [], state, Stage.SEVERITY, retry_count)

    assert result.stage == Stage.DANGER_BREATHING
    assert result.retry_count == 0
    assert result.response == question(Stage.DANGER_BREATHING)
    assert result.state.severity is None
    assert result.state.skipped_stages == [Stage.SEVERITY]


async def test_successful_answer_resets_retry_count(machine):
    result = await machine.advance("6", [], ChatState(), Stage.SEVERITY, retry_count=2)

    assert result.stage == Stage.DANGER_BREATHING
    assert result.retry_count == 0
    assert result.state.severity == 6


async def test_name_is_never_skipped(machine):
    result = await machine.advance("x", [], ChatState(), Stage.COLLECT_NAME, retry_count=5)

    assert result.stage == Stage.COLLECT_NAME
    assert result.retry_count == 6
    assert result.response == FALLBACK_PROMPTS[FallbackCategory.NAME][0]


async def test_forced_advance_in_red_flags_skips_only_the_current_question(machine):
    result = await machine.advance("dunno", [], ChatState(complaint="headache"), Stage.RED_FLAGS, retry_count=3)

    assert result.stage == Stage.RED_FLAGS
    assert result.retry_count == 0
    assert result.state.thunderclap is None
    assert result.state.skipped_fields == ["thunderclap"]
    assert result.state.skipped_stages == [Stage.RED_FLAGS]
    assert result.response == "Do you have a stiff neck or does it hurt to bend your head forward?"


async def test_escalating_red_flag_is_still_asked_after_a_skip(machine):
    state = ChatState(
        complaint="headache", thunderclap=False, neck_stiffness=False, skipped_fields=["visual_disturbance"],
    )

    result = await machine.advance("yes", [], state, Stage.RED_FLAGS)

    assert result.stage == Stage.ESCALATED
    assert result.state.neurological_symptoms is True


async def test_skipping_the_last_red_flag_leaves_the_loop(machine):
    state = ChatState(
        complaint="headache",
        thunderclap=False,
        neck_stiffness=False,
        visual_disturbance=False,
        neurological_symptoms=False,
    )

    result = await machine.advance("dunno", [], state, Stage.RED_FLAGS, retry_count=3)

    assert result.stage == Stage.CONTEXT_CONDITIONS
    assert result.state.skipped_fields == ["photophobia"]


async def test_out_of_range_severity_is_unparseable(machine):
    result = await machine.advance("15", [], ChatState(), Stage.SEVERITY)

    assert result.stage == Stage.SEVERITY
    assert result.retry_count == 1


# ========== Opening and Early Stages ==========

async def test_recognised_complaint_advances(machine):
    result = await machine.advance("I've got chest pain", [], ChatState(), Stage.OPENING)

    assert result.stage == Stage.LOCALISATION
    assert result.state.complaint == "chest pain"
    assert result.response == question(Stage.LOCALISATION)


async def test_unrecognised_long_description_is_accepted(machine):
    result = await machine.advance("I've been feeling dizzy for days", [], ChatState(), Stage.OPENING)

    assert result.stage == Stage.LOCALISATION
    assert result.state.complaint is None
    assert result.state.opening_description == "I've been feeling dizzy for days"
    assert result.response.startswith(OPENING_ACKNOWLEDGEMENT)


async def test_short_unrecognised_opening_retries(machine):
    result = await machine.advance("meh", [], ChatState(), Stage.OPENING)

    assert result.stage == Stage.OPENING
    assert result.response == FALLBACK_PROMPTS[FallbackCategory.OPENING][0]


async def test_location_can_identify_complaint(machine):
    state = ChatState(opening_description="I've been feeling rough for days")

    result = await machine.advance("my stomach", [], state, Stage.LOCALISATION)

    assert result.state.location == "my stomach"
    assert result.state.complaint == "abdominal pain"


async def test_worsening_trend_is_flagged(machine):
    result = await machine.advance("Getting worse", [], ChatState(), Stage.TIME_TREND)

    assert result.state.time_trend == "getting worse"
    assert result.state.getting_worse is True


# ========== Danger Checks ==========

@pytest.mark.parametrize("stage,field", [
    (Stage.DANGER_BREATHING, "trouble_breathing"),
    (Stage.DANGER_COLLAPSE, "collapse"),
    (Stage.DANGER_BLEEDING, "severe_bleeding"),
    (Stage.DANGER_CONFUSION, "confusion"),
])
async def test_yes_to_danger_check_escalates(machine, stage, field):
    result = await machine.advance("yes", [], ChatState(complaint="headache"), stage)

    assert result.stage == Stage.ESCALATED
    assert getattr(result.state, field) is True


async def test_negated_answer_does_not_escalate(machine):
    result = await machine.advance("I have not collapsed", [], ChatState(), Stage.DANGER_COLLAPSE)

    assert result.stage == Stage.DANGER_SEVERE_PAIN
    assert result.state.collapse is False


async def test_severe_pain_escalates_only_at_high_severity(machine):
    moderate = await machine.advance("yes", [], ChatState(severity=5), Stage.DANGER_SEVERE_PAIN)
    high = await machine.advance("yes", [], ChatState(severity=8), Stage.DANGER_SEVERE_PAIN)

    assert moderate.stage == Stage.DANGER_BLEEDING
    assert moderate.state.severe_pain is True
    assert high.stage == Stage.ESCALATED


# ========== Red Flag Loop ==========

async def test_red_flag_questions_follow_danger_checks(machine):
    state = ChatState(complaint="headache")

    first = await machine.advance("no", [], state, Stage.DANGER_CONFUSION)
    second = await machine.advance("no", [], first.state, first.stage)

    assert first.stage == Stage.RED_FLAGS
    assert first.response == "Did this headache come on suddenly like a thunderclap?"
    assert second.stage == Stage.RED_FLAGS
    assert second.state.thunderclap is False
    assert second.response == "Do you have a stiff neck or does it hurt to bend your head forward?"


async def test_escalating_red_flag(machine):
    result = await machine.advance("yes", [], ChatState(complaint="headache"), Stage.RED_FLAGS)

    assert result.stage == Stage.ESCALATED
    assert result.state.thunderclap is True


async def test_non_escalating_red_flag_yes_continues(machine):
    result = await machine.advance("yes", [], ChatState(complaint="chest pain"), Stage.RED_FLAGS)

    assert result.stage == Stage.RED_FLAGS
    assert result.state.radiating_pain is True
    assert result.response == "Are you sweating or feeling clammy?"


async def test_unrecognised_complaint_skips_red_flags_and_followups(machine):
    result = await machine.advance("no", [], ChatState(), Stage.DANGER_CONFUSION)

    assert result.stage == Stage.CONTEXT_CONDITIONS
    assert result.response == question(Stage.CONTEXT_CONDITIONS)


# ========== Guidance Follow-ups ==========

async def test_followup_loop_is_bounded_to_three(settings):
    machine = ChatStateMachine(
        retriever=StaticRetriever(context="Migraine guidance text"),
        rules_engine=RulesEngine(),
        settings=settings,
    )

    result = await machine.advance("no", [], ChatState(), Stage.DANGER_CONFUSION)
    assert result.stage == Stage.RAG_FOLLOWUP
    assert result.response == GENERIC_FOLLOWUP_QUESTIONS[0]

    for answer, expected in [("once before", GENERIC_FOLLOWUP_QUESTIONS[1]),
                             ("mornings", GENERIC_FOLLOWUP_QUESTIONS[2])]:
        result = await machine.advance(answer, [], result.state, result.stage)
        assert result.stage == Stage.RAG_FOLLOWUP
        assert result.response == expected

    result = await machine.advance("nothing else", [], result.state, result.stage)

    assert result.stage == Stage.CONTEXT_CONDITIONS
    assert result.state.rag_questions_asked == 3
    assert result.state.rag_answers == ["once before", "mornings", "nothing else"]


async def test_followup_uses_generated_question(settings):
    generator = ScriptedGenerator(text="  Does bright light make it worse?  ")
    machine = ChatStateMachine(
        generator=generator,
        retriever=StaticRetriever(context="Migraine guidance"),
        rules_engine=RulesEngine(),
        settings=settings,
    )

    result = await machine.advance("no", [], ChatState(), Stage.DANGER_CONFUSION)

    assert result.stage == Stage.RAG_FOLLOWUP
    assert result.response == "Does bright light make it worse?"
    assert generator.calls[0]["max_tokens"] == settings.followup_max_tokens


async def test_followup_generation_failure_uses_generic_question(settings):
    machine = ChatStateMachine(
        generator=FailingGenerator(),
        retriever=StaticRetriever(context="Migraine guidance"),
        rules_engine=RulesEngine(),
        settings=settings,
    )

    result = await machine.advance("no", [], ChatState(), Stage.DANGER_CONFUSION)

    assert result.response == GENERIC_FOLLOWUP_QUESTIONS[0]


@pytest.mark.parametrize("retriever", [StaticRetriever(context=""), StaticRetriever(fail=True)])
async def test_no_guidance_skips_followups(settings, retriever):
    machine = ChatStateMachine(retriever=retriever, rules_engine=RulesEngine(), settings=settings)

    result = await machine.advance("no", [], ChatState(), Stage.DANGER_CONFUSION)

    assert result.stage == Stage.CONTEXT_CONDITIONS


# ========== Context and Function ==========

async def test_empty_context_answer_gets_default(machine):
    conditions = await machine.advance("   ", [], ChatState(), Stage.CONTEXT_CONDITIONS)
    medications = await machine.advance("", [], ChatState(), Stage.CONTEXT_MEDICATIONS)

    assert conditions.state.medical_history == "None reported"
    assert medications.state.medications == "None"


async def test_functional_questions_never_retry(machine):
    eat = await machine.advance("only soup", [], ChatState(), Stage.FUNCTIONAL_EAT)
    activities = await machine.advance("hard to say", [], ChatState(), Stage.FUNCTIONAL_ACTIVITIES)

    assert eat.stage == Stage.FUNCTIONAL_MOVE
    assert eat.state.can_eat_drink is True
    assert activities.stage == Stage.COLLECT_NAME
    assert activities.state.stopping_activities is False


# ========== Name and Summary ==========

async def test_name_leads_to_summary_confirmation(machine):
    state = ChatState(complaint="headache", location="forehead", severity=4, medications="ibuprofen")

    result = await machine.advance("Jane Doe", [], state, Stage.COLLECT_NAME)

    assert result.stage == Stage.SUMMARY
    assert result.state.patient_name == "Jane Doe"
    assert "- Name: Jane Doe" in result.response
    assert "- Severity: 4/10" in result.response
    assert "- Medications: ibuprofen" in result.response
    assert result.response.endswith("Is this correct? (Yes/No)")


async def test_confirmed_summary_completes(machine):
    state = ChatState(complaint="headache", age=22, severity=3, patient_name="Jane Doe")

    result = await machine.advance("yes", [], state, Stage.SUMMARY)

    assert result.stage == Stage.COMPLETE
    assert result.is_complete is True
    assert result.is_escalation is False
    assert result.response.startswith(SELF_CARE_RESPONSE)
    assert SAFETY_NET in result.response


async def test_red_band_final_message_points_to_emergency_care(machine):
    state = ChatState(complaint="headache", severity=9, patient_name="Jane Doe")

    result = await machine.advance("yes", [], state, Stage.SUMMARY)

    assert result.stage == Stage.COMPLETE
    assert "999" in result.response


@pytest.mark.parametrize("state,opening", [
    (ChatState(complaint="headache", severity=7), "This needs to be assessed today"),
    (ChatState(complaint="headache", severity=2), SELF_CARE_RESPONSE),
    (ChatState(complaint="sore knee", age=40, severity=5), SELF_CARE_RESPONSE),
])
def test_final_message_follows_band(machine, state, opening):
    assert machine.final_response(state).startswith(opening)


async def test_rejected_summary_restarts(machine):
    state = ChatState(complaint="headache", severity=3, patient_name="Jane Doe")

    result = await machine.advance("no", [], state, Stage.SUMMARY)

    assert result.stage == Stage.OPENING
    assert result.state == ChatState()
    assert result.response == RESTART_PREFIX + OPENING_QUESTION


async def test_unclear_summary_answer_retries(machine):
    result = await machine.advance("hmm", [], ChatState(), Stage.SUMMARY, retry_count=4)

    assert result.stage == Stage.SUMMARY
    assert result.response == FALLBACK_PROMPTS[FallbackCategory.SUMMARY][0]


# ========== Question Phrasing ==========

async def test_generator_phrases_next_question(settings):
    generator = ScriptedGenerator(text="Thanks for telling me. Where exactly is the pain?")
    machine = ChatStateMachine(generator=generator, rules_engine=RulesEngine(), settings=settings)

    result = await machine.advance("chest pain", [], ChatState(), Stage.OPENING)

    assert result.response == "Thanks for telling me. Where exactly is the pain?"
    call = generator.calls[0]
    assert call["json_mode"] is False
    assert question(Stage.LOCALISATION) in call["system_prompt"]
    assert call["messages"][-1].content == "chest pain"


async def test_phrasing_failure_falls_back_to_fixed_question(settings):
    machine = ChatStateMachine(generator=FailingGenerator(), rules_engine=RulesEngine(), settings=settings)

    result = await machine.advance("chest pain", [], ChatState(), Stage.OPENING)

    assert result.stage == Stage.LOCALISATION
    assert result.response == question(Stage.LOCALISATION)
