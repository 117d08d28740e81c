"""
Guided intake dialogue state machine.

Walks the patient through a fixed sequence of questions (NHS 111 style):
presenting complaint, location, timing, severity, five immediate danger
checks, complaint-specific red-flag questions, up to three guidance-led
follow-ups, context, function, name and a confirmation summary.

Every stage is an entry in an explicit table holding its fixed question,
its successor, its fallback-prompt category and its answer parser. An
emergency keyword scan runs before any stage logic on every turn and ends
the conversation with emergency instructions.

The two collaborators (question phrasing and guidance retrieval) are
optional and fallible; without them the dialogue uses fixed text.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    ChatMessage,
    ChatState,
    RiskBand,
    Stage,
    TurnResult,
)
from triage_backend.services.llm_client import GenerationError
from triage_backend.services.rules_engine import RulesEngine, get_rules_engine

logger = get_logger(__name__)


MAX_RETRIES = 3
MAX_FOLLOWUP_QUESTIONS = 3
MIN_NAME_LENGTH = 2
HISTORY_WINDOW = 10

COMPLAINTS = ("chest pain", "shortness of breath", "abdominal pain", "headache", "fever")


# ============================================================================
# Fixed Patient-Facing Text
# ============================================================================

EMERGENCY_RESPONSE = (
    "Based on what you've told me, this could be urgent. You need emergency medical help now. "
    "Please call 999 or go to A&E immediately."
)

SAFETY_NET = (
    "\n\nIf your symptoms suddenly get worse, or you develop new symptoms like severe pain, "
    "breathlessness, collapse, or bleeding, seek urgent medical help immediately."
)

RECORDED_NOTE = "\n\nYour assessment has been recorded and a summary is now available for review."

COMPLETED_RESPONSE = "Thank you for completing the assessment." + SAFETY_NET

RESTART_PREFIX = "No problem, let's start again. "

OPENING_ACKNOWLEDGEMENT = "Thank you for explaining. "

FINAL_RESPONSES = {
    RiskBand.RED: (
        "Based on your answers, this could be serious and needs urgent medical attention. "
        "Please call 999 or go to A&E now."
    ),
    RiskBand.AMBER: (
        "This needs to be assessed today. I recommend contacting NHS 111 or attending "
        "an urgent care centre today."
    ),
}
SELF_CARE_RESPONSE = (
    "This sounds like something that can often be managed at home. "
    "I'll share some self-care advice with your assessment."
)

GENERIC_FOLLOWUP_QUESTIONS = (
    "Based on your symptoms, have you experienced any similar episodes in the past?",
    "Have you noticed if your symptoms are worse at any particular time of day?",
    "Is there anything else that you think might be relevant to your symptoms that we haven't discussed?",
)

PATIENT_FACING_SYSTEM_PROMPT = """You are a medical triage chat assistant talking directly to a patient. Your job is to collect symptom information clearly.

You MUST NOT:
- suggest what the condition "could be"
- list diagnoses or differentials
- explain clinical reasoning in detail
- show citations or document references
- mention internal risk bands, rules, or "red flags"

You MAY:
- briefly acknowledge what the patient said
- explain in one sentence why you are asking

Style:
- Keep it short, warm and in everyday language.
- Ask exactly one question per message.
- End your message with the question."""


# ============================================================================
# Emergency Detection
# ============================================================================

EMERGENCY_PHRASES = (
    "severe chest pain",
    "crushing chest pain",
    "severe breathing",
    "can't breathe",
    "cant breathe",
    "cannot breathe",
    "can not breathe",
    "struggling to breathe",
    "blue lips",
    "lips are blue",
    "collapsed",
    "fainted",
    "fainting",
    "passed out",
    "confusion",
    "confused",
    "seizure",
    "worst headache",
    "purple rash",
    "non-blanching rash",
    "rash that doesn't fade",
    "heavy bleeding",
    "bleeding heavily",
    "unconscious",
    "not responding",
    "unresponsive",
)
NECK_STIFFNESS_PHRASES = ("stiff neck", "neck stiffness", "neck is stiff")
FEVER_PHRASES = ("fever", "high temperature")

NEGATION_TOKENS = frozenset({
    "no", "not", "never", "without", "nor", "denies",
    "haven't", "hasn't", "hadn't", "didn't", "don't", "doesn't",
    "isn't", "wasn't", "aren't", "weren't",
})
NEGATION_WINDOW = 2

# Punctuation and conjunctions end the clause a negation can reach into
CLAUSE_BREAK = re.compile(r"[,.;:!?]|\b(?:but|and)\b")


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'").replace("‘", "'")


def _tokens(text: str) -> list[str]:
    return re.findall(r"[a-z0-9']+", _normalize(text))


def _is_negated(text: str, start: int) -> bool:
    """
    Whether a negation in the same clause directly precedes ``start``.

    The first word of the answer never counts: "no, I collapsed" and
    "no I'm confused" answer the previous question, they do not deny the
    phrase that follows.
    """
    before = text[:start]
    breaks = list(CLAUSE_BREAK.finditer(before))
    clause_start = breaks[-1].end() if breaks else 0
    tokens = re.findall(r"[a-z0-9']+", before[clause_start:])
    window = tokens[-NEGATION_WINDOW:]
    if clause_start == 0 and len(tokens) <= NEGATION_WINDOW:
        window = tokens[1:]
    return bool(NEGATION_TOKENS.intersection(window))


def _find_unnegated(text: str, phrases: tuple[str, ...]) -> str | None:
    """First phrase present in ``text`` that is not negated within its clause."""
    for phrase in phrases:
        for match in re.finditer(rf"\b{re.escape(phrase)}\b", text):
            if not _is_negated(text, match.start()):
                return phrase
    return None


def detect_emergency(text: str) -> str | None:
    """
    Scan raw patient input for emergency warning signs.

    Returns:
        The matched phrase, or ``None``. Stiff neck only counts together
        with fever.
    """
    normalized = _normalize(text)
    phrase = _find_unnegated(normalized, EMERGENCY_PHRASES)
    if phrase:
        return phrase
    if _find_unnegated(normalized, NECK_STIFFNESS_PHRASES) and _find_unnegated(normalized, FEVER_PHRASES):
        return "stiff neck with fever"
    return None


# ============================================================================
# Answer Parsers
# ============================================================================

YES_TOKENS = frozenset({
    "yes", "y", "yeah", "yep", "yup", "yea", "true", "correct", "sure",
    "ok", "okay", "definitely", "absolutely", "affirmative",
})
NO_TOKENS = frozenset({
    "no", "n", "nope", "nah", "false", "negative", "none", "not", "never",
    "can't", "cannot", "cant", "don't", "dont", "didn't", "haven't", "isn't",
    "wasn't", "aren't", "doesn't", "won't",
})
YES_PHRASES = ("i can", "i am", "i do", "i have", "i did", "i was")
UNSURE_PHRASES = ("not sure", "don't know", "dont know", "no idea", "unsure", "maybe", "perhaps")

NUMBER_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}


def parse_yes_no(text: str) -> bool | None:
    """
    Interpret a yes/no answer.

    A leading yes/no word decides. Otherwise any negation word means no,
    and any affirmative word or phrase means yes. Expressions of
    uncertainty are unparseable.
    """
    normalized = _normalize(text).strip()
    tokens = _tokens(normalized)
    if not tokens:
        return None
    if any(re.search(rf"\b{re.escape(p)}\b", normalized) for p in UNSURE_PHRASES):
        return None
    if tokens[0] in YES_TOKENS:
        return True
    if tokens[0] in NO_TOKENS:
        return False
    if NO_TOKENS.intersection(tokens):
        return False
    if YES_TOKENS.intersection(tokens):
        return True
    if any(re.search(rf"\b{re.escape(p)}\b", normalized) for p in YES_PHRASES):
        return True
    return None


def parse_number(text: str) -> int | None:
    """First run of digits, or a spelled-out number from zero to ten."""
    match = re.search(r"\d+", text)
    if match:
        return int(match.group(0))
    for token in _tokens(text):
        if token in NUMBER_WORDS:
            return NUMBER_WORDS[token]
    return None


_COMPLAINT_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("chest pain", r"\b(chest|heart)\b"),
    ("shortness of breath", r"\b(breath\w*|can't breathe)\b"),
    ("abdominal pain", r"\b(stomach|abdomen|abdominal|belly|tummy|gut)\b"),
    ("headache", r"\b(head|headaches?|migraines?)\b"),
    ("fever", r"\b(fever\w*|temperature|hot|chills|shiver\w*)\b"),
)


def parse_complaint(text: str) -> str | None:
    """Match free text to one of the recognised complaints."""
    normalized = _normalize(text)
    for complaint in COMPLAINTS:
        if complaint in normalized:
            return complaint
    for complaint, pattern in _COMPLAINT_KEYWORDS:
        if re.search(pattern, normalized):
            return complaint
    return None


# ============================================================================
# Complaint-Specific Red Flag Questions
# ============================================================================

@dataclass(frozen=True)
class RedFlagQuestion:
    """A yes/no question stored under a declared ChatState field."""
    question: str
    field: str
    escalates: bool = False


RED_FLAG_QUESTIONS: dict[str, tuple[RedFlagQuestion, ...]] = {
    "chest pain": (
        RedFlagQuestion("Is the pain spreading to your arm, jaw, neck, or back?", "radiating_pain"),
        RedFlagQuestion("Are you sweating or feeling clammy?", "sweating"),
        RedFlagQuestion("Do you have any nausea or vomiting?", "nausea"),
    ),
    "shortness of breath": (
        RedFlagQuestion("Are you wheezing or making unusual sounds when breathing?", "wheezing"),
        RedFlagQuestion("Have you coughed up any blood?", "coughing_blood", escalates=True),
        RedFlagQuestion("Do you have any chest pain or tightness?", "chest_pain"),
    ),
    "abdominal pain": (
        RedFlagQuestion(
            "Are you vomiting blood or something that looks like coffee grounds?",
            "vomiting_blood",
            escalates=True,
        ),
        RedFlagQuestion("Have you noticed any blood in your stool or urine?", "bloody_stools", escalates=True),
        RedFlagQuestion("Is the pain worse when you move or press on the area?", "worse_with_movement"),
        RedFlagQuestion("Do you have a fever or feel shivery?", "fever_with_pain"),
        RedFlagQuestion("Are you pregnant or could you be pregnant?", "pregnancy"),
    ),
    "headache": (
        RedFlagQuestion("Did this headache come on suddenly like a thunderclap?", "thunderclap", escalates=True),
        RedFlagQuestion("Do you have a stiff neck or does it hurt to bend your head forward?", "neck_stiffness"),
        RedFlagQuestion("Are you experiencing any vision problems or seeing double?", "visual_disturbance"),
        RedFlagQuestion(
            "Do you have any weakness, numbness, or difficulty speaking?",
            "neurological_symptoms",
            escalates=True,
        ),
        RedFlagQuestion("Are you sensitive to light?", "photophobia"),
    ),
    "fever": (
        RedFlagQuestion(
            "Do you have a rash that doesn't fade when you press a glass against it?",
            "non_blanching_rash",
            escalates=True,
        ),
        RedFlagQuestion("Do you have a stiff neck?", "neck_stiffness"),
        RedFlagQuestion("Are you able to keep fluids down?", "can_keep_fluids"),
    ),
}


def next_red_flag_question(state: ChatState) -> RedFlagQuestion | None:
    """First unanswered, unskipped red-flag question for the state's complaint."""
    complaint = (state.complaint or "").lower()
    for question in RED_FLAG_QUESTIONS.get(complaint, ()):
        if not state.is_set(question.field) and question.field not in state.skipped_fields:
            return question
    return None


# ============================================================================
# Fallback Prompts
# ============================================================================

class FallbackCategory(str, Enum):
    OPENING = "opening"
    LOCALISATION = "localisation"
    TIME_START = "time_start"
    TIME_TREND = "time_trend"
    SEVERITY = "severity"
    DANGER = "danger"
    RED_FLAGS = "red_flags"
    CONTEXT = "context"
    FUNCTIONAL = "functional"
    NAME = "name"
    SUMMARY = "summary"


# (first attempt, second attempt, third and later)
FALLBACK_PROMPTS: dict[FallbackCategory, tuple[str, str, str]] = {
    FallbackCategory.OPENING: (
        "I understand. Could you describe your main symptom in a bit more detail?",
        "What is the single thing that's bothering you most right now?",
        "Please tell me: are you experiencing chest pain, breathing problems, stomach pain, headache, or fever?",
    ),
    FallbackCategory.LOCALISATION: (
        "Which part of your body is bothering you the most right now?",
        "Can you point to where the problem is? Upper body, lower body, head, chest, or stomach?",
        "Please tell me the area: head, chest, stomach, back, arms, or legs?",
    ),
    FallbackCategory.TIME_START: (
        "Can you estimate: was it today, yesterday, or longer ago?",
        "Did this start hours ago, days ago, or weeks ago?",
        "Roughly how long have you had this problem?",
    ),
    FallbackCategory.TIME_TREND: (
        "Would you say it's better, worse, or about the same as when it started?",
        "Is the problem getting worse, getting better, or staying the same?",
        "Please tell me: worse, better, or the same?",
    ),
    FallbackCategory.SEVERITY: (
        "If 0 is no problem and 10 is the worst possible, what number would you give it?",
        "Is it mild (1-3), moderate (4-6), or severe (7-10)? Please give a number.",
        "Just give me a number from 0 to 10 for how bad it is.",
    ),
    FallbackCategory.DANGER: (
        "Just to confirm, is that a yes or a no?",
        "I need a clear answer for safety. Yes or no?",
        "Please answer yes or no.",
    ),
    FallbackCategory.RED_FLAGS: (
        "Is that a yes or no?",
        "I need to know for safety. Yes or no?",
        "Please answer with yes or no.",
    ),
    FallbackCategory.CONTEXT: (
        "Could you tell me a bit more about that?",
        "Any details you can share would help.",
        "You can say 'none' if nothing applies.",
    ),
    FallbackCategory.FUNCTIONAL: (
        "Are you able to do that? Yes or no.",
        "Can you manage that normally? Yes or no.",
        "Please answer yes or no.",
    ),
    FallbackCategory.NAME: (
        "I need your full name to complete the assessment. Could you please provide your first and last name?",
    ) * 3,
    FallbackCategory.SUMMARY: (
        "Is the information correct? Please answer yes or no.",
    ) * 3,
}


def fallback_prompt(category: FallbackCategory, retry_count: int) -> str:
    """Escalating re-prompt for an unparseable answer."""
    prompts = FALLBACK_PROMPTS[category]
    return prompts[min(retry_count, len(prompts) - 1)]


# ============================================================================
# Stage Handlers
# ============================================================================

@dataclass
class StageOutcome:
    """
    Result of parsing one answer at one stage.

    ``advanced`` False means the answer was unparseable. ``next_stage``
    overrides the table successor (loops and restart).
    """
    state: ChatState
    advanced: bool = False
    next_stage: Stage | None = None
    escalate_trigger: str | None = None
    prefix: str = ""
    complete: bool = False
    restart: bool = False


StageHandler = Callable[[str, ChatState], StageOutcome]


def _handle_opening(text: str, state: ChatState) -> StageOutcome:
    description = text.strip()
    complaint = parse_complaint(text)
    if complaint:
        return StageOutcome(
            state.model_copy(update={"complaint": complaint, "opening_description": description}),
            advanced=True,
        )
    if len(description) > 10:
        return StageOutcome(
            state.model_copy(update={"opening_description": description}),
            advanced=True,
            prefix=OPENING_ACKNOWLEDGEMENT,
        )
    return StageOutcome(state)


def _handle_localisation(text: str, state: ChatState) -> StageOutcome:
    location = text.strip()
    if not location:
        return StageOutcome(state)
    update: dict = {"location": location}
    if not state.complaint:
        complaint = parse_complaint(location)
        if complaint:
            update["complaint"] = complaint
    return StageOutcome(state.model_copy(update=update), advanced=True)


def _handle_time_start(text: str, state: ChatState) -> StageOutcome:
    onset = text.strip()
    if not onset:
        return StageOutcome(state)
    return StageOutcome(state.model_copy(update={"onset": onset}), advanced=True)


def _handle_time_trend(text: str, state: ChatState) -> StageOutcome:
    trend = text.strip().lower()
    if not trend:
        return StageOutcome(state)
    update: dict = {"time_trend": trend}
    if "worse" in trend or "worsening" in trend:
        update["getting_worse"] = True
    return StageOutcome(state.model_copy(update=update), advanced=True)


def _handle_severity(text: str, state: ChatState) -> StageOutcome:
    severity = parse_number(text)
    if severity is None or not 0 <= severity <= 10:
        return StageOutcome(state)
    return StageOutcome(state.model_copy(update={"severity": severity}), advanced=True)


def _danger_check(field_name: str, trigger: str, severity_floor: int | None = None) -> StageHandler:
    """Yes/no danger question; "yes" escalates, optionally only at high severity."""

    def handle(text: str, state: ChatState) -> StageOutcome:
        answer = parse_yes_no(text)
        if answer is None:
            return StageOutcome(state)
        state = state.model_copy(update={field_name: answer})
        if answer and (severity_floor is None or (state.severity or 0) >= severity_floor):
            return StageOutcome(state, escalate_trigger=trigger)
        return StageOutcome(state, advanced=True)

    return handle


def _handle_red_flags(text: str, state: ChatState) -> StageOutcome:
    question = next_red_flag_question(state)
    if question is None:
        return StageOutcome(state, advanced=True, next_stage=Stage.RAG_FOLLOWUP)
    answer = parse_yes_no(text)
    if answer is None:
        return StageOutcome(state)
    state = state.model_copy(update={question.field: answer})
    if answer and question.escalates:
        return StageOutcome(state, escalate_trigger=question.field)
    return StageOutcome(state, advanced=True, next_stage=Stage.RED_FLAGS)


def _handle_rag_followup(text: str, state: ChatState) -> StageOutcome:
    return StageOutcome(
        state.model_copy(update={
            "rag_answers": [*state.rag_answers, text.strip()],
            "rag_questions_asked": state.rag_questions_asked + 1,
        }),
        advanced=True,
        next_stage=Stage.RAG_FOLLOWUP,
    )


def _handle_conditions(text: str, state: ChatState) -> StageOutcome:
    return StageOutcome(
        state.model_copy(update={"medical_history": text.strip() or "None reported"}), advanced=True
    )


def _handle_medications(text: str, state: ChatState) -> StageOutcome:
    return StageOutcome(state.model_copy(update={"medications": text.strip() or "None"}), advanced=True)


def _handle_surgery(text: str, state: ChatState) -> StageOutcome:
    return StageOutcome(state.model_copy(update={"previous_surgery": text.strip() or "None"}), advanced=True)


def _handle_eat(text: str, state: ChatState) -> StageOutcome:
    answer = parse_yes_no(text)
    if answer is None:
        answer = "no" not in _tokens(text)
    return StageOutcome(state.model_copy(update={"can_eat_drink": answer}), advanced=True)


def _handle_move(text: str, state: ChatState) -> StageOutcome:
    answer = parse_yes_no(text)
    if answer is None:
        answer = "no" not in _tokens(text)
    return StageOutcome(state.model_copy(update={"can_move": answer}), advanced=True)


def _handle_activities(text: str, state: ChatState) -> StageOutcome:
    stopping = parse_yes_no(text) is True or "yes" in _tokens(text)
    return StageOutcome(state.model_copy(update={"stopping_activities": stopping}), advanced=True)


def _handle_name(text: str, state: ChatState) -> StageOutcome:
    name = text.strip()
    if len(name) < MIN_NAME_LENGTH:
        return StageOutcome(state)
    return StageOutcome(state.model_copy(update={"patient_name": name}), advanced=True)


def _handle_summary(text: str, state: ChatState) -> StageOutcome:
    confirmed = parse_yes_no(text)
    if confirmed is None:
        return StageOutcome(state)
    if confirmed:
        return StageOutcome(state, advanced=True, complete=True)
    return StageOutcome(ChatState(), advanced=True, restart=True)


# ============================================================================
# Stage Table
# ============================================================================

@dataclass(frozen=True)
class StageEntry:
    """
    Static definition of one stage.

    ``question`` is empty for stages whose question is computed on entry
    (red flags, follow-up, summary). ``forced_advance`` False exempts the
    stage from the retry ceiling.
    """
    question: str
    next_stage: Stage
    fallback: FallbackCategory
    handler: StageHandler
    forced_advance: bool = True


STAGE_TABLE: dict[Stage, StageEntry] = {
    Stage.OPENING: StageEntry(
        "Can you tell me what's happening right now and what made you seek help today?",
        Stage.LOCALISATION, FallbackCategory.OPENING, _handle_opening,
    ),
    Stage.LOCALISATION: StageEntry(
        "Where in your body is the main problem?",
        Stage.TIME_START, FallbackCategory.LOCALISATION, _handle_localisation,
    ),
    Stage.TIME_START: StageEntry(
        "When did this start?",
        Stage.TIME_TREND, FallbackCategory.TIME_START, _handle_time_start,
    ),
    Stage.TIME_TREND: StageEntry(
        "Is it getting better, worse, or staying the same?",
        Stage.SEVERITY, FallbackCategory.TIME_TREND, _handle_time_trend,
    ),
    Stage.SEVERITY: StageEntry(
        "On a scale from 0 to 10, how severe is it right now?",
        Stage.DANGER_BREATHING, FallbackCategory.SEVERITY, _handle_severity,
    ),
    Stage.DANGER_BREATHING: StageEntry(
        "Are you having trouble breathing right now?",
        Stage.DANGER_COLLAPSE, FallbackCategory.DANGER,
        _danger_check("trouble_breathing", "trouble breathing"),
    ),
    Stage.DANGER_COLLAPSE: StageEntry(
        "Have you collapsed, fainted, or felt close to passing out?",
        Stage.DANGER_SEVERE_PAIN, FallbackCategory.DANGER,
        _danger_check("collapse", "collapse"),
    ),
    Stage.DANGER_SEVERE_PAIN: StageEntry(
        "Is the pain severe or unbearable?",
        Stage.DANGER_BLEEDING, FallbackCategory.DANGER,
        _danger_check("severe_pain", "severe pain with severity 8 or above", severity_floor=8),
    ),
    Stage.DANGER_BLEEDING: StageEntry(
        "Are you bleeding heavily right now?",
        Stage.DANGER_CONFUSION, FallbackCategory.DANGER,
        _danger_check("severe_bleeding", "heavy bleeding"),
    ),
    Stage.DANGER_CONFUSION: StageEntry(
        "Are you confused, drowsy, or hard to wake?",
        Stage.RED_FLAGS, FallbackCategory.DANGER,
        _danger_check("confusion", "confusion"),
    ),
    Stage.RED_FLAGS: StageEntry(
        "", Stage.RAG_FOLLOWUP, FallbackCategory.RED_FLAGS, _handle_red_flags,
    ),
    Stage.RAG_FOLLOWUP: StageEntry(
        "", Stage.CONTEXT_CONDITIONS, FallbackCategory.CONTEXT, _handle_rag_followup,
    ),
    Stage.CONTEXT_CONDITIONS: StageEntry(
        "Do you have any long-term medical conditions?",
        Stage.CONTEXT_MEDICATIONS, FallbackCategory.CONTEXT, _handle_conditions,
    ),
    Stage.CONTEXT_MEDICATIONS: StageEntry(
        "Are you taking any regular medications?",
        Stage.CONTEXT_SURGERY, FallbackCategory.CONTEXT, _handle_medications,
    ),
    Stage.CONTEXT_SURGERY: StageEntry(
        "Have you had any surgery in this area before?",
        Stage.FUNCTIONAL_EAT, FallbackCategory.CONTEXT, _handle_surgery,
    ),
    Stage.FUNCTIONAL_EAT: StageEntry(
        "Are you able to eat or drink?",
        Stage.FUNCTIONAL_MOVE, FallbackCategory.FUNCTIONAL, _handle_eat,
    ),
    Stage.FUNCTIONAL_MOVE: StageEntry(
        "Can you move around normally?",
        Stage.FUNCTIONAL_ACTIVITIES, FallbackCategory.FUNCTIONAL, _handle_move,
    ),
    Stage.FUNCTIONAL_ACTIVITIES: StageEntry(
        "Is this stopping you from doing normal daily activities?",
        Stage.COLLECT_NAME, FallbackCategory.FUNCTIONAL, _handle_activities,
    ),
    Stage.COLLECT_NAME: StageEntry(
        "Thank you for that information. Before I complete your assessment, "
        "can I take your full name please?",
        Stage.SUMMARY, FallbackCategory.NAME, _handle_name, forced_advance=False,
    ),
    Stage.SUMMARY: StageEntry(
        "", Stage.COMPLETE, FallbackCategory.SUMMARY, _handle_summary, forced_advance=False,
    ),
}

OPENING_QUESTION = STAGE_TABLE[Stage.OPENING].question

# Questions for these stages are shown exactly as built
_UNPHRASED_STAGES = frozenset({Stage.RAG_FOLLOWUP, Stage.SUMMARY})


def _validate_tables() -> None:
    missing = [s.value for s in Stage if not s.is_terminal and s not in STAGE_TABLE]
    if missing:
        raise RuntimeError(f"Stages without a table entry: {missing}")
    for questions in RED_FLAG_QUESTIONS.values():
        for question in questions:
            if question.field not in ChatState.model_fields:
                raise RuntimeError(f"Red flag question stores unknown field: {question.field}")


_validate_tables()


def summary_confirmation(state: ChatState) -> str:
    """Read back the collected answers for confirmation."""
    lines = [
        f"Thank you {state.patient_name or 'for that information'}. "
        "Let me confirm what you've told me:",
        "",
        f"- Name: {state.patient_name or 'Not provided'}",
        f"- Main concern: {state.complaint or state.opening_description or 'Not specified'}",
        f"- Location: {state.location or 'Not specified'}",
        f"- Started: {state.onset or 'Not specified'}",
        f"- Trend: {state.time_trend or 'Not specified'}",
        f"- Severity: {f'{state.severity}/10' if state.severity is not None else 'Not rated'}",
    ]
    if state.medical_history and state.medical_history != "None reported":
        lines.append(f"- Medical conditions: {state.medical_history}")
    if state.medications and state.medications != "None":
        lines.append(f"- Medications: {state.medications}")
    lines.extend(["", "Is this correct? (Yes/No)"])
    return "\n".join(lines)


def _state_context(state: ChatState, stage: Stage) -> str:
    lines = [f"Current assessment stage: {stage.value}"]
    if state.complaint:
        lines.append(f"- Main concern: {state.complaint}")
    if state.location:
        lines.append(f"- Location: {state.location}")
    if state.onset:
        lines.append(f"- When it started: {state.onset}")
    if state.time_trend:
        lines.append(f"- Trend: {state.time_trend}")
    if state.severity is not None:
        lines.append(f"- Severity: {state.severity}/10")
    return "\n".join(lines)


# ============================================================================
# State Machine
# ============================================================================

class ChatStateMachine:
    """
    Drive one intake conversation turn by turn.

    Args:
        generator: Optional text generation collaborator used to phrase
            questions and write guidance-led follow-ups.
        retriever: Optional guidance retriever exposing
            ``followup_context(state)``.
        rules_engine: Rules engine used for the closing message.
        settings: Application settings.
    """

    def __init__(
        self,
        generator=None,
        retriever=None,
        rules_engine: RulesEngine | None = None,
        settings: Settings | None = None,
    ):
        self.generator = generator
        self.retriever = retriever
        self.rules_engine = rules_engine or get_rules_engine()
        self.settings = settings or get_settings()

    async def advance(
        self,
        text: str,
        history: list[ChatMessage],
        state: ChatState,
        stage: Stage,
        retry_count: int = 0,
    ) -> TurnResult:
        """
        Process one patient message.

        Args:
            text: Raw patient input for this turn.
            history: Conversation so far, excluding ``text``.
            state: Answers collected so far.
            stage: Current stage.
            retry_count: Consecutive unparseable answers at this stage.

        Returns:
            TurnResult with the new state, stage, reply and flags.
        """
        if stage.is_terminal:
            return TurnResult(
                state=state,
                stage=stage,
                response=COMPLETED_RESPONSE,
                is_escalation=stage == Stage.ESCALATED,
                is_complete=True,
            )

        trigger = detect_emergency(text)
        if trigger:
            return self._escalate(state, stage, trigger)

        entry = STAGE_TABLE[stage]

        if retry_count >= MAX_RETRIES and entry.forced_advance:
            update: dict = {"skipped_stages": [*state.skipped_stages, stage]}
            next_stage = entry.next_stage
            skipped_field = None
            if stage == Stage.RED_FLAGS:
                pending = next_red_flag_question(state)
                if pending is not None:
                    # Only the current question is passed over; the loop continues
                    skipped_field = pending.field
                    update["skipped_fields"] = [*state.skipped_fields, skipped_field]
                    next_stage = Stage.RED_FLAGS
            logger.warning(
                "Retry ceiling reached, advancing with partial data",
                skipped_stage=stage.value,
                skipped_field=skipped_field,
                next_stage=next_stage.value,
            )
            state = state.model_copy(update=update)
            next_stage, question = await self._enter(next_stage, state)
            return TurnResult(state=state, stage=next_stage, response=question)

        outcome = entry.handler(text, state)

        if outcome.escalate_trigger:
            return self._escalate(outcome.state, stage, outcome.escalate_trigger)

        if not outcome.advanced:
            logger.debug("Answer not understood", stage=stage.value, retry_count=retry_count + 1)
            return TurnResult(
                state=outcome.state,
                stage=stage,
                response=fallback_prompt(entry.fallback, retry_count),
                retry_count=retry_count + 1,
            )

        if outcome.complete:
            logger.info("Intake complete", complaint=outcome.state.complaint)
            return TurnResult(
                state=outcome.state,
                stage=Stage.COMPLETE,
                response=self.final_response(outcome.state),
                is_complete=True,
            )

        if outcome.restart:
            logger.info("Summary rejected, restarting intake")
            return TurnResult(
                state=outcome.state,
                stage=Stage.OPENING,
                response=RESTART_PREFIX + OPENING_QUESTION,
            )

        next_stage, question = await self._enter(outcome.next_stage or entry.next_stage, outcome.state)
        if next_stage not in _UNPHRASED_STAGES:
            question = await self._phrase(text, history, outcome.state, next_stage, question)

        return TurnResult(state=outcome.state, stage=next_stage, response=outcome.prefix + question)

    def final_response(self, state: ChatState) -> str:
        """Closing message chosen by the rules-engine band."""
        result = self.rules_engine.evaluate_state(state)
        if result.risk_band in FINAL_RESPONSES:
            response = FINAL_RESPONSES[result.risk_band]
        else:
            response = SELF_CARE_RESPONSE
        return response + SAFETY_NET + RECORDED_NOTE

    def _escalate(self, state: ChatState, stage: Stage, trigger: str) -> TurnResult:
        logger.warning("Emergency escalation", stage=stage.value, trigger=trigger)
        return TurnResult(
            state=state.model_copy(update={"emergency_escalation": True}),
            stage=Stage.ESCALATED,
            response=EMERGENCY_RESPONSE,
            is_escalation=True,
            is_complete=True,
        )

    async def _enter(self, stage: Stage, state: ChatState) -> tuple[Stage, str]:
        """Resolve the stage actually entered and its question, skipping empty loops."""
        while True:
            if stage == Stage.RED_FLAGS:
                question = next_red_flag_question(state)
                if question is not None:
                    return stage, question.question
                stage = Stage.RAG_FOLLOWUP
                continue

            if stage == Stage.RAG_FOLLOWUP:
                followup = await self._followup_question(state)
                if followup:
                    return stage, followup
                stage = Stage.CONTEXT_CONDITIONS
                continue

            if stage == Stage.SUMMARY:
                return stage, summary_confirmation(state)

            return stage, STAGE_TABLE[stage].question

    async def _followup_question(self, state: ChatState) -> str | None:
        asked = state.rag_questions_asked
        if asked >= MAX_FOLLOWUP_QUESTIONS or self.retriever is None:
            return None

        try:
            context = await self.retriever.followup_context(state)
        except Exception as e:
            logger.warning("Guidance retrieval failed, skipping follow-up questions", error=str(e))
            return None

        if not context.strip():
            logger.debug("No relevant guidance, skipping follow-up questions")
            return None

        generic = GENERIC_FOLLOWUP_QUESTIONS[asked] if asked < len(GENERIC_FOLLOWUP_QUESTIONS) else None
        if self.generator is None:
            return generic

        prompt = (
            "Based on the following patient symptoms and clinical guidance, write ONE natural "
            "follow-up question that would help narrow down what this could be.\n\n"
            f"Patient symptoms:\n{_state_context(state, Stage.RAG_FOLLOWUP)}\n"
            f"- Opening description: {state.opening_description or ''}\n\n"
            f"Relevant clinical guidance:\n{context}\n\n"
            f"Questions already asked and answered: {asked}"
        )
        try:
            question = await self.generator.generate(
                PATIENT_FACING_SYSTEM_PROMPT
                + "\n\nYou are writing a single follow-up question that helps differentiate "
                "between possibilities mentioned in the clinical guidance.",
                [ChatMessage(role="user", content=prompt)],
                max_tokens=self.settings.followup_max_tokens,
                temperature=self.settings.dialogue_temperature,
            )
        except GenerationError as e:
            logger.warning("Follow-up generation failed, using generic question", error=str(e))
            return generic
        return question.strip() or generic

    async def _phrase(
        self,
        text: str,
        history: list[ChatMessage],
        state: ChatState,
        stage: Stage,
        question: str,
    ) -> str:
        """Ask the generator to word the next question naturally; fixed text on failure."""
        if self.generator is None:
            return question

        system_prompt = (
            f"{PATIENT_FACING_SYSTEM_PROMPT}\n\n"
            f"Internal context (do not mention to patient):\n{_state_context(state, stage)}\n\n"
            f'The next question you must ask is: "{question}"'
        )
        messages = [*history[-HISTORY_WINDOW:], ChatMessage(role="user", content=text)]
        try:
            phrased = await self.generator.generate(
                system_prompt,
                messages,
                max_tokens=self.settings.dialogue_max_tokens,
                temperature=self.settings.dialogue_temperature,
            )
        except GenerationError as e:
            logger.warning("Question phrasing failed, using fixed question", stage=stage.value, error=str(e))
            return question
        return phrased.strip() or question
