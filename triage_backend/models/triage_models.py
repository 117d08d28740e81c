"""
Pydantic models for the guided intake triage domain.

This module defines the conversation state collected by the dialogue,
the rules-engine inputs and outputs, the canonical fact record used for
red-flag evaluation, and the fixed-shape clinical handoff document.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Enumerations
# ============================================================================

class Stage(str, Enum):
    """Steps of the guided intake conversation, in dialogue order."""
    OPENING = "opening"
    LOCALISATION = "localisation"
    TIME_START = "time_start"
    TIME_TREND = "time_trend"
    SEVERITY = "severity"
    DANGER_BREATHING = "danger_breathing"
    DANGER_COLLAPSE = "danger_collapse"
    DANGER_SEVERE_PAIN = "danger_severe_pain"
    DANGER_BLEEDING = "danger_bleeding"
    DANGER_CONFUSION = "danger_confusion"
    RED_FLAGS = "red_flags"
    RAG_FOLLOWUP = "rag_followup"
    CONTEXT_CONDITIONS = "context_conditions"
    CONTEXT_MEDICATIONS = "context_medications"
    CONTEXT_SURGERY = "context_surgery"
    FUNCTIONAL_EAT = "functional_eat"
    FUNCTIONAL_MOVE = "functional_move"
    FUNCTIONAL_ACTIVITIES = "functional_activities"
    COLLECT_NAME = "collect_name"
    SUMMARY = "summary"
    COMPLETE = "complete"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ESCALATED)


class RiskBand(str, Enum):
    """Three-tier severity band produced by the rules engine."""
    RED = "Red"
    AMBER = "Amber"
    GREEN = "Green"


class SessionStatus(str, Enum):
    """Lifecycle status of a chat session."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ESCALATED = "escalated"


FactValue = bool | int | float | str
FactSource = Literal["patient", "derived", "model"]
SeverityCategory = Literal["GREEN", "AMBER", "RED"]


# ============================================================================
# Conversation
# ============================================================================

class ChatMessage(BaseModel):
    """Single entry of the append-only conversation history."""
    model_config = ConfigDict(frozen=True)

    role: Literal["assistant", "user"] = Field(..., description="Message author")
    content: str = Field(..., description="Message text")


class ChatState(BaseModel):
    """
    Structured answers collected by the dialogue, one attribute per field.

    Every field the state machine can set is declared here. Unset fields
    stay ``None`` so "never asked" is distinguishable from a ``False`` answer.
    """
    model_config = ConfigDict(extra="ignore")

    # Identity and demographics
    patient_name: str | None = None
    age: int | None = Field(default=None, ge=0, le=130)
    sex: str | None = None

    # Presenting complaint
    complaint: str | None = None
    opening_description: str | None = None
    location: str | None = None
    onset: str | None = None
    duration: str | None = None
    time_trend: str | None = None
    getting_worse: bool | None = None
    severity: int | None = Field(default=None, ge=0, le=10)

    # Immediate danger checks
    trouble_breathing: bool | None = None
    collapse: bool | None = None
    severe_pain: bool | None = None
    severe_bleeding: bool | None = None
    confusion: bool | None = None

    # Complaint-specific red flag answers
    radiating_pain: bool | None = None
    sweating: bool | None = None
    nausea: bool | None = None
    wheezing: bool | None = None
    coughing_blood: bool | None = None
    chest_pain: bool | None = None
    vomiting_blood: bool | None = None
    bloody_stools: bool | None = None
    worse_with_movement: bool | None = None
    fever_with_pain: bool | None = None
    pregnancy: bool | None = None
    thunderclap: bool | None = None
    neck_stiffness: bool | None = None
    visual_disturbance: bool | None = None
    neurological_symptoms: bool | None = None
    photophobia: bool | None = None
    non_blanching_rash: bool | None = None
    can_keep_fluids: bool | None = None

    # Rules-engine inputs not asked by the chat (structured form only)
    shortness_of_breath: bool | None = None
    cardiac_history: bool | None = None
    cyanosis: bool | None = None
    speaking_difficulty: bool | None = None
    rigid_abdomen: bool | None = None
    bleeding: bool | None = None
    fever: bool | None = None

    # Guidance-driven follow-up loop
    rag_questions_asked: int = 0
    rag_answers: list[str] = Field(default_factory=list)

    # Context and function
    medical_history: str | None = None
    medications: str | None = None
    previous_surgery: str | None = None
    can_eat_drink: bool | None = None
    can_move: bool | None = None
    stopping_activities: bool | None = None

    # Control and audit
    emergency_escalation: bool = False
    skipped_stages: list[Stage] = Field(default_factory=list)
    skipped_fields: list[str] = Field(default_factory=list, description="Red-flag questions passed over unanswered")

    def is_set(self, field_name: str) -> bool:
        """Whether a declared field holds an answer."""
        return getattr(self, field_name) is not None


class TurnResult(BaseModel):
    """Outcome of one call to the dialogue state machine."""
    state: ChatState
    stage: Stage
    response: str
    is_escalation: bool = False
    is_complete: bool = False
    retry_count: int = Field(default=0, ge=0)


# ============================================================================
# Rules Engine
# ============================================================================

class TriageAnswers(BaseModel):
    """Flat fact record evaluated by the rules engine."""
    model_config = ConfigDict(extra="ignore")

    complaint: str = Field(default="", max_length=200, description="Presenting complaint")
    age: int = Field(default=0, ge=0, le=130, description="Age in years")
    sex: str = Field(default="", max_length=40, description="Sex as reported")
    severity: int = Field(default=0, ge=0, le=10, description="Severity 0-10")
    onset: str | None = None
    location: str | None = None
    duration: str | None = None
    medical_history: str | None = None
    medications: str | None = None

    confusion: bool = False
    severe_bleeding: bool = False
    collapse: bool = False
    shortness_of_breath: bool = False
    radiating_pain: bool = False
    sweating: bool = False
    nausea: bool = False
    cardiac_history: bool = False
    cyanosis: bool = False
    speaking_difficulty: bool = False
    vomiting_blood: bool = False
    bloody_stools: bool = False
    rigid_abdomen: bool = False
    pregnancy: bool = False
    bleeding: bool = False
    thunderclap: bool = False
    neck_stiffness: bool = False
    visual_disturbance: bool = False
    neurological_symptoms: bool = False
    non_blanching_rash: bool = False
    fever: bool = False
    emergency_escalation: bool = False

    def symptom_flags(self) -> dict[str, bool]:
        """Boolean answers only, keyed by field name."""
        return {
            name: value
            for name, value in self.model_dump().items()
            if isinstance(value, bool)
        }


class TriageResult(BaseModel):
    """Deterministic classification of a fact record."""
    risk_band: RiskBand = Field(..., description="Authoritative severity band")
    red_flags: list[str] = Field(default_factory=list, description="Triggered flags, in rule order")
    summary: str = Field(..., description="Templated one-line summary")
    recommendations: list[str] = Field(
        default_factory=list, description="Self-care advice (Green band only)"
    )


# ============================================================================
# Fact Record
# ============================================================================

class Fact(BaseModel):
    """A single canonical fact with confidence and provenance."""
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Canonical snake_case fact key")
    value: FactValue = Field(..., description="Fact value")
    confidence: int = Field(default=100, ge=0, le=100, description="Confidence 0-100")
    source: FactSource = Field(default="patient", description="Provenance")


class FactRecord(BaseModel):
    """Canonical facts keyed by fact key."""
    facts: dict[str, Fact] = Field(default_factory=dict)

    def __contains__(self, key: str) -> bool:
        return key in self.facts

    def __len__(self) -> int:
        return len(self.facts)

    def get(self, key: str) -> Fact | None:
        return self.facts.get(key)

    def add(self, fact: Fact) -> None:
        self.facts[fact.key] = fact

    def values(self) -> dict[str, FactValue]:
        """Plain key -> value mapping used by rule evaluation."""
        return {key: fact.value for key, fact in self.facts.items()}


class DivergenceEvent(BaseModel):
    """Audit record: model-extracted value disagreed with the dialogue's value."""
    model_config = ConfigDict(frozen=True)

    session_id: int | str | None = Field(default=None, description="Owning session")
    fact_key: str = Field(..., description="Fact key in disagreement")
    llm_value: Any = Field(..., description="Value proposed by the model")
    state_value: Any = Field(..., description="Authoritative value from the dialogue")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExtractionResult(BaseModel):
    """Reconciled facts plus the divergence events observed while building them."""
    record: FactRecord = Field(default_factory=FactRecord)
    divergences: list[DivergenceEvent] = Field(default_factory=list)


# ============================================================================
# Red Flag Rules
# ============================================================================

class Criterion(BaseModel):
    """Single predicate over one fact."""
    model_config = ConfigDict(frozen=True)

    fact: str = Field(..., description="Fact key")
    op: Literal["eq", "gte", "lte"] = Field(..., description="Comparison operator")
    value: FactValue = Field(..., description="Literal to compare against")


class RedFlagRule(BaseModel):
    """Declarative red-flag rule from the static rule table."""
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Stable rule code")
    label: str = Field(..., description="Human-readable flag label")
    evidence_prompt: str = Field(..., description="Evidence statement shown when triggered")
    criteria_all: list[Criterion] | None = Field(default=None, description="All must hold")
    criteria_any: list[Criterion] | None = Field(default=None, description="Any may hold")

    @model_validator(mode="after")
    def _require_criteria(self) -> "RedFlagRule":
        if not self.criteria_all and not self.criteria_any:
            raise ValueError(f"Red flag rule {self.code} has no criteria")
        return self

    @property
    def fact_keys(self) -> list[str]:
        """Every fact key referenced by this rule."""
        criteria = (self.criteria_all or []) + (self.criteria_any or [])
        return [c.fact for c in criteria]


class TriggeredRedFlag(BaseModel):
    """A red flag that fired."""
    code: str
    label: str
    evidence: str


class RedFlagEvaluation(BaseModel):
    """Every rule lands in exactly one of the three lists."""
    triggered: list[TriggeredRedFlag] = Field(default_factory=list)
    not_triggered: list[str] = Field(default_factory=list)
    not_assessed: list[str] = Field(default_factory=list)


# ============================================================================
# Retrieval
# ============================================================================

class RetrievedChunk(BaseModel):
    """Knowledge-base chunk returned by keyword retrieval."""
    chunk_id: int | str
    source_title: str
    content: str
    score: int = 0


# ============================================================================
# Handoff Document
# ============================================================================

class PresentingComplaint(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    chief_complaint: str = ""
    onset: str = ""
    duration: str = ""
    severity: str = ""
    location: str = ""
    associated_symptoms: list[str] = Field(default_factory=list)


class HandoffRedFlag(BaseModel):
    flag: str
    evidence: str


class HandoffRedFlags(BaseModel):
    triggered: list[HandoffRedFlag] = Field(default_factory=list)
    not_triggered: list[str] = Field(default_factory=list)
    not_assessed: list[str] = Field(default_factory=list)


class HandoffSeverity(BaseModel):
    rules_engine_category: SeverityCategory = Field(
        ..., description="Authoritative category from the rules engine"
    )
    ai_suggested_category: SeverityCategory = Field(..., description="Advisory category")
    ai_confidence: Literal["LOW", "MEDIUM", "HIGH"] = "LOW"
    rationale: str = ""


class Differential(BaseModel):
    condition: str = ""
    why_consider: str = ""
    supporting_features: list[str] = Field(default_factory=list)


class ConsultationFocus(BaseModel):
    questions_to_confirm: list[str] = Field(default_factory=list)
    exam_checks: list[str] = Field(default_factory=list)
    immediate_actions: list[str] = Field(default_factory=list)
    safety_net: str = ""


class NarrativeSeverity(BaseModel):
    """Advisory severity as proposed by the model."""
    model_config = ConfigDict(extra="ignore")

    ai_suggested_category: SeverityCategory | None = None
    ai_confidence: Literal["LOW", "MEDIUM", "HIGH"] = "LOW"
    rationale: str = ""


class HandoffNarrative(BaseModel):
    """Model-written portion of the handoff; anything else it returns is ignored."""
    model_config = ConfigDict(extra="ignore")

    presenting_complaint: PresentingComplaint = Field(default_factory=PresentingComplaint)
    key_positives: list[str] = Field(default_factory=list)
    key_negatives: list[str] = Field(default_factory=list)
    severity: NarrativeSeverity = Field(default_factory=NarrativeSeverity)
    differentials: list[Differential] = Field(default_factory=list)
    consultation_focus: ConsultationFocus = Field(default_factory=ConsultationFocus)
    summary_for_reception: str = ""


class HandoffDocument(BaseModel):
    """One-page clinical handoff for reception and clinicians."""
    presenting_complaint: PresentingComplaint
    key_positives: list[str] = Field(default_factory=list)
    key_negatives: list[str] = Field(default_factory=list)
    red_flags: HandoffRedFlags
    severity: HandoffSeverity
    differentials: list[Differential] = Field(default_factory=list)
    consultation_focus: ConsultationFocus
    summary_for_reception: str


# ============================================================================
# Persistence Records
# ============================================================================

class ChatSession(BaseModel):
    """Stored chat session; one in-flight turn at a time."""
    id: str = Field(..., description="Session identifier")
    messages: list[ChatMessage] = Field(default_factory=list)
    state: ChatState = Field(default_factory=ChatState)
    stage: Stage = Stage.OPENING
    status: SessionStatus = SessionStatus.ACTIVE
    retry_count: int = Field(default=0, ge=0)
    submission_id: str | None = None
    handoff: HandoffDocument | None = None
    summary_text: str | None = None
    rules_severity: SeverityCategory | None = None
    ai_severity: SeverityCategory | None = None
    ai_confidence: Literal["LOW", "MEDIUM", "HIGH"] | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Submission(BaseModel):
    """Stored triage outcome, from a completed chat or the structured form."""
    id: str = Field(..., description="Submission identifier")
    age: int = 0
    sex: str = ""
    complaint: str = ""
    answers: dict[str, Any] = Field(default_factory=dict)
    risk_band: RiskBand
    red_flags: list[str] = Field(default_factory=list)
    summary: str
    rules_version: str
    model_version: str
    session_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class KnowledgeDocument(BaseModel):
    """Uploaded guidance document."""
    id: str
    name: str
    source: str = "Upload"
    chunk_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DocumentChunk(BaseModel):
    """Blank-line-delimited chunk of a guidance document."""
    id: str
    document_id: str
    source_title: str
    chunk_text: str
