"""
Clinical handoff assembly.

Combines the deterministic pieces (rules-engine category, red-flag
trichotomy) with a model-written narrative into the fixed-shape handoff
document. The deterministic pieces are always set from their own inputs,
whatever the model returns. When the narrative call fails in any way a
minimal handoff is built from facts alone; assembly itself never fails.
"""

import json

from pydantic import ValidationError

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    ChatMessage,
    ChatState,
    ConsultationFocus,
    HandoffDocument,
    HandoffNarrative,
    HandoffRedFlag,
    HandoffRedFlags,
    HandoffSeverity,
    PresentingComplaint,
    RetrievedChunk,
    TriageResult,
    TriggeredRedFlag,
)
from triage_backend.services.llm_client import GenerationError, parse_json_object
from triage_backend.services.rules_engine import (
    RulesEngine,
    build_triage_answers,
    get_rules_engine,
)

logger = get_logger(__name__)


DEFAULT_SAFETY_NET = "If symptoms worsen, seek urgent medical attention."

HANDOFF_GENERATION_PROMPT = """You generate a structured clinical handoff for a receptionist or clinician.

You must:
- Not diagnose. Never state a diagnosis as fact.
- Only include information that appears in the provided facts and patient messages; do not invent details, dates, or symptoms.
- Present possible causes only as "differentials", clearly non-diagnostic.
- Highlight what was not assessed.
- Keep it concise and clinically useful.
- Use the provided rules engine category as the primary severity category. Your suggested category is secondary.

Return JSON only, exactly matching this schema:
{
  "presenting_complaint": {
    "chief_complaint": "",
    "onset": "",
    "duration": "",
    "severity": "",
    "location": "",
    "associated_symptoms": []
  },
  "key_positives": [],
  "key_negatives": [],
  "red_flags": {
    "triggered": [{"flag": "", "evidence": ""}],
    "not_triggered": [],
    "not_assessed": []
  },
  "severity": {
    "rules_engine_category": "GREEN",
    "ai_suggested_category": "GREEN",
    "ai_confidence": "LOW",
    "rationale": ""
  },
  "differentials": [
    {
      "condition": "",
      "why_consider": "",
      "supporting_features": []
    }
  ],
  "consultation_focus": {
    "questions_to_confirm": [],
    "exam_checks": [],
    "immediate_actions": [],
    "safety_net": ""
  },
  "summary_for_reception": ""
}"""


def _red_flag_section(
    triggered: list[TriggeredRedFlag],
    not_triggered: list[str],
    not_assessed: list[str],
) -> HandoffRedFlags:
    return HandoffRedFlags(
        triggered=[HandoffRedFlag(flag=t.label, evidence=t.evidence) for t in triggered],
        not_triggered=list(not_triggered),
        not_assessed=list(not_assessed),
    )


class HandoffAssembler:
    """
    Build the one-page handoff for a finished session.

    Args:
        generator: Optional text generation collaborator for the narrative.
        retriever: Optional guidance retriever for narrative context.
        rules_engine: Rules engine supplying the authoritative category.
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

    async def assemble(
        self,
        session_id: str | None,
        state: ChatState,
        messages: list[ChatMessage],
        triggered: list[TriggeredRedFlag],
        not_triggered: list[str],
        not_assessed: list[str],
    ) -> HandoffDocument:
        """
        Assemble the handoff.

        ``rules_engine_category`` comes from the same state projection as
        the stored submission band, and the red-flag lists are copied from
        the inputs unchanged.
        """
        triage = self.rules_engine.evaluate(build_triage_answers(state))
        category = triage.risk_band.value.upper()
        red_flags = _red_flag_section(triggered, not_triggered, not_assessed)

        if self.generator is None:
            return self.minimal_handoff(state, triage, red_flags)

        chunks = await self._guidance(state, triggered)
        try:
            narrative = await self._narrative(state, messages, triggered, not_assessed, chunks, category)
        except (GenerationError, ValidationError, ValueError) as e:
            logger.error(
                "Handoff generation failed, using minimal handoff",
                session_id=session_id,
                error=str(e),
            )
            return self.minimal_handoff(state, triage, red_flags)

        focus = narrative.consultation_focus
        if not focus.safety_net:
            focus = focus.model_copy(update={"safety_net": DEFAULT_SAFETY_NET})

        handoff = HandoffDocument(
            presenting_complaint=narrative.presenting_complaint,
            key_positives=narrative.key_positives,
            key_negatives=narrative.key_negatives,
            red_flags=red_flags,
            severity=HandoffSeverity(
                rules_engine_category=category,
                ai_suggested_category=narrative.severity.ai_suggested_category or category,
                ai_confidence=narrative.severity.ai_confidence,
                rationale=narrative.severity.rationale,
            ),
            differentials=narrative.differentials,
            consultation_focus=focus,
            summary_for_reception=narrative.summary_for_reception or triage.summary,
        )
        logger.info(
            "Handoff generated",
            session_id=session_id,
            rules_category=category,
            ai_category=handoff.severity.ai_suggested_category,
            differential_count=len(handoff.differentials),
        )
        return handoff

    def minimal_handoff(
        self,
        state: ChatState,
        triage: TriageResult,
        red_flags: HandoffRedFlags,
    ) -> HandoffDocument:
        """Deterministic handoff with no narrative fields."""
        category = triage.risk_band.value.upper()
        return HandoffDocument(
            presenting_complaint=PresentingComplaint(
                chief_complaint=state.complaint or state.opening_description or "Not specified",
                onset=state.onset or "Not specified",
                duration=state.duration or "Not specified",
                severity=f"{state.severity}/10" if state.severity is not None else "Not rated",
                location=state.location or "Not specified",
            ),
            red_flags=red_flags,
            severity=HandoffSeverity(
                rules_engine_category=category,
                ai_suggested_category=category,
                ai_confidence="LOW",
                rationale=triage.summary,
            ),
            consultation_focus=ConsultationFocus(safety_net=DEFAULT_SAFETY_NET),
            summary_for_reception=triage.summary,
        )

    async def _guidance(self, state: ChatState, triggered: list[TriggeredRedFlag]) -> list[RetrievedChunk]:
        if self.retriever is None:
            return []
        try:
            return await self.retriever.retrieve_relevant_chunks(
                state.complaint or "",
                build_triage_answers(state).symptom_flags(),
                [t.label for t in triggered],
            )
        except Exception as e:
            logger.warning("Guidance retrieval failed for handoff", error=str(e))
            return []

    async def _narrative(
        self,
        state: ChatState,
        messages: list[ChatMessage],
        triggered: list[TriggeredRedFlag],
        not_assessed: list[str],
        chunks: list[RetrievedChunk],
        category: str,
    ) -> HandoffNarrative:
        facts = state.model_dump(mode="json", exclude_none=True, exclude={"patient_name"})
        patient_text = "\n".join(m.content for m in messages if m.role == "user")
        snippets = "\n\n---\n\n".join(c.content for c in chunks)

        prompt = (
            "Generate handoff JSON for this intake session.\n\n"
            f"Presenting complaint facts (JSON):\n{json.dumps(facts, indent=2)}\n\n"
            f"Patient messages:\n{patient_text}\n\n"
            "Triggered red flags from rules engine (JSON):\n"
            f"{json.dumps([t.model_dump() for t in triggered], indent=2)}\n\n"
            f"Not assessed items (array):\n{json.dumps(not_assessed)}\n\n"
            f"Guidance snippets (internal use only):\n{snippets}\n\n"
            f"Rules engine category: {category}\n\n"
            "Generate the complete handoff JSON following the schema exactly."
        )

        content = await self.generator.generate(
            HANDOFF_GENERATION_PROMPT,
            [ChatMessage(role="user", content=prompt)],
            max_tokens=self.settings.handoff_max_tokens,
            temperature=self.settings.handoff_temperature,
            json_mode=True,
        )
        payload = parse_json_object(content)
        if payload is None:
            raise ValueError("Handoff output is not a JSON object")
        return HandoffNarrative.model_validate(payload)
