"""
Fact reconciliation for red-flag evaluation.

Builds the canonical fact record in two passes:

1. Deterministic projection of the dialogue state (authoritative).
2. Model extraction over the patient's own words, admitted only through
   confidence and corroboration gates.

The model is treated as an untrusted annotator: its facts can add to the
record but never replace a value the structured dialogue already holds.
Disagreements are returned as divergence events for the caller to persist.
"""

import json
import re
from typing import Any

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    ChatMessage,
    ChatState,
    DivergenceEvent,
    ExtractionResult,
    Fact,
    FactRecord,
    FactValue,
)
from triage_backend.services.llm_client import GenerationError, parse_json_object

logger = get_logger(__name__)


CONFIDENCE_CRITICAL = 70
CONFIDENCE_DEFAULT = 50

# Facts that can drive escalation directly
CRITICAL_FACT_KEYS = frozenset({
    "severity_score",
    "chest_pain",
    "shortness_of_breath",
    "collapse",
    "confusion",
    "severe_bleeding",
    "fainting",
    "face_droop",
    "arm_weakness",
    "speech_difficulty",
    "thunderclap",
    "neck_stiffness",
    "non_blanching_rash",
    "vomiting_blood",
    "pregnant_possible",
    "fever",
})

_FACT_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
_LOOSE_NUMBER_PATTERN = re.compile(r"\d{1,2}\s*/\s*10|\b\d{1,2}\b")


FACTS_EXTRACTION_PROMPT = """You extract structured facts from patient text for clinical intake.

Rules:
- Do not diagnose.
- Only extract facts explicitly stated or strongly implied by the patient. Do not invent or infer facts that are not supported by the conversation.
- If a value is unknown, do not guess. Omit it.
- Use boolean true/false where appropriate.
- Record explicit denials ("no chest pain") under "negations".
- Provide a confidence score per fact (0-100).

Return JSON only:
{
  "facts": [
    {"key": "", "value": null, "confidence": 0}
  ],
  "negations": [
    {"key": "", "value": false, "confidence": 0}
  ]
}

Fact keys to consider include:
chief_complaint, onset, duration, progression, severity_score, location, associated_symptoms,
chest_pain, shortness_of_breath, fever, vomiting, bleeding, fainting,
face_droop, arm_weakness, speech_difficulty,
pregnant_possible, age_years, allergies, current_meds, relevant_history"""


# ChatState attribute -> canonical fact key, copied verbatim when set
_DIRECT_PROJECTION: dict[str, str] = {
    "age": "age_years",
    "sex": "sex",
    "complaint": "chief_complaint",
    "onset": "onset",
    "duration": "duration",
    "time_trend": "progression",
    "getting_worse": "getting_worse",
    "severity": "severity_score",
    "location": "location",
    "shortness_of_breath": "shortness_of_breath",
    "collapse": "collapse",
    "confusion": "confusion",
    "severe_bleeding": "severe_bleeding",
    "severe_pain": "severe_pain",
    "radiating_pain": "radiating_pain",
    "sweating": "sweating",
    "nausea": "nausea",
    "wheezing": "wheezing",
    "coughing_blood": "coughing_blood",
    "chest_pain": "chest_pain",
    "vomiting_blood": "vomiting_blood",
    "bloody_stools": "bloody_stools",
    "worse_with_movement": "worse_with_movement",
    "fever_with_pain": "fever_with_pain",
    "pregnancy": "pregnant_possible",
    "thunderclap": "thunderclap",
    "neck_stiffness": "neck_stiffness",
    "visual_disturbance": "visual_disturbance",
    "neurological_symptoms": "neurological_symptoms",
    "photophobia": "photophobia",
    "non_blanching_rash": "non_blanching_rash",
    "can_keep_fluids": "can_keep_fluids",
    "cardiac_history": "cardiac_history",
    "cyanosis": "cyanosis",
    "speaking_difficulty": "speaking_difficulty",
    "rigid_abdomen": "rigid_abdomen",
    "bleeding": "bleeding",
    "fever": "fever",
    "medical_history": "relevant_history",
    "medications": "current_meds",
    "can_eat_drink": "can_eat_drink",
    "can_move": "can_move",
    "stopping_activities": "stopping_activities",
}


def deterministic_facts(state: ChatState) -> FactRecord:
    """
    Project dialogue state onto canonical fact keys.

    Every projected fact carries confidence 100. Facts inferred from a
    different field than their own are marked ``derived``.
    """
    record = FactRecord()

    for attr, key in _DIRECT_PROJECTION.items():
        value = getattr(state, attr)
        if value is not None:
            record.add(Fact(key=key, value=value, confidence=100, source="patient"))

    if "chief_complaint" not in record and state.opening_description:
        record.add(Fact(
            key="chief_complaint", value=state.opening_description, confidence=100, source="derived"
        ))

    if "shortness_of_breath" not in record and state.trouble_breathing is not None:
        record.add(Fact(
            key="shortness_of_breath", value=state.trouble_breathing, confidence=100, source="derived"
        ))

    complaint = (state.complaint or "").lower()
    if complaint == "chest pain" and "chest_pain" not in record:
        record.add(Fact(key="chest_pain", value=True, confidence=100, source="derived"))
    if complaint == "fever" and "fever" not in record:
        record.add(Fact(key="fever", value=True, confidence=100, source="derived"))
    if "fever" not in record and state.fever_with_pain is not None:
        record.add(Fact(key="fever", value=state.fever_with_pain, confidence=100, source="derived"))

    return record


def required_confidence(key: str) -> int:
    return CONFIDENCE_CRITICAL if key in CRITICAL_FACT_KEYS else CONFIDENCE_DEFAULT


def found_in_conversation(conversation_text: str, value: FactValue) -> bool:
    """
    Loose textual corroboration of a non-boolean value.

    Strings must appear verbatim (case-insensitive). Numbers pass if their
    digits appear, or, for values up to 10, if any 1-2 digit number or
    "n/10" pattern appears at all.
    """
    text = conversation_text.lower()
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        number = int(value) if float(value).is_integer() else value
        if str(number) in text:
            return True
        return value <= 10 and _LOOSE_NUMBER_PATTERN.search(text) is not None
    if isinstance(value, str):
        return value.lower().strip() in text
    return False


def _coerce_value(raw: Any) -> FactValue | None:
    """Accept scalar model values; flatten string lists; reject everything else."""
    if isinstance(raw, (bool, int, float)):
        return raw
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, list) and raw and all(isinstance(item, str) for item in raw):
        return ", ".join(item.strip() for item in raw if item.strip()) or None
    return None


def _coerce_confidence(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _same_value(a: FactValue, b: FactValue) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() == b.strip().lower()
    return a == b


class FactExtractor:
    """
    Merge deterministic dialogue facts with gated model-extracted facts.

    Args:
        generator: Text generation collaborator exposing ``generate``.
            When ``None`` only the deterministic projection is used.
        settings: Application settings.
    """

    def __init__(self, generator=None, settings: Settings | None = None):
        self.generator = generator
        self.settings = settings or get_settings()

    async def extract(
        self,
        messages: list[ChatMessage],
        state: ChatState,
        session_id: int | str | None = None,
    ) -> ExtractionResult:
        deterministic = deterministic_facts(state)
        record = FactRecord(facts=dict(deterministic.facts))
        result = ExtractionResult(record=record)

        patient_text = "\n".join(m.content for m in messages if m.role == "user")
        if not patient_text.strip() or self.generator is None:
            return result

        payload = await self._model_extract(patient_text, deterministic)
        if payload is None:
            return result

        diverged: set[str] = set()

        for item in self._items(payload.get("facts")):
            key, value, confidence = item
            threshold = required_confidence(key)
            if confidence < threshold:
                logger.debug("Fact rejected below confidence", key=key, confidence=confidence, threshold=threshold)
                continue
            if key in CRITICAL_FACT_KEYS and not isinstance(value, bool):
                if not found_in_conversation(patient_text, value):
                    logger.debug("Critical fact not corroborated", key=key)
                    continue

            existing = deterministic.get(key)
            if existing is not None:
                if not _same_value(existing.value, value):
                    self._diverge(result, diverged, session_id, key, value, existing.value)
                continue

            record.add(Fact(key=key, value=value, confidence=round(confidence), source="model"))

        for item in self._items(payload.get("negations"), negation=True):
            key, _, confidence = item
            if confidence < CONFIDENCE_DEFAULT:
                logger.debug("Negation rejected below confidence", key=key, confidence=confidence)
                continue

            existing = deterministic.get(key)
            if existing is not None:
                if not _same_value(existing.value, False):
                    self._diverge(result, diverged, session_id, key, False, existing.value)
                continue

            record.add(Fact(key=key, value=False, confidence=round(confidence), source="model"))

        logger.info(
            "Facts reconciled",
            session_id=session_id,
            deterministic_count=len(deterministic),
            total_count=len(record),
            divergence_count=len(result.divergences),
        )
        return result

    async def _model_extract(self, patient_text: str, deterministic: FactRecord) -> dict | None:
        prompt = (
            f"Extract facts from this patient conversation:\n\n{patient_text}\n\n"
            f"Existing facts: {json.dumps(deterministic.values(), default=str)}"
        )
        try:
            content = await self.generator.generate(
                FACTS_EXTRACTION_PROMPT,
                [ChatMessage(role="user", content=prompt)],
                max_tokens=self.settings.extraction_max_tokens,
                temperature=self.settings.extraction_temperature,
                json_mode=True,
            )
        except GenerationError as e:
            logger.warning("Fact extraction unavailable, using dialogue facts only", error=str(e))
            return None

        payload = parse_json_object(content)
        if payload is None:
            logger.warning("Fact extraction returned malformed JSON", content=content[:100])
        return payload

    @staticmethod
    def _items(raw: Any, negation: bool = False) -> list[tuple[str, FactValue, float]]:
        """Validate raw model fact entries, silently skipping malformed ones."""
        if not isinstance(raw, list):
            return []
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            key = entry.get("key")
            if not isinstance(key, str) or not _FACT_KEY_PATTERN.match(key.strip()):
                continue
            confidence = _coerce_confidence(entry.get("confidence"))
            if confidence is None:
                continue
            value = False if negation else _coerce_value(entry.get("value"))
            if value is None:
                continue
            items.append((key.strip(), value, min(confidence, 100.0)))
        return items

    def _diverge(
        self,
        result: ExtractionResult,
        diverged: set[str],
        session_id: int | str | None,
        key: str,
        llm_value: FactValue,
        state_value: FactValue,
    ) -> None:
        """Record at most one divergence per fact key."""
        if key in diverged:
            return
        diverged.add(key)
        result.divergences.append(DivergenceEvent(
            session_id=session_id, fact_key=key, llm_value=llm_value, state_value=state_value,
        ))
        if self.settings.log_extraction_divergence:
            logger.warning(
                "Extraction divergence",
                session_id=session_id,
                key=key,
                llm_value=llm_value,
                state_value=state_value,
            )

