"""
Deterministic triage rules engine.

Maps a flat fact record to a Red/Amber/Green band, an ordered list of
triggered red flags and a templated summary. No model is involved in
any decision made here.

Band precedence is total: any flag means Red; otherwise severity >= 6 or
age > 75 means Amber; otherwise Green.
"""

from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    ChatState,
    RiskBand,
    TriageAnswers,
    TriageResult,
)

logger = get_logger(__name__)


EMERGENCY_ESCALATION_FLAG = "Emergency escalation triggered"

AMBER_SEVERITY_THRESHOLD = 6
AMBER_AGE_THRESHOLD = 75


GREEN_RECOMMENDATIONS: dict[str, list[str]] = {
    "chest pain": [
        "Rest and avoid strenuous physical activity",
        "Monitor your symptoms - if pain worsens or spreads, seek immediate medical attention",
        "Consider over-the-counter antacids if the pain feels like heartburn",
        "Keep a symptom diary noting when pain occurs and what triggers it",
        "Schedule an appointment with your GP within the next few days",
    ],
    "shortness of breath": [
        "Rest in a comfortable position and try to relax",
        "Practice slow, deep breathing exercises",
        "Avoid known triggers such as allergens or strenuous activity",
        "Stay hydrated and keep your environment well-ventilated",
        "Book an appointment with your GP to discuss your symptoms",
    ],
    "abdominal pain": [
        "Stay hydrated with clear fluids",
        "Eat light, bland foods if tolerated",
        "Apply a warm compress to your abdomen for comfort",
        "Avoid spicy, fatty, or acidic foods",
        "Rest and monitor your symptoms - see a GP if they persist beyond 24-48 hours",
    ],
    "headache": [
        "Rest in a quiet, dark room",
        "Stay well hydrated",
        "Consider over-the-counter pain relief like paracetamol or ibuprofen",
        "Apply a cold or warm compress to your forehead or neck",
        "Reduce screen time and take regular breaks from work",
    ],
    "fever": [
        "Rest and get plenty of sleep",
        "Drink plenty of fluids to stay hydrated",
        "Take paracetamol or ibuprofen to help reduce temperature",
        "Wear light clothing and keep your room cool",
        "Monitor your temperature and seek medical advice if it exceeds 39.4°C (103°F)",
    ],
}

DEFAULT_RECOMMENDATIONS = [
    "Rest and monitor your symptoms",
    "Stay well hydrated",
    "Take over-the-counter pain relief if needed",
    "Schedule an appointment with your GP if symptoms persist",
    "Return for assessment if your condition worsens",
]


def get_green_recommendations(complaint: str | None) -> list[str]:
    """Static self-care advice for a complaint, with a generic fallback."""
    key = (complaint or "").strip().lower()
    return list(GREEN_RECOMMENDATIONS.get(key, DEFAULT_RECOMMENDATIONS))


def build_triage_answers(state: ChatState) -> TriageAnswers:
    """
    Project dialogue state onto the rules-engine fact record.

    This is the only projection used for both the stored submission band
    and the handoff's authoritative category, so the two cannot drift.
    """
    shortness_of_breath = state.shortness_of_breath
    if shortness_of_breath is None:
        shortness_of_breath = state.trouble_breathing

    return TriageAnswers(
        complaint=state.complaint or "",
        age=state.age or 0,
        sex=state.sex or "",
        severity=state.severity or 0,
        onset=state.onset,
        location=state.location,
        duration=state.duration,
        medical_history=state.medical_history,
        medications=state.medications,
        confusion=bool(state.confusion),
        severe_bleeding=bool(state.severe_bleeding),
        collapse=bool(state.collapse),
        shortness_of_breath=bool(shortness_of_breath),
        radiating_pain=bool(state.radiating_pain),
        sweating=bool(state.sweating),
        nausea=bool(state.nausea),
        cardiac_history=bool(state.cardiac_history),
        cyanosis=bool(state.cyanosis),
        speaking_difficulty=bool(state.speaking_difficulty),
        vomiting_blood=bool(state.vomiting_blood),
        bloody_stools=bool(state.bloody_stools),
        rigid_abdomen=bool(state.rigid_abdomen),
        pregnancy=bool(state.pregnancy),
        bleeding=bool(state.bleeding),
        thunderclap=bool(state.thunderclap),
        neck_stiffness=bool(state.neck_stiffness),
        visual_disturbance=bool(state.visual_disturbance),
        neurological_symptoms=bool(state.neurological_symptoms),
        non_blanching_rash=bool(state.non_blanching_rash),
        fever=bool(state.fever),
        emergency_escalation=state.emergency_escalation,
    )


class RulesEngine:
    """Pure rules engine. Stateless; safe to share across sessions."""

    def evaluate(self, answers: TriageAnswers) -> TriageResult:
        """
        Classify a fact record.

        Args:
            answers: Flat fact record.

        Returns:
            TriageResult with band, flags in rule order and summary.
            Green results carry five self-care recommendations.
        """
        flags: list[str] = []
        complaint = answers.complaint.strip().lower()
        severity = answers.severity
        age = answers.age

        # Global red flags
        if answers.emergency_escalation:
            flags.append(EMERGENCY_ESCALATION_FLAG)
        if answers.confusion:
            flags.append("New confusion")
        if answers.severe_bleeding:
            flags.append("Severe bleeding")
        if severity >= 9:
            flags.append("Pain severity 9-10/10")

        # Complaint-specific rules
        if complaint == "chest pain":
            if answers.shortness_of_breath:
                flags.append("Chest pain + SOB")
            if answers.radiating_pain:
                flags.append("Radiating pain")
            if age > 50 and severity > 5:
                flags.append("Age > 50 with moderate chest pain")
            if answers.cardiac_history:
                flags.append("History of heart disease")

        elif complaint == "shortness of breath":
            if answers.cyanosis:
                flags.append("Cyanosis (blue lips/skin)")
            if answers.speaking_difficulty:
                flags.append("Unable to speak full sentences")

        elif complaint == "abdominal pain":
            if answers.vomiting_blood:
                flags.append("Vomiting blood")
            if answers.rigid_abdomen:
                flags.append("Rigid abdomen")
            if answers.pregnancy and answers.bleeding:
                flags.append("Pregnancy + bleeding")

        elif complaint == "headache":
            if answers.thunderclap:
                flags.append("Sudden 'thunderclap' onset")
            if answers.neck_stiffness:
                flags.append("Neck stiffness")
            if answers.visual_disturbance:
                flags.append("Visual disturbance")

        if flags:
            band = RiskBand.RED
        elif severity >= AMBER_SEVERITY_THRESHOLD or age > AMBER_AGE_THRESHOLD:
            band = RiskBand.AMBER
        else:
            band = RiskBand.GREEN

        summary = (
            f"{age}y {answers.sex} presenting with {complaint} "
            f"(Severity {severity}/10). Risk: {band.value}. "
            f"Flags: {', '.join(flags) if flags else 'None'}."
        )

        recommendations = get_green_recommendations(complaint) if band == RiskBand.GREEN else []

        logger.debug("Rules evaluated", band=band.value, flag_count=len(flags), complaint=complaint)

        return TriageResult(
            risk_band=band,
            red_flags=flags,
            summary=summary,
            recommendations=recommendations,
        )

    def evaluate_state(self, state: ChatState) -> TriageResult:
        """Classify a dialogue state via the shared projection."""
        return self.evaluate(build_triage_answers(state))


# Singleton instance
_engine_instance: RulesEngine | None = None


def get_rules_engine() -> RulesEngine:
    """Get the singleton rules engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RulesEngine()
    return _engine_instance
