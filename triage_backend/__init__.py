"""
Patient Intake Triage Backend

Guided symptom-intake chat with deterministic risk banding, red-flag
evaluation and a structured clinical handoff for reception and clinicians.
"""

__version__ = "0.1.0"
