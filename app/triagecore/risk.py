"""Deterministic safety overrides applied to every risk assessment."""

from __future__ import annotations

import logging

from triagecore.schemas import BAND_PROBABILITY, ClinicalEvidence, RiskAssessment, RiskBand, SafetyOverride

logger = logging.getLogger(__name__)

CRITICAL_RED_FLAGS: tuple[str, ...] = (
    "crushing chest pain",
    "worst headache of life",
    "difficulty breathing",
    "suicidal ideation",
    "anaphylaxis",
    "severe trauma",
)

# Complaint wording that should normally come with a recorded red flag.
_CRITICAL_COMPLAINT_TERMS: tuple[str, ...] = (
    "chest pain",
    "difficulty breathing",
    "shortness of breath",
    "severe headache",
    "suicidal",
    "unconscious",
    "seizure",
    "overdose",
)

CRITICAL_OVERRIDE_PROBABILITY = 0.95
HIGH_SEVERITY_THRESHOLD = 8.0
HIGH_SEVERITY_PROBABILITY_FLOOR = 0.7
CRITICAL_OVERRIDE_NOTE = "Critical red flag detected - immediate attention required"
HIGH_SEVERITY_NOTE = "High reported severity - upgraded from routine"


def probability_from_band(band: RiskBand) -> float:
    return BAND_PROBABILITY[band]


def find_critical_red_flag(red_flags: list[str]) -> str | None:
    for flag in red_flags:
        lowered = flag.lower()
        for phrase in CRITICAL_RED_FLAGS:
            if phrase in lowered:
                return phrase
    return None


def apply_safety_overrides(
    assessment: RiskAssessment,
    evidence: ClinicalEvidence,
) -> tuple[RiskAssessment, list[SafetyOverride]]:
    """Return the assessment after the safety rules, plus one record per rule fired.

    The rules only ever raise band and probability. The input is not mutated.
    """
    overrides: list[SafetyOverride] = []
    current = assessment

    critical = find_critical_red_flag(evidence.features.red_flags)
    if critical is not None:
        updated = current.model_copy(
            update={
                "band": "immediate",
                "p_urgent": max(CRITICAL_OVERRIDE_PROBABILITY, current.p_urgent),
                "explanation": [CRITICAL_OVERRIDE_NOTE, *current.explanation],
            }
        )
        overrides.append(
            SafetyOverride(
                rule="critical_red_flag",
                trigger=critical,
                previous_band=current.band,
                new_band=updated.band,
                previous_p_urgent=current.p_urgent,
                new_p_urgent=updated.p_urgent,
            )
        )
        current = updated

    severity = evidence.features.severity
    if severity is not None and severity >= HIGH_SEVERITY_THRESHOLD and current.band == "routine":
        updated = current.model_copy(
            update={
                "band": "urgent",
                "p_urgent": max(HIGH_SEVERITY_PROBABILITY_FLOOR, current.p_urgent),
                "explanation": [HIGH_SEVERITY_NOTE, *current.explanation],
            }
        )
        overrides.append(
            SafetyOverride(
                rule="high_severity",
                trigger=f"severity={severity:g}",
                previous_band=current.band,
                new_band=updated.band,
                previous_p_urgent=current.p_urgent,
                new_p_urgent=updated.p_urgent,
            )
        )
        current = updated

    for item in overrides:
        logger.warning(
            "safety_override_applied rule=%s trigger=%r band=%s->%s p_urgent=%.2f->%.2f",
            item.rule,
            item.trigger,
            item.previous_band,
            item.new_band,
            item.previous_p_urgent,
            item.new_p_urgent,
        )
    return current, overrides


def audit_evidence(evidence: ClinicalEvidence) -> list[str]:
    """Flag evidence that looks under-reported; advisory only."""
    warnings: list[str] = []
    complaint = evidence.presenting_complaint.lower()
    has_red_flags = bool(evidence.features.red_flags)

    if not has_red_flags and any(term in complaint for term in _CRITICAL_COMPLAINT_TERMS):
        warnings.append("Critical symptoms described but no red flags recorded - verify with a clinician")

    severity = evidence.features.severity
    if not has_red_flags and severity is not None and severity >= HIGH_SEVERITY_THRESHOLD:
        warnings.append("High severity reported without red flags - consider closer review")
    return warnings
