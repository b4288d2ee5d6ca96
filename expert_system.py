"""
Malaria & Typhoid expert system.

Rule-based scoring of a symptom checklist plus optional lab results into a
risk tier and recommendation per disease. Used by the symptom-checker endpoint
and by diagnosis creation.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised when a symptom report cannot be assessed."""


class Severity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class LabOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NOT_DONE = "not-done"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


# ── Symptom Catalog ──────────────────────────────────────────────────────────
MALARIA_SYMPTOMS = frozenset({
    "fever", "chills", "headache", "muscle aches", "fatigue", "nausea",
    "vomiting", "diarrhea", "abdominal pain", "sweating", "shivering",
})

TYPHOID_SYMPTOMS = frozenset({
    "fever", "headache", "weakness", "stomach pain", "constipation", "diarrhea",
    "loss of appetite", "rash", "enlarged spleen", "rose spots", "dry cough",
})

HIGH_RISK_SCORE = 5
MODERATE_RISK_SCORE = 3


@dataclass(frozen=True)
class Disease:
    name: str
    symptoms: frozenset
    confirmatory_tests: Tuple[str, ...]


MALARIA = Disease("malaria", MALARIA_SYMPTOMS, ("rapidTest", "microscopy"))
TYPHOID = Disease("typhoid", TYPHOID_SYMPTOMS, ("widalTest", "bloodCulture"))
DISEASES = (MALARIA, TYPHOID)


# ── Input types ──────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class SymptomEntry:
    symptom: str
    severity: Optional[Severity] = None
    duration: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DiseaseAssessment:
    disease: str
    risk_level: RiskLevel
    score: int
    matching_symptoms: Tuple[str, ...] = field(default_factory=tuple)
    recommendation: str = ""

    def to_dict(self) -> dict:
        return {
            "riskLevel": self.risk_level.value,
            "score": self.score,
            "matchingSymptoms": list(self.matching_symptoms),
            "recommendation": self.recommendation,
        }


def _coerce_entry(raw, position: int) -> SymptomEntry:
    if isinstance(raw, SymptomEntry):
        entry = raw
    elif isinstance(raw, Mapping):
        entry = SymptomEntry(
            symptom=raw.get("symptom"),
            severity=raw.get("severity"),
            duration=raw.get("duration"),
            notes=raw.get("notes"),
        )
    else:
        raise ValidationError(f"symptom #{position + 1} must be an object")

    name = entry.symptom
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"symptom #{position + 1} has no name")

    severity = entry.severity
    if severity is not None and not isinstance(severity, Severity):
        try:
            severity = Severity(severity)
        except ValueError:
            raise ValidationError(
                f"invalid severity '{severity}' for symptom '{name}'; "
                f"expected one of: mild, moderate, severe"
            ) from None

    return SymptomEntry(name, severity, entry.duration, entry.notes)


def parse_symptoms(raw) -> List[SymptomEntry]:
    """
    Validate a raw symptom report.

    Accepts a sequence of `SymptomEntry` objects or mappings with a `symptom`
    key. Raises ValidationError if the report is missing, is not a sequence,
    is empty, or holds an unnamed entry or unknown severity.
    """
    if raw is None or isinstance(raw, (str, bytes, Mapping)) or not isinstance(raw, Sequence):
        raise ValidationError("symptoms required")
    if len(raw) == 0:
        raise ValidationError("symptoms required")
    return [_coerce_entry(item, i) for i, item in enumerate(raw)]


# ── Risk Scorer ──────────────────────────────────────────────────────────────
def matching_symptoms(symptoms: Sequence[SymptomEntry], disease: Disease) -> List[str]:
    """Names from the report found in the disease catalog, in report order and original spelling."""
    return [s.symptom for s in symptoms if s.symptom.strip().lower() in disease.symptoms]


def has_positive_test(disease: Disease, test_results: Optional[Mapping]) -> bool:
    if not test_results:
        return False
    return any(test_results.get(test) == LabOutcome.POSITIVE for test in disease.confirmatory_tests)


def classify(score: int, confirmed: bool = False) -> RiskLevel:
    if score >= HIGH_RISK_SCORE or confirmed:
        return RiskLevel.HIGH
    if score >= MODERATE_RISK_SCORE:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def score_risk(symptoms: Sequence[SymptomEntry], disease: Disease,
               test_results: Optional[Mapping] = None) -> Tuple[int, RiskLevel]:
    """
    Score one disease.

    Every matching entry counts, repeats included. Severity and duration are
    carried for the record only and do not weight the score.
    """
    score = len(matching_symptoms(symptoms, disease))
    return score, classify(score, has_positive_test(disease, test_results))


# ── Recommendation Mapper ────────────────────────────────────────────────────
_RECOMMENDATIONS = {
    RiskLevel.HIGH: "Immediate {disease} testing and treatment recommended",
    RiskLevel.MODERATE: "Consider {disease} testing",
    RiskLevel.LOW: "Low {disease} risk",
}


def recommendation_for(disease: Disease, level: RiskLevel) -> str:
    return _RECOMMENDATIONS[RiskLevel(level)].format(disease=disease.name)


# ── Assessment Service ───────────────────────────────────────────────────────
def assess_disease(symptoms: Sequence[SymptomEntry], disease: Disease,
                   test_results: Optional[Mapping] = None) -> DiseaseAssessment:
    score, level = score_risk(symptoms, disease, test_results)
    return DiseaseAssessment(
        disease=disease.name,
        risk_level=level,
        score=score,
        matching_symptoms=tuple(matching_symptoms(symptoms, disease)),
        recommendation=recommendation_for(disease, level),
    )


def assess(symptoms, test_results: Optional[Mapping] = None) -> Dict[str, DiseaseAssessment]:
    """
    Run the expert system for malaria and typhoid over one symptom report.

    Args:
        symptoms: sequence of SymptomEntry or {"symptom", "severity"?, "duration"?}
        test_results: optional {"malaria": {...}, "typhoid": {...}} mapping of
            lab test name to outcome; each disease only sees its own results.

    Returns:
        {"malaria": DiseaseAssessment, "typhoid": DiseaseAssessment}

    Raises:
        ValidationError: before any scoring, if the report is malformed.
    """
    entries = parse_symptoms(symptoms)
    test_results = test_results or {}

    result = {
        disease.name: assess_disease(entries, disease, test_results.get(disease.name))
        for disease in DISEASES
    }
    logger.info(
        "Assessed %d symptom(s): %s",
        len(entries),
        ", ".join(f"{name}={a.risk_level.value}" for name, a in result.items()),
    )
    return result


def assessment_to_dict(result: Mapping[str, DiseaseAssessment]) -> dict:
    return {name: a.to_dict() for name, a in result.items()}
