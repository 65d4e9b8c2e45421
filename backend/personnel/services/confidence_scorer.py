from __future__ import annotations

import logging
import re

from personnel.models.confidence import (
    ConfidenceScore,
    ConstraintExtraction,
    ConstraintExtractionConfidence,
    PersonnelExtraction,
    PersonnelExtractionConfidence,
    ReviewDecision,
    VendorExtraction,
    VendorExtractionConfidence,
)
from personnel.models.employee import (
    CONFIDENCE_EXACT,
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_NEW_EMPLOYEE,
    MatchResult,
)
from personnel.services.similarity import similarity

logger = logging.getLogger(__name__)

WEIGHT_EXTRACTION = 0.40
WEIGHT_MATCH = 0.35
WEIGHT_HISTORICAL = 0.25
MAX_ANOMALY_PENALTY = 15.0

REVIEW_BELOW = 60.0
REVIEW_NEW_ENTITY_BELOW = 85.0

NEUTRAL_HISTORICAL_CONFIDENCE = 70.0
NO_MATCH_REQUIRED_CONFIDENCE = 100.0

MAX_HOURS_WORKED = 16.0
MAX_OVERTIME_HOURS = 8.0
LONG_DAY_HOURS = 12.0

VALID_POSITIONS = (
    "Project Manager",
    "Foreman",
    "Journeyman",
    "Apprentice",
    "Superintendent",
    "Laborer",
)
POSITION_FUZZY_THRESHOLD = 80.0

COMPANY_SUFFIXES = ("Inc", "LLC", "Corp", "Ltd", "Co")
GENERIC_VENDOR_TERMS = ("vendor", "supplier", "company", "delivery")

VALID_CATEGORIES = ("delay", "safety", "material", "weather", "labor", "coordination", "other")
VALID_SEVERITIES = ("low", "medium", "high", "critical")
SAFETY_KEYWORDS = ("injury", "accident", "unsafe", "hazard", "danger")
ACTIONABLE_KEYWORDS = ("need", "require", "must", "waiting", "blocked", "issue")

MATCH_TIER_CONFIDENCE: dict[str, float] = {
    CONFIDENCE_EXACT: 100.0,
    CONFIDENCE_HIGH: 90.0,
    CONFIDENCE_MEDIUM: 75.0,
    CONFIDENCE_NEW_EMPLOYEE: 50.0,
}

_UNUSUAL_NAME_CHARS = re.compile(r"[0-9!@#$%^&*()]")
_HOURS_MENTION = re.compile(r"(\d+)\s*(hour|hr|hrs)", re.IGNORECASE)


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def calculate_overall_confidence(
    extraction_confidence: float,
    match_confidence: float,
    historical_confidence: float,
    anomaly_score: float,
) -> float:
    base = (
        WEIGHT_EXTRACTION * extraction_confidence
        + WEIGHT_MATCH * match_confidence
        + WEIGHT_HISTORICAL * historical_confidence
    )
    anomaly_penalty = (anomaly_score / 100.0) * MAX_ANOMALY_PENALTY
    return _clamp(base - anomaly_penalty)


def calculate_name_confidence(full_name: str, go_by_name: str, extracted_text: str) -> float:
    score = 100.0

    if " " not in full_name.strip():
        score -= 20
    if len(full_name) < 3:
        score -= 30
    if _UNUSUAL_NAME_CHARS.search(full_name):
        score -= 40

    mention = (go_by_name or full_name).strip().lower()
    if mention and extracted_text.lower().count(mention) > 1:
        score += 10

    return _clamp(score)


def calculate_position_confidence(position: str, extracted_text: str) -> float:
    wanted = " ".join(position.split()).lower()
    if not wanted:
        return 40.0

    if any(wanted == valid.lower() for valid in VALID_POSITIONS):
        return 95.0

    for valid in VALID_POSITIONS:
        if similarity(wanted, valid.lower()) > POSITION_FUZZY_THRESHOLD:
            return 75.0

    if wanted in extracted_text.lower():
        return 60.0

    return 40.0


def calculate_hours_confidence(hours_worked: float, overtime_hours: float, extracted_text: str) -> float:
    score = 100.0

    hours_out_of_range = hours_worked < 0 or hours_worked > MAX_HOURS_WORKED
    if hours_out_of_range:
        score -= 50
    if overtime_hours < 0 or overtime_hours > MAX_OVERTIME_HOURS:
        score -= 30

    total = hours_worked + overtime_hours
    if LONG_DAY_HOURS < total <= MAX_HOURS_WORKED:
        score -= 10

    # a spoken "17 hours" does not make 17 hours plausible
    if not hours_out_of_range and _HOURS_MENTION.search(extracted_text):
        score += 10

    return _clamp(score)


def calculate_company_name_confidence(company_name: str, extracted_text: str) -> float:
    score = 100.0

    if len(company_name) < 3:
        score -= 40
    if any(suffix in company_name for suffix in COMPANY_SUFFIXES):
        score += 15
    if any(term in company_name.lower() for term in GENERIC_VENDOR_TERMS):
        score -= 30

    return _clamp(score)


def calculate_delivery_detail_confidence(
    materials_delivered: str,
    delivery_time: str | None,
    received_by: str | None,
) -> float:
    score = 60.0

    if materials_delivered and len(materials_delivered) > 5:
        score += 20
    if delivery_time:
        score += 10
    if received_by:
        score += 10

    return _clamp(score)


def calculate_category_severity_confidence(category: str, severity: str, description: str) -> float:
    score = 100.0

    if category not in VALID_CATEGORIES:
        score -= 30
    if severity not in VALID_SEVERITIES:
        score -= 30

    is_safety_related = any(kw in description.lower() for kw in SAFETY_KEYWORDS)
    if is_safety_related and category == "safety":
        score += 10
    elif is_safety_related:
        score -= 20

    return _clamp(score)


def calculate_description_quality(description: str, extracted_text: str) -> float:
    score = 100.0

    if len(description) < 10:
        score -= 40
    if 30 < len(description) < 500:
        score += 10
    if any(kw in description.lower() for kw in ACTIONABLE_KEYWORDS):
        score += 10

    return _clamp(score)


def should_require_review(
    overall_confidence: float,
    entity_type: str,
    *,
    is_new_entity: bool = False,
    severity: str | None = None,
) -> ReviewDecision:
    if entity_type == "constraint" and severity == "critical":
        return ReviewDecision(requires_review=True, reason="Critical safety or project issue detected")

    if overall_confidence < REVIEW_BELOW:
        return ReviewDecision(
            requires_review=True,
            reason=f"Low confidence score: {overall_confidence:.1f}%",
        )

    if overall_confidence < REVIEW_NEW_ENTITY_BELOW and is_new_entity:
        return ReviewDecision(
            requires_review=True,
            reason=f"New {entity_type} with moderate confidence",
        )

    return ReviewDecision(requires_review=False)


def match_confidence_for(result: MatchResult) -> float:
    """Translate a match outcome into the 0-100 match signal."""
    if result.confidence == CONFIDENCE_MEDIUM and result.match_score is not None:
        return result.match_score
    return MATCH_TIER_CONFIDENCE[result.confidence]


class ConfidenceScorer:
    """Combines per-field extraction scores with match and history signals."""

    def _combine(
        self,
        entity_type: str,
        extraction_confidence: float,
        match_confidence: float,
        historical_confidence: float,
        anomaly_score: float,
        *,
        is_new_entity: bool = False,
        severity: str | None = None,
    ) -> ConfidenceScore:
        overall = calculate_overall_confidence(
            extraction_confidence,
            match_confidence,
            historical_confidence,
            anomaly_score,
        )
        decision = should_require_review(
            overall,
            entity_type,
            is_new_entity=is_new_entity,
            severity=severity,
        )
        if decision.requires_review:
            logger.debug("%s extraction flagged for review: %s", entity_type, decision.reason)

        return ConfidenceScore(
            overall=round(overall, 2),
            extraction_confidence=round(extraction_confidence, 2),
            match_confidence=round(match_confidence, 2),
            historical_confidence=round(historical_confidence, 2),
            anomaly_score=round(anomaly_score, 2),
            requires_review=decision.requires_review,
            review_reason=decision.reason,
        )

    def score_personnel(
        self,
        extraction: PersonnelExtraction,
        match_confidence: float,
        *,
        historical_confidence: float = NEUTRAL_HISTORICAL_CONFIDENCE,
        anomaly_score: float = 0.0,
        is_new_entity: bool = False,
    ) -> tuple[PersonnelExtractionConfidence, ConfidenceScore]:
        breakdown = PersonnelExtractionConfidence(
            name_confidence=calculate_name_confidence(
                extraction.full_name,
                extraction.go_by_name,
                extraction.extracted_from_text,
            ),
            position_confidence=calculate_position_confidence(
                extraction.position,
                extraction.extracted_from_text,
            ),
            hours_confidence=calculate_hours_confidence(
                extraction.hours_worked,
                extraction.overtime_hours,
                extraction.extracted_from_text,
            ),
            match_confidence=_clamp(match_confidence),
        )
        extraction_confidence = (
            breakdown.name_confidence + breakdown.position_confidence + breakdown.hours_confidence
        ) / 3.0

        score = self._combine(
            "personnel",
            extraction_confidence,
            breakdown.match_confidence,
            historical_confidence,
            anomaly_score,
            is_new_entity=is_new_entity,
        )
        return breakdown, score

    def score_vendor(
        self,
        extraction: VendorExtraction,
        match_confidence: float,
        *,
        historical_confidence: float = NEUTRAL_HISTORICAL_CONFIDENCE,
        anomaly_score: float = 0.0,
        is_new_entity: bool = False,
    ) -> tuple[VendorExtractionConfidence, ConfidenceScore]:
        breakdown = VendorExtractionConfidence(
            company_name_confidence=calculate_company_name_confidence(
                extraction.company_name,
                extraction.extracted_from_text,
            ),
            delivery_detail_confidence=calculate_delivery_detail_confidence(
                extraction.materials_delivered,
                extraction.delivery_time,
                extraction.received_by,
            ),
            match_confidence=_clamp(match_confidence),
        )
        extraction_confidence = (breakdown.company_name_confidence + breakdown.delivery_detail_confidence) / 2.0

        score = self._combine(
            "vendor",
            extraction_confidence,
            breakdown.match_confidence,
            historical_confidence,
            anomaly_score,
            is_new_entity=is_new_entity,
        )
        return breakdown, score

    def score_constraint(
        self,
        extraction: ConstraintExtraction,
        *,
        historical_confidence: float = NEUTRAL_HISTORICAL_CONFIDENCE,
        anomaly_score: float = 0.0,
    ) -> tuple[ConstraintExtractionConfidence, ConfidenceScore]:
        breakdown = ConstraintExtractionConfidence(
            category_severity_confidence=calculate_category_severity_confidence(
                extraction.category,
                extraction.severity,
                extraction.description,
            ),
            description_quality_confidence=calculate_description_quality(
                extraction.description,
                extraction.extracted_from_text,
            ),
        )
        extraction_confidence = (
            breakdown.category_severity_confidence + breakdown.description_quality_confidence
        ) / 2.0

        # constraints are not matched against stored entities
        score = self._combine(
            "constraint",
            extraction_confidence,
            NO_MATCH_REQUIRED_CONFIDENCE,
            historical_confidence,
            anomaly_score,
            severity=extraction.severity,
        )
        return breakdown, score


confidence_scorer = ConfidenceScorer()
