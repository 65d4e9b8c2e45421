"""Pydantic models for transcript extractions and their confidence scores."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PersonnelExtraction(BaseModel):
    """A person mention as produced by the transcript extractor."""

    full_name: str = Field(..., min_length=1)
    go_by_name: str = ""
    position: str = ""
    hours_worked: float = 0.0
    overtime_hours: float = 0.0
    extracted_from_text: str = ""


class VendorExtraction(BaseModel):
    """A delivery mention as produced by the transcript extractor."""

    company_name: str = Field(..., min_length=1)
    materials_delivered: str = ""
    delivery_time: str | None = None
    received_by: str | None = None
    extracted_from_text: str = ""


class ConstraintExtraction(BaseModel):
    """A site constraint (delay, hazard, shortage) mention."""

    category: str
    severity: str
    description: str = ""
    extracted_from_text: str = ""


class PersonnelExtractionConfidence(BaseModel):
    name_confidence: float = Field(..., ge=0.0, le=100.0)
    position_confidence: float = Field(..., ge=0.0, le=100.0)
    hours_confidence: float = Field(..., ge=0.0, le=100.0)
    match_confidence: float = Field(..., ge=0.0, le=100.0)


class VendorExtractionConfidence(BaseModel):
    company_name_confidence: float = Field(..., ge=0.0, le=100.0)
    delivery_detail_confidence: float = Field(..., ge=0.0, le=100.0)
    match_confidence: float = Field(..., ge=0.0, le=100.0)


class ConstraintExtractionConfidence(BaseModel):
    category_severity_confidence: float = Field(..., ge=0.0, le=100.0)
    description_quality_confidence: float = Field(..., ge=0.0, le=100.0)


class ReviewDecision(BaseModel):
    requires_review: bool
    reason: str | None = None


class ConfidenceScore(BaseModel):
    """Combined confidence for one extracted entity."""

    overall: float = Field(..., ge=0.0, le=100.0)
    extraction_confidence: float = Field(..., ge=0.0, le=100.0)
    match_confidence: float = Field(..., ge=0.0, le=100.0)
    historical_confidence: float = Field(..., ge=0.0, le=100.0)
    anomaly_score: float = Field(..., ge=0.0, le=100.0)
    requires_review: bool
    review_reason: str | None = None
