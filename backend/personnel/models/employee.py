"""Employee identity models: profiles, aliases, match results and merge previews."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_TERMINATED = "terminated"

REASON_LEFT_COMPANY = "left_company"
REASON_MERGED = "merged"
REASON_OTHER = "other"

CONFIDENCE_EXACT = "exact"
CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_NEW_EMPLOYEE = "new_employee"

_STATUS_PATTERN = r"^(active|inactive|terminated)$"
_REASON_PATTERN = r"^(left_company|merged|other)$"
_CONFIDENCE_PATTERN = r"^(exact|high|medium|new_employee)$"
_METHOD_PATTERN = (
    r"^(exact_name|alias_match|fuzzy_alias_match|fuzzy_match|context_match|"
    r"multiple_matches_create_new|auto_created)$"
)


class ParsedName(BaseModel):
    """Name components split out of a single display string."""

    first_name: str
    last_name: str = ""
    middle_name: str | None = None


class Employee(BaseModel):
    """Canonical identity record (the persisted profile)."""

    person_id: str
    employee_number: str
    first_name: str
    last_name: str = ""
    middle_name: str | None = None
    preferred_name: str | None = None
    full_name: str
    normalized_name: str

    email: str | None = None
    phone: str | None = None
    hire_date: str | None = None
    job_title: str | None = None
    hourly_rate: float | None = None
    overtime_rate: float | None = None

    employment_status: str = Field(default=STATUS_ACTIVE, pattern=_STATUS_PATTERN)
    termination_date: str | None = None
    termination_reason: str | None = Field(default=None, pattern=_REASON_PATTERN)
    termination_note: str | None = None
    merged_into_person_id: str | None = None

    known_aliases: list[str] = Field(default_factory=list)
    project_ids: list[str] = Field(default_factory=list)
    needs_profile_completion: bool = False

    first_mentioned_date: str | None = None
    first_mentioned_report_id: str | None = None
    last_seen_date: str | None = None
    last_seen_project_id: str | None = None

    created_by_user_id: str | None = None
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.employment_status == STATUS_ACTIVE


class AliasRecord(BaseModel):
    """Secondary index entry mapping one normalized alias to one person."""

    person_id: str
    alias: str
    created_at: str


class CreateEmployeeInput(BaseModel):
    """Explicit employee creation from admin tooling."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    middle_name: str | None = Field(default=None, max_length=100)
    preferred_name: str | None = Field(default=None, max_length=100)
    employee_number: str | None = Field(default=None, min_length=1, max_length=50)
    email: str | None = None
    phone: str | None = None
    hire_date: str | None = None
    job_title: str | None = None
    hourly_rate: float | None = Field(default=None, ge=0)
    overtime_rate: float | None = Field(default=None, ge=0)
    employment_status: str = Field(default=STATUS_ACTIVE, pattern=r"^(active|inactive)$")
    created_by_user_id: str | None = None


class EmployeeUpdate(BaseModel):
    """Allow-list of profile fields an explicit edit may change."""

    model_config = {"extra": "forbid"}

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    middle_name: str | None = Field(default=None, max_length=100)
    preferred_name: str | None = Field(default=None, max_length=100)
    employee_number: str | None = Field(default=None, min_length=1, max_length=50)
    email: str | None = None
    phone: str | None = None
    hire_date: str | None = None
    job_title: str | None = None
    hourly_rate: float | None = Field(default=None, ge=0)
    overtime_rate: float | None = Field(default=None, ge=0)
    employment_status: str | None = Field(default=None, pattern=r"^(active|inactive)$")


class MatchContext(BaseModel):
    """Situational context of a name mention."""

    project_id: str | None = None
    report_date: str | None = None
    report_id: str | None = None


class SuggestedMatch(BaseModel):
    """A candidate offered to a human reviewer."""

    employee_id: str
    name: str
    confidence: float = Field(..., ge=0.0, le=100.0)
    reason: str


class MatchResult(BaseModel):
    """Outcome of resolving one name mention."""

    employee_id: str
    confidence: str = Field(..., pattern=_CONFIDENCE_PATTERN)
    needs_review: bool
    matched_name: str | None = None
    match_method: str = Field(..., pattern=_METHOD_PATTERN)
    match_score: float | None = Field(default=None, ge=0.0, le=100.0)
    suggested_matches: list[SuggestedMatch] = Field(default_factory=list)


class FieldConflict(BaseModel):
    field: str
    primary_value: Any = None
    duplicate_value: Any = None


class MergePreview(BaseModel):
    """Read-only plan for folding a duplicate record into a primary one."""

    primary_employee: Employee
    duplicate_employee: Employee
    conflicts: list[FieldConflict] = Field(default_factory=list)
    aliases_to_merge: list[str] = Field(default_factory=list)
    fields_to_fill: dict[str, Any] = Field(default_factory=dict)


class ListEmployeeFilters(BaseModel):
    status: str | None = Field(default=None, pattern=_STATUS_PATTERN)
    project_id: str | None = None
    needs_profile_completion: bool | None = None


class JobTitleCount(BaseModel):
    title: str
    count: int


class PersonnelStatistics(BaseModel):
    total_employees: int
    active_employees: int
    inactive_employees: int
    terminated_employees: int
    incomplete_profiles: int
    average_hourly_rate: float | None = None
    top_job_titles: list[JobTitleCount] = Field(default_factory=list)
