"""Entry point for everything the daily-report pipeline and admin tooling do with employees."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from personnel.core.config import Settings
from personnel.core.errors import DuplicateEmployeeError, EmployeeNotFoundError, InvalidEmployeeDataError
from personnel.models.confidence import ConfidenceScore, PersonnelExtraction, PersonnelExtractionConfidence
from personnel.models.employee import (
    CONFIDENCE_NEW_EMPLOYEE,
    REASON_LEFT_COMPANY,
    REASON_OTHER,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    STATUS_TERMINATED,
    CreateEmployeeInput,
    Employee,
    EmployeeUpdate,
    JobTitleCount,
    ListEmployeeFilters,
    MatchContext,
    MatchResult,
    MergePreview,
    PersonnelStatistics,
)
from personnel.services.alias_index import AliasIndex
from personnel.services.confidence_scorer import (
    NEUTRAL_HISTORICAL_CONFIDENCE,
    ConfidenceScorer,
    confidence_scorer,
    match_confidence_for,
)
from personnel.services.cosmos_repository import CosmosEmployeeRepository
from personnel.services.employee_records import build_employee, profile_incomplete
from personnel.services.employee_repository import EmployeeRepository, InMemoryEmployeeRepository, follow_merges
from personnel.services.match_engine import MatchDecisionEngine
from personnel.services.merge_reconciler import MergeReconciler
from personnel.services.name_normalizer import compose_full_name, display_name, normalize_name

logger = logging.getLogger(__name__)

STORE_MEMORY = "memory"
STORE_COSMOS = "cosmos"
TOP_JOB_TITLES = 5

_NAME_FIELDS = ("first_name", "last_name", "middle_name", "preferred_name")
_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _validate(model: type[_ModelT], data: _ModelT | dict[str, Any]) -> _ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidEmployeeDataError(str(e)) from e


class PersonnelService:
    def __init__(self, scorer: ConfidenceScorer | None = None) -> None:
        self.repository: EmployeeRepository | None = None
        self.alias_index: AliasIndex | None = None
        self.engine: MatchDecisionEngine | None = None
        self.reconciler: MergeReconciler | None = None
        self.scorer = scorer or confidence_scorer
        self.initialized: bool = False

    async def initialize(self, settings: Settings, repository: EmployeeRepository | None = None) -> None:
        if self.initialized:
            return

        if repository is None:
            repository = await self._build_repository(settings)

        self.repository = repository
        self.alias_index = AliasIndex(repository)
        self.engine = MatchDecisionEngine.from_settings(repository, settings, self.alias_index)
        self.reconciler = MergeReconciler(repository)
        self.initialized = True
        logger.info("PersonnelService initialized (repository=%s)", type(repository).__name__)

    async def _build_repository(self, settings: Settings) -> EmployeeRepository:
        store = settings.PERSONNEL_STORE.lower()
        if store == STORE_COSMOS:
            cosmos = CosmosEmployeeRepository()
            await cosmos.initialize(settings)
            if cosmos.initialized:
                return cosmos
            logger.warning("Cosmos personnel store unavailable, using in-memory repository")
        elif store != STORE_MEMORY:
            raise ValueError(f"Unknown PERSONNEL_STORE: {settings.PERSONNEL_STORE!r}")
        return InMemoryEmployeeRepository()

    async def close(self) -> None:
        if isinstance(self.repository, CosmosEmployeeRepository):
            await self.repository.close()
        self.repository = None
        self.alias_index = None
        self.engine = None
        self.reconciler = None
        self.initialized = False

    async def check_connection(self) -> bool:
        if not self.repository:
            return False
        return await self.repository.check_connection()

    def _require_repository(self) -> EmployeeRepository:
        if not self.repository:
            raise RuntimeError("PersonnelService not initialized")
        return self.repository

    async def _require_employee(self, person_id: str) -> Employee:
        employee = await self._require_repository().get_by_id(person_id)
        if employee is None:
            raise EmployeeNotFoundError(person_id)
        return employee

    # --- matching -------------------------------------------------------

    async def match_or_create_employee(
        self,
        name: str,
        context: MatchContext | dict[str, Any] | None = None,
    ) -> MatchResult:
        self._require_repository()
        if context is not None:
            context = _validate(MatchContext, context)
        return await self.engine.match_or_create_employee(name, context)

    def score_personnel_mention(
        self,
        extraction: PersonnelExtraction | dict[str, Any],
        match_result: MatchResult,
        *,
        historical_confidence: float = NEUTRAL_HISTORICAL_CONFIDENCE,
        anomaly_score: float = 0.0,
    ) -> tuple[PersonnelExtractionConfidence, ConfidenceScore]:
        extraction = _validate(PersonnelExtraction, extraction)
        return self.scorer.score_personnel(
            extraction,
            match_confidence_for(match_result),
            historical_confidence=historical_confidence,
            anomaly_score=anomaly_score,
            is_new_entity=match_result.confidence == CONFIDENCE_NEW_EMPLOYEE,
        )

    # --- profiles -------------------------------------------------------

    async def create_employee(self, data: CreateEmployeeInput | dict[str, Any]) -> Employee:
        repository = self._require_repository()
        employee = build_employee(_validate(CreateEmployeeInput, data))

        if await repository.get_by_number(employee.employee_number) is not None:
            raise InvalidEmployeeDataError(f"employee number {employee.employee_number} is already in use")

        created = await repository.create(employee)
        logger.info("Created employee %s '%s'", created.person_id, created.full_name)
        return created

    async def get_employee_by_id(self, person_id: str) -> Employee | None:
        return await self._require_repository().get_by_id(person_id)

    async def get_employee_by_number(self, employee_number: str) -> Employee | None:
        return await self._require_repository().get_by_number(employee_number)

    async def resolve_current_employee(self, person_id: str) -> Employee | None:
        """Follow merge back-references from a possibly merged-away id."""
        repository = self._require_repository()
        return await follow_merges(repository, await repository.get_by_id(person_id))

    async def search_employees_by_name(self, query: str) -> list[Employee]:
        normalized = normalize_name(query)
        if not normalized:
            return []
        return await self._require_repository().search_by_name(normalized)

    async def list_employees(
        self,
        filters: ListEmployeeFilters | dict[str, Any] | None = None,
    ) -> list[Employee]:
        if filters is not None:
            filters = _validate(ListEmployeeFilters, filters)
        return await self._require_repository().list_employees(filters)

    async def update_employee(self, person_id: str, data: EmployeeUpdate | dict[str, Any]) -> Employee:
        repository = self._require_repository()
        fields = _validate(EmployeeUpdate, data).model_dump(exclude_unset=True)
        current = await self._require_employee(person_id)
        if current.employment_status == STATUS_TERMINATED:
            raise InvalidEmployeeDataError(f"{person_id} is terminated and cannot be edited")
        if not fields:
            return current

        for field in _NAME_FIELDS:
            if field in fields:
                fields[field] = display_name(fields[field]) or None
        if any(f in fields and not fields[f] for f in ("first_name", "last_name")):
            raise InvalidEmployeeDataError("first and last name cannot be blank")

        if "employee_number" in fields and fields["employee_number"] != current.employee_number:
            if await repository.get_by_number(fields["employee_number"]) is not None:
                raise InvalidEmployeeDataError(f"employee number {fields['employee_number']} is already in use")

        if "first_name" in fields or "last_name" in fields:
            full_name = compose_full_name(
                fields.get("first_name") or current.first_name,
                fields.get("last_name") or current.last_name,
            )
            normalized = normalize_name(full_name)
            if normalized != current.normalized_name:
                holder = await repository.get_by_normalized_name(normalized)
                if holder is not None and holder.person_id != person_id:
                    raise DuplicateEmployeeError(normalized, holder.person_id)
                # index the new name; the old one stays as an alias
                await self.alias_index.add(person_id, normalized)
            fields["full_name"] = full_name
            fields["normalized_name"] = normalized

        merged = {**current.model_dump(include={"email", "phone", "hire_date"}), **fields}
        fields["needs_profile_completion"] = profile_incomplete(
            merged.get("email"), merged.get("phone"), merged.get("hire_date")
        )

        updated = await repository.update(person_id, fields)
        logger.info("Updated employee %s (%s)", person_id, ", ".join(sorted(fields)))
        return updated

    async def terminate_employee(
        self,
        person_id: str,
        termination_date: str | None = None,
        reason: str = REASON_LEFT_COMPANY,
        note: str | None = None,
    ) -> Employee:
        if reason not in (REASON_LEFT_COMPANY, REASON_OTHER):
            raise InvalidEmployeeDataError(f"termination reason must be left_company or other, got {reason!r}")

        current = await self._require_employee(person_id)
        if current.employment_status == STATUS_TERMINATED:
            raise InvalidEmployeeDataError(f"{person_id} is already terminated")

        terminated = await self._require_repository().terminate(person_id, termination_date, reason, note=note)
        logger.info("Terminated employee %s (%s)", person_id, reason)
        return terminated

    async def add_employee_alias(self, person_id: str, alias: str) -> Employee:
        await self._require_employee(person_id)
        await self.alias_index.add(person_id, alias)
        return await self._require_employee(person_id)

    # --- merging --------------------------------------------------------

    async def preview_merge(self, primary_id: str, duplicate_id: str) -> MergePreview:
        self._require_repository()
        return await self.reconciler.preview(primary_id, duplicate_id)

    async def apply_merge(
        self,
        primary_id: str,
        duplicate_id: str,
        resolved_fields: dict[str, Any] | None = None,
    ) -> Employee:
        self._require_repository()
        return await self.reconciler.apply(primary_id, duplicate_id, resolved_fields)

    # --- reporting ------------------------------------------------------

    async def get_statistics(self) -> PersonnelStatistics:
        employees = await self._require_repository().list_employees()

        statuses = Counter(e.employment_status for e in employees)
        current = [e for e in employees if e.employment_status != STATUS_TERMINATED]
        rates = [e.hourly_rate for e in current if e.hourly_rate is not None]
        titles = Counter(e.job_title for e in current if e.job_title)

        return PersonnelStatistics(
            total_employees=len(employees),
            active_employees=statuses[STATUS_ACTIVE],
            inactive_employees=statuses[STATUS_INACTIVE],
            terminated_employees=statuses[STATUS_TERMINATED],
            incomplete_profiles=sum(1 for e in current if e.needs_profile_completion),
            average_hourly_rate=round(sum(rates) / len(rates), 2) if rates else None,
            top_job_titles=[JobTitleCount(title=t, count=c) for t, c in titles.most_common(TOP_JOB_TITLES)],
        )


personnel_service = PersonnelService()
