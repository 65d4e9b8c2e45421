"""Fold a duplicate employee record into a primary one.

Historical records that reference the duplicate are never rewritten; the
duplicate is terminated with ``merged_into_person_id`` pointing at the primary
so readers can follow the back-reference.
"""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Any

from pydantic import ValidationError

from personnel.core.errors import (
    AliasConflictError,
    EmployeeNotFoundError,
    InvalidEmployeeDataError,
    MergeConflictError,
)
from personnel.models.employee import REASON_MERGED, Employee, EmployeeUpdate, FieldConflict, MergePreview
from personnel.services.employee_records import profile_incomplete
from personnel.services.employee_repository import EmployeeRepository
from personnel.services.similarity import similarity

logger = logging.getLogger(__name__)

KEEP_PRIMARY = "primary"
KEEP_DUPLICATE = "duplicate"

MERGE_FIELDS = (
    "email",
    "phone",
    "hire_date",
    "job_title",
    "hourly_rate",
    "overtime_rate",
    "middle_name",
    "preferred_name",
)


def _is_set(value: Any) -> bool:
    return value is not None and value != ""


def compare_profiles(primary: Employee, duplicate: Employee) -> tuple[list[FieldConflict], dict[str, Any]]:
    """Split mergeable fields into conflicts and values the primary is missing."""
    conflicts: list[FieldConflict] = []
    fields_to_fill: dict[str, Any] = {}
    for field in MERGE_FIELDS:
        primary_value = getattr(primary, field)
        duplicate_value = getattr(duplicate, field)
        if not _is_set(duplicate_value):
            continue
        if not _is_set(primary_value):
            fields_to_fill[field] = duplicate_value
        elif primary_value != duplicate_value:
            conflicts.append(
                FieldConflict(field=field, primary_value=primary_value, duplicate_value=duplicate_value)
            )
    return conflicts, fields_to_fill


def resolve_values(
    resolved_fields: dict[str, Any],
    primary: Employee,
    duplicate: Employee,
) -> dict[str, Any]:
    """Turn ``"primary"`` / ``"duplicate"`` choices into concrete field values."""
    values: dict[str, Any] = {}
    for field, choice in resolved_fields.items():
        if choice == KEEP_PRIMARY:
            values[field] = getattr(primary, field)
        elif choice == KEEP_DUPLICATE:
            values[field] = getattr(duplicate, field)
        else:
            values[field] = choice
    return values


def find_duplicate_candidates(
    employees: list[Employee],
    threshold: float,
) -> list[tuple[Employee, Employee, float]]:
    """Pairs of active employees whose names or aliases look alike, most similar first."""
    active = [e for e in employees if e.is_active]
    pairs = []
    for left, right in combinations(active, 2):
        left_names = {left.normalized_name, *left.known_aliases}
        right_names = {right.normalized_name, *right.known_aliases}
        score = max(similarity(a, b) for a in left_names for b in right_names)
        if score >= threshold:
            pairs.append((left, right, score))
    pairs.sort(key=lambda item: item[2], reverse=True)
    return pairs


class MergeReconciler:
    def __init__(self, repository: EmployeeRepository) -> None:
        self.repository = repository

    async def _load_pair(self, primary_id: str, duplicate_id: str) -> tuple[Employee, Employee]:
        if primary_id == duplicate_id:
            raise InvalidEmployeeDataError("cannot merge an employee into itself")

        primary = await self.repository.get_by_id(primary_id)
        if primary is None:
            raise EmployeeNotFoundError(primary_id)
        duplicate = await self.repository.get_by_id(duplicate_id)
        if duplicate is None:
            raise EmployeeNotFoundError(duplicate_id)

        for employee in (primary, duplicate):
            if not employee.is_active:
                raise InvalidEmployeeDataError(
                    f"{employee.person_id} is {employee.employment_status}; only active employees can be merged"
                )
        return primary, duplicate

    async def preview(self, primary_id: str, duplicate_id: str) -> MergePreview:
        primary, duplicate = await self._load_pair(primary_id, duplicate_id)
        conflicts, fields_to_fill = compare_profiles(primary, duplicate)
        aliases_to_merge = [a for a in duplicate.known_aliases if a not in primary.known_aliases]
        return MergePreview(
            primary_employee=primary,
            duplicate_employee=duplicate,
            conflicts=conflicts,
            aliases_to_merge=aliases_to_merge,
            fields_to_fill=fields_to_fill,
        )

    async def apply(
        self,
        primary_id: str,
        duplicate_id: str,
        resolved_fields: dict[str, Any] | None = None,
    ) -> Employee:
        """Merge ``duplicate_id`` into ``primary_id``.

        ``resolved_fields`` maps every conflicting field to ``"primary"``,
        ``"duplicate"`` or an explicit final value; any conflict left out raises MergeConflictError before anything is
        written.
        """
        resolved_fields = resolved_fields or {}
        unknown = sorted(set(resolved_fields) - set(MERGE_FIELDS))
        if unknown:
            raise InvalidEmployeeDataError(f"fields cannot be resolved by a merge: {', '.join(unknown)}")

        preview = await self.preview(primary_id, duplicate_id)
        unresolved = [c for c in preview.conflicts if c.field not in resolved_fields]
        if unresolved:
            raise MergeConflictError(unresolved)

        primary = preview.primary_employee
        duplicate = preview.duplicate_employee

        resolved = resolve_values(resolved_fields, primary, duplicate)
        try:
            EmployeeUpdate.model_validate(resolved)
        except ValidationError as e:
            raise InvalidEmployeeDataError(str(e)) from e

        updates: dict[str, Any] = {**preview.fields_to_fill, **resolved}
        merged = {**primary.model_dump(include={"email", "phone", "hire_date"}), **updates}
        updates["needs_profile_completion"] = profile_incomplete(
            merged.get("email"), merged.get("phone"), merged.get("hire_date")
        )
        updates["known_aliases"] = [*primary.known_aliases, *preview.aliases_to_merge]
        updates["project_ids"] = [
            *primary.project_ids,
            *(p for p in duplicate.project_ids if p not in primary.project_ids),
        ]

        logger.info(
            "Merging %s into %s (%d fields filled, %d conflicts resolved, %d aliases)",
            duplicate.person_id,
            primary.person_id,
            len(preview.fields_to_fill),
            len(preview.conflicts),
            len(preview.aliases_to_merge),
        )

        await self.repository.update(primary.person_id, updates)
        await self.repository.terminate(
            duplicate.person_id,
            None,
            REASON_MERGED,
            merged_into_person_id=primary.person_id,
        )

        for alias in duplicate.known_aliases:
            try:
                await self.repository.add_alias(primary.person_id, alias)
            except AliasConflictError as e:
                logger.warning("Alias '%s' left with %s during merge", alias, e.holder_id)

        merged_primary = await self.repository.get_by_id(primary.person_id)
        if merged_primary is None:
            raise EmployeeNotFoundError(primary.person_id)
        return merged_primary
