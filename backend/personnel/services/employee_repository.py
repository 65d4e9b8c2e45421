"""Storage contract for employee profiles and alias records.

The repository is the only component that mutates persisted identity state.
Every implementation must make ``create`` conditional on the canonical name
(one current record per normalized full name) and must write a profile before
any alias record that points at it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Protocol

from personnel.core.errors import AliasConflictError, DuplicateEmployeeError, EmployeeNotFoundError
from personnel.models.employee import (
    STATUS_ACTIVE,
    STATUS_TERMINATED,
    AliasRecord,
    Employee,
    ListEmployeeFilters,
    MatchContext,
)

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sighting_fields(employee: Employee, context: MatchContext) -> dict[str, Any]:
    """Provenance changes for one more mention of ``employee`` in a report."""
    seen_on = context.report_date or date.today().isoformat()
    fields: dict[str, Any] = {"last_seen_date": seen_on}
    if context.project_id:
        fields["last_seen_project_id"] = context.project_id
        if context.project_id not in employee.project_ids:
            fields["project_ids"] = [*employee.project_ids, context.project_id]
    if not employee.first_mentioned_date:
        fields["first_mentioned_date"] = seen_on
        if context.report_id:
            fields["first_mentioned_report_id"] = context.report_id
    return fields


def matches_filters(employee: Employee, filters: ListEmployeeFilters | None) -> bool:
    if filters is None:
        return True
    if filters.status is not None and employee.employment_status != filters.status:
        return False
    if filters.project_id is not None and filters.project_id not in employee.project_ids:
        return False
    if (
        filters.needs_profile_completion is not None
        and employee.needs_profile_completion != filters.needs_profile_completion
    ):
        return False
    return True


def matches_search(employee: Employee, normalized_query: str) -> bool:
    if normalized_query in employee.normalized_name:
        return True
    return any(normalized_query in alias for alias in employee.known_aliases)


class EmployeeRepository(Protocol):
    """Async persistence contract used by the personnel services."""

    async def get_by_id(self, person_id: str) -> Employee | None: ...

    async def get_by_number(self, employee_number: str) -> Employee | None: ...

    async def get_by_normalized_name(self, normalized_name: str) -> Employee | None:
        """Return the current (non-terminated) holder of a canonical name."""
        ...

    async def search_by_name(self, normalized_query: str) -> list[Employee]: ...

    async def list_employees(self, filters: ListEmployeeFilters | None = None) -> list[Employee]: ...

    async def list_active(self) -> list[Employee]: ...

    async def create(self, employee: Employee) -> Employee:
        """Persist a new profile; raises DuplicateEmployeeError if the name is taken."""
        ...

    async def update(self, person_id: str, fields: dict[str, Any]) -> Employee: ...

    async def terminate(
        self,
        person_id: str,
        termination_date: str | None,
        reason: str,
        merged_into_person_id: str | None = None,
        note: str | None = None,
    ) -> Employee: ...

    async def add_alias(self, person_id: str, alias: str) -> bool:
        """Index ``alias`` for ``person_id``; False when it was already there."""
        ...

    async def get_alias(self, alias: str) -> AliasRecord | None: ...

    async def list_aliases(self) -> list[AliasRecord]: ...

    async def record_sighting(self, person_id: str, context: MatchContext) -> Employee: ...

    async def check_connection(self) -> bool: ...


class InMemoryEmployeeRepository:
    """Process-local repository; one asyncio lock serializes every write."""

    def __init__(self) -> None:
        self._profiles: dict[str, Employee] = {}
        self._aliases: dict[str, AliasRecord] = {}
        self._name_claims: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_by_id(self, person_id: str) -> Employee | None:
        employee = self._profiles.get(person_id)
        return employee.model_copy(deep=True) if employee else None

    async def get_by_number(self, employee_number: str) -> Employee | None:
        for employee in self._profiles.values():
            if employee.employee_number == employee_number:
                return employee.model_copy(deep=True)
        return None

    async def get_by_normalized_name(self, normalized_name: str) -> Employee | None:
        person_id = self._name_claims.get(normalized_name)
        if person_id is None or not self._holds(person_id):
            return None
        return await self.get_by_id(person_id)

    async def search_by_name(self, normalized_query: str) -> list[Employee]:
        return [
            e.model_copy(deep=True)
            for e in self._profiles.values()
            if e.employment_status == STATUS_ACTIVE and matches_search(e, normalized_query)
        ]

    async def list_employees(self, filters: ListEmployeeFilters | None = None) -> list[Employee]:
        return [e.model_copy(deep=True) for e in self._profiles.values() if matches_filters(e, filters)]

    async def list_active(self) -> list[Employee]:
        return await self.list_employees(ListEmployeeFilters(status=STATUS_ACTIVE))

    async def create(self, employee: Employee) -> Employee:
        async with self._lock:
            self._check_claim(employee.normalized_name, employee.person_id)
            if employee.person_id in self._profiles:
                raise DuplicateEmployeeError(employee.normalized_name, employee.person_id)

            self._name_claims[employee.normalized_name] = employee.person_id
            self._profiles[employee.person_id] = employee.model_copy(deep=True)

            for alias in employee.known_aliases:
                record = self._aliases.get(alias)
                if record is not None and self._holds(record.person_id):
                    logger.warning(
                        "Alias '%s' stays with %s; not indexed for new employee %s",
                        alias,
                        record.person_id,
                        employee.person_id,
                    )
                    continue
                self._aliases[alias] = AliasRecord(
                    person_id=employee.person_id,
                    alias=alias,
                    created_at=employee.created_at,
                )

        return employee.model_copy(deep=True)

    async def update(self, person_id: str, fields: dict[str, Any]) -> Employee:
        async with self._lock:
            return self._apply_update(person_id, fields)

    async def terminate(
        self,
        person_id: str,
        termination_date: str | None,
        reason: str,
        merged_into_person_id: str | None = None,
        note: str | None = None,
    ) -> Employee:
        async with self._lock:
            current = self._profiles.get(person_id)
            if current is None:
                raise EmployeeNotFoundError(person_id)

            updated = current.model_copy(
                update={
                    "employment_status": STATUS_TERMINATED,
                    "termination_date": termination_date or date.today().isoformat(),
                    "termination_reason": reason,
                    "termination_note": note,
                    "merged_into_person_id": merged_into_person_id,
                    "updated_at": utc_now(),
                },
                deep=True,
            )
            self._profiles[person_id] = updated
            if self._name_claims.get(current.normalized_name) == person_id:
                del self._name_claims[current.normalized_name]
            return updated.model_copy(deep=True)

    async def add_alias(self, person_id: str, alias: str) -> bool:
        async with self._lock:
            current = self._profiles.get(person_id)
            if current is None:
                raise EmployeeNotFoundError(person_id)

            record = self._aliases.get(alias)
            if record is not None and record.person_id != person_id and self._holds(record.person_id):
                raise AliasConflictError(alias, person_id, record.person_id)

            written = record is None or record.person_id != person_id
            if written:
                self._aliases[alias] = AliasRecord(person_id=person_id, alias=alias, created_at=utc_now())

            if alias not in current.known_aliases:
                self._profiles[person_id] = current.model_copy(
                    update={"known_aliases": [*current.known_aliases, alias], "updated_at": utc_now()},
                    deep=True,
                )
                written = True
            return written

    async def get_alias(self, alias: str) -> AliasRecord | None:
        record = self._aliases.get(alias)
        return record.model_copy() if record else None

    async def list_aliases(self) -> list[AliasRecord]:
        return [r.model_copy() for r in self._aliases.values()]

    async def record_sighting(self, person_id: str, context: MatchContext) -> Employee:
        async with self._lock:
            current = self._profiles.get(person_id)
            if current is None:
                raise EmployeeNotFoundError(person_id)
            return self._apply_update(person_id, sighting_fields(current, context))

    async def check_connection(self) -> bool:
        return True

    def _apply_update(self, person_id: str, fields: dict[str, Any]) -> Employee:
        current = self._profiles.get(person_id)
        if current is None:
            raise EmployeeNotFoundError(person_id)

        new_name = fields.get("normalized_name")
        if new_name and new_name != current.normalized_name:
            self._check_claim(new_name, person_id)
            self._name_claims[new_name] = person_id
            if self._name_claims.get(current.normalized_name) == person_id:
                del self._name_claims[current.normalized_name]

        updated = current.model_copy(update={**fields, "updated_at": utc_now()}, deep=True)
        self._profiles[person_id] = updated
        return updated.model_copy(deep=True)

    def _holds(self, person_id: str) -> bool:
        holder = self._profiles.get(person_id)
        return holder is not None and holder.employment_status != STATUS_TERMINATED

    def _check_claim(self, normalized_name: str, person_id: str) -> None:
        """Raise if a current employee other than ``person_id`` holds the name; drop stale claims."""
        holder = self._name_claims.get(normalized_name)
        if holder is None or holder == person_id:
            return
        if self._holds(holder):
            raise DuplicateEmployeeError(normalized_name, holder)
        logger.warning("Released stale name claim '%s' held by %s", normalized_name, holder)
        del self._name_claims[normalized_name]


MAX_MERGE_HOPS = 10


async def follow_merges(repository: EmployeeRepository, employee: Employee | None) -> Employee | None:
    """Walk ``merged_into_person_id`` back-references to the surviving record."""
    hops = 0
    while employee is not None and employee.merged_into_person_id and hops < MAX_MERGE_HOPS:
        employee = await repository.get_by_id(employee.merged_into_person_id)
        hops += 1
    return employee
