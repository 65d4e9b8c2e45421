"""Alias lookups on top of the repository's alias records."""

from __future__ import annotations

import logging

from personnel.core.errors import InvalidEmployeeDataError
from personnel.models.employee import Employee
from personnel.services.employee_repository import EmployeeRepository, follow_merges
from personnel.services.name_normalizer import compact_key, normalize_name
from personnel.services.similarity import similarity

logger = logging.getLogger(__name__)


class AliasIndex:
    def __init__(self, repository: EmployeeRepository) -> None:
        self.repository = repository

    async def resolve(self, normalized_alias: str) -> Employee | None:
        """Active employee an alias points at, following merges."""
        record = await self.repository.get_alias(normalized_alias)
        if record is None:
            return None
        employee = await follow_merges(self.repository, await self.repository.get_by_id(record.person_id))
        if employee is None or not employee.is_active:
            return None
        return employee

    async def lookup(self, normalized_alias: str) -> str | None:
        employee = await self.resolve(normalized_alias)
        return employee.person_id if employee else None

    async def add(self, person_id: str, alias: str) -> bool:
        """Index ``alias`` for ``person_id``.

        Adding an alias the person already has is a no-op (returns False). An
        alias held by another current employee raises AliasConflictError.
        """
        normalized = normalize_name(alias)
        if not normalized:
            raise InvalidEmployeeDataError("alias is empty after normalization")
        added = await self.repository.add_alias(person_id, normalized)
        if added:
            logger.info("Indexed alias '%s' for %s", normalized, person_id)
        return added

    async def closest(
        self,
        normalized: str,
        threshold: float,
        active: list[Employee] | None = None,
    ) -> tuple[Employee, str, float] | None:
        """Near-miss lookup over secondary aliases.

        Canonical names are left to the fuzzy ranking step; only aliases that
        differ from their holder's own name are compared here, with spaces
        removed so a split or joined word costs nothing. Returns the single
        active person whose best alias reaches ``threshold``; None when nobody
        does or when two people tie above it. Pass ``active`` to reuse an
        already loaded list of active employees.
        """
        query = compact_key(normalized)
        best_by_person: dict[str, tuple[Employee, str, float]] = {}
        if active is None:
            active = await self.repository.list_active()
        by_id = {e.person_id: e for e in active}

        for record in await self.repository.list_aliases():
            employee = by_id.get(record.person_id)
            if employee is None:
                continue
            if record.alias == employee.normalized_name:
                continue
            score = similarity(query, compact_key(record.alias))
            if score < threshold:
                continue
            current = best_by_person.get(employee.person_id)
            if current is None or score > current[2]:
                best_by_person[employee.person_id] = (employee, record.alias, score)

        if len(best_by_person) != 1:
            if best_by_person:
                logger.info(
                    "Alias near-miss for '%s' is ambiguous across %d employees",
                    normalized,
                    len(best_by_person),
                )
            return None
        return next(iter(best_by_person.values()))
