"""Resolve a spoken or typed name to exactly one employee record.

Steps run in order and stop at the first decisive one:

1. exact canonical name
2. exact alias, then near-miss alias
3. fuzzy ranking over active employees (optionally narrowed by project roster)
4. auto-create a skeleton profile

Every call ends in exactly one of: no identity write, one new alias, or one
new employee record.
"""

from __future__ import annotations

import logging

from personnel.core.config import Settings
from personnel.core.errors import AliasConflictError, DuplicateEmployeeError, InvalidEmployeeDataError
from personnel.models.employee import (
    CONFIDENCE_EXACT,
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_NEW_EMPLOYEE,
    STATUS_TERMINATED,
    Employee,
    MatchContext,
    MatchResult,
    SuggestedMatch,
)
from personnel.services.alias_index import AliasIndex
from personnel.services.employee_records import build_employee_from_mention
from personnel.services.employee_repository import EmployeeRepository
from personnel.services.name_normalizer import normalize_name
from personnel.services.similarity import best_similarity

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 80.0
DEFAULT_REVIEW_THRESHOLD = 85.0
DEFAULT_ALIAS_THRESHOLD = 85.0
MAX_SUGGESTIONS = 5


class MatchDecisionEngine:
    def __init__(
        self,
        repository: EmployeeRepository,
        alias_index: AliasIndex | None = None,
        *,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        review_threshold: float = DEFAULT_REVIEW_THRESHOLD,
        alias_threshold: float = DEFAULT_ALIAS_THRESHOLD,
        prefer_project_roster: bool = True,
    ) -> None:
        self.repository = repository
        self.alias_index = alias_index or AliasIndex(repository)
        self.fuzzy_threshold = fuzzy_threshold
        self.review_threshold = review_threshold
        self.alias_threshold = alias_threshold
        self.prefer_project_roster = prefer_project_roster

    @classmethod
    def from_settings(
        cls,
        repository: EmployeeRepository,
        settings: Settings,
        alias_index: AliasIndex | None = None,
    ) -> MatchDecisionEngine:
        return cls(
            repository,
            alias_index,
            fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            review_threshold=settings.FUZZY_REVIEW_THRESHOLD,
            alias_threshold=settings.ALIAS_MATCH_THRESHOLD,
            prefer_project_roster=settings.PREFER_PROJECT_ROSTER,
        )

    async def match_or_create_employee(self, name: str, context: MatchContext | None = None) -> MatchResult:
        normalized = normalize_name(name)
        if not normalized:
            raise InvalidEmployeeDataError("name is empty after normalization")

        # exact canonical name; inactive employees still own their name
        employee = await self.repository.get_by_normalized_name(normalized)
        if employee is not None and employee.employment_status != STATUS_TERMINATED:
            logger.debug("Exact name match for '%s' -> %s", normalized, employee.person_id)
            await self._record_sighting(employee, context)
            return self._exact_result(employee)

        employee = await self.alias_index.resolve(normalized)
        if employee is not None:
            logger.debug("Alias match for '%s' -> %s", normalized, employee.person_id)
            await self._record_sighting(employee, context)
            return MatchResult(
                employee_id=employee.person_id,
                confidence=CONFIDENCE_HIGH,
                needs_review=False,
                matched_name=employee.full_name,
                match_method="alias_match",
                match_score=100.0,
            )

        active = await self.repository.list_active()

        hit = await self.alias_index.closest(normalized, self.alias_threshold, active)
        if hit is not None:
            employee, alias, score = hit
            logger.info(
                "Near-miss alias match for '%s' via '%s' (%.1f) -> %s",
                normalized,
                alias,
                score,
                employee.person_id,
            )
            indexed = await self._register_alias(employee, normalized)
            await self._record_sighting(employee, context)
            return MatchResult(
                employee_id=employee.person_id,
                confidence=CONFIDENCE_HIGH,
                needs_review=not indexed,
                matched_name=employee.full_name,
                match_method="fuzzy_alias_match",
                match_score=round(score, 2),
            )

        candidates = await self.rank_candidates(normalized, active)

        if len(candidates) == 1:
            employee, score = candidates[0]
            logger.info("Fuzzy match for '%s' -> %s (%.1f)", normalized, employee.person_id, score)
            indexed = await self._register_alias(employee, normalized)
            await self._record_sighting(employee, context)
            return MatchResult(
                employee_id=employee.person_id,
                confidence=CONFIDENCE_MEDIUM,
                needs_review=score < self.review_threshold or not indexed,
                matched_name=employee.full_name,
                match_method="fuzzy_match",
                match_score=round(score, 2),
            )

        if candidates:
            suggestions = self._suggestions(candidates, context)

            on_site = self._on_project_roster(candidates, context)
            if len(on_site) == 1:
                employee, score = on_site[0]
                logger.info(
                    "Ambiguous name '%s' narrowed to %s by project %s",
                    normalized,
                    employee.person_id,
                    context.project_id if context else None,
                )
                await self._record_sighting(employee, context)
                return MatchResult(
                    employee_id=employee.person_id,
                    confidence=CONFIDENCE_MEDIUM,
                    needs_review=True,
                    matched_name=employee.full_name,
                    match_method="context_match",
                    match_score=round(score, 2),
                    suggested_matches=suggestions,
                )

            logger.warning(
                "Ambiguous name '%s' (%d candidates); creating a new employee for review",
                normalized,
                len(candidates),
            )
            employee, created = await self._create_from_mention(name, context)
            if not created:
                return self._exact_result(employee)
            return MatchResult(
                employee_id=employee.person_id,
                confidence=CONFIDENCE_NEW_EMPLOYEE,
                needs_review=True,
                matched_name=employee.full_name,
                match_method="multiple_matches_create_new",
                suggested_matches=suggestions,
            )

        employee, created = await self._create_from_mention(name, context)
        if not created:
            return self._exact_result(employee)
        logger.info("Auto-created employee %s for '%s'", employee.person_id, normalized)
        return MatchResult(
            employee_id=employee.person_id,
            confidence=CONFIDENCE_NEW_EMPLOYEE,
            needs_review=False,
            matched_name=employee.full_name,
            match_method="auto_created",
        )

    async def rank_candidates(
        self,
        normalized: str,
        active: list[Employee] | None = None,
    ) -> list[tuple[Employee, float]]:
        """Active employees whose name or any alias reaches the fuzzy threshold, best first."""
        if active is None:
            active = await self.repository.list_active()
        scored: list[tuple[Employee, float]] = []
        for employee in active:
            _, score = best_similarity(normalized, [employee.normalized_name, *employee.known_aliases])
            if score >= self.fuzzy_threshold:
                scored.append((employee, score))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored

    def _on_project_roster(
        self,
        candidates: list[tuple[Employee, float]],
        context: MatchContext | None,
    ) -> list[tuple[Employee, float]]:
        if not self.prefer_project_roster or context is None or not context.project_id:
            return []
        return [c for c in candidates if context.project_id in c[0].project_ids]

    def _suggestions(
        self,
        candidates: list[tuple[Employee, float]],
        context: MatchContext | None,
    ) -> list[SuggestedMatch]:
        suggestions = []
        for employee, score in candidates[:MAX_SUGGESTIONS]:
            reason = f"{score:.1f}% name similarity"
            if context is not None and context.project_id and context.project_id in employee.project_ids:
                reason += f", on project {context.project_id}"
            suggestions.append(
                SuggestedMatch(
                    employee_id=employee.person_id,
                    name=employee.full_name,
                    confidence=round(score, 2),
                    reason=reason,
                )
            )
        return suggestions

    async def _register_alias(self, employee: Employee, normalized: str) -> bool:
        """Remember this spelling for next time; False when another employee already owns it."""
        try:
            await self.alias_index.add(employee.person_id, normalized)
        except AliasConflictError as e:
            logger.warning("Match for '%s' kept without alias: %s", normalized, e)
            return False
        return True

    async def _record_sighting(self, employee: Employee, context: MatchContext | None) -> None:
        if context is None:
            return
        await self.repository.record_sighting(employee.person_id, context)

    async def _create_from_mention(self, name: str, context: MatchContext | None) -> tuple[Employee, bool]:
        """Create a skeleton profile; a concurrent creator of the same name wins and is returned."""
        employee = build_employee_from_mention(name, context)
        try:
            return await self.repository.create(employee), True
        except DuplicateEmployeeError as e:
            winner = await self.repository.get_by_id(e.existing_person_id) if e.existing_person_id else None
            if winner is None or winner.employment_status == STATUS_TERMINATED:
                raise
            logger.info("Lost create race for '%s'; using %s", e.normalized_name, winner.person_id)
            await self._record_sighting(winner, context)
            return winner, False

    def _exact_result(self, employee: Employee) -> MatchResult:
        return MatchResult(
            employee_id=employee.person_id,
            confidence=CONFIDENCE_EXACT,
            needs_review=False,
            matched_name=employee.full_name,
            match_method="exact_name",
            match_score=100.0,
        )
