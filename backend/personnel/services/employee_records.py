"""Construction of new employee profiles (explicit admin create and transcript auto-create)."""

from __future__ import annotations

import secrets
import uuid
from datetime import date

from personnel.core.errors import InvalidEmployeeDataError
from personnel.models.employee import CreateEmployeeInput, Employee, MatchContext
from personnel.services.employee_repository import utc_now
from personnel.services.name_normalizer import (
    compose_full_name,
    display_name,
    normalize_name,
    parse_name,
)


def new_person_id() -> str:
    return f"per_{uuid.uuid4().hex}"


def generate_employee_number(today: date | None = None) -> str:
    """Human-facing number such as ``EMP-20250106-3FA2``."""
    day = today or date.today()
    return f"EMP-{day:%Y%m%d}-{secrets.token_hex(2).upper()}"


def profile_incomplete(email: str | None, phone: str | None, hire_date: str | None) -> bool:
    return not (email and phone and hire_date)


def _unique(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def build_employee(data: CreateEmployeeInput) -> Employee:
    first_name = display_name(data.first_name)
    last_name = display_name(data.last_name)
    full_name = compose_full_name(first_name, last_name)
    normalized = normalize_name(full_name)
    if not normalized:
        raise InvalidEmployeeDataError("first and last name are empty after normalization")

    middle_name = display_name(data.middle_name) or None
    preferred_name = display_name(data.preferred_name) or None

    aliases = [normalized]
    if middle_name:
        aliases.append(normalize_name(f"{first_name} {middle_name} {last_name}"))
    if preferred_name:
        aliases.append(normalize_name(f"{preferred_name} {last_name}"))

    now = utc_now()
    return Employee(
        person_id=new_person_id(),
        employee_number=data.employee_number or generate_employee_number(),
        first_name=first_name,
        last_name=last_name,
        middle_name=middle_name,
        preferred_name=preferred_name,
        full_name=full_name,
        normalized_name=normalized,
        email=data.email,
        phone=data.phone,
        hire_date=data.hire_date,
        job_title=data.job_title,
        hourly_rate=data.hourly_rate,
        overtime_rate=data.overtime_rate,
        employment_status=data.employment_status,
        known_aliases=_unique(aliases),
        needs_profile_completion=profile_incomplete(data.email, data.phone, data.hire_date),
        created_by_user_id=data.created_by_user_id,
        created_at=now,
        updated_at=now,
    )


def build_employee_from_mention(raw_name: str, context: MatchContext | None = None) -> Employee:
    """Skeleton profile for a person first heard of in a transcript."""
    normalized = normalize_name(raw_name)
    if not normalized:
        raise InvalidEmployeeDataError("name is empty after normalization")

    context = context or MatchContext()
    parsed = parse_name(raw_name)
    full_name = " ".join(p for p in (parsed.first_name, parsed.middle_name, parsed.last_name) if p)
    mentioned_on = context.report_date or date.today().isoformat()

    now = utc_now()
    return Employee(
        person_id=new_person_id(),
        employee_number=generate_employee_number(),
        first_name=parsed.first_name,
        last_name=parsed.last_name,
        middle_name=parsed.middle_name,
        full_name=full_name,
        normalized_name=normalized,
        known_aliases=[normalized],
        project_ids=[context.project_id] if context.project_id else [],
        needs_profile_completion=True,
        first_mentioned_date=mentioned_on,
        first_mentioned_report_id=context.report_id,
        last_seen_date=mentioned_on,
        last_seen_project_id=context.project_id,
        created_at=now,
        updated_at=now,
    )
