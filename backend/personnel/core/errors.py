"""Error taxonomy for personnel identity operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from personnel.models.employee import FieldConflict


class PersonnelError(Exception):
    pass


class EmployeeNotFoundError(PersonnelError):
    def __init__(self, person_id: str) -> None:
        super().__init__(f"Employee not found: {person_id}")
        self.person_id = person_id


class InvalidEmployeeDataError(PersonnelError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid employee data: {message}")


class DuplicateEmployeeError(PersonnelError):
    """Raised when a create collides with an active record holding the same canonical name.

    ``existing_person_id`` lets the caller fall back into the match path instead
    of creating a second record.
    """

    def __init__(self, normalized_name: str, existing_person_id: str | None = None) -> None:
        super().__init__(f"Duplicate employee detected: '{normalized_name}' already belongs to {existing_person_id}")
        self.normalized_name = normalized_name
        self.existing_person_id = existing_person_id


class AliasConflictError(PersonnelError):
    def __init__(self, alias: str, person_id: str, holder_id: str) -> None:
        super().__init__(f"Alias '{alias}' requested for {person_id} is already held by active employee {holder_id}")
        self.alias = alias
        self.person_id = person_id
        self.holder_id = holder_id


class MergeConflictError(PersonnelError):
    def __init__(self, conflicts: list[FieldConflict]) -> None:
        fields = ", ".join(c.field for c in conflicts)
        super().__init__(f"Merge conflicts detected: {fields}")
        self.conflicts = conflicts
