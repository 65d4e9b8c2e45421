from __future__ import annotations

import pytest

from personnel.core.config import Settings
from personnel.models.employee import CreateEmployeeInput, Employee
from personnel.services.employee_records import build_employee
from personnel.services.employee_repository import InMemoryEmployeeRepository
from personnel.services.personnel_service import PersonnelService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(PERSONNEL_STORE="memory", COSMOS_DB_ENDPOINT="", COSMOS_DB_KEY="")


@pytest.fixture
def repository() -> InMemoryEmployeeRepository:
    return InMemoryEmployeeRepository()


@pytest.fixture
async def service(test_settings, repository):
    svc = PersonnelService()
    await svc.initialize(test_settings, repository)
    yield svc
    await svc.close()


def make_employee(first_name: str, last_name: str, **fields) -> Employee:
    """Fully built profile, not yet stored."""
    return build_employee(CreateEmployeeInput(first_name=first_name, last_name=last_name, **fields))


@pytest.fixture
def employee_factory(repository):
    async def _create(first_name: str, last_name: str, **fields) -> Employee:
        return await repository.create(make_employee(first_name, last_name, **fields))

    return _create
