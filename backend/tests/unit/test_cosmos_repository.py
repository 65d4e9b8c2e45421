from __future__ import annotations

import asyncio
import copy
import json
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure.core import MatchConditions
from azure.core.exceptions import ServiceRequestError
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from personnel.core.errors import AliasConflictError, DuplicateEmployeeError, EmployeeNotFoundError
from personnel.models.employee import CreateEmployeeInput, ListEmployeeFilters, MatchContext
from personnel.services.cosmos_repository import CosmosEmployeeRepository, claim_expired, profile_document
from personnel.services.employee_records import build_employee
from personnel.services.match_engine import MatchDecisionEngine


def _employee(first_name: str = "John", last_name: str = "Smith", **fields):
    return build_employee(CreateEmployeeInput(first_name=first_name, last_name=last_name, **fields))


def _stored(employee) -> dict:
    return {**profile_document(employee), "_etag": '"etag-1"', "_ts": 1736150400}


def _repository(docs: dict[str, dict] | None = None, query_results: list[dict] | None = None):
    """Repository over a mocked container; ``docs`` backs read_item by id."""
    docs = docs if docs is not None else {}
    container = MagicMock()

    async def read_item(item, partition_key):
        if item not in docs:
            raise CosmosResourceNotFoundError(status_code=404, message=f"{item} not found")
        return docs[item]

    async def query_items(**kwargs):
        container.last_query = kwargs
        for result in query_results or []:
            yield result

    container.read_item = read_item
    container.query_items = query_items
    container.create_item = AsyncMock()
    container.upsert_item = AsyncMock()
    container.replace_item = AsyncMock()
    container.delete_item = AsyncMock()

    repository = CosmosEmployeeRepository()
    repository.container = container
    repository.initialized = True
    return repository, container


_NOT_CONTAINS = re.compile(r"FROM c WHERE NOT ARRAY_CONTAINS\(c\.(\w+), (.+)\)")


class FakeContainer:
    """Dict-backed container with etags, conditional writes and patch support."""

    def __init__(self, failing_deletes: int = 0) -> None:
        self.docs: dict[str, dict] = {}
        self.version = 0
        self.failing_deletes = failing_deletes

    def _store(self, body: dict) -> dict:
        self.version += 1
        self.docs[body["id"]] = {**copy.deepcopy(body), "_etag": f'"{self.version}"'}
        return copy.deepcopy(self.docs[body["id"]])

    def _current(self, item: str) -> dict:
        if item not in self.docs:
            raise CosmosResourceNotFoundError(status_code=404, message=f"{item} not found")
        return self.docs[item]

    def _check_etag(self, current: dict, etag, match_condition) -> None:
        if match_condition == MatchConditions.IfNotModified and etag != current["_etag"]:
            raise CosmosAccessConditionFailedError(status_code=412, message="etag mismatch")

    async def read_item(self, item, partition_key):
        await asyncio.sleep(0)
        return copy.deepcopy(self._current(item))

    async def create_item(self, body):
        if body["id"] in self.docs:
            raise CosmosResourceExistsError(status_code=409, message=f"{body['id']} exists")
        return self._store(body)

    async def upsert_item(self, body):
        return self._store(body)

    async def replace_item(self, item, body, etag=None, match_condition=None):
        await asyncio.sleep(0)
        self._check_etag(self._current(item), etag, match_condition)
        return self._store(body)

    async def delete_item(self, item, partition_key, etag=None, match_condition=None):
        if self.failing_deletes:
            self.failing_deletes -= 1
            raise ServiceRequestError("connection reset")
        self._check_etag(self._current(item), etag, match_condition)
        del self.docs[item]

    async def patch_item(self, item, partition_key, patch_operations, filter_predicate=None):
        await asyncio.sleep(0)
        doc = copy.deepcopy(self._current(item))
        if filter_predicate:
            field, literal = _NOT_CONTAINS.fullmatch(filter_predicate).groups()
            if json.loads(literal) in doc.get(field, []):
                raise CosmosAccessConditionFailedError(status_code=412, message="precondition failed")
        for operation in patch_operations:
            field = operation["path"].split("/")[1]
            if operation["op"] == "add" and operation["path"].endswith("/-"):
                doc[field].append(operation["value"])
            else:
                doc[field] = operation["value"]
        return self._store(doc)

    async def query_items(self, query, parameters=None, enable_cross_partition_query=False):
        params = {p["name"]: p["value"] for p in parameters or []}
        for doc in list(self.docs.values()):
            if doc.get("type") != params.get("@type"):
                continue
            if "@status" in params and doc.get("employment_status") != params["@status"]:
                continue
            yield copy.deepcopy(doc)


def _fake_repository(container: FakeContainer) -> CosmosEmployeeRepository:
    repository = CosmosEmployeeRepository()
    repository.container = container
    repository.initialized = True
    return repository


class TestLifecycle:
    @pytest.mark.anyio
    async def test_initialize_without_credentials(self, test_settings):
        repository = CosmosEmployeeRepository()

        await repository.initialize(test_settings)

        assert repository.initialized is False
        assert repository.container is None

    @pytest.mark.anyio
    async def test_initialize_with_credentials(self, test_settings):
        test_settings.COSMOS_DB_ENDPOINT = "https://example.documents.azure.com:443/"
        test_settings.COSMOS_DB_KEY = "key"
        repository = CosmosEmployeeRepository()

        with patch("personnel.services.cosmos_repository.CosmosClient") as client_cls:
            await repository.initialize(test_settings)

        client_cls.assert_called_once_with(test_settings.COSMOS_DB_ENDPOINT, "key")
        client_cls.return_value.get_database_client.assert_called_once_with(test_settings.COSMOS_DB_DATABASE)
        assert repository.initialized is True

    @pytest.mark.anyio
    async def test_close(self):
        repository = CosmosEmployeeRepository()
        client = MagicMock()
        client.close = AsyncMock()
        repository.client = client
        repository.container = MagicMock()
        repository.initialized = True

        await repository.close()

        client.close.assert_awaited_once()
        assert repository.container is None
        assert repository.initialized is False

    @pytest.mark.anyio
    async def test_uninitialized_repository_raises(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            await CosmosEmployeeRepository().get_by_id("per_1")

    @pytest.mark.anyio
    async def test_check_connection(self):
        repository, _ = _repository(query_results=[3])

        assert await repository.check_connection() is True

    @pytest.mark.anyio
    async def test_check_connection_failure(self):
        repository, container = _repository()

        async def failing_query(**kwargs):
            raise RuntimeError("unreachable")
            yield  # noqa: RET503

        container.query_items = failing_query

        assert await repository.check_connection() is False

    @pytest.mark.anyio
    async def test_check_connection_uninitialized(self):
        assert await CosmosEmployeeRepository().check_connection() is False


class TestReads:
    @pytest.mark.anyio
    async def test_get_by_id(self):
        employee = _employee()
        repository, _ = _repository({employee.person_id: _stored(employee)})

        result = await repository.get_by_id(employee.person_id)

        assert result.person_id == employee.person_id
        assert result.normalized_name == "john smith"

    @pytest.mark.anyio
    async def test_get_by_id_missing(self):
        repository, _ = _repository()

        assert await repository.get_by_id("per_missing") is None

    @pytest.mark.anyio
    async def test_get_by_id_ignores_other_document_types(self):
        repository, _ = _repository({"alias:john smith": {"id": "alias:john smith", "type": "alias"}})

        assert await repository.get_by_id("alias:john smith") is None

    @pytest.mark.anyio
    async def test_get_by_normalized_name_follows_claim(self):
        employee = _employee()
        repository, _ = _repository(
            {
                "name:john smith": {"id": "name:john smith", "type": "name_claim", "person_id": employee.person_id},
                employee.person_id: _stored(employee),
            }
        )

        result = await repository.get_by_normalized_name("john smith")

        assert result.person_id == employee.person_id

    @pytest.mark.anyio
    async def test_get_by_number_queries_profiles(self):
        employee = _employee(employee_number="E-100")
        repository, container = _repository(query_results=[_stored(employee)])

        result = await repository.get_by_number("E-100")

        assert result.person_id == employee.person_id
        assert {"name": "@number", "value": "E-100"} in container.last_query["parameters"]
        assert container.last_query["enable_cross_partition_query"] is True

    @pytest.mark.anyio
    async def test_search_by_name(self):
        employee = _employee()
        repository, container = _repository(query_results=[_stored(employee)])

        results = await repository.search_by_name("smith")

        assert [e.person_id for e in results] == [employee.person_id]
        assert "CONTAINS(c.normalized_name, @q)" in container.last_query["query"]
        assert {"name": "@q", "value": "smith"} in container.last_query["parameters"]

    @pytest.mark.anyio
    async def test_list_employees_with_filters(self):
        repository, container = _repository(query_results=[])

        await repository.list_employees(
            ListEmployeeFilters(status="active", project_id="proj-1", needs_profile_completion=True)
        )

        query = container.last_query["query"]
        assert "c.employment_status = @status" in query
        assert "ARRAY_CONTAINS(c.project_ids, @project_id)" in query
        assert "c.needs_profile_completion = @incomplete" in query

    @pytest.mark.anyio
    async def test_list_active(self):
        employee = _employee()
        repository, container = _repository(query_results=[_stored(employee)])

        result = await repository.list_active()

        assert [e.person_id for e in result] == [employee.person_id]
        assert {"name": "@status", "value": "active"} in container.last_query["parameters"]

    @pytest.mark.anyio
    async def test_list_aliases(self):
        repository, _ = _repository(
            query_results=[
                {
                    "id": "alias:john smith",
                    "type": "alias",
                    "person_id": "per_1",
                    "alias": "john smith",
                    "created_at": "t",
                },
            ]
        )

        records = await repository.list_aliases()

        assert [(r.alias, r.person_id) for r in records] == [("john smith", "per_1")]


class TestCreate:
    @pytest.mark.anyio
    async def test_create_claims_name_then_writes_profile_and_aliases(self):
        employee = _employee(preferred_name="Johnny")
        repository, container = _repository()

        await repository.create(employee)

        bodies = [call.kwargs["body"] for call in container.create_item.await_args_list]
        assert bodies[0]["id"] == "name:john smith"
        assert bodies[0]["person_id"] == employee.person_id
        assert bodies[1]["id"] == employee.person_id
        assert bodies[1]["type"] == "profile"
        alias_ids = [call.kwargs["body"]["id"] for call in container.upsert_item.await_args_list]
        assert alias_ids == ["alias:john smith", "alias:johnny smith"]

    @pytest.mark.anyio
    async def test_create_duplicate_name(self):
        holder = _employee()
        employee = _employee()
        repository, container = _repository(
            {
                "name:john smith": {"id": "name:john smith", "type": "name_claim", "person_id": holder.person_id},
                holder.person_id: _stored(holder),
            }
        )
        container.create_item.side_effect = CosmosResourceExistsError(status_code=409, message="conflict")

        with pytest.raises(DuplicateEmployeeError) as exc_info:
            await repository.create(employee)

        assert exc_info.value.existing_person_id == holder.person_id
        container.create_item.assert_awaited_once()
        container.delete_item.assert_not_awaited()
        container.upsert_item.assert_not_awaited()

    @pytest.mark.anyio
    async def test_create_releases_claim_when_profile_write_fails(self):
        employee = _employee()
        docs: dict[str, dict] = {}
        repository, container = _repository(docs)

        async def create_item(body):
            if body["type"] == "name_claim":
                docs[body["id"]] = body
                return body
            raise RuntimeError("write failed")

        container.create_item = AsyncMock(side_effect=create_item)

        with pytest.raises(RuntimeError, match="write failed"):
            await repository.create(employee)

        container.delete_item.assert_awaited_once_with(item="name:john smith", partition_key="name:john smith")

    @pytest.mark.anyio
    async def test_create_skips_alias_held_by_active_employee(self):
        holder = _employee("Robert", "Smith")
        employee = _employee("John", "Smith", preferred_name="Bob")
        repository, container = _repository(
            {
                "alias:bob smith": {
                    "id": "alias:bob smith",
                    "type": "alias",
                    "person_id": holder.person_id,
                    "alias": "bob smith",
                    "created_at": "t",
                },
                holder.person_id: _stored(holder),
            }
        )

        await repository.create(employee)

        alias_ids = [call.kwargs["body"]["id"] for call in container.upsert_item.await_args_list]
        assert alias_ids == ["alias:john smith"]


class TestWrites:
    @pytest.mark.anyio
    async def test_update_uses_etag(self):
        employee = _employee()
        repository, container = _repository({employee.person_id: _stored(employee)})

        updated = await repository.update(employee.person_id, {"email": "js@example.com"})

        assert updated.email == "js@example.com"
        kwargs = container.replace_item.await_args.kwargs
        assert kwargs["item"] == employee.person_id
        assert kwargs["etag"] == '"etag-1"'
        assert kwargs["match_condition"] == MatchConditions.IfNotModified
        assert kwargs["body"]["email"] == "js@example.com"

    @pytest.mark.anyio
    async def test_update_missing_employee(self):
        repository, _ = _repository()

        with pytest.raises(EmployeeNotFoundError):
            await repository.update("per_missing", {"email": "x"})

    @pytest.mark.anyio
    async def test_rename_moves_claim(self):
        employee = _employee("Jon", "Smith")
        docs = {
            employee.person_id: _stored(employee),
            "name:jon smith": {"id": "name:jon smith", "type": "name_claim", "person_id": employee.person_id},
        }
        repository, container = _repository(docs)

        await repository.update(employee.person_id, {"normalized_name": "john smith", "full_name": "John Smith"})

        assert container.create_item.await_args.kwargs["body"]["id"] == "name:john smith"
        container.delete_item.assert_awaited_once_with(item="name:jon smith", partition_key="name:jon smith")

    @pytest.mark.anyio
    async def test_terminate_releases_claim(self):
        employee = _employee()
        docs = {
            employee.person_id: _stored(employee),
            "name:john smith": {"id": "name:john smith", "type": "name_claim", "person_id": employee.person_id},
        }
        repository, container = _repository(docs)

        terminated = await repository.terminate(employee.person_id, "2025-01-31", "left_company")

        assert terminated.employment_status == "terminated"
        assert container.replace_item.await_args.kwargs["body"]["termination_reason"] == "left_company"
        container.delete_item.assert_awaited_once_with(item="name:john smith", partition_key="name:john smith")

    @pytest.mark.anyio
    async def test_add_alias_conflict(self):
        holder = _employee("John", "Smith")
        employee = _employee("Jane", "Smith")
        repository, container = _repository(
            {
                holder.person_id: _stored(holder),
                employee.person_id: _stored(employee),
                "alias:john smith": {
                    "id": "alias:john smith",
                    "type": "alias",
                    "person_id": holder.person_id,
                    "alias": "john smith",
                    "created_at": "t",
                },
            }
        )

        with pytest.raises(AliasConflictError):
            await repository.add_alias(employee.person_id, "john smith")

        container.upsert_item.assert_not_awaited()

    @pytest.mark.anyio
    async def test_add_alias_writes_record_and_profile(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        employee = await repository.create(_employee())

        assert await repository.add_alias(employee.person_id, "johnny smith") is True

        assert container.docs["alias:johnny smith"]["person_id"] == employee.person_id
        assert container.docs[employee.person_id]["known_aliases"] == ["john smith", "johnny smith"]

    @pytest.mark.anyio
    async def test_concurrent_add_alias_appends_once(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        employee = await repository.create(_employee())

        await asyncio.gather(
            repository.add_alias(employee.person_id, "johnny smith"),
            repository.add_alias(employee.person_id, "johnny smith"),
        )

        assert container.docs[employee.person_id]["known_aliases"] == ["john smith", "johnny smith"]

    @pytest.mark.anyio
    async def test_record_sighting(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        employee = await repository.create(_employee())

        seen = await repository.record_sighting(
            employee.person_id,
            MatchContext(project_id="proj-1", report_date="2025-01-06", report_id="rep-1"),
        )

        assert seen.project_ids == ["proj-1"]
        assert seen.last_seen_project_id == "proj-1"
        assert seen.first_mentioned_report_id == "rep-1"
        assert container.docs[employee.person_id]["last_seen_date"] == "2025-01-06"

    @pytest.mark.anyio
    async def test_concurrent_matches_on_one_employee(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        employee = await repository.create(_employee())
        engine = MatchDecisionEngine(repository)
        context = MatchContext(project_id="proj-1", report_date="2025-01-06")

        results = await asyncio.gather(
            engine.match_or_create_employee("John Smith", context),
            engine.match_or_create_employee("John Smith", context),
        )

        assert [r.match_method for r in results] == ["exact_name", "exact_name"]
        assert {r.employee_id for r in results} == {employee.person_id}
        stored = container.docs[employee.person_id]
        assert stored["project_ids"] == ["proj-1"]
        assert stored["last_seen_project_id"] == "proj-1"


class TestNameClaims:
    @pytest.mark.anyio
    async def test_name_recovers_after_failed_claim_release(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        engine = MatchDecisionEngine(repository)
        first = await engine.match_or_create_employee("Scott Miller")

        container.failing_deletes = 1
        with pytest.raises(ServiceRequestError):
            await repository.terminate(first.employee_id, "2025-01-31", "left_company")
        assert container.docs[first.employee_id]["employment_status"] == "terminated"
        assert "name:scott miller" in container.docs

        again = await engine.match_or_create_employee("Scott Miller")

        assert again.match_method == "auto_created"
        assert again.employee_id != first.employee_id
        assert container.docs["name:scott miller"]["person_id"] == again.employee_id
        assert container.docs["alias:scott miller"]["person_id"] == again.employee_id

    @pytest.mark.anyio
    async def test_expired_claim_without_profile_is_released(self):
        container = FakeContainer()
        old = (datetime.now(timezone.utc) - timedelta(minutes=10)).isoformat()
        container._store({"id": "name:john smith", "type": "name_claim", "person_id": "per_gone", "created_at": old})
        repository = _fake_repository(container)

        employee = await repository.create(_employee())

        assert container.docs["name:john smith"]["person_id"] == employee.person_id
        assert (await repository.get_by_normalized_name("john smith")).person_id == employee.person_id

    @pytest.mark.anyio
    async def test_fresh_claim_without_profile_is_kept(self):
        container = FakeContainer()
        now = datetime.now(timezone.utc).isoformat()
        container._store({"id": "name:john smith", "type": "name_claim", "person_id": "per_pending", "created_at": now})
        repository = _fake_repository(container)

        with pytest.raises(DuplicateEmployeeError) as exc_info:
            await repository.create(_employee())

        assert exc_info.value.existing_person_id == "per_pending"
        assert container.docs["name:john smith"]["person_id"] == "per_pending"

    @pytest.mark.anyio
    async def test_active_holder_keeps_claim(self):
        container = FakeContainer()
        repository = _fake_repository(container)
        holder = await repository.create(_employee())

        with pytest.raises(DuplicateEmployeeError) as exc_info:
            await repository.create(_employee())

        assert exc_info.value.existing_person_id == holder.person_id


def test_claim_expired():
    now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    assert claim_expired({"created_at": "2025-01-06T11:58:00+00:00"}, now) is True
    assert claim_expired({"created_at": "2025-01-06T11:59:30+00:00"}, now) is False
    assert claim_expired({"created_at": "2025-01-06T11:59:30"}, now) is False
    assert claim_expired({}, now) is True
    assert claim_expired({"created_at": "yesterday"}, now) is True
