"""Cosmos DB employee repository.

One container, partitioned on ``/id``, holds three document types:

- ``profile``: the employee record, ``id`` is the person id
- ``name_claim``: ``id`` is ``name:<normalized name>``; creating it is the
  conditional write that keeps one current record per canonical name
- ``alias``: ``id`` is ``alias:<normalized alias>``

Profile replacements carry the document etag, so a concurrent writer fails
with a precondition error instead of being overwritten. Writes that every
match may make (sightings, new aliases) are server-side patches instead, so
concurrent matches on one person never conflict. A claim whose holder is
terminated, or was never written, is stale and gets released on the next
conflicting claim.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from azure.core import MatchConditions
from azure.cosmos.aio import CosmosClient
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from personnel.core.config import Settings
from personnel.core.errors import AliasConflictError, DuplicateEmployeeError, EmployeeNotFoundError
from personnel.models.employee import (
    STATUS_ACTIVE,
    STATUS_TERMINATED,
    AliasRecord,
    Employee,
    ListEmployeeFilters,
    MatchContext,
)
from personnel.services.employee_repository import sighting_fields, utc_now

logger = logging.getLogger(__name__)

DOC_PROFILE = "profile"
DOC_NAME_CLAIM = "name_claim"
DOC_ALIAS = "alias"

CLAIM_GRACE_SECONDS = 60


def claim_id(normalized_name: str) -> str:
    return f"name:{normalized_name}"


def alias_id(alias: str) -> str:
    return f"alias:{alias}"


def profile_document(employee: Employee) -> dict[str, Any]:
    return {"id": employee.person_id, "type": DOC_PROFILE, **employee.model_dump()}


def claim_expired(claim: dict[str, Any], now: datetime | None = None) -> bool:
    created = claim.get("created_at")
    if not created:
        return True
    try:
        created_at = datetime.fromisoformat(created)
    except ValueError:
        return True
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) - created_at > timedelta(seconds=CLAIM_GRACE_SECONDS)


def set_operation(field: str, value: Any) -> dict[str, Any]:
    return {"op": "set", "path": f"/{field}", "value": value}


class CosmosEmployeeRepository:
    def __init__(self) -> None:
        self.client: CosmosClient | None = None
        self.container: Any = None
        self.initialized: bool = False

    async def initialize(self, settings: Settings) -> None:
        if self.initialized:
            return

        endpoint = settings.COSMOS_DB_ENDPOINT
        key = settings.COSMOS_DB_KEY
        database_name = settings.COSMOS_DB_DATABASE
        container_name = settings.COSMOS_DB_PERSONNEL_CONTAINER

        if not endpoint or not key:
            logger.warning("Cosmos DB credentials missing, personnel repository not initialized")
            return

        self.client = CosmosClient(endpoint, key)
        db = self.client.get_database_client(database_name)
        self.container = db.get_container_client(container_name)
        self.initialized = True
        logger.info("CosmosEmployeeRepository initialized (container=%s)", container_name)

    async def close(self) -> None:
        if self.client:
            await self.client.close()
            self.client = None
            self.container = None
            self.initialized = False

    def _require_container(self) -> Any:
        if not self.container:
            raise RuntimeError("CosmosEmployeeRepository not initialized")
        return self.container

    async def _read(self, item_id: str) -> dict[str, Any] | None:
        container = self._require_container()
        try:
            return await container.read_item(item=item_id, partition_key=item_id)
        except CosmosResourceNotFoundError:
            return None

    async def _query(self, query: str, parameters: list[dict[str, Any]] | None = None) -> list[dict[str, Any]]:
        container = self._require_container()
        items: list[dict[str, Any]] = []
        async for item in container.query_items(
            query=query,
            parameters=parameters or [],
            enable_cross_partition_query=True,
        ):
            items.append(item)
        return items

    async def _read_profile(self, person_id: str) -> dict[str, Any]:
        doc = await self._read(person_id)
        if doc is None or doc.get("type") != DOC_PROFILE:
            raise EmployeeNotFoundError(person_id)
        return doc

    async def _replace_profile(self, doc: dict[str, Any], fields: dict[str, Any]) -> Employee:
        updated = Employee.model_validate({**doc, **fields, "updated_at": utc_now()})
        await self._require_container().replace_item(
            item=doc["id"],
            body=profile_document(updated),
            etag=doc.get("_etag"),
            match_condition=MatchConditions.IfNotModified,
        )
        return updated

    async def _delete_claim(self, normalized_name: str, person_id: str) -> None:
        claim = await self._read(claim_id(normalized_name))
        if claim is None or claim.get("person_id") != person_id:
            return
        try:
            await self._require_container().delete_item(item=claim["id"], partition_key=claim["id"])
        except CosmosResourceNotFoundError:
            pass

    async def _create_claim(self, normalized_name: str, person_id: str) -> None:
        await self._require_container().create_item(
            body={
                "id": claim_id(normalized_name),
                "type": DOC_NAME_CLAIM,
                "person_id": person_id,
                "created_at": utc_now(),
            }
        )

    async def _claim_name(self, normalized_name: str, person_id: str) -> None:
        try:
            await self._create_claim(normalized_name, person_id)
            return
        except CosmosResourceExistsError as e:
            claim = await self._read(claim_id(normalized_name))
            if claim is not None and not await self._release_stale_claim(claim):
                raise DuplicateEmployeeError(normalized_name, claim.get("person_id")) from e

        try:
            await self._create_claim(normalized_name, person_id)
        except CosmosResourceExistsError as e:
            claim = await self._read(claim_id(normalized_name))
            raise DuplicateEmployeeError(normalized_name, claim.get("person_id") if claim else None) from e

    async def _release_stale_claim(self, claim: dict[str, Any]) -> bool:
        """Delete a claim left behind by a terminated or never-written holder.

        A missing holder only counts once the claim is older than
        CLAIM_GRACE_SECONDS; before that its profile write may still be in flight.
        """
        holder = await self._read(claim["person_id"])
        if holder is not None and holder.get("employment_status") != STATUS_TERMINATED:
            return False
        if holder is None and not claim_expired(claim):
            return False

        try:
            await self._require_container().delete_item(
                item=claim["id"],
                partition_key=claim["id"],
                etag=claim.get("_etag"),
                match_condition=MatchConditions.IfNotModified,
            )
        except CosmosResourceNotFoundError:
            pass
        except CosmosAccessConditionFailedError:
            # re-claimed since we read it
            return False
        logger.warning("Released stale name claim '%s' held by %s", claim["id"], claim["person_id"])
        return True

    async def _append_unique(self, person_id: str, field: str, value: str) -> dict[str, Any] | None:
        """Append ``value`` to a profile array unless it is already there.

        Returns the patched profile, or None when the value was present.
        """
        try:
            return await self._require_container().patch_item(
                item=person_id,
                partition_key=person_id,
                patch_operations=[
                    {"op": "add", "path": f"/{field}/-", "value": value},
                    set_operation("updated_at", utc_now()),
                ],
                filter_predicate=f"FROM c WHERE NOT ARRAY_CONTAINS(c.{field}, {json.dumps(value)})",
            )
        except CosmosAccessConditionFailedError:
            return None

    async def _holds(self, person_id: str) -> bool:
        doc = await self._read(person_id)
        return doc is not None and doc.get("employment_status") != STATUS_TERMINATED

    async def _write_alias(self, person_id: str, alias: str) -> None:
        await self._require_container().upsert_item(
            body={
                "id": alias_id(alias),
                "type": DOC_ALIAS,
                "person_id": person_id,
                "alias": alias,
                "created_at": utc_now(),
            }
        )

    async def get_by_id(self, person_id: str) -> Employee | None:
        doc = await self._read(person_id)
        if doc is None or doc.get("type") != DOC_PROFILE:
            return None
        return Employee.model_validate(doc)

    async def get_by_number(self, employee_number: str) -> Employee | None:
        items = await self._query(
            "SELECT * FROM c WHERE c.type = @type AND c.employee_number = @number",
            [{"name": "@type", "value": DOC_PROFILE}, {"name": "@number", "value": employee_number}],
        )
        if not items:
            return None
        return Employee.model_validate(items[0])

    async def get_by_normalized_name(self, normalized_name: str) -> Employee | None:
        claim = await self._read(claim_id(normalized_name))
        if claim is None:
            return None
        employee = await self.get_by_id(claim["person_id"])
        if employee is None or employee.employment_status == STATUS_TERMINATED:
            return None
        return employee

    async def search_by_name(self, normalized_query: str) -> list[Employee]:
        query = (
            "SELECT * FROM c WHERE c.type = @type AND c.employment_status = @status AND "
            "(CONTAINS(c.normalized_name, @q) OR "
            "EXISTS(SELECT VALUE a FROM a IN c.known_aliases WHERE CONTAINS(a, @q)))"
        )
        items = await self._query(
            query,
            [
                {"name": "@type", "value": DOC_PROFILE},
                {"name": "@status", "value": STATUS_ACTIVE},
                {"name": "@q", "value": normalized_query},
            ],
        )
        return [Employee.model_validate(item) for item in items]

    async def list_employees(self, filters: ListEmployeeFilters | None = None) -> list[Employee]:
        clauses = ["c.type = @type"]
        params: list[dict[str, Any]] = [{"name": "@type", "value": DOC_PROFILE}]
        if filters is not None:
            if filters.status is not None:
                clauses.append("c.employment_status = @status")
                params.append({"name": "@status", "value": filters.status})
            if filters.project_id is not None:
                clauses.append("ARRAY_CONTAINS(c.project_ids, @project_id)")
                params.append({"name": "@project_id", "value": filters.project_id})
            if filters.needs_profile_completion is not None:
                clauses.append("c.needs_profile_completion = @incomplete")
                params.append({"name": "@incomplete", "value": filters.needs_profile_completion})

        items = await self._query(f"SELECT * FROM c WHERE {' AND '.join(clauses)}", params)
        return [Employee.model_validate(item) for item in items]

    async def list_active(self) -> list[Employee]:
        return await self.list_employees(ListEmployeeFilters(status=STATUS_ACTIVE))

    async def create(self, employee: Employee) -> Employee:
        container = self._require_container()
        await self._claim_name(employee.normalized_name, employee.person_id)

        try:
            await container.create_item(body=profile_document(employee))
        except Exception:
            await self._delete_claim(employee.normalized_name, employee.person_id)
            raise

        for alias in employee.known_aliases:
            record = await self.get_alias(alias)
            if record is not None and record.person_id != employee.person_id and await self._holds(record.person_id):
                logger.warning(
                    "Alias '%s' stays with %s; not indexed for new employee %s",
                    alias,
                    record.person_id,
                    employee.person_id,
                )
                continue
            await self._write_alias(employee.person_id, alias)

        logger.info("Created employee %s (%s)", employee.person_id, employee.normalized_name)
        return employee

    async def update(self, person_id: str, fields: dict[str, Any]) -> Employee:
        doc = await self._read_profile(person_id)
        old_name = doc.get("normalized_name")
        new_name = fields.get("normalized_name")
        renamed = bool(new_name) and new_name != old_name

        if renamed:
            await self._claim_name(new_name, person_id)
        try:
            updated = await self._replace_profile(doc, fields)
        except Exception:
            if renamed:
                await self._delete_claim(new_name, person_id)
            raise

        if renamed and old_name:
            await self._delete_claim(old_name, person_id)
        return updated

    async def terminate(
        self,
        person_id: str,
        termination_date: str | None,
        reason: str,
        merged_into_person_id: str | None = None,
        note: str | None = None,
    ) -> Employee:
        doc = await self._read_profile(person_id)
        updated = await self._replace_profile(
            doc,
            {
                "employment_status": STATUS_TERMINATED,
                "termination_date": termination_date or date.today().isoformat(),
                "termination_reason": reason,
                "termination_note": note,
                "merged_into_person_id": merged_into_person_id,
            },
        )
        await self._delete_claim(updated.normalized_name, person_id)
        return updated

    async def add_alias(self, person_id: str, alias: str) -> bool:
        doc = await self._read_profile(person_id)

        record = await self.get_alias(alias)
        if record is not None and record.person_id != person_id and await self._holds(record.person_id):
            raise AliasConflictError(alias, person_id, record.person_id)

        written = record is None or record.person_id != person_id
        if written:
            await self._write_alias(person_id, alias)

        if alias not in (doc.get("known_aliases") or []):
            if await self._append_unique(person_id, "known_aliases", alias) is not None:
                written = True
        return written

    async def get_alias(self, alias: str) -> AliasRecord | None:
        doc = await self._read(alias_id(alias))
        if doc is None:
            return None
        return AliasRecord.model_validate(doc)

    async def list_aliases(self) -> list[AliasRecord]:
        items = await self._query(
            "SELECT * FROM c WHERE c.type = @type",
            [{"name": "@type", "value": DOC_ALIAS}],
        )
        return [AliasRecord.model_validate(item) for item in items]

    async def record_sighting(self, person_id: str, context: MatchContext) -> Employee:
        doc = await self._read_profile(person_id)
        fields = sighting_fields(Employee.model_validate(doc), context)
        fields.pop("project_ids", None)
        fields["updated_at"] = utc_now()

        doc = await self._require_container().patch_item(
            item=person_id,
            partition_key=person_id,
            patch_operations=[set_operation(field, value) for field, value in fields.items()],
        )
        if context.project_id and context.project_id not in (doc.get("project_ids") or []):
            appended = await self._append_unique(person_id, "project_ids", context.project_id)
            doc = appended if appended is not None else await self._read_profile(person_id)
        return Employee.model_validate(doc)

    async def check_connection(self) -> bool:
        if not self.container:
            return False
        try:
            query = "SELECT VALUE COUNT(1) FROM c"
            async for _ in self.container.query_items(
                query=query,
                enable_cross_partition_query=True,
            ):
                return True
            return True
        except Exception:
            logger.exception("Cosmos DB personnel container connection check failed")
            return False
