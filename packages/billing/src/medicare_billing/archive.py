"""Archive (soft-delete) state machine for users, patients, invoices and payments.

    Active --archive--> Archived --restore--> Active
    Archived --permanent_delete--> Deleted (terminal)

Single-entity operations raise on failure and leave the entity untouched.
Bulk operations apply the transition record by record, without rollback, and
report how many records changed together with the first error seen.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from medicare_billing.clients.billing_api import BillingAPIClient
from medicare_billing.errors import (
    AuthorizationError,
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from medicare_billing.fields import coerce_str
from medicare_billing.models import ArchiveInfo
from medicare_billing.state import SuppressionFlag

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"
DEFAULT_ARCHIVED_BY = "system"


class EntityType(str, Enum):
    """Entity types that carry archive metadata."""

    USER = "user"
    PATIENT = "patient"
    INVOICE = "invoice"
    PAYMENT = "payment"


class ArchiveAction(str, Enum):
    """Transitions the state machine accepts."""

    ARCHIVE = "archive"
    RESTORE = "restore"
    PERMANENT_DELETE = "permanent_delete"
    ARCHIVE_ALL = "archive_all"
    RESTORE_ALL = "restore_all"


# Operations on these types need an admin requester role.
ROLE_GATED_TYPES = frozenset({EntityType.PATIENT})


@dataclass
class TransitionResult:
    """Outcome of an archive transition."""

    success: bool
    entity: dict[str, Any] | None = None
    count: int | None = None
    error: BillingError | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.entity is not None:
            result["entity"] = self.entity
        if self.count is not None:
            result["count"] = self.count
        if self.error is not None:
            result["error"] = str(self.error)
        return result


def entity_id_of(entity: Mapping[str, Any]) -> str:
    return coerce_str(entity.get("_id") or entity.get("id"))


def _as_entity_type(value: EntityType | str) -> EntityType:
    if isinstance(value, EntityType):
        return value
    text = str(value).strip().lower()
    # Route-style plural names ("patients") are accepted too.
    if text.endswith("s"):
        text = text[:-1]
    try:
        return EntityType(text)
    except ValueError as e:
        raise ValidationError(f"Invalid item type: {value}") from e


def _as_action(value: ArchiveAction | str) -> ArchiveAction:
    if isinstance(value, ArchiveAction):
        return value
    try:
        return ArchiveAction(str(value).strip().lower().replace("-", "_"))
    except ValueError as e:
        raise ValidationError(f"Invalid archive action: {value}") from e


class ArchiveStore(ABC):
    """Storage collaborator for archivable entities.

    Each mutating call is expected to be atomic for a single entity.
    """

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Return the entity, or None if it does not exist."""

    @abstractmethod
    async def set_archive_info(
        self,
        entity_type: EntityType,
        entity_id: str,
        info: ArchiveInfo,
        requester_role: str | None = None,
    ) -> dict[str, Any] | None:
        """Write archive metadata; return the updated entity or None if missing."""

    @abstractmethod
    async def delete_if_archived(
        self,
        entity_type: EntityType,
        entity_id: str,
        requester_role: str | None = None,
    ) -> bool:
        """Delete the entity only if it is archived; report whether it was."""

    @abstractmethod
    async def list(self, entity_type: EntityType, archived: bool) -> list[dict[str, Any]]:
        """List entities whose archived flag equals ``archived``."""


class InMemoryArchiveStore(ArchiveStore):
    """Dict-backed store, used for local views and tests."""

    def __init__(
        self,
        entities: Mapping[EntityType | str, Iterable[Mapping[str, Any]]] | None = None,
    ):
        self._entities: dict[EntityType, dict[str, dict[str, Any]]] = {
            entity_type: {} for entity_type in EntityType
        }
        for entity_type, records in (entities or {}).items():
            for record in records:
                self.add(entity_type, record)

    def add(self, entity_type: EntityType | str, entity: Mapping[str, Any]) -> dict[str, Any]:
        bucket = self._entities[_as_entity_type(entity_type)]
        entity_id = entity_id_of(entity)
        if not entity_id:
            raise ValidationError("Entity is missing an id")
        if entity_id in bucket:
            raise ConflictError(f"Duplicate id: {entity_id}")
        bucket[entity_id] = dict(entity)
        return dict(entity)

    async def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        entity = self._entities[entity_type].get(entity_id)
        return dict(entity) if entity is not None else None

    async def set_archive_info(
        self,
        entity_type: EntityType,
        entity_id: str,
        info: ArchiveInfo,
        requester_role: str | None = None,
    ) -> dict[str, Any] | None:
        entity = self._entities[entity_type].get(entity_id)
        if entity is None:
            return None
        entity.update(info.to_payload())
        return dict(entity)

    async def delete_if_archived(
        self,
        entity_type: EntityType,
        entity_id: str,
        requester_role: str | None = None,
    ) -> bool:
        entity = self._entities[entity_type].get(entity_id)
        if entity is None or not ArchiveInfo.from_raw(entity).is_archived:
            return False
        del self._entities[entity_type][entity_id]
        return True

    async def list(self, entity_type: EntityType, archived: bool) -> list[dict[str, Any]]:
        return [
            dict(entity)
            for entity in self._entities[entity_type].values()
            if ArchiveInfo.from_raw(entity).is_archived == archived
        ]


class APIArchiveStore(ArchiveStore):
    """Store backed by the billing API's archive routes."""

    def __init__(self, client: BillingAPIClient, page_size: int = 100):
        self._client = client
        self._page_size = page_size

    async def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        try:
            entity = await self._client.get_entity(entity_type.value, entity_id)
        except NotFoundError:
            return None
        return entity or None

    async def set_archive_info(
        self,
        entity_type: EntityType,
        entity_id: str,
        info: ArchiveInfo,
        requester_role: str | None = None,
    ) -> dict[str, Any] | None:
        try:
            if info.is_archived:
                entity = await self._client.archive_entity(
                    entity_type.value, entity_id, info.archived_by, role=requester_role
                )
            else:
                entity = await self._client.restore_entity(
                    entity_type.value, entity_id, role=requester_role
                )
        except NotFoundError:
            return None
        return entity or None

    async def delete_if_archived(
        self,
        entity_type: EntityType,
        entity_id: str,
        requester_role: str | None = None,
    ) -> bool:
        try:
            await self._client.delete_archived_entity(
                entity_type.value, entity_id, role=requester_role
            )
        except NotFoundError:
            return False
        return True

    async def list(self, entity_type: EntityType, archived: bool) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            batch = await self._client.list_entities(
                entity_type.value, archived=archived, offset=offset, limit=self._page_size
            )
            items.extend(batch)
            if len(batch) < self._page_size:
                return items
            offset += self._page_size


class ArchiveStateMachine:
    """Applies archive transitions to a store, enforcing the patient role gate."""

    def __init__(self, store: ArchiveStore, suppression: SuppressionFlag | None = None):
        self._store = store
        self._suppression = suppression
        self._logger = logger.bind(component="archive")

    @staticmethod
    def _authorize(entity_type: EntityType, verb: str, requester_role: str | None) -> None:
        if entity_type not in ROLE_GATED_TYPES:
            return
        if (requester_role or "").strip().lower() != ADMIN_ROLE:
            raise AuthorizationError(
                f"Forbidden: only admin users may {verb} {entity_type.value}s"
            )

    async def transition(
        self,
        entity_type: EntityType | str,
        entity_id: str | None,
        action: ArchiveAction | str,
        requester_role: str | None = None,
        archived_by: str | None = None,
    ) -> TransitionResult:
        """Apply ``action`` to one entity, or to every entity of a type for bulk actions."""
        kind = _as_entity_type(entity_type)
        act = _as_action(action)

        if act is ArchiveAction.ARCHIVE_ALL:
            return await self.archive_all(kind, requester_role, archived_by)
        if act is ArchiveAction.RESTORE_ALL:
            return await self.restore_all(kind, requester_role)

        if not entity_id:
            raise ValidationError(f"An entity id is required for {act.value}")
        if act is ArchiveAction.ARCHIVE:
            return await self.archive(kind, entity_id, requester_role, archived_by)
        if act is ArchiveAction.RESTORE:
            return await self.restore(kind, entity_id, requester_role)
        return await self.permanent_delete(kind, entity_id, requester_role)

    async def _require(self, entity_type: EntityType, entity_id: str) -> dict[str, Any]:
        entity = await self._store.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")
        return entity

    async def archive(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        requester_role: str | None = None,
        archived_by: str | None = None,
    ) -> TransitionResult:
        kind = _as_entity_type(entity_type)
        self._authorize(kind, "archive", requester_role)
        entity = await self._require(kind, entity_id)
        if ArchiveInfo.from_raw(entity).is_archived:
            self._logger.debug("already_archived", entity_type=kind.value, entity_id=entity_id)
            return TransitionResult(success=True, entity=entity, count=0)

        info = ArchiveInfo(
            is_archived=True,
            archived_at=datetime.now(UTC),
            archived_by=archived_by or DEFAULT_ARCHIVED_BY,
        )
        updated = await self._store.set_archive_info(kind, entity_id, info, requester_role)
        if updated is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        self._logger.info("entity_archived", entity_type=kind.value, entity_id=entity_id)
        return TransitionResult(success=True, entity=updated, count=1)

    async def restore(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        requester_role: str | None = None,
    ) -> TransitionResult:
        kind = _as_entity_type(entity_type)
        self._authorize(kind, "restore", requester_role)
        entity = await self._require(kind, entity_id)
        if not ArchiveInfo.from_raw(entity).is_archived:
            self._logger.debug("already_active", entity_type=kind.value, entity_id=entity_id)
            return TransitionResult(success=True, entity=entity, count=0)

        updated = await self._store.set_archive_info(
            kind, entity_id, ArchiveInfo(), requester_role
        )
        if updated is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        self._logger.info("entity_restored", entity_type=kind.value, entity_id=entity_id)
        return TransitionResult(success=True, entity=updated, count=1)

    async def permanent_delete(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        requester_role: str | None = None,
    ) -> TransitionResult:
        """Delete an archived entity for good. Only legal from Archived."""
        kind = _as_entity_type(entity_type)
        self._authorize(kind, "permanently delete", requester_role)
        entity = await self._store.get(kind, entity_id)
        if entity is None or not ArchiveInfo.from_raw(entity).is_archived:
            raise NotFoundError(f"{kind.value} {entity_id} not found or not archived")

        deleted = await self._store.delete_if_archived(kind, entity_id, requester_role)
        if not deleted:
            raise NotFoundError(f"{kind.value} {entity_id} not found or not archived")
        self._logger.info("entity_deleted", entity_type=kind.value, entity_id=entity_id)
        return TransitionResult(success=True, count=1)

    async def _bulk(
        self,
        kind: EntityType,
        info: ArchiveInfo,
        requester_role: str | None,
    ) -> TransitionResult:
        candidates = await self._store.list(kind, archived=not info.is_archived)
        count = 0
        first_error: BillingError | None = None

        for entity in candidates:
            entity_id = entity_id_of(entity)
            try:
                updated = await self._store.set_archive_info(
                    kind, entity_id, info, requester_role
                )
                if updated is None:
                    raise NotFoundError(f"{kind.value} {entity_id} not found")
                count += 1
            except BillingError as e:
                self._logger.warning(
                    "bulk_transition_failed",
                    entity_type=kind.value,
                    entity_id=entity_id,
                    error=str(e),
                )
                if first_error is None:
                    first_error = e

        if first_error is None and self._suppression is not None:
            self._suppression.clear()

        self._logger.info(
            "bulk_transition_completed",
            entity_type=kind.value,
            archived=info.is_archived,
            count=count,
            failed=first_error is not None,
        )
        return TransitionResult(
            success=first_error is None or count > 0,
            count=count,
            error=first_error,
        )

    async def archive_all(
        self,
        entity_type: EntityType | str,
        requester_role: str | None = None,
        archived_by: str | None = None,
    ) -> TransitionResult:
        """Archive every active entity of a type. Safe to repeat."""
        kind = _as_entity_type(entity_type)
        self._authorize(kind, "archive", requester_role)
        info = ArchiveInfo(
            is_archived=True,
            archived_at=datetime.now(UTC),
            archived_by=archived_by or DEFAULT_ARCHIVED_BY,
        )
        return await self._bulk(kind, info, requester_role)

    async def restore_all(
        self,
        entity_type: EntityType | str,
        requester_role: str | None = None,
    ) -> TransitionResult:
        """Restore every archived entity of a type. Safe to repeat."""
        kind = _as_entity_type(entity_type)
        self._authorize(kind, "restore", requester_role)
        return await self._bulk(kind, ArchiveInfo(), requester_role)

    async def list_archived(
        self, entity_types: Iterable[EntityType] = tuple(EntityType)
    ) -> dict[EntityType, list[dict[str, Any]]]:
        """Archived entities per type, fetched concurrently."""
        kinds = list(entity_types)
        results = await asyncio.gather(*(self._store.list(kind, archived=True) for kind in kinds))
        return dict(zip(kinds, results))
