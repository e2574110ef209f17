"""
SQLAlchemy-backed local store for synced upstream records.

Each upstream record maps to one ``entity_mappings`` row keyed by
(tenant_id, entity_type, upstream_id), which makes re-delivered records an
idempotent upsert. ``version`` only moves when the canonical content changes.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional

from ..constants import DEFAULT_TENANT_ID
from ..db.db_base import ensure_utc
from ..db.db_sync_models import EntityMapping
from ..exceptions import RecordSyncError, not_found
from ..processors.hubspot_mappers import get_hubspot_mapper
from ..processors.mapper_interface import EntityMapper, MapperInterface
from ..schemas.sync_schemas import LocalMapping, UpstreamRecord
from ..utils.crud_helpers import count_records, get_record
from .base_service import SessionManagedService


def content_hash(attributes: Dict[str, Any]) -> str:
    payload = json.dumps(attributes, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class EntityMappingService(SessionManagedService, EntityMapper):
    """Entity mapper for one tenant."""

    def __init__(
        self,
        tenant_id: str = DEFAULT_TENANT_ID,
        mappers: Optional[Dict[str, MapperInterface]] = None,
        db_manager=None,
        clock=None,
    ):
        """
        Args:
            tenant_id: Tenant owning the mapped records
            mappers: Transformation mapper per entity type, HubSpot mappers by default
            db_manager: Database manager, defaults to the global one
            clock: Callable returning the current aware UTC datetime
        """
        super().__init__(db_manager=db_manager, clock=clock)
        self.tenant_id = tenant_id
        self._mappers: Dict[str, MapperInterface] = dict(mappers or {})

    def _mapper(self, entity_type: str) -> MapperInterface:
        mapper = self._mappers.get(entity_type)
        if mapper is None:
            mapper = get_hubspot_mapper(entity_type)
            self._mappers[entity_type] = mapper
        return mapper

    def _to_local(self, row: EntityMapping) -> LocalMapping:
        return LocalMapping(
            entity_type=row.entity_type,
            upstream_id=row.upstream_id,
            upstream_modified_at=ensure_utc(row.upstream_modified_at),
            content_hash=row.content_hash,
            version=row.version,
        )

    def _key(self, entity_type: str, upstream_id: str) -> Dict[str, Any]:
        return {"tenant_id": self.tenant_id, "entity_type": entity_type, "upstream_id": upstream_id}

    def find_existing(self, entity_type: str, upstream_id: str) -> Optional[LocalMapping]:
        with self.transaction("find_entity_mapping") as session:
            row = get_record(session, EntityMapping, self._key(entity_type, upstream_id))
            return self._to_local(row) if row else None

    def get_attributes(self, entity_type: str, upstream_id: str) -> Dict[str, Any]:
        """
        Canonical attributes stored for an upstream record.

        Raises:
            RepositoryError: No mapping for the upstream id
        """
        with self.transaction("get_entity_attributes") as session:
            row = get_record(session, EntityMapping, self._key(entity_type, upstream_id))
            if row is None:
                raise not_found("EntityMapping", entity_type=entity_type, upstream_id=upstream_id)
            return dict(row.attributes)

    def to_canonical(self, entity_type: str, record: UpstreamRecord) -> Dict[str, Any]:
        mapper = self._mapper(entity_type)
        if not mapper.validate_external_data(record.properties):
            raise RecordSyncError(
                f"{entity_type} {record.upstream_id} is missing required properties",
                entity_type=entity_type,
                upstream_id=record.upstream_id,
            )
        return mapper.to_canonical(record.properties)

    def create(
        self,
        entity_type: str,
        record: UpstreamRecord,
        attributes: Dict[str, Any],
        synced_at: datetime,
    ) -> LocalMapping:
        with self.transaction("create_entity_mapping") as session:
            row = EntityMapping(
                tenant_id=self.tenant_id,
                entity_type=entity_type,
                upstream_id=record.upstream_id,
                upstream_modified_at=record.last_modified,
                attributes=attributes,
                content_hash=content_hash(attributes),
                version=1,
                last_synced_at=synced_at,
            )
            session.add(row)
            session.flush()
            return self._to_local(row)

    def update(
        self,
        entity_type: str,
        record: UpstreamRecord,
        attributes: Dict[str, Any],
        synced_at: datetime,
    ) -> LocalMapping:
        with self.transaction("update_entity_mapping") as session:
            row = get_record(session, EntityMapping, self._key(entity_type, record.upstream_id))
            if row is None:
                raise not_found(
                    "EntityMapping", entity_type=entity_type, upstream_id=record.upstream_id
                )

            new_hash = content_hash(attributes)
            if new_hash != row.content_hash:
                row.attributes = attributes
                row.content_hash = new_hash
                row.version = (row.version or 1) + 1

            stored_modified = ensure_utc(row.upstream_modified_at)
            if stored_modified is None or record.last_modified > stored_modified:
                row.upstream_modified_at = record.last_modified
            row.last_synced_at = synced_at
            row.updated_at = synced_at
            session.flush()
            return self._to_local(row)

    def count(self, entity_type: str) -> int:
        with self.transaction("count_entity_mappings") as session:
            return count_records(
                session, EntityMapping, {"tenant_id": self.tenant_id, "entity_type": entity_type}
            )
