"""
Mapper interfaces for incremental sync.

MapperInterface is the pure transformation half: upstream properties in,
canonical attributes out. EntityMapper is the persistence half the sync
engine writes through: lookup by upstream id, create and update.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from ..schemas.sync_schemas import LocalMapping, UpstreamRecord


class MapperInterface(ABC):
    """
    Interface for data transformation mappers.

    Mappers implement pure transformation functions without side effects,
    which keeps them easy to test in isolation and to reuse across sources.

    Example Usage:
        class HubSpotDealMapper(MapperInterface):
            def to_canonical(self, properties):
                return {
                    "name": properties.get("dealname"),
                    "amount": float(properties.get("amount") or 0),
                }
    """

    @abstractmethod
    def to_canonical(self, external_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Transform upstream record properties to canonical attributes.

        Args:
            external_data: Raw properties from the upstream system

        Returns:
            Canonical attributes

        Raises:
            ValidationError: If the upstream data is invalid or incomplete
        """
        pass

    def get_mapper_info(self) -> Dict[str, Any]:
        """Information about this mapper for monitoring and debugging."""
        return {
            "mapper_class": self.__class__.__name__,
            "mapper_module": self.__class__.__module__,
        }

    def validate_external_data(self, external_data: Dict[str, Any]) -> bool:
        """
        Validate upstream data before transformation.

        Override to reject records before to_canonical runs. The default
        accepts everything.
        """
        return True


class EntityMapper(ABC):
    """Local store of synced upstream records, keyed by upstream id."""

    @abstractmethod
    def find_existing(self, entity_type: str, upstream_id: str) -> Optional[LocalMapping]:
        """Return the local record for the upstream id, or None."""
        pass

    @abstractmethod
    def to_canonical(self, entity_type: str, record: UpstreamRecord) -> Dict[str, Any]:
        """Transform an upstream record into canonical attributes."""
        pass

    @abstractmethod
    def create(
        self,
        entity_type: str,
        record: UpstreamRecord,
        attributes: Dict[str, Any],
        synced_at: datetime,
    ) -> LocalMapping:
        pass

    @abstractmethod
    def update(
        self,
        entity_type: str,
        record: UpstreamRecord,
        attributes: Dict[str, Any],
        synced_at: datetime,
    ) -> LocalMapping:
        pass

    @abstractmethod
    def count(self, entity_type: str) -> int:
        """Number of local records of the entity type."""
        pass
