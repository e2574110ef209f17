"""
Upstream listing API abstraction used by the incremental sync engine.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..schemas.sync_schemas import UpstreamPage


class UpstreamEntitySource(ABC):
    """
    Paged "modified since" listing of upstream records.

    Implementations raise UpstreamUnavailableError when the upstream cannot
    be reached or times out, and UpstreamFetchError for error responses.
    """

    @abstractmethod
    def fetch_modified(
        self,
        entity_type: str,
        since: Optional[datetime],
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> UpstreamPage:
        """
        Fetch one page of records modified at or after ``since``.

        Args:
            entity_type: Entity type to list
            since: Inclusive lower bound, None for a full backfill
            cursor: Opaque cursor from the previous page
            limit: Page size

        Returns:
            The page, with next_cursor None on the last page
        """
        pass

    @abstractmethod
    def supported_entity_types(self) -> List[str]:
        pass
