"""
Pydantic schemas reported by the refresh scheduler.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .credential_schemas import TokenStatistics


class UnhealthyCredential(BaseModel):
    provider: str
    tenant_id: str
    failed_refresh_count: int
    last_refresh_error: Optional[str] = None
    is_active: bool = True


class CircuitSnapshot(BaseModel):
    key: str
    status: str
    consecutive_failures: int
    opened_at: Optional[datetime] = None


class HealthReport(BaseModel):
    """Result of one scheduler health check."""

    checked_at: datetime
    pending_jobs: int = 0
    in_flight_jobs: int = 0
    open_circuits: List[str] = Field(default_factory=list)
    unhealthy_credentials: List[UnhealthyCredential] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.open_circuits and not self.unhealthy_credentials


class SchedulerStatistics(BaseModel):
    running: bool
    registered_configs: int
    pending_jobs: int
    in_flight_jobs: int
    pending_by_priority: Dict[int, int] = Field(default_factory=dict)
    next_due_at: Optional[datetime] = None
    circuits: List[CircuitSnapshot] = Field(default_factory=list)
    tokens: TokenStatistics = Field(default_factory=TokenStatistics)
