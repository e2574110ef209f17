"""
Delayed priority queue of refresh jobs with one slot per credential key.

Jobs become eligible at ``scheduled_at``. Among eligible jobs the highest
priority wins, then the earliest ``scheduled_at``, then insertion order.
A min-heap on ``scheduled_at`` tells the dispatcher when to wake up next;
superseded heap entries are discarded lazily.

Not thread-safe on its own: the scheduler guards it with its condition lock.
"""

import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..constants import RefreshPriority, RefreshTrigger
from ..db.db_base import utc_now
from ..schemas.credential_schemas import credential_key


@dataclass
class RefreshJob:
    provider: str
    tenant_id: str
    scheduled_at: datetime
    priority: int = RefreshPriority.NORMAL
    retry_count: int = 0
    trigger: RefreshTrigger = RefreshTrigger.SCHEDULED
    created_at: datetime = field(default_factory=utc_now)
    sequence: int = 0

    @property
    def key(self) -> str:
        return credential_key(self.provider, self.tenant_id)

    def sort_key(self) -> Tuple[int, datetime, int]:
        return (-int(self.priority), self.scheduled_at, self.sequence)


class RefreshQueue:
    def __init__(self):
        self._jobs: Dict[str, RefreshJob] = {}
        self._timer: List[Tuple[datetime, int, str]] = []
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, key: str) -> bool:
        return key in self._jobs

    def get(self, key: str) -> Optional[RefreshJob]:
        return self._jobs.get(key)

    def offer(self, job: RefreshJob, replace: bool = False) -> Tuple[RefreshJob, bool]:
        """
        Queue ``job`` unless its key already has a pending job.

        Args:
            job: Job to queue
            replace: Supersede an existing pending job for the key

        Returns:
            Tuple of (pending job for the key, whether ``job`` was queued)
        """
        existing = self._jobs.get(job.key)
        if existing is not None and not replace:
            return existing, False

        job.sequence = next(self._sequence)
        self._jobs[job.key] = job
        heapq.heappush(self._timer, (job.scheduled_at, job.sequence, job.key))
        return job, True

    def remove(self, key: str) -> Optional[RefreshJob]:
        return self._jobs.pop(key, None)

    def _discard_stale(self) -> None:
        while self._timer:
            _, sequence, key = self._timer[0]
            job = self._jobs.get(key)
            if job is not None and job.sequence == sequence:
                return
            heapq.heappop(self._timer)

    def next_due_at(self, exclude: Iterable[str] = ()) -> Optional[datetime]:
        """When the earliest pending job outside ``exclude`` becomes eligible."""
        excluded: Set[str] = set(exclude)
        if not excluded:
            self._discard_stale()
            return self._timer[0][0] if self._timer else None
        due_times = [job.scheduled_at for job in self._jobs.values() if job.key not in excluded]
        return min(due_times) if due_times else None

    def pop_due(
        self,
        now: datetime,
        exclude: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[RefreshJob]:
        """
        Remove and return eligible jobs in dispatch order.

        Args:
            now: Current time
            exclude: Keys that must stay queued (e.g. already in flight)
            limit: Maximum number of jobs to return
        """
        excluded: Set[str] = set(exclude)
        due = sorted(
            (
                job
                for job in self._jobs.values()
                if job.scheduled_at <= now and job.key not in excluded
            ),
            key=RefreshJob.sort_key,
        )
        if limit is not None:
            due = due[: max(limit, 0)]
        for job in due:
            del self._jobs[job.key]
        return due

    def jobs(self) -> List[RefreshJob]:
        """Pending jobs, earliest first."""
        return sorted(self._jobs.values(), key=lambda job: (job.scheduled_at, job.sequence))

    def clear(self) -> None:
        self._jobs.clear()
        self._timer.clear()
