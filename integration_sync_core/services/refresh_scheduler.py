"""
Token refresh scheduler.

Keeps every active OAuth credential refreshed before it expires:

- one pending job per (provider, tenant); duplicates are ignored unless the
  caller asks for an immediate override
- a dispatcher thread hands due jobs, highest priority first, to a bounded
  worker pool and never runs two jobs for the same key at once
- a successful refresh schedules the next one from the new expires_in, so
  the schedule perpetuates itself
- transient failures retry with exponential backoff up to max_retries;
  terminal auth failures deactivate the credential
- a recurring expiry sweep re-queues anything the event-driven path missed,
  and a recurring health check reports credentials that keep failing
- get_access_token hands callers a usable token, refreshing it inline when
  it is about to expire

Tests and single-threaded callers can skip start() and drive the scheduler
with run_pending().
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..config import RefreshSchedulerConfig, get_config
from ..constants import (
    CircuitStatus,
    RefreshOutcome,
    RefreshPriority,
    RefreshTrigger,
    TokenEventType,
)
from ..context.tenant_context import tenant_context
from ..db.db_base import utc_now
from ..exceptions import (
    CircuitOpenError,
    CredentialError,
    CredentialInactiveError,
    CredentialNotFoundError,
    ErrorCode,
    RefreshConfigNotFoundError,
    ServiceError,
    TerminalAuthError,
    TokenRefreshError,
    correlation_context,
)
from ..scheduling.circuit_breaker import CircuitBreaker
from ..scheduling.refresh_events import RefreshEventBus, TokenEvent
from ..scheduling.refresh_queue import RefreshJob, RefreshQueue
from ..schemas.credential_schemas import OAuthCredentialRead, ProviderConfig, credential_key
from ..schemas.refresh_schemas import (
    CircuitSnapshot,
    HealthReport,
    SchedulerStatistics,
    UnhealthyCredential,
)
from ..utils.backoff_utils import (
    calculate_exponential_backoff,
    calculate_initial_refresh_delay,
    calculate_next_refresh_delay,
)
from ..utils.logger import get_logger
from .token_refresh_client import TokenRefreshClient
from .token_store import TokenStore

MAX_IDLE_WAIT_SECONDS = 30.0
MIN_CIRCUIT_WAIT_SECONDS = 1.0


@dataclass
class RecurringTask:
    name: str
    interval_seconds: float
    action: Callable[[], Any]
    next_run_at: datetime


class RefreshScheduler:
    """Priority-queue driven refresh of OAuth credentials."""

    def __init__(
        self,
        token_store: TokenStore,
        refresh_client: TokenRefreshClient,
        circuit_breaker: Optional[CircuitBreaker] = None,
        event_bus: Optional[RefreshEventBus] = None,
        config: Optional[RefreshSchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        app_config = get_config()
        self.token_store = token_store
        self.refresh_client = refresh_client
        self.config = config or app_config.refresh
        self.clock = clock or utc_now
        self.event_bus = event_bus or RefreshEventBus()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=app_config.circuit_breaker.failure_threshold,
            reset_after_seconds=app_config.circuit_breaker.reset_after_seconds,
            clock=self.clock,
        )
        if self.circuit_breaker.on_state_change is None:
            self.circuit_breaker.on_state_change = self._on_circuit_change

        self.logger = get_logger()
        self.event_bus.subscribe_all(self._log_event)

        self._queue = RefreshQueue()
        self._in_flight: Set[str] = set()
        self._configs: Dict[Tuple[str, Optional[str]], ProviderConfig] = {}
        self._recurring: List[RecurringTask] = []
        self._condition = threading.Condition()
        self._running = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None

    # ==================== CONFIGURATION ====================

    def register_config(self, config: ProviderConfig) -> None:
        """Register how to refresh credentials of one provider (or provider + tenant)."""
        self._configs[(config.provider, config.tenant_id)] = config

    def _find_config(self, provider: str, tenant_id: str) -> Optional[ProviderConfig]:
        return self._configs.get((provider, tenant_id)) or self._configs.get((provider, None))

    def get_provider_config(self, provider: str, tenant_id: str) -> ProviderConfig:
        config = self._find_config(provider, tenant_id)
        if config is None:
            raise RefreshConfigNotFoundError(
                f"No refresh configuration for provider '{provider}'",
                provider=provider,
                tenant_id=tenant_id,
            )
        return config

    def _refresh_before_expiry(self, config: ProviderConfig) -> int:
        if config.refresh_before_expiry_seconds is not None:
            return config.refresh_before_expiry_seconds
        return self.config.refresh_before_expiry_seconds

    def _max_retries(self, config: ProviderConfig) -> int:
        if config.max_retries is not None:
            return config.max_retries
        return self.config.max_retries

    # ==================== SCHEDULING ====================

    def schedule_refresh(
        self,
        provider: str,
        tenant_id: str,
        delay_seconds: float = 0,
        priority: int = RefreshPriority.NORMAL,
        immediate: bool = False,
        trigger: RefreshTrigger = RefreshTrigger.SCHEDULED,
    ) -> RefreshJob:
        """
        Queue a refresh for the key.

        Args:
            provider: Provider name
            tenant_id: Tenant ID
            delay_seconds: Delay before the job becomes due
            priority: Dispatch priority, higher first
            immediate: Supersede any pending job with a due-now job, at
                NEAR_EXPIRY priority or higher
            trigger: Why the job was queued

        Returns:
            The pending job for the key (the existing one when the call was a no-op)
        """
        now = self.clock()
        key = credential_key(provider, tenant_id)

        with self._condition:
            existing = self._queue.get(key)
            if immediate:
                job = RefreshJob(
                    provider=provider,
                    tenant_id=tenant_id,
                    scheduled_at=now,
                    priority=max(
                        int(priority),
                        int(RefreshPriority.NEAR_EXPIRY),
                        existing.priority if existing else 0,
                    ),
                    retry_count=existing.retry_count if existing else 0,
                    trigger=trigger,
                    created_at=now,
                )
                job, _ = self._queue.offer(job, replace=True)
            else:
                job, queued = self._queue.offer(
                    RefreshJob(
                        provider=provider,
                        tenant_id=tenant_id,
                        scheduled_at=now + timedelta(seconds=delay_seconds),
                        priority=int(priority),
                        trigger=trigger,
                        created_at=now,
                    )
                )
                if not queued:
                    self.logger.debug(
                        "Refresh already pending, schedule request ignored",
                        extra={"credential_key": key, "scheduled_at": job.scheduled_at.isoformat()},
                    )
                    return job
            self._condition.notify_all()

        self.logger.info(
            "Token refresh scheduled",
            extra={
                "provider": provider,
                "tenant_id": tenant_id,
                "scheduled_at": job.scheduled_at.isoformat(),
                "priority": job.priority,
                "immediate": immediate,
                "trigger": trigger.value,
            },
        )
        return job

    def _enqueue_follow_up(self, job: RefreshJob, replace: bool) -> None:
        """
        Queue the job that follows a processed one.

        With ``replace`` the new job supersedes any pending one. Otherwise an
        earlier pending job is kept and inherits the higher retry count.
        """
        with self._condition:
            existing = self._queue.get(job.key)
            if replace or existing is None or job.scheduled_at < existing.scheduled_at:
                self._queue.offer(job, replace=True)
            else:
                existing.retry_count = max(existing.retry_count, job.retry_count)
            self._condition.notify_all()

    def schedule_for_credential(
        self, credential: OAuthCredentialRead, trigger: RefreshTrigger = RefreshTrigger.STARTUP
    ) -> Optional[RefreshJob]:
        """
        Queue the first refresh of a stored credential from its expiry.

        Credentials already inside the refresh window get an immediate job.
        """
        config = self._find_config(credential.provider, credential.tenant_id)
        if config is None:
            self.logger.warning(
                "No refresh configuration for stored credential, skipping",
                extra={"provider": credential.provider, "tenant_id": credential.tenant_id},
            )
            return None
        if not config.enable_auto_refresh:
            return None

        now = self.clock()
        delay = calculate_initial_refresh_delay(
            credential.seconds_until_expiry(now), self._refresh_before_expiry(config)
        )
        if delay > 0:
            return self.schedule_refresh(
                credential.provider, credential.tenant_id, delay_seconds=delay, trigger=trigger
            )

        self._publish_expiry_event(credential, now)
        return self.schedule_refresh(
            credential.provider,
            credential.tenant_id,
            priority=RefreshPriority.OVERDUE,
            immediate=True,
            trigger=trigger,
        )

    def on_credential_stored(self, provider: str, tenant_id: str) -> Optional[RefreshJob]:
        """Reset breaker state and (re)plan refreshes after a new OAuth exchange."""
        self.circuit_breaker.reset(credential_key(provider, tenant_id))
        with self._condition:
            self._queue.remove(credential_key(provider, tenant_id))
        credential = self.token_store.get_required(provider, tenant_id)
        return self.schedule_for_credential(credential, trigger=RefreshTrigger.SCHEDULED)

    def cancel(self, provider: str, tenant_id: str) -> bool:
        """Drop the pending job for a key, e.g. when its credential is deleted."""
        with self._condition:
            return self._queue.remove(credential_key(provider, tenant_id)) is not None

    def get_pending_job(self, provider: str, tenant_id: str) -> Optional[RefreshJob]:
        with self._condition:
            return self._queue.get(credential_key(provider, tenant_id))

    def pending_jobs(self) -> List[RefreshJob]:
        with self._condition:
            return self._queue.jobs()

    # ==================== LIFECYCLE ====================

    def initialize(self, configs: Iterable[ProviderConfig]) -> int:
        """
        Register provider configurations and plan refreshes for stored credentials.

        Returns:
            Number of credentials scheduled
        """
        for config in configs:
            self.register_config(config)

        scheduled = 0
        for credential in self.token_store.list_refreshable():
            if self.schedule_for_credential(credential, trigger=RefreshTrigger.STARTUP):
                scheduled += 1

        now = self.clock()
        with self._condition:
            self._recurring = [
                RecurringTask(
                    name="health_check",
                    interval_seconds=self.config.health_check_interval_seconds,
                    action=self.health_check,
                    next_run_at=now + timedelta(seconds=self.config.health_check_interval_seconds),
                ),
                RecurringTask(
                    name="expiry_sweep",
                    interval_seconds=self.config.expiry_sweep_interval_seconds,
                    action=self.sweep_expiring_credentials,
                    next_run_at=now + timedelta(seconds=self.config.expiry_sweep_interval_seconds),
                ),
            ]

        self.logger.info(
            "Refresh scheduler initialized",
            extra={"registered_configs": len(self._configs), "scheduled_credentials": scheduled},
        )
        return scheduled

    def start(self) -> None:
        """Start the dispatcher thread and the worker pool."""
        with self._condition:
            if self._running:
                return
            self._running = True

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size, thread_name_prefix="token-refresh"
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="refresh-dispatcher", daemon=True
        )
        self._dispatcher.start()
        self.logger.info(
            "Refresh scheduler started", extra={"worker_pool_size": self.config.worker_pool_size}
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching, let in-flight jobs finish when ``wait`` is set, drop pending jobs."""
        with self._condition:
            self._running = False
            self._condition.notify_all()

        if self._dispatcher is not None:
            self._dispatcher.join(timeout=MAX_IDLE_WAIT_SECONDS)
            self._dispatcher = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

        with self._condition:
            dropped = len(self._queue)
            self._queue.clear()

        self.logger.info("Refresh scheduler stopped", extra={"dropped_jobs": dropped})

    @property
    def running(self) -> bool:
        return self._running

    def run_pending(self) -> int:
        """
        Run due recurring tasks and every due job on the calling thread.

        Returns:
            Number of refresh jobs processed
        """
        self._run_due_recurring_tasks()

        processed = 0
        while True:
            with self._condition:
                jobs = self._queue.pop_due(self.clock(), exclude=self._in_flight, limit=1)
                if not jobs:
                    return processed
                job = jobs[0]
                self._in_flight.add(job.key)
            self._process_job(job)
            processed += 1

    def _run_due_recurring_tasks(self) -> None:
        now = self.clock()
        with self._condition:
            due = [task for task in self._recurring if task.next_run_at <= now]
            for task in due:
                task.next_run_at = now + timedelta(seconds=task.interval_seconds)

        for task in due:
            try:
                task.action()
            except Exception as e:
                self.logger.error(
                    "Recurring scheduler task failed",
                    extra={"task": task.name, "error": str(e)},
                    exc_info=True,
                )

    def _wait_timeout(self, now: datetime) -> float:
        candidates = [task.next_run_at for task in self._recurring]
        next_due = self._queue.next_due_at(exclude=self._in_flight)
        # Jobs of in-flight keys wait for the completion notify instead
        if next_due is not None and next_due > now:
            candidates.append(next_due)
        if not candidates:
            return MAX_IDLE_WAIT_SECONDS
        seconds = (min(candidates) - now).total_seconds()
        return min(max(seconds, 0.0), MAX_IDLE_WAIT_SECONDS)

    def _dispatch_loop(self) -> None:
        while True:
            self._run_due_recurring_tasks()

            with self._condition:
                if not self._running:
                    return
                capacity = self.config.worker_pool_size - len(self._in_flight)
                jobs: List[RefreshJob] = []
                if capacity > 0:
                    jobs = self._queue.pop_due(
                        self.clock(), exclude=self._in_flight, limit=capacity
                    )
                for job in jobs:
                    self._in_flight.add(job.key)
                if not jobs:
                    self._condition.wait(timeout=self._wait_timeout(self.clock()))
                    continue

            for job in jobs:
                self._executor.submit(self._process_job, job)

    # ==================== JOB PROCESSING ====================

    def _process_job(self, job: RefreshJob) -> None:
        try:
            with tenant_context(job.tenant_id), correlation_context("refresh"):
                self._execute_job(job)
        except Exception as e:
            self.logger.error(
                "Unexpected error processing refresh job",
                extra={
                    "provider": job.provider,
                    "tenant_id": job.tenant_id,
                    "retry_count": job.retry_count,
                    "error": str(e),
                },
                exc_info=True,
            )
        finally:
            with self._condition:
                self._in_flight.discard(job.key)
                self._condition.notify_all()

    def _execute_job(self, job: RefreshJob) -> None:
        try:
            config = self.get_provider_config(job.provider, job.tenant_id)
        except RefreshConfigNotFoundError:
            return

        max_retries = self._max_retries(config)
        can_retry = job.retry_count < max_retries

        try:
            self._refresh_credential(
                config,
                job.provider,
                job.tenant_id,
                attempt=job.retry_count + 1,
                trigger=job.trigger,
                can_retry=can_retry,
            )
        except CircuitOpenError as e:
            wait = max(e.retry_after_seconds, MIN_CIRCUIT_WAIT_SECONDS)
            self._enqueue_follow_up(
                RefreshJob(
                    provider=job.provider,
                    tenant_id=job.tenant_id,
                    scheduled_at=self.clock() + timedelta(seconds=wait),
                    priority=job.priority,
                    retry_count=job.retry_count,
                    trigger=RefreshTrigger.CIRCUIT_WAIT,
                    created_at=self.clock(),
                ),
                replace=False,
            )
        except TerminalAuthError:
            return
        except TokenRefreshError:
            if can_retry:
                delay = calculate_exponential_backoff(
                    job.retry_count,
                    base_delay=self.config.retry_base_delay_seconds,
                    max_delay=self.config.retry_max_delay_seconds,
                    multiplier=self.config.retry_multiplier,
                    jitter=self.config.retry_jitter,
                )
                self._enqueue_follow_up(
                    RefreshJob(
                        provider=job.provider,
                        tenant_id=job.tenant_id,
                        scheduled_at=self.clock() + timedelta(seconds=delay),
                        priority=RefreshPriority.RETRY,
                        retry_count=job.retry_count + 1,
                        trigger=RefreshTrigger.RETRY,
                        created_at=self.clock(),
                    ),
                    replace=False,
                )
            else:
                self.logger.error(
                    "Token refresh retries exhausted, waiting for expiry sweep or operator",
                    extra={
                        "provider": job.provider,
                        "tenant_id": job.tenant_id,
                        "attempts": job.retry_count + 1,
                        "max_retries": max_retries,
                    },
                )
        except (CredentialNotFoundError, CredentialInactiveError, CredentialError):
            # Credential deleted, revoked or unusable since the job was queued
            return

    def _refresh_credential(
        self,
        config: ProviderConfig,
        provider: str,
        tenant_id: str,
        attempt: int,
        trigger: RefreshTrigger,
        can_retry: bool,
    ) -> OAuthCredentialRead:
        """
        One pass of the refresh pipeline: breaker gate, token endpoint, store, event.

        Raises:
            CircuitOpenError: Short-circuited, no network call made
            TokenRefreshError: Transient or terminal refresh failure
            CredentialNotFoundError / CredentialInactiveError / CredentialError
        """
        key = credential_key(provider, tenant_id)
        credential = self.token_store.get_required(provider, tenant_id)
        if not credential.is_active:
            raise CredentialInactiveError(
                f"Credential for '{provider}' was revoked, reauthorization required",
                provider=provider,
                tenant_id=tenant_id,
            )
        if not credential.refresh_token:
            raise CredentialError(
                f"Credential for '{provider}' has no refresh token",
                provider=provider,
                tenant_id=tenant_id,
            )

        try:
            self.circuit_breaker.before_call(key)
        except CircuitOpenError as e:
            self.token_store.record_refresh_log(
                provider,
                tenant_id,
                RefreshOutcome.SHORT_CIRCUITED,
                attempt=attempt,
                trigger=trigger.value,
                error_message=e.message,
            )
            self.event_bus.publish(
                TokenEvent(
                    event_type=TokenEventType.TOKEN_REFRESH_FAILED,
                    provider=provider,
                    tenant_id=tenant_id,
                    occurred_at=self.clock(),
                    attempt=attempt,
                    error=e.message,
                    will_retry=True,
                    details={"circuit_open": True, "retry_after_seconds": e.retry_after_seconds},
                )
            )
            raise

        started = time.monotonic()
        try:
            tokens = self.refresh_client.refresh(config, credential.refresh_token)
        except TokenRefreshError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self.circuit_breaker.record_failure(key)
            self._handle_refresh_failure(e, provider, tenant_id, attempt, trigger, can_retry, duration_ms)
            raise
        except Exception:
            self.circuit_breaker.record_failure(key)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        self.circuit_breaker.record_success(key)
        updated = self.token_store.apply_refresh(provider, tenant_id, tokens)
        self.token_store.record_refresh_log(
            provider,
            tenant_id,
            RefreshOutcome.SUCCESS,
            attempt=attempt,
            trigger=trigger.value,
            duration_ms=duration_ms,
            new_expires_at=updated.expires_at,
        )

        self.logger.info(
            "Token refreshed",
            extra={
                "provider": provider,
                "tenant_id": tenant_id,
                "attempt": attempt,
                "expires_at": updated.expires_at.isoformat(),
                "refresh_count": updated.refresh_count,
                "duration_ms": duration_ms,
            },
        )
        self.event_bus.publish(
            TokenEvent(
                event_type=TokenEventType.TOKEN_REFRESHED,
                provider=provider,
                tenant_id=tenant_id,
                occurred_at=self.clock(),
                attempt=attempt,
                expires_at=updated.expires_at,
            )
        )

        if config.enable_auto_refresh:
            delay = calculate_next_refresh_delay(
                tokens.expires_in,
                buffer_seconds=self.config.next_refresh_buffer_seconds,
                min_delay=self.config.min_refresh_delay_seconds,
            )
            now = self.clock()
            self._enqueue_follow_up(
                RefreshJob(
                    provider=provider,
                    tenant_id=tenant_id,
                    scheduled_at=now + timedelta(seconds=delay),
                    priority=RefreshPriority.NORMAL,
                    trigger=RefreshTrigger.SCHEDULED,
                    created_at=now,
                ),
                replace=True,
            )
        return updated

    def _handle_refresh_failure(
        self,
        error: TokenRefreshError,
        provider: str,
        tenant_id: str,
        attempt: int,
        trigger: RefreshTrigger,
        can_retry: bool,
        duration_ms: int,
    ) -> None:
        terminal = not error.retryable
        will_retry = can_retry and not terminal

        failed_count = self.token_store.record_refresh_failure(provider, tenant_id, error.message)
        if terminal:
            self.token_store.mark_revoked(provider, tenant_id, error.message)

        self.token_store.record_refresh_log(
            provider,
            tenant_id,
            RefreshOutcome.FAILED,
            attempt=attempt,
            trigger=trigger.value,
            duration_ms=duration_ms,
            error_message=error.message,
        )

        self.logger.warning(
            "Token refresh failed",
            extra={
                "provider": provider,
                "tenant_id": tenant_id,
                "attempt": attempt,
                "failed_refresh_count": failed_count,
                "terminal": terminal,
                "will_retry": will_retry,
                "error": error.message,
            },
        )
        self.event_bus.publish(
            TokenEvent(
                event_type=TokenEventType.TOKEN_REFRESH_FAILED,
                provider=provider,
                tenant_id=tenant_id,
                occurred_at=self.clock(),
                attempt=attempt,
                error=error.message,
                terminal=terminal,
                will_retry=will_retry,
                details={"failed_refresh_count": failed_count},
            )
        )

    def trigger_manual_refresh(self, provider: str, tenant_id: str) -> OAuthCredentialRead:
        """
        Refresh now on the calling thread, bypassing the queue.

        Raises:
            RefreshConfigNotFoundError: Provider not registered
            ServiceError: A refresh for the key is already running
            CircuitOpenError / TokenRefreshError / CredentialNotFoundError: Refresh failed
        """
        self.logger.info(
            "Manual token refresh requested", extra={"provider": provider, "tenant_id": tenant_id}
        )
        return self._refresh_inline(
            provider, tenant_id, RefreshTrigger.MANUAL, operation="trigger_manual_refresh"
        )

    def _refresh_inline(
        self, provider: str, tenant_id: str, trigger: RefreshTrigger, operation: str
    ) -> OAuthCredentialRead:
        config = self.get_provider_config(provider, tenant_id)
        key = credential_key(provider, tenant_id)

        with self._condition:
            if key in self._in_flight:
                raise ServiceError(
                    f"Refresh already in progress for {key}",
                    error_code=ErrorCode.CONFLICT,
                    operation=operation,
                    status_code=409,
                    provider=provider,
                    tenant_id=tenant_id,
                )
            self._in_flight.add(key)

        try:
            with tenant_context(tenant_id), correlation_context("refresh"):
                return self._refresh_credential(
                    config,
                    provider,
                    tenant_id,
                    attempt=1,
                    trigger=trigger,
                    can_retry=False,
                )
        finally:
            with self._condition:
                self._in_flight.discard(key)
                self._condition.notify_all()

    def get_access_token(self, provider: str, tenant_id: str) -> str:
        """
        Return a usable access token, refreshing it first when it is about to expire.

        A refresh already running for the key is awaited rather than duplicated.

        Raises:
            CredentialNotFoundError / CredentialInactiveError: Nothing usable is stored
            ServiceError: A running refresh did not finish within access_token_wait_seconds
            CircuitOpenError / TokenRefreshError: The refresh failed
        """
        key = credential_key(provider, tenant_id)
        deadline = time.monotonic() + self.config.access_token_wait_seconds

        while True:
            credential = self.token_store.get_required(provider, tenant_id)
            if not credential.is_active:
                raise CredentialInactiveError(
                    f"Credential for '{provider}' was revoked, reauthorization required",
                    provider=provider,
                    tenant_id=tenant_id,
                )
            if not self.token_store.is_token_expired(credential):
                return credential.access_token

            with self._condition:
                if key in self._in_flight:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ServiceError(
                            f"Timed out waiting for the running refresh of {key}",
                            error_code=ErrorCode.TIMEOUT_ERROR,
                            operation="get_access_token",
                            status_code=504,
                            provider=provider,
                            tenant_id=tenant_id,
                        )
                    self._condition.wait(timeout=remaining)
                    continue

            self.logger.info(
                "Access token expiring, refreshing before use",
                extra={"provider": provider, "tenant_id": tenant_id},
            )
            try:
                return self._refresh_inline(
                    provider, tenant_id, RefreshTrigger.ON_DEMAND, operation="get_access_token"
                ).access_token
            except ServiceError as e:
                # Another thread claimed the key between the check and the refresh
                if e.error_code != ErrorCode.CONFLICT:
                    raise

    # ==================== RECURRING TASKS ====================

    def health_check(self) -> HealthReport:
        """Report queue depth, open circuits and repeatedly failing credentials."""
        with self._condition:
            pending = len(self._queue)
            in_flight = len(self._in_flight)

        unhealthy = self.token_store.list_unhealthy(self.config.failure_alert_threshold)
        report = HealthReport(
            checked_at=self.clock(),
            pending_jobs=pending,
            in_flight_jobs=in_flight,
            open_circuits=self.circuit_breaker.open_keys(),
            unhealthy_credentials=[
                UnhealthyCredential(
                    provider=c.provider,
                    tenant_id=c.tenant_id,
                    failed_refresh_count=c.failed_refresh_count,
                    last_refresh_error=c.last_refresh_error,
                    is_active=c.is_active,
                )
                for c in unhealthy
            ],
        )

        for credential in report.unhealthy_credentials:
            self.logger.error(
                "Credential refresh failing repeatedly",
                extra={
                    "provider": credential.provider,
                    "tenant_id": credential.tenant_id,
                    "failed_refresh_count": credential.failed_refresh_count,
                    "last_refresh_error": credential.last_refresh_error,
                    "is_active": credential.is_active,
                },
            )
        if report.open_circuits:
            self.logger.warning(
                "Refresh circuits open", extra={"open_circuits": ",".join(report.open_circuits)}
            )

        self.logger.info(
            "Refresh scheduler health check",
            extra={
                "pending_jobs": pending,
                "in_flight_jobs": in_flight,
                "unhealthy_credentials": len(report.unhealthy_credentials),
                "healthy": report.healthy,
            },
        )
        return report

    def sweep_expiring_credentials(self) -> int:
        """
        Queue an immediate refresh for credentials inside their refresh window
        that have no pending or running job.

        Returns:
            Number of jobs queued
        """
        now = self.clock()
        queued = 0

        widest_window = max(
            [self.config.refresh_before_expiry_seconds]
            + [self._refresh_before_expiry(config) for config in self._configs.values()]
        )
        for credential in self.token_store.list_expiring(widest_window):
            config = self._find_config(credential.provider, credential.tenant_id)
            if config is None or not config.enable_auto_refresh:
                continue
            # Provider windows can be narrower than the widest one
            if credential.seconds_until_expiry(now) > self._refresh_before_expiry(config):
                continue

            with self._condition:
                covered = credential.key in self._queue or credential.key in self._in_flight
            if covered:
                continue

            self._publish_expiry_event(credential, now)
            self.schedule_refresh(
                credential.provider,
                credential.tenant_id,
                priority=RefreshPriority.EXPIRY_SWEEP,
                immediate=True,
                trigger=RefreshTrigger.EXPIRY_SWEEP,
            )
            queued += 1

        self.logger.info("Expiry sweep completed", extra={"queued_refreshes": queued})
        return queued

    def _publish_expiry_event(self, credential: OAuthCredentialRead, now: datetime) -> None:
        expired = credential.expires_at <= now
        self.event_bus.publish(
            TokenEvent(
                event_type=(
                    TokenEventType.TOKEN_EXPIRED if expired else TokenEventType.TOKEN_NEAR_EXPIRY
                ),
                provider=credential.provider,
                tenant_id=credential.tenant_id,
                occurred_at=now,
                expires_at=credential.expires_at,
            )
        )

    def _log_event(self, event: TokenEvent) -> None:
        self.logger.debug(
            "Token event published",
            extra={
                "event_type": event.event_type.value,
                "provider": event.provider,
                "tenant_id": event.tenant_id,
            },
        )

    def _on_circuit_change(self, key: str, old: CircuitStatus, new: CircuitStatus) -> None:
        provider, _, tenant_id = key.partition(":")
        if new == CircuitStatus.OPEN:
            event_type = TokenEventType.CIRCUIT_OPENED
        elif new == CircuitStatus.CLOSED:
            event_type = TokenEventType.CIRCUIT_CLOSED
        else:
            return
        self.event_bus.publish(
            TokenEvent(
                event_type=event_type,
                provider=provider,
                tenant_id=tenant_id,
                occurred_at=self.clock(),
                details={"from_status": old.value},
            )
        )

    # ==================== STATISTICS ====================

    def get_statistics(self) -> SchedulerStatistics:
        with self._condition:
            jobs = self._queue.jobs()
            in_flight = len(self._in_flight)
            next_due_at = self._queue.next_due_at()

        by_priority: Dict[int, int] = {}
        for job in jobs:
            by_priority[int(job.priority)] = by_priority.get(int(job.priority), 0) + 1

        return SchedulerStatistics(
            running=self._running,
            registered_configs=len(self._configs),
            pending_jobs=len(jobs),
            in_flight_jobs=in_flight,
            pending_by_priority=by_priority,
            next_due_at=next_due_at,
            circuits=[
                CircuitSnapshot(
                    key=key,
                    status=state.status.value,
                    consecutive_failures=state.consecutive_failures,
                    opened_at=state.opened_at,
                )
                for key, state in self.circuit_breaker.snapshot().items()
            ],
            tokens=self.token_store.get_token_statistics(),
        )
