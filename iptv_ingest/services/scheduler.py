"""
Background Job Scheduler

Dispatches jobs defined in jobs.json using APScheduler.

Dispatch sources (all go through the same admission gate):
- interval jobs (IntervalTrigger)
- cron jobs (CronTrigger)
- runOnStartup jobs (one-shot DateTrigger after ``delay``)
- manual triggers (jobs API)
- postExecute chains of a job that just succeeded

Admission gate, serialized on the event loop and finished by a conditional
update on the run-record:
1. self running -> rejected
2. any skipIfOtherInProgress job running, or any running job that lists
   this one in its skipIfOtherInProgress -> rejected, blockers listed
3. otherwise the record flips to running and the body starts as a task
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..core.exceptions import ConfigInvalid, JobNotFound
from ..core.logging import bind_job_context, clear_job_context, get_logger
from ..models.jobs import DispatchResult, JobDefinition, JobParams, JobsConfig
from .job_history import JobHistoryService

logger = get_logger(__name__)

CANCELED_REASON = "canceled"

JobHandler = Callable[[JobParams], Awaitable[Optional[Dict[str, Any]]]]


class SchedulerService:
    """
    Runs job bodies under the admission gate.

    ``handlers`` maps job name -> ``async def body(params) -> summary``.
    Every job in ``config`` needs a handler.
    """

    def __init__(
        self,
        config: JobsConfig,
        handlers: Dict[str, JobHandler],
        job_history: JobHistoryService,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        missing = [job.name for job in config.jobs if job.name not in handlers]
        if missing:
            raise ConfigInvalid("jobs config", f"no handler for job(s): {', '.join(missing)}")

        self.definitions: Dict[str, JobDefinition] = config.by_name()
        # job -> jobs that list it in skipIfOtherInProgress
        self._blocked_by: Dict[str, List[str]] = {}
        for job in config.jobs:
            for other in job.skip_if_other_in_progress:
                self._blocked_by.setdefault(other, []).append(job.name)
        self.handlers = handlers
        self.job_history = job_history
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._gate = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._worker_data: Dict[str, JobParams] = {}
        self._accepting = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def setup_jobs(self):
        """Register interval, cron and startup triggers."""
        for job in self.definitions.values():
            if job.interval_ms:
                self.scheduler.add_job(
                    self._scheduled_dispatch,
                    trigger=IntervalTrigger(seconds=job.interval_ms / 1000),
                    args=[job.name],
                    id=job.name,
                    name=job.description or job.name,
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
            elif job.cron:
                self.scheduler.add_job(
                    self._scheduled_dispatch,
                    trigger=CronTrigger.from_crontab(job.cron, timezone="UTC"),
                    args=[job.name],
                    id=job.name,
                    name=job.description or job.name,
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )

            if job.run_on_startup:
                run_at = datetime.now(timezone.utc) + timedelta(milliseconds=job.delay_ms or 0)
                self.scheduler.add_job(
                    self._scheduled_dispatch,
                    trigger=DateTrigger(run_date=run_at),
                    args=[job.name],
                    id=f"{job.name}:startup",
                    name=f"{job.name} (startup)",
                    replace_existing=True,
                )

        logger.info(
            "scheduler_jobs_configured",
            scheduled=[j.name for j in self.definitions.values() if not j.is_manual_only],
            manual=[j.name for j in self.definitions.values() if j.is_manual_only],
        )

    async def start(self, schedule: bool = True):
        """
        Reconcile orphaned run-records, then begin accepting dispatches.

        With ``schedule=False`` only manual triggers and chains run.
        """
        orphans = await self.job_history.reconcile_orphans()
        if orphans:
            logger.warning("scheduler_orphans_reconciled", count=orphans)
        self._accepting = True
        if schedule and not self.scheduler.running:
            self.setup_jobs()
            self.scheduler.start()
        logger.info("scheduler_started", schedule=schedule)

    async def stop(self):
        """Stop dispatching, cancel running jobs and wait for them to record."""
        self._accepting = False
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        running = list(self._tasks.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("scheduler_stopped", canceled=len(running))

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _scheduled_dispatch(self, job_name: str):
        result = await self.dispatch(job_name)
        if not result.admitted:
            logger.info("scheduler_job_skipped", job=job_name, reason=result.reason)

    def _history_name(self, job_name: str) -> str:
        definition = self.definitions.get(job_name)
        return definition.history_name if definition else job_name

    async def dispatch(self, job_name: str, params: Optional[JobParams] = None) -> DispatchResult:
        """
        Try to admit and launch a job.

        Returns a DispatchResult; rejection reasons are reported, not raised.
        Raises JobNotFound for unknown names.
        """
        definition = self.definitions.get(job_name)
        if definition is None:
            raise JobNotFound(job_name)
        params = params or JobParams()

        if not self._accepting:
            return DispatchResult(job_name, False, "Scheduler is not accepting new jobs")

        async with self._gate:
            record_name = definition.history_name
            if await self.job_history.is_running(record_name):
                return DispatchResult(job_name, False, f"Job '{job_name}' is already running")

            blockers = []
            for other in definition.skip_if_other_in_progress + self._blocked_by.get(job_name, []):
                if other in blockers or other == job_name:
                    continue
                if await self.job_history.is_running(self._history_name(other)):
                    blockers.append(other)
            if blockers:
                return DispatchResult(
                    job_name,
                    False,
                    f"Job '{job_name}' cannot run because the following job(s) "
                    f"are currently running: {', '.join(blockers)}",
                )

            if not await self.job_history.try_mark_running(record_name, params.provider_id):
                return DispatchResult(job_name, False, f"Job '{job_name}' is already running")

            self._worker_data[job_name] = params
            task = asyncio.create_task(self._execute(definition, params), name=f"job:{job_name}")
            self._tasks[job_name] = task

        logger.info("scheduler_job_admitted", job=job_name, provider_id=params.provider_id)
        return DispatchResult(job_name, True, task=task)

    async def run_job(self, job_name: str, params: Optional[JobParams] = None) -> DispatchResult:
        """Dispatch and wait for the run to finish (errors are in the run-record)."""
        result = await self.dispatch(job_name, params)
        if result.task is not None:
            await asyncio.gather(result.task, return_exceptions=True)
        return result

    async def _execute(self, definition: JobDefinition, params: JobParams) -> Optional[Dict[str, Any]]:
        job_name = definition.name
        record_name = definition.history_name
        handler = self.handlers[job_name]
        timeout = definition.timeout_ms / 1000 if definition.timeout_ms else None

        try:
            bind_job_context(job=job_name, provider_id=params.provider_id)
            logger.info("scheduler_job_started", job=job_name)
            try:
                summary = await asyncio.wait_for(handler(params), timeout=timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {definition.timeout_ms}ms"
                logger.error("scheduler_job_timeout", job=job_name, timeout_ms=definition.timeout_ms)
                await self.job_history.record_failure(record_name, error)
                return None
            except asyncio.CancelledError:
                logger.warning("scheduler_job_canceled", job=job_name)
                await asyncio.shield(self.job_history.record_failure(record_name, CANCELED_REASON))
                raise
            except Exception as e:
                logger.error("scheduler_job_failed", job=job_name, error=str(e))
                await self.job_history.record_failure(record_name, str(e))
                return None
            finally:
                self._tasks.pop(job_name, None)
                clear_job_context()

            await self.job_history.record_success(record_name, summary)
            logger.info("scheduler_job_completed", job=job_name)
            await self._handle_post_execute(definition, params)
            return summary
        finally:
            self._worker_data.pop(job_name, None)

    async def _handle_post_execute(self, definition: JobDefinition, params: JobParams):
        for post_job in definition.post_execute:
            result = await self.dispatch(post_job, params)
            if result.admitted:
                logger.info("scheduler_post_execute", job=definition.name, post_job=post_job)
            else:
                logger.info(
                    "scheduler_post_execute_skipped",
                    job=definition.name,
                    post_job=post_job,
                    reason=result.reason,
                )

    # =========================================================================
    # CONTROL / STATUS
    # =========================================================================

    def abort_job(self, job_name: str) -> bool:
        """Cancel a running job; it is recorded as failed ("canceled")."""
        if job_name not in self.definitions:
            raise JobNotFound(job_name)
        task = self._tasks.get(job_name)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("scheduler_job_abort_requested", job=job_name)
        return True

    def worker_data(self, job_name: str) -> Optional[JobParams]:
        return self._worker_data.get(job_name)

    def _worker_data_view(self, job_name: str) -> Optional[Dict[str, Any]]:
        params = self.worker_data(job_name)
        return params.model_dump() if params is not None else None

    async def get_job(self, job_name: str) -> Dict[str, Any]:
        definition = self.definitions.get(job_name)
        if definition is None:
            raise JobNotFound(job_name)
        record = await self.job_history.get_run_record(definition.history_name) or {}
        return self._format_job(definition, record)

    async def list_jobs(self) -> List[Dict[str, Any]]:
        records = {r["_id"]: r for r in await self.job_history.list_run_records()}
        return [
            self._format_job(definition, records.get(definition.history_name, {}))
            for definition in self.definitions.values()
        ]

    def _format_job(self, definition: JobDefinition, record: Dict[str, Any]) -> Dict[str, Any]:
        scheduled = self.scheduler.get_job(definition.name) if self.scheduler.running else None
        next_run = scheduled.next_run_time if scheduled else None
        return {
            "name": definition.name,
            "description": definition.description,
            "schedule": definition.schedule,
            "interval": definition.interval_ms,
            "cron": definition.cron,
            "timeout": definition.timeout_ms,
            "skipIfOtherInProgress": definition.skip_if_other_in_progress,
            "postExecute": definition.post_execute,
            "status": record.get("status", "idle"),
            "lastExecution": record.get("last_execution"),
            "executionCount": record.get("execution_count", 0),
            "lastResult": record.get("last_result"),
            "lastError": record.get("last_error"),
            "createdAt": record.get("createdAt"),
            "lastUpdated": record.get("lastUpdated"),
            "nextRun": next_run.isoformat() if next_run else None,
            "workerData": self._worker_data_view(definition.name),
        }
