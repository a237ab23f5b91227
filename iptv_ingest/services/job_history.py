"""
Job History

Durable run-records, one per job name, in the job_history collection.
This is the only place that answers "is job X running".
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..models.jobs import JobStatus
from .store import JOB_HISTORY, DocumentStore

logger = get_logger(__name__)

ORPHANED_REASON = "orphaned by restart"


class JobHistoryService:
    """
    Run-record store.

    Record fields: job_name, status, provider_id, started_at, finished_at,
    last_execution, execution_count, last_result, last_error, createdAt,
    lastUpdated.
    """

    def __init__(self, store: DocumentStore):
        self.collection = store.collection(JOB_HISTORY)

    async def get_run_record(self, job_name: str) -> Optional[Dict[str, Any]]:
        return await self.collection.get(job_name)

    async def list_run_records(self) -> List[Dict[str, Any]]:
        return await self.collection.find()

    async def is_running(self, job_name: str) -> bool:
        record = await self.get_run_record(job_name)
        return bool(record) and record.get("status") == JobStatus.RUNNING.value

    async def set_status(
        self, job_name: str, status: JobStatus, inc: Optional[Dict[str, int]] = None, **fields
    ) -> bool:
        """Upsert status plus extra fields; createdAt only on insert."""
        now = datetime.now(timezone.utc)
        set_on_insert = {"createdAt": now}
        if not inc or "execution_count" not in inc:
            set_on_insert["execution_count"] = 0
        return await self.collection.update_one(
            job_name,
            {"job_name": job_name, "status": status.value, "lastUpdated": now, **fields},
            set_on_insert=set_on_insert,
            inc=inc,
            upsert=True,
        )

    async def try_mark_running(self, job_name: str, provider_id: Optional[str] = None) -> bool:
        """
        Single conditional update: flip to running unless already running.

        Returns False when another dispatch won the race.
        """
        now = datetime.now(timezone.utc)
        return await self.collection.update_if(
            job_name,
            {"status": {"$ne": JobStatus.RUNNING.value}},
            {
                "job_name": job_name,
                "status": JobStatus.RUNNING.value,
                "provider_id": provider_id,
                "started_at": now,
                "finished_at": None,
                "lastUpdated": now,
            },
            set_on_insert={"createdAt": now, "execution_count": 0},
            upsert=True,
        )

    async def record_success(self, job_name: str, result: Optional[Dict[str, Any]] = None):
        now = datetime.now(timezone.utc)
        await self.set_status(
            job_name,
            JobStatus.SUCCESS,
            inc={"execution_count": 1},
            finished_at=now,
            last_execution=now,
            last_result=result or {},
            last_error=None,
        )

    async def record_failure(self, job_name: str, error: str, result: Optional[Dict[str, Any]] = None):
        """last_execution is left alone: it marks the last successful run."""
        fields = {"finished_at": datetime.now(timezone.utc), "last_error": error}
        if result is not None:
            fields["last_result"] = result
        await self.set_status(job_name, JobStatus.FAILED, inc={"execution_count": 1}, **fields)

    async def reconcile_orphans(self) -> int:
        """Boot sweep: records left running by a dead process become failed."""
        now = datetime.now(timezone.utc)
        orphans = await self.collection.find({"status": JobStatus.RUNNING.value})
        for record in orphans:
            await self.collection.update_if(
                record["_id"],
                {"status": JobStatus.RUNNING.value},
                {
                    "status": JobStatus.FAILED.value,
                    "last_error": ORPHANED_REASON,
                    "finished_at": now,
                    "lastUpdated": now,
                },
            )
            logger.warning("job_orphan_reconciled", job=record["_id"])
        return len(orphans)
