"""Queue of flash and erase jobs waiting for, running on, or done with a device."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = timedelta(minutes=10)
DEFAULT_JOB_TTL = timedelta(hours=24)


class JobStatus(str, Enum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETE = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timeout"


class JobType(str, Enum):
    """What a job does to its device."""

    FLASH = "flash"
    ERASE = "erase"


# States from which a job can no longer be cancelled or timed out.
_FINISHED = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})
# States after which a job may be cleaned up.
_TERMINAL = _FINISHED | {JobStatus.TIMED_OUT}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Job:
    """One flash or erase job."""

    id: str
    type: JobType
    device_path: str
    firmware: str = ""
    device_node: str = ""
    offset: int = 0
    erase_all: bool = False
    erase_address: int = 0
    erase_size: int = 0
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str = ""
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding the job's mutable fields."""
        return self._lock

    def to_dict(self) -> dict[str, Any]:
        """Describe the job as the API reports it."""
        with self._lock:
            result: dict[str, Any] = {
                "id": self.id,
                "type": self.type.value,
                "device_path": self.device_path,
                "device_node": self.device_node,
                "status": self.status.value,
                "progress": self.progress,
                "created_at": self.created_at,
            }
            if self.type is JobType.FLASH:
                result["firmware"] = self.firmware
                result["offset"] = self.offset
            elif self.type is JobType.ERASE:
                result["erase_all"] = self.erase_all
                result["erase_address"] = self.erase_address
                result["erase_size"] = self.erase_size
            if self.started_at is not None:
                result["started_at"] = self.started_at
            if self.completed_at is not None:
                result["completed_at"] = self.completed_at
            if self.error:
                result["error"] = self.error
            return result


class JobQueue:
    """All known jobs plus the FIFO order of those not yet dequeued."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._pending: list[str] = []
        self._lock = threading.RLock()

    def _add(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = job
            self._pending.append(job.id)
        return job

    def enqueue(self, firmware_path: str, device_path: str, offset: int = 0) -> Job:
        """Queue a flash job."""
        return self.enqueue_flash(firmware_path, device_path, offset)

    def enqueue_flash(self, firmware_path: str, device_path: str, offset: int = 0) -> Job:
        """Queue a job writing firmware_path to device_path at offset."""
        job = self._add(
            Job(
                id=str(uuid.uuid4()),
                type=JobType.FLASH,
                firmware=firmware_path,
                device_path=device_path,
                offset=offset,
            )
        )
        log.info("Flash job %s enqueued for %s at offset %d", job.id, device_path, offset)
        return job

    def enqueue_erase(
        self, device_path: str, erase_all: bool, address: int = 0, size: int = 0
    ) -> Job:
        """Queue a job erasing the whole flash or a region of it."""
        job = self._add(
            Job(
                id=str(uuid.uuid4()),
                type=JobType.ERASE,
                device_path=device_path,
                erase_all=erase_all,
                erase_address=address,
                erase_size=size,
            )
        )
        log.info(
            "Erase job %s enqueued for %s (erase_all=%s, address=%#x, size=%#x)",
            job.id,
            device_path,
            erase_all,
            address,
            size,
        )
        return job

    def dequeue(self, device_node: str) -> Job | None:
        """Assign the oldest pending job to device_node, or return None."""
        with self._lock:
            while self._pending:
                job = self._jobs.get(self._pending.pop(0))
                if job is None:
                    continue
                with job.lock:
                    job.status = JobStatus.ASSIGNED
                    job.device_node = device_node
                    job.started_at = _now()
                log.info("Job %s dequeued to node %s", job.id, device_node)
                return job
        return None

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def update_progress(self, job_id: str, progress: int) -> None:
        """Record progress of a job; unknown ids are ignored."""
        job = self.get(job_id)
        if job is None:
            return
        with job.lock:
            job.progress = progress
        log.debug("Job %s progress %d", job_id, progress)

    def complete(self, job_id: str, error: BaseException | str | None = None) -> None:
        """Mark a job completed, or failed when error is given."""
        job = self.get(job_id)
        if job is None:
            return
        with job.lock:
            job.completed_at = _now()
            if error:
                job.status = JobStatus.FAILED
                job.error = str(error)
                log.error("Job %s failed: %s", job_id, error)
            else:
                job.status = JobStatus.COMPLETE
                log.info("Job %s completed", job_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _finish(self, job_id: str, status: JobStatus, message: str, refusal: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"job not found: {job_id}")
            with job.lock:
                if job.status in _FINISHED:
                    raise ValueError(f"{refusal}: {job.status.value}")
                job.status = status
                job.completed_at = _now()
                job.error = message
            return job

    def cancel(self, job_id: str) -> None:
        """Cancel a job that has not finished.

        Raises KeyError for an unknown job and ValueError for a finished one.
        """
        self._finish(
            job_id, JobStatus.CANCELLED, "Cancelled by user", "cannot cancel job in state"
        )
        log.info("Job %s cancelled", job_id)

    def timeout(self, job_id: str) -> None:
        """Mark a job that has not finished as timed out.

        Raises KeyError for an unknown job and ValueError for a finished one.
        """
        self._finish(
            job_id, JobStatus.TIMED_OUT, "Job timed out", "job already in terminal state"
        )
        log.warning("Job %s timed out", job_id)

    def cleanup_old(self, older_than: timedelta | float) -> int:
        """Forget terminal jobs completed more than older_than ago; return count."""
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        cutoff = _now() - older_than
        removed = 0
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                with job.lock:
                    expired = (
                        job.status in _TERMINAL
                        and job.completed_at is not None
                        and job.completed_at < cutoff
                    )
                if expired:
                    del self._jobs[job_id]
                    removed += 1
        if removed:
            log.info("Cleaned up %d jobs older than %s", removed, older_than)
        return removed