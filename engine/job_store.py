"""In-memory registry of asynchronous conversion jobs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol
from uuid import uuid4

JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_ERROR = "error"

JOB_STATUSES = (
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_ERROR,
)


def new_job_id() -> str:
    # Fixed-width hex: no id can be a prefix of another, which the
    # artifact lookup by filename prefix relies on.
    return uuid4().hex


@dataclass(frozen=True)
class Job:
    id: str
    status: str = JOB_STATUS_PROCESSING
    progress: float = 0.0
    filename: str | None = None
    error: str | None = None
    format: str | None = None
    # Handle of the background pipeline task; never serialized.
    task: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
        }
        if self.filename is not None:
            payload["filename"] = self.filename
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def with_progress(self, progress: float) -> "Job":
        return replace(self, progress=progress)

    def completed(self, filename: str) -> "Job":
        return replace(
            self,
            status=JOB_STATUS_COMPLETED,
            progress=100.0,
            filename=filename,
            error=None,
            task=None,
        )

    def failed(self, error: str) -> "Job":
        return replace(self, status=JOB_STATUS_ERROR, progress=0.0, error=error, task=None)


class JobStore(Protocol):
    """Storage interface for job state. Writes replace the prior record wholesale."""

    def get(self, job_id: str) -> Optional[Job]:
        ...

    def set(self, job_id: str, job: Job) -> None:
        ...

    def delete(self, job_id: str) -> None:
        ...


class InMemoryJobStore:
    """Process-local, volatile job table.

    The lock only protects the mapping itself. Read-modify-write sequences by
    callers can still race; the last writer wins.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def set(self, job_id: str, job: Job) -> None:
        with self._lock:
            self._jobs[job_id] = job

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
