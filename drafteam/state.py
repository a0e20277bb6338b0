from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class FailureReason(str, Enum):
    WORKER_FAILURE = "worker_failure"
    LAUNCH_FAILURE = "launch_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR})

START_PROGRESS = 10
MAX_RUNNING_PROGRESS = 99


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversionStats:
    nodes: int = 0
    ways: int = 0
    layers: int = 0


@dataclass(frozen=True)
class JobSpec:
    """Submission-time configuration of a job. Never changes once created."""

    id: str
    input_file_path: str
    original_filename: str
    projection: str
    plan_type: str
    created_at: datetime = field(default_factory=utcnow)
    # "<hostname>:<pid>" of the service process supervising the converter
    owner: str = ""

    @property
    def detailed(self) -> bool:
        return self.plan_type == "location-plan"


@dataclass(frozen=True)
class _BaseJob:
    spec: JobSpec

    status: ClassVar[JobStatus]

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def created_at(self) -> datetime:
        return self.spec.created_at

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class PendingJob(_BaseJob):
    message: str = "Starting conversion..."

    status: ClassVar[JobStatus] = JobStatus.PENDING
    progress: ClassVar[int] = 0
    stats: ClassVar[Optional[ConversionStats]] = None
    output_file_path: ClassVar[Optional[str]] = None

    def with_message(self, message: str) -> "PendingJob":
        return replace(self, message=message)

    def start(self, message: str = "Processing OSM data...") -> "ProcessingJob":
        return ProcessingJob(spec=self.spec, progress=START_PROGRESS, message=message)

    def fail(self, message: str, reason: FailureReason) -> "FailedJob":
        return FailedJob(spec=self.spec, message=message, reason=reason)


@dataclass(frozen=True)
class ProcessingJob(_BaseJob):
    progress: int = START_PROGRESS
    message: str = "Processing OSM data..."
    started_at: datetime = field(default_factory=utcnow)

    status: ClassVar[JobStatus] = JobStatus.PROCESSING
    stats: ClassVar[Optional[ConversionStats]] = None
    output_file_path: ClassVar[Optional[str]] = None

    def advance(self, progress: int, message: Optional[str] = None) -> "ProcessingJob":
        # Progress only moves forward and never reaches 100 before the process exits.
        progress = min(int(progress), MAX_RUNNING_PROGRESS)
        if progress < self.progress:
            return self
        if progress == self.progress and (message is None or message == self.message):
            return self
        return replace(self, progress=progress, message=message or self.message)

    def complete(self, output_file_path: str, stats: ConversionStats) -> "CompletedJob":
        return CompletedJob(spec=self.spec, output_file_path=output_file_path, stats=stats)

    def fail(self, message: str, reason: FailureReason) -> "FailedJob":
        return FailedJob(spec=self.spec, message=message, reason=reason)


@dataclass(frozen=True)
class CompletedJob(_BaseJob):
    output_file_path: str
    stats: ConversionStats
    message: str = "Conversion completed successfully"
    finished_at: datetime = field(default_factory=utcnow)

    status: ClassVar[JobStatus] = JobStatus.COMPLETED
    progress: ClassVar[int] = 100


@dataclass(frozen=True)
class FailedJob(_BaseJob):
    message: str
    reason: FailureReason
    finished_at: datetime = field(default_factory=utcnow)

    status: ClassVar[JobStatus] = JobStatus.ERROR
    progress: ClassVar[int] = 0
    stats: ClassVar[Optional[ConversionStats]] = None
    output_file_path: ClassVar[Optional[str]] = None


Job = Union[PendingJob, ProcessingJob, CompletedJob, FailedJob]

_VARIANTS = {
    JobStatus.PENDING: PendingJob,
    JobStatus.PROCESSING: ProcessingJob,
    JobStatus.COMPLETED: CompletedJob,
    JobStatus.ERROR: FailedJob,
}

_DATETIME_FIELDS = ("started_at", "finished_at")


def job_to_dict(job: Job) -> Dict[str, Any]:
    """Flatten a job into JSON-friendly primitives, tagged with its status."""
    data = asdict(job)
    data["status"] = job.status.value
    data["spec"]["created_at"] = job.spec.created_at.isoformat()
    for key in _DATETIME_FIELDS:
        if key in data:
            data[key] = data[key].isoformat()
    if "reason" in data:
        data["reason"] = data["reason"].value
    return data


def job_from_dict(data: Dict[str, Any]) -> Job:
    data = dict(data)
    status = JobStatus(data.pop("status"))
    spec_data = dict(data.pop("spec"))
    spec_data["created_at"] = datetime.fromisoformat(spec_data["created_at"])
    for key in _DATETIME_FIELDS:
        if key in data:
            data[key] = datetime.fromisoformat(data[key])
    if data.get("stats") is not None:
        data["stats"] = ConversionStats(**data["stats"])
    if "reason" in data:
        data["reason"] = FailureReason(data["reason"])
    return _VARIANTS[status](spec=JobSpec(**spec_data), **data)
