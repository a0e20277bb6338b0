from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from .state import Job, JobStatus


class UploadResponse(BaseModel):
    job_id: str
    status: str = JobStatus.PENDING.value
    message: str = "Conversion job created successfully"


class ConversionStatsModel(BaseModel):
    nodes: int = 0
    ways: int = 0
    layers: int = 0


def _stats(job: Job) -> Optional[ConversionStatsModel]:
    if job.stats is None:
        return None
    return ConversionStatsModel(nodes=job.stats.nodes, ways=job.stats.ways, layers=job.stats.layers)


def download_url(job_id: str) -> str:
    return f"/api/osm/download/{job_id}"


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    message: str
    stats: Optional[ConversionStatsModel] = None
    download_url: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        # download_url is left unset until completion so it is omitted from the payload.
        extra = {"download_url": download_url(job.id)} if job.status is JobStatus.COMPLETED else {}
        return cls(
            job_id=job.id,
            status=job.status.value,
            progress=job.progress,
            message=job.message,
            stats=_stats(job),
            **extra,
        )


class JobSummary(BaseModel):
    job_id: str
    status: str
    progress: int
    message: str
    created_at: datetime
    stats: Optional[ConversionStatsModel] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            job_id=job.id,
            status=job.status.value,
            progress=job.progress,
            message=job.message,
            created_at=job.created_at,
            stats=_stats(job),
        )


class JobListResponse(BaseModel):
    jobs: List[JobSummary]


class Projection(BaseModel):
    code: str
    name: str
    description: str


class ProjectionList(BaseModel):
    projections: List[Projection]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
