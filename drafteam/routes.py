from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import FileResponse

from config import DEFAULT_PLAN_TYPE, DEFAULT_PROJECTION
from .jobs import ConversionTracker, get_tracker
from .models import (HealthResponse, JobListResponse, JobStatusResponse,
                     JobSummary, Projection, ProjectionList, UploadResponse)

router = APIRouter()

# Informational only; submissions are not checked against this list.
PROJECTIONS = [
    Projection(code="EPSG:3857", name="Web Mercator (Google Maps)", description="Most common web mapping projection"),
    Projection(code="EPSG:4326", name="WGS84 Geographic", description="Standard GPS coordinates"),
    Projection(code="EPSG:32633", name="UTM Zone 33N", description="Universal Transverse Mercator"),
    Projection(code="EPSG:32634", name="UTM Zone 34N", description="Universal Transverse Mercator"),
    Projection(code="EPSG:32635", name="UTM Zone 35N", description="Universal Transverse Mercator"),
    Projection(code="EPSG:3395", name="World Mercator", description="World Mercator projection"),
    Projection(code="EPSG:2154", name="RGF93 / Lambert-93", description="France national projection"),
    Projection(code="EPSG:25832", name="ETRS89 / UTM zone 32N", description="European projection"),
]


@router.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="OK", timestamp=datetime.now(timezone.utc))


@router.post("/api/osm/upload", response_model=UploadResponse)
async def upload_osm(
    file: Optional[UploadFile] = File(None),
    projection: str = Form(DEFAULT_PROJECTION),
    plan_type: str = Form(DEFAULT_PLAN_TYPE),
    tracker: ConversionTracker = Depends(get_tracker),
) -> UploadResponse:
    filename = file.filename if file is not None else None
    # Reject on the declared size before reading the body into memory.
    tracker.validate_upload(filename, getattr(file, "size", None))
    contents = await file.read()
    job_id = await tracker.submit(filename, contents, projection=projection, plan_type=plan_type)
    return UploadResponse(job_id=job_id)


@router.get("/api/osm/status/{job_id}", response_model=JobStatusResponse, response_model_exclude_unset=True)
async def get_status(job_id: str, tracker: ConversionTracker = Depends(get_tracker)) -> JobStatusResponse:
    return JobStatusResponse.from_job(await tracker.get_status(job_id))


@router.get("/api/osm/download/{job_id}")
async def download(job_id: str, tracker: ConversionTracker = Depends(get_tracker)) -> FileResponse:
    path = await tracker.resolve_download(job_id)
    filename = f"converted_{int(time.time() * 1000)}.dxf"
    return FileResponse(path, filename=filename, media_type="application/dxf")


@router.get("/api/osm/jobs", response_model=JobListResponse)
async def list_jobs(tracker: ConversionTracker = Depends(get_tracker)) -> JobListResponse:
    return JobListResponse(jobs=[JobSummary.from_job(job) for job in await tracker.list_jobs()])


@router.post("/api/osm/jobs/{job_id}/cancel", response_model=JobStatusResponse, response_model_exclude_unset=True)
async def cancel_job(job_id: str, tracker: ConversionTracker = Depends(get_tracker)) -> JobStatusResponse:
    return JobStatusResponse.from_job(await tracker.cancel(job_id))


@router.get("/api/osm/projections", response_model=ProjectionList)
async def list_projections() -> ProjectionList:
    return ProjectionList(projections=PROJECTIONS)
