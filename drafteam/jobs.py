from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from asyncio.subprocess import PIPE
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from config import (ALLOWED_EXTENSIONS, CANCEL_POLL_SECONDS, CONVERTER_SCRIPT,
                    DEFAULT_PLAN_TYPE, DEFAULT_PROJECTION, JOB_TIMEOUT_SECONDS,
                    MAX_CONCURRENT_JOBS, MAX_UPLOAD_BYTES, OSM_OUTPUT_DIR,
                    OSM_UPLOAD_DIR, PLAN_TYPES, PYTHON_EXECUTABLE)
from .converter import build_command, parse_progress, parse_stats
from .errors import (ConversionError, InvalidState, JobTimeout, LaunchFailure,
                     NotFound, ValidationError, WorkerFailure)
from .models import JobStatusResponse
from .state import (CompletedJob, FailedJob, FailureReason, Job, JobSpec,
                    JobStatus, PendingJob, ProcessingJob)
from .store import JobStore, build_store
from .websocket import WebSocketManager

Notifier = Callable[[str, dict], Awaitable[None]]
Change = Callable[[Job], Optional[Job]]

# Longest stdout/stderr line accepted from the converter.
STREAM_LIMIT = 1024 * 1024


def job_event(job: Job) -> dict:
    if job.status is JobStatus.COMPLETED:
        event = "done"
    elif job.status is JobStatus.ERROR:
        event = "error"
    else:
        event = "status"
    return {"event": event, **JobStatusResponse.from_job(job).model_dump(exclude_unset=True)}


def process_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ConversionTracker:
    """Runs one external converter process per job and tracks its lifecycle.

    Submissions return as soon as the upload is stored; the conversion runs in
    a background task. At most ``max_concurrent`` converters run at once, the
    rest wait in ``pending``. A ``timeout_seconds`` of 0 lets a converter run
    forever.

    Each job records the service process that supervises it (``owner``). With
    a store shared between processes, ``recover`` only fails jobs whose owner
    is gone, and a job cancelled elsewhere is noticed by its owner within
    ``poll_interval`` seconds.
    """

    def __init__(
        self,
        store: JobStore,
        upload_dir: Union[str, Path] = OSM_UPLOAD_DIR,
        output_dir: Union[str, Path] = OSM_OUTPUT_DIR,
        python_executable: str = PYTHON_EXECUTABLE,
        converter_script: Union[str, Path] = CONVERTER_SCRIPT,
        max_concurrent: int = MAX_CONCURRENT_JOBS,
        timeout_seconds: float = JOB_TIMEOUT_SECONDS,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        notifier: Optional[Notifier] = None,
        owner: Optional[str] = None,
        poll_interval: float = CANCEL_POLL_SECONDS,
    ) -> None:
        self.store = store
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        self.python_executable = python_executable
        self.converter_script = Path(converter_script)
        self.max_concurrent = max(int(max_concurrent), 1)
        self.timeout_seconds = timeout_seconds
        self.max_upload_bytes = max_upload_bytes
        self.notifier = notifier
        self.owner = owner or process_owner()
        self.poll_interval = poll_interval
        self._slots: Optional[asyncio.Semaphore] = None
        self._lock: Optional[asyncio.Lock] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    # Created lazily so both belong to the running loop.
    def _get_slots(self) -> asyncio.Semaphore:
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.max_concurrent)
        return self._slots

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def validate_upload(self, filename: Optional[str], size: Optional[int]) -> None:
        if not filename:
            raise ValidationError("No file uploaded")
        if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
            raise ValidationError("Only OSM and XML files are allowed")
        if size is not None and size > self.max_upload_bytes:
            raise ValidationError(f"File exceeds the {self.max_upload_bytes} byte upload limit")

    @staticmethod
    def _write_upload(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def submit(
        self,
        filename: Optional[str],
        content: bytes,
        projection: Optional[str] = DEFAULT_PROJECTION,
        plan_type: Optional[str] = DEFAULT_PLAN_TYPE,
    ) -> str:
        self.validate_upload(filename, len(content))
        plan_type = plan_type or DEFAULT_PLAN_TYPE
        if plan_type not in PLAN_TYPES:
            raise ValidationError(f"Unknown plan type: {plan_type}")

        job_id = str(uuid.uuid4())
        safe_name = Path(filename).name
        input_path = self.upload_dir / f"{int(time.time() * 1000)}_{safe_name}"
        await asyncio.to_thread(self._write_upload, input_path, content)

        spec = JobSpec(
            id=job_id,
            input_file_path=str(input_path),
            original_filename=safe_name,
            projection=projection or DEFAULT_PROJECTION,
            plan_type=plan_type,
            owner=self.owner,
        )
        await self.store.set(PendingJob(spec=spec))
        self._tasks[job_id] = asyncio.create_task(self._run(job_id))
        logging.info("Job %s created for %s (%s, %s)", job_id, safe_name, spec.projection, plan_type)
        return job_id

    async def get_status(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    async def list_jobs(self) -> List[Job]:
        return await self.store.list()

    async def resolve_download(self, job_id: str) -> Path:
        job = await self.get_status(job_id)
        if not isinstance(job, CompletedJob):
            raise InvalidState("Conversion not completed or file not available")
        path = Path(job.output_file_path)
        if not await asyncio.to_thread(path.exists):
            raise NotFound("Output file not found")
        return path

    async def cancel(self, job_id: str) -> FailedJob:
        def _cancel(job: Job) -> FailedJob:
            if job.terminal:
                raise InvalidState(f"Job is already {job.status.value}")
            return job.fail("Conversion cancelled", FailureReason.CANCELLED)

        failed = await self._transition(job_id, _cancel)
        if failed is None:
            raise NotFound("Job not found")
        self._terminate(job_id)
        logging.info("Job %s cancelled", job_id)
        return failed

    async def recover(self) -> int:
        """Fail unfinished jobs whose supervising process is gone. Returns how many."""
        interrupted = 0
        for job in await self.store.list():
            if job.terminal or self._is_supervised(job):
                continue
            failed = await self._transition(
                job.id,
                lambda current: None if current.terminal else current.fail(
                    "Conversion interrupted by service restart", FailureReason.INTERRUPTED
                ),
            )
            if failed is not None:
                interrupted += 1
        if interrupted:
            logging.warning("Marked %s unfinished conversion job(s) as interrupted", interrupted)
        return interrupted

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_supervised(self, job: Job) -> bool:
        if job.id in self._tasks:
            return True
        owner = job.spec.owner
        if not owner or owner == self.owner:
            return False
        host, _, pid = owner.rpartition(":")
        if host != socket.gethostname():
            # Liveness on another host is unknown; the store TTL retires its records.
            return True
        try:
            os.kill(int(pid), 0)
        except (ValueError, OverflowError, ProcessLookupError):
            return False
        except PermissionError:
            return True
        return True

    def _terminate(self, job_id: str) -> None:
        process = self._processes.get(job_id)
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def _transition(self, job_id: str, change: Change) -> Optional[Job]:
        """Apply ``change`` to the stored job and broadcast the result.

        ``change`` sees the current record and returns the replacement, or
        ``None`` (or the same record) to leave it alone.
        """
        async with self._get_lock():
            job = await self.store.get(job_id)
            updated = change(job) if job is not None else None
            if updated is None or updated is job:
                return None
            await self.store.set(updated)
        if self.notifier is not None:
            await self.notifier(job_id, job_event(updated))
        return updated

    async def _fail(self, job_id: str, message: str, reason: FailureReason) -> None:
        failed = await self._transition(job_id, lambda job: None if job.terminal else job.fail(message, reason))
        if failed is not None:
            logging.error("OSM conversion failed for job %s: %s", job_id, message)

    async def _run(self, job_id: str) -> None:
        try:
            slots = self._get_slots()
            if slots.locked():
                await self._transition(
                    job_id,
                    lambda job: job.with_message("Queued for conversion...") if isinstance(job, PendingJob) else None,
                )
            async with slots:
                await self._convert(job_id)
        except ConversionError as exc:
            await self._fail(job_id, exc.message, exc.reason or FailureReason.WORKER_FAILURE)
        except Exception as exc:
            logging.exception("Job %s failed: %s", job_id, exc)
            await self._fail(job_id, f"Conversion failed: {exc}", FailureReason.WORKER_FAILURE)
        finally:
            self._tasks.pop(job_id, None)

    async def _convert(self, job_id: str) -> None:
        await asyncio.to_thread(self.output_dir.mkdir, parents=True, exist_ok=True)
        output_path = self.output_dir / f"{job_id}_output.dxf"
        # Start from the stored record: the job may have been cancelled while queued or preparing.
        job = await self._transition(job_id, lambda job: job.start() if isinstance(job, PendingJob) else None)
        if job is None:
            return

        command = build_command(job.spec, output_path, self.python_executable, self.converter_script)
        logging.info("Starting OSM conversion for job %s: %s", job_id, " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command, stdout=PIPE, stderr=PIPE, limit=STREAM_LIMIT
            )
        except OSError as exc:
            raise LaunchFailure(f"Failed to start conversion: {exc}") from exc

        self._processes[job_id] = process
        stdout: List[str] = []
        stderr: List[str] = []
        watcher = asyncio.create_task(self._watch_cancellation(job_id))
        try:
            if not isinstance(await self.store.get(job_id), ProcessingJob):
                return
            supervised = asyncio.gather(
                self._read_stdout(job_id, process.stdout, stdout),
                self._read_stderr(job_id, process.stderr, stderr),
                process.wait(),
            )
            try:
                await asyncio.wait_for(supervised, self.timeout_seconds or None)
            except asyncio.TimeoutError:
                raise JobTimeout(f"Conversion timed out after {self.timeout_seconds:g} seconds") from None
        finally:
            watcher.cancel()
            self._processes.pop(job_id, None)
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        logging.info("OSM conversion process for job %s exited with code %s", job_id, process.returncode)
        if process.returncode != 0:
            if not isinstance(await self.store.get(job_id), ProcessingJob):
                # cancelled while running
                return
            detail = "\n".join(stderr).strip()
            raise WorkerFailure(f"Conversion failed: {detail or 'Unknown error'}")
        stats = parse_stats("\n".join(stdout))
        completed = await self._transition(
            job_id,
            lambda job: job.complete(str(output_path), stats) if isinstance(job, ProcessingJob) else None,
        )
        if completed is not None:
            logging.info("Job %s completed: %s", job_id, stats)

    async def _watch_cancellation(self, job_id: str) -> None:
        # Picks up cancellations recorded by another service process sharing the store.
        while True:
            await asyncio.sleep(self.poll_interval)
            job = await self.store.get(job_id)
            if job is None or job.terminal:
                logging.info("Job %s finished elsewhere; stopping its converter", job_id)
                self._terminate(job_id)
                return

    async def _read_stdout(self, job_id: str, stream: asyncio.StreamReader, lines: List[str]) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            lines.append(line)
            logging.debug("OSM conversion %s stdout: %s", job_id, line)
            update = parse_progress(line)
            if update is None:
                continue
            await self._transition(
                job_id,
                lambda job: job.advance(*update) if isinstance(job, ProcessingJob) else None,
            )

    async def _read_stderr(self, job_id: str, stream: asyncio.StreamReader, lines: List[str]) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            lines.append(line)
            logging.warning("OSM conversion %s stderr: %s", job_id, line)


WS_MANAGER = WebSocketManager()
TRACKER = ConversionTracker(build_store(), notifier=WS_MANAGER.broadcast)


def get_tracker() -> ConversionTracker:
    return TRACKER
