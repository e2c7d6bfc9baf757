"""
Background conversion of legacy/voice-memo recordings to MP3.

Jobs live in memory only; the recording's conversionStatus in MongoDB is
the durable record. A fixed-interval tick pulls one queued job at a time
while fewer than max_concurrent jobs are processing.
"""
import asyncio
import logging
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from ..errors import InvalidFormat, JobNotFound, RecordingNotFound
from ..models import ConversionJob, ConversionStatus, JobStatus, utcnow
from .storage import ObjectStore, playback_key
from .transcoder import Transcoder

logger = logging.getLogger(__name__)

CONVERTIBLE_FORMATS = ("amr", "amr-wb", "3gp", "3gp2", "wma", "mpeg")
STOP_GRACE_SEC = 30.0


def is_convertible(source_format: str | None) -> bool:
    return bool(source_format) and source_format.lower() in CONVERTIBLE_FORMATS


class RecordingStore(Protocol):
    def get(self, recording_id: str) -> dict | None: ...

    def update(self, recording_id: str, fields: dict) -> bool: ...


class ConversionQueue:
    def __init__(
        self,
        recordings: RecordingStore,
        object_store: ObjectStore,
        transcoder: Transcoder,
        *,
        temp_dir: str | Path,
        max_concurrent: int = 2,
        max_attempts: int = 3,
        tick_seconds: float = 1.0,
        retry_base_seconds: float = 1.0,
    ):
        self._recordings = recordings
        self._object_store = object_store
        self._transcoder = transcoder
        self._temp_dir = Path(temp_dir)
        self._max_concurrent = max_concurrent
        self._max_attempts = max_attempts
        self._tick_seconds = tick_seconds
        self._retry_base_seconds = retry_base_seconds

        self._queue: deque[ConversionJob] = deque()
        self._jobs: dict[str, ConversionJob] = {}
        self._processing: set[str] = set()
        self._workers: set[asyncio.Task] = set()
        self._retries: set[asyncio.Task] = set()
        self._tick_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def counts(self) -> dict:
        return {
            "queued": sum(1 for job in self._jobs.values() if job.status == JobStatus.QUEUED),
            "processing": len(self._processing),
        }

    async def _get_recording(self, recording_id: str) -> dict | None:
        return await asyncio.to_thread(self._recordings.get, recording_id)

    async def _update_recording(self, recording_id: str, **fields) -> None:
        await asyncio.to_thread(self._recordings.update, recording_id, fields)

    def _active_job_for(self, recording_id: str) -> ConversionJob | None:
        for job in self._jobs.values():
            if job.recording_id == recording_id and job.is_active:
                return job
        return None

    async def enqueue(self, recording_id: str, source_location: str, source_format: str) -> dict:
        """Idempotent per recording. Returns {jobId, status, playbackUrl}."""
        if not is_convertible(source_format):
            raise InvalidFormat(
                f"Format '{source_format}' does not need conversion "
                f"(supported: {', '.join(CONVERTIBLE_FORMATS)})"
            )
        recording = await self._get_recording(recording_id)
        if recording is None:
            raise RecordingNotFound(recording_id)

        if recording.get("conversionStatus") == ConversionStatus.READY.value and recording.get("playbackUrl"):
            job_id = f"existing_{recording_id}"
            if job_id not in self._jobs:
                self._jobs[job_id] = ConversionJob(
                    recording_id=recording_id,
                    source_location=source_location,
                    source_format=source_format.lower(),
                    job_id=job_id,
                    status=JobStatus.COMPLETED,
                    progress_percent=100,
                    result_playback_url=recording["playbackUrl"],
                )
            return {"jobId": job_id, "status": JobStatus.COMPLETED.value, "playbackUrl": recording["playbackUrl"]}

        active = self._active_job_for(recording_id)
        if active is not None:
            return {"jobId": active.job_id, "status": active.status.value, "playbackUrl": None}

        job = ConversionJob(
            recording_id=recording_id,
            source_location=source_location,
            source_format=source_format.lower(),
        )
        # Registered before the await so a concurrent enqueue reuses it.
        self._jobs[job.job_id] = job
        try:
            await self._update_recording(
                recording_id,
                conversionStatus=ConversionStatus.PENDING.value,
                conversionAttempts=0,
                conversionError=None,
                lastConversionAttempt=utcnow(),
            )
        except Exception:
            del self._jobs[job.job_id]
            raise
        self._queue.append(job)
        logger.info("Queued conversion job %s for recording %s (%s)", job.job_id, recording_id, job.source_format)
        return {"jobId": job.job_id, "status": job.status.value, "playbackUrl": None}

    def get_status(self, job_id: str) -> dict:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job.to_status()

    # Worker

    def start(self) -> None:
        if self.running:
            return
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "Conversion worker started (max %d concurrent, temp dir %s)", self._max_concurrent, self._temp_dir
        )

    async def stop(self) -> None:
        """Stop pulling jobs. In-flight jobs are allowed to finish."""
        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        for task in list(self._retries):
            task.cancel()
        if self._workers:
            done, pending = await asyncio.wait(set(self._workers), timeout=STOP_GRACE_SEC)
            if pending:
                logger.warning("%d conversion job(s) still running at shutdown", len(pending))
        logger.info("Conversion worker stopped")

    async def _tick_loop(self) -> None:
        while True:
            self._dispatch_one()
            await asyncio.sleep(self._tick_seconds)

    def _dispatch_one(self) -> None:
        if not self._queue or len(self._processing) >= self._max_concurrent:
            return
        job = self._queue.popleft()
        self._processing.add(job.job_id)
        job.status = JobStatus.PROCESSING
        task = asyncio.create_task(self._run(job))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _run(self, job: ConversionJob) -> None:
        try:
            await self._process_job(job)
        except Exception as e:
            logger.warning("Conversion job %s failed: %s", job.job_id, e)
            try:
                await self._handle_failure(job, e)
            except Exception:
                logger.exception("Could not record failure for conversion job %s", job.job_id)
                job.status = JobStatus.FAILED
                job.last_error = str(e)
        finally:
            self._processing.discard(job.job_id)

    @contextmanager
    def _scratch_files(self, job: ConversionJob) -> Iterator[tuple[Path, Path]]:
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        src = self._temp_dir / f"{job.job_id}_input.{job.source_format}"
        dest = self._temp_dir / f"{job.job_id}_output.mp3"
        try:
            yield src, dest
        finally:
            for path in (src, dest):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Failed to clean up %s: %s", path, e)

    async def _process_job(self, job: ConversionJob) -> None:
        logger.info("Processing conversion job %s (attempt %d)", job.job_id, job.attempt_count + 1)
        if await self._get_recording(job.recording_id) is None:
            raise RecordingNotFound(job.recording_id)
        await self._update_recording(job.recording_id, conversionStatus=ConversionStatus.PROCESSING.value)

        key = playback_key(job.recording_id)
        with self._scratch_files(job) as (src, dest):
            job.progress_percent = 10
            await self._object_store.download(job.source_location, src)
            job.progress_percent = 30
            await self._transcoder.transcode(src, dest, job.source_format)
            job.progress_percent = 70
            await self._object_store.upload(dest, key, content_type="audio/mpeg")
            job.progress_percent = 90

        url = self._object_store.public_url(key)
        await self._update_recording(
            job.recording_id,
            conversionStatus=ConversionStatus.READY.value,
            playbackKey=key,
            playbackUrl=url,
            conversionError=None,
        )
        job.status = JobStatus.COMPLETED
        job.progress_percent = 100
        job.result_playback_url = url
        job.last_error = None
        logger.info("Conversion job %s completed: %s", job.job_id, url)

    async def _handle_failure(self, job: ConversionJob, error: Exception) -> None:
        job.last_error = str(error)
        recording = await self._get_recording(job.recording_id)
        if recording is None:
            job.status = JobStatus.FAILED
            logger.error("Recording %s vanished; abandoning job %s", job.recording_id, job.job_id)
            return

        attempts = int(recording.get("conversionAttempts") or 0) + 1
        job.attempt_count = attempts
        if attempts < self._max_attempts:
            delay = self._retry_base_seconds * 2 ** attempts
            await self._update_recording(
                job.recording_id,
                conversionStatus=ConversionStatus.PENDING.value,
                conversionAttempts=attempts,
                lastConversionAttempt=utcnow(),
            )
            job.status = JobStatus.QUEUED
            job.progress_percent = 0
            logger.info("Retrying conversion job %s in %.1fs (attempt %d)", job.job_id, delay, attempts + 1)
            task = asyncio.create_task(self._requeue_after(job, delay))
            self._retries.add(task)
            task.add_done_callback(self._retries.discard)
            return

        await self._update_recording(
            job.recording_id,
            conversionStatus=ConversionStatus.FAILED.value,
            conversionError=str(error),
            conversionAttempts=attempts,
            lastConversionAttempt=utcnow(),
        )
        job.status = JobStatus.FAILED
        logger.error("Conversion job %s failed permanently after %d attempts", job.job_id, attempts)

    async def _requeue_after(self, job: ConversionJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.append(job)
