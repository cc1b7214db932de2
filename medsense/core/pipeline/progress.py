import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional
from medsense.config.settings import JobsConfig, settings
from medsense.models.document import UploadJob, UploadStage
from medsense.storage.base import JobStore

logger = logging.getLogger(__name__)

class UploadTracker:
    """
    Writes one upload's progress into the job store.
    Every update stores a fresh UploadJob; once the job is terminal it is
    expired after the grace period so late pollers can still read the outcome.
    """

    def __init__(self, job_store: JobStore, upload_id: str, filename: str = "", config: Optional[JobsConfig] = None):
        self.job_store = job_store
        self.upload_id = upload_id
        self.filename = filename
        self.config = config or settings.jobs
        self.job = UploadJob(upload_id=upload_id, filename=filename)

    def start(self, message: str = "Upload received") -> UploadJob:
        self.job = UploadJob(upload_id=self.upload_id, filename=self.filename, message=message)
        self.job_store.put(self.job)
        return self.job

    def advance(self, stage: UploadStage, progress: Optional[int] = None, **fields: Any) -> UploadJob:
        self.job = self.job.advance(stage, progress, **fields)
        self.job_store.put(self.job)
        return self.job

    def complete(self, result: Dict[str, Any], message: str = "Processing complete") -> UploadJob:
        job = self.advance(UploadStage.complete, 100, result=result, message=message)
        self.job_store.expire(self.upload_id, self.config.grace_seconds)
        return job

    def fail(self, error: str) -> UploadJob:
        if self.job.is_terminal:
            logger.warning(f"[{self.upload_id}] already {self.job.stage.value}; ignoring failure: {error}")
            return self.job
        job = self.advance(UploadStage.error, error=error, message=error)
        self.job_store.expire(self.upload_id, self.config.grace_seconds)
        return job


def _error_event(upload_id: str, message: str, progress: int = 0) -> Dict[str, Any]:
    return UploadJob(
        upload_id=upload_id,
        stage=UploadStage.error,
        progress=progress,
        message=message,
        error=message
    ).to_event()


async def progress_events(job_store: JobStore,
                          upload_id: str,
                          poll_interval: Optional[float] = None,
                          stall_timeout: Optional[float] = None,
                          clock: Callable[[], float] = time.monotonic) -> AsyncIterator[Dict[str, Any]]:
    """
    Yields each new snapshot of an upload job and stops after the first
    terminal one. An unknown job, or one that does not change for
    stall_timeout seconds, ends the stream with a synthetic error event.
    """
    poll_interval = settings.jobs.poll_interval if poll_interval is None else poll_interval
    stall_timeout = settings.jobs.stall_timeout if stall_timeout is None else stall_timeout

    last_event: Optional[Dict[str, Any]] = None
    last_change = clock()

    while True:
        job = job_store.get(upload_id)
        if job is None:
            progress = last_event["progress"] if last_event else 0
            yield _error_event(upload_id, "Upload not found or expired", progress)
            return

        event = job.to_event()
        if event != last_event:
            last_event = event
            last_change = clock()
            yield event
            if job.is_terminal:
                return
        elif clock() - last_change > stall_timeout:
            logger.warning(f"[{upload_id}] no progress for {stall_timeout}s; closing stream")
            yield _error_event(upload_id, "Processing stalled", job.progress)
            return

        await asyncio.sleep(poll_interval)
