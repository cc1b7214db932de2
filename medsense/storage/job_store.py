import threading
import time
from typing import Callable, Dict, Optional, Tuple
from medsense.models.document import UploadJob
from medsense.storage.base import JobStore

class InMemoryJobStore(JobStore):
    """
    Upload jobs keyed by upload id.
    Each put replaces the whole (immutable) job, so a reader never sees a
    half-applied update. Expired entries are purged lazily on access.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._jobs: Dict[str, Tuple[UploadJob, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _purge(self) -> None:
        now = self._clock()
        expired = [key for key, (_, deadline) in self._jobs.items() if deadline is not None and deadline <= now]
        for key in expired:
            del self._jobs[key]

    def put(self, job: UploadJob) -> None:
        with self._lock:
            self._purge()
            previous = self._jobs.get(job.upload_id)
            deadline = previous[1] if previous else None
            self._jobs[job.upload_id] = (job, deadline)

    def get(self, upload_id: str) -> Optional[UploadJob]:
        with self._lock:
            self._purge()
            entry = self._jobs.get(upload_id)
            return entry[0] if entry else None

    def expire(self, upload_id: str, ttl: float) -> None:
        with self._lock:
            entry = self._jobs.get(upload_id)
            if entry:
                self._jobs[upload_id] = (entry[0], self._clock() + ttl)

    def delete(self, upload_id: str) -> None:
        with self._lock:
            self._jobs.pop(upload_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._jobs)
