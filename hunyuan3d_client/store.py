import time
from threading import Lock
from typing import Callable, Dict, Optional

from hunyuan3d_client.models import JobRecord

RecordUpdate = Callable[[JobRecord], Optional[JobRecord]]


class JobStore:
    """Thread-safe map of job id to the latest published JobRecord.

    Records are immutable, so values handed out by ``get`` are snapshots.
    Terminal and cancelled records expire ``ttl`` seconds after they
    finished and are dropped on the next access.
    """

    def __init__(self, ttl: Optional[float] = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._records: Dict[str, JobRecord] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = Lock()

    def insert(self, record: JobRecord) -> bool:
        """Adds a new record. Returns False if the job id is already known."""
        with self._lock:
            self._purge_expired()
            if record.job_id in self._records:
                return False
            self._records[record.job_id] = record
            self._track_expiry(record)
            return True

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            self._purge_expired()
            return self._records.get(job_id)

    def update(self, job_id: str, update: RecordUpdate) -> Optional[JobRecord]:
        """Atomically replaces a record with ``update(current)``.

        ``update`` returns None to leave the record untouched. Returns the
        stored record, or None when nothing was written.
        """
        with self._lock:
            current = self._records.get(job_id)
            if current is None:
                return None
            new_record = update(current)
            if new_record is None:
                return None
            self._records[job_id] = new_record
            self._track_expiry(new_record)
            return new_record

    def _track_expiry(self, record: JobRecord) -> None:
        finished = record.status.is_terminal or record.cancelled
        if self.ttl is not None and finished and record.job_id not in self._expires_at:
            self._expires_at[record.job_id] = self._clock() + self.ttl

    def _purge_expired(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expires_at.items() if deadline <= now]
        for job_id in expired:
            del self._expires_at[job_id]
            self._records.pop(job_id, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
