import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from hunyuan3d_client.api import Ai3dApi
from hunyuan3d_client.errors import JobFailure, TransportError, UnrecognizedResponse
from hunyuan3d_client.models import JobRecord, JobStatus, PollingConfig, QueryResult, ResultFile
from hunyuan3d_client.scheduler import BackoffPolicy, PollScheduler, backoff_from_config
from hunyuan3d_client.store import JobStore

DONE_STATUS = "DONE"
IN_PROGRESS_STATUSES = frozenset({"WAIT", "RUN", "PENDING", "PROCESSING"})
# GLB is a single self-contained file; OBJ comes as a zip archive.
DEFAULT_FORMAT_PREFERENCE = ("GLB", "OBJ")
PROGRESS_STEP = 10
PROGRESS_CAP = 90


def select_result_file(
    files: Iterable[ResultFile], preference: Iterable[str] = DEFAULT_FORMAT_PREFERENCE
) -> Optional[ResultFile]:
    """Returns the first file with a URL, in order of format preference."""
    files = list(files)
    for file_type in preference:
        for result_file in files:
            if (result_file.type or "").upper() == file_type and result_file.url:
                return result_file
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobTracker:
    """Submits 3D generation jobs and tracks them to a terminal state.

    Each job is polled by the scheduler until it reaches SUCCESS or FAILED.
    Readers get immutable JobRecord snapshots through ``get_status``.
    """

    def __init__(
        self,
        api: Ai3dApi,
        config: Optional[PollingConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
        format_preference: Iterable[str] = DEFAULT_FORMAT_PREFERENCE,
        on_status_change: Optional[Callable[[JobRecord], Any]] = None,
        store: Optional[JobStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.config = config or PollingConfig()
        self.format_preference = tuple(format_preference)
        self.on_status_change = on_status_change
        self.store = store if store is not None else JobStore(ttl=self.config.record_ttl)
        self.scheduler = PollScheduler(
            self.poll,
            backoff=backoff or backoff_from_config(self.config),
            max_concurrent=self.config.max_concurrent_polls,
        )
        self._clock = clock
        self._submitted_at: dict[str, float] = {}
        self._anomalies: dict[str, int] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self.logger = logger

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.close()

    async def __aenter__(self) -> "JobTracker":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def submit(self, prompt: str) -> str:
        """Submits a job and starts polling it. Returns the job id.

        Raises SubmissionError when the service rejects the job and
        TransportError when the call fails; neither is retried.
        """
        try:
            job_id = await self.api.submit_job(prompt)
        except TransportError as e:
            self.logger.error(f"Submit failed: {e}")
            raise

        record = JobRecord(job_id=job_id, created_at=_utcnow())
        if not self.store.insert(record):
            self.logger.warning(f"Job {job_id} is already tracked")
            return job_id

        self._submitted_at[job_id] = self._clock()
        self.logger.info(f"Submitted job {job_id}")
        self.scheduler.schedule(job_id, delay=self.config.first_poll_delay)
        await self._handle_status_change(record, None)
        return job_id

    def get_status(self, job_id: str) -> Optional[JobRecord]:
        return self.store.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Stops polling a job and freezes its record.

        Returns False for unknown jobs and jobs already in a terminal state.
        """
        self.scheduler.cancel(job_id)
        record = self.store.update(
            job_id,
            lambda current: None
            if current.status.is_terminal or current.cancelled
            else current.model_copy(update={"cancelled": True}),
        )
        if record is None:
            return False
        self.logger.info(f"Cancelled job {job_id}")
        self._finish(job_id)
        return True

    async def wait_until_complete(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Waits for a job to finish and returns its final record.

        Raises JobFailure if the job failed or was cancelled.
        """
        record = self.store.get(job_id)
        if record is None:
            raise KeyError(job_id)

        if not (record.status.is_terminal or record.cancelled):
            event = self._finished.setdefault(job_id, asyncio.Event())
            try:
                await asyncio.wait_for(event.wait(), timeout)
            except asyncio.TimeoutError:
                raise TimeoutError(
                    f"Job {job_id} did not complete within {timeout} seconds"
                ) from None
            record = self.store.get(job_id)
            if record is None:
                raise KeyError(job_id)

        if record.cancelled:
            raise JobFailure(job_id, "Job was cancelled")
        if record.status is JobStatus.failed:
            raise JobFailure(job_id, record.error)
        return record

    async def poll(self, job_id: str) -> bool:
        """Queries a job once and applies the result.

        Returns True when the job needs another poll. Polling a job that is
        unknown, cancelled or already terminal does nothing.
        """
        record = self.store.get(job_id)
        if record is None or record.status.is_terminal or record.cancelled:
            return False

        elapsed = self._clock() - self._submitted_at.get(job_id, self._clock())
        if elapsed > self.config.job_timeout:
            await self._fail(job_id, f"Polling timed out after {self.config.job_timeout:.0f}s")
            return False

        try:
            result = await self.api.query_job(job_id)
        except TransportError as e:
            self.logger.warning(f"Polling job {job_id} failed, will retry: {e}")
            return True
        except UnrecognizedResponse as e:
            return await self._anomaly(job_id, str(e))

        return await self._apply(job_id, result)

    async def _apply(self, job_id: str, result: QueryResult) -> bool:
        status = (result.status or "").upper()
        self.logger.debug(
            f"Job {job_id}: Status={result.status}, ErrorCode={result.error_code}"
        )

        if result.error_code:
            await self._fail(job_id, result.error_message or result.error_code)
            return False

        if status == DONE_STATUS:
            result_file = select_result_file(result.result_files, self.format_preference)
            if result_file is None:
                return await self._anomaly(job_id, "Job is DONE but has no usable result file")
            if (result_file.type or "").upper() != self.format_preference[0]:
                self.logger.warning(
                    f"Job {job_id} has no {self.format_preference[0]} file, using {result_file.type}"
                )
            await self._succeed(job_id, result_file)
            return False

        if status and status not in IN_PROGRESS_STATUSES:
            self.logger.warning(f"Job {job_id} has unknown status {result.status!r}")
            return await self._anomaly(job_id, f"Unknown status {result.status!r}")

        self._anomalies.pop(job_id, None)
        record = await self._transition(
            job_id,
            lambda current: current.model_copy(
                update={"progress": min(current.progress + PROGRESS_STEP, PROGRESS_CAP)}
            ),
        )
        if record is None:
            return False
        self.logger.info(f"Job {job_id} processing, simulated progress {record.progress}%")
        return True

    async def _anomaly(self, job_id: str, reason: str) -> bool:
        count = self._anomalies.get(job_id, 0) + 1
        self._anomalies[job_id] = count
        if count >= self.config.max_anomalies:
            await self._fail(job_id, f"{reason} (gave up after {count} attempts)")
            return False
        self.logger.warning(f"Job {job_id}: {reason}, retrying ({count}/{self.config.max_anomalies})")
        return True

    async def _succeed(self, job_id: str, result_file: ResultFile) -> None:
        record = await self._transition(
            job_id,
            lambda current: current.model_copy(
                update={
                    "status": JobStatus.success,
                    "progress": 100,
                    "model_url": result_file.url,
                    "model_type": result_file.type,
                    "preview_image_url": result_file.preview_image_url,
                    "completed_at": _utcnow(),
                }
            ),
        )
        if record is not None:
            self.logger.info(f"Job {job_id} completed, {record.model_type} at {record.model_url}")

    async def _fail(self, job_id: str, error: str) -> None:
        record = await self._transition(
            job_id,
            lambda current: current.model_copy(
                update={"status": JobStatus.failed, "error": error, "completed_at": _utcnow()}
            ),
        )
        if record is not None:
            self.logger.info(f"Job {job_id} failed: {error}")

    async def _transition(
        self, job_id: str, change: Callable[[JobRecord], JobRecord]
    ) -> Optional[JobRecord]:
        """Applies ``change`` unless the job is already terminal or cancelled.

        Late responses for a finished job are discarded here.
        """
        previous: list[JobRecord] = []

        def guarded(current: JobRecord) -> Optional[JobRecord]:
            if current.status.is_terminal or current.cancelled:
                return None
            if self.scheduler.is_cancelled(job_id):
                return None
            previous.append(current)
            return change(current)

        record = self.store.update(job_id, guarded)
        if record is None:
            self.logger.debug(f"Discarding stale update for job {job_id}")
            return None

        if record.status.is_terminal:
            self._finish(job_id)
        await self._handle_status_change(record, previous[0].status)
        return record

    def _finish(self, job_id: str) -> None:
        self._anomalies.pop(job_id, None)
        self._submitted_at.pop(job_id, None)
        event = self._finished.pop(job_id, None)
        if event is not None:
            event.set()

    async def _handle_status_change(
        self, record: JobRecord, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != record.status and self.on_status_change is not None:
            self.logger.debug(f"Job {record.job_id} status changed to {record.status.value}")
            try:
                result = self.on_status_change(record)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.warning(f"Status change callback failed for job {record.job_id}: {e}")
