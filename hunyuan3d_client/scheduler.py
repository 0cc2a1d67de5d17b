import asyncio
import random
from typing import Awaitable, Callable, Optional

from loguru import logger

from hunyuan3d_client.models import PollingConfig

BackoffPolicy = Callable[[int], float]


def fixed_interval(interval: float) -> BackoffPolicy:
    return lambda attempt: interval


def exponential_backoff(
    initial_delay: float,
    backoff_factor: float = 2.0,
    max_delay: float = 32.0,
    jitter: bool = False,
) -> BackoffPolicy:
    """Delay grows by ``backoff_factor`` per attempt, capped at ``max_delay``."""

    def policy(attempt: int) -> float:
        delay = min(initial_delay * (backoff_factor**attempt), max_delay)

        # Add random jitter between 0-20% of the delay
        if jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    return policy


def backoff_from_config(config: PollingConfig) -> BackoffPolicy:
    if config.backoff_factor == 1.0 and not config.jitter:
        return fixed_interval(config.interval)
    return exponential_backoff(
        config.interval, config.backoff_factor, config.max_delay, config.jitter
    )


class PollScheduler:
    """Runs poll callbacks for many jobs from a single run loop.

    The loop keeps a table of due times, dispatches due jobs as tasks
    (bounded by ``max_concurrent``) and only re-arms a job after its
    callback returned True. A job is never due and in flight at the same
    time, so each job has at most one outstanding poll.
    """

    def __init__(
        self,
        poll: Callable[[str], Awaitable[bool]],
        backoff: Optional[BackoffPolicy] = None,
        max_concurrent: int = 8,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._poll = poll
        self.backoff = backoff or fixed_interval(5.0)
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._due: dict[str, float] = {}
        self._attempts: dict[str, int] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._cancelled: set[str] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._runner: Optional[asyncio.Task] = None
        self._closed = False
        self.logger = logger

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._wakeup = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._runner = asyncio.create_task(self._run())
        self.logger.debug("Poll scheduler started")

    def schedule(self, job_id: str, delay: Optional[float] = None) -> bool:
        """Arms the next poll for ``job_id``.

        Returns False when the scheduler is closed or the job is already
        armed or in flight.
        """
        if self._closed:
            return False
        if job_id in self._due or job_id in self._in_flight:
            return False
        if not self.running:
            self.start()

        if delay is None:
            delay = self.backoff(self._attempts.get(job_id, 0))
        self._due[job_id] = self._now() + delay
        self._wakeup.set()
        self.logger.debug(f"Next poll for job {job_id} in {delay:.2f}s")
        return True

    def cancel(self, job_id: str) -> bool:
        """Stops future polls for ``job_id``. An in-flight poll may still finish.

        Only an in-flight job is remembered as cancelled, until its poll ends.
        """
        was_active = self.is_scheduled(job_id)
        self._due.pop(job_id, None)
        if job_id in self._in_flight:
            self._cancelled.add(job_id)
        else:
            self._attempts.pop(job_id, None)
        if self._wakeup is not None:
            self._wakeup.set()
        return was_active

    def is_cancelled(self, job_id: str) -> bool:
        return job_id in self._cancelled

    def is_scheduled(self, job_id: str) -> bool:
        return job_id in self._due or job_id in self._in_flight

    @property
    def pending(self) -> int:
        return len(self._due) + len(self._in_flight)

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            now = self._now()
            for job_id in [j for j, due in self._due.items() if due <= now]:
                del self._due[job_id]
                self._in_flight[job_id] = asyncio.create_task(self._dispatch(job_id))

            timeout = min(self._due.values()) - now if self._due else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _dispatch(self, job_id: str) -> None:
        attempt = self._attempts.get(job_id, 0) + 1
        self._attempts[job_id] = attempt
        keep_polling = False
        try:
            async with self._semaphore:
                if job_id not in self._cancelled:
                    keep_polling = await self._poll(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception(f"Poll for job {job_id} raised {type(e).__name__}: {e}")
            keep_polling = True
        finally:
            self._in_flight.pop(job_id, None)

        cancelled = job_id in self._cancelled
        self._cancelled.discard(job_id)
        if keep_polling and not self._closed and not cancelled:
            self.schedule(job_id)
        else:
            self._attempts.pop(job_id, None)

    async def close(self) -> None:
        """Cancels the run loop, every armed timer and every in-flight poll."""
        self._closed = True
        self._due.clear()
        tasks = list(self._in_flight.values())
        if self._runner is not None:
            tasks.append(self._runner)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._attempts.clear()
        self._cancelled.clear()
        self._runner = None
        self.logger.debug("Poll scheduler closed")
