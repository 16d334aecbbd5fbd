"""
Asynchronous job scheduler for long-running macro work.

Three named queues (processing, image-analysis, pattern-mining) each run a
fixed number of worker tasks. Jobs are dequeued by priority (lower first),
FIFO among equal priorities. A failed attempt is re-queued after a backoff
delay until the attempt budget is spent, then the job is terminally failed.

Every state change is pushed to an optional notification sink as
{jobId, queue, state, progress?, error?}.
"""

import asyncio
import functools
import inspect
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .const import (
    BACKOFF_EXPONENTIAL,
    BACKOFF_FIXED,
    BACKOFF_NONE,
    DEFAULT_JOB_PRIORITY,
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_TERMINAL_STATES,
    QUEUE_DEFAULTS,
)
from .errors import JobFailure, NotFoundError, ParseError, ValidationError

_LOGGER = logging.getLogger(__name__)

EVENT_RETRY = "retry"
EVENT_PROGRESS = "progress"

# Input errors fail the job at once, another attempt cannot fix them
NON_RETRYABLE_ERRORS = (ValidationError, ParseError)


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class QueueConfig:
    """Worker count and retry policy of one queue."""
    concurrency: int = 1
    attempts: int = 1
    backoff_type: str = BACKOFF_NONE
    backoff_delay: float = 0.0

    def backoff_for(self, attempt: int) -> float:
        """
        Seconds to wait before retrying after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
        """
        if self.backoff_type == BACKOFF_EXPONENTIAL:
            return self.backoff_delay * (2 ** (attempt - 1))
        if self.backoff_type == BACKOFF_FIXED:
            return self.backoff_delay
        return 0.0


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class Job:
    """One unit of queued work and its lifecycle record."""
    job_id: str
    queue: str
    payload: Any
    priority: int
    policy: QueueConfig
    state: str = JOB_QUEUED
    attempts_made: int = 0
    progress: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    failure: Optional[JobFailure] = None
    delayed: bool = False
    created_at: float = field(default_factory=lambda: datetime.now().timestamp())
    finished_at: Optional[float] = None

    @property
    def max_attempts(self) -> int:
        return self.policy.attempts

    @property
    def is_terminal(self) -> bool:
        return self.state in JOB_TERMINAL_STATES

    def to_dict(self) -> Dict:
        return {
            "jobId": self.job_id,
            "queue": self.queue,
            "state": self.state,
            "priority": self.priority,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at,
            "finishedAt": self.finished_at,
        }


class JobContext:
    """
    Handed to a job handler.

    report_progress() is safe to call from the event loop (coroutine
    handlers) and from executor threads (plain function handlers).
    """

    def __init__(self, job: Job, queue: "JobQueue", loop: asyncio.AbstractEventLoop):
        self.job = job
        self._queue = queue
        self._loop = loop

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def payload(self):
        return self.job.payload

    @property
    def attempt(self) -> int:
        return self.job.attempts_made

    def report_progress(self, progress: float):
        self.job.progress = progress
        event = self._queue.event_for(self.job, EVENT_PROGRESS)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._queue.spawn(self._queue.emit(event))
        else:
            self._loop.call_soon_threadsafe(self._queue.spawn, self._queue.emit(event))


# ============================================================================
# Queue
# ============================================================================

class JobQueue:
    """
    A single named queue with its own workers.

    Args:
        name: Queue name
        config: Concurrency and retry policy
        sink: Notification callable (plain or coroutine function), optional
    """

    def __init__(self, name: str, config: QueueConfig, sink: Optional[Callable] = None):
        self.name = name
        self.config = config
        self.handler: Optional[Callable] = None
        self.sink = sink
        self.jobs: Dict[str, Job] = {}

        self._ready: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._running = asyncio.Event()
        self._running.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._workers: List[asyncio.Task] = []
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: set = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Spawn worker tasks on the running loop."""
        if self._workers:
            return
        self._loop = asyncio.get_running_loop()
        for index in range(self.config.concurrency):
            task = self._loop.create_task(self._worker(index), name=f"{self.name}-worker-{index}")
            self._workers.append(task)
        _LOGGER.debug(f"Queue {self.name} started with {self.config.concurrency} workers")

    async def close(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def pause(self):
        self._running.clear()
        _LOGGER.info(f"Queue {self.name} paused")

    def resume(self):
        self._running.set()
        _LOGGER.info(f"Queue {self.name} resumed")

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    async def join(self):
        """Wait until no job in this queue is queued, delayed or active."""
        await self._idle.wait()

    # ========================================================================
    # Jobs
    # ========================================================================

    def add(self, job: Job):
        self.jobs[job.job_id] = job
        self._idle.clear()
        self._push(job)

    def clear(self) -> int:
        """Drop completed and failed job records. Returns the number dropped."""
        terminal = [job_id for job_id, job in self.jobs.items() if job.is_terminal]
        for job_id in terminal:
            del self.jobs[job_id]
        _LOGGER.info(f"Cleared {len(terminal)} finished jobs from queue {self.name}")
        return len(terminal)

    def status(self) -> Dict[str, int]:
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for job in self.jobs.values():
            if job.state == JOB_QUEUED:
                counts["delayed" if job.delayed else "waiting"] += 1
            elif job.state == JOB_ACTIVE:
                counts["active"] += 1
            elif job.state == JOB_COMPLETED:
                counts["completed"] += 1
            elif job.state == JOB_FAILED:
                counts["failed"] += 1
        counts["paused"] = self.is_paused
        return counts

    def _push(self, job: Job):
        self._ready.put_nowait((job.priority, next(self._sequence), job))

    def _requeue(self, job: Job):
        self._timers.pop(job.job_id, None)
        job.delayed = False
        self._push(job)

    def _check_idle(self):
        if all(job.is_terminal for job in self.jobs.values()):
            self._idle.set()

    # ========================================================================
    # Workers
    # ========================================================================

    async def _worker(self, index: int):
        while True:
            await self._running.wait()
            entry = await self._ready.get()
            if not self._running.is_set():
                # Paused while waiting on get(); hand the job back untouched
                self._ready.put_nowait(entry)
                self._ready.task_done()
                continue

            try:
                await self._run(entry[2])
            finally:
                self._ready.task_done()

    async def _run(self, job: Job):
        job.state = JOB_ACTIVE
        job.attempts_made += 1
        await self.emit(self.event_for(job, JOB_ACTIVE))

        try:
            job.result = await self._invoke(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            job.state = JOB_COMPLETED
            job.progress = 100
            job.finished_at = datetime.now().timestamp()
            _LOGGER.debug(f"Job {job.job_id} on {self.name} completed")
            await self.emit(self.event_for(job, JOB_COMPLETED))
        finally:
            self._check_idle()

    async def _invoke(self, job: Job):
        if self.handler is None:
            raise ValidationError(f"No handler registered for queue {self.name}")

        context = JobContext(job, self, self._loop)
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(context)
        return await self._loop.run_in_executor(None, functools.partial(self.handler, context))

    async def _handle_failure(self, job: Job, error: Exception):
        job.error = str(error) or error.__class__.__name__
        retryable = not isinstance(error, NON_RETRYABLE_ERRORS)

        if retryable and job.attempts_made < job.max_attempts:
            delay = job.policy.backoff_for(job.attempts_made)
            job.state = JOB_QUEUED
            _LOGGER.warning(
                f"Job {job.job_id} on {self.name} failed attempt "
                f"{job.attempts_made}/{job.max_attempts}, retrying in {delay:.1f}s: {job.error}"
            )
            await self.emit(self.event_for(job, EVENT_RETRY))

            if delay > 0:
                job.delayed = True
                self._timers[job.job_id] = self._loop.call_later(delay, self._requeue, job)
            else:
                self._push(job)
            return

        job.state = JOB_FAILED
        job.finished_at = datetime.now().timestamp()
        job.failure = JobFailure(job.job_id, job.error, job.attempts_made)
        _LOGGER.error(f"Job {job.job_id} on {self.name} failed: {job.failure}", exc_info=error)
        await self.emit(self.event_for(job, JOB_FAILED))

    # ========================================================================
    # Notifications
    # ========================================================================

    def event_for(self, job: Job, state: str) -> Dict:
        event = {"jobId": job.job_id, "queue": self.name, "state": state}
        if job.progress is not None:
            event["progress"] = job.progress
        if job.error is not None and state in (JOB_FAILED, EVENT_RETRY):
            event["error"] = job.error
        return event

    async def emit(self, event: Dict):
        if self.sink is None:
            return
        try:
            result = self.sink(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            _LOGGER.warning(f"Notification sink failed for job {event.get('jobId')}: {e}")

    def spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# ============================================================================
# Scheduler
# ============================================================================

class JobScheduler:
    """
    Owns the named queues.

    Args:
        queue_configs: Per-queue overrides of QUEUE_DEFAULTS
        sink: Notification callable receiving job events
    """

    def __init__(self, queue_configs: Optional[Dict[str, Dict]] = None, sink: Optional[Callable] = None):
        self.queues: Dict[str, JobQueue] = {}
        overrides = queue_configs or {}

        for name in set(QUEUE_DEFAULTS) | set(overrides):
            settings = dict(QUEUE_DEFAULTS.get(name, {}))
            settings.update(overrides.get(name) or {})
            self.queues[name] = JobQueue(name, QueueConfig(**settings), sink)

    def register_handler(self, queue_name: str, handler: Callable):
        """Attach the function that processes jobs of a queue."""
        self._queue(queue_name).handler = handler

    async def start(self):
        for queue in self.queues.values():
            queue.start()
        _LOGGER.info(f"Job scheduler started with queues: {', '.join(sorted(self.queues))}")

    async def close(self):
        for queue in self.queues.values():
            await queue.close()
        _LOGGER.info("Job scheduler stopped")

    async def join(self):
        """Wait until every queue is idle."""
        for queue in self.queues.values():
            await queue.join()

    def enqueue(
        self,
        queue_name: str,
        payload: Any,
        priority: Optional[int] = None,
        attempts: Optional[int] = None,
        backoff: Optional[Dict] = None,
    ) -> str:
        """
        Add a job to a queue.

        Args:
            queue_name: Target queue
            payload: Handler input
            priority: Lower runs first (default 10)
            attempts: Override the queue's attempt budget
            backoff: Override the queue's backoff, {"type": ..., "delay": ...}

        Returns:
            The new job id

        Raises:
            ValidationError: Unknown queue or bad retry options
        """
        queue = self._queue(queue_name)
        policy = QueueConfig(
            concurrency=queue.config.concurrency,
            attempts=queue.config.attempts if attempts is None else attempts,
            backoff_type=queue.config.backoff_type,
            backoff_delay=queue.config.backoff_delay,
        )
        if backoff:
            policy.backoff_type = backoff.get("type", policy.backoff_type)
            policy.backoff_delay = float(backoff.get("delay", policy.backoff_delay))

        if policy.attempts < 1:
            raise ValidationError(f"attempts must be at least 1, got {policy.attempts}")
        if policy.backoff_type not in (BACKOFF_EXPONENTIAL, BACKOFF_FIXED, BACKOFF_NONE):
            raise ValidationError(f"Unknown backoff type: {policy.backoff_type!r}")

        job = Job(
            job_id=uuid.uuid4().hex,
            queue=queue_name,
            payload=payload,
            priority=DEFAULT_JOB_PRIORITY if priority is None else priority,
            policy=policy,
        )
        queue.add(job)
        _LOGGER.debug(f"Enqueued job {job.job_id} on {queue_name} (priority {job.priority})")
        return job.job_id

    def get_job(self, job_id: str) -> Job:
        for queue in self.queues.values():
            if job_id in queue.jobs:
                return queue.jobs[job_id]
        raise NotFoundError("job", job_id)

    def get_job_status(self, job_id: str) -> Dict:
        return self.get_job(job_id).to_dict()

    def get_queue_status(self, queue_name: str) -> Dict:
        return self._queue(queue_name).status()

    def pause(self, queue_name: str):
        self._queue(queue_name).pause()

    def resume(self, queue_name: str):
        self._queue(queue_name).resume()

    def clear(self, queue_name: str) -> int:
        return self._queue(queue_name).clear()

    def _queue(self, queue_name: str) -> JobQueue:
        if queue_name not in self.queues:
            raise ValidationError(f"Unknown queue: {queue_name!r}")
        return self.queues[queue_name]
