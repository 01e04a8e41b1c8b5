"""In-memory, at-least-once background job executor.

Pending jobs sit in a heap keyed by ``run_at``. A single dispatcher task
sleeps on a wake event; ``enqueue`` and job completion set the event, so a
burst of changes costs one scheduling pass.
"""
import asyncio
import heapq
import inspect
import itertools
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

from api.metrics import metrics
from config.utils import as_float, as_int


logger = logging.getLogger(__name__)

MIN_REARM_S = 0.05

JobHandler = Callable[[Dict[str, Any], 'Job'], Union[Any, Awaitable[Any]]]


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


@dataclass
class Job:
    id: str
    type: str
    payload: Dict[str, Any]
    created_at: float
    run_at: float
    max_attempts: int
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    completed_at: Optional[float] = None
    dead_at: Optional[float] = None
    result: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'status': self.status.value,
            'created_at': self.created_at,
            'run_at': self.run_at,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_error': self.last_error,
            'completed_at': self.completed_at,
            'dead_at': self.dead_at,
        }


class JobQueue:
    def __init__(
        self,
        concurrency: Any = 2,
        retry_attempts: Any = 2,
        retry_base_s: Any = 0.5,
        retry_max_s: Any = 10.0,
        max_queue_size: Any = 5000,
        dead_letter_max: Any = 200,
        job_timeout_s: Any = None,
        audit_logger=None,
        on_dead_letter: Optional[Callable[[Job], Any]] = None,
        clock=time.time,
    ):
        self.concurrency = as_int(concurrency, 2, minimum=1)
        self.retry_attempts = as_int(retry_attempts, 2, minimum=0)
        self.retry_base_s = as_float(retry_base_s, 0.5, minimum=MIN_REARM_S)
        self.retry_max_s = as_float(retry_max_s, 10.0, minimum=self.retry_base_s)
        self.max_queue_size = as_int(max_queue_size, 5000, minimum=10)
        self.dead_letter_max = as_int(dead_letter_max, 200, minimum=10)
        timeout = as_float(job_timeout_s)
        self.job_timeout_s = timeout if timeout and timeout > 0 else None
        self.audit_logger = audit_logger
        self.on_dead_letter = on_dead_letter
        self.clock = clock

        self._handlers: Dict[str, JobHandler] = {}
        self._pending: List[Tuple[float, int, Job]] = []
        self._seq = itertools.count()
        self._in_flight: Dict[str, Job] = {}
        self._tasks: set = set()
        self._dead_letter: Deque[Job] = deque(maxlen=self.dead_letter_max)
        self._completed = 0
        self._failed = 0

        self._wake = asyncio.Event()
        self._changed = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None
        self.running = False

    @classmethod
    def from_config(cls, settings: Optional[Dict[str, Any]] = None, **kwargs: Any) -> 'JobQueue':
        settings = dict(settings or {})
        return cls(
            concurrency=settings.get('concurrency', 2),
            retry_attempts=settings.get('retry_attempts', 2),
            retry_base_s=settings.get('retry_base_s', 0.5),
            retry_max_s=settings.get('retry_max_s', 10.0),
            max_queue_size=settings.get('max_queue_size', 5000),
            dead_letter_max=settings.get('dead_letter_max', 200),
            job_timeout_s=settings.get('job_timeout_s'),
            **kwargs,
        )

    @property
    def dead_letter(self) -> List[Job]:
        return list(self._dead_letter)

    def __len__(self) -> int:
        return len(self._pending)

    def register_handler(self, job_type: str, handler: JobHandler) -> bool:
        if not job_type or not callable(handler):
            return False
        self._handlers[str(job_type)] = handler
        return True

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        run_at: Optional[float] = None,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        if not job_type:
            return None
        if len(self._pending) >= self.max_queue_size:
            logger.warning("Job queue overflow (%s pending); dropping %s job", len(self._pending), job_type)
            self._audit('job_queue.drop', {'type': job_type, 'reason': 'queue_overflow'})
            metrics.record_job(str(job_type), 'dropped')
            return None

        now = self.clock()
        job = Job(
            id=job_id or uuid.uuid4().hex,
            type=str(job_type),
            payload=dict(payload or {}),
            created_at=now,
            run_at=now if run_at is None else float(run_at),
            max_attempts=self.retry_attempts if max_attempts is None else max(0, int(max_attempts)),
        )
        self._push(job)
        self._audit('job_queue.enqueued', {'job_id': job.id, 'type': job.type, 'run_at': job.run_at})
        return job

    def start(self) -> None:
        """Start the dispatcher; must be called from a running event loop."""
        if self.running:
            return
        self.running = True
        self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())
        logger.info("Job queue started (concurrency=%s)", self.concurrency)

    async def stop(self, cancel_in_flight: bool = True) -> None:
        if not self.running and self._dispatcher is None:
            return
        self.running = False
        self._wake.set()
        if self._dispatcher is not None:
            await self._dispatcher
            self._dispatcher = None
        tasks = list(self._tasks)
        if cancel_in_flight:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job queue stopped (%s pending)", len(self._pending))

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is pending or in flight."""

        async def _wait_idle() -> None:
            while self._pending or self._in_flight:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait_idle(), timeout)

    def pending_jobs(self) -> List[Job]:
        return [job for _, _, job in sorted(self._pending, key=lambda item: item[:2])]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'pending': len(self._pending),
            'in_flight': len(self._in_flight),
            'dead_letter': len(self._dead_letter),
            'concurrency': self.concurrency,
            'completed': self._completed,
            'failed': self._failed,
        }

    def _push(self, job: Job) -> None:
        heapq.heappush(self._pending, (job.run_at, next(self._seq), job))
        self._notify()

    def _notify(self) -> None:
        self._wake.set()
        self._changed.set()
        metrics.update_job_queue(len(self._pending), len(self._in_flight), len(self._dead_letter))

    async def _dispatch_loop(self) -> None:
        while self.running:
            self._wake.clear()
            self._start_ready_jobs()

            timeout = None
            if self._pending and len(self._in_flight) < self.concurrency:
                timeout = max(MIN_REARM_S, self._pending[0][0] - self.clock())
            try:
                await asyncio.wait_for(self._wake.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def _start_ready_jobs(self) -> None:
        loop = asyncio.get_running_loop()
        while self._pending and len(self._in_flight) < self.concurrency:
            run_at, _, job = self._pending[0]
            if run_at > self.clock():
                break
            heapq.heappop(self._pending)

            handler = self._handlers.get(job.type)
            if handler is None:
                job.status = JobStatus.FAILED
                job.last_error = f"No handler registered for {job.type}"
                self._move_to_dead_letter(job)
                continue

            self._in_flight[job.id] = job
            task = loop.create_task(self._run_job(job, handler))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job: Job, handler: JobHandler) -> None:
        job.status = JobStatus.RUNNING
        job.attempts += 1
        self._audit('job_queue.started', {'job_id': job.id, 'type': job.type, 'attempt': job.attempts})
        try:
            result = handler(job.payload, job)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, self.job_timeout_s)
        except asyncio.CancelledError:
            # Interrupted by stop(): back to pending so a restart runs it again.
            job.status = JobStatus.QUEUED
            job.last_error = 'cancelled'
            job.run_at = self.clock()
            self._push(job)
            logger.warning("Job %s (%s) cancelled in flight; requeued", job.id, job.type)
            self._audit('job_queue.cancelled', {'job_id': job.id, 'type': job.type, 'attempt': job.attempts})
            raise
        except asyncio.TimeoutError:
            self._handle_failure(job, f"Job timed out after {self.job_timeout_s}s")
        except Exception as exc:
            self._handle_failure(job, str(exc) or exc.__class__.__name__)
        else:
            job.status = JobStatus.COMPLETED
            job.completed_at = self.clock()
            job.result = result
            self._completed += 1
            self._audit('job_queue.completed', {
                'job_id': job.id,
                'type': job.type,
                'duration_s': round(job.completed_at - job.created_at, 3),
            })
            metrics.record_job(job.type, 'completed')
        finally:
            self._in_flight.pop(job.id, None)
            self._notify()

    def _handle_failure(self, job: Job, error: str) -> None:
        job.status = JobStatus.FAILED
        job.last_error = error
        self._failed += 1
        logger.warning("Job %s (%s) attempt %s failed: %s", job.id, job.type, job.attempts, error)
        self._audit('job_queue.failed', {
            'job_id': job.id,
            'type': job.type,
            'attempt': job.attempts,
            'error': error,
        })
        metrics.record_job(job.type, 'failed')

        if job.attempts <= job.max_attempts:
            delay = min(self.retry_max_s, self.retry_base_s * 2 ** (job.attempts - 1))
            job.status = JobStatus.QUEUED
            job.run_at = self.clock() + delay
            self._push(job)
        else:
            self._move_to_dead_letter(job)

    def _move_to_dead_letter(self, job: Job) -> None:
        job.status = JobStatus.DEAD
        job.dead_at = self.clock()
        self._dead_letter.append(job)
        logger.error("Job %s (%s) dead-lettered: %s", job.id, job.type, job.last_error)
        self._audit('job_queue.dead_letter', {'job_id': job.id, 'type': job.type, 'error': job.last_error})
        metrics.record_job(job.type, 'dead')
        self._notify()
        if self.on_dead_letter is None:
            return
        try:
            outcome = self.on_dead_letter(job)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception as exc:
            logger.error("Dead-letter callback failed for job %s: %s", job.id, exc)

    def _audit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.record(event, payload)
        except Exception as exc:
            logger.warning("Audit record %s failed: %s", event, exc)
