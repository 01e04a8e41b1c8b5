import asyncio
import sys
import time

sys.path.insert(0, '.')

import pytest

from monitoring.audit import AuditLogger
from orchestration.job_queue import JobQueue, JobStatus


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.01)


def test_enqueue_drops_when_full():
    async def _run():
        audit = AuditLogger()
        queue = JobQueue(max_queue_size=10, audit_logger=audit)
        for i in range(10):
            assert queue.enqueue('noop', {'i': i}) is not None
        assert queue.enqueue('noop', {'i': 10}) is None
        assert len(queue) == 10
        assert audit.recent('job_queue.drop')[0]['details']['reason'] == 'queue_overflow'

    asyncio.run(_run())


def test_settings_are_clamped():
    queue = JobQueue(concurrency=0, retry_base_s=0, max_queue_size=1, dead_letter_max=2, job_timeout_s=0)
    assert queue.concurrency == 1
    assert queue.retry_base_s == 0.05
    assert queue.max_queue_size == 10
    assert queue.dead_letter_max == 10
    assert queue.job_timeout_s is None

    configured = JobQueue.from_config({'concurrency': 4, 'retry_attempts': 5})
    assert configured.concurrency == 4
    assert configured.retry_attempts == 5


def test_failing_job_is_retried_then_dead_lettered():
    async def _run():
        dead = []
        queue = JobQueue(retry_attempts=2, retry_base_s=0.05, retry_max_s=0.1, on_dead_letter=dead.append)

        async def always_fails(payload, job):
            raise RuntimeError('bridge offline')

        queue.register_handler('broker.reconcile', always_fails)
        queue.start()
        job = queue.enqueue('broker.reconcile', {})
        await queue.join(timeout=5)
        await queue.stop()

        assert job.attempts == 3
        assert job.status is JobStatus.DEAD
        assert job.last_error == 'bridge offline'
        assert queue.dead_letter == [job]
        assert dead == [job]
        assert queue.get_stats()['failed'] == 3

    asyncio.run(_run())


def test_job_succeeds_after_retry():
    async def _run():
        calls = []
        queue = JobQueue(retry_attempts=3, retry_base_s=0.05)

        def flaky(payload, job):
            calls.append(job.attempts)
            if job.attempts < 2:
                raise ValueError('transient')
            return {'ok': True}

        queue.register_handler('flaky', flaky)
        queue.start()
        job = queue.enqueue('flaky', {})
        await queue.join(timeout=5)
        await queue.stop()

        assert calls == [1, 2]
        assert job.status is JobStatus.COMPLETED
        assert job.result == {'ok': True}
        assert queue.dead_letter == []

    asyncio.run(_run())


def test_unknown_job_type_goes_straight_to_dead_letter():
    async def _run():
        queue = JobQueue()
        queue.start()
        job = queue.enqueue('does.not.exist', {})
        await queue.join(timeout=5)
        await queue.stop()
        assert job.status is JobStatus.DEAD
        assert job.attempts == 0
        assert 'No handler registered' in job.last_error

    asyncio.run(_run())


def test_job_timeout_counts_as_failure():
    async def _run():
        queue = JobQueue(job_timeout_s=0.05)

        async def slow(payload, job):
            await asyncio.sleep(1)

        queue.register_handler('slow', slow)
        queue.start()
        job = queue.enqueue('slow', {}, max_attempts=0)
        await queue.join(timeout=5)
        await queue.stop()
        assert job.status is JobStatus.DEAD
        assert 'timed out' in job.last_error

    asyncio.run(_run())


def test_concurrency_limit_is_respected():
    async def _run():
        queue = JobQueue(concurrency=2)
        running = []
        peak = []

        async def work(payload, job):
            running.append(job.id)
            peak.append(len(running))
            await asyncio.sleep(0.05)
            running.remove(job.id)

        queue.register_handler('work', work)
        queue.start()
        for _ in range(5):
            queue.enqueue('work', {})
        await queue.join(timeout=5)
        await queue.stop()
        assert max(peak) == 2
        assert queue.get_stats()['completed'] == 5

    asyncio.run(_run())


def test_jobs_run_in_run_at_order():
    async def _run():
        order = []
        queue = JobQueue(concurrency=1)
        queue.register_handler('mark', lambda payload, job: order.append(payload['name']))
        now = time.time()
        queue.enqueue('mark', {'name': 'later'}, run_at=now + 0.1)
        queue.enqueue('mark', {'name': 'now'}, run_at=now)
        assert [job.payload['name'] for job in queue.pending_jobs()] == ['now', 'later']

        queue.start()
        await queue.join(timeout=5)
        await queue.stop()
        assert order == ['now', 'later']

    asyncio.run(_run())


def test_async_dead_letter_callback_is_scheduled():
    async def _run():
        seen = []

        async def notify(job):
            seen.append(job.type)

        queue = JobQueue(on_dead_letter=notify)
        queue.start()
        queue.enqueue('missing', {})
        await wait_until(lambda: seen)
        await queue.stop()
        assert seen == ['missing']

    asyncio.run(_run())


def test_join_times_out_when_work_remains():
    async def _run():
        queue = JobQueue()
        queue.enqueue('never', {}, run_at=time.time() + 3600)
        with pytest.raises(asyncio.TimeoutError):
            await queue.join(timeout=0.05)

    asyncio.run(_run())


def test_stop_requeues_cancelled_in_flight_job():
    async def _run():
        audit = AuditLogger()
        queue = JobQueue(audit_logger=audit)
        started = asyncio.Event()
        calls = []

        async def slow_then_fast(payload, job):
            calls.append(job.attempts)
            if len(calls) == 1:
                started.set()
                await asyncio.sleep(60)
            return {'done': True}

        queue.register_handler('alert.publish', slow_then_fast)
        queue.start()
        job = queue.enqueue('alert.publish', {'topic': 'broker_failure'})
        await asyncio.wait_for(started.wait(), 5)
        await queue.stop()

        assert job.status is JobStatus.QUEUED
        assert job.last_error == 'cancelled'
        assert queue.pending_jobs() == [job]
        assert queue.dead_letter == []
        assert audit.recent('job_queue.cancelled')[0]['details']['job_id'] == job.id

        queue.start()
        await queue.join(timeout=5)
        await queue.stop()
        assert job.status is JobStatus.COMPLETED
        assert job.result == {'done': True}
        assert len(calls) == 2

    asyncio.run(_run())
