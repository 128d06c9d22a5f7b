"""
Tests for the worker pool: end-to-end processing, retries, lease recovery
and graceful shutdown.
"""

import asyncio

from bulkexport.jobs.artifacts import ArtifactArbiter
from bulkexport.jobs.job_types import JobStatus, ResourceType
from bulkexport.jobs.runner import WorkUnitRunner
from worker import ExportWorker

from conftest import ORG_ID, bundle


class SlowClient:
    """Client that takes a while per member and tracks concurrency."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = None

    async def fetch_resource(self, resource_type: ResourceType, member_id: str, since: str = "") -> str:
        if self.started is None:
            self.started = asyncio.Event()
        self.started.set()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return bundle({"id": member_id})


def _worker(service, runner, **kwargs) -> ExportWorker:
    options = dict(
        worker_id="test-worker",
        concurrency=2,
        poll_interval=0.01,
        recovery_interval=0.01,
        install_signal_handlers=False,
    )
    options.update(kwargs)
    return ExportWorker(queue=service.queue, manager=service.manager, runner=runner, **options)


def _run_until(worker, done, timeout: float = 5.0):
    async def scenario():
        task = asyncio.create_task(worker.start())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not done() and loop.time() < deadline:
            await asyncio.sleep(0.01)
        worker.request_shutdown()
        await task

    asyncio.run(scenario())


def _status(service, job_id):
    return service.get_job(job_id).status


# =============================================================================
# PROCESSING
# =============================================================================

class TestProcessing:
    """Workers drain the queue and complete jobs."""

    def test_completes_job(self, service, runner, settings):
        job_id = service.create_job(ORG_ID, "/api/v1/A0001/Patient/$export")
        assert service.schedule(job_id, ["Patient", "Coverage"]) == 2
        worker = _worker(service, runner)

        _run_until(worker, lambda: _status(service, job_id) == JobStatus.COMPLETED)

        job = service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_job_count == 2
        assert service.queue.pending_count() == 0

    def test_respects_concurrency_limit(self, service, manager, settings):
        settings.max_records["Patient"] = 10
        job_id = service.create_job(ORG_ID, "/x")
        assert service.schedule(job_id, ["Patient"]) == 5
        client = SlowClient(delay=0.005)
        runner = WorkUnitRunner(manager, ArtifactArbiter(), client, settings.payload_dir)
        worker = _worker(service, runner, concurrency=2)

        _run_until(worker, lambda: _status(service, job_id) == JobStatus.COMPLETED)

        assert _status(service, job_id) == JobStatus.COMPLETED
        assert 1 <= client.max_in_flight <= 2


# =============================================================================
# FAILURES
# =============================================================================

class TestFailures:
    """Unit failures are retried, then fail the job."""

    def test_exhausted_retries_fail_the_job(self, service, manager, settings):
        job_id = service.create_job(ORG_ID, "/x")
        service.schedule(job_id, ["Patient"])
        runner = WorkUnitRunner(manager, ArtifactArbiter(), None, settings.payload_dir)
        worker = _worker(service, runner)

        _run_until(worker, lambda: _status(service, job_id) == JobStatus.FAILED)

        job = service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.error_type == "unit_failure"
        assert job.error.failing_stage == "dependency"
        assert job.error.details["attempts"] == service.queue.max_attempts

    def test_abandoned_lease_out_of_attempts_fails_the_job(self, service, runner):
        service.queue.max_attempts = 1
        service.queue.lease_seconds = 0
        job_id = service.create_job(ORG_ID, "/x")
        service.schedule(job_id, ["Patient"])
        # A worker that leased the unit and died
        assert service.queue.lease("crashed-worker") is not None
        worker = _worker(service, runner)

        _run_until(worker, lambda: _status(service, job_id) == JobStatus.FAILED)

        job = service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.error_type == "lease_expired"


# =============================================================================
# SHUTDOWN
# =============================================================================

class TestShutdown:
    """Shutdown stops leasing but lets in-flight units finish."""

    def test_in_flight_unit_finishes_after_shutdown(self, service, manager, settings):
        job_id = service.create_job(ORG_ID, "/x")
        service.schedule(job_id, ["Patient"])
        client = SlowClient(delay=0.001)
        runner = WorkUnitRunner(manager, ArtifactArbiter(), client, settings.payload_dir)
        worker = _worker(service, runner, poll_interval=0.01)

        _run_until(worker, lambda: client.started is not None and client.started.is_set())

        assert worker.active_count == 0
        assert _status(service, job_id) == JobStatus.COMPLETED

