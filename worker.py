#!/usr/bin/env python3
"""
Bulk Export Worker

A dedicated worker process that leases queued work units and executes them.
Run as many worker processes as needed; the queue hands each unit to one
worker at a time.

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--worker-id=ID]

Features:
- Leases units from the queue in priority order
- Retries failed units up to the queue's attempt limit, then fails the job
- Returns abandoned leases to the queue
- Graceful shutdown on signals: stops leasing and lets in-flight units finish
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from bulkexport.jobs.artifacts import ArtifactArbiter
from bulkexport.jobs.client import FhirResourceClient
from bulkexport.jobs.errors import UnitFailure
from bulkexport.jobs.job_manager import JobManager
from bulkexport.jobs.queue import LeasedWorkUnit, WorkQueue
from bulkexport.jobs.runner import WorkUnitRunner
from bulkexport.service import build_service
from bulkexport.settings import load_settings

logger = logging.getLogger("bulkexport.worker")


class ExportWorker:
    """
    Worker that polls for and executes work units.
    """

    def __init__(
        self,
        queue: WorkQueue,
        manager: JobManager,
        runner: WorkUnitRunner,
        worker_id: Optional[str] = None,
        concurrency: int = 2,
        poll_interval: float = 5.0,
        recovery_interval: float = 60.0,
        install_signal_handlers: bool = True
    ):
        self.worker_id = worker_id or f"worker-{os.getpid()}-{datetime.now(timezone.utc).strftime('%H%M%S')}"
        self.queue = queue
        self.manager = manager
        self.runner = runner
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.recovery_interval = recovery_interval
        self.install_signal_handlers = install_signal_handlers

        self._running = False
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._shutdown_event: Optional[asyncio.Event] = None

        logger.info(f"Worker {self.worker_id} initialized with concurrency={concurrency}")

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    async def start(self):
        """Start the worker and process units until shutdown is requested."""
        self._running = True
        self._shutdown_event = asyncio.Event()
        logger.info(f"Worker {self.worker_id} starting...")

        if self.install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_shutdown)
                except (NotImplementedError, RuntimeError):
                    # Not supported on this platform or outside the main thread
                    pass

        try:
            await asyncio.gather(
                self._poll_loop(),
                self._recovery_loop()
            )
        finally:
            await self._cleanup()

    def request_shutdown(self):
        """Stop leasing new units. In-flight units run to completion."""
        logger.info(f"Worker {self.worker_id} received shutdown signal")
        self._running = False
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _poll_loop(self):
        """Main loop that leases units while there is spare capacity."""
        logger.info("Starting unit poll loop")

        while self._running:
            try:
                while self._running and self.active_count < self.concurrency:
                    leased = self.queue.lease(self.worker_id)
                    if leased is None:
                        break

                    logger.info(
                        f"Leased unit {leased.unit_id} of job {leased.unit.job_id} "
                        f"(attempt {leased.attempts})"
                    )
                    task = asyncio.create_task(self._execute_unit(leased))
                    self._active_tasks[leased.unit_id] = task
                    task.add_done_callback(lambda t, uid=leased.unit_id: self._task_done(uid))
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")

            if await self._wait_for_shutdown(self.poll_interval):
                break

        logger.info("Unit poll loop stopped")

    async def _execute_unit(self, leased: LeasedWorkUnit):
        """Run one leased unit and settle it with the queue."""
        try:
            result = await self.runner.run(leased)
        except UnitFailure as e:
            logger.error(f"Unit {leased.unit_id} failed on attempt {leased.attempts}: {e}")
            self._handle_failure(
                leased,
                error_type="unit_failure",
                message=str(e),
                failing_stage=e.stage
            )
            return
        except Exception as e:
            logger.error(f"Error executing unit {leased.unit_id} on attempt {leased.attempts}: {e}")
            self._handle_failure(
                leased,
                error_type="worker_exception",
                message=str(e),
                failing_stage="worker_execution"
            )
            return

        try:
            self.queue.ack(leased)
        except Exception as e:
            # The lease will expire and the unit is redelivered; its marker is already recorded
            logger.error(f"Error acknowledging unit {leased.unit_id}: {e}")
            return

        if result.job_completed:
            logger.info(f"Job {result.job_id} completed")

    def _handle_failure(self, leased: LeasedWorkUnit, error_type: str, message: str, failing_stage: str):
        try:
            will_retry = self.queue.fail(leased, message)
        except Exception as e:
            logger.error(f"Error recording failure of unit {leased.unit_id}: {e}")
            return

        if will_retry:
            logger.info(f"Unit {leased.unit_id} will be retried")
            return

        self.manager.mark_failed(
            leased.unit.job_id,
            error_type=error_type,
            message=message,
            hint="A work unit exhausted its retries. Request a new export once the cause is fixed.",
            failing_stage=failing_stage,
            details={"unit_id": leased.unit_id, "attempts": leased.attempts}
        )

    def _task_done(self, unit_id: str):
        """Called when a unit task completes."""
        self._active_tasks.pop(unit_id, None)
        logger.debug(f"Task for unit {unit_id} cleaned up")

    async def _recovery_loop(self):
        """Periodically return expired leases to the queue."""
        while self._running:
            try:
                exhausted = self.queue.release_expired()
                for leased in exhausted:
                    logger.warning(
                        f"Unit {leased.unit_id} of job {leased.unit.job_id} abandoned after "
                        f"{leased.attempts} attempts"
                    )
                    self.manager.mark_failed(
                        leased.unit.job_id,
                        error_type="lease_expired",
                        message=f"Work unit {leased.unit_id} was abandoned by its workers",
                        hint="Workers stopped before finishing this unit. Request a new export.",
                        failing_stage="worker_execution",
                        details={"unit_id": leased.unit_id, "attempts": leased.attempts}
                    )
            except Exception as e:
                logger.error(f"Error in lease recovery: {e}")

            if await self._wait_for_shutdown(self.recovery_interval):
                break

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Wait up to timeout seconds. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _cleanup(self):
        """Wait for in-flight units, then flush artifacts."""
        logger.info("Worker cleaning up...")

        if self._active_tasks:
            logger.info(f"Waiting for {self.active_count} in-flight unit(s)")
            await asyncio.gather(*list(self._active_tasks.values()), return_exceptions=True)

        await self.runner.arbiter.close()

        close = getattr(self.runner.client, "close", None)
        if close is not None:
            await close()

        logger.info("Worker cleanup complete")


def main():
    """Main entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = load_settings()

    parser = argparse.ArgumentParser(description="Bulk Export Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=settings.worker_pool_size,
        help=f"Number of units to process concurrently (default: {settings.worker_pool_size})"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=settings.worker_poll_interval,
        help=f"Seconds between queue polls (default: {settings.worker_poll_interval})"
    )
    parser.add_argument(
        "--worker-id",
        type=str,
        default=os.environ.get("WORKER_ID"),
        help="Unique worker identifier (default: auto-generated)"
    )

    args = parser.parse_args()

    if args.concurrency < 1:
        logger.error("--concurrency must be at least 1")
        sys.exit(1)

    if settings.queue_backend == "memory":
        logger.warning("Memory queue backend selected; this worker only sees units enqueued in its own process")

    try:
        service = build_service(settings)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)

    client = None
    if settings.fhir_server_url:
        client = FhirResourceClient(settings.fhir_server_url)
    else:
        logger.warning("FHIR_SERVER_URL not set. Units will fail validation until it is configured.")

    runner = WorkUnitRunner(
        service.manager,
        ArtifactArbiter(),
        client,
        settings.payload_dir,
        queue=service.queue,
        heartbeat_interval=max(1.0, settings.queue_lease_seconds / 3)
    )
    worker = ExportWorker(
        queue=service.queue,
        manager=service.manager,
        runner=runner,
        worker_id=args.worker_id,
        concurrency=args.concurrency,
        poll_interval=args.poll_interval
    )

    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
