"""Import worker: the per-process job state machine.

One ``ImportWorker`` owns a FIFO of job ids drained by a single loop, so at
most one job is processed at a time. For each job the selected data types
run in the fixed stage order; before every page the job status is re-read
from the store and after every page the progress checkpoint is persisted.
A crash between pages therefore loses at most one page of work.

Shutdown never fails a job: the running job keeps its status with the error
cleared, and is picked up again by ``recover()`` on the next start.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studiosync.core.errors import describe_failure
from studiosync.core.logging import log_memory
from studiosync.importers import (
    BaseImporter,
    ClassesImporter,
    ClientsImporter,
    ImportRun,
    SalesImporter,
    VisitsImporter,
)
from studiosync.jobs.progress import ImportProgress
from studiosync.jobs.store import JobStore
from studiosync.jobs.types import ImportJob, JobStatus
from studiosync.source.client import SourceAPIClient
from studiosync.utils.dates import utcnow

logger = structlog.get_logger(__name__)

RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass(frozen=True)
class Stage:
    """One data type in the pipeline.

    Order matters: visits need the schedules written by classes, and sales
    link to the students written by clients.
    """

    name: str
    importer: BaseImporter

    def is_complete(self, progress: ImportProgress) -> bool:
        return progress.is_complete(self.name)


def default_stages() -> list[Stage]:
    return [
        Stage("clients", ClientsImporter()),
        Stage("classes", ClassesImporter()),
        Stage("visits", VisitsImporter()),
        Stage("sales", SalesImporter()),
    ]


class ImportWorker:
    """Sequential import job processor."""

    def __init__(
        self,
        store: JobStore,
        session_factory: async_sessionmaker[AsyncSession],
        client: SourceAPIClient,
        *,
        stages: Iterable[Stage] | None = None,
        heartbeat_interval: float = 60.0,
        page_size: int | None = None,
    ):
        self.store = store
        self.session_factory = session_factory
        self.client = client
        self.stages = list(stages) if stages is not None else default_stages()
        self.heartbeat_interval = heartbeat_interval
        self.page_size = page_size

        self.current_job_id: str | None = None
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._waiters: dict[str, asyncio.Future] = {}
        self._drain_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @property
    def queued_job_ids(self) -> list[str]:
        return [job_id for job_id in self._waiters if job_id != self.current_job_id]

    def process_job(self, job_id: str) -> asyncio.Future:
        """Queue a job for processing.

        Returns a future resolved with the job's final status once the drain
        loop has processed it. Queuing a job that is already waiting or
        running returns the existing future.
        """
        job_id = str(job_id)
        if job_id in self._waiters:
            logger.info("import_job_already_queued", job_id=job_id)
            return self._waiters[job_id]

        waiter = asyncio.get_running_loop().create_future()
        self._waiters[job_id] = waiter
        self._queue.put_nowait(job_id)
        logger.info("import_job_queued", job_id=job_id, queue_size=self._queue.qsize())

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return waiter

    async def wait_idle(self) -> None:
        """Block until every queued job has been processed."""
        await self._queue.join()

    async def _drain(self) -> None:
        try:
            while True:
                try:
                    job_id = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                status = None
                try:
                    status = await self.run_job(job_id)
                except Exception as exc:
                    # Job row is untouched; it stays recoverable in the store
                    logger.error(
                        "import_job_crashed", job_id=job_id, error=str(exc), exc_info=True
                    )
                finally:
                    waiter = self._waiters.pop(job_id, None)
                    if waiter is not None and not waiter.done():
                        waiter.set_result(status)
                    self._queue.task_done()
        except BaseException:
            await self.shutdown()
            raise

    async def recover(self) -> list[str]:
        """Re-queue jobs left pending or running by a previous process.

        Running jobs go back to pending first, so a queued job never looks
        stalled to the watchdog while it waits behind another job.
        """
        jobs = await self.store.list_by_status(RUNNABLE_STATUSES)
        for job in jobs:
            if job.status == JobStatus.RUNNING:
                await self.store.transition(job.id, (JobStatus.RUNNING,), status=JobStatus.PENDING)
            logger.info("import_job_recovered", job_id=job.id, status=job.status.value)
            self.process_job(job.id)
        return [job.id for job in jobs]

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> JobStatus | None:
        """Process one job to completion, failure, or a pause/cancel stop.

        Returns:
            The job status when processing stopped, or None if the job is gone
        """
        job = await self.store.get(job_id)
        if job is None:
            logger.warning("import_job_missing", job_id=job_id)
            return None
        if job.status not in RUNNABLE_STATUSES:
            logger.info("import_job_not_runnable", job_id=job_id, status=job.status.value)
            return job.status

        progress = job.progress
        if not progress.import_start_time:
            progress.import_start_time = utcnow().isoformat()

        started = await self.store.transition(
            job_id,
            RUNNABLE_STATUSES,
            status=JobStatus.RUNNING,
            error=None,
            heartbeat_at=utcnow(),
            started_at=job.started_at or utcnow(),
            progress=progress,
        )
        if not started:
            logger.info("import_job_changed_before_start", job_id=job_id)
            return await self.store.get_status(job_id)

        self.current_job_id = job_id
        self.client.reset_call_count()
        data_type = job.current_data_type
        heartbeat = asyncio.create_task(self._heartbeat_loop(job_id))
        log = logger.bind(job_id=job_id, organization_id=job.organization_id)
        log.info(
            "import_job_started",
            data_types=job.data_types,
            start_date=job.start_date.isoformat(),
            end_date=job.end_date.isoformat(),
            resume_data_type=job.current_data_type,
            resume_offset=job.current_offset,
        )
        log_memory(log, "job_start")

        run = ImportRun(
            organization_id=job.organization_id,
            start_date=job.start_date,
            end_date=job.end_date,
            session_factory=self.session_factory,
            client=self.client,
            job_id=job_id,
            page_size=self.page_size,
            on_progress=self._progress_logger(job_id),
        )
        baseline_calls = progress.api_call_count

        try:
            for stage in self.stages:
                if stage.name not in job.data_types or stage.is_complete(progress):
                    continue
                data_type = stage.name
                stopped = await self._run_stage(job, stage, run, progress, baseline_calls)
                if stopped is not None:
                    log.info("import_job_stopped", status=stopped.value, data_type=data_type)
                    return stopped

            status = await self.store.get_status(job_id)
            if status != JobStatus.RUNNING:
                log.info("import_job_stopped", status=status.value if status else None)
                return status

            await self.store.transition(
                job_id,
                (JobStatus.RUNNING,),
                status=JobStatus.COMPLETED,
                completed_at=utcnow(),
                error=None,
            )
            log.info(
                "import_job_completed",
                api_calls=progress.api_call_count,
                progress=progress.to_dict(),
            )
            return JobStatus.COMPLETED

        except Exception as exc:
            message = describe_failure(exc, data_type)
            log.error("import_job_failed", data_type=data_type, error=message, exc_info=True)
            try:
                failed = await self.store.transition(
                    job_id, (JobStatus.RUNNING,), status=JobStatus.FAILED, error=message
                )
                if not failed:
                    # Paused or cancelled while the failing page ran
                    status = await self.store.get_status(job_id)
                    log.info("import_job_stopped", status=status.value if status else None)
                    return status
            except Exception as store_exc:
                log.error("import_job_failure_not_saved", error=str(store_exc))
            return JobStatus.FAILED

        except BaseException:
            log.warning("import_job_interrupted", data_type=data_type)
            await self._leave_resumable(job_id)
            raise

        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.current_job_id = None
            log_memory(log, "job_stop")

    async def _run_stage(
        self,
        job: ImportJob,
        stage: Stage,
        run: ImportRun,
        progress: ImportProgress,
        baseline_calls: int,
    ) -> JobStatus | None:
        """Page through one data type. Returns a status if the job was stopped."""
        entry = progress.for_type(stage.name)
        if job.current_data_type == stage.name:
            offset = job.current_offset
        else:
            offset = entry.current

        while True:
            # Read-through: pause/cancel from another actor takes effect here
            status = await self.store.get_status(job.id)
            if status != JobStatus.RUNNING:
                return status or JobStatus.CANCELLED

            page = await stage.importer.import_page(run, offset)

            entry.imported += page.imported
            entry.updated += page.updated
            entry.skipped += page.skipped
            entry.current = page.next_offset
            entry.total = page.total
            entry.completed = page.completed
            progress.api_call_count = baseline_calls + self.client.api_call_count

            await self.store.save_checkpoint(job.id, progress, stage.name, page.next_offset)

            if page.completed:
                return None
            offset = page.next_offset

    def _progress_logger(self, job_id: str):
        async def on_progress(current: int, total: int) -> None:
            logger.debug("import_progress", job_id=job_id, current=current, total=total)

        return on_progress

    async def _heartbeat_loop(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.store.ping()
                await self.store.update_heartbeat(job_id)
            except Exception as exc:
                logger.warning("heartbeat_failed", job_id=job_id, error=str(exc))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _leave_resumable(self, job_id: str) -> None:
        try:
            await self.store.transition(job_id, (JobStatus.RUNNING,), error=None)
        except Exception as exc:
            logger.error("import_job_release_failed", job_id=job_id, error=str(exc))

    async def shutdown(self) -> None:
        """Stop processing and leave the current job resumable.

        Queued jobs are dropped from memory; they remain pending in the store.
        """
        job_id = self.current_job_id
        logger.info("import_worker_shutdown", job_id=job_id, queued=self.queued_job_ids)
        if job_id is not None:
            await self._leave_resumable(job_id)

        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()

        for queued_id, waiter in list(self._waiters.items()):
            if queued_id != job_id:
                self._waiters.pop(queued_id)
                if not waiter.done():
                    waiter.set_result(None)

        task = self._drain_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def install_signal_handlers(self) -> None:
        """Run ``shutdown()`` on SIGTERM/SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(self.shutdown()))
