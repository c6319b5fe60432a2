"""
Background extraction jobs.

Jobs are persisted before they are queued so their status can be polled
from any request; a fixed number of worker tasks drain an asyncio.Queue
for the lifetime of the application. Database steps run in worker threads
so a slow commit never stalls the event loop.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pokify.errors import JobStateError, NotFoundError, PokifyError
from pokify.layers import storage
from pokify.models.entities import ExtractionJob, JobStatus, utcnow
from pokify.models.product import ExtractionResult
from pokify.utils.logger import LayerLogger, set_trace_id


Runner = Callable[..., Awaitable[ExtractionResult]]

ALLOWED_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def transition(job: ExtractionJob, new_status: JobStatus):
    """Move ``job`` to ``new_status`` or raise JobStateError."""
    if new_status not in ALLOWED_TRANSITIONS[job.status]:
        raise JobStateError(
            f"Invalid job transition {job.status.value} -> {new_status.value}",
            detail={"job_id": job.id},
        )
    job.status = new_status
    if new_status == JobStatus.RUNNING:
        job.started_at = utcnow()
    elif new_status in (JobStatus.COMPLETED, JobStatus.FAILED):
        job.finished_at = utcnow()


class JobQueue:
    """
    Queue of extraction jobs drained by worker tasks.

    Args:
        session_factory: Creates a session per job step
        runner: ``runner(url, visual=..., mode=...)`` returning an ExtractionResult
        workers: Number of concurrent worker tasks
    """

    def __init__(self, session_factory: sessionmaker, runner: Runner, workers: int = 2):
        self.session_factory = session_factory
        self.runner = runner
        self.workers = workers
        self.queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.logger = LayerLogger("jobs")

    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"extraction-worker-{index}")
            for index in range(self.workers)
        ]
        self.logger.log_action("job_workers", "started", workers=self.workers)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.log_action("job_workers", "stopped")

    async def join(self):
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def submit(
        self,
        url: str,
        mode: Optional[str] = None,
        visual: bool = False,
        store_id: Optional[str] = None,
    ) -> ExtractionJob:
        """
        Persist a ``queued`` job and hand it to the workers.

        Raises NotFoundError for an unknown ``store_id`` before anything is queued.
        """
        job = await asyncio.to_thread(self._create, url, mode, visual, store_id)
        self.queue.put_nowait(job.id)
        return job

    def status(self, job_id: str) -> ExtractionJob:
        with self.session_factory() as session:
            return self._load(session, job_id)

    async def _worker(self, index: int):
        while True:
            job_id = await self.queue.get()
            try:
                await self.process(job_id)
            except Exception as e:
                message = e.message if isinstance(e, PokifyError) else str(e)
                self.logger.log_error(
                    f"Job bookkeeping failed: {message}",
                    error_type="job_error",
                    job_id=job_id,
                    worker=index,
                )
            finally:
                self.queue.task_done()

    async def process(self, job_id: str):
        """Run one job through running -> completed/failed."""
        set_trace_id(job_id[:8])
        url, mode, visual, store_id = await asyncio.to_thread(self._start, job_id)

        self.logger.log_action("run_job", "started", job_id=job_id, url=url)
        try:
            result = await self.runner(url, visual=visual, mode=mode)
        except Exception as e:
            self.logger.log_error(f"Job runner raised: {str(e)}", error_type="job_error", job_id=job_id)
            result = ExtractionResult(success=False, error=str(e))

        try:
            await asyncio.to_thread(self._finish, job_id, result, store_id)
        except (PokifyError, SQLAlchemyError) as e:
            message = e.message if isinstance(e, PokifyError) else str(e)
            self.logger.log_error(f"Saving job result failed: {message}", error_type="job_error", job_id=job_id)
            await asyncio.to_thread(self._fail, job_id, message)
            self.logger.log_action("run_job", "failed", job_id=job_id)
            return

        self.logger.log_action(
            "run_job",
            "completed" if result.success else "failed",
            job_id=job_id,
            source=result.source.value if result.source else None,
        )

    # Blocking steps, run off the event loop

    def _create(self, url: str, mode: Optional[str], visual: bool, store_id: Optional[str]) -> ExtractionJob:
        with self.session_factory() as session:
            if store_id:
                storage.get_store(session, store_id)
            job = ExtractionJob(url=url, mode=mode, visual=visual, store_id=store_id)
            session.add(job)
            storage.commit(session, "submit_job", url=url)
        self.logger.log_action("submit_job", "completed", job_id=job.id, url=url)
        return job

    def _start(self, job_id: str) -> Tuple[str, Optional[str], bool, Optional[str]]:
        with self.session_factory() as session:
            job = self._load(session, job_id)
            transition(job, JobStatus.RUNNING)
            storage.commit(session, "start_job", job_id=job_id)
            return job.url, job.mode, job.visual, job.store_id

    def _finish(self, job_id: str, result: ExtractionResult, store_id: Optional[str]):
        with self.session_factory() as session:
            job = self._load(session, job_id)
            if result.success:
                payload = result.model_dump(mode="json")
                if store_id and result.data is not None:
                    product = storage.save_extracted_product(session, store_id, result.data)
                    payload["productId"] = product.id
                job.result = payload
                transition(job, JobStatus.COMPLETED)
            else:
                job.error = result.error or "Extraction failed"
                job.result = {"attempts": result.attempts}
                transition(job, JobStatus.FAILED)
            storage.commit(session, "finish_job", job_id=job_id)

    def _fail(self, job_id: str, error: str):
        with self.session_factory() as session:
            job = self._load(session, job_id)
            job.error = error
            transition(job, JobStatus.FAILED)
            storage.commit(session, "fail_job", job_id=job_id)

    @staticmethod
    def _load(session: Session, job_id: str) -> ExtractionJob:
        job = session.get(ExtractionJob, job_id)
        if job is None:
            raise NotFoundError("Job not found", detail={"job_id": job_id})
        return job
