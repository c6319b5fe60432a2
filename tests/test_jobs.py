"""
Unit tests for the background extraction job queue.
"""
import threading

import pytest
from sqlalchemy.exc import OperationalError

from pokify.errors import JobStateError, NotFoundError
from pokify.layers import storage
from pokify.layers.jobs import JobQueue, transition
from pokify.models.entities import ExtractionJob, JobStatus
from pokify.models.product import ExtractionResult, ExtractorStrategy, ProductData


PAGE_URL = "https://shop.example/products/body"


def succeeding_runner(calls=None, price="129.90"):
    async def runner(url, visual=False, mode=None):
        if calls is not None:
            calls.append((url, visual, mode))
        return ExtractionResult(
            success=True,
            source=ExtractorStrategy.PRIMARY,
            data=ProductData(url=url, title="Body", price=price, images=["https://cdn/a.jpg"]),
        )

    return runner


class TestTransitions:

    def test_allowed(self):
        job = ExtractionJob(url=PAGE_URL, status=JobStatus.QUEUED)

        transition(job, JobStatus.RUNNING)
        assert job.started_at is not None

        transition(job, JobStatus.COMPLETED)
        assert job.finished_at is not None

    def test_terminal_states_are_final(self):
        job = ExtractionJob(url=PAGE_URL, status=JobStatus.COMPLETED)

        with pytest.raises(JobStateError) as exc:
            transition(job, JobStatus.RUNNING)
        assert exc.value.status_code == 409

    def test_queued_cannot_complete(self):
        with pytest.raises(JobStateError):
            transition(ExtractionJob(url=PAGE_URL, status=JobStatus.QUEUED), JobStatus.COMPLETED)


class TestJobQueue:

    @pytest.mark.asyncio
    async def test_submit_and_complete(self, database):
        calls = []
        jobs = JobQueue(database.session_factory, succeeding_runner(calls), workers=1)

        job = await jobs.submit(PAGE_URL, mode="pro_copy", visual=True)
        assert jobs.status(job.id).status == JobStatus.QUEUED

        jobs.start()
        await jobs.join()
        await jobs.stop()

        done = jobs.status(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result["data"]["title"] == "Body"
        assert done.result["source"] == "primary"
        assert "productId" not in done.result
        assert calls == [(PAGE_URL, True, "pro_copy")]

        data = done.to_dict()
        assert data["jobId"] == job.id
        assert data["status"] == "completed"
        assert data["startedAt"] and data["finishedAt"]

    @pytest.mark.asyncio
    async def test_store_id_persists_product(self, database, session, store):
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)

        job = await jobs.submit(PAGE_URL, store_id=store.id)
        await jobs.process(job.id)

        result = jobs.status(job.id).result
        product = storage.get_product(session, result["productId"])
        assert product.title == "Body"
        assert product.original_url == PAGE_URL

    @pytest.mark.asyncio
    async def test_failed_result(self, database):
        async def runner(url, visual=False, mode=None):
            return ExtractionResult(
                success=False,
                error="All extractors failed",
                attempts={"primary": "503", "direct": "403", "legacy": "empty"},
            )

        jobs = JobQueue(database.session_factory, runner, workers=1)
        job = await jobs.submit(PAGE_URL)
        await jobs.process(job.id)

        failed = jobs.status(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "All extractors failed"
        assert failed.result == {"attempts": {"primary": "503", "direct": "403", "legacy": "empty"}}

    @pytest.mark.asyncio
    async def test_runner_exception_fails_job(self, database):
        async def runner(url, visual=False, mode=None):
            raise RuntimeError("browser crashed")

        jobs = JobQueue(database.session_factory, runner, workers=1)
        job = await jobs.submit(PAGE_URL)
        await jobs.process(job.id)

        assert jobs.status(job.id).status == JobStatus.FAILED
        assert jobs.status(job.id).error == "browser crashed"

    @pytest.mark.asyncio
    async def test_reprocessing_finished_job_rejected(self, database):
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)
        job = await jobs.submit(PAGE_URL)
        await jobs.process(job.id)

        with pytest.raises(JobStateError):
            await jobs.process(job.id)
        assert jobs.status(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_worker_survives_bookkeeping_errors(self, database):
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)
        jobs.queue.put_nowait("missing-job")
        job = await jobs.submit(PAGE_URL)

        jobs.start()
        await jobs.join()
        await jobs.stop()

        assert jobs.status(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_store_rejected_before_queueing(self, database):
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)

        with pytest.raises(NotFoundError):
            await jobs.submit(PAGE_URL, store_id="no-such-store")
        assert jobs.queue.empty()

    @pytest.mark.asyncio
    async def test_store_deleted_before_run_fails_job(self, database, session, store):
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)
        job = await jobs.submit(PAGE_URL, store_id=store.id)
        session.delete(store)
        session.commit()

        jobs.start()
        await jobs.join()
        await jobs.stop()

        failed = jobs.status(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Store not found"
        assert failed.finished_at is not None

    @pytest.mark.asyncio
    async def test_unsaveable_product_fails_job(self, database, store):
        jobs = JobQueue(database.session_factory, succeeding_runner(price="sob consulta"), workers=1)
        job = await jobs.submit(PAGE_URL, store_id=store.id)

        await jobs.process(job.id)

        failed = jobs.status(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Invalid price: sob consulta"
        assert failed.result is None

    @pytest.mark.asyncio
    async def test_database_error_fails_job_and_worker_continues(self, database, store, monkeypatch):
        calls = []

        def broken_save(session, store_id, data):
            calls.append(store_id)
            if len(calls) == 1:
                raise OperationalError("INSERT INTO products", {}, Exception("disk I/O error"))
            return storage.create_product(session, store_id, title=data.title)

        monkeypatch.setattr(storage, "save_extracted_product", broken_save)
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)
        first = await jobs.submit(PAGE_URL, store_id=store.id)
        second = await jobs.submit(PAGE_URL, store_id=store.id)

        jobs.start()
        await jobs.join()
        await jobs.stop()

        assert jobs.status(first.id).status == JobStatus.FAILED
        assert "disk I/O error" in jobs.status(first.id).error
        assert jobs.status(second.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_database_steps_run_off_the_event_loop(self, database, store, monkeypatch):
        threads = []
        original = storage.save_extracted_product

        def recording_save(session, store_id, data):
            threads.append(threading.get_ident())
            return original(session, store_id, data)

        monkeypatch.setattr(storage, "save_extracted_product", recording_save)
        jobs = JobQueue(database.session_factory, succeeding_runner(), workers=1)
        job = await jobs.submit(PAGE_URL, store_id=store.id)

        await jobs.process(job.id)

        assert jobs.status(job.id).status == JobStatus.COMPLETED
        assert threads and threads[0] != threading.get_ident()

    def test_unknown_job(self, database):
        jobs = JobQueue(database.session_factory, succeeding_runner())

        with pytest.raises(NotFoundError):
            jobs.status("missing")
