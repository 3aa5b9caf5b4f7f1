"""
Tests for the background QueueWorker.
"""

import asyncio

from rivel_backend.job_store import JobStore
from rivel_backend.models import GenerateRequest, JobStatus
from rivel_backend.queue_worker import WORKER_STOPPED, QueueWorker, normalize_result


class RecordingGenerator:
    """Generator that records how many jobs were RUNNING during each call."""

    def __init__(self, store, fail_on=()):
        self.store = store
        self.fail_on = set(fail_on)
        self.prompts = []
        self.running_counts = []

    async def __call__(self, request):
        self.prompts.append(request.prompt)
        self.running_counts.append(self.store.stats()["running"])
        await asyncio.sleep(0)
        if request.prompt in self.fail_on:
            raise RuntimeError(f"could not draw {request.prompt}")
        return {"endpoint_used": "/generate", "meta": None, "image_url": f"https://example.test/{request.prompt}.png"}


class FlakyStore(JobStore):
    """JobStore whose first pop raises, to exercise the loop's error handling."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.pops = 0

    def pop_next_job(self):
        self.pops += 1
        if self.pops == 1:
            raise RuntimeError("transient store failure")
        return super().pop_next_job()


class TestRunOnce:
    """Tests for single worker ticks."""

    def test_empty_queue(self, clock):
        """A tick on an empty queue does nothing."""
        store = JobStore(clock=clock)
        worker = QueueWorker(store, RecordingGenerator(store))
        assert asyncio.run(worker.run_once()) is None

    def test_jobs_run_in_fifo_order(self, clock):
        """Jobs are executed in submission order, one per tick."""
        store = JobStore(clock=clock)
        generator = RecordingGenerator(store)
        worker = QueueWorker(store, generator)
        ids = [store.create_job(GenerateRequest(prompt=p)).id for p in ("a", "b", "c")]

        async def drain():
            finished = []
            while (job := await worker.run_once()) is not None:
                finished.append(job)
            return finished

        finished = asyncio.run(drain())
        assert [job.id for job in finished] == ids
        assert generator.prompts == ["a", "b", "c"]
        assert all(job.status is JobStatus.DONE for job in finished)
        assert finished[1].result.image_url == "https://example.test/b.png"

    def test_single_running_job_during_generation(self, clock):
        """Exactly one job is RUNNING while the generator is in flight."""
        store = JobStore(clock=clock)
        generator = RecordingGenerator(store)
        worker = QueueWorker(store, generator)
        for prompt in ("a", "b"):
            store.create_job(GenerateRequest(prompt=prompt))

        async def drain():
            await worker.run_once()
            await worker.run_once()

        asyncio.run(drain())
        assert generator.running_counts == [1, 1]

    def test_failure_marks_job_error(self, clock):
        """A raising generator ends the job as ERROR with its message."""
        store = JobStore(clock=clock)
        worker = QueueWorker(store, RecordingGenerator(store, fail_on={"bad"}))
        bad = store.create_job(GenerateRequest(prompt="bad"))
        good = store.create_job(GenerateRequest(prompt="good"))

        async def drain():
            return [await worker.run_once(), await worker.run_once()]

        first, second = asyncio.run(drain())
        assert first.id == bad.id
        assert first.status is JobStatus.ERROR
        assert first.error == "could not draw bad"
        assert second.id == good.id
        assert second.status is JobStatus.DONE
        assert store.current_job_id is None


class TestLifecycle:
    """Tests for starting and stopping the polling loop."""

    def test_start_is_idempotent_and_stop_cancels(self, clock):
        """A second start reuses the task; stop leaves the worker idle."""
        store = JobStore(clock=clock)
        worker = QueueWorker(store, RecordingGenerator(store), poll_interval=0.01)

        async def scenario():
            first = worker.start()
            second = worker.start()
            assert first is second
            assert worker.running
            await worker.stop()
            assert not worker.running
            assert first.cancelled()
            await worker.stop()

        asyncio.run(scenario())

    def test_loop_drains_queue(self, clock):
        """The running loop picks up jobs submitted after it started."""
        store = JobStore(clock=clock)
        worker = QueueWorker(store, RecordingGenerator(store), poll_interval=0.001)

        async def scenario():
            worker.start()
            job = store.create_job(GenerateRequest(prompt="late"))
            for _ in range(500):
                if store.get_job(job.id).status is JobStatus.DONE:
                    break
                await asyncio.sleep(0.005)
            await worker.stop()
            return store.get_job(job.id)

        assert asyncio.run(scenario()).status is JobStatus.DONE

    def test_stop_mid_job_frees_queue_for_restart(self, clock):
        """Stopping during generation fails the job and a restart serves the queue."""
        store = JobStore(clock=clock)
        release = None

        async def blocking_generator(request):
            if request.prompt == "slow":
                await release.wait()
            return {"endpoint_used": "/generate", "meta": None, "image_url": None}

        worker = QueueWorker(store, blocking_generator, poll_interval=0.001)
        slow = store.create_job(GenerateRequest(prompt="slow"))

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            worker.start()
            for _ in range(500):
                if store.get_job(slow.id).status is JobStatus.RUNNING:
                    break
                await asyncio.sleep(0.001)
            await worker.stop()

            fast = store.create_job(GenerateRequest(prompt="fast"))
            release.set()
            worker.start()
            for _ in range(500):
                if store.get_job(fast.id).status is JobStatus.DONE:
                    break
                await asyncio.sleep(0.005)
            await worker.stop()
            return fast

        fast = asyncio.run(scenario())
        stopped = store.get_job(slow.id)
        assert stopped.status is JobStatus.ERROR
        assert stopped.error == WORKER_STOPPED
        assert store.current_job_id is None
        assert store.get_job(fast.id).status is JobStatus.DONE

    def test_loop_survives_tick_failure(self, clock):
        """An unexpected error in one tick does not kill the loop."""
        store = FlakyStore(clock=clock)
        worker = QueueWorker(store, RecordingGenerator(store), poll_interval=0.001)
        job = store.create_job(GenerateRequest(prompt="after-failure"))

        async def scenario():
            worker.start()
            for _ in range(500):
                if store.get_job(job.id).status is JobStatus.DONE:
                    break
                await asyncio.sleep(0.005)
            alive = worker.running
            await worker.stop()
            return alive

        assert asyncio.run(scenario())
        assert store.pops >= 2
        assert store.get_job(job.id).status is JobStatus.DONE


class TestNormalizeResult:
    """Tests for shaping generator output."""

    def test_missing_fields(self):
        """Absent fields become empty values rather than errors."""
        result = normalize_result({})
        assert result.endpoint_used == ""
        assert result.meta is None
        assert result.image_url is None

    def test_camel_case_dump(self):
        """Results serialize with camelCase keys."""
        result = normalize_result({"endpoint_used": "/generate", "meta": {"seed": 3}, "image_url": "u"})
        assert result.model_dump(by_alias=True) == {"endpointUsed": "/generate", "meta": {"seed": 3}, "imageUrl": "u"}
