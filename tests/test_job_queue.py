from datetime import timedelta

import pytest

from elastic_document.processing import PipelineConfig, RQJobQueue, job_queue, run_claim_reaper


class RecordingQueue:
    def __init__(self):
        self.enqueued = []
        self.scheduled = []

    def enqueue(self, func, *args, **kwargs):
        self.enqueued.append((func, args, kwargs))

    def enqueue_in(self, delay, func, *args, **kwargs):
        self.scheduled.append((delay, func, args, kwargs))


@pytest.fixture
def recording_queue():
    queue = RQJobQueue("redis://localhost:6379/0")
    queue.queue = RecordingQueue()
    return queue


def test_schedule_queues_next_run_with_interval(recording_queue):
    config = PipelineConfig()

    recording_queue.schedule_claim_reaper(config, 120)
    recording_queue.schedule_claim_reaper(config, 120)

    first, second = recording_queue.queue.scheduled
    assert first[0] == timedelta(seconds=120)
    assert first[1] is run_claim_reaper
    assert first[2] == (config, 120)
    assert first[3]["job_id"].startswith("claim-reaper-")
    assert first[3]["job_id"] != second[3]["job_id"]


def test_enqueue_passes_reschedule_interval(recording_queue):
    config = PipelineConfig()

    recording_queue.enqueue_claim_reaper(config, 300)

    func, args, kwargs = recording_queue.queue.enqueued[0]
    assert func is run_claim_reaper
    assert args == (config, 300)
    assert kwargs["job_id"].startswith("claim-reaper-")


class FakeJobQueue:
    instances = []

    def __init__(self, redis_url):
        self.redis_url = redis_url
        self.calls = []
        FakeJobQueue.instances.append(self)

    def enqueue_claim_reaper(self, config, reschedule_seconds=None):
        self.calls.append(("enqueue", reschedule_seconds))

    def schedule_claim_reaper(self, config, every_seconds):
        self.calls.append(("schedule", every_seconds))

    def work(self):
        self.calls.append(("work",))


@pytest.fixture
def fake_job_queue(monkeypatch):
    FakeJobQueue.instances = []
    monkeypatch.setattr(job_queue, "RQJobQueue", FakeJobQueue)
    for name in ("OCR_BACKEND", "HUGGINGFACE_OCR_ENDPOINT", "HUGGINGFACE_API_KEY", "CLAIM_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    return FakeJobQueue


def test_reaper_run_reschedules_itself(tmp_path, fake_job_queue):
    config = PipelineConfig(database_url=f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}", redis_url="redis://cache:6379/1")

    assert run_claim_reaper(config, reschedule_seconds=60) == 0

    (queue,) = fake_job_queue.instances
    assert queue.redis_url == "redis://cache:6379/1"
    assert queue.calls == [("schedule", 60)]


def test_main_queues_reaper_then_works(fake_job_queue):
    job_queue.main(["--every", "45"])

    (queue,) = fake_job_queue.instances
    assert queue.calls == [("enqueue", 45), ("work",)]


def test_main_can_skip_the_reaper(fake_job_queue):
    job_queue.main(["--no-reaper"])

    (queue,) = fake_job_queue.instances
    assert queue.calls == [("work",)]
