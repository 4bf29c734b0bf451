"""Tests for ExecutionTrigger queue routing."""
from datetime import timedelta

import pytest

from safari_workers.config import settings
from safari_workers.utils import execution
from safari_workers.utils.errors import TriggerFailure
from safari_workers.utils.execution import ExecutionTrigger


class FakeQueue:
    calls = []

    def __init__(self, name, connection=None):
        self.name = name

    def enqueue(self, func, **kwargs):
        FakeQueue.calls.append(("now", self.name, func, None, kwargs))
        return type("RqJob", (), {"id": "rq-now"})()

    def enqueue_in(self, delay, func, **kwargs):
        FakeQueue.calls.append(("later", self.name, func, delay, kwargs))
        return type("RqJob", (), {"id": "rq-later"})()


@pytest.fixture
def queues(monkeypatch):
    FakeQueue.calls = []
    monkeypatch.setattr(execution, "Queue", FakeQueue)
    return FakeQueue.calls


def test_next_batch_is_enqueued_immediately(queues):
    job_id = ExecutionTrigger(connection=object()).enqueue_next_batch("job-1", "it-1", 2)

    assert job_id == "rq-now"
    [(when, queue, func, delay, kwargs)] = queues
    assert (when, queue, func, delay) == ("now", settings.MEDIA_QUEUE, settings.MEDIA_BATCH_FUNC, None)
    assert kwargs["kwargs"] == {"job_id": "job-1", "subject_id": "it-1", "batch_index": 2}


def test_delayed_next_batch_is_scheduled(queues):
    job_id = ExecutionTrigger(connection=object()).enqueue_next_batch("job-1", "it-1", 3, delay_seconds=60)

    assert job_id == "rq-later"
    [(when, _, func, delay, kwargs)] = queues
    assert (when, func, delay) == ("later", settings.MEDIA_BATCH_FUNC, timedelta(seconds=60))
    assert kwargs["kwargs"]["batch_index"] == 3
    assert "delay_seconds" not in kwargs["kwargs"]


def test_media_scope_restarts_at_first_batch(queues):
    ExecutionTrigger(connection=object()).start_execution("job-1", scope="media", subject_id="it-1")

    assert queues[0][4]["kwargs"] == {"job_id": "job-1", "subject_id": "it-1", "batch_index": 0}


def test_enqueue_failure_raises_trigger_failure(monkeypatch):
    class BrokenQueue:
        def __init__(self, *args, **kwargs):
            raise ConnectionError("redis unreachable")

    monkeypatch.setattr(execution, "Queue", BrokenQueue)

    with pytest.raises(TriggerFailure):
        ExecutionTrigger(connection=object()).enqueue("some.func", job_id="job-1")
