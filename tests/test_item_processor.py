"""Tests for ItemProcessor: dedup hit/miss, failure isolation, status write-back."""
import pytest

from conftest import FakeHandler
from safari_workers.pipeline.dedup import DedupIndex
from safari_workers.pipeline.item_processor import ItemProcessor
from safari_workers.utils.errors import StoreConnectivityError


def _processor(store, handler=None, subject_id="it-9"):
    handlers = {"image": handler or FakeHandler()}
    return ItemProcessor(store, DedupIndex(store), handlers, subject_id=subject_id)


@pytest.mark.asyncio
async def test_miss_creates_artifact_and_completes(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["photos/a.jpg"])

    result = await _processor(store).process(item)

    assert result.status == "completed"
    stored = store.item("job-1", "photos/a.jpg")
    assert stored.status == "completed"
    assert stored.artifact_id == result.artifact_id
    assert stored.error is None
    artifact = store.artifacts["photos/a.jpg"]
    assert artifact.used_in == ["it-9"]
    assert artifact.url.endswith("photos/a.jpg")


@pytest.mark.asyncio
async def test_hit_skips_and_links(store):
    store.add_job("job-1", status="processing")
    existing = store.add_artifact("photos/a.jpg", used_in=["it-1"])
    [item] = store.add_items("job-1", ["/photos/a.jpg"])
    handler = FakeHandler()

    result = await _processor(store, handler).process(item)

    assert result.status == "skipped"
    assert result.artifact_id == existing.id
    assert handler.calls == []
    assert store.item("job-1", "/photos/a.jpg").status == "skipped"
    assert store.artifacts["photos/a.jpg"].used_in == ["it-1", "it-9"]


@pytest.mark.asyncio
async def test_hit_does_not_duplicate_membership(store):
    store.add_job("job-1", status="processing")
    store.add_artifact("photos/a.jpg", used_in=["it-9"])
    [item] = store.add_items("job-1", ["photos/a.jpg"])

    await _processor(store).process(item)

    assert store.artifacts["photos/a.jpg"].used_in == ["it-9"]


@pytest.mark.asyncio
async def test_handler_failure_is_recorded_not_raised(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["photos/bad.jpg"])
    handler = FakeHandler(fail_keys={"photos/bad.jpg"})

    result = await _processor(store, handler).process(item)

    assert result.status == "failed"
    assert "download failed" in result.error
    stored = store.item("job-1", "photos/bad.jpg")
    assert stored.status == "failed"
    assert stored.artifact_id is None
    assert "download failed" in stored.error
    assert store.artifacts == {}


@pytest.mark.asyncio
async def test_unknown_media_type_fails_item(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["clips/a.m3u8"], media_type="video")

    result = await _processor(store).process(item)

    assert result.status == "failed"
    assert "video" in result.error


@pytest.mark.asyncio
async def test_lost_create_race_marks_skipped(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["photos/a.jpg"])

    class RacingHandler(FakeHandler):
        async def process(self, item, dedup_key):
            payload = await super().process(item, dedup_key)
            # Another invocation finishes the same source first
            store.add_artifact(dedup_key, used_in=["it-other"])
            return payload

    result = await _processor(store, RacingHandler()).process(item)

    assert result.status == "skipped"
    assert len(store.artifacts) == 1
    assert store.artifacts["photos/a.jpg"].used_in == ["it-other", "it-9"]


@pytest.mark.asyncio
async def test_store_outage_propagates(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["photos/a.jpg"])
    store.unavailable = True

    with pytest.raises(StoreConnectivityError):
        await _processor(store).process(item)


@pytest.mark.asyncio
async def test_item_already_claimed_is_left_alone(store):
    store.add_job("job-1", status="processing")
    [item] = store.add_items("job-1", ["photos/a.jpg"])
    store.item("job-1", "photos/a.jpg").status = "processing"
    handler = FakeHandler()

    result = await _processor(store, handler).process(item)

    assert result.status == "processing"
    assert not result.succeeded
    assert handler.calls == []
    assert store.item("job-1", "photos/a.jpg").status == "processing"
    assert store.artifacts == {}


@pytest.mark.asyncio
async def test_claim_marks_item_processing(store):
    store.add_job("job-1", status="processing")
    store.add_items("job-1", ["photos/a.jpg"])

    assert store.claim_work_item("job-1", "photos/a.jpg") is True
    assert store.claim_work_item("job-1", "photos/a.jpg") is False
    claimed = store.item("job-1", "photos/a.jpg")
    assert claimed.status == "processing"
    assert claimed.started_at is not None
