import asyncio
import threading

import pytest

from candle_pipeline.models import JobState
from candle_pipeline.orchestrator import JobKind, JobOrchestrator
from conftest import FakeArchiveSource, FakeRestClient


async def wait_until(predicate, timeout=5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


async def wait_for_active(orchestrator, kind, timeout=5.0):
    await wait_until(lambda: orchestrator.active_job == kind, timeout)


@pytest.mark.asyncio
async def test_jobs_are_mutually_exclusive(config):
    config.REBUILD_AFTER_BACKFILL = False
    gate = threading.Event()
    orchestrator = JobOrchestrator(config, FakeArchiveSource(gate=gate), FakeRestClient())

    backfill = asyncio.create_task(orchestrator.start_backfill())
    await wait_for_active(orchestrator, JobKind.BACKFILL)

    refused = await orchestrator.start_reconcile()
    assert refused.state == JobState.ERROR
    assert refused.message == "Backfill is running"
    assert orchestrator.progress(JobKind.RECONCILE).state == JobState.ERROR

    refused = await orchestrator.start_rebuild()
    assert refused.message == "Backfill is running"

    gate.set()
    result = await asyncio.wait_for(backfill, 10)
    assert result.state == JobState.DONE
    assert orchestrator.active_job is None

    after = await orchestrator.start_reconcile()
    assert after.state == JobState.DONE


@pytest.mark.asyncio
async def test_stop_ends_in_stopped_state(config):
    gate = threading.Event()
    source = FakeArchiveSource(gate=gate)
    orchestrator = JobOrchestrator(config, source, FakeRestClient())

    backfill = asyncio.create_task(orchestrator.start_backfill())
    await wait_until(lambda: source.calls)

    orchestrator.stop(JobKind.BACKFILL)
    gate.set()
    result = await asyncio.wait_for(backfill, 10)

    assert result.state == JobState.STOPPED
    assert len(source.calls) == 1
    # No rebuild follows a stopped backfill
    assert orchestrator.progress(JobKind.REBUILD).state == JobState.IDLE


@pytest.mark.asyncio
async def test_cancelled_caller_keeps_slot_until_worker_ends(config):
    config.REBUILD_AFTER_BACKFILL = False
    gate = threading.Event()
    source = FakeArchiveSource(gate=gate)
    orchestrator = JobOrchestrator(config, source, FakeRestClient())

    backfill = asyncio.create_task(orchestrator.start_backfill())
    await wait_until(lambda: source.calls)

    backfill.cancel()
    with pytest.raises(asyncio.CancelledError):
        await backfill

    # Worker thread is still blocked in the download
    assert orchestrator.active_job == JobKind.BACKFILL
    refused = await orchestrator.start_reconcile()
    assert refused.state == JobState.ERROR
    assert refused.message == "Backfill is running"

    gate.set()
    await wait_until(lambda: orchestrator.active_job is None)
    assert orchestrator.progress(JobKind.BACKFILL).state == JobState.STOPPED
    assert len(source.calls) == 1

    after = await orchestrator.start_reconcile()
    assert after.state == JobState.DONE


@pytest.mark.asyncio
async def test_backfill_triggers_rebuild(config):
    orchestrator = JobOrchestrator(config, FakeArchiveSource(), FakeRestClient())
    result = await orchestrator.start_backfill()

    assert result.state == JobState.DONE
    rebuild = orchestrator.progress(JobKind.REBUILD)
    assert rebuild.state == JobState.DONE
    assert rebuild.message == "No local candles"


@pytest.mark.asyncio
async def test_rebuild_after_backfill_can_be_disabled(config):
    config.REBUILD_AFTER_BACKFILL = False
    orchestrator = JobOrchestrator(config, FakeArchiveSource(), FakeRestClient())
    await orchestrator.start_backfill()
    assert orchestrator.progress(JobKind.REBUILD).state == JobState.IDLE


@pytest.mark.asyncio
async def test_subscribers_receive_progress(config):
    config.REBUILD_AFTER_BACKFILL = False
    orchestrator = JobOrchestrator(config, FakeArchiveSource(), FakeRestClient())
    queue = orchestrator.subscribe()

    await orchestrator.start_reconcile()
    await asyncio.sleep(0)

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())

    assert events
    assert all(kind == JobKind.RECONCILE for kind, _ in events)
    assert events[0][1].state == JobState.RUNNING
    assert events[-1][1].state == JobState.DONE

    orchestrator.unsubscribe(queue)
    await orchestrator.start_reconcile()
    await asyncio.sleep(0)
    assert queue.empty()


def test_progress_snapshots_are_copies(config):
    orchestrator = JobOrchestrator(config, FakeArchiveSource(), FakeRestClient())
    snapshot = orchestrator.progress(JobKind.RECONCILE)
    snapshot.message = "changed"
    assert orchestrator.progress(JobKind.RECONCILE).message is None


@pytest.mark.asyncio
async def test_shutdown_stops_future_jobs(config):
    orchestrator = JobOrchestrator(config, FakeArchiveSource(), FakeRestClient())
    orchestrator.shutdown()
    result = await orchestrator.start_backfill()
    assert result.state == JobState.STOPPED
