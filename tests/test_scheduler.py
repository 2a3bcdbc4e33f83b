"""Tests for segment dispatch, retries and cancellation."""

import asyncio
import random

import pytest

from conftest import KEY_BYTES, FakeFetcher, segment_payload
from hls_downloader.crypto import KeyCache
from hls_downloader.exceptions import (
    CryptoError, DownloadCancelledError, NetworkError, ResolveError,
)
from hls_downloader.http_client import HttpResponse
from hls_downloader.jobs import (
    EncryptionKey, JobState, Manifest, OutputSpec, SegmentDescriptor, SegmentState,
)
from hls_downloader.limiter import ConcurrencyLimiter
from hls_downloader.reporter import ProgressReporter
from hls_downloader.scheduler import SegmentScheduler, attempt_budget
from hls_downloader.worker import SegmentWorker

BASE = "https://cdn.example.com/video"
KEY_URL = f"{BASE}/key.bin"


def seg_url(index):
    return f"{BASE}/seg{index}.ts"


async def build(tmp_path, fetcher, recorder, segment_count=5, concurrency=2, key=None):
    segments = [SegmentDescriptor(i, seg_url(i), 4.0, key=key, media_sequence=i) for i in range(segment_count)]
    manifest = Manifest(f"{BASE}/index.m3u8", segments)
    job = JobState(
        job_id="job",
        output_spec=OutputSpec("out", tmp_path, "ts"),
        limiter=ConcurrencyLimiter(concurrency),
        key_cache=KeyCache(fetcher),
        work_dir=tmp_path,
    )
    job.load_manifest(manifest)
    reporter = ProgressReporter("job", recorder)
    await reporter.manifest_resolved(manifest)
    scheduler = SegmentScheduler(job, SegmentWorker(fetcher, job.key_cache), reporter)
    return job, scheduler


def test_attempt_budget_per_error_kind():
    assert attempt_budget(NetworkError("x")) == 3
    assert attempt_budget(CryptoError("x")) == 2
    assert attempt_budget(ResolveError("x")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [1, 2, 5, 16])
async def test_in_flight_downloads_never_exceed_concurrency(tmp_path, recorder, concurrency):
    """Test that parallel fetches stay within the permit pool."""
    rng = random.Random(concurrency)
    routes = {seg_url(i): segment_payload(i) for i in range(20)}
    fetcher = FakeFetcher(routes, delay=lambda url: rng.uniform(0, 0.005))
    job, scheduler = await build(tmp_path, fetcher, recorder, segment_count=20, concurrency=concurrency)

    slots = await scheduler.run()

    assert len(slots) == 20
    assert fetcher.peak_active <= concurrency
    assert job.limiter.peak_in_use <= concurrency
    assert job.limiter.in_use == 0


@pytest.mark.asyncio
async def test_slots_are_ordered_regardless_of_completion_order(tmp_path, recorder):
    """Test that later segments finishing first do not reorder the output."""
    routes = {seg_url(i): segment_payload(i) for i in range(5)}
    # Earlier segments are slower, so completion order is reversed.
    fetcher = FakeFetcher(routes, delay=lambda url: 0.02 - 0.004 * int(url[-4]))
    job, scheduler = await build(tmp_path, fetcher, recorder, concurrency=5)

    slots = await scheduler.run()

    assert [slot.read_bytes() for slot in slots] == [segment_payload(i) for i in range(5)]
    progress = recorder.of_type("progress")
    assert progress[0] == (0, 5)
    assert progress[-1] == (5, 5)
    assert [ready for ready, _ in progress] == sorted(ready for ready, _ in progress)


@pytest.mark.asyncio
async def test_transient_failures_are_retried(tmp_path, recorder):
    """Test that two failures followed by success leave the segment READY."""
    routes = {seg_url(i): segment_payload(i) for i in range(3)}
    routes[seg_url(1)] = [HttpResponse(500, b""), NetworkError("connection reset"), segment_payload(1)]
    fetcher = FakeFetcher(routes)
    job, scheduler = await build(tmp_path, fetcher, recorder, segment_count=3)

    await scheduler.run()

    record = job.records[1]
    assert record.state is SegmentState.READY
    assert record.attempts == 3
    assert fetcher.count(seg_url(1)) == 3
    retries = [line for line in recorder.of_type("log") if "Retrying" in line]
    assert len(retries) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_job(tmp_path, recorder):
    routes = {seg_url(i): segment_payload(i) for i in range(4)}
    routes[seg_url(1)] = HttpResponse(503, b"")
    fetcher = FakeFetcher(routes)
    job, scheduler = await build(tmp_path, fetcher, recorder, segment_count=4, concurrency=1)

    with pytest.raises(NetworkError) as exc_info:
        await scheduler.run()

    assert exc_info.value.status == 503
    assert job.records[1].state is SegmentState.FAILED
    assert job.records[1].attempts == 3
    assert fetcher.count(seg_url(1)) == 3
    assert job.failure is exc_info.value
    assert recorder.of_type("progress")[-1][0] < 4
    assert job.limiter.in_use == 0


@pytest.mark.asyncio
async def test_crypto_errors_get_one_retry(tmp_path, recorder):
    key = EncryptionKey("AES-128", KEY_URL)
    fetcher = FakeFetcher({seg_url(0): b"\x00" * 1000, KEY_URL: KEY_BYTES})
    job, scheduler = await build(tmp_path, fetcher, recorder, segment_count=1, key=key)

    with pytest.raises(CryptoError):
        await scheduler.run()

    assert fetcher.count(seg_url(0)) == 2
    assert fetcher.count(KEY_URL) == 1
    assert job.records[0].state is SegmentState.FAILED


@pytest.mark.asyncio
async def test_cancel_stops_dispatch_and_releases_permits(tmp_path, recorder):
    routes = {seg_url(i): segment_payload(i) for i in range(6)}
    fetcher = FakeFetcher(routes)
    never = asyncio.Event()
    for i in range(2, 6):
        fetcher.gates[seg_url(i)] = never
    job, scheduler = await build(tmp_path, fetcher, recorder, segment_count=6, concurrency=2)

    run_task = asyncio.create_task(scheduler.run())

    async def wait_for_blocked_workers():
        while job.ready_count < 2 or fetcher.active < 2:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(wait_for_blocked_workers(), timeout=2)
    scheduler.cancel()

    with pytest.raises(DownloadCancelledError):
        await asyncio.wait_for(run_task, timeout=2)

    assert job.limiter.in_use == 0
    assert scheduler.in_flight_tasks == 0
    assert fetcher.active == 0
    assert fetcher.count(seg_url(4)) == 0
    assert job.ready_count == 2
