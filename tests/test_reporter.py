"""Tests for the progress reporter."""

from datetime import datetime
from pathlib import Path

import pytest

from hls_downloader.jobs import Manifest, OutputSpec, SegmentDescriptor, SegmentState
from hls_downloader.reporter import ProgressReporter


def fixed_clock():
    return datetime(2024, 1, 1, 12, 30, 5)


def manifest_of(count):
    segments = [SegmentDescriptor(i, f"https://cdn.example.com/s{i}.ts", 2.5) for i in range(count)]
    return Manifest("https://cdn.example.com/index.m3u8", segments)


@pytest.mark.asyncio
async def test_log_lines_are_timestamped(recorder):
    reporter = ProgressReporter("job", recorder, clock=fixed_clock)
    await reporter.log("hello")
    assert recorder.events == [("log", "[12:30:05] hello")]
    assert reporter.log_lines == ["[12:30:05] hello"]


@pytest.mark.asyncio
async def test_progress_counts_ready_segments(recorder):
    reporter = ProgressReporter("job", recorder)
    await reporter.manifest_resolved(manifest_of(3))
    await reporter.segment_state_changed(0, SegmentState.PENDING, SegmentState.DOWNLOADING)
    await reporter.segment_state_changed(0, SegmentState.DOWNLOADING, SegmentState.READY)

    assert recorder.of_type("progress") == [(0, 3), (1, 3)]
    assert reporter.progress == pytest.approx(1 / 3)
    assert any("No #EXT-X-KEY" in line for line in recorder.of_type("log"))


@pytest.mark.asyncio
async def test_exactly_one_terminal_event(recorder):
    """Test that nothing, progress included, is emitted after the outcome."""
    reporter = ProgressReporter("job", recorder)
    await reporter.manifest_resolved(manifest_of(2))
    await reporter.failed("boom")
    await reporter.segment_state_changed(1, SegmentState.DOWNLOADING, SegmentState.READY)
    await reporter.finished(Path("/out.ts"))
    await reporter.cancelled()
    await reporter.log("late")

    kinds = [kind for kind, _ in recorder.events]
    assert kinds.count("failed") == 1
    assert "finished" not in kinds and "cancelled" not in kinds
    assert recorder.events[-1] == ("failed", "boom")
    assert recorder.of_type("progress") == [(0, 2)]
    assert reporter.is_closed


@pytest.mark.asyncio
async def test_job_started_notes_adjusted_filename(recorder, tmp_path):
    reporter = ProgressReporter("job", recorder)
    await reporter.job_started("https://cdn.example.com/index.m3u8", OutputSpec("clip", tmp_path, "mkv"), 4)
    lines = recorder.of_type("log")
    assert any("Concurrent downloads: 4" in line for line in lines)
    assert any("clip.mkv" in line for line in lines)
