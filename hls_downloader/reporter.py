"""Aggregates job and segment transitions into progress and log events."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from .jobs import JobEvent, Manifest, OutputSpec, SegmentState, TERMINAL_EVENTS


class ProgressReporter:
    """
    Passive observer of one job.

    Every call turns into zero or more ``(type, value)`` events pushed, in
    order, to the job's event stream. Exactly one terminal event is ever
    emitted; anything reported afterwards, progress included, is dropped so
    the last progress value stays frozen.
    """

    def __init__(self, job_id: str, emit: Callable[[JobEvent], Awaitable[None]],
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initializes the ProgressReporter.

        Args:
            job_id: Identifier used to tag Python log records.
            emit: Async callable receiving each event.
            clock: Source of log line timestamps.
        """
        self.job_id = job_id
        self.emit = emit
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.ready = 0
        self.total = 0
        self.log_lines: List[str] = []
        self.terminal_event: Any = None

    @property
    def is_closed(self) -> bool:
        return self.terminal_event is not None

    @property
    def progress(self) -> float:
        return self.ready / self.total if self.total else 0.0

    async def _emit(self, event: JobEvent):
        if self.is_closed:
            self.logger.debug(f"[{self.job_id}] Dropping event after terminal outcome: {event[0]}")
            return
        if event[0] in TERMINAL_EVENTS:
            self.terminal_event = event
        await self.emit(event)

    async def log(self, message: str, level: int = logging.INFO):
        """Emits a timestamped log line and mirrors it to the Python logger."""
        self.logger.log(level, f"[{self.job_id}] {message}")
        if self.is_closed:
            return
        line = f"[{self.clock().strftime('%H:%M:%S')}] {message}"
        self.log_lines.append(line)
        await self._emit(('log', line))

    async def job_started(self, url: str, output_spec: OutputSpec, concurrency: int):
        await self.log(f"-> Downloading playlist: {url}")
        await self.log(f"-> Concurrent downloads: {concurrency}")
        await self.log(f"-> Final output format: {output_spec.format}")
        if Path(output_spec.filename).name != output_spec.final_path.name:
            await self.log(f"    Note: Output filename adjusted to: {output_spec.final_path.name}")

    async def manifest_resolved(self, manifest: Manifest):
        self.total = len(manifest.segments)
        self.ready = 0
        await self.log(f"-> Found {self.total} segment(s), {manifest.total_duration:.1f}s total.")
        if not manifest.is_encrypted:
            await self.log("-> No #EXT-X-KEY tag detected, assuming content is unencrypted.")
        await self._emit(('progress', (self.ready, self.total)))

    async def key_fetch(self, uri: str):
        await self.log(f"🔑 Fetching AES-128 key: {uri}")

    async def segment_state_changed(self, index: int, old_state: SegmentState, new_state: SegmentState):
        self.logger.debug(f"[{self.job_id}] Segment {index}: {old_state.value} -> {new_state.value}")
        if new_state is SegmentState.READY:
            self.ready += 1
            await self._emit(('progress', (self.ready, self.total)))

    async def segment_retry(self, index: int, attempt: int, budget: int, error: BaseException):
        await self.log(f"⚠️ Segment {index} failed (attempt {attempt}/{budget}): {error}. Retrying...",
                       logging.WARNING)

    async def segment_failed(self, index: int, attempts: int, error: BaseException):
        await self.log(f"❌ Segment {index} failed after {attempts} attempt(s): {error}", logging.ERROR)

    async def assembly_started(self, output_spec: OutputSpec, segment_count: int):
        if output_spec.needs_remux:
            await self.log(f"-> Concatenating {segment_count} segment(s), then remuxing to {output_spec.format} with FFmpeg...")
        else:
            await self.log(f"-> Concatenating {segment_count} segment(s) into {output_spec.final_path.name}...")

    async def assembly_finished(self, path: Path):
        await self.log(f"-> Assembly finished: {path}")

    async def finished(self, path: Path):
        await self.log(f"✅ Download complete! File saved as: {path}")
        await self._emit(('finished', path))

    async def failed(self, reason: str):
        await self.log(f"❌ Download failed: {reason}", logging.ERROR)
        await self._emit(('failed', reason))

    async def cancelled(self):
        await self.log("⏹️ Download cancelled by user.", logging.WARNING)
        await self._emit(('cancelled', None))
