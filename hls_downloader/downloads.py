"""Runs HLS download jobs and exposes them to a shell as event streams."""
import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import urlparse

from .assembler import Assembler
from .config import Settings
from .constants import OUTPUT_FORMATS, WORK_DIR_PREFIX
from .crypto import KeyCache
from .dependencies import DependencyManager
from .exceptions import DownloadCancelledError, HLSDownloadError
from .http_client import HttpFetcher
from .jobs import JobEvent, JobState, OutputSpec, TERMINAL_EVENTS
from .limiter import ConcurrencyLimiter, clamp_concurrency
from .playlist import PlaylistResolver
from .reporter import ProgressReporter
from .scheduler import SegmentScheduler
from .worker import SegmentWorker


class JobHandle:
    """
    The shell's view of one submitted job.

    Events arrive in order through ``events()``; the stream ends after the
    single terminal event (``finished``, ``failed`` or ``cancelled``).
    """

    def __init__(self, job_id: str, url: str, output_spec: OutputSpec, concurrency: int):
        self.job_id = job_id
        self.url = url
        self.output_spec = output_spec
        self.concurrency = concurrency
        self.history: List[JobEvent] = []
        self.outcome: Optional[JobEvent] = None
        self.task: Optional[asyncio.Task] = None
        self.state: Optional[JobState] = None
        self.scheduler: Optional[SegmentScheduler] = None
        self.cancel_requested = False
        self.started = False
        self._events: asyncio.Queue[JobEvent] = asyncio.Queue()
        self._done = asyncio.Event()

    def __repr__(self) -> str:
        return f"JobHandle(job_id={self.job_id!r}, url={self.url!r}, outcome={self.outcome and self.outcome[0]!r})"

    @property
    def done(self) -> bool:
        return self.outcome is not None

    async def publish(self, event: JobEvent):
        """Appends an event to the stream. Called only by the job's reporter."""
        if self.done:
            return
        self.history.append(event)
        self._events.put_nowait(event)
        if event[0] in TERMINAL_EVENTS:
            self.outcome = event
            self._done.set()

    async def events(self) -> AsyncIterator[JobEvent]:
        """Yields events in order until the terminal event has been yielded."""
        while True:
            event = await self._events.get()
            yield event
            if event[0] in TERMINAL_EVENTS:
                return

    async def wait(self) -> JobEvent:
        """Waits for the job to end and returns its terminal event."""
        await self._done.wait()
        return self.outcome


class DownloadManager:
    """Validates job requests and runs each job through resolve, schedule and assemble."""

    def __init__(self, settings: Optional[Settings] = None,
                 fetcher_factory: Optional[Callable[[], HttpFetcher]] = None,
                 dep_manager: Optional[DependencyManager] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initializes the DownloadManager.

        Args:
            settings: Application settings; defaults are used when omitted.
            fetcher_factory: Returns a fresh async-context-managed fetcher per job.
            dep_manager: Locates FFmpeg for remuxing.
            clock: Timestamp source for log lines.
        """
        self.settings = settings or Settings()
        self.fetcher_factory = fetcher_factory or self._default_fetcher
        self.dep_manager = dep_manager or DependencyManager()
        self.assembler = Assembler(self.dep_manager, self.settings.ffmpeg_timeout)
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.jobs: Dict[str, JobHandle] = {}

    def _default_fetcher(self) -> HttpFetcher:
        return HttpFetcher(
            headers={'User-Agent': self.settings.user_agent},
            connect_timeout=self.settings.connect_timeout,
            read_timeout=self.settings.request_timeout,
        )

    @staticmethod
    def _validate_request(url: str, output_name: str, output_format: str):
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Invalid URL (expected http or https): {url}")
        name = output_name.strip()
        if not name or '/' in name or '\\' in name or name in ('.', '..'):
            raise ValueError("Output name must be a plain file name without path separators.")
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format '{output_format}'. Must be one of {list(OUTPUT_FORMATS)}.")

    @staticmethod
    async def _check_writable(directory: Path):
        if not await asyncio.to_thread(directory.is_dir):
            raise ValueError(f"Output directory does not exist: {directory}")
        test_file = directory / f".writetest_{os.getpid()}_{uuid.uuid4().hex[:8]}"
        try:
            await asyncio.to_thread(test_file.touch)
            await asyncio.to_thread(test_file.unlink)
        except OSError as e:
            raise ValueError(f"Cannot write to directory {directory}: {e}")

    async def submit_job(self, url: str, output_name: str, output_directory,
                         concurrency: Optional[int] = None, output_format: Optional[str] = None) -> JobHandle:
        """
        Validates a job request and starts it in the background.

        Args:
            url: The HLS entry playlist (master or media).
            output_name: Output file name; the container extension is applied.
            output_directory: Existing, writable directory for the output.
            concurrency: Parallel segment downloads, clamped to [1, 16].
            output_format: One of ts, mp4, mkv, webm.

        Returns:
            A JobHandle streaming the job's events.

        Raises:
            ValueError: If the request is invalid or the directory is not writable.
        """
        url = url.strip()
        output_format = (output_format or self.settings.output_format).lower().lstrip('.')
        self._validate_request(url, output_name, output_format)
        directory = Path(output_directory).expanduser()
        await self._check_writable(directory)
        concurrency = clamp_concurrency(concurrency if concurrency is not None else self.settings.max_concurrent_downloads)

        output_spec = OutputSpec(filename=output_name.strip(), directory=directory, format=output_format)
        handle = JobHandle(str(uuid.uuid4()), url, output_spec, concurrency)
        self.jobs[handle.job_id] = handle

        handle.task = asyncio.create_task(self._run_job(handle), name=f"job-{handle.job_id}")
        handle.task.add_done_callback(self._task_done_callback)
        self.logger.info(f"Submitted job {handle.job_id}: {url} -> {output_spec.final_path}")
        return handle

    def cancel(self, handle: JobHandle):
        """Requests cancellation; the job reports ``cancelled`` once cleanup is done."""
        if handle.done or handle.cancel_requested:
            return
        self.logger.info(f"Cancellation requested for job {handle.job_id}.")
        handle.cancel_requested = True
        if not handle.started:
            # Picked up as soon as the job task starts running.
            return
        if handle.state is not None:
            handle.state.cancel_event.set()
        if handle.scheduler is not None:
            handle.scheduler.cancel()
        elif handle.task is not None and not handle.task.done():
            # Resolving or assembling: abort the in-flight request or FFmpeg run.
            handle.task.cancel()

    async def cancel_all(self):
        """Cancels every running job and waits for them to finish."""
        running = [handle for handle in self.jobs.values() if not handle.done]
        for handle in running:
            self.cancel(handle)
        if running:
            await asyncio.gather(*(handle.wait() for handle in running))

    async def _run_job(self, handle: JobHandle):
        """Drives one job to exactly one terminal event."""
        spec = handle.output_spec
        reporter = ProgressReporter(handle.job_id, handle.publish, self.clock)
        handle.started = True
        foreign_cancel = False

        try:
            async with self.fetcher_factory() as fetcher:
                job = JobState(
                    job_id=handle.job_id,
                    output_spec=spec,
                    limiter=ConcurrencyLimiter(handle.concurrency),
                    key_cache=KeyCache(fetcher, on_fetch=reporter.key_fetch),
                )
                handle.state = job
                try:
                    outcome = await self._execute(handle, job, fetcher, reporter)
                finally:
                    await self._cleanup(job)
        except DownloadCancelledError:
            outcome = ('cancelled', None)
        except asyncio.CancelledError:
            foreign_cancel = not handle.cancel_requested
            outcome = ('cancelled', None)
        except HLSDownloadError as e:
            outcome = ('failed', str(e) or e.__class__.__name__)
        except Exception as e:
            self.logger.exception(f"Unexpected error during job {handle.job_id}")
            outcome = ('failed', f"Unexpected error: {e}")

        if outcome[0] == 'finished':
            await reporter.finished(outcome[1])
        elif outcome[0] == 'cancelled':
            await reporter.cancelled()
        else:
            await reporter.failed(outcome[1])

        if foreign_cancel:
            raise asyncio.CancelledError()

    async def _execute(self, handle: JobHandle, job: JobState, fetcher, reporter: ProgressReporter) -> JobEvent:
        """Resolve, schedule and assemble. Raises on any non-finished outcome."""
        spec = handle.output_spec
        if handle.cancel_requested:
            job.cancel_event.set()
            raise DownloadCancelledError("Download cancelled by user.")

        await reporter.job_started(handle.url, spec, job.limiter.max_permits)
        job.work_dir = Path(await asyncio.to_thread(
            tempfile.mkdtemp, prefix=WORK_DIR_PREFIX, dir=str(spec.directory)))

        manifest = await PlaylistResolver(fetcher, reporter.log).resolve(handle.url)
        job.load_manifest(manifest)
        await reporter.manifest_resolved(manifest)

        if job.is_cancelled:
            raise DownloadCancelledError("Download cancelled by user.")
        handle.scheduler = SegmentScheduler(job, SegmentWorker(fetcher, job.key_cache), reporter,
                                            self.settings.retry_delay)
        try:
            slot_paths = await handle.scheduler.run()
        finally:
            handle.scheduler = None

        if job.is_cancelled:
            raise DownloadCancelledError("Download cancelled by user.")
        await reporter.assembly_started(spec, len(slot_paths))
        final_path = await self.assembler.assemble(slot_paths, spec, job.work_dir, log=reporter.log)
        await reporter.assembly_finished(final_path)
        return ('finished', final_path)

    async def _cleanup(self, job: JobState):
        """Removes the job's scratch directory and drops per-job state."""
        if job.work_dir is not None:
            try:
                await asyncio.to_thread(shutil.rmtree, job.work_dir)
            except OSError as e:
                self.logger.warning(f"Failed to remove temporary directory {job.work_dir}: {e}")
        job.close()

    def _task_done_callback(self, task: asyncio.Task):
        """Logs exceptions from job tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")
