"""Dispatches segment workers under the concurrency limiter and drives retries."""
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Set

from .constants import CRYPTO_RETRY_ATTEMPTS, SEGMENT_RETRY_ATTEMPTS, SEGMENT_FILENAME_TEMPLATE
from .exceptions import CryptoError, DownloadCancelledError, HLSDownloadError, IntegrityError, NetworkError
from .jobs import JobState, SegmentState
from .reporter import ProgressReporter
from .worker import SegmentWorker


def attempt_budget(error: BaseException) -> int:
    """Total attempts a segment gets when it keeps failing with ``error``."""
    if isinstance(error, CryptoError):
        return CRYPTO_RETRY_ATTEMPTS
    if isinstance(error, (NetworkError, IntegrityError)):
        return SEGMENT_RETRY_ATTEMPTS
    return 1


class SegmentScheduler:
    """
    Owns dispatch for one ``JobState``.

    Pending segment indices wait in a queue; each dispatch takes one permit
    from the job's limiter and the worker task hands it back on every exit
    path. ``None`` in the queue wakes the dispatcher when the job is complete,
    failed or cancelled.
    """

    def __init__(self, job: JobState, worker: SegmentWorker, reporter: ProgressReporter,
                 retry_delay: float = 0.0):
        """
        Initializes the SegmentScheduler.

        Args:
            job: The job whose records have been loaded from a manifest.
            worker: The worker used for every segment.
            reporter: Receives state transitions, retries and failures.
            retry_delay: Base delay in seconds before a failed segment is re-queued.
        """
        self.job = job
        self.worker = worker
        self.worker.on_state = self._transition
        self.reporter = reporter
        self.retry_delay = retry_delay
        self.logger = logging.getLogger(__name__)
        self._pending: asyncio.Queue[Optional[int]] = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight_tasks(self) -> int:
        return len(self._tasks)

    async def _transition(self, index: int, new_state: SegmentState):
        old_state = self.job.transition(index, new_state)
        await self.reporter.segment_state_changed(index, old_state, new_state)

    def cancel(self):
        """Sets the cancellation flag, wakes the dispatcher and aborts in-flight workers."""
        self.job.cancel_event.set()
        self._pending.put_nowait(None)
        for task in list(self._tasks):
            task.cancel()

    async def run(self) -> List[Path]:
        """
        Runs every segment to READY.

        Returns:
            Slot paths in ascending sequence-index order.

        Raises:
            DownloadCancelledError: If the job was cancelled.
            HLSDownloadError: The first terminal segment failure.
        """
        if not self.job.records:
            raise RuntimeError("JobState has no segments; load a manifest first.")
        for record in self.job.records:
            self._pending.put_nowait(record.descriptor.sequence_index)

        try:
            while not self.job.all_ready:
                index = await self._pending.get()
                if index is None or self.job.should_stop:
                    break
                await self.job.limiter.acquire()
                if self.job.should_stop:
                    self.job.limiter.release()
                    break
                await self._dispatch(index)
        except asyncio.CancelledError:
            await self._abort_workers()
            raise

        if self.job.is_cancelled:
            await self._abort_workers()
            raise DownloadCancelledError("Download cancelled by user.")
        if self.job.failure is not None:
            # In-flight workers finish; their results are discarded.
            await self._drain_workers()
            raise self.job.failure
        return self.job.ordered_slot_paths()

    async def _dispatch(self, index: int):
        try:
            await self._transition(index, SegmentState.DOWNLOADING)
        except BaseException:
            self.job.limiter.release()
            raise
        task = asyncio.create_task(self._run_segment(index), name=f"segment-{index}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done_callback(self._tasks))

    async def _run_segment(self, index: int):
        """Worker task body; always releases its permit."""
        record = self.job.records[index]
        slot_path = self.job.work_dir / SEGMENT_FILENAME_TEMPLATE.format(index=index)
        requeue = False
        try:
            record.attempts += 1
            try:
                await self.worker.run(record.descriptor, slot_path)
            except HLSDownloadError as e:
                requeue = await self._handle_failure(index, e)
            except Exception as e:
                self.logger.exception(f"Unexpected error while processing segment {index}")
                await self._fail(index, e)
            else:
                if self.job.should_stop:
                    return
                record.slot_path = slot_path
                await self._transition(index, SegmentState.READY)
                if self.job.all_ready:
                    self._pending.put_nowait(None)
        finally:
            self.job.limiter.release()

        if requeue:
            delay = self.retry_delay * (2 ** (record.attempts - 1))
            if delay > 0:
                await asyncio.sleep(delay)
            if not self.job.should_stop:
                self._pending.put_nowait(index)

    async def _handle_failure(self, index: int, error: HLSDownloadError) -> bool:
        """Moves a failed segment back to PENDING or to FAILED. Returns True to re-queue."""
        record = self.job.records[index]
        record.last_error = error
        if self.job.should_stop:
            return False
        budget = attempt_budget(error)
        if record.attempts < budget:
            await self._transition(index, SegmentState.PENDING)
            await self.reporter.segment_retry(index, record.attempts, budget, error)
            return True
        await self._fail(index, error)
        return False

    async def _fail(self, index: int, error: BaseException):
        record = self.job.records[index]
        record.last_error = error
        await self._transition(index, SegmentState.FAILED)
        await self.reporter.segment_failed(index, record.attempts, error)
        if self.job.failure is None:
            self.job.failure = error
        self._pending.put_nowait(None)

    async def _drain_workers(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _abort_workers(self):
        for task in list(self._tasks):
            task.cancel()
        await self._drain_workers()

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback
