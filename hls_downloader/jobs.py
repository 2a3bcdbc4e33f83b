"""
Defines the data classes shared by the download engine.

The playlist resolver produces a ``Manifest`` of ``SegmentDescriptor`` values,
and one ``JobState`` per run tracks the lifecycle of every segment.
"""

import asyncio
import enum
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from .constants import OUTPUT_FORMATS

if TYPE_CHECKING:
    from .crypto import KeyCache
    from .limiter import ConcurrencyLimiter

# ('progress', (ready, total)), ('log', text), ('finished', path),
# ('failed', reason) or ('cancelled', None)
JobEvent = Tuple[str, Any]

TERMINAL_EVENTS = frozenset({'finished', 'failed', 'cancelled'})


class SegmentState(enum.Enum):
    PENDING = 'Pending'
    DOWNLOADING = 'Downloading'
    DECRYPTING = 'Decrypting'
    READY = 'Ready'
    FAILED = 'Failed'


_ALLOWED_TRANSITIONS: Dict[SegmentState, frozenset] = {
    SegmentState.PENDING: frozenset({SegmentState.DOWNLOADING}),
    SegmentState.DOWNLOADING: frozenset({
        SegmentState.DECRYPTING, SegmentState.READY, SegmentState.PENDING, SegmentState.FAILED,
    }),
    SegmentState.DECRYPTING: frozenset({
        SegmentState.READY, SegmentState.PENDING, SegmentState.FAILED,
    }),
    SegmentState.READY: frozenset(),
    SegmentState.FAILED: frozenset(),
}

IN_FLIGHT_STATES = frozenset({SegmentState.DOWNLOADING, SegmentState.DECRYPTING})


@dataclass(frozen=True)
class VariantRef:
    """A variant stream listed in a master playlist."""
    bandwidth: int
    uri: str
    resolution: Optional[str] = None
    codecs: Optional[str] = None


@dataclass(frozen=True)
class EncryptionKey:
    """
    Key material reference taken from an ``#EXT-X-KEY`` directive.

    Attributes:
        method: The encryption method; only AES-128 reaches the engine.
        uri: Absolute URI of the 16-byte key file.
        iv: The explicit 16-byte IV, or None to derive it from the sequence number.
    """
    method: str
    uri: str
    iv: Optional[bytes] = None


@dataclass(frozen=True)
class SegmentDescriptor:
    """
    One media segment of a resolved playlist.

    Attributes:
        sequence_index: Dense 0-based position; defines the final output order.
        uri: Absolute segment URI.
        duration: Duration declared by ``#EXTINF`` in seconds.
        key: The active encryption key, or None for clear segments.
        media_sequence: HLS media sequence number, used for implicit IVs.
    """
    sequence_index: int
    uri: str
    duration: float = 0.0
    key: Optional[EncryptionKey] = None
    media_sequence: Optional[int] = None

    @property
    def iv_sequence_number(self) -> int:
        if self.media_sequence is None:
            return self.sequence_index
        return self.media_sequence


@dataclass
class Manifest:
    """The ordered segment list of a single media playlist."""
    playlist_url: str
    segments: List[SegmentDescriptor]
    variant: Optional[VariantRef] = None
    target_duration: Optional[float] = None
    is_endlist: bool = True

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)

    @property
    def is_encrypted(self) -> bool:
        return any(segment.key is not None for segment in self.segments)


@dataclass(frozen=True)
class OutputSpec:
    """Where and in which container the final file is written."""
    filename: str
    directory: Path
    format: str = 'mp4'

    def __post_init__(self):
        if self.format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format '{self.format}'. Must be one of {list(OUTPUT_FORMATS)}.")

    @property
    def needs_remux(self) -> bool:
        return self.format != 'ts'

    @property
    def final_path(self) -> Path:
        """The file stem of the requested name with the container's extension."""
        return self.directory / f"{Path(self.filename).stem}.{self.format}"


@dataclass
class SegmentRecord:
    """Mutable lifecycle data for one segment, owned by ``JobState``."""
    descriptor: SegmentDescriptor
    state: SegmentState = SegmentState.PENDING
    attempts: int = 0
    slot_path: Optional[Path] = None
    last_error: Optional[BaseException] = None


@dataclass
class JobState:
    """
    Per-run state of a download job.

    Owns every ``SegmentRecord``, the concurrency limiter, the key cache and
    the cancellation flag. A fresh instance is created for each job and
    ``close()``-d once the job has reached its terminal outcome.
    """
    job_id: str
    output_spec: OutputSpec
    limiter: 'ConcurrencyLimiter'
    key_cache: 'KeyCache'
    work_dir: Optional[Path] = None
    manifest: Optional[Manifest] = None
    records: List[SegmentRecord] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    failure: Optional[BaseException] = None
    _state_counts: Counter = field(default_factory=Counter, repr=False)

    def load_manifest(self, manifest: Manifest):
        """Creates a PENDING record for every segment of the manifest."""
        self.manifest = manifest
        self.records = [SegmentRecord(descriptor) for descriptor in manifest.segments]
        self._state_counts = Counter({SegmentState.PENDING: len(self.records)})

    def transition(self, index: int, new_state: SegmentState) -> SegmentState:
        """
        Moves a segment to a new state, enforcing the lifecycle.

        Returns:
            The previous state.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        record = self.records[index]
        old_state = record.state
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal state transition for segment {index}: {old_state.value} -> {new_state.value}")
        record.state = new_state
        self._state_counts[old_state] -= 1
        self._state_counts[new_state] += 1
        return old_state

    @property
    def total_count(self) -> int:
        return len(self.records)

    @property
    def ready_count(self) -> int:
        return self._state_counts[SegmentState.READY]

    @property
    def failed_count(self) -> int:
        return self._state_counts[SegmentState.FAILED]

    @property
    def in_flight_count(self) -> int:
        return sum(self._state_counts[state] for state in IN_FLIGHT_STATES)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def should_stop(self) -> bool:
        return self.is_cancelled or self.failure is not None

    @property
    def all_ready(self) -> bool:
        return self.total_count > 0 and self.ready_count == self.total_count

    def ordered_slot_paths(self) -> List[Path]:
        """Slot paths in ascending sequence-index order. Requires every segment READY."""
        if not self.all_ready:
            raise RuntimeError("Cannot collect segment slots before every segment is ready.")
        return [record.slot_path for record in self.records]

    def close(self):
        """Drops per-job resources so nothing survives into the next run."""
        self.key_cache.clear()
        self.records = []
        self._state_counts.clear()
