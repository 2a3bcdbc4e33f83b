"""
Concatenates ready segments in order and produces the final container.

Transport-stream output is plain concatenation. Any other container is a
stream-copy remux through FFmpeg; codecs are never re-encoded, so a stream the
target container cannot hold fails with ``MuxError`` instead of falling back.
"""

import asyncio
import logging
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

import aiofiles

from .constants import MERGED_FILENAME, SUBPROCESS_CREATION_FLAGS
from .dependencies import DependencyManager
from .exceptions import AssembleError, MuxError
from .jobs import OutputSpec

COPY_BUFFER_SIZE = 8192 * 32

# ffmpeg muxer name per container
MUXERS = {
    'mp4': 'mp4',
    'mkv': 'matroska',
    'webm': 'webm',
}


def parse_ffmpeg_error(stderr: str) -> str:
    """Returns a concise error message from FFmpeg's stderr."""
    lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
    if not lines:
        return "FFmpeg returned an error with no output."
    for line in lines:
        lowered = line.lower()
        if 'could not find tag for codec' in lowered or 'not supported' in lowered or 'only vp8 or vp9' in lowered:
            return line[:200] + "..." if len(line) > 200 else line
    return lines[-1][:200]


def build_remux_command(ffmpeg_path: Path, source: Path, destination: Path, output_format: str) -> List[str]:
    """Builds a stream-copy FFmpeg command for the given container."""
    command = [
        str(ffmpeg_path), '-hide_banner', '-loglevel', 'error', '-nostdin', '-y',
        '-i', str(source),
        '-map', '0:v?', '-map', '0:a?',
        '-c', 'copy',
    ]
    if output_format == 'mp4':
        command.extend(['-movflags', '+faststart'])
    command.extend(['-f', MUXERS[output_format], str(destination)])
    return command


class Assembler:
    """Writes the final output file for a job."""

    def __init__(self, dep_manager: Optional[DependencyManager] = None, ffmpeg_timeout: float = 600):
        """
        Initializes the Assembler.

        Args:
            dep_manager: Locates FFmpeg for remuxing.
            ffmpeg_timeout: Seconds before a remux is aborted.
        """
        self.dep_manager = dep_manager or DependencyManager()
        self.ffmpeg_timeout = ffmpeg_timeout
        self.logger = logging.getLogger(__name__)

    async def concatenate(self, slot_paths: Sequence[Path], destination: Path):
        """Appends every slot file to ``destination`` in the given order."""
        async with aiofiles.open(destination, 'wb') as f_out:
            for slot_path in slot_paths:
                async with aiofiles.open(slot_path, 'rb') as f_in:
                    while chunk := await f_in.read(COPY_BUFFER_SIZE):
                        await f_out.write(chunk)

    async def assemble(self, slot_paths: Sequence[Path], output_spec: OutputSpec, work_dir: Path,
                       log: Optional[Callable[[str], Awaitable[None]]] = None) -> Path:
        """
        Produces ``output_spec.final_path`` from segment slots.

        Args:
            slot_paths: Segment files in ascending sequence-index order.
            output_spec: Target name, directory and container.
            work_dir: Job scratch directory for intermediate files.
            log: Optional async callback for user-facing log lines.

        Returns:
            The final file path.

        Raises:
            AssembleError: If a slot is missing or the output cannot be written.
            MuxError: If FFmpeg is unavailable or rejects the streams.
        """
        if not slot_paths:
            raise AssembleError("No segments to assemble.")
        missing = [path for path in slot_paths if path is None or not path.is_file()]
        if missing:
            raise AssembleError(f"{len(missing)} segment slot(s) are missing.")

        final_path = output_spec.final_path
        merged_path = work_dir / MERGED_FILENAME
        try:
            await self.concatenate(slot_paths, merged_path)
        except OSError as e:
            raise AssembleError(f"Failed to concatenate segments: {e}")

        if await asyncio.to_thread(final_path.exists) and log is not None:
            await log(f"⚠️ Overwriting existing file: {final_path}")

        if not output_spec.needs_remux:
            return await self._move(merged_path, final_path)

        remuxed_path = work_dir / f"remux_output.{output_spec.format}"
        try:
            await self.remux(merged_path, remuxed_path, output_spec.format)
        finally:
            await asyncio.to_thread(merged_path.unlink, missing_ok=True)
        return await self._move(remuxed_path, final_path)

    async def _move(self, source: Path, destination: Path) -> Path:
        try:
            await asyncio.to_thread(shutil.move, str(source), str(destination))
        except OSError as e:
            raise AssembleError(f"Failed to write {destination}: {e}")
        return destination

    async def remux(self, source: Path, destination: Path, output_format: str):
        """
        Stream-copies ``source`` into ``destination`` using FFmpeg.

        Raises:
            MuxError: If FFmpeg is missing, times out or exits non-zero.
        """
        ffmpeg_path = self.dep_manager.ffmpeg_path
        if ffmpeg_path is None:
            ffmpeg_path = await asyncio.to_thread(self.dep_manager.find_ffmpeg)
        if ffmpeg_path is None:
            raise MuxError(f"FFmpeg is required to produce {output_format} output but was not found. "
                           "Install FFmpeg or choose the ts format.")

        command = build_remux_command(ffmpeg_path, source, destination, output_format)
        self.logger.debug(f"Running: {' '.join(command)}")

        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            _, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.ffmpeg_timeout)
        except FileNotFoundError:
            self.logger.error(f"FFmpeg executable not found at: {ffmpeg_path}")
            raise MuxError("FFmpeg executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            raise MuxError(f"FFmpeg remux timed out after {self.ffmpeg_timeout:.0f}s.")
        except OSError as e:
            raise MuxError(f"OS error running FFmpeg: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise

        stderr = stderr_bytes.decode('utf-8', 'replace')
        if process.returncode != 0:
            self.logger.error(f"FFmpeg remux to {output_format} failed. Stderr: {stderr.strip()}")
            raise MuxError(f"Cannot remux into {output_format}: {parse_ffmpeg_error(stderr)}")
