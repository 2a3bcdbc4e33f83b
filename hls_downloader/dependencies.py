"""Locates the FFmpeg executable used for remuxing."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS


class DependencyManager:
    """Manages the discovery of FFmpeg."""

    def __init__(self, ffmpeg_path: Optional[Path] = None):
        """
        Initializes the DependencyManager.

        Args:
            ffmpeg_path: An explicit FFmpeg executable, skipping discovery.
        """
        self.logger = logging.getLogger(__name__)
        self.ffmpeg_path: Optional[Path] = ffmpeg_path

    async def initialize(self):
        """Asynchronously finds FFmpeg to avoid blocking the event loop."""
        if self.ffmpeg_path is None:
            await asyncio.to_thread(self.find_ffmpeg)
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.is_file():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path] = None) -> str:
        """Asynchronously returns the first line of ``ffmpeg -version``."""
        executable_path = executable_path or self.ffmpeg_path
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path), '-version']

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
