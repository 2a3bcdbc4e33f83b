"""HLS downloader: resolve, fetch, decrypt and reassemble HLS streams."""

from ._version import __version__
from .downloads import DownloadManager, JobHandle

__all__ = ['__version__', 'DownloadManager', 'JobHandle']
