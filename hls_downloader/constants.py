"""
Defines application-wide constants, paths, and download limits.

This module centralizes configuration for paths, HTTP behaviour, retry budgets
and subprocess flags, adapting to whether the application is running from
source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

from ._version import __version__

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of the package).
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.hls-downloader'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- HTTP ---
REQUEST_HEADERS = {
    'User-Agent': f'Mozilla/5.0 (compatible; hls-downloader/{__version__})'
}
CONNECT_TIMEOUT = 10
READ_TIMEOUT = 60

# --- Download Limits ---
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 16
DEFAULT_CONCURRENCY = 4

# Attempts per segment; the last failure is terminal.
SEGMENT_RETRY_ATTEMPTS = 3
# Crypto failures point at wrong key material, so they get a single retry.
CRYPTO_RETRY_ATTEMPTS = 2

MAX_PLAYLIST_DEPTH = 5

# --- Encryption ---
KEY_LEN = 16
SUPPORTED_KEY_METHOD = 'AES-128'

# --- Output ---
OUTPUT_FORMATS = ('ts', 'mp4', 'mkv', 'webm')
DEFAULT_OUTPUT_FORMAT = 'mp4'
SEGMENT_FILENAME_TEMPLATE = 'segment_{index:08d}.ts'
MERGED_FILENAME = 'final_merge.ts.tmp'
WORK_DIR_PREFIX = '.hls-job-'
