"""
Main entry point for the HLS downloader.

Loads the configuration, sets up logging, and runs one download from the
command line. See ``hls_downloader.cli`` for the options.
"""

import sys

from hls_downloader.cli import main

if __name__ == "__main__":
    sys.exit(main())
