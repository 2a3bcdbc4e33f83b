"""
Command-line shell for the HLS downloader.

Submits one job, renders its progress and log lines, and maps the terminal
event to the process exit status. Ctrl+C cancels the job cleanly.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE, OUTPUT_FORMATS, MIN_CONCURRENCY, MAX_CONCURRENCY
from .dependencies import DependencyManager
from .downloads import DownloadManager
from .logging_config import setup_logging

EXIT_CODES = {'finished': 0, 'failed': 1, 'cancelled': 130}


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hls-downloader',
        description="Download an HLS stream and reassemble it into a single video file.",
    )
    parser.add_argument('url', help="Master or media playlist URL (.m3u8)")
    parser.add_argument('-o', '--output-name', default='output',
                        help="Output file name; the container extension is added (default: output)")
    parser.add_argument('-d', '--directory', type=Path, default=settings.last_output_path,
                        help=f"Output directory (default: {settings.last_output_path})")
    parser.add_argument('-c', '--concurrency', type=int, default=settings.max_concurrent_downloads,
                        help=f"Parallel segment downloads, {MIN_CONCURRENCY}-{MAX_CONCURRENCY} "
                             f"(default: {settings.max_concurrent_downloads})")
    parser.add_argument('-f', '--format', choices=OUTPUT_FORMATS, default=settings.output_format,
                        help=f"Output container (default: {settings.output_format})")
    parser.add_argument('--log-level', default=settings.log_level,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help="File log level")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def render_progress(ready: int, total: int, width: int = 30) -> str:
    fraction = ready / total if total else 0.0
    filled = int(width * fraction)
    return f"[{'#' * filled}{'.' * (width - filled)}] {ready}/{total} ({fraction * 100:.1f}%)"


async def render_events(handle):
    """Prints log lines and, on a terminal, a redrawn progress bar."""
    is_tty = sys.stdout.isatty()
    progress_shown = False
    async for event_type, value in handle.events():
        if event_type == 'progress':
            if is_tty:
                print(f"\r{render_progress(*value)}", end='', flush=True)
                progress_shown = True
            continue
        if progress_shown:
            print()
            progress_shown = False
        if event_type == 'log':
            print(value, flush=True)


async def run_download(args: argparse.Namespace, settings: Settings) -> int:
    """Submits the job and renders its event stream. Returns the exit status."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    dep_manager = DependencyManager()
    if args.format != 'ts':
        await dep_manager.initialize()
        if dep_manager.ffmpeg_path:
            logging.info(f"FFmpeg version: {await dep_manager.get_version()}")

    manager = DownloadManager(settings, dep_manager=dep_manager)
    try:
        handle = await manager.submit_job(args.url, args.output_name, args.directory,
                                          args.concurrency, args.format)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if sys.platform != 'win32':
        loop.add_signal_handler(signal.SIGINT, manager.cancel, handle)

    try:
        await render_events(handle)
    finally:
        if sys.platform != 'win32':
            loop.remove_signal_handler(signal.SIGINT)
    return EXIT_CODES[handle.outcome[0]]


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the ``hls-downloader`` console script."""
    config_manager = ConfigManager(CONFIG_FILE)
    settings = config_manager.load()
    args = build_parser(settings).parse_args(argv)

    setup_logging(args.log_level, console_log_level_str='WARNING')
    sys.excepthook = handle_exception

    try:
        exit_code = asyncio.run(run_download(args, settings))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        return EXIT_CODES['cancelled']

    if exit_code != 2:
        settings.last_output_path = Path(args.directory).expanduser()
        settings.max_concurrent_downloads = max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, args.concurrency))
        settings.output_format = args.format
        config_manager.save(settings)
    return exit_code
