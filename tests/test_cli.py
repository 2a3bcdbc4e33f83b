"""Tests for the command-line shell and logging setup."""

import logging
from pathlib import Path

import pytest

from conftest import FakeFetcher
from hls_downloader import cli
from hls_downloader.cli import build_parser, render_progress, run_download
from hls_downloader.config import Settings
from hls_downloader.logging_config import setup_logging


def test_render_progress():
    assert render_progress(0, 4, width=4) == "[....] 0/4 (0.0%)"
    assert render_progress(2, 4, width=4) == "[##..] 2/4 (50.0%)"
    assert render_progress(0, 0, width=2) == "[..] 0/0 (0.0%)"


def test_parser_uses_settings_defaults(tmp_path):
    settings = Settings(max_concurrent_downloads=6, output_format="mkv", last_output_path=tmp_path)
    args = build_parser(settings).parse_args(["https://cdn.example.com/index.m3u8"])
    assert args.concurrency == 6
    assert args.format == "mkv"
    assert args.directory == tmp_path
    assert args.output_name == "output"


def test_parser_rejects_unknown_format(tmp_path):
    parser = build_parser(Settings(last_output_path=tmp_path))
    with pytest.raises(SystemExit):
        parser.parse_args(["https://cdn.example.com/index.m3u8", "-f", "avi"])


@pytest.mark.asyncio
async def test_run_download_reports_exit_code(tmp_path, clear_stream, monkeypatch, capsys):
    playlist_url, routes, payloads = clear_stream
    fetcher = FakeFetcher(routes)
    monkeypatch.setattr(cli.DownloadManager, "_default_fetcher", lambda self: fetcher)
    settings = Settings(retry_delay=0, last_output_path=tmp_path)
    args = build_parser(settings).parse_args([playlist_url, "-o", "clip", "-d", str(tmp_path), "-f", "ts", "-c", "2"])

    exit_code = await run_download(args, settings)

    assert exit_code == 0
    assert (tmp_path / "clip.ts").read_bytes() == b"".join(payloads)
    assert "Download complete" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_download_rejects_bad_url(tmp_path, capsys):
    settings = Settings(last_output_path=tmp_path)
    args = build_parser(settings).parse_args(["ftp://nowhere/index.m3u8", "-d", str(tmp_path), "-f", "ts"])
    assert await run_download(args, settings) == 2
    assert "Error" in capsys.readouterr().err


def test_setup_logging_rotates_latest_log(tmp_path):
    (tmp_path / "latest.log").write_text("previous run\n", encoding="utf-8")

    setup_logging("DEBUG", log_dir=tmp_path)
    logging.getLogger("hls_downloader.test").info("new run")
    for handler in logging.getLogger().handlers:
        handler.flush()

    archived = [p for p in tmp_path.glob("*.log") if p.name != "latest.log"]
    assert len(archived) == 1
    assert archived[0].read_text(encoding="utf-8") == "previous run\n"
    assert "new run" in (tmp_path / "latest.log").read_text(encoding="utf-8")
    assert logging.getLogger("aiohttp").level == logging.WARNING

    for handler in list(logging.getLogger().handlers):
        handler.close()
        logging.getLogger().removeHandler(handler)
