"""Shared fixtures: an in-memory HTTP fetcher and playlist builders."""

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from hls_downloader.http_client import HttpFetcher, HttpResponse

BASE_URL = "https://cdn.example.com/video"
KEY_BYTES = bytes(range(16))


class FakeFetcher(HttpFetcher):
    """
    Serves canned responses from a URL map.

    A route maps to bytes, an ``HttpResponse``, an exception, or a list of
    those consumed in order (the last entry repeats). Unknown URLs get a 404.
    URLs listed in ``gates`` block until their event is set.
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None,
                 delay: Union[float, Callable[[str], float]] = 0.0):
        super().__init__()
        self.routes = dict(routes or {})
        self.delay = delay
        self.gates: Dict[str, asyncio.Event] = {}
        self.requests: List[str] = []
        self.active = 0
        self.peak_active = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    def count(self, url: str) -> int:
        return self.requests.count(url)

    def _next_outcome(self, url: str):
        outcome = self.routes.get(url)
        if isinstance(outcome, list):
            if len(outcome) > 1:
                return outcome.pop(0)
            return outcome[0] if outcome else None
        return outcome

    async def fetch(self, url: str) -> HttpResponse:
        self.requests.append(url)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            gate = self.gates.get(url)
            if gate is not None:
                await gate.wait()
            delay = self.delay(url) if callable(self.delay) else self.delay
            await asyncio.sleep(delay)
            outcome = self._next_outcome(url)
        finally:
            self.active -= 1

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, HttpResponse):
            return outcome
        if outcome is None:
            return HttpResponse(404, b"Not Found")
        if isinstance(outcome, str):
            outcome = outcome.encode("utf-8")
        return HttpResponse(200, outcome, {"Content-Length": str(len(outcome))})


def encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """AES-128-CBC with PKCS#7 padding, as an HLS packager would produce."""
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def media_playlist(uris: Sequence[str], key_line: Optional[str] = None, media_sequence: Optional[int] = None,
                   endlist: bool = True, duration: float = 4.0) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{int(duration)}"]
    if media_sequence is not None:
        lines.append(f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}")
    if key_line:
        lines.append(key_line)
    for uri in uris:
        lines.append(f"#EXTINF:{duration},")
        lines.append(uri)
    if endlist:
        lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def master_playlist(variants: Sequence[tuple]) -> str:
    """``variants`` holds (bandwidth, resolution, uri) tuples."""
    lines = ["#EXTM3U"]
    for bandwidth, resolution, uri in variants:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},RESOLUTION={resolution}")
        lines.append(uri)
    return "\n".join(lines) + "\n"


def segment_payload(index: int, size: int = 188 * 4) -> bytes:
    """Distinct, recognisable bytes per segment."""
    return bytes([0x47]) + bytes([index % 256]) * (size - 1)


class EventRecorder:
    """Collects events passed to a reporter's ``emit`` callback."""

    def __init__(self):
        self.events: List[tuple] = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type: str) -> List[object]:
        return [value for kind, value in self.events if kind == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def clear_stream():
    """A five-segment clear media playlist with its routes."""
    playlist_url = f"{BASE_URL}/index.m3u8"
    uris = [f"seg{i}.ts" for i in range(5)]
    routes = {playlist_url: media_playlist(uris)}
    payloads = []
    for i, uri in enumerate(uris):
        payload = segment_payload(i)
        payloads.append(payload)
        routes[f"{BASE_URL}/{uri}"] = payload
    return playlist_url, routes, payloads
