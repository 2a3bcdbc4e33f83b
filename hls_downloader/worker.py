"""Per-segment unit of work: download, verify, decrypt and persist."""
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles

from .crypto import KeyCache, decrypt_segment, derive_iv
from .exceptions import IntegrityError
from .http_client import HttpResponse
from .jobs import SegmentDescriptor, SegmentState


class SegmentWorker:
    """
    Processes one segment at a time.

    A worker never retries by itself; any ``HLSDownloadError`` propagates to
    the scheduler, which owns the retry budget.
    """

    def __init__(self, fetcher, key_cache: KeyCache,
                 on_state: Optional[Callable[[int, SegmentState], Awaitable[None]]] = None):
        """
        Initializes the SegmentWorker.

        Args:
            fetcher: Object with an async ``get(url)`` returning an ``HttpResponse``.
            key_cache: The job's key cache.
            on_state: Async callback told when a segment enters DECRYPTING.
        """
        self.fetcher = fetcher
        self.key_cache = key_cache
        self.on_state = on_state
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def verify(descriptor: SegmentDescriptor, response: HttpResponse):
        """
        Checks the received byte count against a declared Content-Length.

        Raises:
            IntegrityError: On a mismatch.
        """
        expected = response.content_length
        # Decoded bodies no longer match the length on the wire.
        if expected is None or response.is_content_encoded:
            return
        if len(response.body) != expected:
            raise IntegrityError(
                f"Segment {descriptor.sequence_index} is truncated: expected {expected} bytes, got {len(response.body)}"
            )

    async def fetch(self, descriptor: SegmentDescriptor) -> bytes:
        """
        Downloads and, if keyed, decrypts one segment.

        Returns:
            The plaintext segment bytes.

        Raises:
            NetworkError, IntegrityError, CryptoError: On the matching failure.
        """
        response = await self.fetcher.get(descriptor.uri)
        self.verify(descriptor, response)
        if descriptor.key is None:
            return response.body

        if self.on_state is not None:
            await self.on_state(descriptor.sequence_index, SegmentState.DECRYPTING)
        key_bytes = await self.key_cache.get(descriptor.key)
        iv = derive_iv(descriptor.key, descriptor.iv_sequence_number)
        return await asyncio.to_thread(decrypt_segment, response.body, key_bytes, iv)

    async def run(self, descriptor: SegmentDescriptor, slot_path: Path) -> Path:
        """Fetches a segment and writes its plaintext to ``slot_path``."""
        data = await self.fetch(descriptor)
        async with aiofiles.open(slot_path, 'wb') as f_out:
            await f_out.write(data)
        self.logger.debug(f"Segment {descriptor.sequence_index}: {len(data)} bytes -> {slot_path.name}")
        return slot_path
