"""
AES-128 segment decryption and the per-job key cache.

HLS encrypts whole segments with AES-128 in CBC mode and PKCS#7 padding.
When a key directive carries no IV, the IV is the segment's media sequence
number as a big-endian 16-byte integer.
"""

import base64
import binascii
import logging
from typing import Awaitable, Callable, Dict, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .constants import KEY_LEN
from .exceptions import CryptoError
from .jobs import EncryptionKey

BLOCK_SIZE = 16

logger = logging.getLogger(__name__)


def parse_iv(value: Optional[str]) -> Optional[bytes]:
    """
    Decodes an ``IV=0x...`` attribute.

    Returns:
        The 16 IV bytes, or None if the value is missing or malformed.
    """
    if not value:
        return None
    hex_digits = value.strip()
    if hex_digits[:2].lower() == '0x':
        hex_digits = hex_digits[2:]
    if len(hex_digits) != KEY_LEN * 2:
        logger.warning(f"Ignoring IV with invalid length: {value}")
        return None
    try:
        return bytes.fromhex(hex_digits)
    except ValueError:
        logger.warning(f"Ignoring IV that is not valid hex: {value}")
        return None


def derive_iv(key: EncryptionKey, sequence_number: int) -> bytes:
    """Returns the explicit IV, or the big-endian encoding of the sequence number."""
    if key.iv is not None:
        return key.iv
    return sequence_number.to_bytes(BLOCK_SIZE, 'big')


def decrypt_segment(ciphertext: bytes, key_bytes: bytes, iv: bytes) -> bytes:
    """
    Decrypts one AES-128-CBC segment and strips PKCS#7 padding.

    Raises:
        CryptoError: On a bad key/IV size, a ciphertext length that is not a
            multiple of the block size, or invalid padding.
    """
    if len(key_bytes) != KEY_LEN:
        raise CryptoError(f"Key must be {KEY_LEN} bytes, got {len(key_bytes)}")
    if len(iv) != BLOCK_SIZE:
        raise CryptoError(f"IV must be {BLOCK_SIZE} bytes, got {len(iv)}")
    if not ciphertext or len(ciphertext) % BLOCK_SIZE != 0:
        raise CryptoError(f"Ciphertext length {len(ciphertext)} is not a positive multiple of {BLOCK_SIZE}")

    decryptor = Cipher(algorithms.AES(key_bytes), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptoError(f"Invalid PKCS#7 padding: {e}")


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(',')
    try:
        if header.endswith(';base64'):
            return base64.b64decode(payload, validate=True)
        return payload.encode('latin-1')
    except (binascii.Error, UnicodeEncodeError) as e:
        raise CryptoError(f"Malformed inline key: {e}")


class KeyCache:
    """
    Fetches key files lazily and caches them by URI for one job.

    Concurrent first accesses to the same URI may both fetch; key content is
    idempotent so the later write simply replaces an identical value.
    """

    def __init__(self, fetcher, on_fetch: Optional[Callable[[str], Awaitable[None]]] = None):
        """
        Initializes the KeyCache.

        Args:
            fetcher: Object with an async ``get(url)`` returning an ``HttpResponse``.
            on_fetch: Optional async callback invoked with the URI of each network fetch.
        """
        self.fetcher = fetcher
        self.on_fetch = on_fetch
        self._keys: Dict[str, bytes] = {}
        self.fetch_count = 0

    def __contains__(self, uri: str) -> bool:
        return uri in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    async def get(self, key: EncryptionKey) -> bytes:
        """
        Returns the key bytes for ``key.uri``, fetching them on first use.

        Raises:
            NetworkError: If the key file cannot be downloaded.
            CryptoError: If the key file is not exactly 16 bytes.
        """
        cached = self._keys.get(key.uri)
        if cached is not None:
            return cached

        if key.uri.startswith('data:'):
            key_bytes = _decode_data_uri(key.uri)
        else:
            self.fetch_count += 1
            if self.on_fetch is not None:
                await self.on_fetch(key.uri)
            response = await self.fetcher.get(key.uri)
            key_bytes = response.body

        if len(key_bytes) != KEY_LEN:
            raise CryptoError(f"Key file length error: expected {KEY_LEN} bytes, got {len(key_bytes)}")
        self._keys[key.uri] = key_bytes
        return key_bytes

    def clear(self):
        self._keys.clear()
