"""
Resolves an HLS entry URL into an ordered segment manifest.

Master playlists are followed to their highest-bandwidth variant; media
playlists are turned into ``SegmentDescriptor`` values with absolute URIs and
the encryption key that applies to each segment.
"""

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import m3u8

from .constants import MAX_PLAYLIST_DEPTH, SUPPORTED_KEY_METHOD
from .crypto import parse_iv
from .exceptions import EmptyPlaylistError, NoVariantsError, ResolveError
from .jobs import EncryptionKey, Manifest, SegmentDescriptor, VariantRef

_MASTER_TAG_RE = re.compile(r'^#EXT-X-(?:I-FRAME-)?STREAM-INF', re.MULTILINE)


def is_master_playlist(text: str) -> bool:
    """True when the playlist text lists variant streams."""
    return bool(_MASTER_TAG_RE.search(text))


def select_variant(variants: List[VariantRef]) -> VariantRef:
    """
    Picks the variant with the highest bandwidth; ties keep the first listed.

    Raises:
        NoVariantsError: If the list is empty.
    """
    if not variants:
        raise NoVariantsError("Master playlist lists no variant streams.")
    best = variants[0]
    for variant in variants[1:]:
        if variant.bandwidth > best.bandwidth:
            best = variant
    return best


def parse_variants(text: str, base_url: str) -> List[VariantRef]:
    """Extracts the variant streams of a master playlist."""
    playlist = _load(text, base_url)
    variants = []
    for entry in playlist.playlists:
        info = entry.stream_info
        resolution = None
        if info.resolution:
            resolution = f"{info.resolution[0]}x{info.resolution[1]}"
        variants.append(VariantRef(
            bandwidth=info.bandwidth or 0,
            uri=urljoin(base_url, entry.uri),
            resolution=resolution,
            codecs=info.codecs,
        ))
    return variants


def _load(text: str, base_url: str) -> m3u8.M3U8:
    try:
        return m3u8.loads(text, uri=base_url)
    except (m3u8.ParseError, ValueError, TypeError) as e:
        raise ResolveError(f"Malformed playlist at {base_url}: {e}")


class PlaylistResolver:
    """Fetches and parses playlists until a media playlist is reached."""

    def __init__(self, fetcher, log: Optional[Callable[[str], Awaitable[None]]] = None):
        """
        Initializes the PlaylistResolver.

        Args:
            fetcher: Object with an async ``get(url)`` returning an ``HttpResponse``.
            log: Optional async callback receiving user-facing log lines.
        """
        self.fetcher = fetcher
        self.log = log
        self.logger = logging.getLogger(__name__)

    async def _log(self, message: str):
        if self.log is not None:
            await self.log(message)
        else:
            self.logger.info(message)

    async def resolve(self, entry_url: str) -> Manifest:
        """
        Resolves ``entry_url`` to the manifest of exactly one media playlist.

        Raises:
            NetworkError: If a playlist cannot be fetched.
            ResolveError: If a playlist is malformed, unsupported or empty.
        """
        url = entry_url
        variant: Optional[VariantRef] = None
        for _ in range(MAX_PLAYLIST_DEPTH):
            response = await self.fetcher.get(url)
            text = response.text().lstrip('\ufeff')
            if not text.lstrip().startswith('#EXTM3U'):
                raise ResolveError(f"Not an HLS playlist (missing #EXTM3U): {url}")

            if not is_master_playlist(text):
                return await self.parse_media(text, url, variant)

            variants = parse_variants(text, url)
            variant = select_variant(variants)
            label = f"{variant.bandwidth} bps"
            if variant.resolution:
                label += f" ({variant.resolution})"
            await self._log(f"-> Master playlist lists {len(variants)} variant(s); selected {label}: {variant.uri}")
            url = variant.uri
        raise ResolveError(f"Playlist nesting exceeds {MAX_PLAYLIST_DEPTH} levels: {entry_url}")

    async def parse_media(self, text: str, base_url: str, variant: Optional[VariantRef] = None) -> Manifest:
        """
        Turns media playlist text into a manifest.

        Raises:
            ResolveError: On unsupported encryption or byte-range segments.
            EmptyPlaylistError: If no segments are listed.
        """
        playlist = _load(text, base_url)
        first_sequence = playlist.media_sequence or 0
        if first_sequence:
            await self._log(f"-> Detected #EXT-X-MEDIA-SEQUENCE: {first_sequence}")

        segments: List[SegmentDescriptor] = []
        converted: Dict[Tuple, Optional[EncryptionKey]] = {}
        for index, segment in enumerate(playlist.segments):
            if segment.byterange:
                raise ResolveError("Byte-range segments (#EXT-X-BYTERANGE) are not supported.")
            if segment.init_section is not None:
                raise ResolveError("Fragmented MP4 segments (#EXT-X-MAP) are not supported.")
            segments.append(SegmentDescriptor(
                sequence_index=index,
                uri=urljoin(base_url, segment.uri),
                duration=float(segment.duration or 0.0),
                key=await self._key_for(segment.key, base_url, converted),
                media_sequence=first_sequence + index,
            ))

        if not segments:
            raise EmptyPlaylistError(f"No media segments found in {base_url}")
        if not playlist.is_endlist:
            await self._log("⚠️ Playlist has no #EXT-X-ENDLIST; downloading the segments listed right now.")

        return Manifest(
            playlist_url=base_url,
            segments=segments,
            variant=variant,
            target_duration=playlist.target_duration,
            is_endlist=bool(playlist.is_endlist),
        )

    async def _key_for(self, key, base_url: str, converted: Dict[Tuple, Optional[EncryptionKey]]) -> Optional[EncryptionKey]:
        if key is None:
            return None
        identity = (key.method, key.uri, key.iv)
        if identity not in converted:
            converted[identity] = await self._convert_key(key, base_url)
        return converted[identity]

    async def _convert_key(self, key, base_url: str) -> Optional[EncryptionKey]:
        if key is None or not key.method or key.method.upper() == 'NONE':
            return None
        method = key.method.upper()
        if method != SUPPORTED_KEY_METHOD:
            raise ResolveError(f"Only {SUPPORTED_KEY_METHOD} encryption is supported, detected {key.method}")
        if not key.uri:
            await self._log("⚠️ #EXT-X-KEY has no URI attribute; treating segment as unencrypted.")
            return None
        return EncryptionKey(method=method, uri=urljoin(base_url, key.uri), iv=parse_iv(key.iv))
