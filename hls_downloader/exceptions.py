"""
Defines custom exceptions used throughout the application.

Every failure the engine can report derives from ``HLSDownloadError`` so the
job runner can turn it into a single human-readable ``failed`` event.
"""

from typing import Optional


class HLSDownloadError(Exception):
    """Base class for all download engine errors."""
    pass


class NetworkError(HLSDownloadError):
    """Transport failure or non-success HTTP status."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ResolveError(HLSDownloadError):
    """The playlist is malformed, unsupported or empty."""
    pass


class NoVariantsError(ResolveError):
    """A master playlist lists no variant streams."""
    pass


class EmptyPlaylistError(ResolveError):
    """A media playlist yields zero segments."""
    pass


class IntegrityError(HLSDownloadError):
    """Received byte count does not match the declared Content-Length."""
    pass


class CryptoError(HLSDownloadError):
    """Ciphertext, padding or key material is invalid."""
    pass


class AssembleError(HLSDownloadError):
    """The final output file could not be produced."""
    pass


class MuxError(AssembleError):
    """FFmpeg could not remux the stream into the requested container."""
    pass


class DownloadCancelledError(Exception):
    """Custom exception for cancelled downloads."""
    pass
