"""
Error taxonomy for the streaming service.

Every error carries the HTTP status it maps to; the app renders them as
``{"error": message}``.
"""

from __future__ import annotations

from enum import Enum


class StreamError(Exception):
    """Base exception for all service errors."""

    status_code = 500


class InvalidDescriptorError(StreamError):
    """Raised when a magnet descriptor has no well-formed 40-hex info hash."""

    status_code = 400


class StartFailure(str, Enum):
    invalid_descriptor = "invalid_descriptor"
    timeout = "timeout"
    transport_failure = "transport_failure"


class EngineStartError(StreamError):
    """Raised when the torrent engine cannot produce metadata for a descriptor."""

    def __init__(self, reason: StartFailure, message: str):
        super().__init__(message)
        self.reason = reason


class NotFoundError(StreamError):
    """Raised for an unknown session id."""

    status_code = 404


class TorrentFileNotFoundError(NotFoundError):
    """Raised when a file index is outside the session's file list."""


class EngineStoppedError(NotFoundError):
    """Raised when a torrent handle is used after it was stopped."""


class DeliveryError(StreamError):
    """Raised when copying or transcoding fails before response headers are sent."""


class RangeNotSatisfiableError(StreamError):
    """Raised for a byte range that cannot be served from a file of known size."""

    status_code = 416

    def __init__(self, message: str, size: int):
        super().__init__(message)
        self.size = size
