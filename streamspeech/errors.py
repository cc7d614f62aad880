from __future__ import annotations

from typing import Optional


class StreamSpeechError(Exception):
    """Base class for every error raised by the streaming pipeline."""


class SegmentationError(StreamSpeechError, ValueError):
    """Raised for invalid chunking arguments; sentence splitting itself never fails."""


class ConfigurationError(StreamSpeechError, ValueError):
    """Raised eagerly when buffer or stream configuration is out of range."""


class EncodingError(StreamSpeechError):
    """Text could not be converted to a unit sequence for the selected voice."""


class SynthesisEngineError(StreamSpeechError):
    """The synthesis engine failed to load a model or render a unit sequence."""


class SynthesisError(StreamSpeechError):
    """Stream-level failure wrapping the first underlying error."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        stage: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.stage = stage
        self.session_id = session_id
