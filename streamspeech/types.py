"""
Typed records shared by the segmenter, the buffer manager and the orchestrator.

Everything here is a Pydantic v2 model. Records that must not change after
creation (TextChunk, ChunkMetrics, StreamMetrics) are frozen; AudioChunk and
StreamingSession are mutable because the buffer manager and the orchestrator
update them after creation (`is_last`, the crossfaded payload, session state).
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Iterable, List, Literal, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

WAV_MEDIA_TYPE = "audio/x-wav"


class TextChunk(BaseModel):
    """One synthesis unit of source text plus adjacent-sentence prosody hints."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    text: str = Field(description="Sentences synthesized for this chunk, space-joined.")
    index: int = Field(ge=0, description="Zero-based position in source order.")
    is_first: bool
    is_last: bool
    previous_context: Optional[str] = Field(
        default=None,
        description="Sentences immediately before the chunk; passed through, never synthesized.",
    )
    lookahead_context: Optional[str] = Field(
        default=None,
        description="Sentences immediately after the chunk; passed through, never synthesized.",
    )


class ChunkMetrics(BaseModel):
    """Latency measurements for one chunk, in milliseconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    encode_time: float = Field(ge=0)
    synthesis_time: float = Field(ge=0)
    total_time: float = Field(ge=0)
    time_to_first_byte: float = Field(
        ge=0, description="Wall time from stream start until this chunk was ready."
    )


class AudioChunk(BaseModel):
    """
    Synthesized audio for one TextChunk.

    `samples` and `encoded` are provisional while `payload_final` is False: the
    buffer manager swaps in a crossfaded copy once the following chunk is
    committed. The swap replaces both objects; a delivered sample array is
    read-only and never modified in place.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    samples: np.ndarray = Field(repr=False)
    encoded: bytes = Field(repr=False)
    media_type: str = WAV_MEDIA_TYPE
    index: int = Field(ge=0)
    start_time: float = Field(ge=0, description="Offset in seconds, untrimmed placement.")
    duration: float = Field(ge=0, description="Length in seconds.")
    is_first: bool
    is_last: bool = False
    payload_final: bool = False
    text: str
    metrics: ChunkMetrics

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])


class StreamMetrics(BaseModel):
    """Aggregate metrics for a finished stream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    time_to_first_audio: float = Field(description="TTFA in milliseconds.")
    total_time: float = Field(description="Wall time of the whole stream in milliseconds.")
    average_chunk_latency: float = Field(description="Mean chunk total_time in milliseconds.")
    total_chunks: int = Field(ge=0)
    total_audio_duration: float = Field(description="Seconds of audio produced.")
    real_time_factor: float = Field(description="Audio seconds per wall-clock second.")
    chunk_metrics: List[ChunkMetrics] = Field(default_factory=list)

    @classmethod
    def from_chunks(
        cls,
        chunk_metrics: Iterable[ChunkMetrics],
        *,
        total_time: float,
        total_audio_duration: float,
    ) -> "StreamMetrics":
        collected = list(chunk_metrics)
        ttfa = collected[0].time_to_first_byte if collected else total_time
        average = (
            sum(m.total_time for m in collected) / len(collected) if collected else 0.0
        )
        seconds = total_time / 1000
        return cls(
            time_to_first_audio=ttfa,
            total_time=total_time,
            average_chunk_latency=average,
            total_chunks=len(collected),
            total_audio_duration=total_audio_duration,
            real_time_factor=total_audio_duration / seconds if seconds > 0 else 0.0,
            chunk_metrics=collected,
        )


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ERROR, SessionState.CANCELLED)


class StreamingSession(BaseModel):
    """Observable handle for one in-flight stream."""

    model_config = ConfigDict(extra="forbid")

    id: str
    state: SessionState = SessionState.INITIALIZING
    metrics: Optional[StreamMetrics] = None
    error: Optional[str] = None

    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    def transition(
        self, target: SessionState, *, allowed_from: Iterable[SessionState]
    ) -> bool:
        """Move to `target` only from one of `allowed_from`; returns whether it moved."""
        with self._lock:
            if self.state not in tuple(allowed_from):
                return False
            self.state = target
            return True

    def fail(self, message: str) -> None:
        with self._lock:
            self.state = SessionState.ERROR
            self.error = message

    @property
    def is_cancelled(self) -> bool:
        return self.state is SessionState.CANCELLED


class StreamEvent(BaseModel):
    """Push-style notification emitted by `run_stream_events`."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    type: Literal["start", "chunk", "complete", "error", "cancelled"]
    session_id: str
    chunk: Optional[AudioChunk] = None
    metrics: Optional[StreamMetrics] = None
    error: Optional[str] = None


class ProgressEvent(BaseModel):
    """Byte counts reported while a voice model is being fetched."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    loaded: int = Field(ge=0)
    total: int = Field(ge=0)

    @property
    def percent(self) -> float:
        # display only
        return 100.0 * self.loaded / self.total if self.total else 0.0


class StreamingConfig(BaseModel):
    """Per-stream request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    text: str = Field(description="Text to synthesize.")
    voice_id: str = Field(min_length=1, description="Voice resolved by the asset provider.")
    chunk_size: Optional[int] = Field(
        default=1,
        ge=1,
        description="Sentences per chunk; None derives it from max_latency_ms.",
    )
    lookahead: int = Field(default=1, ge=0, description="Context sentences on each side.")
    max_latency_ms: float = Field(
        default=300, gt=0, description="Target time to first audio used when chunk_size is None."
    )
    normalize_audio: bool = True
    crossfade: bool = True
    crossfade_ms: float = Field(default=20, ge=0)


class BufferOptions(BaseModel):
    """Validated AudioBufferManager settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sample_rate: int = Field(default=22050, gt=0)
    crossfade: bool = True
    crossfade_ms: float = Field(default=20, ge=0)
    normalize: bool = True
    target_peak: float = Field(default=0.95, gt=0, le=1)
