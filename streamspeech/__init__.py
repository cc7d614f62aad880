"""Low-latency streaming text-to-speech: sentence chunking, crossfaded buffering, streaming orchestration."""

from streamspeech.buffer import AudioBufferManager, encode_wav
from streamspeech.chunking import (
    calculate_optimal_chunk_size,
    create_text_chunks,
    detect_sentence_boundaries,
    estimate_duration,
    split_into_sentences,
)
from streamspeech.engine import (
    ModelAssetProvider,
    ModelConfig,
    PhonemeEncoder,
    SynthesisEngine,
    SynthesisParams,
    VoiceModel,
)
from streamspeech.errors import (
    ConfigurationError,
    EncodingError,
    SegmentationError,
    StreamSpeechError,
    SynthesisEngineError,
    SynthesisError,
)
from streamspeech.streaming import ChunkStream, StreamingOrchestrator
from streamspeech.types import (
    AudioChunk,
    ChunkMetrics,
    ProgressEvent,
    SessionState,
    StreamEvent,
    StreamingConfig,
    StreamingSession,
    StreamMetrics,
    TextChunk,
)

__all__ = [
    "AudioBufferManager",
    "AudioChunk",
    "ChunkMetrics",
    "ChunkStream",
    "ConfigurationError",
    "EncodingError",
    "ModelAssetProvider",
    "ModelConfig",
    "PhonemeEncoder",
    "ProgressEvent",
    "SegmentationError",
    "SessionState",
    "StreamEvent",
    "StreamMetrics",
    "StreamSpeechError",
    "StreamingConfig",
    "StreamingOrchestrator",
    "StreamingSession",
    "SynthesisEngine",
    "SynthesisEngineError",
    "SynthesisError",
    "SynthesisParams",
    "TextChunk",
    "VoiceModel",
    "calculate_optimal_chunk_size",
    "create_text_chunks",
    "detect_sentence_boundaries",
    "encode_wav",
    "estimate_duration",
    "split_into_sentences",
]
