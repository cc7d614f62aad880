"""
Contracts for the collaborators the orchestrator drives.

The orchestrator never imports a concrete model: it receives a phoneme/unit
encoder, a synthesis engine and a model asset provider implementing these
interfaces. `streamspeech.chatterbox_engine` ships one implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from streamspeech.types import ProgressEvent

ProgressCallback = Callable[[ProgressEvent], None]


class ModelConfig(BaseModel):
    """Voice configuration reported by the asset provider."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sample_rate: int = Field(gt=0, description="Output sample rate of the model.")
    encoder_voice: str = Field(
        default="", description="Voice/language identifier handed to the encoder."
    )
    inference: Dict[str, float] = Field(
        default_factory=dict,
        description="Model-specific scale parameters passed to every synthesis call.",
    )
    speaker_id_map: Dict[str, int] = Field(default_factory=dict)


class VoiceModel(BaseModel):
    """A resolved voice: configuration plus the location of its assets."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    voice_id: str
    config: ModelConfig
    source: Optional[Path] = None


class SynthesisParams(BaseModel):
    """Per-stream parameters sourced from the loaded model configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    scales: Dict[str, float] = Field(default_factory=dict)
    speaker_id: Optional[int] = None

    @classmethod
    def from_config(cls, config: ModelConfig) -> "SynthesisParams":
        # multi-speaker models default to their first speaker
        speaker_id = 0 if config.speaker_id_map else None
        return cls(scales=dict(config.inference), speaker_id=speaker_id)


class PhonemeEncoder(ABC):
    @abstractmethod
    def encode(
        self,
        text: str,
        voice: str,
        *,
        previous_context: Optional[str] = None,
        lookahead_context: Optional[str] = None,
    ) -> Sequence[Any]:
        """Convert text to the unit sequence the engine consumes.

        Context strings are prosody hints only; they must not be included in
        the returned units. Raises `EncodingError` on malformed input.
        """
        raise NotImplementedError


class SynthesisEngine(ABC):
    @abstractmethod
    def load(self, model: VoiceModel) -> Any:
        """Load model weights and return a handle reused for the whole stream."""
        raise NotImplementedError

    @abstractmethod
    def synthesize(
        self, handle: Any, units: Sequence[Any], params: SynthesisParams
    ) -> np.ndarray:
        """Render a unit sequence to mono float samples at the model's sample rate.

        Raises `SynthesisEngineError` on failure.
        """
        raise NotImplementedError


class ModelAssetProvider(ABC):
    @abstractmethod
    def load(
        self, voice_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> VoiceModel:
        """Resolve a voice id to its configuration and assets.

        `on_progress` receives byte counts while assets are fetched.
        """
        raise NotImplementedError
