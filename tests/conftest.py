from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from streamspeech.engine import (
    ModelAssetProvider,
    ModelConfig,
    PhonemeEncoder,
    ProgressCallback,
    SynthesisEngine,
    SynthesisParams,
    VoiceModel,
)
from streamspeech.errors import EncodingError
from streamspeech.streaming import StreamingOrchestrator
from streamspeech.types import ProgressEvent


class FakeEncoder(PhonemeEncoder):
    """Records what it was asked to encode; units are the characters of the text."""

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.fail_on = fail_on
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []

    def encode(
        self,
        text: str,
        voice: str,
        *,
        previous_context: Optional[str] = None,
        lookahead_context: Optional[str] = None,
    ) -> Sequence[Any]:
        self.calls.append((text, previous_context, lookahead_context))
        if self.fail_on is not None and self.fail_on in text:
            raise EncodingError(f"cannot encode {text!r}")
        return list(text)


class FakeEngine(SynthesisEngine):
    """Returns a constant-amplitude signal of a fixed length for every chunk."""

    def __init__(self, samples_per_chunk: int = 1000, amplitude: float = 0.5) -> None:
        self.samples_per_chunk = samples_per_chunk
        self.amplitude = amplitude
        self.loaded: List[str] = []
        self.params: List[SynthesisParams] = []

    def load(self, model: VoiceModel) -> Any:
        self.loaded.append(model.voice_id)
        return {"voice": model.voice_id}

    def synthesize(
        self, handle: Any, units: Sequence[Any], params: SynthesisParams
    ) -> np.ndarray:
        self.params.append(params)
        return np.full(self.samples_per_chunk, self.amplitude, dtype=np.float32)


class FakeAssets(ModelAssetProvider):
    def __init__(
        self, sample_rate: int = 100, speaker_id_map: Optional[Dict[str, int]] = None
    ) -> None:
        self.sample_rate = sample_rate
        self.speaker_id_map = speaker_id_map or {}

    def load(
        self, voice_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> VoiceModel:
        if on_progress is not None:
            on_progress(ProgressEvent(loaded=50, total=100))
            on_progress(ProgressEvent(loaded=100, total=100))
        return VoiceModel(
            voice_id=voice_id,
            config=ModelConfig(
                sample_rate=self.sample_rate,
                encoder_voice="en-us",
                inference={"noise_scale": 0.667, "length_scale": 1.0},
                speaker_id_map=self.speaker_id_map,
            ),
        )


@pytest.fixture()
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def fake_assets() -> FakeAssets:
    return FakeAssets()


@pytest.fixture()
def orchestrator(
    fake_encoder: FakeEncoder, fake_engine: FakeEngine, fake_assets: FakeAssets
) -> StreamingOrchestrator:
    return StreamingOrchestrator(fake_encoder, fake_engine, fake_assets)
