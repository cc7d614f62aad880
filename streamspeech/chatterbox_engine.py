"""
Chatterbox-backed implementations of the engine contracts.

Voices are reference WAV clips under a voices directory (`<voice>.wav`), with
an optional `<voice>.json` sidecar overriding the model configuration. The
Chatterbox model is loaded once per device and shared; each loaded voice keeps
its own conditionals so streams with different voices do not interfere.
"""

from __future__ import annotations

import json
import threading
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import soundfile as sf
import torch
from chatterbox.models.s3gen import S3GEN_SR  # type: ignore[import]
from chatterbox.tts import ChatterboxTTS  # type: ignore[import]
from loguru import logger
from pydantic import ValidationError

from streamspeech.chunking import normalize_text
from streamspeech.engine import (
    ModelAssetProvider,
    ModelConfig,
    PhonemeEncoder,
    ProgressCallback,
    SynthesisEngine,
    SynthesisParams,
    VoiceModel,
)
from streamspeech.errors import ConfigurationError, EncodingError, SynthesisEngineError
from streamspeech.types import ProgressEvent

DEFAULT_VOICE = "default"
DEFAULT_INFERENCE: Dict[str, float] = {
    "exaggeration": 0.5,
    "cfg_weight": 0.5,
    "temperature": 0.8,
}
_GENERATE_SCALES = (
    "exaggeration",
    "cfg_weight",
    "temperature",
    "repetition_penalty",
    "min_p",
    "top_p",
)
_READ_BLOCK = 64 * 1024

# Conditionals live on the shared model instance.
_MODEL_LOCK = threading.Lock()


@lru_cache(maxsize=None)
def _load_tts_model(device: Optional[str] = None) -> ChatterboxTTS:
    device = device or ("cuda" if torch.cuda.is_available() else "cpu")
    logger.info("tts.load device={device}", device=device)
    try:
        return ChatterboxTTS.from_pretrained(device=device)
    except RuntimeError as exc:
        if device == "cuda" and "out of memory" in str(exc).lower():
            logger.warning("tts.load_cuda_failed falling back to CPU due to OOM")
            torch.cuda.empty_cache()
            return ChatterboxTTS.from_pretrained(device="cpu")
        raise


class TextUnitEncoder(PhonemeEncoder):
    """Chatterbox tokenizes internally, so a unit is a cleaned-up phrase of text."""

    def encode(
        self,
        text: str,
        voice: str,
        *,
        previous_context: Optional[str] = None,
        lookahead_context: Optional[str] = None,
    ) -> List[str]:
        cleaned = normalize_text(text)
        if not cleaned:
            raise EncodingError("Cannot encode empty text.")
        return [cleaned]


class ChatterboxHandle:
    def __init__(self, model: ChatterboxTTS, conds: Any, voice_id: str) -> None:
        self.model = model
        self.conds = conds
        self.voice_id = voice_id


class ChatterboxEngine(SynthesisEngine):
    def __init__(self, device: Optional[str] = None) -> None:
        self.device = device

    def load(self, model: VoiceModel) -> ChatterboxHandle:
        tts = _load_tts_model(self.device)
        with _MODEL_LOCK:
            builtin = tts.conds
            if model.source is None:
                conds = builtin
            else:
                exaggeration = model.config.inference.get(
                    "exaggeration", DEFAULT_INFERENCE["exaggeration"]
                )
                try:
                    tts.prepare_conditionals(str(model.source), exaggeration=exaggeration)
                    conds = tts.conds
                finally:
                    tts.conds = builtin
        logger.debug(
            "tts.voice_loaded voice={voice} source={source}",
            voice=model.voice_id,
            source=model.source,
        )
        return ChatterboxHandle(tts, conds, model.voice_id)

    def synthesize(
        self, handle: Any, units: Sequence[Any], params: SynthesisParams
    ) -> np.ndarray:
        kwargs = {
            name: value for name, value in params.scales.items() if name in _GENERATE_SCALES
        }
        pieces: List[np.ndarray] = []
        tts = handle.model
        try:
            with _MODEL_LOCK:
                previous = tts.conds
                tts.conds = handle.conds
                try:
                    for unit in units:
                        wav = tts.generate(text=str(unit), **kwargs)
                        pieces.append(wav.detach().cpu().numpy().reshape(-1))
                finally:
                    tts.conds = previous
        except RuntimeError as exc:
            raise SynthesisEngineError(
                f"Chatterbox generation failed for voice {handle.voice_id}: {exc}"
            ) from exc

        if not pieces:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(pieces).astype(np.float32)


class ReferenceVoiceProvider(ModelAssetProvider):
    """Resolve voice ids to reference clips under `voices_dir`.

    `default` falls back to the model's built-in voice when no
    `default.wav` exists.
    """

    def __init__(self, voices_dir: Path | str) -> None:
        self.voices_dir = Path(voices_dir)

    def voice_file(self, voice_id: str) -> Path:
        return self.voices_dir / f"{voice_id}.wav"

    def _model_config(self, voice_id: str) -> ModelConfig:
        payload: Dict[str, Any] = {
            "sample_rate": S3GEN_SR,
            "encoder_voice": voice_id,
            "inference": dict(DEFAULT_INFERENCE),
        }
        sidecar = self.voices_dir / f"{voice_id}.json"
        if sidecar.exists():
            try:
                overrides = json.loads(sidecar.read_text())
                payload["inference"].update(overrides.pop("inference", {}))
                payload.update(overrides)
                return ModelConfig.model_validate(payload)
            except (ValueError, ValidationError) as exc:
                raise ConfigurationError(
                    f"Invalid voice configuration {sidecar}: {exc}"
                ) from exc
        return ModelConfig.model_validate(payload)

    def _read_clip(self, path: Path, on_progress: Optional[ProgressCallback]) -> None:
        total = path.stat().st_size
        loaded = 0
        buf = BytesIO()
        with path.open("rb") as handle:
            while True:
                block = handle.read(_READ_BLOCK)
                if not block:
                    break
                buf.write(block)
                loaded += len(block)
                if on_progress is not None:
                    on_progress(ProgressEvent(loaded=loaded, total=total))
        buf.seek(0)
        try:
            info = sf.info(buf)
        except RuntimeError as exc:
            raise ConfigurationError(f"Unreadable reference clip {path}: {exc}") from exc
        logger.debug(
            "voices.clip path={path} sample_rate={rate} seconds={seconds:.1f}",
            path=path,
            rate=info.samplerate,
            seconds=info.duration,
        )

    def load(
        self, voice_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> VoiceModel:
        config = self._model_config(voice_id)
        clip = self.voice_file(voice_id)
        if not clip.exists():
            if voice_id == DEFAULT_VOICE:
                logger.info("voices.builtin voice={voice}", voice=voice_id)
                return VoiceModel(voice_id=voice_id, config=config)
            raise FileNotFoundError(f"Voice file {clip} does not exist.")

        self._read_clip(clip, on_progress)
        logger.info("voices.loaded voice={voice} path={path}", voice=voice_id, path=clip)
        return VoiceModel(voice_id=voice_id, config=config, source=clip)
