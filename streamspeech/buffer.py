"""
Audio buffer manager for streaming playback.

Accepts one synthesized sample array per chunk, normalizes it, crossfades it
against the previous chunk and hands back a playable WAV payload. The manager
owns every sample array by index; callers receive read-only arrays. The only
retroactive edit is the fade-out of the previous chunk, which replaces that
chunk's `samples`/`encoded` objects once and marks its payload final.
"""

from __future__ import annotations

from io import BytesIO
from typing import List

import numpy as np
import soundfile as sf
from loguru import logger
from pydantic import ValidationError

from streamspeech.errors import ConfigurationError
from streamspeech.types import AudioChunk, BufferOptions, ChunkMetrics


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode mono float samples as a 16-bit PCM WAV payload."""
    buf = BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def _crossfade_samples(sample_rate: int, crossfade_ms: float) -> int:
    return int(crossfade_ms * sample_rate // 1000)


def _freeze(samples: np.ndarray) -> np.ndarray:
    samples.flags.writeable = False
    return samples


class AudioBufferManager:
    """Normalizes, crossfades and concatenates synthesized chunks."""

    def __init__(
        self,
        sample_rate: int = 22050,
        crossfade: bool = True,
        crossfade_ms: float = 20,
        normalize: bool = True,
        target_peak: float = 0.95,
    ) -> None:
        """Validate settings eagerly.

        Raises:
            ConfigurationError: If the sample rate is not positive, the
                crossfade duration is negative, or the target peak is outside
                (0, 1].
        """
        try:
            self._options = BufferOptions(
                sample_rate=sample_rate,
                crossfade=crossfade,
                crossfade_ms=crossfade_ms,
                normalize=normalize,
                target_peak=target_peak,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid buffer configuration: {exc}") from exc

        self._sample_rate = self._options.sample_rate
        self._crossfade_samples = _crossfade_samples(
            self._sample_rate, self._options.crossfade_ms
        )
        self._chunks: List[AudioChunk] = []
        self._total_duration = 0.0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def crossfade_samples(self) -> int:
        return self._crossfade_samples

    @property
    def options(self) -> BufferOptions:
        return self._options

    def set_sample_rate(self, sample_rate: int) -> None:
        """Correct the sample rate once the model reports its real output rate."""
        if sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {sample_rate}")
        if self._chunks and sample_rate != self._sample_rate:
            logger.warning(
                "buffer.sample_rate_changed_mid_stream old={old} new={new} chunks={chunks}",
                old=self._sample_rate,
                new=sample_rate,
                chunks=len(self._chunks),
            )
        self._sample_rate = sample_rate
        self._crossfade_samples = _crossfade_samples(
            sample_rate, self._options.crossfade_ms
        )

    # —————————————————— Sample processing ——————————————————

    def _normalize(self, samples: np.ndarray) -> np.ndarray:
        peak = float(np.max(np.abs(samples))) if samples.size else 0.0
        target = self._options.target_peak
        if peak == 0.0 or peak >= target:
            return samples
        gain = target / peak
        return np.clip(samples * gain, -1.0, 1.0).astype(np.float32)

    def _fade_in(self, samples: np.ndarray) -> np.ndarray:
        result = samples.copy()
        fade = min(self._crossfade_samples, result.shape[0])
        if fade > 0:
            result[:fade] *= np.arange(fade, dtype=np.float32) / fade
        return result

    def _fade_out(self, samples: np.ndarray) -> np.ndarray:
        result = samples.copy()
        fade = min(self._crossfade_samples, result.shape[0])
        if fade > 0:
            result[result.shape[0] - fade :] *= 1 - np.arange(fade, dtype=np.float32) / fade
        return result

    def _commit_previous(self, previous: AudioChunk, fade: bool) -> None:
        if fade:
            faded = _freeze(self._fade_out(previous.samples))
            previous.samples = faded
            previous.encoded = encode_wav(faded, self._sample_rate)
        previous.payload_final = True

    # —————————————————— Public API ——————————————————

    def add_chunk(
        self, samples: np.ndarray, text: str, metrics: ChunkMetrics
    ) -> AudioChunk:
        """Process one chunk of raw samples and append it to the buffer.

        When crossfade is enabled and a previous chunk exists, that chunk's
        stored samples are faded out and its WAV payload is regenerated.
        Durations are accounted without overlap trimming.
        """
        index = len(self._chunks)
        is_first = index == 0

        processed = np.array(samples, dtype=np.float32).ravel()
        if self._options.normalize:
            processed = self._normalize(processed)

        crossfading = self._options.crossfade and self._crossfade_samples > 0
        if not is_first:
            if crossfading:
                processed = self._fade_in(processed)
            self._commit_previous(self._chunks[-1], fade=crossfading)

        duration = processed.shape[0] / self._sample_rate
        start_time = self._total_duration
        self._total_duration += duration

        processed = _freeze(processed)
        chunk = AudioChunk(
            samples=processed,
            encoded=encode_wav(processed, self._sample_rate),
            index=index,
            start_time=start_time,
            duration=duration,
            is_first=is_first,
            is_last=False,
            text=text,
            metrics=metrics,
        )
        self._chunks.append(chunk)
        logger.debug(
            "buffer.add index={index} samples={samples} start={start:.3f}s duration={duration:.3f}s",
            index=index,
            samples=processed.shape[0],
            start=start_time,
            duration=duration,
        )
        return chunk

    def finalize(self) -> None:
        """Mark the most recently added chunk, and only it, as the last one."""
        if not self._chunks:
            return
        for chunk in self._chunks[:-1]:
            chunk.is_last = False
        last = self._chunks[-1]
        last.is_last = True
        last.payload_final = True

    def get_chunks(self) -> List[AudioChunk]:
        return list(self._chunks)

    def get_concatenated_samples(self) -> np.ndarray:
        """Join all chunks into one buffer, overlapping each seam by the crossfade length.

        The first `crossfade_samples` of each incoming chunk are blended into
        the tail of what has been written so far, so the result is shorter
        than the sum of chunk lengths by one overlap per seam. Stored chunks
        are not modified.

        With crossfade on, both sides of a seam were already faded by
        `add_chunk`, so this second ramp dips the seam: a steady tone at
        peak 0.95 falls to 0.475 halfway across the overlap.
        """
        total = sum(chunk.sample_count for chunk in self._chunks)
        output = np.zeros(total, dtype=np.float32)
        crossfading = self._options.crossfade and self._crossfade_samples > 0

        offset = 0
        for chunk in self._chunks:
            data = chunk.samples
            overlap = (
                min(self._crossfade_samples, data.shape[0], offset) if crossfading else 0
            )
            if overlap > 0:
                ramp = np.arange(overlap, dtype=np.float32) / overlap
                start = offset - overlap
                output[start:offset] = output[start:offset] * (1 - ramp) + data[:overlap] * ramp
                data = data[overlap:]
            output[offset : offset + data.shape[0]] = data
            offset += data.shape[0]

        return output[:offset].copy()

    def get_concatenated_wav(self) -> bytes:
        return encode_wav(self.get_concatenated_samples(), self._sample_rate)

    def get_total_duration(self) -> float:
        """Seconds of audio added so far, ignoring crossfade overlap."""
        return self._total_duration

    def clear(self) -> None:
        self._chunks = []
        self._total_duration = 0.0
