"""
StreamSpeech command line (split → speak → bench).

    streamspeech split --text "Hello there. General Kenobi."
    streamspeech speak book.txt --voice enoch --format mp3
    streamspeech bench --voice enoch

`speak` streams a text file through the Chatterbox adapter and writes, per
chunk, a WAV file plus a JSON sidecar, then the crossfaded stream and its
aggregate metrics. Encoder, engine and asset provider can be injected, which
is how the tests run the commands without the neural model.
"""

from __future__ import annotations

import os
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

import fire
from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydub import AudioSegment

from streamspeech.benchmark import format_results_markdown, run_benchmark_suite
from streamspeech.buffer import AudioBufferManager
from streamspeech.chunking import create_text_chunks
from streamspeech.engine import ModelAssetProvider, PhonemeEncoder, SynthesisEngine
from streamspeech.streaming import StreamingOrchestrator
from streamspeech.types import AudioChunk, ChunkMetrics, ProgressEvent, StreamingConfig

WORKSPACE_DIR = Path(os.environ.get("STREAMSPEECH_WORKSPACE_DIR", "/data/streamspeech"))


class ChunkEntry(BaseModel):
    """Sidecar written next to every chunk WAV."""

    model_config = ConfigDict(extra="forbid")

    index: int
    text: str
    start_time: float
    duration: float
    is_last: bool
    metrics: ChunkMetrics


class StreamSpeech:
    """Streaming text-to-speech commands."""

    def __init__(
        self,
        voices_dir: Path | str = WORKSPACE_DIR / "voices",
        out_dir: Path | str = WORKSPACE_DIR / "out",
        device: Optional[str] = None,
        encoder: Optional[PhonemeEncoder] = None,
        engine: Optional[SynthesisEngine] = None,
        assets: Optional[ModelAssetProvider] = None,
    ) -> None:
        """
        Args:
            voices_dir: Directory of reference voice clips (`<voice>.wav`).
            out_dir: Base directory for `speak` and `bench` outputs.
            device: Torch device for Chatterbox; autodetected when omitted.
            encoder: Optional encoder replacing the Chatterbox text encoder.
            engine: Optional synthesis engine replacing Chatterbox.
            assets: Optional asset provider replacing the voices directory.
        """
        self.voices_dir = Path(voices_dir)
        self.out_dir = Path(out_dir)
        self.device = device
        self._encoder = encoder
        self._engine = engine
        self._assets = assets
        self._orchestrator: Optional[StreamingOrchestrator] = None

    # —————————————————— Utilities ——————————————————

    @property
    def orchestrator(self) -> StreamingOrchestrator:
        if self._orchestrator is None:
            if self._encoder is None or self._engine is None or self._assets is None:
                # lazy import keeps torch out of `split`
                from streamspeech.chatterbox_engine import (
                    ChatterboxEngine,
                    ReferenceVoiceProvider,
                    TextUnitEncoder,
                )

                self._encoder = self._encoder or TextUnitEncoder()
                self._engine = self._engine or ChatterboxEngine(device=self.device)
                self._assets = self._assets or ReferenceVoiceProvider(self.voices_dir)
            self._orchestrator = StreamingOrchestrator(
                self._encoder, self._engine, self._assets
            )
        return self._orchestrator

    @staticmethod
    def _read_text(text: str, text_file: Path | str) -> str:
        if text_file:
            path = Path(text_file)
            assert path.exists(), f"Text file {path} does not exist."
            return path.read_text()
        if not text:
            raise ValueError("Provide --text or --text_file.")
        return text

    @staticmethod
    def _log_progress(event: ProgressEvent) -> None:
        logger.debug(
            "voices.progress loaded={loaded} total={total} percent={percent:.0f}",
            loaded=event.loaded,
            total=event.total,
            percent=event.percent,
        )

    def _write_chunk(self, out_dir: Path, stem: str, chunk: AudioChunk) -> Path:
        wav_path = out_dir / f"{stem}_{chunk.index:04d}.wav"
        wav_path.write_bytes(chunk.encoded)
        entry = ChunkEntry(
            index=chunk.index,
            text=chunk.text,
            start_time=chunk.start_time,
            duration=chunk.duration,
            is_last=chunk.is_last,
            metrics=chunk.metrics,
        )
        wav_path.with_suffix(".json").write_text(entry.model_dump_json(indent=2))
        return wav_path

    # —————————————————— Commands ——————————————————

    def split(
        self,
        text: str = "",
        text_file: Path | str = "",
        chunk_size: int = 1,
        lookahead: int = 1,
    ) -> List[Dict[str, Any]]:
        """Print the chunk plan for a text without synthesizing anything.

        Args:
            text: Inline text to split.
            text_file: Path to a UTF-8 text file; wins over `text`.
            chunk_size: Sentences per chunk.
            lookahead: Context sentences recorded on each side.

        Returns:
            One dictionary per chunk.
        """
        source = self._read_text(text, text_file)
        chunks = create_text_chunks(source, chunk_size=chunk_size, lookahead=lookahead)
        logger.info("split.done chunks={count}", count=len(chunks))
        return [chunk.model_dump() for chunk in chunks]

    def speak(
        self,
        text_file: Path | str,
        voice: str = "default",
        out_dir: Path | str = "",
        format: str = "wav",
        chunk_size: Optional[int] = 1,
        lookahead: int = 1,
        crossfade_ms: float = 20,
    ) -> Path:
        """Stream a text file to per-chunk WAVs plus a crossfaded full track.

        Args:
            text_file: UTF-8 text to synthesize.
            voice: Voice id resolved by the asset provider.
            out_dir: Output directory; defaults to `<out_dir>/<text stem>`.
            format: Export format of the full track (anything pydub exports).
            chunk_size: Sentences per chunk; `None` picks it from a 300 ms
                first-audio budget.
            lookahead: Context sentences handed to the encoder.
            crossfade_ms: Crossfade length between chunks.

        Returns:
            The output directory.

        Raises:
            SynthesisError: If the stream fails; chunks delivered so far are
                still written.
        """
        source = Path(text_file)
        assert source.exists(), f"Text file {source} does not exist."
        target = Path(out_dir) if out_dir else self.out_dir / source.stem
        target.mkdir(parents=True, exist_ok=True)
        logger.info("speak.start text_file={path} voice={voice}", path=source, voice=voice)

        config = StreamingConfig(
            text=source.read_text(),
            voice_id=voice,
            chunk_size=chunk_size,
            lookahead=lookahead,
            crossfade_ms=crossfade_ms,
        )
        buffer = AudioBufferManager(crossfade_ms=crossfade_ms)

        def on_chunk(chunk: AudioChunk) -> None:
            logger.info(
                "Chunk {idx}: {duration:.2f}s ttfb={ttfb:.0f}ms text={text!r}",
                idx=chunk.index,
                duration=chunk.duration,
                ttfb=chunk.metrics.time_to_first_byte,
                text=chunk.text[:60],
            )

        try:
            metrics = self.orchestrator.run_stream(
                config, on_chunk, self._log_progress, buffer=buffer
            )
        finally:
            # payloads are final once the next chunk or finalize() committed them
            for chunk in buffer.get_chunks():
                self._write_chunk(target, source.stem, chunk)

        full_track = target / f"{source.stem}.{format}"
        segment = AudioSegment.from_file(BytesIO(buffer.get_concatenated_wav()), format="wav")
        segment.export(full_track, format=format)
        (target / "metrics.json").write_text(metrics.model_dump_json(indent=2))
        logger.info(
            "speak.done out_dir={out_dir} chunks={chunks} duration={duration:.1f}s ttfa={ttfa:.0f}ms",
            out_dir=target,
            chunks=metrics.total_chunks,
            duration=segment.duration_seconds,
            ttfa=metrics.time_to_first_audio,
        )
        return target

    def bench(self, voice: str = "default", out_file: Path | str = "") -> Path:
        """Run the latency suite and write a JSON report plus a Markdown table.

        Args:
            voice: Voice id resolved by the asset provider.
            out_file: Report path; defaults to `<out_dir>/bench-<voice>.json`.

        Returns:
            Path of the JSON report.
        """
        report = Path(out_file) if out_file else self.out_dir / f"bench-{voice}.json"
        report.parent.mkdir(parents=True, exist_ok=True)
        logger.info("bench.start voice={voice}", voice=voice)

        suite = run_benchmark_suite(
            self.orchestrator,
            voice,
            on_progress=lambda stage, percent: logger.info(
                "bench.progress stage={stage!r} percent={percent:.0f}",
                stage=stage,
                percent=percent,
            ),
        )
        report.write_text(suite.model_dump_json(indent=2))
        report.with_suffix(".md").write_text(format_results_markdown(suite))
        logger.info(
            "bench.done report={report} avg_ttfa_reduction={reduction:.0f}ms",
            report=report,
            reduction=suite.summary.avg_ttfa_reduction,
        )
        return report


def main() -> None:
    fire.Fire(StreamSpeech)


if __name__ == "__main__":
    main()
