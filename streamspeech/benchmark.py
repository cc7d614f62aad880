"""
Latency suite: streaming time-to-first-audio versus single-chunk synthesis.

Each text is synthesized twice with the same orchestrator. The streaming run
uses one sentence per chunk; the batch run puts every sentence in one chunk,
so its first audio only arrives when the whole text is done.
"""

from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from streamspeech.chunking import split_into_sentences
from streamspeech.streaming import StreamingOrchestrator
from streamspeech.types import AudioChunk, StreamingConfig


class BenchmarkText(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    text: str


_BASE_SENTENCES = [
    "The quick brown fox jumps over the lazy dog.",
    "This is a test of the streaming text-to-speech system.",
    "We expect significant latency improvements over batch processing.",
    "Neural text-to-speech has revolutionized how machines communicate with humans.",
    "Browser-based inference democratizes access to these powerful technologies.",
    "The VITS architecture combines variational inference with adversarial training.",
    "This enables high-quality speech synthesis with a single forward pass.",
    "Our streaming implementation processes text incrementally for lower perceived latency.",
    "Users perceive audio quality as higher when playback begins quickly.",
    'This psychological effect is known as the "responsiveness heuristic" in UX research.',
    "By reducing time to first audio, we improve both real and perceived quality.",
    "The future of browser-based AI is streaming and incremental processing.",
]

TEST_TEXTS: Dict[str, BenchmarkText] = {
    "short": BenchmarkText(name="Short (1 sentence)", text=" ".join(_BASE_SENTENCES[:1])),
    "medium": BenchmarkText(name="Medium (3 sentences)", text=" ".join(_BASE_SENTENCES[:3])),
    "long": BenchmarkText(name="Long (5 sentences)", text=" ".join(_BASE_SENTENCES[:5])),
    "paragraph": BenchmarkText(
        name="Paragraph (8 sentences)", text=" ".join(_BASE_SENTENCES[:8])
    ),
    "article": BenchmarkText(name="Article (12 sentences)", text=" ".join(_BASE_SENTENCES)),
}


class StreamingResult(BaseModel):
    time_to_first_audio: float
    total_time: float
    chunk_count: int
    avg_chunk_latency: float
    real_time_factor: float
    chunk_latencies: List[float] = Field(default_factory=list)


class BatchResult(BaseModel):
    total_time: float


class Improvement(BaseModel):
    ttfa_reduction: float = Field(description="Batch time minus streaming TTFA, in ms.")
    ttfa_reduction_percent: float


class BenchmarkResult(BaseModel):
    name: str
    text_length: int
    word_count: int
    sentence_count: int
    streaming: StreamingResult
    batch: BatchResult
    improvement: Improvement


class BenchmarkSummary(BaseModel):
    avg_ttfa_reduction: float
    avg_ttfa_reduction_percent: float
    total_tests: int


class BenchmarkSuite(BaseModel):
    platform: str
    python: str
    voice_id: str
    timestamp: str
    results: List[BenchmarkResult]
    summary: BenchmarkSummary


def run_benchmark(
    orchestrator: StreamingOrchestrator, text: str, name: str, voice_id: str
) -> BenchmarkResult:
    """Compare streaming and batch synthesis of one text."""
    sentence_count = len(split_into_sentences(text))
    latencies: List[float] = []

    def on_chunk(chunk: AudioChunk) -> None:
        latencies.append(chunk.metrics.total_time)

    logger.info("bench.streaming name={name}", name=name)
    streamed = orchestrator.run_stream(
        StreamingConfig(text=text, voice_id=voice_id, chunk_size=1), on_chunk
    )

    logger.info("bench.batch name={name}", name=name)
    batch = orchestrator.run_stream(
        StreamingConfig(text=text, voice_id=voice_id, chunk_size=max(1, sentence_count)),
        lambda chunk: None,
    )

    reduction = batch.total_time - streamed.time_to_first_audio
    percent = 100.0 * reduction / batch.total_time if batch.total_time > 0 else 0.0
    return BenchmarkResult(
        name=name,
        text_length=len(text),
        word_count=len(text.split()),
        sentence_count=sentence_count,
        streaming=StreamingResult(
            time_to_first_audio=streamed.time_to_first_audio,
            total_time=streamed.total_time,
            chunk_count=streamed.total_chunks,
            avg_chunk_latency=streamed.average_chunk_latency,
            real_time_factor=streamed.real_time_factor,
            chunk_latencies=latencies,
        ),
        batch=BatchResult(total_time=batch.total_time),
        improvement=Improvement(ttfa_reduction=reduction, ttfa_reduction_percent=percent),
    )


def run_benchmark_suite(
    orchestrator: StreamingOrchestrator,
    voice_id: str,
    texts: Optional[Dict[str, BenchmarkText]] = None,
    on_progress: Optional[Callable[[str, float], None]] = None,
) -> BenchmarkSuite:
    tests = list((texts or TEST_TEXTS).values())
    results: List[BenchmarkResult] = []
    for idx, test in enumerate(tests):
        if on_progress is not None:
            on_progress(f"Testing: {test.name}", 100.0 * idx / len(tests))
        results.append(run_benchmark(orchestrator, test.text, test.name, voice_id))

    count = len(results)
    return BenchmarkSuite(
        platform=platform.platform(),
        python=platform.python_version(),
        voice_id=voice_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        results=results,
        summary=BenchmarkSummary(
            avg_ttfa_reduction=(
                sum(r.improvement.ttfa_reduction for r in results) / count if count else 0.0
            ),
            avg_ttfa_reduction_percent=(
                sum(r.improvement.ttfa_reduction_percent for r in results) / count
                if count
                else 0.0
            ),
            total_tests=count,
        ),
    )


def format_results_markdown(suite: BenchmarkSuite) -> str:
    lines = [
        "# StreamSpeech Benchmark Results",
        "",
        f"**Date:** {suite.timestamp}",
        f"**Voice:** {suite.voice_id}",
        f"**Platform:** {suite.platform} (Python {suite.python})",
        "",
        "## Results",
        "",
        "| Test | Words | Sentences | Stream TTFA | Batch Time | Improvement |",
        "|------|-------|-----------|-------------|------------|-------------|",
    ]
    for r in suite.results:
        lines.append(
            f"| {r.name} | {r.word_count} | {r.sentence_count} "
            f"| {r.streaming.time_to_first_audio:.0f}ms | {r.batch.total_time:.0f}ms "
            f"| {r.improvement.ttfa_reduction_percent:.1f}% |"
        )
    lines += [
        "",
        "## Summary",
        "",
        f"- **Average TTFA Reduction:** {suite.summary.avg_ttfa_reduction:.0f}ms",
        f"- **Average Improvement:** {suite.summary.avg_ttfa_reduction_percent:.1f}%",
    ]
    return "\n".join(lines) + "\n"
