"""
Streaming orchestrator (text → chunks → encode → synthesize → buffer → deliver).

`StreamingOrchestrator.run_stream` processes chunks strictly in order: chunk
N+1 is not encoded before chunk N has been delivered and the delivery
callback has returned, so a slow consumer throttles production. Each stream is
tracked by a `StreamingSession`:

    initializing → streaming → completed | cancelled
                 ↘ error (from any state)

Cancellation is cooperative and checked before each chunk; work already in
flight runs to completion. Two adapters sit on top of `run_stream`:
`run_stream_events` (push events) and `stream_chunks` (pull iterator backed by
a bounded queue and a producer thread).
"""

from __future__ import annotations

import itertools
import queue
import threading
import time
from typing import Callable, Dict, Generator, List, Optional, Union

from loguru import logger

from streamspeech.buffer import AudioBufferManager
from streamspeech.chunking import calculate_optimal_chunk_size, create_text_chunks
from streamspeech.engine import (
    ModelAssetProvider,
    PhonemeEncoder,
    ProgressCallback,
    SynthesisEngine,
    SynthesisParams,
)
from streamspeech.errors import ConfigurationError, SynthesisError
from streamspeech.types import (
    AudioChunk,
    ChunkMetrics,
    SessionState,
    StreamEvent,
    StreamingConfig,
    StreamingSession,
    StreamMetrics,
)

ChunkCallback = Callable[[AudioChunk], None]
EventCallback = Callable[[StreamEvent], None]

DEFAULT_MAX_BUFFERED = 4


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class StreamingOrchestrator:
    """Drives one or more sequential synthesis streams over shared collaborators.

    Every stream builds its own buffer manager unless the caller supplies one,
    so separate streams never share sample state.
    """

    def __init__(
        self,
        encoder: PhonemeEncoder,
        engine: SynthesisEngine,
        assets: ModelAssetProvider,
    ) -> None:
        self.encoder = encoder
        self.engine = engine
        self.assets = assets
        self._sessions: Dict[str, StreamingSession] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._current: Optional[StreamingSession] = None

    # —————————————————— Sessions ——————————————————

    def create_session(self) -> StreamingSession:
        """Allocate a session handle in the `initializing` state."""
        with self._lock:
            session = StreamingSession(id=f"stream-{next(self._counter)}")
            self._sessions[session.id] = session
            self._current = session
        return session

    @property
    def current_session(self) -> Optional[StreamingSession]:
        return self._current

    def get_session(self, session_id: str) -> Optional[StreamingSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def cancel(self, session: Union[StreamingSession, str]) -> bool:
        """Request cancellation; only a `streaming` session is affected.

        Returns True when the session moved to `cancelled`.
        """
        target = self.get_session(session) if isinstance(session, str) else session
        if target is None:
            return False
        moved = target.transition(
            SessionState.CANCELLED, allowed_from=(SessionState.STREAMING,)
        )
        if moved:
            logger.info("stream.cancel_requested session={session}", session=target.id)
        return moved

    # —————————————————— Pipeline ——————————————————

    def run_stream(
        self,
        config: StreamingConfig,
        on_chunk: ChunkCallback,
        on_progress: Optional[ProgressCallback] = None,
        *,
        session: Optional[StreamingSession] = None,
        buffer: Optional[AudioBufferManager] = None,
    ) -> StreamMetrics:
        """Synthesize `config.text` chunk by chunk, delivering each chunk in order.

        Args:
            config: Text, voice and chunking settings.
            on_chunk: Called synchronously with every finished AudioChunk.
            on_progress: Forwarded to the asset provider while the voice loads.
            session: Pre-created handle from `create_session`; a new one is
                created when omitted.
            buffer: Buffer manager to fill; its sample rate is corrected to the
                model's. When omitted one is built from `config`.

        Returns:
            Aggregate metrics. A cancelled stream returns metrics over the
            chunks delivered before cancellation.

        Raises:
            SynthesisError: If loading, encoding, synthesis, buffering or the
                delivery callback fails. Chunks already delivered stay delivered.
            ConfigurationError: If `session` has already been run.
        """
        session = session or self.create_session()
        if session.state is not SessionState.INITIALIZING:
            raise ConfigurationError(
                f"Session {session.id} was already used ({session.state.value})."
            )

        stream_start = time.perf_counter()
        stage = "load"
        logger.info(
            "stream.start session={session} voice={voice} chars={chars}",
            session=session.id,
            voice=config.voice_id,
            chars=len(config.text),
        )
        try:
            voice = self.assets.load(config.voice_id, on_progress)
            handle = self.engine.load(voice)
            params = SynthesisParams.from_config(voice.config)

            if buffer is None:
                buffer = AudioBufferManager(
                    sample_rate=voice.config.sample_rate,
                    crossfade=config.crossfade,
                    crossfade_ms=config.crossfade_ms,
                    normalize=config.normalize_audio,
                )
            elif buffer.sample_rate != voice.config.sample_rate:
                logger.debug(
                    "stream.sample_rate_corrected session={session} from={old} to={new}",
                    session=session.id,
                    old=buffer.sample_rate,
                    new=voice.config.sample_rate,
                )
                buffer.set_sample_rate(voice.config.sample_rate)

            stage = "chunking"
            chunk_size = config.chunk_size or calculate_optimal_chunk_size(
                config.text, config.max_latency_ms
            )
            text_chunks = create_text_chunks(config.text, chunk_size, config.lookahead)

            session.transition(
                SessionState.STREAMING, allowed_from=(SessionState.INITIALIZING,)
            )
            logger.info(
                "stream.streaming session={session} chunks={chunks} chunk_size={size} sample_rate={rate}",
                session=session.id,
                chunks=len(text_chunks),
                size=chunk_size,
                rate=voice.config.sample_rate,
            )

            chunk_metrics: List[ChunkMetrics] = []
            for text_chunk in text_chunks:
                if session.is_cancelled:
                    break

                chunk_start = time.perf_counter()
                stage = "encode"
                units = self.encoder.encode(
                    text_chunk.text,
                    voice.config.encoder_voice,
                    previous_context=text_chunk.previous_context,
                    lookahead_context=text_chunk.lookahead_context,
                )
                encode_time = _elapsed_ms(chunk_start)

                stage = "synthesize"
                synth_start = time.perf_counter()
                samples = self.engine.synthesize(handle, units, params)
                synthesis_time = _elapsed_ms(synth_start)

                metrics = ChunkMetrics(
                    encode_time=encode_time,
                    synthesis_time=synthesis_time,
                    total_time=_elapsed_ms(chunk_start),
                    time_to_first_byte=_elapsed_ms(stream_start),
                )
                chunk_metrics.append(metrics)

                stage = "buffer"
                audio_chunk = buffer.add_chunk(samples, text_chunk.text, metrics)
                audio_chunk.is_last = text_chunk.is_last
                if audio_chunk.sample_count == 0:
                    logger.warning(
                        "stream.empty_audio session={session} index={index}",
                        session=session.id,
                        index=audio_chunk.index,
                    )
                logger.debug(
                    "stream.chunk session={session} index={index} encode={encode:.1f}ms synth={synth:.1f}ms ttfb={ttfb:.1f}ms",
                    session=session.id,
                    index=audio_chunk.index,
                    encode=metrics.encode_time,
                    synth=metrics.synthesis_time,
                    ttfb=metrics.time_to_first_byte,
                )

                stage = "deliver"
                on_chunk(audio_chunk)

            stage = "finalize"
            if not session.is_cancelled:
                buffer.finalize()
            stream_metrics = StreamMetrics.from_chunks(
                chunk_metrics,
                total_time=_elapsed_ms(stream_start),
                total_audio_duration=buffer.get_total_duration(),
            )
            session.metrics = stream_metrics
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            session.fail(message)
            logger.warning(
                "stream.failed session={session} stage={stage} error={error}",
                session=session.id,
                stage=stage,
                error=message,
            )
            raise SynthesisError(
                message, cause=exc, stage=stage, session_id=session.id
            ) from exc

        completed = session.transition(
            SessionState.COMPLETED, allowed_from=(SessionState.STREAMING,)
        )
        logger.info(
            "stream.{outcome} session={session} chunks={chunks} ttfa={ttfa:.1f}ms total={total:.1f}ms audio={audio:.2f}s rtf={rtf:.2f}",
            outcome="done" if completed else "cancelled",
            session=session.id,
            chunks=stream_metrics.total_chunks,
            ttfa=stream_metrics.time_to_first_audio,
            total=stream_metrics.total_time,
            audio=stream_metrics.total_audio_duration,
            rtf=stream_metrics.real_time_factor,
        )
        return stream_metrics

    def run_stream_events(
        self,
        config: StreamingConfig,
        on_event: EventCallback,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Push-style variant: emits `start`, then `chunk`s, then one terminal event.

        The terminal event is `complete`, `cancelled` or `error`; stream
        failures are reported as an `error` event instead of being raised.
        """
        session = self.create_session()
        on_event(StreamEvent(type="start", session_id=session.id))
        try:
            metrics = self.run_stream(
                config,
                lambda chunk: on_event(
                    StreamEvent(type="chunk", session_id=session.id, chunk=chunk)
                ),
                on_progress,
                session=session,
            )
        except SynthesisError as exc:
            on_event(StreamEvent(type="error", session_id=session.id, error=str(exc)))
            return

        terminal = "cancelled" if session.is_cancelled else "complete"
        on_event(StreamEvent(type=terminal, session_id=session.id, metrics=metrics))

    def stream_chunks(
        self,
        config: StreamingConfig,
        on_progress: Optional[ProgressCallback] = None,
        max_buffered: Optional[int] = DEFAULT_MAX_BUFFERED,
    ) -> "ChunkStream":
        """Pull-style variant; see `ChunkStream`."""
        return ChunkStream(self, config, on_progress, max_buffered=max_buffered)


class _Finished:
    __slots__ = ("metrics",)

    def __init__(self, metrics: StreamMetrics) -> None:
        self.metrics = metrics


class _Failed:
    __slots__ = ("error",)

    def __init__(self, error: Exception) -> None:
        self.error = error


class ChunkStream:
    """
    Restartable lazy sequence of AudioChunks.

    Each iteration starts a fresh pipeline on a producer thread with its own
    session. The producer blocks once `max_buffered` chunks are waiting
    (`None` means unbounded). After exhaustion `metrics` holds the aggregate
    and the generator's return value carries the same object. Errors are
    re-raised in the consuming thread. Abandoning the iteration early cancels
    the session and drains the producer; if the model is still loading, that
    waits until the first chunk arrives.
    """

    def __init__(
        self,
        orchestrator: StreamingOrchestrator,
        config: StreamingConfig,
        on_progress: Optional[ProgressCallback] = None,
        *,
        max_buffered: Optional[int] = DEFAULT_MAX_BUFFERED,
    ) -> None:
        if max_buffered is not None and max_buffered < 1:
            raise ValueError(f"max_buffered must be >= 1 or None, got {max_buffered}")
        self._orchestrator = orchestrator
        self._config = config
        self._on_progress = on_progress
        self._max_buffered = max_buffered
        self.session: Optional[StreamingSession] = None
        self.metrics: Optional[StreamMetrics] = None

    def __iter__(self) -> Generator[AudioChunk, None, Optional[StreamMetrics]]:
        orchestrator = self._orchestrator
        session = orchestrator.create_session()
        self.session = session
        self.metrics = None
        channel: "queue.Queue[object]" = queue.Queue(maxsize=self._max_buffered or 0)
        abandoned = threading.Event()

        def deliver(chunk: AudioChunk) -> None:
            channel.put(chunk)
            if abandoned.is_set():
                orchestrator.cancel(session)

        def produce() -> None:
            try:
                metrics = orchestrator.run_stream(
                    self._config, deliver, self._on_progress, session=session
                )
            except Exception as exc:  # re-raised by the consumer
                channel.put(_Failed(exc))
            else:
                channel.put(_Finished(metrics))

        producer = threading.Thread(
            target=produce, name=f"{session.id}-producer", daemon=True
        )
        producer.start()
        done = False
        try:
            while True:
                item = channel.get()
                if isinstance(item, _Finished):
                    done = True
                    self.metrics = item.metrics
                    return item.metrics
                if isinstance(item, _Failed):
                    done = True
                    raise item.error
                yield item  # type: ignore[misc]
        finally:
            if not done:
                abandoned.set()
                orchestrator.cancel(session)
                while producer.is_alive() or not channel.empty():
                    try:
                        channel.get(timeout=0.05)
                    except queue.Empty:
                        continue
            producer.join()
