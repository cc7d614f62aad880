from typing import List

import pytest

from conftest import FakeAssets, FakeEncoder, FakeEngine
from streamspeech.buffer import AudioBufferManager
from streamspeech.errors import ConfigurationError, EncodingError, SynthesisError
from streamspeech.streaming import StreamingOrchestrator
from streamspeech.types import (
    AudioChunk,
    ProgressEvent,
    SessionState,
    StreamEvent,
    StreamingConfig,
)

SIX_SENTENCES = "One. Two. Three. Four. Five. Six."


def _config(text: str, **overrides) -> StreamingConfig:
    return StreamingConfig(text=text, voice_id="test-voice", **overrides)


def test_initials_stream_end_to_end(orchestrator: StreamingOrchestrator) -> None:
    delivered: List[AudioChunk] = []
    metrics = orchestrator.run_stream(_config("A. B. C."), delivered.append)

    assert [chunk.text for chunk in delivered] == ["A.", "B.", "C."]
    assert [chunk.index for chunk in delivered] == [0, 1, 2]
    assert [chunk.duration for chunk in delivered] == pytest.approx([10.0, 10.0, 10.0])
    assert [chunk.start_time for chunk in delivered] == pytest.approx([0.0, 10.0, 20.0])
    assert delivered[0].is_first
    assert [chunk.is_last for chunk in delivered] == [False, False, True]
    assert all(chunk.payload_final for chunk in delivered)

    assert metrics.total_chunks == 3
    assert metrics.total_audio_duration == pytest.approx(30.0)
    assert metrics.time_to_first_audio == metrics.chunk_metrics[0].time_to_first_byte
    assert metrics.real_time_factor > 0
    assert orchestrator.current_session is not None
    assert orchestrator.current_session.state is SessionState.COMPLETED
    assert orchestrator.current_session.metrics == metrics


def test_encoder_receives_neighbouring_context(
    orchestrator: StreamingOrchestrator, fake_encoder: FakeEncoder
) -> None:
    orchestrator.run_stream(_config("A. B. C."), lambda chunk: None)
    assert fake_encoder.calls == [
        ("A.", None, "B."),
        ("B.", "A.", "C."),
        ("C.", "B.", None),
    ]


def test_chunk_metrics_are_monotonic(orchestrator: StreamingOrchestrator) -> None:
    metrics = orchestrator.run_stream(_config(SIX_SENTENCES), lambda chunk: None)
    ttfbs = [m.time_to_first_byte for m in metrics.chunk_metrics]
    assert ttfbs == sorted(ttfbs)
    assert metrics.total_time >= ttfbs[-1]
    for m in metrics.chunk_metrics:
        assert m.total_time >= m.encode_time
        assert m.total_time >= m.synthesis_time


def test_params_come_from_model_config(fake_encoder: FakeEncoder, fake_engine: FakeEngine) -> None:
    orchestrator = StreamingOrchestrator(
        fake_encoder, fake_engine, FakeAssets(speaker_id_map={"narrator": 3})
    )
    orchestrator.run_stream(_config("Hello."), lambda chunk: None)
    assert fake_engine.loaded == ["test-voice"]
    assert fake_engine.params[0].speaker_id == 0
    assert fake_engine.params[0].scales == {"noise_scale": 0.667, "length_scale": 1.0}


def test_single_speaker_model_has_no_speaker_id(
    orchestrator: StreamingOrchestrator, fake_engine: FakeEngine
) -> None:
    orchestrator.run_stream(_config("Hello."), lambda chunk: None)
    assert fake_engine.params[0].speaker_id is None


def test_progress_is_forwarded(orchestrator: StreamingOrchestrator) -> None:
    events: List[ProgressEvent] = []
    orchestrator.run_stream(_config("Hello."), lambda chunk: None, events.append)
    assert [event.percent for event in events] == [50.0, 100.0]


def test_supplied_buffer_takes_model_sample_rate(orchestrator: StreamingOrchestrator) -> None:
    buffer = AudioBufferManager()
    orchestrator.run_stream(_config("A. B."), lambda chunk: None, buffer=buffer)
    assert buffer.sample_rate == 100
    assert buffer.crossfade_samples == 2
    assert len(buffer.get_chunks()) == 2
    assert buffer.get_concatenated_samples().shape[0] == 2000 - 2


def test_derived_chunk_size(orchestrator: StreamingOrchestrator) -> None:
    text = " ".join(["Alpha beta gamma delta epsilon."] * 4)
    metrics = orchestrator.run_stream(_config(text, chunk_size=None), lambda chunk: None)
    assert metrics.total_chunks == 2


def test_empty_text_completes_without_chunks(orchestrator: StreamingOrchestrator) -> None:
    delivered: List[AudioChunk] = []
    metrics = orchestrator.run_stream(_config("   "), delivered.append)
    assert delivered == []
    assert metrics.total_chunks == 0
    assert metrics.time_to_first_audio == metrics.total_time
    assert metrics.average_chunk_latency == 0
    assert orchestrator.current_session.state is SessionState.COMPLETED


@pytest.mark.parametrize("stop_after", [0, 2])
def test_cancel_stops_after_current_chunk(
    orchestrator: StreamingOrchestrator, fake_engine: FakeEngine, stop_after: int
) -> None:
    session = orchestrator.create_session()
    delivered: List[AudioChunk] = []

    def on_chunk(chunk: AudioChunk) -> None:
        delivered.append(chunk)
        if chunk.index == stop_after:
            assert orchestrator.cancel(session)

    metrics = orchestrator.run_stream(_config(SIX_SENTENCES), on_chunk, session=session)

    assert len(delivered) == stop_after + 1
    assert len(fake_engine.params) == stop_after + 1
    assert metrics.total_chunks == stop_after + 1
    assert not delivered[-1].is_last
    assert session.state is SessionState.CANCELLED
    assert not orchestrator.cancel(session)


def test_cancel_by_id(orchestrator: StreamingOrchestrator) -> None:
    session = orchestrator.create_session()
    assert session.id.startswith("stream-")
    assert orchestrator.get_session(session.id) is session

    orchestrator.run_stream(
        _config(SIX_SENTENCES),
        lambda chunk: orchestrator.cancel(session.id),
        session=session,
    )
    assert session.state is SessionState.CANCELLED


def test_cancel_outside_streaming_is_noop(orchestrator: StreamingOrchestrator) -> None:
    session = orchestrator.create_session()
    assert not orchestrator.cancel(session)
    assert session.state is SessionState.INITIALIZING
    assert not orchestrator.cancel("stream-999")

    orchestrator.run_stream(_config("Hi."), lambda chunk: None, session=session)
    assert not orchestrator.cancel(session)
    assert session.state is SessionState.COMPLETED


def test_session_ids_are_unique(orchestrator: StreamingOrchestrator) -> None:
    ids = {orchestrator.create_session().id for _ in range(5)}
    assert len(ids) == 5


def test_session_cannot_be_reused(orchestrator: StreamingOrchestrator) -> None:
    session = orchestrator.create_session()
    orchestrator.run_stream(_config("Hi."), lambda chunk: None, session=session)
    with pytest.raises(ConfigurationError):
        orchestrator.run_stream(_config("Hi."), lambda chunk: None, session=session)


def test_encoding_failure_aborts_stream(fake_engine: FakeEngine, fake_assets: FakeAssets) -> None:
    orchestrator = StreamingOrchestrator(FakeEncoder(fail_on="B"), fake_engine, fake_assets)
    delivered: List[AudioChunk] = []

    with pytest.raises(SynthesisError) as excinfo:
        orchestrator.run_stream(_config("A. B. C."), delivered.append)

    error = excinfo.value
    assert [chunk.text for chunk in delivered] == ["A."]
    assert error.stage == "encode"
    assert isinstance(error.cause, EncodingError)
    assert error.__cause__ is error.cause
    session = orchestrator.get_session(error.session_id)
    assert session is not None
    assert session.state is SessionState.ERROR
    assert session.error == str(error)


def test_delivery_failure_is_wrapped(orchestrator: StreamingOrchestrator) -> None:
    def on_chunk(chunk: AudioChunk) -> None:
        raise RuntimeError("sink closed")

    with pytest.raises(SynthesisError, match="sink closed") as excinfo:
        orchestrator.run_stream(_config("A. B."), on_chunk)
    assert excinfo.value.stage == "deliver"
    assert orchestrator.current_session.state is SessionState.ERROR


def test_events_for_completed_stream(orchestrator: StreamingOrchestrator) -> None:
    events: List[StreamEvent] = []
    orchestrator.run_stream_events(_config("A. B. C."), events.append)

    assert [event.type for event in events] == ["start", "chunk", "chunk", "chunk", "complete"]
    assert len({event.session_id for event in events}) == 1
    assert events[0].session_id == orchestrator.current_session.id
    assert [event.chunk.index for event in events[1:4]] == [0, 1, 2]
    assert events[-1].metrics is not None
    assert events[-1].metrics.total_chunks == 3


def test_events_for_failed_stream(fake_engine: FakeEngine, fake_assets: FakeAssets) -> None:
    orchestrator = StreamingOrchestrator(FakeEncoder(fail_on="B"), fake_engine, fake_assets)
    events: List[StreamEvent] = []
    orchestrator.run_stream_events(_config("A. B. C."), events.append)

    assert [event.type for event in events] == ["start", "chunk", "error"]
    assert "cannot encode" in events[-1].error


def test_events_for_cancelled_stream(orchestrator: StreamingOrchestrator) -> None:
    events: List[StreamEvent] = []

    def on_event(event: StreamEvent) -> None:
        events.append(event)
        if event.type == "chunk":
            orchestrator.cancel(event.session_id)

    orchestrator.run_stream_events(_config(SIX_SENTENCES), on_event)
    assert [event.type for event in events] == ["start", "chunk", "cancelled"]
    assert events[-1].metrics.total_chunks == 1


def test_chunk_stream_yields_chunks_and_metrics(orchestrator: StreamingOrchestrator) -> None:
    stream = orchestrator.stream_chunks(_config("A. B. C."))
    chunks = list(stream)

    assert [chunk.text for chunk in chunks] == ["A.", "B.", "C."]
    assert chunks[-1].is_last
    assert stream.metrics is not None
    assert stream.metrics.total_chunks == 3
    assert stream.session.state is SessionState.COMPLETED


def test_chunk_stream_returns_metrics_on_exhaustion(orchestrator: StreamingOrchestrator) -> None:
    iterator = iter(orchestrator.stream_chunks(_config("A. B.")))
    next(iterator)
    next(iterator)
    with pytest.raises(StopIteration) as stop:
        next(iterator)
    assert stop.value.value.total_chunks == 2


def test_chunk_stream_is_restartable(orchestrator: StreamingOrchestrator) -> None:
    stream = orchestrator.stream_chunks(_config("A. B."))
    first = [chunk.text for chunk in stream]
    first_session = stream.session
    second = [chunk.text for chunk in stream]
    assert first == second == ["A.", "B."]
    assert stream.session is not first_session


def test_closing_chunk_stream_cancels_producer(
    orchestrator: StreamingOrchestrator, fake_engine: FakeEngine
) -> None:
    stream = orchestrator.stream_chunks(_config(SIX_SENTENCES), max_buffered=1)
    iterator = iter(stream)
    first = next(iterator)
    iterator.close()

    assert first.text == "One."
    assert stream.session.state is SessionState.CANCELLED
    assert stream.metrics is None
    assert len(fake_engine.params) < 6


def test_chunk_stream_reraises_errors(fake_engine: FakeEngine, fake_assets: FakeAssets) -> None:
    orchestrator = StreamingOrchestrator(FakeEncoder(fail_on="B"), fake_engine, fake_assets)
    stream = orchestrator.stream_chunks(_config("A. B. C."))
    received: List[str] = []
    with pytest.raises(SynthesisError):
        for chunk in stream:
            received.append(chunk.text)
    assert received == ["A."]
    assert stream.session.state is SessionState.ERROR


def test_chunk_stream_rejects_empty_buffer(orchestrator: StreamingOrchestrator) -> None:
    with pytest.raises(ValueError):
        orchestrator.stream_chunks(_config("Hi."), max_buffered=0)
