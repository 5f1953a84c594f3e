"""Tests for recognition, translation and synthesis stages."""

import asyncio

import pytest

from conftest import (
    SAMPLE_RATE,
    FakeRecognitionEngine,
    FakeSynthesisEngine,
    FakeTranslationEngine,
    tone,
)
from live_subtitles._types import AudioFormat, TranscriptionResult, Utterance
from live_subtitles.cancellation import CancellationScope
from live_subtitles.errors import EngineError, ModelNotLoadedError
from live_subtitles.stages import RecognitionStage, SynthesisStage, TranslationStage


def _utterance(seconds=1.0, start_time=0.0, index=0, speech_chunks=10):
    return Utterance(
        samples=tone(seconds),
        format=AudioFormat(SAMPLE_RATE),
        start_time=start_time,
        index=index,
        speech_chunks=speech_chunks,
    )


async def _collect(stage, utterance, scope=None):
    return [r async for r in stage.process(utterance, scope or CancellationScope())]


async def _loaded(engine):
    await engine.load("test-model")
    return engine


class TestRecognitionStageBatch:
    """Tests for batch recognition."""

    @pytest.mark.asyncio
    async def test_single_final_result_in_stream_time(self):
        """Test batch mode yields one final result shifted to stream time."""
        engine = await _loaded(FakeRecognitionEngine())
        stage = RecognitionStage(engine)

        results = await _collect(stage, _utterance(1.0, start_time=5.0))

        assert len(results) == 1
        result = results[0]
        assert result.is_final
        assert result.text == "utterance 0"
        assert result.start_time == pytest.approx(5.0)
        assert result.end_time == pytest.approx(6.0)
        assert result.words[0].start == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_language_hint(self):
        """Test "auto" lets the engine decide and explicit languages pass through."""
        engine = await _loaded(FakeRecognitionEngine())
        assert RecognitionStage(engine, language="auto").language_hint is None
        assert RecognitionStage(engine, language="de").language_hint == "de"

        results = await _collect(RecognitionStage(engine, language="de"), _utterance())
        assert results[0].language == "de"

    @pytest.mark.asyncio
    async def test_word_timestamps_stripped_when_disabled(self):
        """Test words are removed when word timestamps are off."""
        engine = await _loaded(FakeRecognitionEngine())
        stage = RecognitionStage(engine, word_timestamps=False)
        results = await _collect(stage, _utterance())
        assert results[0].words is None

    @pytest.mark.asyncio
    async def test_unloaded_engine_raises(self):
        """Test ModelNotLoadedError when no model is bound."""
        stage = RecognitionStage(FakeRecognitionEngine())
        with pytest.raises(ModelNotLoadedError):
            await _collect(stage, _utterance())

    @pytest.mark.asyncio
    async def test_engine_failure_wrapped(self):
        """Test underlying errors become EngineError."""
        engine = await _loaded(FakeRecognitionEngine(fail_on={0}))
        stage = RecognitionStage(engine)
        with pytest.raises(EngineError, match="inference exploded"):
            await _collect(stage, _utterance())

    @pytest.mark.asyncio
    async def test_silent_utterance_skipped(self):
        """Test utterances without speech chunks are not sent to the engine."""
        engine = await _loaded(FakeRecognitionEngine())
        stage = RecognitionStage(engine, skip_silent=True)
        assert await _collect(stage, _utterance(speech_chunks=0)) == []
        assert engine.calls == []

        stage = RecognitionStage(engine, skip_silent=False)
        assert len(await _collect(stage, _utterance(speech_chunks=0))) == 1


class TestRecognitionStageStreaming:
    """Tests for streaming recognition."""

    @pytest.mark.asyncio
    async def test_only_last_result_is_final(self):
        """Test partials come first and exactly one final terminates the sequence."""
        engine = await _loaded(FakeRecognitionEngine(streaming=True, partials=3))
        stage = RecognitionStage(engine)

        results = await _collect(stage, _utterance(1.5, start_time=2.0))

        assert [r.is_final for r in results] == [False, False, True]
        assert [r.text for r in results] == ["part0", "part0 part0", "part0 part0 part0"]
        assert results[-1].end_time == pytest.approx(3.5)

    @pytest.mark.asyncio
    async def test_prefer_streaming_false_uses_batch(self):
        """Test a streaming engine can be used in batch mode."""
        engine = await _loaded(FakeRecognitionEngine(streaming=True))
        stage = RecognitionStage(engine, prefer_streaming=False)
        assert stage.streaming is False
        results = await _collect(stage, _utterance())
        assert [r.text for r in results] == ["utterance 0"]

    @pytest.mark.asyncio
    async def test_empty_stream_yields_empty_final(self):
        """Test a stream with no results still ends with one final result."""
        engine = await _loaded(FakeRecognitionEngine(streaming=True, partials=0))
        stage = RecognitionStage(engine)
        results = await _collect(stage, _utterance(1.0, start_time=1.0))
        assert len(results) == 1
        assert results[0].is_final
        assert results[0].text == ""
        assert results[0].end_time == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_cancellation_mid_call_emits_no_final(self):
        """Test cancelling during a pending call stops forwarding results."""
        engine = await _loaded(
            FakeRecognitionEngine(streaming=True, partials=3, delays={0: 10})
        )
        stage = RecognitionStage(engine)
        scope = CancellationScope()
        received = []

        async def consume():
            async for result in stage.process(_utterance(), scope):
                received.append(result)

        task = asyncio.create_task(consume())
        await engine.started.wait()
        scope.cancel()

        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert not any(r.is_final for r in received)

    @pytest.mark.asyncio
    async def test_cancelled_scope_rejects_new_work(self):
        """Test no engine call is made once the scope is cancelled."""
        engine = await _loaded(FakeRecognitionEngine())
        scope = CancellationScope()
        scope.cancel()
        with pytest.raises(asyncio.CancelledError):
            await _collect(RecognitionStage(engine), _utterance(), scope)
        assert engine.calls == []


class TestTranslationStage:
    """Tests for translation of final transcriptions."""

    @pytest.mark.asyncio
    async def test_partial_and_empty_transcriptions_skipped(self):
        """Test only final, non-empty text is translated."""
        engine = await _loaded(FakeTranslationEngine())
        stage = TranslationStage(engine, target_language="it")
        scope = CancellationScope()

        partial = TranscriptionResult(text="hello", is_final=False)
        empty = TranscriptionResult(text="   ", is_final=True)
        assert await stage.process(partial, scope) is None
        assert await stage.process(empty, scope) is None
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_source_language_fallback(self):
        """Test detected language wins over the configured one."""
        engine = await _loaded(FakeTranslationEngine())
        stage = TranslationStage(engine, source_language="fr", target_language="it")
        scope = CancellationScope()

        detected = await stage.process(TranscriptionResult(text="hello", language="en"), scope)
        undetected = await stage.process(TranscriptionResult(text="bonjour"), scope)

        assert detected.source_language == "en"
        assert detected.translated_text == "it:hello"
        assert undetected.source_language == "fr"

    @pytest.mark.asyncio
    async def test_failure_wrapped(self):
        """Test translation errors become EngineError."""
        engine = await _loaded(FakeTranslationEngine(fail_texts={"hello"}))
        stage = TranslationStage(engine, target_language="it")
        with pytest.raises(EngineError):
            await stage.process(TranscriptionResult(text="hello"), CancellationScope())

    @pytest.mark.asyncio
    async def test_unloaded_engine_raises(self):
        """Test ModelNotLoadedError when no model is bound."""
        stage = TranslationStage(FakeTranslationEngine(), target_language="it")
        with pytest.raises(ModelNotLoadedError):
            await stage.process(TranscriptionResult(text="hello"), CancellationScope())

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self):
        """Test batch translation returns one ordered outcome per input."""
        engine = await _loaded(FakeTranslationEngine())
        stage = TranslationStage(engine, source_language="en", target_language="de")

        outcomes = await stage.translate_batch(["a", "b", "c"], CancellationScope())

        assert [o.index for o in outcomes] == [0, 1, 2]
        assert [o.result.translated_text for o in outcomes] == ["de:a", "de:b", "de:c"]
        assert all(o.ok for o in outcomes)

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self):
        """Test one failing item does not discard the others."""
        engine = await _loaded(FakeTranslationEngine(fail_texts={"b"}))
        stage = TranslationStage(engine, source_language="en", target_language="de")

        outcomes = await stage.translate_batch(["a", "b", "c"], CancellationScope())

        assert [o.ok for o in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, EngineError)
        assert outcomes[2].result.translated_text == "de:c"

    @pytest.mark.asyncio
    async def test_batch_empty(self):
        """Test empty input gives empty output."""
        engine = await _loaded(FakeTranslationEngine())
        stage = TranslationStage(engine)
        assert await stage.translate_batch([], CancellationScope()) == []


class TestSynthesisStage:
    """Tests for voice selection and synthesis."""

    def test_speed_must_be_positive(self):
        """Test non-positive speed is rejected."""
        with pytest.raises(ValueError):
            SynthesisStage(FakeSynthesisEngine(), speed=0)

    def test_unknown_voice_falls_back_to_default(self):
        """Test unknown voices fall back instead of failing."""
        stage = SynthesisStage(FakeSynthesisEngine(), voice="robot")
        assert stage.resolve_voice() == "alloy"

    def test_voice_selection_order(self):
        """Test configured voice, then language voice, then default."""
        engine = FakeSynthesisEngine()
        assert SynthesisStage(engine, voice="nova").resolve_voice("alloy") == "nova"
        assert SynthesisStage(engine).resolve_voice("nova") == "nova"
        assert SynthesisStage(engine).resolve_voice("xx") == "alloy"

    @pytest.mark.asyncio
    async def test_process_passes_voice_and_speed(self):
        """Test the engine receives the resolved voice and speed."""
        engine = await _loaded(FakeSynthesisEngine())
        stage = SynthesisStage(engine, voice="nova", speed=1.25)

        result = await stage.process("ciao", CancellationScope())

        assert result.audio == b"ciao"
        assert engine.calls == [("ciao", "nova", 1.25)]

    @pytest.mark.asyncio
    async def test_empty_text_skipped(self):
        """Test blank text is not synthesized."""
        engine = await _loaded(FakeSynthesisEngine())
        assert await SynthesisStage(engine).process("  ", CancellationScope()) is None
        assert engine.calls == []
