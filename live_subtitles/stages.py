"""Recognition, translation and synthesis stages.

Each stage wraps one engine, observes the run's cancellation scope at every
engine call and turns unexpected failures into EngineError.
"""

import asyncio
import logging
from dataclasses import replace
from typing import AsyncIterator, Sequence

from live_subtitles._types import (
    SynthesisResult,
    TranscriptionResult,
    TranslationOutcome,
    TranslationResult,
    Utterance,
)
from live_subtitles.cancellation import CancellationScope
from live_subtitles.engine import RecognitionEngine, SynthesisEngine, TranslationEngine
from live_subtitles.errors import EngineError, ModelNotLoadedError, PipelineError

logger = logging.getLogger(__name__)

_EXHAUSTED = object()


def _as_engine_error(e: Exception, action: str) -> EngineError:
    if isinstance(e, EngineError):
        return e
    return EngineError(f"{action} failed: {e}")


async def _next_result(stream: AsyncIterator[TranscriptionResult]):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class RecognitionStage:
    """Turns one utterance into a sequence of transcription results.

    Streaming engines produce growing partials; results are forwarded one
    step behind so that only the last one is marked final. Batch engines
    produce a single final result. All times are moved to stream time.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        language: str = "auto",
        word_timestamps: bool = True,
        prefer_streaming: bool = True,
        skip_silent: bool = True,
    ):
        self.engine = engine
        self.language = language
        self.word_timestamps = word_timestamps
        self.prefer_streaming = prefer_streaming
        self.skip_silent = skip_silent

    @property
    def streaming(self) -> bool:
        return self.prefer_streaming and bool(self.engine.supports_streaming)

    @property
    def language_hint(self) -> str | None:
        if not self.language or self.language == "auto":
            return None
        return self.language

    async def process(
        self,
        utterance: Utterance,
        scope: CancellationScope,
    ) -> AsyncIterator[TranscriptionResult]:
        """Recognize an utterance.

        Yields:
            Partial results in generation order, then exactly one final result

        Raises:
            ModelNotLoadedError: If the engine has no model bound
            EngineError: If recognition fails
            asyncio.CancelledError: If the scope is cancelled
        """
        if not self.engine.is_model_loaded:
            raise ModelNotLoadedError("Recognition engine has no model loaded")
        scope.raise_if_cancelled()

        if self.skip_silent and utterance.speech_chunks == 0:
            logger.debug("Skipping silent utterance %d", utterance.index)
            return

        logger.debug(
            "Recognizing utterance %d (%.2fs, %s)",
            utterance.index,
            utterance.duration,
            "streaming" if self.streaming else "batch",
        )
        try:
            if self.streaming:
                async for result in self._stream(utterance, scope):
                    yield result
            else:
                result = await scope.guard(
                    self.engine.transcribe(
                        utterance.samples,
                        utterance.format.sample_rate,
                        language=self.language_hint,
                        word_timestamps=self.word_timestamps,
                    )
                )
                yield self._to_stream_time(result, utterance, is_final=True)
        except (asyncio.CancelledError, PipelineError):
            raise
        except Exception as e:
            logger.error("Recognition of utterance %d failed: %s", utterance.index, e)
            raise _as_engine_error(e, "Recognition") from e

    async def _stream(
        self,
        utterance: Utterance,
        scope: CancellationScope,
    ) -> AsyncIterator[TranscriptionResult]:
        stream = self.engine.stream_transcribe(
            utterance.samples,
            utterance.format.sample_rate,
            language=self.language_hint,
            word_timestamps=self.word_timestamps,
        )
        pending: TranscriptionResult | None = None
        try:
            while True:
                result = await scope.guard(_next_result(stream))
                if result is _EXHAUSTED:
                    break
                if pending is not None:
                    yield self._to_stream_time(pending, utterance, is_final=False)
                pending = result
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        scope.raise_if_cancelled()
        if pending is None:
            pending = TranscriptionResult(
                text="",
                language=self.language_hint,
                end_time=utterance.duration,
            )
        yield self._to_stream_time(pending, utterance, is_final=True)

    def _to_stream_time(
        self,
        result: TranscriptionResult,
        utterance: Utterance,
        is_final: bool,
    ) -> TranscriptionResult:
        result = result.shifted(utterance.start_time)
        return replace(
            result,
            is_final=is_final,
            language=result.language or self.language_hint,
            words=result.words if self.word_timestamps else None,
        )


class TranslationStage:
    """Translates finalized transcriptions."""

    def __init__(
        self,
        engine: TranslationEngine,
        source_language: str = "auto",
        target_language: str = "en",
    ):
        self.engine = engine
        self.source_language = source_language
        self.target_language = target_language

    def resolve_source_language(self, detected: str | None) -> str:
        """Detected language first, then the configured one."""
        return detected or self.source_language or "auto"

    async def process(
        self,
        transcription: TranscriptionResult,
        scope: CancellationScope,
    ) -> TranslationResult | None:
        """Translate a final, non-empty transcription; partials yield None.

        Raises:
            ModelNotLoadedError: If the engine has no model bound
            EngineError: If translation fails
            asyncio.CancelledError: If the scope is cancelled
        """
        if not transcription.is_final or not transcription.text.strip():
            return None
        if not self.engine.is_model_loaded:
            raise ModelNotLoadedError("Translation engine has no model loaded")

        source = self.resolve_source_language(transcription.language)
        try:
            return await scope.guard(
                self.engine.translate(transcription.text, source, self.target_language)
            )
        except (asyncio.CancelledError, PipelineError):
            raise
        except Exception as e:
            logger.error("Translation failed: %s", e)
            raise _as_engine_error(e, "Translation") from e

    async def translate_batch(
        self,
        texts: Sequence[str],
        scope: CancellationScope,
        source_language: str | None = None,
    ) -> list[TranslationOutcome]:
        """Translate texts in order with failures isolated per item.

        The engine's batch call is tried first; if it fails, each text is
        translated on its own so one bad item does not discard the others.

        Raises:
            ModelNotLoadedError: If the engine has no model bound
            asyncio.CancelledError: If the scope is cancelled
        """
        if not self.engine.is_model_loaded:
            raise ModelNotLoadedError("Translation engine has no model loaded")
        if not texts:
            return []

        source = self.resolve_source_language(source_language)
        try:
            results = await scope.guard(
                self.engine.translate_batch(list(texts), source, self.target_language)
            )
            if len(results) == len(texts):
                return [
                    TranslationOutcome(index=i, text=text, result=result)
                    for i, (text, result) in enumerate(zip(texts, results))
                ]
            logger.warning(
                "Batch translation returned %d results for %d texts, retrying per item",
                len(results),
                len(texts),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Batch translation failed, retrying per item: %s", e)

        outcomes = []
        for i, text in enumerate(texts):
            try:
                result = await scope.guard(
                    self.engine.translate(text, source, self.target_language)
                )
                outcomes.append(TranslationOutcome(index=i, text=text, result=result))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Translation of item %d failed: %s", i, e)
                outcomes.append(
                    TranslationOutcome(index=i, text=text, error=_as_engine_error(e, "Translation"))
                )
        return outcomes


class SynthesisStage:
    """Synthesizes speech for source or translated text."""

    def __init__(
        self,
        engine: SynthesisEngine,
        voice: str | None = None,
        speed: float = 1.0,
    ):
        if speed <= 0:
            raise ValueError(f"speed must be positive, got {speed}")
        self.engine = engine
        self.voice = voice
        self.speed = speed

    def resolve_voice(self, language: str | None = None) -> str:
        """Pick the configured voice, else a voice for ``language``, else the default.

        Unknown configured voices fall back to the engine default.
        """
        voice_ids = {v.id for v in self.engine.available_voices}
        if self.voice:
            if self.voice in voice_ids:
                return self.voice
            logger.warning(
                "Unknown voice '%s', falling back to '%s'",
                self.voice,
                self.engine.default_voice,
            )
            return self.engine.default_voice
        if language and language in voice_ids:
            return language
        return self.engine.default_voice

    async def process(
        self,
        text: str,
        scope: CancellationScope,
        language: str | None = None,
    ) -> SynthesisResult | None:
        """Synthesize non-empty text.

        Raises:
            ModelNotLoadedError: If the engine has no model bound
            EngineError: If synthesis fails
            asyncio.CancelledError: If the scope is cancelled
        """
        if not text.strip():
            return None
        if not self.engine.is_model_loaded:
            raise ModelNotLoadedError("Synthesis engine has no model loaded")

        voice = self.resolve_voice(language)
        try:
            return await scope.guard(self.engine.synthesize(text, voice=voice, speed=self.speed))
        except (asyncio.CancelledError, PipelineError):
            raise
        except Exception as e:
            logger.error("Synthesis failed: %s", e)
            raise _as_engine_error(e, "Synthesis") from e
