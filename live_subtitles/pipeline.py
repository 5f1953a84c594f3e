"""Pipeline controller: lifecycle state machine and processing loop."""

import asyncio
import copy
import logging
from enum import Enum
from typing import Callable

from live_subtitles._types import SynthesisResult, TranscriptionResult, TranslationResult, Utterance
from live_subtitles.audio_source import AudioSource, create_audio_source
from live_subtitles.cancellation import CancellationScope
from live_subtitles.channels import BroadcastChannel, StateObservable
from live_subtitles.config import AudioSourceConfig, PipelineConfig, PipelineOptions
from live_subtitles.errors import EngineError, InvalidStateError, ModelLoadError, PipelineError
from live_subtitles.factory import EngineFactory
from live_subtitles.segmenter import Segmenter
from live_subtitles.stages import RecognitionStage, SynthesisStage, TranslationStage

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Pipeline lifecycle state."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SubtitlePipeline:
    """Coordinates audio source, segmenter and inference stages.

    Owns the lifecycle state machine and the cancellation scope of a run.
    Results are published on broadcast feeds as soon as they are produced;
    utterances are processed one at a time so output follows arrival order.

    The feeds belong to one run: they complete when the run stops or the
    audio ends, and fail with the error that put the pipeline in ERROR.
    Subscribe before start(); a start after a finished run opens new feeds.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        engine_factory: EngineFactory | None = None,
        audio_source_factory: Callable[[AudioSourceConfig], AudioSource] | None = None,
    ):
        """Initialize pipeline in IDLE state.

        Args:
            config: Pipeline configuration, copied so later edits do not leak in
            engine_factory: Creates and loads engines (defaults to EngineFactory)
            audio_source_factory: Builds the audio source from AudioSourceConfig
        """
        self._config = copy.deepcopy(config or PipelineConfig())
        self.engine_factory = engine_factory or EngineFactory()
        self.audio_source_factory = audio_source_factory or create_audio_source

        self.state_changes: StateObservable[PipelineState] = StateObservable(
            PipelineState.IDLE, "pipeline state"
        )
        self._open_feeds(self._config.options.feed_queue_size)

        self._scope: CancellationScope | None = None
        self._source: AudioSource | None = None
        self._task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._engines: list = []
        self._recognition: RecognitionStage | None = None
        self._translation: TranslationStage | None = None
        self._synthesis: SynthesisStage | None = None
        self._last_error: PipelineError | None = None

        logger.info("SubtitlePipeline initialized in IDLE state")

    @property
    def state(self) -> PipelineState:
        return self.state_changes.value

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def last_error(self) -> PipelineError | None:
        return self._last_error

    def update_config(self, config: PipelineConfig) -> None:
        """Replace the configuration used by the next run.

        Raises:
            InvalidStateError: If the pipeline is not IDLE
        """
        if self.state is not PipelineState.IDLE:
            raise InvalidStateError(
                f"Cannot update configuration in {self.state.name} state; stop first"
            )
        self._config = copy.deepcopy(config)
        for feed in (self.subtitles, self.translations, self.speech):
            feed.max_queue_size = self._config.options.feed_queue_size
        logger.debug("Pipeline configuration updated")

    async def start(self, cancellation: CancellationScope | None = None) -> None:
        """Load engines, start the audio source and launch the processing loop.

        Args:
            cancellation: Optional external scope; cancelling it stops the run

        Raises:
            InvalidStateError: If the pipeline is not IDLE
            ModelLoadError: If an engine cannot be created or loaded
            PipelineError: If the audio source cannot be created or started
            asyncio.CancelledError: If cancelled while starting
        """
        if self.state is not PipelineState.IDLE:
            raise InvalidStateError(f"Cannot start pipeline in {self.state.name} state")

        config = copy.deepcopy(self._config)
        if self.subtitles.closed:
            self._open_feeds(config.options.feed_queue_size)
        self._set_state(PipelineState.STARTING)
        scope = CancellationScope(parent=cancellation)
        self._scope = scope

        try:
            await self._load_engines(config, scope)
        except asyncio.CancelledError:
            logger.info("Pipeline start cancelled")
            await self._release()
            self._set_state(PipelineState.IDLE)
            raise
        except Exception as e:
            error = e if isinstance(e, PipelineError) else ModelLoadError(str(e))
            logger.error("Failed to load engines: %s", e)
            await self._fail(error)
            if error is e:
                raise
            raise error from e

        try:
            self._source = self.audio_source_factory(config.audio)
        except Exception as e:
            logger.error("Failed to create audio source: %s", e)
            error = PipelineError(f"Failed to create audio source: {e}")
            await self._fail(error)
            raise error from e

        self._set_state(PipelineState.RUNNING)
        segmenter = Segmenter.from_config(config.segmenter)
        self._task = asyncio.create_task(
            self._process(self._source, segmenter, scope, config.options),
            name="subtitle-pipeline",
        )
        scope.add_callback(self._on_scope_cancelled)

        try:
            await self._source.start()
        except Exception as e:
            logger.error("Failed to start audio source: %s", e)
            error = PipelineError(f"Failed to start audio source: {e}")
            await self._fail(error)
            raise error from e

        logger.info("Pipeline running")

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the run and wait for the processing loop to finish.

        No-op unless RUNNING; a stop already in progress is awaited. Nothing
        is published once this returns.

        Args:
            timeout: Seconds to wait for the loop before cancelling it
                     (defaults to options.stop_timeout)
        """
        if timeout is None:
            timeout = self._config.options.stop_timeout

        if self.state is PipelineState.STOPPING:
            try:
                await self.wait_stopped(timeout)
            except asyncio.TimeoutError:
                logger.warning("Pipeline still stopping after %.1fs", timeout)
            return
        if self.state is not PipelineState.RUNNING:
            logger.debug("Stop requested in %s state, ignoring", self.state.name)
            return

        self._set_state(PipelineState.STOPPING)
        await self._release(join_timeout=timeout)
        self._close_feeds()
        self._set_state(PipelineState.IDLE)

    async def wait_stopped(self, timeout: float | None = None) -> PipelineState:
        """Wait until the pipeline is IDLE or ERROR.

        Raises:
            asyncio.TimeoutError: If the state is not reached within timeout
        """
        return await self.state_changes.wait_for(
            lambda state: state in (PipelineState.IDLE, PipelineState.ERROR),
            timeout=timeout,
        )

    def _open_feeds(self, max_queue_size: int) -> None:
        self.subtitles: BroadcastChannel[TranscriptionResult] = BroadcastChannel(
            "subtitles", max_queue_size
        )
        self.translations: BroadcastChannel[TranslationResult] = BroadcastChannel(
            "translations", max_queue_size
        )
        self.speech: BroadcastChannel[SynthesisResult] = BroadcastChannel(
            "speech", max_queue_size
        )

    def _close_feeds(self) -> None:
        for feed in (self.subtitles, self.translations, self.speech):
            feed.close()

    def _set_state(self, state: PipelineState) -> None:
        previous = self.state
        if previous is state:
            return
        logger.info("State transition: %s -> %s", previous.name, state.name)
        self.state_changes.set(state)

    async def _load_engines(self, config: PipelineConfig, scope: CancellationScope) -> None:
        opts = config.options

        recognition = await scope.guard(
            self.engine_factory.create_recognition_engine(config.recognition)
        )
        self._engines.append(recognition)
        self._recognition = RecognitionStage(
            recognition,
            language=opts.source_language,
            word_timestamps=opts.enable_word_timestamps,
            prefer_streaming=opts.prefer_streaming,
            skip_silent=opts.skip_silent_utterances,
        )

        if opts.enable_translation:
            if config.translation is None:
                raise ModelLoadError("Translation enabled but no translation model configured")
            if not opts.target_language:
                raise ModelLoadError("Translation enabled but no target language configured")
            translation = await scope.guard(
                self.engine_factory.create_translation_engine(config.translation)
            )
            self._engines.append(translation)
            self._translation = TranslationStage(
                translation,
                source_language=opts.source_language,
                target_language=opts.target_language,
            )

        if opts.enable_tts:
            if config.synthesis is None:
                raise ModelLoadError("Speech synthesis enabled but no synthesis model configured")
            synthesis = await scope.guard(
                self.engine_factory.create_synthesis_engine(config.synthesis)
            )
            self._engines.append(synthesis)
            self._synthesis = SynthesisStage(synthesis, voice=opts.tts_voice, speed=opts.tts_speed)

        logger.info("Loaded %d engine(s)", len(self._engines))

    async def _unload_engines(self) -> None:
        engines, self._engines = self._engines, []
        for engine in reversed(engines):
            try:
                await engine.unload()
            except Exception as e:
                logger.warning("Error unloading engine %s: %s", type(engine).__name__, e)
        self._recognition = None
        self._translation = None
        self._synthesis = None

    async def _process(
        self,
        source: AudioSource,
        segmenter: Segmenter,
        scope: CancellationScope,
        options: PipelineOptions,
    ) -> None:
        logger.debug("Processing loop started")
        try:
            async for utterance in segmenter.segment(source.chunks()):
                scope.raise_if_cancelled()
                await self._handle_utterance(utterance, scope, options)
        except asyncio.CancelledError:
            logger.debug("Processing loop cancelled")
            raise
        except Exception as e:
            if scope.cancelled:
                logger.debug("Ignoring failure after cancellation: %s", e)
                return
            error = e if isinstance(e, PipelineError) else EngineError(f"Processing failed: {e}")
            logger.error("Processing loop failed: %s", e, exc_info=True)
            await self._fail(error, from_task=True)
            return

        if self.state is PipelineState.RUNNING:
            logger.info("Audio stream ended")
            self._set_state(PipelineState.STOPPING)
            await self._release(from_task=True)
            self._close_feeds()
            self._set_state(PipelineState.IDLE)

    async def _handle_utterance(
        self,
        utterance: Utterance,
        scope: CancellationScope,
        options: PipelineOptions,
    ) -> None:
        final: TranscriptionResult | None = None
        async for result in self._recognition.process(utterance, scope):
            scope.raise_if_cancelled()
            self.subtitles.publish(result)
            if result.is_final:
                final = result

        if final is None or not final.text.strip():
            return
        logger.debug("Utterance %d: %s", utterance.index, final.text)

        spoken_text = final.text
        spoken_language = final.language
        if self._translation is not None:
            translation = await self._translation.process(final, scope)
            if translation is not None:
                scope.raise_if_cancelled()
                self.translations.publish(translation)
                if not options.synthesize_source:
                    spoken_text = translation.translated_text
                    spoken_language = translation.target_language

        if self._synthesis is not None:
            speech = await self._synthesis.process(spoken_text, scope, language=spoken_language)
            if speech is not None:
                scope.raise_if_cancelled()
                self.speech.publish(speech)

    def _on_scope_cancelled(self) -> None:
        if self.state is not PipelineState.RUNNING:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Run cancelled outside the event loop; call stop() explicitly")
            return
        logger.info("Cancellation requested, stopping pipeline")
        self._stop_task = loop.create_task(self.stop())

    async def _fail(self, error: PipelineError, from_task: bool = False) -> None:
        self._last_error = error
        self.subtitles.fail(error)
        self.translations.close()
        self.speech.close()
        self._set_state(PipelineState.ERROR)
        await self._release(from_task=from_task)

    async def _release(self, join_timeout: float = 5.0, from_task: bool = False) -> None:
        """Stop the source, cancel the scope, join the loop and unload engines."""
        source, self._source = self._source, None
        scope = self._scope
        task = self._task

        if source is not None:
            try:
                await source.stop()
            except Exception as e:
                logger.warning("Error stopping audio source: %s", e)

        if scope is not None:
            scope.cancel()

        if task is not None and not from_task and not task.done():
            done, _ = await asyncio.wait({task}, timeout=join_timeout)
            if not done:
                logger.warning(
                    "Processing loop did not finish within %.1fs, cancelling", join_timeout
                )
                task.cancel()
                await asyncio.wait({task})
        if not from_task:
            self._task = None

        await self._unload_engines()

        if scope is not None:
            scope.detach()
        self._scope = None
