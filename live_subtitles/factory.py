"""Engine construction from model configuration."""

import logging

from live_subtitles.cloud import (
    CloudRecognitionEngine,
    CloudSynthesisEngine,
    CloudTranslationEngine,
)
from live_subtitles.config import ModelConfig
from live_subtitles.engine import EngineType, RecognitionEngine, SynthesisEngine, TranslationEngine
from live_subtitles.errors import ModelLoadError
from live_subtitles.synthesizer import PiperEngine
from live_subtitles.transcriber import WhisperEngine
from live_subtitles.transcriber_deepgram import DeepgramEngine
from live_subtitles.translator import NllbEngine

logger = logging.getLogger(__name__)


class EngineFactory:
    """Creates and loads the engine selected by ModelConfig.engine_type.

    Every failure (unknown engine, missing credentials, load error) surfaces
    as ModelLoadError.
    """

    async def create_recognition_engine(self, config: ModelConfig) -> RecognitionEngine:
        return await self._create(config, self._build_recognition, "recognition")

    async def create_translation_engine(self, config: ModelConfig) -> TranslationEngine:
        return await self._create(config, self._build_translation, "translation")

    async def create_synthesis_engine(self, config: ModelConfig) -> SynthesisEngine:
        return await self._create(config, self._build_synthesis, "synthesis")

    async def _create(self, config: ModelConfig, build, modality: str):
        try:
            engine = build(config)
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(f"Cannot create {modality} engine: {e}") from e

        logger.info(
            "Loading %s engine %s with model %s",
            modality,
            config.engine_type,
            config.model_reference,
        )
        try:
            await engine.load(config.model_reference)
        except ModelLoadError:
            raise
        except Exception as e:
            logger.error("Failed to load %s engine: %s", modality, e)
            raise ModelLoadError(f"Failed to load {modality} engine: {e}") from e

        if config.use_gpu and not engine.is_using_gpu:
            logger.warning("%s engine running on CPU", modality.capitalize())
        return engine

    @staticmethod
    def _engine_type(
        config: ModelConfig, valid: tuple[EngineType, ...], modality: str
    ) -> EngineType:
        try:
            engine_type = EngineType(config.engine_type)
        except ValueError:
            engine_type = None
        if engine_type not in valid:
            raise ModelLoadError(
                f"Unknown {modality} engine type '{config.engine_type}'. "
                f"Must be one of: {', '.join(t.value for t in valid)}"
            )
        return engine_type

    def _build_recognition(self, config: ModelConfig) -> RecognitionEngine:
        engine_type = self._engine_type(
            config,
            (EngineType.FASTER_WHISPER, EngineType.DEEPGRAM, EngineType.CLOUD_API),
            "recognition",
        )
        if engine_type is EngineType.FASTER_WHISPER:
            return WhisperEngine(
                compute_type=config.compute_type,
                model_directory=config.model_directory,
                beam_size=config.beam_size,
                use_gpu=config.use_gpu,
                timeout=config.timeout,
            )
        if engine_type is EngineType.DEEPGRAM:
            return DeepgramEngine(api_key=config.api_key, timeout=config.timeout)
        return CloudRecognitionEngine(
            endpoint=config.cloud_endpoint,
            api_key=config.api_key,
            temperature=config.temperature,
            timeout=config.timeout,
        )

    def _build_translation(self, config: ModelConfig) -> TranslationEngine:
        engine_type = self._engine_type(
            config, (EngineType.NLLB, EngineType.CLOUD_API), "translation"
        )
        if engine_type is EngineType.NLLB:
            return NllbEngine(
                max_tokens=config.max_tokens,
                use_gpu=config.use_gpu,
                model_directory=config.model_directory,
                timeout=config.timeout,
            )
        return CloudTranslationEngine(
            endpoint=config.cloud_endpoint,
            api_key=config.api_key,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            timeout=config.timeout,
        )

    def _build_synthesis(self, config: ModelConfig) -> SynthesisEngine:
        engine_type = self._engine_type(
            config, (EngineType.PIPER, EngineType.CLOUD_API), "synthesis"
        )
        if engine_type is EngineType.PIPER:
            return PiperEngine(endpoint=config.cloud_endpoint, timeout=config.timeout)
        return CloudSynthesisEngine(
            endpoint=config.cloud_endpoint,
            api_key=config.api_key,
            timeout=config.timeout,
        )
