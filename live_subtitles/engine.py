"""Capability contracts the pipeline stages require from inference engines."""

from enum import Enum
from typing import AsyncIterator, Protocol, Sequence, runtime_checkable

import numpy as np

from live_subtitles._types import (
    SynthesisResult,
    TranscriptionResult,
    TranslationResult,
    TTSVoice,
)


class EngineType(str, Enum):
    """Engine implementations selectable through ModelConfig.engine_type."""

    FASTER_WHISPER = "faster_whisper"
    DEEPGRAM = "deepgram"
    CLOUD_API = "cloud_api"
    NLLB = "nllb"
    PIPER = "piper"


@runtime_checkable
class InferenceEngine(Protocol):
    """Model lifecycle shared by every modality.

    Loading while a model is bound unloads the previous one first. GPU flags
    are informational; failing to acquire a GPU falls back to CPU.
    """

    engine_type: EngineType

    @property
    def supports_gpu(self) -> bool: ...

    @property
    def is_using_gpu(self) -> bool: ...

    @property
    def is_model_loaded(self) -> bool: ...

    async def load(self, model_reference: str) -> None: ...

    async def unload(self) -> None: ...


@runtime_checkable
class RecognitionEngine(InferenceEngine, Protocol):
    """Speech recognition, single-shot and optionally incremental."""

    @property
    def supports_streaming(self) -> bool: ...

    async def transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> TranscriptionResult: ...

    def stream_transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> AsyncIterator[TranscriptionResult]: ...


@runtime_checkable
class TranslationEngine(InferenceEngine, Protocol):
    """Text translation."""

    @property
    def supports_auto_detection(self) -> bool: ...

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
    ) -> TranslationResult: ...

    async def translate_batch(
        self,
        texts: Sequence[str],
        source_language: str,
        target_language: str,
    ) -> list[TranslationResult]: ...


@runtime_checkable
class SynthesisEngine(InferenceEngine, Protocol):
    """Text to speech."""

    @property
    def available_voices(self) -> list[TTSVoice]: ...

    @property
    def default_voice(self) -> str: ...

    async def synthesize(
        self,
        text: str,
        voice: str | None = None,
        speed: float = 1.0,
    ) -> SynthesisResult: ...
