"""Shared fixtures: scripted engines and a manually fed audio source."""

import asyncio

import numpy as np
import pytest

from live_subtitles._types import (
    AudioChunk,
    AudioFormat,
    SynthesisResult,
    TranscriptionResult,
    TranslationResult,
    TTSVoice,
    WordTimestamp,
)
from live_subtitles.audio_source import AudioSource
from live_subtitles.engine import EngineType
from live_subtitles.errors import ModelLoadError

SAMPLE_RATE = 16000


class FakeRecognitionEngine:
    """Recognition engine returning "utterance N" for the N-th call."""

    engine_type = EngineType.FASTER_WHISPER
    supports_gpu = False
    is_using_gpu = False

    def __init__(self, streaming=False, partials=2, delays=None, fail_on=()):
        self.supports_streaming = streaming
        self.partials = partials
        self.delays = delays or {}
        self.fail_on = set(fail_on)
        self.is_model_loaded = False
        self.loaded_with = None
        self.unload_count = 0
        self.calls = []
        self.started = asyncio.Event()

    async def load(self, model_reference):
        self.is_model_loaded = True
        self.loaded_with = model_reference

    async def unload(self):
        self.is_model_loaded = False
        self.unload_count += 1

    async def _begin(self, samples):
        n = len(self.calls)
        self.calls.append(samples)
        self.started.set()
        if self.delays.get(n):
            await asyncio.sleep(self.delays[n])
        if n in self.fail_on:
            raise RuntimeError("inference exploded")
        return n

    async def transcribe(self, samples, sample_rate, language=None, word_timestamps=True):
        n = await self._begin(samples)
        duration = len(samples) / sample_rate
        return TranscriptionResult(
            text=f"utterance {n}",
            language=language or "en",
            confidence=0.9,
            start_time=0.0,
            end_time=duration,
            words=[WordTimestamp("utterance", 0.0, duration / 2, 0.9)],
        )

    async def stream_transcribe(self, samples, sample_rate, language=None, word_timestamps=True):
        n = await self._begin(samples)
        duration = len(samples) / sample_rate
        for i in range(self.partials):
            await asyncio.sleep(0)
            yield TranscriptionResult(
                text=" ".join([f"part{n}"] * (i + 1)),
                language=language or "en",
                confidence=0.8,
                start_time=0.0,
                end_time=duration * (i + 1) / self.partials,
                is_final=False,
            )


class FakeTranslationEngine:
    """Translation engine prefixing text with the target language."""

    engine_type = EngineType.NLLB
    supports_gpu = False
    is_using_gpu = False
    supports_auto_detection = True

    def __init__(self, fail_texts=(), fail_batch=False):
        self.fail_texts = set(fail_texts)
        self.fail_batch = fail_batch
        self.is_model_loaded = False
        self.calls = []

    async def load(self, model_reference):
        self.is_model_loaded = True

    async def unload(self):
        self.is_model_loaded = False

    async def translate(self, text, source_language, target_language):
        self.calls.append((text, source_language, target_language))
        if text in self.fail_texts:
            raise RuntimeError(f"cannot translate {text!r}")
        return TranslationResult(
            source_text=text,
            translated_text=f"{target_language}:{text}",
            source_language=source_language,
            target_language=target_language,
            confidence=1.0,
        )

    async def translate_batch(self, texts, source_language, target_language):
        if self.fail_batch or self.fail_texts.intersection(texts):
            raise RuntimeError("batch failed")
        return [await self.translate(t, source_language, target_language) for t in texts]


class FakeSynthesisEngine:
    """Synthesis engine echoing the text as audio bytes."""

    engine_type = EngineType.CLOUD_API
    supports_gpu = False
    is_using_gpu = False
    default_voice = "alloy"

    def __init__(self):
        self.is_model_loaded = False
        self.calls = []

    @property
    def available_voices(self):
        return [TTSVoice("alloy", "Alloy", "multi"), TTSVoice("nova", "Nova", "multi")]

    async def load(self, model_reference):
        self.is_model_loaded = True

    async def unload(self):
        self.is_model_loaded = False

    async def synthesize(self, text, voice=None, speed=1.0):
        self.calls.append((text, voice, speed))
        return SynthesisResult(audio=text.encode(), format="wav", sample_rate=24000, duration=0.5)


class FakeEngineFactory:
    """Hands out pre-built fake engines, optionally failing one modality."""

    def __init__(self, recognition=None, translation=None, synthesis=None, fail=None):
        self.recognition = recognition or FakeRecognitionEngine()
        self.translation = translation or FakeTranslationEngine()
        self.synthesis = synthesis or FakeSynthesisEngine()
        self.fail = fail
        self.created = []

    async def _create(self, modality, engine, config):
        if self.fail == modality:
            raise ModelLoadError(f"{modality} model missing")
        await engine.load(config.model_reference)
        self.created.append(modality)
        return engine

    async def create_recognition_engine(self, config):
        return await self._create("recognition", self.recognition, config)

    async def create_translation_engine(self, config):
        return await self._create("translation", self.translation, config)

    async def create_synthesis_engine(self, config):
        return await self._create("synthesis", self.synthesis, config)


class ManualAudioSource(AudioSource):
    """Audio source fed explicitly from the test."""

    def __init__(self, sample_rate=SAMPLE_RATE, queue_size=256):
        super().__init__(AudioFormat(sample_rate, 1, 32), queue_size)
        self.start_calls = 0
        self.stop_calls = 0
        self._elapsed = 0.0

    async def _open(self):
        self.start_calls += 1

    async def _close(self):
        self.stop_calls += 1

    def feed(self, samples):
        chunk = AudioChunk(np.asarray(samples, dtype=np.float32), self._elapsed, self.format)
        self._elapsed += chunk.duration
        self._queue.put_nowait(chunk)

    def feed_speech(self, seconds, chunk_ms=100, amplitude=0.5):
        frames = self.format.sample_rate * chunk_ms // 1000
        for _ in range(round(seconds * 1000 / chunk_ms)):
            self.feed(np.full(frames, amplitude, dtype=np.float32))

    def feed_silence(self, seconds, chunk_ms=100):
        self.feed_speech(seconds, chunk_ms, amplitude=0.0)

    def end(self):
        self._end_stream()


def tone(seconds, amplitude=0.5, sample_rate=SAMPLE_RATE):
    return np.full(int(seconds * sample_rate), amplitude, dtype=np.float32)


def chunk(samples, timestamp=0.0, sample_rate=SAMPLE_RATE, channels=1):
    return AudioChunk(np.asarray(samples, dtype=np.float32), timestamp, AudioFormat(sample_rate, channels))


@pytest.fixture
def recognition_engine():
    return FakeRecognitionEngine()


@pytest.fixture
def streaming_engine():
    return FakeRecognitionEngine(streaming=True, partials=3)


@pytest.fixture
def translation_engine():
    return FakeTranslationEngine()


@pytest.fixture
def synthesis_engine():
    return FakeSynthesisEngine()


@pytest.fixture
def manual_source():
    return ManualAudioSource()
