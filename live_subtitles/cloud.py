"""OpenAI-compatible cloud engines for recognition, translation and speech.

All three talk to the same HTTP API shape (``/audio/transcriptions``,
``/chat/completions``, ``/audio/speech``); requests run in a thread pool so
the event loop is never blocked.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np
import requests

from live_subtitles._types import (
    SynthesisResult,
    TranscriptionResult,
    TranslationResult,
    TTSVoice,
    WordTimestamp,
)
from live_subtitles.audio_utils import encode_wav, wav_duration
from live_subtitles.engine import EngineType
from live_subtitles.errors import EngineError, ModelLoadError, ModelNotLoadedError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.openai.com/v1"


class CloudClient:
    """Authenticated HTTP session against an OpenAI-compatible endpoint."""

    def __init__(self, endpoint: str | None, api_key: str | None, timeout: float = 30.0):
        self.endpoint = (endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: requests.Session | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def is_open(self) -> bool:
        return self._session is not None

    def open(self) -> None:
        """Create the HTTP session.

        Raises:
            ModelLoadError: If no API key is configured
        """
        if not self.api_key:
            raise ModelLoadError(f"API key is required for {self.endpoint}")
        self.close()
        session = requests.Session()
        session.headers.update({"Authorization": f"Bearer {self.api_key}"})
        self._session = session
        self._executor = ThreadPoolExecutor(max_workers=1)
        logger.debug("Cloud session opened for %s", self.endpoint)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def post(self, path: str, **kwargs) -> requests.Response:
        """POST in the thread pool and return a successful response.

        Raises:
            ModelNotLoadedError: If the session is not open
            EngineError: On transport errors or non-200 responses
        """
        if self._session is None or self._executor is None:
            raise ModelNotLoadedError("Cloud session not opened")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, lambda: self._post_sync(self._session, path, **kwargs)
        )

    def _post_sync(self, session: requests.Session, path: str, **kwargs) -> requests.Response:
        url = f"{self.endpoint}{path}"
        try:
            response = session.post(url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise EngineError(f"Request to {url} timed out after {self.timeout} seconds") from e
        except requests.RequestException as e:
            raise EngineError(f"Request to {url} failed: {e}") from e

        if response.status_code == 200:
            return response
        if response.status_code == 401:
            raise EngineError("Invalid API key")
        if response.status_code == 429:
            raise EngineError("API rate limit exceeded")
        if response.status_code >= 500:
            raise EngineError(f"API server error: {response.status_code}")
        raise EngineError(f"API error ({response.status_code}): {response.text[:200]}")


class CloudRecognitionEngine:
    """Batch transcription through ``POST /audio/transcriptions``."""

    engine_type = EngineType.CLOUD_API
    supports_gpu = False
    is_using_gpu = False
    supports_streaming = False

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        temperature: float = 0.0,
        timeout: float = 30.0,
    ):
        self.client = CloudClient(endpoint, api_key, timeout)
        self.temperature = temperature
        self.model: str | None = None

    @property
    def is_model_loaded(self) -> bool:
        return self.client.is_open and self.model is not None

    async def load(self, model_reference: str) -> None:
        if self.is_model_loaded:
            await self.unload()
        self.client.open()
        self.model = model_reference
        logger.info("Cloud recognition bound to %s (%s)", self.client.endpoint, model_reference)

    async def unload(self) -> None:
        self.client.close()
        self.model = None

    async def transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> TranscriptionResult:
        """Upload one utterance as WAV and parse the verbose JSON response.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the request fails or the response is malformed
        """
        if not self.is_model_loaded:
            raise ModelNotLoadedError("Cloud recognition engine not loaded")

        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "temperature": str(self.temperature),
        }
        if language:
            data["language"] = language
        if word_timestamps:
            data["timestamp_granularities[]"] = "word"
        files = {"file": ("audio.wav", encode_wav(samples, sample_rate), "audio/wav")}

        response = await self.client.post("/audio/transcriptions", data=data, files=files)
        try:
            payload = response.json()
            return self._parse(payload, language, word_timestamps)
        except (ValueError, KeyError, TypeError) as e:
            raise EngineError(f"Malformed transcription response: {e}") from e

    def stream_transcribe(self, *args, **kwargs):
        raise EngineError("Cloud recognition does not support streaming transcription")

    @staticmethod
    def _parse(payload: dict, language: str | None, word_timestamps: bool) -> TranscriptionResult:
        words = None
        if word_timestamps and payload.get("words"):
            words = [
                WordTimestamp(
                    word=w["word"],
                    start=float(w["start"]),
                    end=float(w["end"]),
                    probability=float(w.get("probability") or 1.0),
                )
                for w in payload["words"]
            ]

        confidence = 1.0
        if words:
            confidence = float(np.mean([w.probability for w in words]))

        return TranscriptionResult(
            text=payload["text"].strip(),
            language=payload.get("language") or language,
            confidence=min(1.0, max(0.0, confidence)),
            start_time=0.0,
            end_time=float(payload.get("duration") or 0.0),
            is_final=True,
            words=words,
        )


class CloudTranslationEngine:
    """Translation through a chat completion request."""

    engine_type = EngineType.CLOUD_API
    supports_gpu = False
    is_using_gpu = False
    supports_auto_detection = True

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        max_tokens: int = 256,
        temperature: float = 0.0,
        timeout: float = 30.0,
    ):
        self.client = CloudClient(endpoint, api_key, timeout)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.model: str | None = None

    @property
    def is_model_loaded(self) -> bool:
        return self.client.is_open and self.model is not None

    async def load(self, model_reference: str) -> None:
        if self.is_model_loaded:
            await self.unload()
        self.client.open()
        self.model = model_reference
        logger.info("Cloud translation bound to %s (%s)", self.client.endpoint, model_reference)

    async def unload(self) -> None:
        self.client.close()
        self.model = None

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
    ) -> TranslationResult:
        """Translate text, letting the model detect an "auto" source language.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the request fails or the response is malformed
        """
        if not self.is_model_loaded:
            raise ModelNotLoadedError("Cloud translation engine not loaded")

        source = "the detected language" if source_language == "auto" else source_language
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        f"Translate the user's text from {source} to {target_language}. "
                        "Reply with the translation only."
                    ),
                },
                {"role": "user", "content": text},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        response = await self.client.post("/chat/completions", json=body)
        try:
            translated = response.json()["choices"][0]["message"]["content"].strip()
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise EngineError(f"Malformed translation response: {e}") from e

        return TranslationResult(
            source_text=text,
            translated_text=translated,
            source_language=source_language,
            target_language=target_language,
            confidence=1.0,
        )

    async def translate_batch(
        self,
        texts: Sequence[str],
        source_language: str,
        target_language: str,
    ) -> list[TranslationResult]:
        return [await self.translate(text, source_language, target_language) for text in texts]


class CloudSynthesisEngine:
    """Speech synthesis through ``POST /audio/speech``."""

    engine_type = EngineType.CLOUD_API
    supports_gpu = False
    is_using_gpu = False

    VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
    VOICE_ALIASES = {"male": "alloy", "female": "nova"}
    SAMPLE_RATE = 24000

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        response_format: str = "wav",
        timeout: float = 30.0,
    ):
        self.client = CloudClient(endpoint, api_key, timeout)
        self.response_format = response_format
        self.model: str | None = None
        self.default_voice = "alloy"

    @property
    def is_model_loaded(self) -> bool:
        return self.client.is_open and self.model is not None

    @property
    def available_voices(self) -> list[TTSVoice]:
        return [TTSVoice(v, v.capitalize(), "multi") for v in self.VOICES] + [
            TTSVoice(alias, alias.capitalize(), "multi") for alias in self.VOICE_ALIASES
        ]

    async def load(self, model_reference: str) -> None:
        if self.is_model_loaded:
            await self.unload()
        self.client.open()
        self.model = model_reference
        logger.info("Cloud synthesis bound to %s (%s)", self.client.endpoint, model_reference)

    async def unload(self) -> None:
        self.client.close()
        self.model = None

    async def synthesize(
        self,
        text: str,
        voice: str | None = None,
        speed: float = 1.0,
    ) -> SynthesisResult:
        """Synthesize text to audio bytes.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the request fails
        """
        if not self.is_model_loaded:
            raise ModelNotLoadedError("Cloud synthesis engine not loaded")

        voice = voice or self.default_voice
        body = {
            "model": self.model,
            "input": text,
            "voice": self.VOICE_ALIASES.get(voice, voice),
            "response_format": self.response_format,
            "speed": speed,
        }
        response = await self.client.post("/audio/speech", json=body)
        audio = response.content

        duration = wav_duration(audio) if self.response_format == "wav" else 0.0
        return SynthesisResult(
            audio=audio,
            format=self.response_format,
            sample_rate=self.SAMPLE_RATE,
            duration=duration,
        )
