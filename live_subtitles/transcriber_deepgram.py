"""Cloud speech recognition via Deepgram API."""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from live_subtitles._types import TranscriptionResult, WordTimestamp
from live_subtitles.audio_utils import encode_wav
from live_subtitles.engine import EngineType
from live_subtitles.errors import EngineError, ModelLoadError, ModelNotLoadedError
from live_subtitles.transcriber import normalize_text

logger = logging.getLogger(__name__)


class DeepgramEngine:
    """Encapsulates Deepgram API client and transcription logic.

    Batch only: each utterance is uploaded as WAV. The request runs inside a
    thread pool executor to avoid blocking the event loop.
    """

    engine_type = EngineType.DEEPGRAM
    supports_gpu = False
    is_using_gpu = False
    supports_streaming = False

    def __init__(
        self,
        api_key: str | None,
        smart_format: bool = True,
        punctuate: bool = True,
        timeout: float = 30.0,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize Deepgram engine.

        Args:
            api_key: Deepgram API key
            smart_format: Enable smart formatting (currency, dates, etc.)
            punctuate: Auto-add punctuation
            timeout: API request timeout in seconds
            executor: Optional ThreadPoolExecutor for API calls
        """
        self.api_key = api_key
        self.smart_format = smart_format
        self.punctuate = punctuate
        self.timeout = timeout
        self.executor = executor
        self._executor_owned = executor is None
        self._client = None
        self.model: str | None = None

    @property
    def is_model_loaded(self) -> bool:
        return self._client is not None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=1)
        return self.executor

    async def load(self, model_reference: str) -> None:
        """Bind a Deepgram model (nova-3, nova-2, whisper-large, etc.).

        Raises:
            ModelLoadError: If the client cannot be created
        """
        if self._client is not None:
            await self.unload()

        if not self.api_key:
            raise ModelLoadError("Deepgram API key is required")

        logger.info("Initializing Deepgram client with model: %s", model_reference)
        try:
            from deepgram import DeepgramClient

            start_time = time.perf_counter()
            self._client = DeepgramClient(api_key=self.api_key)
            logger.info(
                "Deepgram client initialized in %.3f seconds",
                time.perf_counter() - start_time,
            )
        except Exception as e:
            logger.error("Failed to initialize Deepgram client: %s", e)
            raise ModelLoadError(f"Failed to initialize Deepgram client: {e}") from e

        self.model = model_reference

    async def unload(self) -> None:
        """Release the client and stop an owned thread pool."""
        self._client = None
        self.model = None
        if self._executor_owned and self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
            self.executor = None

    async def transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> TranscriptionResult:
        """Transcribe one utterance using the Deepgram API.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the request fails or times out
        """
        if self._client is None:
            raise ModelNotLoadedError("Deepgram client not initialized")

        audio_bytes = encode_wav(samples, sample_rate)
        loop = asyncio.get_running_loop()

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    self._get_executor(),
                    self._transcribe_sync,
                    audio_bytes,
                    language,
                    word_timestamps,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Transcription timed out after %.1f seconds", self.timeout)
            raise EngineError(f"Transcription timed out after {self.timeout} seconds") from e
        except EngineError:
            raise
        except Exception as e:
            logger.error("Transcription failed: %s", e, exc_info=True)
            raise EngineError(f"Transcription failed: {e}") from e

    def stream_transcribe(self, *args, **kwargs):
        raise EngineError("Deepgram engine does not support streaming transcription")

    def _transcribe_sync(
        self,
        audio_bytes: bytes,
        language: str | None,
        word_timestamps: bool,
    ) -> TranscriptionResult:
        options = {
            "model": self.model,
            "smart_format": self.smart_format,
            "punctuate": self.punctuate,
        }
        if language:
            options["language"] = language
        else:
            options["detect_language"] = True

        logger.debug("Deepgram options: %s", options)

        from deepgram.core.api_error import ApiError

        try:
            response = self._client.listen.v1.media.transcribe_file(
                request=audio_bytes,
                **options,
            )
        except ApiError as e:
            if e.status_code == 401:
                raise EngineError("Invalid Deepgram API key") from e
            elif e.status_code == 429:
                raise EngineError("Deepgram API rate limit exceeded") from e
            elif e.status_code is not None and e.status_code >= 500:
                raise EngineError(f"Deepgram server error: {e.status_code}") from e
            else:
                raise EngineError(f"Deepgram API error ({e.status_code}): {e.body}") from e

        channel = response.results.channels[0]
        alternative = channel.alternatives[0]
        text = normalize_text(alternative.transcript or "")

        detected_language = language or getattr(channel, "detected_language", None)

        words = None
        raw_words = getattr(alternative, "words", None) or []
        if word_timestamps:
            words = [
                WordTimestamp(
                    word=w.word,
                    start=float(w.start),
                    end=float(w.end),
                    probability=float(getattr(w, "confidence", 1.0) or 0.0),
                )
                for w in raw_words
            ]

        duration = float(getattr(getattr(response, "metadata", None), "duration", 0.0) or 0.0)
        start_time = float(raw_words[0].start) if raw_words else 0.0
        end_time = max(start_time, float(raw_words[-1].end) if raw_words else duration)
        confidence = float(getattr(alternative, "confidence", 0.0) or 0.0)

        return TranscriptionResult(
            text=text,
            language=detected_language,
            confidence=min(1.0, max(0.0, confidence)),
            start_time=start_time,
            end_time=end_time,
            is_final=True,
            words=words,
        )
