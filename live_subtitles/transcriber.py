"""Local speech recognition via Faster Whisper."""

import asyncio
import logging
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator

import numpy as np

from live_subtitles._types import TranscriptionResult, WordTimestamp
from live_subtitles.audio_utils import WHISPER_SAMPLE_RATE, prepare_for_whisper
from live_subtitles.engine import EngineType
from live_subtitles.errors import EngineError, ModelLoadError, ModelNotLoadedError

logger = logging.getLogger(__name__)


def normalize_text(text: str, lowercase: bool = False, capitalize_first: bool = True) -> str:
    """Post-process transcribed text.

    Strips whitespace, collapses duplicate spaces and ellipses, removes space
    before punctuation and applies optional case normalization.
    """
    text = text.strip()
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\.{2,}", ".", text)
    text = re.sub(r"\s+([.,!?;:])", r"\1", text)

    if lowercase:
        text = text.lower()
    elif capitalize_first and len(text) > 0 and text[0].islower():
        text = text[0].upper() + text[1:]

    return text


class WhisperEngine:
    """Encapsulates a Faster Whisper model.

    Inference runs inside a thread pool executor to avoid blocking the event
    loop. Streaming mode steps through the lazy segment generator so each
    decoded segment becomes a partial result.
    """

    engine_type = EngineType.FASTER_WHISPER
    supports_gpu = True
    supports_streaming = True

    def __init__(
        self,
        compute_type: str = "int8",
        model_directory: str | None = None,
        beam_size: int = 5,
        use_gpu: bool = False,
        timeout: float = 30.0,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize engine.

        Args:
            compute_type: Compute precision on CPU (int8, float16, float32)
            model_directory: Custom cache directory for model weights
            beam_size: Beam search width for decoding
            use_gpu: Try CUDA first, falling back to CPU
            timeout: Maximum seconds per inference call
            executor: Optional ThreadPoolExecutor for inference
        """
        self.compute_type = compute_type
        self.model_directory = model_directory
        self.beam_size = beam_size
        self.use_gpu = use_gpu
        self.timeout = timeout
        self.executor = executor
        self._executor_owned = executor is None
        self._model = None
        self._model_reference: str | None = None
        self._using_gpu = False
        logger.info(
            "WhisperEngine initialized: compute_type=%s, beam_size=%d, use_gpu=%s",
            compute_type,
            beam_size,
            use_gpu,
        )

    @property
    def is_model_loaded(self) -> bool:
        return self._model is not None

    @property
    def is_using_gpu(self) -> bool:
        return self._using_gpu

    def _get_executor(self) -> ThreadPoolExecutor:
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=1)
        return self.executor

    async def load(self, model_reference: str) -> None:
        """Load a Whisper model by name or path.

        Raises:
            ModelLoadError: If the model fails to load
        """
        if self._model is not None:
            await self.unload()

        logger.info("Loading Faster Whisper model: %s", model_reference)
        loop = asyncio.get_running_loop()
        start_time = time.perf_counter()
        try:
            self._model = await loop.run_in_executor(
                self._get_executor(), self._load_sync, model_reference
            )
        except Exception as e:
            logger.error("Failed to load model %s: %s", model_reference, e)
            raise ModelLoadError(
                f"Failed to load Whisper model '{model_reference}': {e}"
            ) from e

        self._model_reference = model_reference
        logger.info(
            "Model loaded in %.2f seconds (gpu=%s)",
            time.perf_counter() - start_time,
            self._using_gpu,
        )

    def _load_sync(self, model_reference: str):
        from faster_whisper import WhisperModel

        if self.use_gpu:
            try:
                model = WhisperModel(
                    model_reference,
                    device="cuda",
                    compute_type="float16",
                    download_root=self.model_directory,
                )
                self._using_gpu = True
                return model
            except Exception as e:
                logger.warning("GPU initialization failed, falling back to CPU: %s", e)

        self._using_gpu = False
        return WhisperModel(
            model_reference,
            device="cpu",
            compute_type=self.compute_type,
            download_root=self.model_directory,
        )

    async def unload(self) -> None:
        """Release the model and stop an owned thread pool."""
        if self._model is not None:
            logger.info("Unloading Whisper model %s", self._model_reference)
        self._model = None
        self._model_reference = None
        self._using_gpu = False
        if self._executor_owned and self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
            self.executor = None

    def _require_model(self):
        if self._model is None:
            raise ModelNotLoadedError("Whisper model not loaded")
        return self._model

    async def transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> TranscriptionResult:
        """Transcribe one utterance in a single pass.

        Raises:
            ModelNotLoadedError: If no model is bound
            EngineError: If inference fails or times out
        """
        model = self._require_model()
        audio = prepare_for_whisper(samples, sample_rate)
        loop = asyncio.get_running_loop()

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    self._get_executor(),
                    self._transcribe_sync,
                    model,
                    audio,
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

    def _transcribe_sync(
        self,
        model,
        audio: np.ndarray,
        language: str | None,
        word_timestamps: bool,
    ) -> TranscriptionResult:
        segments, info = model.transcribe(
            audio,
            language=language,
            beam_size=self.beam_size,
            word_timestamps=word_timestamps,
        )
        collected = list(segments)
        logger.debug("Transcription completed: %d segments", len(collected))
        return self._build_result(collected, info, len(audio) / WHISPER_SAMPLE_RATE, word_timestamps)

    async def stream_transcribe(
        self,
        samples: np.ndarray,
        sample_rate: int,
        language: str | None = None,
        word_timestamps: bool = True,
    ) -> AsyncIterator[TranscriptionResult]:
        """Yield a growing partial result as each segment is decoded.

        Raises:
            ModelNotLoadedError: If no model is bound
            EngineError: If inference fails or a step times out
        """
        model = self._require_model()
        audio = prepare_for_whisper(samples, sample_rate)
        duration = len(audio) / WHISPER_SAMPLE_RATE
        executor = self._get_executor()
        loop = asyncio.get_running_loop()

        try:
            segments, info = await asyncio.wait_for(
                loop.run_in_executor(
                    executor,
                    lambda: model.transcribe(
                        audio,
                        language=language,
                        beam_size=self.beam_size,
                        word_timestamps=word_timestamps,
                    ),
                ),
                timeout=self.timeout,
            )
            segment_iter = iter(segments)
            collected = []
            while True:
                segment = await asyncio.wait_for(
                    loop.run_in_executor(executor, next, segment_iter, None),
                    timeout=self.timeout,
                )
                if segment is None:
                    break
                collected.append(segment)
                yield self._build_result(collected, info, duration, word_timestamps, is_final=False)
        except asyncio.TimeoutError as e:
            logger.error("Streaming transcription step timed out after %.1f seconds", self.timeout)
            raise EngineError(f"Transcription timed out after {self.timeout} seconds") from e
        except EngineError:
            raise
        except Exception as e:
            logger.error("Streaming transcription failed: %s", e, exc_info=True)
            raise EngineError(f"Transcription failed: {e}") from e

    def _build_result(
        self,
        segments: list,
        info,
        duration: float,
        word_timestamps: bool,
        is_final: bool = True,
    ) -> TranscriptionResult:
        text = normalize_text(" ".join(seg.text for seg in segments))
        language = getattr(info, "language", None)

        if not segments:
            return TranscriptionResult(
                text=text,
                language=language,
                confidence=0.0,
                start_time=0.0,
                end_time=duration,
                is_final=is_final,
            )

        confidence = float(
            np.mean([min(1.0, math.exp(seg.avg_logprob)) for seg in segments])
        )

        words = None
        if word_timestamps:
            words = [
                WordTimestamp(
                    word=word.word.strip(),
                    start=float(word.start),
                    end=float(word.end),
                    probability=float(word.probability),
                )
                for seg in segments
                for word in (getattr(seg, "words", None) or [])
            ]

        start_time = float(segments[0].start)
        end_time = max(start_time, float(segments[-1].end))
        return TranscriptionResult(
            text=text,
            language=language,
            confidence=max(0.0, confidence),
            start_time=start_time,
            end_time=end_time,
            is_final=is_final,
            words=words,
        )
