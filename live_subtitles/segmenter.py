"""Energy-based voice-activity buffering.

Turns a continuous chunk stream into utterances: samples accumulate until a
run of quiet chunks closes the utterance. This is a heuristic, so cutting
speech slightly early or late is expected; the thresholds are tunable.
"""

import logging
from typing import AsyncIterator

import numpy as np

from live_subtitles._types import AudioChunk, AudioFormat, Utterance
from live_subtitles.config import SegmenterConfig

logger = logging.getLogger(__name__)


class Segmenter:
    """Accumulates audio chunks and emits utterances bounded by silence."""

    def __init__(
        self,
        silence_threshold: float = 0.01,
        min_speech_duration: float = 0.5,
        max_silence_chunks: int = 5,
        max_utterance_duration: float = 30.0,
    ):
        """Initialize segmenter.

        Args:
            silence_threshold: Mean absolute amplitude below which a chunk is silent
            min_speech_duration: Seconds buffered before silence may close an utterance
            max_silence_chunks: Consecutive silent chunks that close an utterance
            max_utterance_duration: Force-emit after this many seconds (0 disables)
        """
        if silence_threshold < 0:
            raise ValueError("silence_threshold must be non-negative")
        if min_speech_duration < 0:
            raise ValueError("min_speech_duration must be non-negative")
        if max_silence_chunks < 1:
            raise ValueError("max_silence_chunks must be at least 1")
        if max_utterance_duration < 0:
            raise ValueError("max_utterance_duration must be non-negative")

        self.silence_threshold = silence_threshold
        self.min_speech_duration = min_speech_duration
        self.max_silence_chunks = max_silence_chunks
        self.max_utterance_duration = max_utterance_duration

        self._buffer: list[np.ndarray] = []
        self._buffered_frames = 0
        self._format: AudioFormat | None = None
        self._silence_run = 0
        self._speech_chunks = 0
        self._next_index = 0
        self._emitted_seconds = 0.0

    @classmethod
    def from_config(cls, config: SegmenterConfig) -> "Segmenter":
        """Create Segmenter from configuration."""
        return cls(
            silence_threshold=config.silence_threshold,
            min_speech_duration=config.min_speech_duration,
            max_silence_chunks=config.max_silence_chunks,
            max_utterance_duration=config.max_utterance_duration,
        )

    @property
    def buffered_duration(self) -> float:
        if self._format is None:
            return 0.0
        return self._buffered_frames / self._format.sample_rate

    def push(self, chunk: AudioChunk) -> list[Utterance]:
        """Add a chunk and return any utterances it completes.

        Args:
            chunk: Next audio chunk in arrival order

        Returns:
            Utterances closed by this chunk (usually none or one)
        """
        emitted: list[Utterance] = []

        if self._format is not None and chunk.format != self._format and self._buffer:
            logger.debug("Audio format changed, flushing buffered audio")
            emitted.append(self._emit("format_change"))
        self._format = chunk.format

        self._buffer.append(chunk.samples)
        self._buffered_frames += chunk.frames

        if chunk.energy < self.silence_threshold:
            self._silence_run += 1
        else:
            self._silence_run = 0
            self._speech_chunks += 1

        if (
            self._silence_run >= self.max_silence_chunks
            and self.buffered_duration >= self.min_speech_duration
        ):
            emitted.append(self._emit("silence"))
        elif self.max_utterance_duration and self.buffered_duration >= self.max_utterance_duration:
            emitted.append(self._emit("max_duration"))

        return emitted

    def flush(self) -> Utterance | None:
        """Emit whatever is buffered, regardless of silence state."""
        if not self._buffer:
            return None
        return self._emit("end_of_stream")

    def reset(self) -> None:
        """Discard buffered audio and restart numbering."""
        self._buffer = []
        self._buffered_frames = 0
        self._format = None
        self._silence_run = 0
        self._speech_chunks = 0
        self._next_index = 0
        self._emitted_seconds = 0.0

    async def segment(self, chunks: AsyncIterator[AudioChunk]) -> AsyncIterator[Utterance]:
        """Yield utterances from an async chunk stream, flushing at its end."""
        async for chunk in chunks:
            for utterance in self.push(chunk):
                yield utterance

        final = self.flush()
        if final is not None:
            yield final

    def _emit(self, reason: str) -> Utterance:
        if self._format is None or not self._buffer:
            raise RuntimeError("No buffered audio to emit")
        buffer, self._buffer = self._buffer, []
        samples = buffer[0] if len(buffer) == 1 else np.concatenate(buffer, axis=0)

        utterance = Utterance(
            samples=samples,
            format=self._format,
            start_time=self._emitted_seconds,
            index=self._next_index,
            speech_chunks=self._speech_chunks,
            reason=reason,
        )

        self._next_index += 1
        self._emitted_seconds += utterance.duration
        self._buffered_frames = 0
        self._silence_run = 0
        self._speech_chunks = 0

        logger.debug(
            "Utterance %d emitted (%s): %.2fs starting at %.2fs",
            utterance.index,
            reason,
            utterance.duration,
            utterance.start_time,
        )
        return utterance
