"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass, field, replace

import numpy as np


@dataclass(frozen=True)
class AudioFormat:
    """Sample rate, channel count and bit depth of an audio stream."""

    sample_rate: int
    channels: int = 1
    bit_depth: int = 16

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels < 1:
            raise ValueError(f"channels must be at least 1, got {self.channels}")


def _as_samples(samples, channels: int) -> np.ndarray:
    """Normalize raw samples to float32, 1-D for mono, (frames, channels) otherwise."""
    array = np.asarray(samples, dtype=np.float32)
    if channels == 1:
        if array.ndim == 2 and array.shape[1] == 1:
            array = array.reshape(-1)
        if array.ndim != 1:
            raise ValueError(f"mono samples must be 1-D, got shape {array.shape}")
    else:
        if array.ndim != 2 or array.shape[1] != channels:
            raise ValueError(
                f"expected samples of shape (frames, {channels}), got {array.shape}"
            )
    return array


@dataclass(frozen=True)
class AudioChunk:
    """Container for a chunk of captured audio."""

    samples: np.ndarray
    timestamp: float
    format: AudioFormat

    def __post_init__(self) -> None:
        object.__setattr__(self, "samples", _as_samples(self.samples, self.format.channels))

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.format.sample_rate

    @property
    def energy(self) -> float:
        """Mean absolute amplitude."""
        if self.samples.size == 0:
            return 0.0
        return float(np.mean(np.abs(self.samples)))


@dataclass(frozen=True)
class Utterance:
    """Contiguous run of audio judged to contain speech."""

    samples: np.ndarray
    format: AudioFormat
    start_time: float
    index: int
    speech_chunks: int = 0
    reason: str = "silence"

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.format.sample_rate

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass(frozen=True)
class WordTimestamp:
    """Timing of a single recognized word."""

    word: str
    start: float
    end: float
    probability: float = 1.0


@dataclass(frozen=True)
class TranscriptionResult:
    """Result from transcription, either a streaming partial or final."""

    text: str
    language: str | None = None
    confidence: float = 0.0
    start_time: float = 0.0
    end_time: float = 0.0
    is_final: bool = True
    words: tuple[WordTimestamp, ...] | None = None

    def __post_init__(self) -> None:
        if self.end_time < self.start_time:
            raise ValueError(
                f"end_time ({self.end_time}) must not precede start_time ({self.start_time})"
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.words is not None and not isinstance(self.words, tuple):
            object.__setattr__(self, "words", tuple(self.words))

    def shifted(self, offset: float) -> "TranscriptionResult":
        """Return a copy with all times moved by ``offset`` seconds."""
        words = None
        if self.words is not None:
            words = tuple(
                replace(w, start=w.start + offset, end=w.end + offset) for w in self.words
            )
        return replace(
            self,
            start_time=self.start_time + offset,
            end_time=self.end_time + offset,
            words=words,
        )


@dataclass(frozen=True)
class TranslationResult:
    """Translation of one finalized transcription."""

    source_text: str
    translated_text: str
    source_language: str
    target_language: str
    confidence: float = 0.0


@dataclass(frozen=True)
class SynthesisResult:
    """Synthesized speech for one text input."""

    audio: bytes
    format: str
    sample_rate: int
    duration: float = 0.0


@dataclass(frozen=True)
class TTSVoice:
    """Voice offered by a synthesis engine."""

    id: str
    name: str
    language: str

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.language})"


@dataclass
class TranslationOutcome:
    """Per-item outcome of a batch translation."""

    index: int
    text: str
    result: TranslationResult | None = None
    error: Exception | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None
