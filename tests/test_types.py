"""Tests for shared types and audio helpers."""

import numpy as np
import pytest

from live_subtitles._types import (
    AudioChunk,
    AudioFormat,
    TranscriptionResult,
    TranslationOutcome,
    TranslationResult,
    WordTimestamp,
)
from live_subtitles.audio_utils import (
    change_speed,
    decode_wav,
    encode_wav,
    prepare_for_whisper,
    to_mono,
    wav_duration,
    wav_sample_rate,
)


class TestAudioTypes:
    """Tests for AudioFormat and AudioChunk."""

    def test_format_validation(self):
        """Test non-positive rates and empty channel counts are rejected."""
        with pytest.raises(ValueError):
            AudioFormat(0)
        with pytest.raises(ValueError):
            AudioFormat(16000, channels=0)

    def test_chunk_properties(self):
        """Test frames, duration and energy."""
        chunk = AudioChunk(np.full(800, -0.5), 1.0, AudioFormat(16000))
        assert chunk.frames == 800
        assert chunk.duration == pytest.approx(0.05)
        assert chunk.energy == pytest.approx(0.5)
        assert chunk.samples.dtype == np.float32

    def test_mono_column_flattened(self):
        """Test (frames, 1) input is stored 1-D."""
        chunk = AudioChunk(np.zeros((100, 1)), 0.0, AudioFormat(16000))
        assert chunk.samples.shape == (100,)

    def test_shape_must_match_channels(self):
        """Test stereo format requires (frames, 2) samples."""
        with pytest.raises(ValueError):
            AudioChunk(np.zeros(100), 0.0, AudioFormat(16000, channels=2))

    def test_empty_chunk_energy(self):
        """Test an empty chunk has zero energy."""
        assert AudioChunk(np.zeros(0), 0.0, AudioFormat(16000)).energy == 0.0


class TestTranscriptionResult:
    """Tests for result validation and time shifting."""

    def test_end_before_start_rejected(self):
        """Test inverted time ranges are invalid."""
        with pytest.raises(ValueError, match="must not precede"):
            TranscriptionResult(text="x", start_time=2.0, end_time=1.0)

    def test_confidence_range(self):
        """Test confidence outside [0, 1] is invalid."""
        with pytest.raises(ValueError, match="confidence"):
            TranscriptionResult(text="x", confidence=1.5)

    def test_shifted_moves_words(self):
        """Test shifting moves the result and every word."""
        result = TranscriptionResult(
            text="hi", start_time=0.0, end_time=1.0, words=[WordTimestamp("hi", 0.2, 0.6)]
        )
        moved = result.shifted(10.0)
        assert moved.start_time == 10.0
        assert moved.end_time == 11.0
        assert moved.words[0].start == pytest.approx(10.2)
        assert isinstance(result.words, tuple)

    def test_translation_outcome_ok(self):
        """Test outcome success requires a result and no error."""
        result = TranslationResult("a", "b", "en", "it")
        assert TranslationOutcome(0, "a", result=result).ok
        assert not TranslationOutcome(0, "a", error=RuntimeError()).ok


class TestAudioUtils:
    """Tests for conversion helpers."""

    def test_to_mono_averages(self):
        """Test stereo is averaged to mono."""
        stereo = np.stack([np.ones(10), np.zeros(10)], axis=1)
        assert np.allclose(to_mono(stereo), 0.5)

    def test_prepare_for_whisper(self):
        """Test resampling to 16 kHz and clipping."""
        audio = prepare_for_whisper(np.full(8000, 2.0, dtype=np.float32), 8000)
        assert len(audio) == 16000
        assert audio.max() <= 1.0

    def test_wav_header_helpers(self):
        """Test duration and rate are read back from encoded WAV."""
        wav = encode_wav(np.zeros(11025, dtype=np.float32), 22050)
        assert wav_duration(wav) == pytest.approx(0.5)
        assert wav_sample_rate(wav) == 22050

    def test_wav_helpers_on_garbage(self):
        """Test unparseable bytes give the defaults."""
        assert wav_duration(b"not a wav") == 0.0
        assert wav_sample_rate(b"not a wav", default=16000) == 16000

    def test_change_speed(self):
        """Test speeding up shortens the audio and keeps the rate."""
        wav = encode_wav(np.zeros(16000, dtype=np.float32), 16000)
        faster = change_speed(wav, 2.0)
        assert wav_duration(faster) == pytest.approx(0.5)
        assert wav_sample_rate(faster) == 16000
        assert change_speed(wav, 1.0) is wav

    def test_change_speed_stereo(self):
        """Test stereo audio keeps its channels."""
        wav = encode_wav(np.zeros((8000, 2), dtype=np.float32), 8000)
        samples, rate = decode_wav(change_speed(wav, 0.5))
        assert samples.shape == (16000, 2)
        assert rate == 8000

    def test_change_speed_rejects_bad_input(self):
        """Test non-positive speed and undecodable bytes raise."""
        with pytest.raises(ValueError):
            change_speed(b"", 0.0)
        with pytest.raises(RuntimeError, match="Failed to decode WAV"):
            change_speed(b"not a wav", 1.5)
