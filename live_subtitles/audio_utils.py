"""Sample conversion helpers shared by engines and sources."""

import io
import logging
import wave
from fractions import Fraction
from math import gcd

import numpy as np

logger = logging.getLogger(__name__)

WHISPER_SAMPLE_RATE = 16000


def to_mono(samples: np.ndarray) -> np.ndarray:
    """Average channels of a (frames, channels) array."""
    if samples.ndim > 1:
        return np.mean(samples, axis=1).astype(np.float32)
    return samples.astype(np.float32, copy=False)


def resample(samples: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """Resample mono audio with a polyphase filter."""
    if orig_sr == target_sr or samples.size == 0:
        return samples
    from scipy.signal import resample_poly

    divisor = gcd(int(target_sr), int(orig_sr))
    logger.debug("Resampling from %d Hz to %d Hz", orig_sr, target_sr)
    return resample_poly(samples, target_sr // divisor, orig_sr // divisor).astype(np.float32)


def prepare_for_whisper(samples: np.ndarray, sample_rate: int) -> np.ndarray:
    """Convert to 16 kHz mono float32 clipped to [-1, 1] as required by Whisper."""
    audio = resample(to_mono(samples), sample_rate, WHISPER_SAMPLE_RATE)
    return np.clip(audio, -1.0, 1.0).astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples as 16-bit PCM WAV bytes.

    Raises:
        RuntimeError: If encoding fails
    """
    channels = 1 if samples.ndim == 1 else samples.shape[1]
    try:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(channels)
            wav_file.setsampwidth(2)
            wav_file.setframerate(sample_rate)

            audio_int16 = np.clip(samples * 32767, -32768, 32767).astype(np.int16)
            wav_file.writeframes(audio_int16.tobytes())
        return buffer.getvalue()
    except Exception as e:
        logger.error("Failed to encode WAV: %s", e)
        raise RuntimeError(f"Failed to encode WAV: {e}") from e


def wav_duration(data: bytes) -> float:
    """Duration in seconds of WAV bytes, 0.0 if not parseable."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wav_file:
            rate = wav_file.getframerate()
            return wav_file.getnframes() / rate if rate else 0.0
    except (wave.Error, EOFError):
        return 0.0


def wav_sample_rate(data: bytes, default: int = 22050) -> int:
    """Sample rate of WAV bytes, ``default`` if not parseable."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wav_file:
            return wav_file.getframerate()
    except (wave.Error, EOFError):
        return default


def decode_wav(data: bytes) -> tuple[np.ndarray, int]:
    """Decode 16-bit PCM WAV bytes to float samples and sample rate.

    Raises:
        RuntimeError: If the data is not 16-bit PCM WAV
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wav_file:
            channels = wav_file.getnchannels()
            sample_width = wav_file.getsampwidth()
            rate = wav_file.getframerate()
            frames = wav_file.readframes(wav_file.getnframes())
    except (wave.Error, EOFError) as e:
        raise RuntimeError(f"Failed to decode WAV: {e}") from e
    if sample_width != 2:
        raise RuntimeError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    samples = np.frombuffer(frames, dtype=np.int16).astype(np.float32) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return samples, rate


def change_speed(data: bytes, speed: float) -> bytes:
    """Time-scale WAV bytes by ``speed`` (2.0 plays twice as fast).

    Samples are resampled and written back at the original rate, so pitch
    shifts with tempo.

    Raises:
        RuntimeError: If the WAV cannot be decoded or encoded
    """
    if speed <= 0:
        raise ValueError(f"speed must be positive, got {speed}")
    if speed == 1.0:
        return data

    samples, rate = decode_wav(data)
    if samples.shape[0] == 0:
        return data
    ratio = Fraction(speed).limit_denominator(100)
    from scipy.signal import resample_poly

    logger.debug(
        "Changing speech speed by %.2f (%d/%d)", speed, ratio.numerator, ratio.denominator
    )
    scaled = resample_poly(samples, ratio.denominator, ratio.numerator, axis=0)
    return encode_wav(scaled.astype(np.float32), rate)
