"""Audio sources feeding the pipeline through a bounded chunk queue."""

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator

import numpy as np
import soundfile

from live_subtitles._types import AudioChunk, AudioFormat
from live_subtitles.config import AudioSourceConfig, ConfigError

logger = logging.getLogger(__name__)

_END = object()


class AudioSource:
    """Producer of ordered audio chunks.

    Subclasses implement ``_open`` and ``_close``; chunks travel to the
    consumer through a capacity-bounded asyncio.Queue read via ``chunks()``.
    """

    def __init__(self, audio_format: AudioFormat, queue_size: int = 64):
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self.format = audio_format
        self.queue_size = queue_size
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._capturing = False
        self._stopped = False

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    async def start(self) -> None:
        """Begin delivering chunks.

        Raises:
            RuntimeError: If already capturing or the source cannot be opened
        """
        if self._capturing:
            raise RuntimeError("Cannot start capture: source already capturing")

        if self._stopped:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
            self._stopped = False

        self._capturing = True
        try:
            await self._open()
        except Exception as e:
            self._capturing = False
            self._end_stream()
            if isinstance(e, RuntimeError):
                raise
            raise RuntimeError(f"Failed to start audio source: {e}") from e

    async def stop(self) -> None:
        """Stop delivering chunks; idempotent and never blocks on the queue."""
        if not self._capturing:
            self._end_stream()
            return

        self._capturing = False
        try:
            await self._close()
        finally:
            self._end_stream()
            logger.info("Audio source stopped")

    async def chunks(self) -> AsyncIterator[AudioChunk]:
        """Iterate chunks until the source stops or runs out."""
        queue = self._queue
        while True:
            if self._stopped and queue.empty():
                return
            item = await queue.get()
            if item is _END:
                return
            yield item

    def _end_stream(self) -> None:
        self._stopped = True
        if not self._queue.full():
            self._queue.put_nowait(_END)

    async def _open(self) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        raise NotImplementedError


class MicrophoneSource(AudioSource):
    """Captures audio via sounddevice.

    The PortAudio callback runs on its own thread and hands chunks to the
    event loop; when the queue is full the chunk is dropped and counted.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_duration_ms: int = 100,
        device: int | str | None = None,
        queue_size: int = 64,
    ):
        """Initialize microphone source.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            chunk_duration_ms: Duration of each delivered chunk
            device: Audio device index or name (None for default)
            queue_size: Chunks buffered before new ones are dropped
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if chunk_duration_ms <= 0:
            raise ValueError("chunk_duration_ms must be positive")

        super().__init__(AudioFormat(sample_rate, channels, 32), queue_size)
        self.chunk_size = max(1, sample_rate * chunk_duration_ms // 1000)
        self.device = device
        self.dropped_chunks = 0
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None

        logger.info(
            "MicrophoneSource initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    async def _open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.dropped_chunks = 0
        try:
            import sounddevice
        except (ImportError, OSError) as e:
            raise RuntimeError(f"sounddevice not available: {e}") from e

        resolved_device = self._resolve_device_selection()

        try:
            self._stream = sounddevice.InputStream(
                device=resolved_device,
                samplerate=self.format.sample_rate,
                channels=self.format.channels,
                blocksize=self.chunk_size,
                callback=self._callback,
                dtype="float32",
            )
            self._stream.start()
            logger.info(
                "Audio stream started (sample_rate=%d, channels=%d, device=%s)",
                self.format.sample_rate,
                self.format.channels,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._stream = None
            logger.error("Failed to start audio stream: %s", e)
            raise RuntimeError(f"Failed to start audio stream: {e}") from e

    async def _close(self) -> None:
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None

        if self.dropped_chunks:
            logger.warning("Dropped %d audio chunks during capture", self.dropped_chunks)

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival (PortAudio thread)."""
        if status:
            logger.warning("Audio stream status: %s", status)

        chunk = AudioChunk(indata.copy(), time.monotonic(), self.format)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, chunk)
        except RuntimeError:
            # event loop already closed during shutdown
            pass

    def _enqueue(self, chunk: AudioChunk) -> None:
        if not self._capturing:
            return
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped_chunks += 1
            logger.warning("Audio queue full, dropping chunk (%d dropped)", self.dropped_chunks)

    @staticmethod
    def list_devices() -> dict[int, str]:
        """List available audio capture devices.

        Returns:
            Dict mapping device index to name (e.g., {0: "Default", 2: "USB Audio"})
            Empty dict if no devices found or error occurs
        """
        try:
            import sounddevice
        except (ImportError, OSError):
            logger.warning("sounddevice not available, cannot enumerate audio devices")
            return {}

        try:
            devices = sounddevice.query_devices()

            if isinstance(devices, dict):
                devices = [devices]

            result = {}
            for idx, dev_info in enumerate(devices):
                if dev_info.get("max_input_channels", 0) > 0:
                    result[idx] = dev_info.get("name", f"Device {idx}")

            logger.debug("Found %d audio input devices", len(result))
            return result

        except sounddevice.PortAudioError as e:
            logger.warning("PortAudio error querying devices: %s", e)
            return {}
        except Exception as e:
            logger.warning("Error querying audio devices: %s", e)
            return {}

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            import sounddevice

            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_matches: list[tuple[int, str]] = []
        available: list[str] = []

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue

            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                return idx

            if target in normalized:
                partial_matches.append((idx, name))

        if partial_matches:
            idx, name = partial_matches[0]
            logger.debug(
                "Resolved audio device '%s' to index %d via partial match (%s)",
                self.device,
                idx,
                name,
            )
            return idx

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None


class ArrayAudioSource(AudioSource):
    """Plays an in-memory sample array as fixed-size chunks.

    A reader task pushes chunks with back-pressure; ``realtime`` paces
    delivery at the audio's own speed.
    """

    def __init__(
        self,
        samples: np.ndarray | None,
        sample_rate: int,
        channels: int = 1,
        chunk_duration_ms: int = 100,
        realtime: bool = False,
        queue_size: int = 64,
    ):
        if chunk_duration_ms <= 0:
            raise ValueError("chunk_duration_ms must be positive")
        super().__init__(AudioFormat(sample_rate, channels, 32), queue_size)
        self.chunk_frames = max(1, sample_rate * chunk_duration_ms // 1000)
        self.realtime = realtime
        self._samples = samples
        self._reader_task: asyncio.Task | None = None

    async def _load(self) -> np.ndarray:
        if self._samples is None:
            raise RuntimeError("No samples to play")
        return self._samples

    async def _open(self) -> None:
        samples = await self._load()
        self._reader_task = asyncio.create_task(self._feed(samples))

    async def _close(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _feed(self, samples: np.ndarray) -> None:
        sample_rate = self.format.sample_rate
        total = len(samples)
        for offset in range(0, total, self.chunk_frames):
            chunk = AudioChunk(
                samples[offset : offset + self.chunk_frames],
                offset / sample_rate,
                self.format,
            )
            await self._queue.put(chunk)
            if self.realtime:
                await asyncio.sleep(chunk.duration)

        logger.info("Audio playback finished (%.2fs)", total / sample_rate)
        self._capturing = False
        self._stopped = True
        await self._queue.put(_END)


class FileSource(ArrayAudioSource):
    """Plays an audio file decoded with soundfile."""

    def __init__(
        self,
        path: str | Path,
        chunk_duration_ms: int = 100,
        realtime: bool = False,
        queue_size: int = 64,
    ):
        """Initialize file source.

        Raises:
            RuntimeError: If the file cannot be inspected
        """
        self.path = Path(path)
        try:
            info = soundfile.info(str(self.path))
        except Exception as e:
            raise RuntimeError(f"Cannot open audio file {self.path}: {e}") from e

        super().__init__(
            None,
            sample_rate=info.samplerate,
            channels=info.channels,
            chunk_duration_ms=chunk_duration_ms,
            realtime=realtime,
            queue_size=queue_size,
        )

    async def _load(self) -> np.ndarray:
        loop = asyncio.get_running_loop()
        try:
            samples, _ = await loop.run_in_executor(None, self._read)
        except Exception as e:
            logger.error("Failed to read audio file %s: %s", self.path, e)
            raise RuntimeError(f"Failed to read audio file {self.path}: {e}") from e
        logger.debug("Loaded audio file %s: shape=%s", self.path, samples.shape)
        return samples

    def _read(self):
        return soundfile.read(str(self.path), dtype="float32", always_2d=False)


def create_audio_source(config: AudioSourceConfig) -> AudioSource:
    """Construct the audio source described by configuration.

    Raises:
        ConfigError: If the source kind is unknown or incomplete
    """
    if config.source == "microphone":
        return MicrophoneSource(
            sample_rate=config.sample_rate,
            channels=config.channels,
            chunk_duration_ms=config.chunk_duration_ms,
            device=config.device,
            queue_size=config.queue_size,
        )
    if config.source == "file":
        if not config.file_path:
            raise ConfigError("audio.file_path is required when audio.source is 'file'")
        return FileSource(
            config.file_path,
            chunk_duration_ms=config.chunk_duration_ms,
            realtime=config.realtime,
            queue_size=config.queue_size,
        )
    raise ConfigError(f"Unknown audio source '{config.source}'")


def list_input_devices() -> dict[int, str]:
    """Audio capture devices by index, empty if none can be queried."""
    return MicrophoneSource.list_devices()
