"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "AudioSourceConfig",
    "SegmenterConfig",
    "ModelConfig",
    "PipelineOptions",
    "PipelineConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
    "RECOGNITION_ENGINES",
    "TRANSLATION_ENGINES",
    "SYNTHESIS_ENGINES",
]

RECOGNITION_ENGINES = ("faster_whisper", "deepgram", "cloud_api")
TRANSLATION_ENGINES = ("nllb", "cloud_api")
SYNTHESIS_ENGINES = ("piper", "cloud_api")
AUDIO_SOURCES = ("microphone", "file")

_API_KEY_ENV = {
    "deepgram": "DEEPGRAM_API_KEY",
    "cloud_api": "OPENAI_API_KEY",
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioSourceConfig:
    """Audio source configuration."""

    source: str = "microphone"
    sample_rate: int = 16000
    channels: int = 1
    chunk_duration_ms: int = 100
    device: int | str | None = None
    file_path: str | None = None
    realtime: bool = False
    queue_size: int = 64


@dataclass
class SegmenterConfig:
    """Voice-activity buffering thresholds."""

    silence_threshold: float = 0.01
    min_speech_duration: float = 0.5
    max_silence_chunks: int = 5
    max_utterance_duration: float = 30.0


@dataclass
class ModelConfig:
    """Inference engine configuration for one modality."""

    model_name: str = "base"
    engine_type: str = "faster_whisper"
    model_path: str | None = None
    cloud_endpoint: str | None = None
    api_key: str | None = None
    max_tokens: int = 256
    temperature: float = 0.0
    use_gpu: bool = False
    compute_type: str = "int8"
    beam_size: int = 5
    timeout: float = 30.0
    model_directory: str | None = None

    @property
    def model_reference(self) -> str:
        """Model path when configured, otherwise the model name."""
        return self.model_path or self.model_name


@dataclass
class PipelineOptions:
    """Language selection and feature flags."""

    source_language: str = "auto"
    target_language: str | None = None
    enable_translation: bool = False
    enable_tts: bool = False
    enable_word_timestamps: bool = True
    prefer_streaming: bool = True
    skip_silent_utterances: bool = True
    tts_voice: str | None = None
    tts_speed: float = 1.0
    synthesize_source: bool = False
    stop_timeout: float = 5.0
    feed_queue_size: int = 256


@dataclass
class PipelineConfig:
    """Everything a pipeline run needs; copied on start and fixed for the run."""

    audio: AudioSourceConfig = field(default_factory=AudioSourceConfig)
    segmenter: SegmenterConfig = field(default_factory=SegmenterConfig)
    recognition: ModelConfig = field(default_factory=ModelConfig)
    translation: ModelConfig | None = None
    synthesis: ModelConfig | None = None
    options: PipelineOptions = field(default_factory=PipelineOptions)

    def validate(self) -> None:
        """Validate pipeline settings.

        Raises:
            ConfigError: If any section is inconsistent
        """
        validate_audio_config(self.audio)
        validate_segmenter_config(self.segmenter)
        validate_model_config(self.recognition, RECOGNITION_ENGINES, "recognition")

        opts = self.options
        if opts.enable_translation:
            if self.translation is None:
                raise ConfigError("enable_translation requires a [translation] section")
            if not opts.target_language:
                raise ConfigError("enable_translation requires pipeline.target_language")
            validate_model_config(self.translation, TRANSLATION_ENGINES, "translation")

        if opts.enable_tts:
            if self.synthesis is None:
                raise ConfigError("enable_tts requires a [synthesis] section")
            validate_model_config(self.synthesis, SYNTHESIS_ENGINES, "synthesis")

        if opts.tts_speed <= 0:
            raise ConfigError(f"tts_speed must be positive, got {opts.tts_speed}")
        if opts.stop_timeout <= 0:
            raise ConfigError(f"stop_timeout must be positive, got {opts.stop_timeout}")
        if opts.feed_queue_size < 0:
            raise ConfigError(
                f"feed_queue_size must be non-negative, got {opts.feed_queue_size}"
            )


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. SUBTITLES_CONFIG env var
                  2. ./subtitles.toml
                  3. ~/.config/subtitles.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path)
        return cls.from_dict(raw_data, env=env)

    @classmethod
    def from_dict(cls, raw_data: dict, *, env: Mapping[str, str] | None = None) -> "Config":
        """Build configuration from already parsed data.

        Raises:
            ConfigError: If values are invalid
        """
        coerced = _coerce_config_values(raw_data, env or {})
        try:
            translation = coerced.get("translation")
            synthesis = coerced.get("synthesis")
            pipeline = PipelineConfig(
                audio=AudioSourceConfig(**coerced["audio"]),
                segmenter=SegmenterConfig(**coerced["segmenter"]),
                recognition=ModelConfig(**coerced["recognition"]),
                translation=ModelConfig(**translation) if translation is not None else None,
                synthesis=ModelConfig(**synthesis) if synthesis is not None else None,
                options=PipelineOptions(**coerced["pipeline"]),
            )
            return cls(pipeline=pipeline, general=GeneralConfig(**coerced["general"]))
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration, including the audio device.

        Raises:
            ConfigError: If configured devices unavailable or values invalid
        """
        try:
            self.pipeline.validate()
            if self.pipeline.audio.source == "microphone":
                validate_audio_device(
                    self.pipeline.audio.sample_rate,
                    self.pipeline.audio.channels,
                    self.pipeline.audio.device,
                )
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Validation failed: {e}") from e


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. SUBTITLES_CONFIG environment variable
    3. ./subtitles.toml (current directory)
    4. ~/.config/subtitles.toml (user config directory)

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("SUBTITLES_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("subtitles.toml"))
    candidates.append(Path.home() / ".config" / "subtitles.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Optional model sections stay None when absent; API keys fall back to
    the environment variable matching the engine type.
    """
    coerced: dict = {}

    for section in ("audio", "segmenter", "recognition", "pipeline", "general"):
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    for section in ("translation", "synthesis"):
        value = raw_data.get(section)
        if value is None:
            coerced[section] = None
            continue
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    for section in ("recognition", "translation", "synthesis"):
        model_section = coerced[section]
        if model_section is None or model_section.get("api_key"):
            continue
        env_var = _API_KEY_ENV.get(model_section.get("engine_type", ""))
        if env_var and env.get(env_var):
            model_section["api_key"] = env[env_var]

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except (ImportError, OSError):
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioSourceConfig) -> None:
    """Validate audio source settings.

    Raises:
        ConfigError: If the source is unknown or a value is out of range
    """
    if audio_cfg.source not in AUDIO_SOURCES:
        raise ConfigError(
            f"Invalid audio source '{audio_cfg.source}'. "
            f"Must be one of: {', '.join(AUDIO_SOURCES)}"
        )
    if audio_cfg.source == "file" and not audio_cfg.file_path:
        raise ConfigError("audio.file_path is required when audio.source is 'file'")
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.channels < 1:
        raise ConfigError(f"channels must be at least 1, got {audio_cfg.channels}")
    if audio_cfg.chunk_duration_ms <= 0:
        raise ConfigError(
            f"chunk_duration_ms must be positive, got {audio_cfg.chunk_duration_ms}"
        )
    if audio_cfg.queue_size <= 0:
        raise ConfigError(f"queue_size must be positive, got {audio_cfg.queue_size}")


def validate_segmenter_config(seg_cfg: SegmenterConfig) -> None:
    """Validate segmenter thresholds.

    Raises:
        ConfigError: If a threshold is out of range
    """
    if seg_cfg.silence_threshold < 0:
        raise ConfigError(
            f"silence_threshold must be non-negative, got {seg_cfg.silence_threshold}"
        )
    if seg_cfg.min_speech_duration < 0:
        raise ConfigError(
            f"min_speech_duration must be non-negative, got {seg_cfg.min_speech_duration}"
        )
    if seg_cfg.max_silence_chunks < 1:
        raise ConfigError(
            f"max_silence_chunks must be at least 1, got {seg_cfg.max_silence_chunks}"
        )
    if seg_cfg.max_utterance_duration < 0:
        raise ConfigError(
            "max_utterance_duration must be non-negative, "
            f"got {seg_cfg.max_utterance_duration}"
        )


def validate_model_config(
    model_cfg: ModelConfig,
    valid_engines: tuple[str, ...],
    section: str,
) -> None:
    """Validate model configuration for one modality.

    Raises:
        ConfigError: If model configuration is invalid
    """
    if model_cfg.engine_type not in valid_engines:
        raise ConfigError(
            f"Invalid {section} engine_type '{model_cfg.engine_type}'. "
            f"Must be one of: {', '.join(valid_engines)}"
        )

    if model_cfg.engine_type in _API_KEY_ENV and not model_cfg.api_key:
        raise ConfigError(
            f"{section}.api_key is required for engine '{model_cfg.engine_type}'. "
            f"Set it in config file or via {_API_KEY_ENV[model_cfg.engine_type]}."
        )

    if model_cfg.engine_type == "faster_whisper":
        valid_compute_types = ("int8", "float16", "float32", "default")
        if model_cfg.compute_type not in valid_compute_types:
            raise ConfigError(
                f"Invalid compute_type '{model_cfg.compute_type}'. "
                f"Must be one of: {', '.join(valid_compute_types)}"
            )
        if model_cfg.beam_size <= 0:
            raise ConfigError(f"beam_size must be positive, got {model_cfg.beam_size}")

    if model_cfg.engine_type == "piper" and not model_cfg.cloud_endpoint:
        raise ConfigError(f"{section}.cloud_endpoint (Piper service URL) is required")

    if model_cfg.max_tokens <= 0:
        raise ConfigError(f"max_tokens must be positive, got {model_cfg.max_tokens}")
    if model_cfg.timeout <= 0:
        raise ConfigError(f"{section}.timeout must be positive, got {model_cfg.timeout}")


def validate_audio_device(sample_rate: int, channels: int, device: int | str | None) -> None:
    """Validate that audio configuration is supported.

    Raises:
        ConfigError: If no suitable audio device found
    """
    devices = discover_audio_devices()
    if not devices:
        logger.warning("No audio capture devices found, skipping device validation")
        return

    for dev in devices:
        if not _device_matches_selection(device, dev):
            continue
        if dev["channels"] >= channels and dev["sample_rate"] > 0:
            logger.debug(
                "Audio device validated: %s (%dHz, %d channels)",
                dev["name"],
                dev["sample_rate"],
                dev["channels"],
            )
            return

    device_list = "\n  ".join(
        f"{d['name']} ({d['channels']} ch, {d['sample_rate']}Hz)" for d in devices
    )
    raise ConfigError(
        f"No audio device supports {channels} channels at {sample_rate}Hz\n"
        f"Available devices:\n  {device_list}"
    )


def _device_matches_selection(selection: int | str | None, device: dict) -> bool:
    """Check whether a device matches the selection criteria."""

    if selection is None:
        return True
    if isinstance(selection, int):
        return device["index"] == selection

    normalized = selection.strip().lower()
    candidate = device.get("name", "").strip().lower()

    if candidate == normalized:
        return True

    return normalized in candidate


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
