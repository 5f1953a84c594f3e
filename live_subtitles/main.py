"""Typer CLI entrypoint for live-subtitles."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from live_subtitles._types import SynthesisResult, TranscriptionResult, TranslationResult
from live_subtitles.channels import Subscription
from live_subtitles.config import (
    Config,
    ConfigError,
    PipelineConfig,
    discover_audio_devices,
    load_config,
)
from live_subtitles.errors import PipelineError
from live_subtitles.pipeline import PipelineState, SubtitlePipeline

app = typer.Typer(help="Live subtitles, translation and speech from an audio stream")

logger = logging.getLogger(__name__)

WHISPER_MODELS = (
    "tiny",
    "base",
    "small",
    "medium",
    "large",
    "large-v2",
    "large-v3",
    "turbo",
)
VALID_DEVICES = ("cpu", "cuda")


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    file: Path | None = None,
    audio_device: int | None = None,
    model: str | None = None,
    device: str | None = None,
    translate_to: str | None = None,
    tts: bool = False,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    pipeline = cfg.pipeline

    if file is not None:
        if not file.exists():
            raise ConfigError(f"Audio file not found: {file}")
        logger.debug("Reading audio from file %s", file)
        pipeline.audio.source = "file"
        pipeline.audio.file_path = str(file)

    if audio_device is not None:
        available = discover_audio_devices()
        valid_indices = {d["index"] for d in available}
        if audio_device not in valid_indices:
            available_str = ", ".join(str(d["index"]) for d in available)
            raise ConfigError(
                f"Invalid audio device index {audio_device}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding audio device to index %d", audio_device)
        pipeline.audio.device = audio_device

    if model is not None:
        if pipeline.recognition.engine_type == "faster_whisper" and model not in WHISPER_MODELS:
            raise ConfigError(
                f"Invalid model '{model}'. Must be one of: {', '.join(WHISPER_MODELS)}"
            )
        logger.debug("Overriding recognition model to '%s'", model)
        pipeline.recognition.model_name = model
        pipeline.recognition.model_path = None

    if device is not None:
        if device not in VALID_DEVICES:
            raise ConfigError(
                f"Invalid device '{device}'. Must be one of: {', '.join(VALID_DEVICES)}"
            )
        logger.debug("Overriding compute device to '%s'", device)
        pipeline.recognition.use_gpu = device == "cuda"

    if translate_to is not None:
        logger.debug("Enabling translation to '%s'", translate_to)
        pipeline.options.enable_translation = True
        pipeline.options.target_language = translate_to

    if tts:
        logger.debug("Enabling speech synthesis")
        pipeline.options.enable_tts = True

    return cfg


def _format_subtitle(result: TranscriptionResult) -> str:
    if not result.is_final:
        return f"… {result.text}"
    return f"[{result.start_time:7.2f}s] {result.text}"


async def _print_subtitles(subscription: Subscription[TranscriptionResult]) -> None:
    async for result in subscription:
        if result.text:
            typer.echo(_format_subtitle(result))


async def _print_translations(subscription: Subscription[TranslationResult]) -> None:
    async for result in subscription:
        typer.echo(f"[{result.target_language}] {result.translated_text}")


async def _save_speech(
    subscription: Subscription[SynthesisResult], speech_dir: Path | None
) -> None:
    count = 0
    async for result in subscription:
        if speech_dir is None:
            continue
        count += 1
        path = speech_dir / f"speech_{count:04d}.{result.format}"
        path.write_bytes(result.audio)
        logger.info("Saved %.2fs of speech to %s", result.duration, path)


async def _run_pipeline(pipeline_cfg: PipelineConfig, speech_dir: Path | None = None) -> None:
    """Run the pipeline until the audio ends or the task is cancelled.

    Raises:
        PipelineError: If the pipeline fails to start or fails while running
    """
    if speech_dir is not None:
        speech_dir.mkdir(parents=True, exist_ok=True)

    pipeline = SubtitlePipeline(pipeline_cfg)
    subscriptions = [
        pipeline.subtitles.subscribe(),
        pipeline.translations.subscribe(),
        pipeline.speech.subscribe(),
    ]
    consumers = [
        asyncio.create_task(_print_subtitles(subscriptions[0])),
        asyncio.create_task(_print_translations(subscriptions[1])),
        asyncio.create_task(_save_speech(subscriptions[2], speech_dir)),
    ]

    try:
        await pipeline.start()
        await pipeline.wait_stopped()
    finally:
        await pipeline.stop()
        for subscription in subscriptions:
            subscription.close()
        await asyncio.gather(*consumers, return_exceptions=True)

    if pipeline.state is PipelineState.ERROR and pipeline.last_error is not None:
        raise pipeline.last_error


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    file: Path | None = typer.Option(
        None, "--file", "-f", help="Transcribe an audio file instead of the microphone"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override recognition model"
    ),
    device: str | None = typer.Option(
        None, "--device", help="Override compute device (cpu, cuda)"
    ),
    translate_to: str | None = typer.Option(
        None, "--translate-to", "-t", help="Enable translation into this language"
    ),
    tts: bool = typer.Option(
        False, "--tts", help="Enable speech synthesis"
    ),
    speech_dir: Path | None = typer.Option(
        None, "--speech-dir", help="Directory for synthesized speech files"
    ),
) -> None:
    """Run live subtitles until interrupted or the audio file ends."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        logger.info("Loaded config from: %s", config or "default locations")
        logger.debug("Config: %s", cfg)

        cfg = _merge_config_overrides(
            cfg,
            file=file,
            audio_device=audio_device,
            model=model,
            device=device,
            translate_to=translate_to,
            tts=tts,
        )
        cfg.validate()
        logger.info("Configuration validated successfully")

        logger.info("Starting subtitle pipeline")
        asyncio.run(_run_pipeline(cfg.pipeline, speech_dir))

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except PipelineError as e:
        logger.error("Pipeline error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def check_config(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Load and validate configuration, then print a summary."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        cfg.validate()
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)

    pipeline = cfg.pipeline
    opts = pipeline.options
    typer.echo("Configuration OK")
    typer.echo(f"  Audio: {pipeline.audio.source} ({pipeline.audio.sample_rate}Hz)")
    typer.echo(
        f"  Recognition: {pipeline.recognition.engine_type} "
        f"({pipeline.recognition.model_reference})"
    )
    if opts.enable_translation and pipeline.translation is not None:
        typer.echo(
            f"  Translation: {pipeline.translation.engine_type} "
            f"({opts.source_language} -> {opts.target_language})"
        )
    else:
        typer.echo("  Translation: disabled")
    if opts.enable_tts and pipeline.synthesis is not None:
        typer.echo(f"  Synthesis: {pipeline.synthesis.engine_type}")
    else:
        typer.echo("  Synthesis: disabled")


if __name__ == "__main__":
    app()
