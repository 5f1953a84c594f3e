"""Tests for engine factory."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from live_subtitles.cloud import CloudRecognitionEngine, CloudSynthesisEngine, CloudTranslationEngine
from live_subtitles.config import ModelConfig
from live_subtitles.errors import ModelLoadError
from live_subtitles.factory import EngineFactory


def _engine_class(using_gpu=False, load_error=None):
    instance = MagicMock()
    instance.load = AsyncMock(side_effect=load_error)
    instance.is_using_gpu = using_gpu
    return MagicMock(return_value=instance)


class TestRecognitionEngines:
    """Tests for recognition engine selection."""

    @pytest.mark.asyncio
    async def test_faster_whisper(self):
        """Test faster_whisper builds a WhisperEngine from model settings."""
        engine_class = _engine_class()
        config = ModelConfig(
            model_name="small", compute_type="float32", beam_size=2, use_gpu=False, timeout=9.0
        )
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            engine = await EngineFactory().create_recognition_engine(config)

        engine_class.assert_called_once_with(
            compute_type="float32",
            model_directory=None,
            beam_size=2,
            use_gpu=False,
            timeout=9.0,
        )
        engine.load.assert_awaited_once_with("small")

    @pytest.mark.asyncio
    async def test_model_path_used_as_reference(self):
        """Test model_path wins over model_name when loading."""
        engine_class = _engine_class()
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            engine = await EngineFactory().create_recognition_engine(
                ModelConfig(model_name="small", model_path="/models/small")
            )
        engine.load.assert_awaited_once_with("/models/small")

    @pytest.mark.asyncio
    async def test_deepgram(self):
        """Test deepgram builds a DeepgramEngine with the key."""
        engine_class = _engine_class()
        with patch("live_subtitles.factory.DeepgramEngine", engine_class):
            await EngineFactory().create_recognition_engine(
                ModelConfig(model_name="nova-3", engine_type="deepgram", api_key="dg")
            )
        assert engine_class.call_args[1]["api_key"] == "dg"

    @pytest.mark.asyncio
    async def test_cloud_api(self):
        """Test cloud_api builds the HTTP recognition engine."""
        with patch.object(CloudRecognitionEngine, "load", AsyncMock()):
            engine = await EngineFactory().create_recognition_engine(
                ModelConfig(
                    model_name="whisper-1",
                    engine_type="cloud_api",
                    cloud_endpoint="http://local/v1",
                    api_key="k",
                )
            )
        assert isinstance(engine, CloudRecognitionEngine)
        assert engine.client.endpoint == "http://local/v1"

    @pytest.mark.asyncio
    async def test_wrong_modality_engine(self):
        """Test a translation engine type is rejected for recognition."""
        with pytest.raises(ModelLoadError, match="Unknown recognition engine type 'nllb'"):
            await EngineFactory().create_recognition_engine(ModelConfig(engine_type="nllb"))

    @pytest.mark.asyncio
    async def test_unknown_engine(self):
        """Test unknown engine names are rejected."""
        with pytest.raises(ModelLoadError, match="Unknown recognition engine type"):
            await EngineFactory().create_recognition_engine(ModelConfig(engine_type="vosk"))

    @pytest.mark.asyncio
    async def test_load_failure_wrapped(self):
        """Test unexpected load errors become ModelLoadError."""
        engine_class = _engine_class(load_error=RuntimeError("disk full"))
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            with pytest.raises(ModelLoadError, match="disk full"):
                await EngineFactory().create_recognition_engine(ModelConfig())

    @pytest.mark.asyncio
    async def test_load_error_passes_through(self):
        """Test ModelLoadError from the engine is not re-wrapped."""
        error = ModelLoadError("no weights")
        engine_class = _engine_class(load_error=error)
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            with pytest.raises(ModelLoadError) as exc_info:
                await EngineFactory().create_recognition_engine(ModelConfig())
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_construction_failure_wrapped(self):
        """Test constructor errors become ModelLoadError."""
        engine_class = MagicMock(side_effect=ValueError("bad compute type"))
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            with pytest.raises(ModelLoadError, match="Cannot create recognition engine"):
                await EngineFactory().create_recognition_engine(ModelConfig())

    @pytest.mark.asyncio
    async def test_gpu_fallback_warns(self, caplog):
        """Test a CPU fallback is logged when a GPU was requested."""
        engine_class = _engine_class(using_gpu=False)
        with patch("live_subtitles.factory.WhisperEngine", engine_class):
            await EngineFactory().create_recognition_engine(ModelConfig(use_gpu=True))
        assert "running on CPU" in caplog.text


class TestTranslationEngines:
    """Tests for translation engine selection."""

    @pytest.mark.asyncio
    async def test_nllb(self):
        """Test nllb builds an NllbEngine."""
        engine_class = _engine_class()
        with patch("live_subtitles.factory.NllbEngine", engine_class):
            await EngineFactory().create_translation_engine(
                ModelConfig(model_name="facebook/nllb-200-distilled-600M", engine_type="nllb")
            )
        assert engine_class.call_args[1]["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_cloud_api(self):
        """Test cloud_api builds the chat translation engine."""
        with patch.object(CloudTranslationEngine, "load", AsyncMock()):
            engine = await EngineFactory().create_translation_engine(
                ModelConfig(model_name="gpt-4o-mini", engine_type="cloud_api", api_key="k")
            )
        assert isinstance(engine, CloudTranslationEngine)

    @pytest.mark.asyncio
    async def test_recognition_engine_rejected(self):
        """Test faster_whisper is not a translation engine."""
        with pytest.raises(ModelLoadError, match="Unknown translation engine type"):
            await EngineFactory().create_translation_engine(ModelConfig())


class TestSynthesisEngines:
    """Tests for synthesis engine selection."""

    @pytest.mark.asyncio
    async def test_piper(self):
        """Test piper builds a PiperEngine on the configured URL."""
        engine_class = _engine_class()
        with patch("live_subtitles.factory.PiperEngine", engine_class):
            await EngineFactory().create_synthesis_engine(
                ModelConfig(model_name="en", engine_type="piper", cloud_endpoint="http://piper")
            )
        assert engine_class.call_args[1]["endpoint"] == "http://piper"

    @pytest.mark.asyncio
    async def test_cloud_api_missing_key(self):
        """Test missing credentials fail with ModelLoadError."""
        with pytest.raises(ModelLoadError, match="API key is required"):
            await EngineFactory().create_synthesis_engine(
                ModelConfig(model_name="tts-1", engine_type="cloud_api")
            )

    @pytest.mark.asyncio
    async def test_cloud_api(self):
        """Test cloud_api builds the speech engine."""
        with patch.object(CloudSynthesisEngine, "load", AsyncMock()):
            engine = await EngineFactory().create_synthesis_engine(
                ModelConfig(model_name="tts-1", engine_type="cloud_api", api_key="k")
            )
        assert isinstance(engine, CloudSynthesisEngine)
