"""Speech synthesis through a Piper HTTP service."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

import requests

from live_subtitles._types import SynthesisResult, TTSVoice
from live_subtitles.audio_utils import change_speed, wav_duration, wav_sample_rate
from live_subtitles.engine import EngineType
from live_subtitles.errors import EngineError, ModelLoadError, ModelNotLoadedError
from live_subtitles.translator import NLLB_LANGUAGE_CODES

logger = logging.getLogger(__name__)

# Piper voice per language; the service selects the voice from lang_code
PIPER_VOICES = {
    "en": "en_GB-cori-high",
    "it": "it_IT-paola-medium",
    "es": "es_MX-claude-high",
    "pt": "pt_BR-faber-medium",
    "fr": "fr_FR-siwis-medium",
}


class PiperEngine:
    """Client for a Piper service exposing ``POST /synthesize``.

    The request body is ``{"text": ..., "lang_code": ...}`` and the response
    is WAV audio. Voices are keyed by language code.
    """

    engine_type = EngineType.PIPER
    supports_gpu = False
    is_using_gpu = False

    def __init__(
        self,
        endpoint: str | None,
        timeout: float = 30.0,
        voices: dict[str, str] | None = None,
    ):
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.timeout = timeout
        self.voices = dict(voices or PIPER_VOICES)
        self.default_voice = "en"
        self._session: requests.Session | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._model_reference: str | None = None

    @property
    def is_model_loaded(self) -> bool:
        return self._session is not None

    @property
    def available_voices(self) -> list[TTSVoice]:
        return [
            TTSVoice(lang, name, NLLB_LANGUAGE_CODES.get(lang, lang))
            for lang, name in self.voices.items()
        ]

    async def load(self, model_reference: str) -> None:
        """Bind the service; ``model_reference`` may name the default voice language.

        Raises:
            ModelLoadError: If no endpoint is configured
        """
        if self._session is not None:
            await self.unload()
        if not self.endpoint:
            raise ModelLoadError("Piper service endpoint is required")

        if model_reference in self.voices:
            self.default_voice = model_reference
        self._session = requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._model_reference = model_reference
        logger.info(
            "Piper synthesis bound to %s (default voice %s)", self.endpoint, self.default_voice
        )

    async def unload(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._model_reference = None

    async def synthesize(
        self,
        text: str,
        voice: str | None = None,
        speed: float = 1.0,
    ) -> SynthesisResult:
        """Synthesize text with the voice for a language.

        Piper renders at its configured rate; ``speed`` is applied afterwards
        by resampling the returned WAV.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the service request fails
        """
        if self._session is None or self._executor is None:
            raise ModelNotLoadedError("Piper engine not loaded")

        voice = voice or self.default_voice
        if voice not in self.voices:
            raise EngineError(f"No Piper voice for '{voice}'")

        payload = {"text": text, "lang_code": NLLB_LANGUAGE_CODES.get(voice, voice)}
        loop = asyncio.get_running_loop()
        audio = await loop.run_in_executor(self._executor, self._post_sync, self._session, payload)
        if speed != 1.0:
            try:
                audio = change_speed(audio, speed)
            except (RuntimeError, ValueError) as e:
                raise EngineError(f"Cannot apply speech speed {speed}: {e}") from e
        return SynthesisResult(
            audio=audio,
            format="wav",
            sample_rate=wav_sample_rate(audio),
            duration=wav_duration(audio),
        )

    def _post_sync(self, session: requests.Session, payload: dict) -> bytes:
        url = f"{self.endpoint}/synthesize"
        try:
            r = session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise EngineError(f"Piper request failed: {e}") from e

        if r.status_code != 200:
            logger.error("Piper error %d: %s", r.status_code, r.text[:200])
            raise EngineError(f"Piper error ({r.status_code}): {r.text[:200]}")
        return r.content
