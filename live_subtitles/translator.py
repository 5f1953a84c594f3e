"""Local text translation via NLLB (transformers)."""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from live_subtitles._types import TranslationResult
from live_subtitles.engine import EngineType
from live_subtitles.errors import EngineError, ModelLoadError, ModelNotLoadedError

logger = logging.getLogger(__name__)

NLLB_LANGUAGE_CODES = {
    "en": "eng_Latn",
    "it": "ita_Latn",
    "es": "spa_Latn",
    "pt": "por_Latn",
    "fr": "fra_Latn",
    "de": "deu_Latn",
    "nl": "nld_Latn",
    "pl": "pol_Latn",
    "ru": "rus_Cyrl",
    "uk": "ukr_Cyrl",
    "zh": "zho_Hans",
    "ja": "jpn_Jpan",
    "ko": "kor_Hang",
    "ar": "arb_Arab",
    "hi": "hin_Deva",
    "tr": "tur_Latn",
}


def to_nllb_code(language: str) -> str:
    """Map an ISO 639-1 code to its NLLB code; NLLB codes pass through.

    Raises:
        EngineError: If the language is not supported
    """
    if language in NLLB_LANGUAGE_CODES.values():
        return language
    code = NLLB_LANGUAGE_CODES.get(language.lower().split("-")[0])
    if code is None:
        raise EngineError(f"Unsupported language for NLLB: '{language}'")
    return code


class NllbEngine:
    """Encapsulates an NLLB sequence-to-sequence model.

    Tokenization and generation run inside a thread pool executor; a batch
    is translated with a single ``generate`` call.
    """

    engine_type = EngineType.NLLB
    supports_gpu = True
    supports_auto_detection = False

    def __init__(
        self,
        max_tokens: int = 256,
        use_gpu: bool = False,
        model_directory: str | None = None,
        timeout: float = 30.0,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.max_tokens = max_tokens
        self.use_gpu = use_gpu
        self.model_directory = model_directory
        self.timeout = timeout
        self.executor = executor
        self._executor_owned = executor is None
        self._tokenizer = None
        self._model = None
        self._device = "cpu"

    @property
    def is_model_loaded(self) -> bool:
        return self._model is not None

    @property
    def is_using_gpu(self) -> bool:
        return self._device == "cuda"

    def _get_executor(self) -> ThreadPoolExecutor:
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=1)
        return self.executor

    async def load(self, model_reference: str) -> None:
        """Load tokenizer and model (e.g. facebook/nllb-200-distilled-600M).

        Raises:
            ModelLoadError: If the model fails to load
        """
        if self._model is not None:
            await self.unload()

        logger.info("Loading NLLB model: %s", model_reference)
        loop = asyncio.get_running_loop()
        start_time = time.perf_counter()
        try:
            self._tokenizer, self._model = await loop.run_in_executor(
                self._get_executor(), self._load_sync, model_reference
            )
        except Exception as e:
            logger.error("Failed to load model %s: %s", model_reference, e)
            raise ModelLoadError(f"Failed to load NLLB model '{model_reference}': {e}") from e

        logger.info(
            "Translation model loaded in %.2f seconds (device=%s)",
            time.perf_counter() - start_time,
            self._device,
        )

    def _load_sync(self, model_reference: str):
        import torch
        from transformers import AutoModelForSeq2SeqLM, AutoTokenizer

        tokenizer = AutoTokenizer.from_pretrained(model_reference, cache_dir=self.model_directory)
        self._device = "cpu"
        if self.use_gpu and torch.cuda.is_available():
            try:
                model = AutoModelForSeq2SeqLM.from_pretrained(
                    model_reference,
                    cache_dir=self.model_directory,
                    torch_dtype=torch.float16,
                ).to("cuda")
                self._device = "cuda"
                return tokenizer, model
            except Exception as e:
                logger.warning("GPU initialization failed, falling back to CPU: %s", e)
        elif self.use_gpu:
            logger.warning("CUDA not available, translation runs on CPU")

        model = AutoModelForSeq2SeqLM.from_pretrained(
            model_reference, cache_dir=self.model_directory
        )
        return tokenizer, model

    async def unload(self) -> None:
        self._tokenizer = None
        self._model = None
        self._device = "cpu"
        if self._executor_owned and self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
            self.executor = None

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
    ) -> TranslationResult:
        results = await self.translate_batch([text], source_language, target_language)
        return results[0]

    async def translate_batch(
        self,
        texts: Sequence[str],
        source_language: str,
        target_language: str,
    ) -> list[TranslationResult]:
        """Translate texts in one generation pass, preserving order.

        Raises:
            ModelNotLoadedError: If load() has not been called
            EngineError: If the languages are unsupported or generation fails
        """
        if self._model is None:
            raise ModelNotLoadedError("NLLB model not loaded")
        if source_language == "auto":
            raise EngineError("NLLB cannot detect the source language; configure one")
        if not texts:
            return []

        src_code = to_nllb_code(source_language)
        tgt_code = to_nllb_code(target_language)
        loop = asyncio.get_running_loop()

        try:
            translated = await asyncio.wait_for(
                loop.run_in_executor(
                    self._get_executor(),
                    self._generate_sync,
                    list(texts),
                    src_code,
                    tgt_code,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Translation timed out after %.1f seconds", self.timeout)
            raise EngineError(f"Translation timed out after {self.timeout} seconds") from e
        except EngineError:
            raise
        except Exception as e:
            logger.error("Translation failed: %s", e, exc_info=True)
            raise EngineError(f"Translation failed: {e}") from e

        return [
            TranslationResult(
                source_text=text,
                translated_text=output.strip(),
                source_language=source_language,
                target_language=target_language,
                confidence=1.0,
            )
            for text, output in zip(texts, translated)
        ]

    def _generate_sync(self, texts: list[str], src_code: str, tgt_code: str) -> list[str]:
        tokenizer = self._tokenizer
        tokenizer.src_lang = src_code
        inputs = tokenizer(texts, return_tensors="pt", padding=True)
        if self._device != "cpu":
            inputs = {k: v.to(self._device) for k, v in inputs.items()}

        generated = self._model.generate(
            **inputs,
            max_new_tokens=self.max_tokens,
            forced_bos_token_id=self._lang_id(tgt_code),
        )
        return tokenizer.batch_decode(generated, skip_special_tokens=True)

    def _lang_id(self, code: str) -> int:
        tokenizer = self._tokenizer
        lang_ids = getattr(tokenizer, "lang_code_to_id", None)
        if isinstance(lang_ids, dict) and code in lang_ids:
            return lang_ids[code]
        token_id = tokenizer.convert_tokens_to_ids(code)
        if token_id is not None and token_id != tokenizer.unk_token_id:
            return token_id
        raise EngineError(f"Unknown NLLB language code: {code}")
