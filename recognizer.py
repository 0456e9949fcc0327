"""Transcription backends.

``WhisperBackend`` runs Hugging Face Whisper checkpoints locally through
``transformers`` and ``torch``. Tokenizer, feature processor and model are
fetched concurrently; generation streams the full decode so far after every
new token.

``DashscopeBackend`` sends each chunk to DashScope ``qwen3-asr-flash`` as a
base64 WAV and streams the recognised text back with ``stream=True``.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import wave
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import numpy as np

from config import TARGET_SAMPLE_RATE
from errors import AUTH_FAILED, CapabilityUnavailable, LoadFailure
from interfaces import ProgressCallback, Streamer
from models import LoadProgress, ModelComponents, ModelConfig

logger = logging.getLogger(__name__)

try:
    import torch
except Exception:  # pragma: no cover
    torch = None  # type: ignore

try:
    from transformers import AutoProcessor, AutoTokenizer, WhisperForConditionalGeneration
except Exception:  # pragma: no cover
    AutoProcessor = None  # type: ignore
    AutoTokenizer = None  # type: ignore
    WhisperForConditionalGeneration = None  # type: ignore

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore


def _float_to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = TARGET_SAMPLE_RATE,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    wav_bytes = buf.getvalue()
    return base64.b64encode(wav_bytes).decode("ascii")


# ----------------------------------------------------------------------
# Whisper (transformers)
# ----------------------------------------------------------------------

class _TokenStreamer:
    """Duck-typed ``transformers`` streamer forwarding the decoded text so far.

    ``generate`` first pushes the decoder prompt, then one tensor per new token.
    """

    def __init__(self, tokenizer: Any, callback: Streamer) -> None:
        self._tokenizer = tokenizer
        self._callback = callback
        self._token_ids: list[int] = []
        self._prompt_seen = False

    def put(self, value: Any) -> None:
        if not self._prompt_seen:
            self._prompt_seen = True
            return
        ids = value.tolist() if hasattr(value, "tolist") else list(value)
        while ids and isinstance(ids[0], list):
            ids = ids[0]
        self._token_ids.extend(int(i) for i in ids)
        text = self._tokenizer.decode(self._token_ids, skip_special_tokens=True)
        if text.strip():
            self._callback(text.strip())

    def end(self) -> None:
        self._token_ids = []
        self._prompt_seen = False


class WhisperFeatureProcessor:
    def __init__(self, processor: Any, sample_rate: int = TARGET_SAMPLE_RATE) -> None:
        self._processor = processor
        self._sample_rate = sample_rate

    def __call__(self, samples: np.ndarray) -> Any:
        inputs = self._processor(
            np.asarray(samples, dtype=np.float32),
            sampling_rate=self._sample_rate,
            return_tensors="pt",
        )
        return inputs.input_features


class WhisperStreamingModel:
    def __init__(self, model: Any, tokenizer: Any, device: str, dtype: Any) -> None:
        self.model = model
        self._tokenizer = tokenizer
        self._device = device
        self._dtype = dtype

    def generate(
        self,
        features: Any,
        language: Optional[str] = None,
        streamer: Optional[Streamer] = None,
        max_new_tokens: Optional[int] = None,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if language:
            kwargs["language"] = language
            kwargs["task"] = "transcribe"
        if max_new_tokens:
            kwargs["max_new_tokens"] = max_new_tokens
        if streamer is not None:
            kwargs["streamer"] = _TokenStreamer(self._tokenizer, streamer)
        with torch.no_grad():
            output = self.model.generate(input_features=features.to(self._device, self._dtype), **kwargs)
        return self._tokenizer.batch_decode(output, skip_special_tokens=True)[0].strip()


class WhisperBackend:
    def __init__(self, cache_dir: Optional[str] = None) -> None:
        self._cache_dir = cache_dir

    def check_capability(self, config: ModelConfig) -> None:
        if torch is None or WhisperForConditionalGeneration is None:
            raise CapabilityUnavailable("PyTorch and transformers are required for local Whisper models")
        if config.compute_backend == "cuda" and not torch.cuda.is_available():
            raise CapabilityUnavailable("CUDA was requested but is not available")

    def load(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelComponents:
        device = self._resolve_device(config.compute_backend)
        dtype = self._resolve_dtype(device, config.precision_hints)
        logger.info(f"Loading {config.model_path} on {device} ({dtype})")

        def _fetch(name: str, loader: Callable[[], Any]) -> Any:
            if on_progress:
                on_progress(LoadProgress(file=name, progress=0))
            result = loader()
            if on_progress:
                on_progress(LoadProgress(file=name, progress=100))
            return result

        path = config.model_path
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="whisper-load") as pool:
            tokenizer_f = pool.submit(
                _fetch, "tokenizer", lambda: AutoTokenizer.from_pretrained(path, cache_dir=self._cache_dir)
            )
            processor_f = pool.submit(
                _fetch, "processor", lambda: AutoProcessor.from_pretrained(path, cache_dir=self._cache_dir)
            )
            model_f = pool.submit(
                _fetch,
                "model",
                lambda: WhisperForConditionalGeneration.from_pretrained(
                    path, torch_dtype=dtype, cache_dir=self._cache_dir
                ),
            )
            tokenizer = tokenizer_f.result()
            processor = processor_f.result()
            model = model_f.result()

        model = model.to(device)
        model.eval()
        return ModelComponents(
            tokenizer=tokenizer,
            feature_processor=WhisperFeatureProcessor(processor),
            model=WhisperStreamingModel(model, tokenizer, device, dtype),
        )

    def release(self, components: ModelComponents) -> None:
        model = components.model
        if isinstance(model, WhisperStreamingModel):
            model.model = None
        if torch is not None and torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _resolve_device(self, compute_backend: str) -> str:
        if compute_backend in ("cpu", "cuda", "mps"):
            return compute_backend
        if torch.cuda.is_available():
            return "cuda"
        return "cpu"

    def _resolve_dtype(self, device: str, hints: dict) -> Any:
        requested = hints.get("dtype", "auto")
        if device == "cuda" and requested in ("auto", "float16"):
            return torch.float16
        return torch.float32


# ----------------------------------------------------------------------
# DashScope
# ----------------------------------------------------------------------

class WavEncoder:
    def __init__(self, sample_rate: int = TARGET_SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate

    def __call__(self, samples: np.ndarray) -> str:
        return _pcm_to_wav_base64(_float_to_pcm16(samples), self._sample_rate)


class DashscopeStreamingModel:
    def __init__(self, api_key: str, model: str, request_timeout_s: float = 30.0) -> None:
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s

    def generate(
        self,
        features: str,
        language: Optional[str] = None,
        streamer: Optional[Streamer] = None,
        max_new_tokens: Optional[int] = None,
    ) -> str:
        asr_options: dict[str, Any] = {"enable_itn": False}
        if language:
            asr_options["language"] = language
        response = dashscope.MultiModalConversation.call(
            api_key=self._api_key,
            model=self._model,
            messages=[
                {"role": "system", "content": [{"text": ""}]},
                {"role": "user", "content": [{"audio": features}]},
            ],
            result_format="message",
            asr_options=asr_options,
            stream=True,
            timeout=self._request_timeout_s,
        )
        latest_text = ""
        for chunk in response:
            self._raise_for_status(chunk)
            text = self._extract_text(chunk)
            if text:
                latest_text = text
                if streamer is not None:
                    streamer(text)
        return latest_text

    def _raise_for_status(self, chunk: object) -> None:
        status = chunk.get("status_code") if isinstance(chunk, dict) else getattr(chunk, "status_code", None)
        if status is None or status == 200:
            return
        message = chunk.get("message") if isinstance(chunk, dict) else getattr(chunk, "message", "")
        raise RuntimeError(f"DashScope request failed ({status}): {message}")

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            output = chunk.get("output", {}) or {}
            choices = output.get("choices", [])
            if not choices:
                return ""
            message = choices[0].get("message", {})
            content = message.get("content", [])
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""


class DashscopeBackend:
    def __init__(self, api_key: str = "", request_timeout_s: float = 30.0) -> None:
        self._api_key = api_key
        self._request_timeout_s = request_timeout_s

    def check_capability(self, config: ModelConfig) -> None:
        if dashscope is None:
            raise CapabilityUnavailable("dashscope is not installed")
        if not self._resolve_api_key():
            raise CapabilityUnavailable("No DashScope API key configured", code=AUTH_FAILED)

    def load(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelComponents:
        api_key = self._resolve_api_key()
        if not api_key:
            raise LoadFailure("No DashScope API key configured", code=AUTH_FAILED)
        if on_progress:
            on_progress(LoadProgress(file=config.model_path, progress=100))
        # Cloud recognition has nothing to compile locally, so warmup is skipped.
        return ModelComponents(
            tokenizer=None,
            feature_processor=WavEncoder(),
            model=DashscopeStreamingModel(api_key, config.model_path, self._request_timeout_s),
            warmup_required=False,
        )

    def release(self, components: ModelComponents) -> None:
        logger.debug("DashScope backend holds no local resources")

    def _resolve_api_key(self) -> str:
        return self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
