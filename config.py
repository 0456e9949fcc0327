"""Chunking settings, model registry and the JSON preference store."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from models import ModelConfig

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
WORDS_PER_SECOND = 2.5


@dataclass(frozen=True)
class ChunkingSettings:
    # Whisper-style models are limited to ~30s windows.
    chunk_seconds: float = 30.0
    overlap_seconds: float = 5.0
    max_total_minutes: float = 10.0
    enforce_duration_limit: bool = True
    sample_rate: int = TARGET_SAMPLE_RATE
    max_overlap_words: Optional[int] = None

    def __post_init__(self) -> None:
        if self.chunk_seconds <= 0:
            raise ValueError("chunk_seconds must be positive")
        if self.overlap_seconds < 0 or self.overlap_seconds >= self.chunk_seconds:
            raise ValueError("overlap_seconds must be in [0, chunk_seconds)")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")

    @property
    def max_chunk_samples(self) -> int:
        return int(self.chunk_seconds * self.sample_rate)

    @property
    def overlap_samples(self) -> int:
        return int(self.overlap_seconds * self.sample_rate)

    @property
    def max_total_seconds(self) -> float:
        return self.max_total_minutes * 60

    @property
    def overlap_word_limit(self) -> int:
        if self.max_overlap_words is not None:
            return self.max_overlap_words
        return int(round(self.overlap_seconds * WORDS_PER_SECOND))


@dataclass(frozen=True)
class ModelEntry:
    id: str
    name: str
    description: str
    model_path: str
    engine: str = "whisper"
    size: str = ""
    min_ram: str = ""
    recommended: bool = False
    compute_backend: str = "auto"
    precision_hints: Dict[str, str] = field(default_factory=dict)

    def to_model_config(self, model_path: Optional[str] = None) -> ModelConfig:
        return ModelConfig(
            model_id=self.id,
            model_path=model_path or self.model_path,
            compute_backend=self.compute_backend,
            precision_hints=dict(self.precision_hints),
        )


MODEL_REGISTRY: Dict[str, ModelEntry] = {
    "tiny": ModelEntry(
        id="tiny",
        name="Tiny",
        description="Fastest, lowest quality",
        model_path="openai/whisper-tiny",
        size="151 MB",
        min_ram="2 GB",
    ),
    "base": ModelEntry(
        id="base",
        name="Base",
        description="Balanced speed and quality (Default)",
        model_path="openai/whisper-base",
        size="290 MB",
        min_ram="4 GB",
        recommended=True,
    ),
    "small": ModelEntry(
        id="small",
        name="Small",
        description="Better quality, slower processing",
        model_path="openai/whisper-small",
        size="967 MB",
        min_ram="8 GB",
    ),
    "medium": ModelEntry(
        id="medium",
        name="Medium",
        description="High quality, requires more resources",
        model_path="openai/whisper-medium",
        size="3.1 GB",
        min_ram="16 GB",
        precision_hints={"dtype": "float16"},
    ),
    "large": ModelEntry(
        id="large",
        name="Large",
        description="Best quality, very slow and resource-intensive",
        model_path="openai/whisper-large-v3",
        size="3.1 GB",
        min_ram="32 GB",
        precision_hints={"dtype": "float16"},
    ),
    "qwen3-asr-flash": ModelEntry(
        id="qwen3-asr-flash",
        name="Qwen3 ASR Flash",
        description="DashScope cloud recognition, needs an API key",
        model_path="qwen3-asr-flash",
        engine="dashscope",
        recommended=True,
        compute_backend="cloud",
    ),
}

DEFAULT_MODEL_ID = "base"
DEFAULT_ENGINE = "whisper"
DEFAULT_MODEL_BY_ENGINE = {"whisper": DEFAULT_MODEL_ID, "dashscope": "qwen3-asr-flash"}

SUPPORTED_LANGUAGES: Dict[str, str] = {
    "auto": "Auto-detect",
    "ar": "Arabic",
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "hi": "Hindi",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ru": "Russian",
    "sv": "Swedish",
    "tr": "Turkish",
    "uk": "Ukrainian",
    "zh": "Chinese",
}


def models_for_display(engine: Optional[str] = None) -> List[ModelEntry]:
    entries = [e for e in MODEL_REGISTRY.values() if engine is None or e.engine == engine]
    return sorted(entries, key=lambda e: not e.recommended)


def model_config_for(model_id: str, model_path: Optional[str] = None) -> ModelConfig:
    """Resolve a model id to a ModelConfig, falling back to a bare config for unknown ids."""
    entry = MODEL_REGISTRY.get(model_id)
    if entry is None:
        if not model_path:
            raise KeyError(f"Unknown model id: {model_id}")
        return ModelConfig(model_id=model_id, model_path=model_path)
    return entry.to_model_config(model_path)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "chunkscribe" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_engine(self) -> str:
        data = self._read_all()
        return str(data.get("engine", DEFAULT_ENGINE))

    def set_engine(self, engine: str) -> None:
        self._update(engine=engine)

    def get_model_id(self) -> str:
        data = self._read_all()
        default = DEFAULT_MODEL_BY_ENGINE.get(self.get_engine(), DEFAULT_MODEL_ID)
        return str(data.get("model_id", default))

    def set_model_id(self, model_id: str) -> None:
        self._update(model_id=model_id)

    def get_model_config(self) -> ModelConfig:
        model_id = self.get_model_id()
        if model_id not in MODEL_REGISTRY:
            logger.warning(f"Configured model {model_id!r} is unknown, using {DEFAULT_MODEL_ID}")
            model_id = DEFAULT_MODEL_ID
        return model_config_for(model_id)

    def get_language(self) -> str:
        data = self._read_all()
        return str(data.get("language", "auto"))

    def set_language(self, language: str) -> None:
        self._update(language=language)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._update(api_key=key)

    def get_chunking(self) -> ChunkingSettings:
        data = self._read_all().get("chunking", {})
        defaults = asdict(ChunkingSettings())
        if isinstance(data, dict):
            defaults.update({k: v for k, v in data.items() if k in defaults})
        try:
            return ChunkingSettings(**defaults)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Invalid chunking settings ({exc}), using defaults")
            return ChunkingSettings()

    def set_chunking(self, settings: ChunkingSettings) -> None:
        self._update(chunking=asdict(settings))

    def _update(self, **values: object) -> None:
        data = self._read_all()
        data.update(values)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
