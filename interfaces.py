"""Protocol interfaces for the transcription pipeline seams."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

import numpy as np

from config import ChunkingSettings
from models import LoadProgress, ModelComponents, ModelConfig, Request, Status

ProgressCallback = Callable[[LoadProgress], None]
StatusCallback = Callable[[Status], None]
Streamer = Callable[[str], None]


class FeatureProcessor(Protocol):
    def __call__(self, samples: np.ndarray) -> Any: ...


class StreamingModel(Protocol):
    def generate(
        self,
        features: Any,
        language: Optional[str] = None,
        streamer: Optional[Streamer] = None,
        max_new_tokens: Optional[int] = None,
    ) -> Any: ...


class TranscriptionBackend(Protocol):
    def check_capability(self, config: ModelConfig) -> None: ...

    def load(
        self,
        config: ModelConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ModelComponents: ...

    def release(self, components: ModelComponents) -> None: ...


class ComputeHandle(Protocol):
    def start(self) -> None: ...

    def post(self, request: Request) -> None: ...

    def shutdown(self) -> None: ...


class ConfigStore(Protocol):
    def get_engine(self) -> str: ...

    def set_engine(self, engine: str) -> None: ...

    def get_model_id(self) -> str: ...

    def set_model_id(self, model_id: str) -> None: ...

    def get_model_config(self) -> ModelConfig: ...

    def get_language(self) -> str: ...

    def set_language(self, language: str) -> None: ...

    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_chunking(self) -> ChunkingSettings: ...

    def set_chunking(self, settings: ChunkingSettings) -> None: ...
