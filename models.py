"""Core data models and the control/compute message protocol."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

import numpy as np


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    LOADING_MODEL = "loading_model"
    WARMING_UP = "warming_up"
    READY = "ready"
    ERROR = "error"


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    LOADING_MODEL = "loading_model"
    WARMING_UP = "warming_up"
    READY = "ready"
    ERROR = "error"


MANAGER_MESSAGES = {
    ManagerState.UNINITIALIZED: "Click to initialize",
    ManagerState.INITIALIZING: "Initializing ASR...",
    ManagerState.LOADING_MODEL: "Loading ASR model...",
    ManagerState.WARMING_UP: "Preparing model...",
    ManagerState.READY: "ASR Ready",
    ManagerState.ERROR: "ASR Error: Unknown",
}


@dataclass(frozen=True)
class ModelConfig:
    model_id: str
    model_path: str
    compute_backend: str = "auto"
    precision_hints: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelComponents:
    tokenizer: Any
    feature_processor: Any
    model: Any
    warmup_required: bool = True


@dataclass(frozen=True)
class LoadProgress:
    file: str
    progress: float = 0.0


@dataclass(frozen=True, eq=False)
class Chunk:
    start_offset: int
    samples: np.ndarray
    padded: bool = False


class CancellationToken:
    """Cooperative cancellation flag checked at session checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class Session:
    session_id: int
    language: Optional[str]
    token: CancellationToken = field(default_factory=CancellationToken)
    chunks: List[Chunk] = field(default_factory=list)
    chunk_texts: List[str] = field(default_factory=list)
    current_text: str = ""
    transcript: str = ""
    first_token_at: Optional[float] = None
    num_tokens: int = 0

    def record_token(self, now: float) -> None:
        if self.first_token_at is None:
            self.first_token_at = now
        self.num_tokens += 1

    def tokens_per_second(self, now: float) -> float:
        if self.first_token_at is None or self.num_tokens == 0:
            return 0.0
        elapsed = now - self.first_token_at
        if elapsed <= 0:
            return 0.0
        return round(self.num_tokens / elapsed, 1)


# ----------------------------------------------------------------------
# Control -> compute requests
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class LoadRequest:
    kind: ClassVar[str] = "load"


@dataclass(frozen=True, eq=False)
class GenerateRequest:
    audio: np.ndarray
    language: Optional[str] = None
    kind: ClassVar[str] = "generate"


@dataclass(frozen=True)
class ChangeModelRequest:
    model_id: str
    model_path: str
    kind: ClassVar[str] = "change_model"


@dataclass(frozen=True)
class StopRequest:
    kind: ClassVar[str] = "stop"


Request = Union[LoadRequest, GenerateRequest, ChangeModelRequest, StopRequest]


# ----------------------------------------------------------------------
# Compute -> control statuses
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class LoadingStatus:
    message: str
    stage: ModelState = ModelState.LOADING_MODEL
    kind: ClassVar[str] = "loading"


@dataclass(frozen=True)
class ReadyStatus:
    message: str = ""
    kind: ClassVar[str] = "ready"


@dataclass(frozen=True)
class ErrorStatus:
    code: str
    message: str
    fatal: bool = False
    kind: ClassVar[str] = "error"


@dataclass(frozen=True)
class TranscribingStartStatus:
    kind: ClassVar[str] = "transcribing_start"


@dataclass(frozen=True)
class UpdateStatus:
    text: str
    tps: float = 0.0
    num_tokens: int = 0
    kind: ClassVar[str] = "update"


@dataclass(frozen=True)
class ChunkProgressStatus:
    chunk_index: int
    total_chunks: int
    text: str = ""
    chunk_text: str = ""
    tps: float = 0.0
    num_tokens: int = 0
    kind: ClassVar[str] = "chunk_progress"


@dataclass(frozen=True)
class CompleteStatus:
    text: str
    total_chunks: int = 1
    kind: ClassVar[str] = "complete"


Status = Union[
    LoadingStatus,
    ReadyStatus,
    ErrorStatus,
    TranscribingStartStatus,
    UpdateStatus,
    ChunkProgressStatus,
    CompleteStatus,
]
