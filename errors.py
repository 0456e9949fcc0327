"""Shared error codes, user-facing messages and the exception taxonomy."""

from __future__ import annotations

CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
AUTH_FAILED = "AUTH_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
OUT_OF_MEMORY = "OUT_OF_MEMORY"
BACKEND_ERROR = "BACKEND_ERROR"
LOAD_FAILED = "LOAD_FAILED"
BUSY = "BUSY"
NO_AUDIO = "NO_AUDIO"
MODEL_NOT_READY = "MODEL_NOT_READY"
DURATION_EXCEEDED = "DURATION_EXCEEDED"
GENERATION_FAILED = "GENERATION_FAILED"
INVALID_REQUEST = "INVALID_REQUEST"

ERROR_MESSAGES = {
    CAPABILITY_UNAVAILABLE: "Required transcription backend is not available.",
    AUTH_FAILED: "API key is missing or invalid.",
    NETWORK_ERROR: "Network error - please check your internet connection",
    OUT_OF_MEMORY: "Insufficient memory - try a smaller model",
    BACKEND_ERROR: "Accelerator error - your device may not support this model",
    LOAD_FAILED: "Model initialization failed.",
    BUSY: "Already processing audio.",
    NO_AUDIO: "No audio data received.",
    MODEL_NOT_READY: "Model not ready.",
    DURATION_EXCEEDED: "Audio is longer than the configured maximum.",
    GENERATION_FAILED: "Transcription failed.",
    INVALID_REQUEST: "Request is missing required data.",
}

# Error statuses with these codes make the control side drop its compute instance.
FATAL_CODES = frozenset(
    {CAPABILITY_UNAVAILABLE, AUTH_FAILED, NETWORK_ERROR, OUT_OF_MEMORY, BACKEND_ERROR, LOAD_FAILED}
)

_NETWORK_WORDS = ("fetch", "network", "connection", "timeout", "timed out", "resolve")
_MEMORY_WORDS = ("memory", "oom", "alloc")
_BACKEND_WORDS = ("cuda", "gpu", "onnx", "device", "mps")


class AsrError(Exception):
    code = LOAD_FAILED

    def __init__(self, message: str = "", code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message or ERROR_MESSAGES.get(self.code, "")
        super().__init__(self.message)


class CapabilityUnavailable(AsrError):
    code = CAPABILITY_UNAVAILABLE


class LoadFailure(AsrError):
    code = LOAD_FAILED


class BusyRejection(AsrError):
    code = BUSY


class DurationExceeded(AsrError):
    code = DURATION_EXCEEDED


class GenerationFailure(AsrError):
    code = GENERATION_FAILED


class InvalidTransition(RuntimeError):
    pass


class LoadSuperseded(Exception):
    """A load finished after its model configuration had been replaced."""


def classify_load_error(model_path: str, exc: BaseException) -> LoadFailure:
    """Map a backend exception raised while loading to a user-facing LoadFailure."""
    if isinstance(exc, LoadFailure):
        return exc
    message = str(exc)
    low = message.lower()
    prefix = f"Model loading failed for {model_path}"
    if "401" in low or "api key" in low or "unauthorized" in low:
        code = AUTH_FAILED
    elif any(word in low for word in _NETWORK_WORDS):
        code = NETWORK_ERROR
    elif any(word in low for word in _MEMORY_WORDS):
        code = OUT_OF_MEMORY
    elif any(word in low for word in _BACKEND_WORDS):
        code = BACKEND_ERROR
    else:
        return LoadFailure(f"{prefix}: {message or type(exc).__name__}")
    return LoadFailure(f"{prefix}: {ERROR_MESSAGES[code]}", code=code)
