"""Audio capture and loading into 16 kHz mono float32 buffers."""

from __future__ import annotations

import logging
import threading
import wave
from pathlib import Path
from typing import Any, List

import numpy as np

from config import TARGET_SAMPLE_RATE

logger = logging.getLogger(__name__)

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore


def resample(samples: np.ndarray, source_rate: int, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Linear-interpolation resampling; good enough for speech going into ASR."""
    samples = np.asarray(samples, dtype=np.float32)
    if source_rate == target_rate or len(samples) == 0:
        return samples
    duration = len(samples) / source_rate
    target_len = max(1, int(round(duration * target_rate)))
    source_t = np.arange(len(samples)) / source_rate
    target_t = np.arange(target_len) / target_rate
    return np.interp(target_t, source_t, samples).astype(np.float32)


def pcm16_to_float32(pcm: bytes, channels: int = 1) -> np.ndarray:
    data = np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        data = data.reshape(-1, channels).mean(axis=1)
    return data


def load_wav(path: Path, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Read a 16-bit PCM WAV file as mono float32 at ``target_rate``."""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"{path}: only 16-bit PCM WAV is supported")
        channels = wf.getnchannels()
        rate = wf.getframerate()
        pcm = wf.readframes(wf.getnframes())
    samples = pcm16_to_float32(pcm, channels)
    logger.info(f"Loaded {path}: {len(samples)} samples at {rate} Hz, {channels} channel(s)")
    return resample(samples, rate, target_rate)


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = TARGET_SAMPLE_RATE,
        channels: int = 1,
        chunk_ms: int = 100,
        max_seconds: float = 600.0,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.max_samples = int(max_seconds * sample_rate)
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._blocks: List[np.ndarray] = []
        self._captured = 0
        self.dropped_chunks = 0

    @property
    def recording(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._blocks = []
            self._captured = 0
            self.dropped_chunks = 0
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=blocksize,
                callback=self._on_audio,
            )
            self._stream.start()
            self._running = True

    def stop(self) -> np.ndarray:
        """Stop capturing and return everything recorded as one mono buffer."""
        with self._lock:
            if self._running:
                self._running = False
                if self._stream is not None:
                    self._stream.stop()
                    self._stream.close()
                    self._stream = None
            blocks, self._blocks = self._blocks, []
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        samples = np.concatenate(blocks)
        if self.dropped_chunks:
            logger.warning(f"Recording hit the {self.max_samples}-sample cap, dropped {self.dropped_chunks} blocks")
        return samples

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running:
            return
        if status:
            logger.debug(f"Input stream status: {status}")
        block = np.asarray(indata, dtype=np.float32)
        if block.ndim > 1:
            block = block.mean(axis=1)
        if self._captured + len(block) > self.max_samples:
            self.dropped_chunks += 1
            return
        self._blocks.append(block.copy())
        self._captured += len(block)
