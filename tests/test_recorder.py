"""Tests for SoundDeviceRecorder and WAV loading."""

from __future__ import annotations

import wave
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from recorder import SoundDeviceRecorder, load_wav, pcm16_to_float32, resample


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _block(n_samples: int = 1600, value: float = 0.5, channels: int = 1) -> np.ndarray:
    """Shaped like the (frames, channels) array sounddevice hands the callback."""
    return np.full((n_samples, channels), value, dtype=np.float32)


def _write_wav(path: Path, samples: np.ndarray, rate: int, channels: int = 1, width: int = 2) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(width)
        wf.setframerate(rate)
        wf.writeframes(samples.tobytes())


# ---------------------------------------------------------------
# Basic start / stop
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_start_creates_stream_and_runs(mock_sd: MagicMock) -> None:
    mock_stream = MagicMock()
    mock_sd.InputStream.return_value = mock_stream

    recorder = SoundDeviceRecorder()
    recorder.start()

    mock_sd.InputStream.assert_called_once()
    assert mock_sd.InputStream.call_args.kwargs["samplerate"] == 16000
    assert mock_sd.InputStream.call_args.kwargs["blocksize"] == 1600
    mock_stream.start.assert_called_once()
    assert recorder.recording

    recorder.stop()
    mock_stream.stop.assert_called_once()
    mock_stream.close.assert_called_once()
    assert not recorder.recording


@patch("recorder.sd")
def test_start_is_idempotent(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    recorder = SoundDeviceRecorder()
    recorder.start()
    recorder.start()  # second call should be no-op

    assert mock_sd.InputStream.call_count == 1
    recorder.stop()


@patch("recorder.sd")
def test_stop_is_idempotent(mock_sd: MagicMock) -> None:
    mock_stream = MagicMock()
    mock_sd.InputStream.return_value = mock_stream

    recorder = SoundDeviceRecorder()
    recorder.start()
    recorder.stop()
    second = recorder.stop()

    mock_stream.close.assert_called_once()
    assert second.size == 0


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_callback_blocks_are_returned_on_stop(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    recorder = SoundDeviceRecorder(sample_rate=16000, channels=1, chunk_ms=100)
    recorder.start()
    recorder._on_audio(_block(1600, 0.25), frames=1600, time_info=None, status=None)
    recorder._on_audio(_block(1600, -0.25), frames=1600, time_info=None, status=None)
    samples = recorder.stop()

    assert samples.dtype == np.float32
    assert samples.shape == (3200,)
    assert np.all(samples[:1600] == 0.25)
    assert np.all(samples[1600:] == -0.25)


@patch("recorder.sd")
def test_stereo_input_is_mixed_to_mono(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()
    recorder = SoundDeviceRecorder(channels=2)
    recorder.start()

    block = np.zeros((4, 2), dtype=np.float32)
    block[:, 0] = 1.0
    recorder._on_audio(block, frames=4, time_info=None, status=None)

    np.testing.assert_allclose(recorder.stop(), [0.5, 0.5, 0.5, 0.5])


@patch("recorder.sd")
def test_blocks_past_the_cap_are_dropped(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    recorder = SoundDeviceRecorder(sample_rate=16000, max_seconds=0.15)
    recorder.start()
    recorder._on_audio(_block(1600), frames=1600, time_info=None, status=None)
    assert recorder.dropped_chunks == 0

    # This should be dropped
    recorder._on_audio(_block(1600), frames=1600, time_info=None, status=None)
    assert recorder.dropped_chunks == 1

    assert len(recorder.stop()) == 1600


@patch("recorder.sd")
def test_callback_after_stop_is_noop(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    recorder = SoundDeviceRecorder()
    recorder.start()
    recorder.stop()

    recorder._on_audio(_block(), frames=1600, time_info=None, status=None)
    assert recorder.stop().size == 0


@patch("recorder.sd")
def test_callback_copies_the_buffer(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()
    recorder = SoundDeviceRecorder()
    recorder.start()

    block = _block(10, 0.1)
    recorder._on_audio(block, frames=10, time_info=None, status=None)
    block[:] = 0.9  # sounddevice reuses its buffers

    assert np.all(recorder.stop() == np.float32(0.1))


# ---------------------------------------------------------------
# No sounddevice installed
# ---------------------------------------------------------------

def test_start_raises_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    recorder = SoundDeviceRecorder()
    with pytest.raises(RuntimeError, match="sounddevice is not installed"):
        recorder.start()


# ---------------------------------------------------------------
# Conversion / loading
# ---------------------------------------------------------------

def test_pcm16_to_float32_scales_and_mixes() -> None:
    pcm = np.array([16384, -16384, 32767, 0], dtype="<i2").tobytes()

    mono = pcm16_to_float32(pcm)
    stereo = pcm16_to_float32(pcm, channels=2)

    np.testing.assert_allclose(mono, [0.5, -0.5, 32767 / 32768, 0.0])
    np.testing.assert_allclose(stereo, [0.0, 32767 / 65536])


def test_resample_changes_length_by_rate_ratio() -> None:
    samples = np.linspace(-1, 1, 48000, dtype=np.float32)

    out = resample(samples, 48000, 16000)

    assert out.dtype == np.float32
    assert len(out) == 16000
    assert out[0] == pytest.approx(-1.0)


def test_resample_same_rate_is_identity() -> None:
    samples = np.ones(100, dtype=np.float32)

    np.testing.assert_array_equal(resample(samples, 16000, 16000), samples)


def test_load_wav_reads_and_resamples(tmp_path: Path) -> None:
    path = tmp_path / "speech.wav"
    pcm = np.full(8000 * 2, 8192, dtype="<i2")  # 1s of 8 kHz stereo
    _write_wav(path, pcm, rate=8000, channels=2)

    samples = load_wav(path)

    assert len(samples) == 16000
    np.testing.assert_allclose(samples, 0.25, atol=1e-6)


def test_load_wav_rejects_non_16_bit(tmp_path: Path) -> None:
    path = tmp_path / "eight_bit.wav"
    _write_wav(path, np.full(100, 128, dtype=np.uint8), rate=16000, width=1)

    with pytest.raises(ValueError, match="16-bit"):
        load_wav(path)
