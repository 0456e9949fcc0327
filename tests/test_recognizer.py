"""Tests for the Whisper and DashScope backends."""

from __future__ import annotations

import base64
import io
import wave
from typing import List
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import AUTH_FAILED, CAPABILITY_UNAVAILABLE, CapabilityUnavailable
from models import LoadProgress, ModelConfig
from recognizer import (
    DashscopeBackend,
    DashscopeStreamingModel,
    WavEncoder,
    WhisperBackend,
    WhisperStreamingModel,
    _float_to_pcm16,
    _pcm_to_wav_base64,
    _TokenStreamer,
)

WHISPER = ModelConfig(model_id="base", model_path="openai/whisper-base")
QWEN = ModelConfig(model_id="qwen3-asr-flash", model_path="qwen3-asr-flash", compute_backend="cloud")


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

class _FakeTokenizer:
    def decode(self, ids: List[int], skip_special_tokens: bool = False) -> str:
        return " ".join(f"w{i}" for i in ids)


def _chunk(text: str) -> dict:
    return {"status_code": 200, "output": {"choices": [{"message": {"content": [{"text": text}]}}]}}


# ---------------------------------------------------------------
# WAV encoding
# ---------------------------------------------------------------

def test_pcm_to_wav_base64_produces_valid_base64() -> None:
    pcm = b"\x00\x00" * 1600  # 100ms of silence at 16kHz
    result = _pcm_to_wav_base64(pcm, sample_rate=16000, channels=1)

    decoded = base64.b64decode(result)
    assert decoded[:4] == b"RIFF"
    with wave.open(io.BytesIO(decoded), "rb") as wf:
        assert wf.getframerate() == 16000
        assert wf.getnframes() == 1600


def test_float_to_pcm16_clips_out_of_range_samples() -> None:
    pcm = _float_to_pcm16(np.array([2.0, -2.0, 0.0], dtype=np.float32))

    assert np.frombuffer(pcm, dtype="<i2").tolist() == [32767, -32767, 0]


def test_wav_encoder_round_trips_sample_count() -> None:
    encoded = WavEncoder()(np.zeros(800, dtype=np.float32))

    with wave.open(io.BytesIO(base64.b64decode(encoded)), "rb") as wf:
        assert wf.getnframes() == 800
        assert wf.getsampwidth() == 2


# ---------------------------------------------------------------
# DashScope backend
# ---------------------------------------------------------------

@patch("recognizer.dashscope", None)
def test_dashscope_not_installed_is_capability_error() -> None:
    backend = DashscopeBackend(api_key="test-key")

    with pytest.raises(CapabilityUnavailable, match="not installed") as info:
        backend.check_capability(QWEN)

    assert info.value.code == CAPABILITY_UNAVAILABLE


@patch("recognizer.dashscope", MagicMock())
@patch.dict("os.environ", {"DASHSCOPE_API_KEY": ""}, clear=False)
def test_missing_api_key_is_auth_error() -> None:
    backend = DashscopeBackend(api_key="")

    with pytest.raises(CapabilityUnavailable) as info:
        backend.check_capability(QWEN)

    assert info.value.code == AUTH_FAILED


@patch("recognizer.dashscope", MagicMock())
@patch.dict("os.environ", {"DASHSCOPE_API_KEY": "env-key"}, clear=False)
def test_api_key_falls_back_to_environment() -> None:
    backend = DashscopeBackend(api_key="")

    backend.check_capability(QWEN)
    components = backend.load(QWEN)

    assert components.model._api_key == "env-key"


@patch("recognizer.dashscope", MagicMock())
def test_dashscope_load_skips_warmup_and_reports_progress() -> None:
    seen: List[LoadProgress] = []

    components = DashscopeBackend(api_key="test-key").load(QWEN, seen.append)

    assert components.warmup_required is False
    assert isinstance(components.feature_processor, WavEncoder)
    assert isinstance(components.model, DashscopeStreamingModel)
    assert seen == [LoadProgress(file="qwen3-asr-flash", progress=100)]


@patch("recognizer.dashscope")
def test_streaming_forwards_each_text_and_returns_latest(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = iter([_chunk("你"), _chunk("你好"), _chunk("你好世界")])
    model = DashscopeStreamingModel("test-key", "qwen3-asr-flash")
    streamed: List[str] = []

    result = model.generate("d2F2", language="zh", streamer=streamed.append)

    assert streamed == ["你", "你好", "你好世界"]
    assert result == "你好世界"
    kwargs = mock_ds.MultiModalConversation.call.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["asr_options"] == {"enable_itn": False, "language": "zh"}
    assert kwargs["messages"][1]["content"] == [{"audio": "d2F2"}]


@patch("recognizer.dashscope")
def test_streaming_without_language_omits_it(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = iter([_chunk("hi")])

    DashscopeStreamingModel("test-key", "qwen3-asr-flash").generate("d2F2")

    kwargs = mock_ds.MultiModalConversation.call.call_args.kwargs
    assert kwargs["asr_options"] == {"enable_itn": False}


@patch("recognizer.dashscope")
def test_non_200_chunk_raises(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = iter(
        [_chunk("partial"), {"status_code": 401, "message": "Invalid API-key provided."}]
    )
    streamed: List[str] = []

    with pytest.raises(RuntimeError, match="401"):
        DashscopeStreamingModel("bad-key", "qwen3-asr-flash").generate("d2F2", streamer=streamed.append)

    assert streamed == ["partial"]


@patch("recognizer.dashscope")
def test_chunks_without_text_are_skipped(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = iter(
        [{"output": {"choices": []}}, {"output": {"choices": [{"message": {"content": []}}]}}, _chunk("done")]
    )
    streamed: List[str] = []

    result = DashscopeStreamingModel("k", "qwen3-asr-flash").generate("d2F2", streamer=streamed.append)

    assert streamed == ["done"]
    assert result == "done"


# ---------------------------------------------------------------
# Whisper backend
# ---------------------------------------------------------------

def test_token_streamer_skips_prompt_and_sends_decode_so_far() -> None:
    seen: List[str] = []
    streamer = _TokenStreamer(_FakeTokenizer(), seen.append)

    streamer.put([50258, 50259])  # decoder prompt
    streamer.put([1])
    streamer.put([[2]])
    streamer.end()

    assert seen == ["w1", "w1 w2"]


def test_token_streamer_resets_after_end() -> None:
    seen: List[str] = []
    streamer = _TokenStreamer(_FakeTokenizer(), seen.append)
    streamer.put([0])
    streamer.put([7])
    streamer.end()

    streamer.put([0])
    streamer.put([8])

    assert seen == ["w7", "w8"]


@patch("recognizer.torch", None)
def test_whisper_without_torch_is_capability_error() -> None:
    with pytest.raises(CapabilityUnavailable, match="PyTorch"):
        WhisperBackend().check_capability(WHISPER)


@patch("recognizer.WhisperForConditionalGeneration", MagicMock())
@patch("recognizer.torch")
def test_whisper_cuda_request_without_cuda_is_capability_error(mock_torch: MagicMock) -> None:
    mock_torch.cuda.is_available.return_value = False
    config = ModelConfig(model_id="base", model_path="openai/whisper-base", compute_backend="cuda")

    with pytest.raises(CapabilityUnavailable, match="CUDA"):
        WhisperBackend().check_capability(config)


@patch("recognizer.WhisperForConditionalGeneration")
@patch("recognizer.AutoProcessor")
@patch("recognizer.AutoTokenizer")
@patch("recognizer.torch")
def test_whisper_load_fetches_components_on_cpu(
    mock_torch: MagicMock, mock_tok: MagicMock, mock_proc: MagicMock, mock_whisper: MagicMock
) -> None:
    mock_torch.cuda.is_available.return_value = False
    hf_model = mock_whisper.from_pretrained.return_value
    hf_model.to.return_value = hf_model
    seen: List[LoadProgress] = []

    components = WhisperBackend(cache_dir="/tmp/hf").load(WHISPER, seen.append)

    mock_tok.from_pretrained.assert_called_once_with("openai/whisper-base", cache_dir="/tmp/hf")
    mock_proc.from_pretrained.assert_called_once_with("openai/whisper-base", cache_dir="/tmp/hf")
    assert mock_whisper.from_pretrained.call_args.kwargs["torch_dtype"] is mock_torch.float32
    hf_model.to.assert_called_once_with("cpu")
    hf_model.eval.assert_called_once()
    assert isinstance(components.model, WhisperStreamingModel)
    assert components.tokenizer is mock_tok.from_pretrained.return_value
    assert sorted((p.file, p.progress) for p in seen) == [
        ("model", 0), ("model", 100),
        ("processor", 0), ("processor", 100),
        ("tokenizer", 0), ("tokenizer", 100),
    ]


@patch("recognizer.torch")
def test_whisper_generate_passes_language_and_decodes(mock_torch: MagicMock) -> None:
    hf_model = MagicMock()
    tokenizer = MagicMock()
    tokenizer.batch_decode.return_value = ["  hello there "]
    features = MagicMock()
    model = WhisperStreamingModel(hf_model, tokenizer, "cpu", mock_torch.float32)

    text = model.generate(features, language="en", streamer=lambda _: None)

    assert text == "hello there"
    features.to.assert_called_once_with("cpu", mock_torch.float32)
    kwargs = hf_model.generate.call_args.kwargs
    assert kwargs["language"] == "en"
    assert kwargs["task"] == "transcribe"
    assert isinstance(kwargs["streamer"], _TokenStreamer)
    assert "max_new_tokens" not in kwargs


@patch("recognizer.torch")
def test_whisper_release_drops_model(mock_torch: MagicMock) -> None:
    mock_torch.cuda.is_available.return_value = False
    streaming = WhisperStreamingModel(MagicMock(), MagicMock(), "cpu", None)
    components = MagicMock(model=streaming)

    WhisperBackend().release(components)

    assert streaming.model is None
    mock_torch.cuda.empty_cache.assert_not_called()
