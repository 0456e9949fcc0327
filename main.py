"""Command-line entrypoint."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

import numpy as np

from compute_loop import ComputeLoop
from config import MODEL_REGISTRY, SUPPORTED_LANGUAGES, JsonConfigStore, model_config_for, models_for_display
from interfaces import ConfigStore, TranscriptionBackend
from manager import ManagerFacade
from models import (
    ChunkProgressStatus,
    CompleteStatus,
    ErrorStatus,
    ManagerState,
    ModelConfig,
    Status,
    TranscribingStartStatus,
    UpdateStatus,
)
from recognizer import DashscopeBackend, WhisperBackend
from recorder import SoundDeviceRecorder, load_wav

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

if os.environ.get("DEBUG", "0") == "1":
    logging.getLogger().setLevel(logging.DEBUG)


def create_backend(store: ConfigStore) -> TranscriptionBackend:
    engine = store.get_engine()
    if engine == "dashscope":
        return DashscopeBackend(api_key=store.get_api_key())
    if engine == "whisper":
        return WhisperBackend()
    raise ValueError(f"Unknown engine: {engine!r}. Valid options: whisper, dashscope")


class CliTranscriber:
    """Drives a ManagerFacade from the terminal and waits for its outcome."""

    def __init__(self, store: ConfigStore, model_id: Optional[str] = None) -> None:
        self._store = store
        self._model_id = model_id
        self._backend = create_backend(store)
        self._ready = threading.Event()
        self._done = threading.Event()
        self.text = ""
        self.error = ""

        settings = store.get_chunking()
        backend = self._backend
        self.manager = ManagerFacade(
            compute_factory=lambda cfg, on_status: ComputeLoop(backend, cfg, settings, on_status),
            model_provider=self._model_config,
            capability_probe=lambda: backend.check_capability(self._model_config()),
            on_state_change=self._on_state_change,
            on_result=self._on_result,
        )

    def _model_config(self) -> ModelConfig:
        if self._model_id:
            return model_config_for(self._model_id)
        return self._store.get_model_config()

    def start(self) -> bool:
        self.manager.initialize()
        self.manager.trigger(on_ready=self._ready.set)
        return self.manager.state != ManagerState.ERROR

    def wait_ready(self) -> bool:
        while not self._ready.wait(0.2):
            if self.manager.state == ManagerState.ERROR:
                return False
        return True

    def transcribe(self, audio: np.ndarray, language: Optional[str]) -> bool:
        self._done.clear()
        self.manager.request_transcription(audio, language)
        try:
            while not self._done.wait(0.2):
                if self.manager.state == ManagerState.ERROR:
                    self.error = self.manager.message
                    return False
        except KeyboardInterrupt:
            print("\nStopping...", file=sys.stderr)
            self.manager.stop()
            return False
        return not self.error

    def close(self) -> None:
        self.manager.dispose()

    def _on_state_change(self, from_state: ManagerState, to_state: ManagerState, message: str) -> None:
        print(f"[{to_state.value}] {message}", file=sys.stderr)
        if to_state == ManagerState.ERROR:
            self.error = message
            self._done.set()

    def _on_result(self, status: Status) -> None:
        if isinstance(status, TranscribingStartStatus):
            print("Transcribing...", file=sys.stderr)
        elif isinstance(status, UpdateStatus):
            print(f"\r{status.text} ({status.tps} tok/s)", end="", file=sys.stderr)
        elif isinstance(status, ChunkProgressStatus):
            if not status.chunk_text:
                print(f"\nProcessing chunk {status.chunk_index + 1}/{status.total_chunks}", file=sys.stderr)
        elif isinstance(status, CompleteStatus):
            print("", file=sys.stderr)
            self.text = status.text
            self._done.set()
        elif isinstance(status, ErrorStatus):
            print(f"\nError: {status.message}", file=sys.stderr)
            self.error = status.message
            self._done.set()


def _language(args: argparse.Namespace, store: ConfigStore) -> Optional[str]:
    language = args.language or store.get_language()
    return None if language == "auto" else language


def _run(store: ConfigStore, args: argparse.Namespace, audio_source) -> int:
    cli = CliTranscriber(store, model_id=args.model)
    try:
        if not cli.start():
            return 1
        audio = audio_source()
        if not cli.wait_ready():
            return 1
        ok = cli.transcribe(audio, _language(args, store))
        if ok:
            print(cli.text)
        return 0 if ok else 1
    finally:
        cli.close()


def cmd_transcribe(store: ConfigStore, args: argparse.Namespace) -> int:
    path = Path(args.path)
    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        return 1
    return _run(store, args, lambda: load_wav(path))


def cmd_record(store: ConfigStore, args: argparse.Namespace) -> int:
    recorder = SoundDeviceRecorder()

    def _capture() -> np.ndarray:
        recorder.start()
        input("Recording... press Enter to stop.\n")
        return recorder.stop()

    return _run(store, args, _capture)


def cmd_models(store: ConfigStore, args: argparse.Namespace) -> int:
    current = store.get_model_id()
    for entry in models_for_display(store.get_engine()):
        marker = "*" if entry.id == current else " "
        print(f"{marker} {entry.id:<16} {entry.name:<16} {entry.size:>8}  {entry.description}")
    return 0


def cmd_config(store: ConfigStore, args: argparse.Namespace) -> int:
    if args.engine:
        store.set_engine(args.engine)
    if args.model:
        store.set_model_id(args.model)
    if args.language:
        store.set_language(args.language)
    if args.api_key is not None:
        store.set_api_key(args.api_key)

    chunking = store.get_chunking()
    updates = {}
    if args.chunk_seconds is not None:
        updates["chunk_seconds"] = args.chunk_seconds
    if args.overlap_seconds is not None:
        updates["overlap_seconds"] = args.overlap_seconds
    if args.max_minutes is not None:
        updates["max_total_minutes"] = args.max_minutes
    if args.no_duration_limit:
        updates["enforce_duration_limit"] = False
    if updates:
        try:
            store.set_chunking(replace(chunking, **updates))
        except ValueError as exc:
            print(f"Invalid chunking settings: {exc}", file=sys.stderr)
            return 1

    print(f"engine={store.get_engine()} model={store.get_model_id()} language={store.get_language()}")
    print(f"chunking={store.get_chunking()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chunkscribe", description="Chunked streaming speech transcription")
    parser.add_argument("--config", type=Path, default=None, help="Path to the JSON config file")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("transcribe", "Transcribe a WAV file"), ("record", "Record from the microphone")):
        p = sub.add_parser(name, help=help_text)
        if name == "transcribe":
            p.add_argument("path")
        p.add_argument("--model", choices=sorted(MODEL_REGISTRY), default=None)
        p.add_argument("--language", choices=sorted(SUPPORTED_LANGUAGES), default=None)

    sub.add_parser("models", help="List available models")

    p = sub.add_parser("config", help="Update saved preferences")
    p.add_argument("--engine", choices=["whisper", "dashscope"])
    p.add_argument("--model", choices=sorted(MODEL_REGISTRY))
    p.add_argument("--language", choices=sorted(SUPPORTED_LANGUAGES))
    p.add_argument("--api-key", default=None)
    p.add_argument("--chunk-seconds", type=float)
    p.add_argument("--overlap-seconds", type=float)
    p.add_argument("--max-minutes", type=float)
    p.add_argument("--no-duration-limit", action="store_true")
    return parser


COMMANDS = {
    "transcribe": cmd_transcribe,
    "record": cmd_record,
    "models": cmd_models,
    "config": cmd_config,
}


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    store = JsonConfigStore(path=args.config)
    return COMMANDS[args.command](store, args)


if __name__ == "__main__":
    raise SystemExit(main())
