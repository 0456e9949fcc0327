"""Compute-side message loop.

The loop owns the model lifecycle and at most one transcription session. It
receives requests through a queue and reports back exclusively through status
messages, so the control side never touches backend objects or exceptions.
Requests are validated on the dispatcher thread; loads and sessions run on
their own worker threads so ``stop`` and busy rejections stay responsive.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import replace
from functools import partial
from queue import Queue
from typing import Any, Callable, Dict, Optional

import numpy as np

from chunker import chunk_audio
from config import MODEL_REGISTRY, ChunkingSettings, ModelEntry
from errors import (
    INVALID_REQUEST,
    LOAD_FAILED,
    MODEL_NOT_READY,
    NO_AUDIO,
    AsrError,
    BusyRejection,
    DurationExceeded,
    GenerationFailure,
    LoadSuperseded,
)
from interfaces import FeatureProcessor, StatusCallback, StreamingModel, TranscriptionBackend
from lifecycle import ModelLifecycle
from merger import merge_overlap, merge_transcripts, reduce_fragment
from models import (
    ChangeModelRequest,
    Chunk,
    ChunkProgressStatus,
    CompleteStatus,
    ErrorStatus,
    GenerateRequest,
    LoadingStatus,
    LoadProgress,
    LoadRequest,
    ModelComponents,
    ModelConfig,
    ModelState,
    ReadyStatus,
    Request,
    Session,
    Status,
    StopRequest,
    TranscribingStartStatus,
    UpdateStatus,
)

logger = logging.getLogger(__name__)

LONG_AUDIO_WARNING_S = 300
LARGE_MODEL_MARKERS = ("medium", "large")


class ComputeLoop:
    def __init__(
        self,
        backend: TranscriptionBackend,
        model_config: ModelConfig,
        settings: Optional[ChunkingSettings] = None,
        on_status: Optional[StatusCallback] = None,
        registry: Optional[Dict[str, ModelEntry]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._settings = settings or ChunkingSettings()
        self._on_status = on_status
        self._registry = MODEL_REGISTRY if registry is None else registry
        self._clock = clock
        self._lifecycle = ModelLifecycle(backend, model_config, on_state_change=self._on_model_state)

        self._lock = threading.RLock()
        self._inbox: Queue[Request | None] = Queue()
        self._thread: Optional[threading.Thread] = None
        self._load_future: Optional[Future] = None
        self._session: Optional[Session] = None
        self._session_id = 0
        self._closed = False

    @property
    def state(self) -> ModelState:
        return self._lifecycle.state

    @property
    def lifecycle(self) -> ModelLifecycle:
        return self._lifecycle

    @property
    def busy(self) -> bool:
        return self._session is not None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._closed = False
            self._thread = threading.Thread(target=self._run, name="compute-loop", daemon=True)
            self._thread.start()

    def post(self, request: Request) -> None:
        if self._closed:
            logger.warning(f"Compute loop is shut down, dropping {getattr(request, 'kind', request)!r} request")
            return
        self._inbox.put(request)

    def shutdown(self, timeout: float = 1.0) -> None:
        """Cancel the active session, stop the dispatcher and release the model."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            session = self._session
            self._load_future = None
        if session is not None:
            session.token.cancel()
        self._inbox.put(None)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._lifecycle.teardown()
        logger.info("Compute loop shut down")

    def handle(self, request: Request) -> None:
        if isinstance(request, LoadRequest):
            self._handle_load()
        elif isinstance(request, GenerateRequest):
            self._handle_generate(request)
        elif isinstance(request, ChangeModelRequest):
            self._handle_change_model(request)
        elif isinstance(request, StopRequest):
            self._handle_stop()
        else:
            logger.warning(f"Received unknown request: {request!r}")

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            request = self._inbox.get()
            if request is None:  # Sentinel
                break
            try:
                self.handle(request)
            except Exception as exc:
                logger.exception(f"Failed to handle {getattr(request, 'kind', request)!r} request")
                self._emit(ErrorStatus(INVALID_REQUEST, f"Request failed: {exc}"))

    # ------------------------------------------------------------------
    # Load / change model
    # ------------------------------------------------------------------

    def _handle_load(self) -> None:
        with self._lock:
            future = self._load_future
            if future is None or (future.done() and future.exception() is not None):
                config = self._lifecycle.config
                future = self._start_load(partial(self._load, config, ""))
            else:
                logger.info("Model loading already in progress or completed")
        future.add_done_callback(
            partial(self._report_load, ready_message="", error_prefix="Model initialization failed: ")
        )

    def _handle_change_model(self, request: ChangeModelRequest) -> None:
        if not request.model_id or not request.model_path:
            self._emit(ErrorStatus(INVALID_REQUEST, "Model change request missing model information."))
            return
        config = self._resolve_config(request)
        self._emit(LoadingStatus(f"Switching to {request.model_id} model..."))
        with self._lock:
            # Reset synchronously so generate requests queued after this one see the new state.
            self._lifecycle.change_config(config)
            future = self._start_load(partial(self._load, config, f" {request.model_id}"))
        future.add_done_callback(
            partial(
                self._report_load,
                ready_message=f"Model switched to {request.model_id}",
                error_prefix=f"Failed to switch to {request.model_id}: ",
            )
        )

    def _resolve_config(self, request: ChangeModelRequest) -> ModelConfig:
        entry = self._registry.get(request.model_id)
        if entry is not None:
            return entry.to_model_config(request.model_path)
        return replace(self._lifecycle.config, model_id=request.model_id, model_path=request.model_path)

    def _start_load(self, task: Callable[[], ModelComponents]) -> Future:
        future: Future = Future()
        self._load_future = future

        def _runner() -> None:
            try:
                future.set_result(task())
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=_runner, name="compute-load", daemon=True).start()
        return future

    def _load(self, config: ModelConfig, label: str) -> ModelComponents:
        if any(marker in config.model_path.lower() for marker in LARGE_MODEL_MARKERS):
            logger.info(f"Loading large model: {config.model_path}. This may take several minutes...")
            self._emit(
                LoadingStatus(
                    f"Loading {config.model_path} - This is a large model and may take "
                    "several minutes to download and initialize..."
                )
            )
        return self._lifecycle.load(partial(self._report_progress, label))

    def _report_progress(self, label: str, progress: LoadProgress) -> None:
        self._emit(LoadingStatus(f"Loading{label}: {progress.file} ({progress.progress:.0f}%)"))

    def _report_load(self, future: Future, ready_message: str, error_prefix: str) -> None:
        if future is not self._load_future:
            logger.info("Ignoring outcome of a superseded model load")
            return
        exc = future.exception()
        if exc is None:
            self._emit(ReadyStatus(ready_message))
            return
        if isinstance(exc, LoadSuperseded):
            return
        code = exc.code if isinstance(exc, AsrError) else LOAD_FAILED
        message = exc.message if isinstance(exc, AsrError) else str(exc)
        logger.error(f"{error_prefix}{message}")
        self._emit(ErrorStatus(code, f"{error_prefix}{message}", fatal=True))

    def _on_model_state(self, from_state: ModelState, to_state: ModelState) -> None:
        if to_state == ModelState.LOADING_MODEL:
            self._emit(LoadingStatus(f"Loading {self._lifecycle.config.model_id}...", stage=to_state))
        elif to_state == ModelState.WARMING_UP:
            self._emit(LoadingStatus("Preparing model...", stage=to_state))

    # ------------------------------------------------------------------
    # Generate / stop
    # ------------------------------------------------------------------

    def _handle_generate(self, request: GenerateRequest) -> None:
        with self._lock:
            if self._session is not None:
                logger.warning("Already processing audio, rejecting generate request")
                self._reject(BusyRejection())
                return
            audio = request.audio
            if audio is None or len(audio) == 0:
                self._emit(ErrorStatus(NO_AUDIO, "No audio data received."))
                return
            components = self._lifecycle.components
            if not self._lifecycle.is_ready or components is None:
                logger.error("Model not ready for transcription")
                self._emit(ErrorStatus(MODEL_NOT_READY, "Model not ready."))
                return

            duration = len(audio) / self._settings.sample_rate
            limit = self._settings.max_total_seconds
            if self._settings.enforce_duration_limit and duration > limit:
                logger.error(f"Audio too long: {duration:.1f}s exceeds maximum {limit:.0f}s")
                self._reject(
                    DurationExceeded(
                        f"Audio too long ({duration:.1f}s). Maximum supported duration is {limit:.0f}s."
                    )
                )
                return
            if not self._settings.enforce_duration_limit and duration > LONG_AUDIO_WARNING_S:
                logger.warning(f"Processing very long audio: {duration:.1f}s. This may take significant time and memory.")

            self._session_id += 1
            session = Session(session_id=self._session_id, language=request.language)
            self._session = session

        logger.info(f"Starting session {session.session_id}: {len(audio)} samples ({duration:.1f}s)")
        threading.Thread(
            target=self._run_session,
            args=(session, audio, components),
            name=f"compute-session-{session.session_id}",
            daemon=True,
        ).start()

    def _handle_stop(self) -> None:
        session = self._session
        if session is None:
            logger.debug("Stop requested with no active session")
            return
        logger.info(f"Cancelling session {session.session_id}")
        session.token.cancel()

    def _run_session(self, session: Session, audio: np.ndarray, components: ModelComponents) -> None:
        limit = self._settings.overlap_word_limit
        try:
            self._emit_for(session, TranscribingStartStatus())
            session.chunks = chunk_audio(audio, self._settings.max_chunk_samples, self._settings.overlap_samples)
            total = len(session.chunks)
            for index, chunk in enumerate(session.chunks):
                if session.token.cancelled:
                    logger.info(f"Session {session.session_id} cancelled before chunk {index + 1}")
                    return
                if total > 1:
                    self._emit_for(session, ChunkProgressStatus(index, total, text=session.transcript))
                text = self._transcribe_chunk(session, components, chunk, index, total)
                if session.token.cancelled:
                    logger.info(f"Session {session.session_id} cancelled after chunk {index + 1}")
                    return
                session.chunk_texts.append(text)
                # The first chunk seeds the transcript as-is, matching merge_transcripts.
                session.transcript = text if index == 0 else merge_overlap(session.transcript, text, limit)
                logger.info(f"Chunk {index + 1}/{total} completed: {len(text)} chars")
                if total > 1:
                    self._emit_for(
                        session,
                        ChunkProgressStatus(
                            index,
                            total,
                            text=session.transcript,
                            chunk_text=text,
                            tps=session.tokens_per_second(self._clock()),
                            num_tokens=session.num_tokens,
                        ),
                    )

            final_text = merge_transcripts(session.chunk_texts, limit).strip()
            self._emit_for(session, CompleteStatus(final_text, total_chunks=total))
        except Exception as exc:
            if session.token.cancelled:
                logger.info(f"Session {session.session_id} failed after cancellation: {exc}")
                return
            logger.exception(f"Transcription failed in session {session.session_id}")
            self._reject(GenerationFailure(f"Transcription failed: {exc}"))
        finally:
            with self._lock:
                if self._session is session:
                    self._session = None

    def _transcribe_chunk(
        self,
        session: Session,
        components: ModelComponents,
        chunk: Chunk,
        index: int,
        total: int,
    ) -> str:
        processor: FeatureProcessor = components.feature_processor
        model: StreamingModel = components.model
        features = processor(chunk.samples)
        session.current_text = ""

        def _streamer(fragment: str) -> None:
            if session.token.cancelled:
                return
            now = self._clock()
            session.current_text = reduce_fragment(session.current_text, fragment)
            session.record_token(now)
            tps = session.tokens_per_second(now)
            logger.debug(f"Chunk {index + 1} streamer update: {session.current_text!r}")
            if total > 1:
                status: Status = ChunkProgressStatus(
                    index,
                    total,
                    text=session.transcript,
                    chunk_text=session.current_text,
                    tps=tps,
                    num_tokens=session.num_tokens,
                )
            else:
                status = UpdateStatus(session.current_text, tps=tps, num_tokens=session.num_tokens)
            self._emit_for(session, status)

        language = session.language if session.language and session.language != "auto" else None
        result: Any = model.generate(features, language=language, streamer=_streamer)
        if not session.current_text and isinstance(result, str):
            return result
        return session.current_text

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _reject(self, error: AsrError) -> None:
        self._emit(ErrorStatus(error.code, error.message))

    def _emit_for(self, session: Session, status: Status) -> None:
        if session.token.cancelled:
            return
        self._emit(status)

    def _emit(self, status: Status) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception(f"Status callback failed for {status.kind!r}")
