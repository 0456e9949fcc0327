"""Control-side facade owning at most one compute instance."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from errors import FATAL_CODES, CapabilityUnavailable
from interfaces import ComputeHandle, StatusCallback
from models import (
    MANAGER_MESSAGES,
    ChangeModelRequest,
    ErrorStatus,
    GenerateRequest,
    LoadingStatus,
    LoadRequest,
    ManagerState,
    ModelConfig,
    ModelState,
    ReadyStatus,
    Status,
    StopRequest,
)

logger = logging.getLogger(__name__)

ComputeFactory = Callable[[ModelConfig, StatusCallback], ComputeHandle]
StateCallback = Callable[[ManagerState, ManagerState, str], None]
ResultCallback = Callable[[Status], None]
ReadyCallback = Callable[[], None]

_STAGE_TO_STATE = {
    ModelState.INITIALIZING: ManagerState.INITIALIZING,
    ModelState.LOADING_MODEL: ManagerState.LOADING_MODEL,
    ModelState.WARMING_UP: ManagerState.WARMING_UP,
}


class ManagerFacade:
    def __init__(
        self,
        compute_factory: ComputeFactory,
        model_provider: Callable[[], ModelConfig],
        capability_probe: Optional[Callable[[], None]] = None,
        change_model_delay_s: float = 0.1,
        on_state_change: Optional[StateCallback] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        self._compute_factory = compute_factory
        self._model_provider = model_provider
        self._capability_probe = capability_probe
        self._change_model_delay_s = change_model_delay_s
        self._on_state_change = on_state_change
        self._on_result = on_result

        self._lock = threading.RLock()
        self._state = ManagerState.UNINITIALIZED
        self._message = MANAGER_MESSAGES[ManagerState.UNINITIALIZED]
        self._compute: Optional[ComputeHandle] = None
        # Identifies the current compute instance so late statuses from a disposed one are dropped.
        self._instance_id = 0
        self._on_ready: Optional[ReadyCallback] = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def message(self) -> str:
        return self._message

    @property
    def is_ready(self) -> bool:
        return self._state == ManagerState.READY

    @property
    def has_instance(self) -> bool:
        return self._compute is not None

    def initialize(self) -> None:
        """Probe backend capability without creating a compute instance."""
        with self._lock:
            if self._state != ManagerState.UNINITIALIZED:
                logger.info("Already initialized or initializing")
                return
            if self._probe():
                logger.info(f"Backend available, state remains {self._state.value!r}")

    def trigger(self, on_ready: Optional[ReadyCallback] = None) -> None:
        with self._lock:
            if self._state not in (ManagerState.UNINITIALIZED, ManagerState.ERROR):
                logger.info(f"Initialization trigger ignored, state is {self._state.value!r}")
                return
            if self._compute is not None:
                logger.warning("Trigger called while a compute instance already exists")
                return
            if not self._probe():
                return

            config = self._model_provider()
            logger.info(f"Creating compute instance with model {config.model_id} ({config.model_path})")
            self._set_state(ManagerState.INITIALIZING, f"Creating ASR worker with {config.model_id}...")
            self._instance_id += 1
            instance_id = self._instance_id
            try:
                compute = self._compute_factory(config, lambda status: self._handle_status(instance_id, status))
                compute.start()
            except Exception as exc:
                logger.exception("Failed to create compute instance")
                self._set_state(ManagerState.ERROR, f"Failed to create worker: {exc}")
                return
            self._compute = compute
            self._on_ready = on_ready
            compute.post(LoadRequest())

    def request_transcription(self, audio: np.ndarray, language: Optional[str] = None) -> None:
        with self._lock:
            compute = self._compute
            if self._state != ManagerState.READY or compute is None:
                logger.warning(f"Transcription requested but manager state is {self._state.value!r}. Ignoring.")
                return
            samples = np.array(audio, dtype=np.float32, copy=True).reshape(-1)
            samples.flags.writeable = False
            logger.info(f"Posting generate request: {len(samples)} samples, language={language}")
            compute.post(GenerateRequest(audio=samples, language=language))

    def stop(self) -> None:
        with self._lock:
            if self._compute is None:
                logger.warning("Cannot send stop: no compute instance")
                return
            self._compute.post(StopRequest())

    def change_model(self, model_id: str, model_path: str) -> None:
        with self._lock:
            if self._compute is not None:
                self._forward_change_model(self._compute, model_id, model_path)
                return
            logger.info("Compute instance not created yet, triggering initialization before model change")
            self.trigger()

        # Instance creation is asynchronous from the caller's point of view; retry shortly.
        timer = threading.Timer(self._change_model_delay_s, self._deferred_change_model, args=(model_id, model_path))
        timer.daemon = True
        timer.start()

    def dispose(self, error_message: Optional[str] = None) -> None:
        """Shut the compute instance down and reset to uninitialized (or error)."""
        with self._lock:
            compute = self._detach(error_message)
        self._shutdown(compute)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _detach(self, error_message: Optional[str]) -> Optional[ComputeHandle]:
        logger.warning(f"Disposing compute instance. Error: {error_message or 'None'}")
        compute = self._compute
        self._compute = None
        self._on_ready = None
        self._instance_id += 1
        if error_message:
            self._set_state(ManagerState.ERROR, error_message)
        else:
            self._set_state(ManagerState.UNINITIALIZED)
        return compute

    def _shutdown(self, compute: Optional[ComputeHandle]) -> None:
        # Called without the lock held: shutdown may wait on compute threads that report back here.
        if compute is None:
            return
        try:
            compute.shutdown()
        except Exception:
            logger.exception("Compute instance shutdown failed")

    def _deferred_change_model(self, model_id: str, model_path: str) -> None:
        with self._lock:
            if self._compute is None:
                logger.warning(f"Model change to {model_id} dropped: no compute instance")
                return
            self._forward_change_model(self._compute, model_id, model_path)

    def _forward_change_model(self, compute: ComputeHandle, model_id: str, model_path: str) -> None:
        self._set_state(ManagerState.LOADING_MODEL, f"Switching to {model_id}...")
        logger.info(f"Sending change_model request: {model_id}")
        compute.post(ChangeModelRequest(model_id=model_id, model_path=model_path))

    def _probe(self) -> bool:
        if self._capability_probe is None:
            return True
        try:
            self._capability_probe()
        except CapabilityUnavailable as exc:
            logger.warning(f"Backend unavailable: {exc.message}")
            self._set_state(ManagerState.ERROR, exc.message)
            return False
        except Exception as exc:
            logger.exception("Backend capability probe failed")
            self._set_state(ManagerState.ERROR, f"Backend check failed: {exc}")
            return False
        return True

    def _handle_status(self, instance_id: int, status: Status) -> None:
        with self._lock:
            if instance_id != self._instance_id:
                logger.debug(f"Ignoring {status.kind!r} from a disposed compute instance")
                return
            if isinstance(status, LoadingStatus):
                state = _STAGE_TO_STATE.get(status.stage, ManagerState.LOADING_MODEL)
                self._set_state(state, status.message or None)
                return
            if isinstance(status, ReadyStatus):
                self._set_state(ManagerState.READY, status.message or None)
                on_ready, self._on_ready = self._on_ready, None
                if on_ready:
                    on_ready()
                return
            if isinstance(status, ErrorStatus) and (status.fatal or status.code in FATAL_CODES):
                logger.error(f"Received fatal error from compute instance: {status.message}")
                compute = self._detach(status.message or "Unknown worker error")
            else:
                compute = None
        if compute is not None:
            self._shutdown(compute)
            return
        if self._on_result:
            self._on_result(status)

    def _set_state(self, state: ManagerState, message: Optional[str] = None) -> None:
        message = message or MANAGER_MESSAGES[state]
        if state == self._state and message == self._message:
            return
        from_state = self._state
        logger.info(f"State changing: {from_state.value} -> {state.value} ({message})")
        self._state = state
        self._message = message
        if self._on_state_change:
            self._on_state_change(from_state, state, message)
