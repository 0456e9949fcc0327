"""Model lifecycle state machine: load -> warmup -> ready, and reload on config change."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from config import TARGET_SAMPLE_RATE
from errors import CapabilityUnavailable, InvalidTransition, LoadFailure, LoadSuperseded, classify_load_error
from interfaces import ProgressCallback, TranscriptionBackend
from models import ModelComponents, ModelConfig, ModelState

logger = logging.getLogger(__name__)

StateCallback = Callable[[ModelState, ModelState], None]

_FORWARD = {
    ModelState.UNINITIALIZED: {ModelState.INITIALIZING},
    ModelState.INITIALIZING: {ModelState.LOADING_MODEL},
    ModelState.LOADING_MODEL: {ModelState.WARMING_UP},
    ModelState.WARMING_UP: {ModelState.READY},
    ModelState.READY: set(),
    ModelState.ERROR: {ModelState.INITIALIZING},
}


class ModelLifecycle:
    def __init__(
        self,
        backend: TranscriptionBackend,
        config: ModelConfig,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._on_state_change = on_state_change

        self._lock = threading.RLock()
        self._state = ModelState.UNINITIALIZED
        self._error_reason = ""
        self._components: Optional[ModelComponents] = None
        self._warmed_up = False
        # Bumped on every reset so loads started for an older config can tell.
        self._generation = 0

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def error_reason(self) -> str:
        return self._error_reason

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def components(self) -> Optional[ModelComponents]:
        return self._components

    @property
    def warmed_up(self) -> bool:
        return self._warmed_up

    @property
    def is_ready(self) -> bool:
        return self._state == ModelState.READY and self._components is not None

    def load(self, on_progress: Optional[ProgressCallback] = None) -> ModelComponents:
        with self._lock:
            ready = self._components
            if self._state == ModelState.READY and ready is not None:
                return ready
            if self._state not in (ModelState.UNINITIALIZED, ModelState.ERROR):
                raise InvalidTransition(f"load requested while {self._state.value}")
            generation = self._generation
            config = self._config
            self._error_reason = ""
            self._transition(ModelState.INITIALIZING)

        try:
            self._backend.check_capability(config)
        except CapabilityUnavailable as exc:
            self._fail(generation, exc.message)
            raise
        except Exception as exc:
            failure = classify_load_error(config.model_path, exc)
            logger.error(f"Capability check failed: {failure.message}")
            self._fail(generation, failure.message)
            raise failure from exc

        components: Optional[ModelComponents] = None
        stored = False
        try:
            self._advance(generation, ModelState.LOADING_MODEL)
            logger.info(f"Loading model components for {config.model_path}")
            components = self._backend.load(config, on_progress)
            if components is None or components.feature_processor is None or components.model is None:
                raise LoadFailure(f"Model components missing after load for {config.model_path}")
            self._advance(generation, ModelState.WARMING_UP, components)
            stored = True
            self._warmup(components)
            self._advance(generation, ModelState.READY)
        except LoadSuperseded:
            if components is not None and not stored:
                self._backend.release(components)
            raise
        except Exception as exc:
            failure = classify_load_error(config.model_path, exc)
            logger.error(f"Model load failed: {failure.message}")
            if components is not None and not stored:
                self._backend.release(components)
            self._fail(generation, failure.message)
            raise failure from exc

        logger.info(f"Model {config.model_id} is ready (warmed_up={self._warmed_up})")
        return components

    def change_config(self, config: ModelConfig) -> None:
        """Drop loaded resources and reset so the next load uses ``config``."""
        with self._lock:
            logger.info(f"Changing model from {self._config.model_id} to {config.model_id}")
            self._drop_components()
            self._config = config
            self._error_reason = ""
            self._transition(ModelState.UNINITIALIZED)

    def reload(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelComponents:
        self.change_config(config)
        return self.load(on_progress)

    def teardown(self, reason: str | None = None) -> None:
        with self._lock:
            self._drop_components()
            if reason:
                self._error_reason = reason
                self._transition(ModelState.ERROR)
            else:
                self._error_reason = ""
                self._transition(ModelState.UNINITIALIZED)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _warmup(self, components: ModelComponents) -> None:
        # Warmup failure is non-fatal: the model still serves, just cold.
        if not components.warmup_required:
            self._warmed_up = True
            return
        try:
            silence = np.zeros(TARGET_SAMPLE_RATE, dtype=np.float32)
            features = components.feature_processor(silence)
            components.model.generate(features, max_new_tokens=1)
            self._warmed_up = True
        except Exception as exc:
            logger.warning(f"Model warmup failed, continuing without it: {exc}")
            self._warmed_up = False

    def _advance(
        self,
        generation: int,
        to_state: ModelState,
        components: Optional[ModelComponents] = None,
    ) -> None:
        with self._lock:
            if generation != self._generation:
                raise LoadSuperseded(self._config.model_id)
            if components is not None:
                self._components = components
                self._warmed_up = False
            self._transition(to_state)

    def _fail(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._release_current()
            self._error_reason = reason
            self._transition(ModelState.ERROR)

    def _drop_components(self) -> None:
        self._generation += 1
        self._release_current()

    def _release_current(self) -> None:
        components = self._components
        self._components = None
        self._warmed_up = False
        if components is not None:
            try:
                self._backend.release(components)
            except Exception as exc:
                logger.warning(f"Releasing model components failed: {exc}")

    def _transition(self, to_state: ModelState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        if to_state not in (ModelState.ERROR, ModelState.UNINITIALIZED) and to_state not in _FORWARD[from_state]:
            raise InvalidTransition(f"{from_state.value} -> {to_state.value}")
        self._state = to_state
        logger.debug(f"Model state {from_state.value} -> {to_state.value}")
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
