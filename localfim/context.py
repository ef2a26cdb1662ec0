from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

import requests

from .cancellation import CancellationHandle
from .client import InferenceClient
from .types import ModelIdentifier, ServiceState

logger = logging.getLogger(__name__)

StateListener = Callable[[ServiceState, ServiceState], None]


@dataclass(frozen=True)
class BackendSettings:
    """Plain values the core needs from the configuration file."""

    endpoint: str = "http://localhost:11434"
    model: str = "codellama:7b-code"
    temperature: float = 0.1
    top_p: float = 0.3
    request_timeout: float = 300
    binary: str = "ollama"
    readiness_marker: str = "Listening on"
    probe_timeout: float = 3
    restart_delay: float = 1.0
    max_restarts: int | None = None
    template: str = "<PRE>{prefix} <SUF>{suffix} <MID>"
    eos_marker: str = "<EOT>"

    @classmethod
    def from_config(cls, cfg: dict) -> BackendSettings:
        return cls(
            endpoint=cfg["endpoint"],
            model=cfg["model"],
            temperature=float(cfg["temperature"]),
            top_p=float(cfg["top_p"]),
            request_timeout=float(cfg["request_timeout"]),
            binary=cfg["ollama_binary"],
            readiness_marker=cfg["readiness_marker"],
            probe_timeout=float(cfg["probe_timeout"]),
            restart_delay=float(cfg["restart_delay"]),
            max_restarts=cfg.get("max_restarts"),
            template=cfg["fim_template"],
            eos_marker=cfg["eos_marker"],
        )

    @property
    def model_id(self) -> ModelIdentifier:
        return ModelIdentifier.parse(self.model)


class ServiceContext:
    """Owns the process-wide backend state.

    Created once at host startup and closed at shutdown. ``close()`` signals
    ``cancel``, which stops restart attempts and terminates any child the
    launcher spawned.
    """

    def __init__(
        self,
        settings: BackendSettings,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.client = InferenceClient(
            settings.endpoint,
            settings.model_id,
            temperature=settings.temperature,
            top_p=settings.top_p,
            template=settings.template,
            session=self.session,
            read_timeout=settings.request_timeout,
        )
        self.cancel = CancellationHandle()
        self._state = ServiceState.STOPPED
        self._state_lock = threading.Lock()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    def set_state(self, state: ServiceState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
            listeners = list(self._listeners)
        if previous is state:
            return
        logger.info("Backend state %s -> %s", previous.value, state.value)
        for listener in listeners:
            listener(previous, state)

    def add_listener(self, listener: StateListener) -> None:
        with self._state_lock:
            self._listeners.append(listener)

    def close(self) -> None:
        self.cancel.cancel()
        self.session.close()
