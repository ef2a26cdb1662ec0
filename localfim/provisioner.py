"""Make sure the requested model is pulled, reporting normalized progress."""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent import futures

import requests

from .client import InferenceClient
from .errors import PullFailedError, StreamError, VerificationFailedError
from .types import ModelIdentifier, ProgressUpdate, PullProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


def manual_remedy(model: ModelIdentifier, binary: str = "ollama") -> str:
    return f"{binary} pull {model}"


class ProgressTracker:
    """Turn per-phase byte counters into increments a single bar can sum.

    Each ``status`` is an independent phase. The increment for a record is
    its percentage minus the highest percentage already reported for the
    same phase, so revisiting a finished phase adds nothing.
    """

    def __init__(self) -> None:
        self._last: dict[str, int] = {}

    def update(self, progress: PullProgress) -> ProgressUpdate:
        percent = progress.percent
        last = self._last.get(progress.status, 0)
        increment = max(0, percent - last)
        self._last[progress.status] = max(last, percent)
        return ProgressUpdate(message=progress.status, increment=increment, percent=percent)


class ModelProvisioner:
    def __init__(self, client: InferenceClient, binary: str = "ollama") -> None:
        self.client = client
        self.binary = binary
        self._lock = threading.Lock()
        self._in_flight: dict[ModelIdentifier, futures.Future] = {}

    def installed(self) -> list[ModelIdentifier]:
        return self.client.list_models()

    def is_installed(self, model: ModelIdentifier) -> bool:
        return model in self.installed()

    def ensure_model(
        self,
        model: ModelIdentifier,
        on_progress: ProgressCallback | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Pull ``model`` unless the backend already has it.

        Concurrent calls for the same model wait on one pull. Failures raise
        :class:`PullFailedError` or :class:`VerificationFailedError`; neither
        is retried here.
        """
        with self._lock:
            future = self._in_flight.get(model)
            owner = future is None
            if owner:
                future = futures.Future()
                self._in_flight[model] = future

        if not owner:
            future.result()
            return

        try:
            self._provision(model, on_progress, stop_event)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(None)
        finally:
            with self._lock:
                self._in_flight.pop(model, None)

    def _provision(
        self,
        model: ModelIdentifier,
        on_progress: ProgressCallback | None,
        stop_event: threading.Event | None,
    ) -> None:
        remedy = manual_remedy(model, self.binary)
        try:
            if self.is_installed(model):
                logger.info("Model %s is already installed", model)
                return
        except (requests.RequestException, ValueError) as exc:
            raise PullFailedError(f"Could not list installed models: {exc}", remedy) from exc

        logger.info("Pulling model %s", model)
        tracker = ProgressTracker()
        try:
            for progress in self.client.pull(model, stop_event):
                update = tracker.update(progress)
                logger.debug(
                    "Pull %s: %s %d%% (+%d)", model, update.message, update.percent, update.increment
                )
                if on_progress is not None:
                    on_progress(update)
        except (requests.RequestException, StreamError) as exc:
            raise PullFailedError(f"Pulling {model} failed: {exc}", remedy) from exc

        if stop_event is not None and stop_event.is_set():
            raise PullFailedError(f"Pulling {model} was interrupted", remedy)

        try:
            present = self.is_installed(model)
        except (requests.RequestException, ValueError) as exc:
            raise VerificationFailedError(
                f"Could not verify {model} after pulling: {exc}", remedy
            ) from exc
        if not present:
            raise VerificationFailedError(
                f"{model} is still missing after the pull finished", remedy
            )
        logger.info("Model %s installed", model)
