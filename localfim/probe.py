"""Classify the local backend as not installed, stopped or running."""
from __future__ import annotations

import logging
import subprocess

import requests

from .client import InferenceClient
from .errors import ProbeError
from .types import ServiceState

logger = logging.getLogger(__name__)


class ProcessProbe:
    def __init__(self, binary: str, client: InferenceClient, timeout: float = 3) -> None:
        self.binary = binary
        self.client = client
        self.timeout = timeout

    def version(self) -> str | None:
        """Return the binary's version output, or ``None`` if it cannot be run."""
        try:
            result = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.info("Version check for %s failed: %s", self.binary, exc)
            return None
        if result.returncode != 0:
            logger.info(
                "Version check for %s exited with %s: %s",
                self.binary,
                result.returncode,
                (result.stderr or "").strip(),
            )
            return None
        return (result.stdout or result.stderr or "").strip()

    def reachable(self) -> bool:
        """Return whether the daemon answers the tags call.

        Raises :class:`ProbeError` for anything other than a refused
        connection, so a malformed answer never triggers a start attempt.
        """
        try:
            self.client.list_models(timeout=self.timeout)
        except requests.ConnectionError as exc:
            logger.debug("Backend not listening: %s", exc)
            return False
        except (requests.RequestException, ValueError) as exc:
            raise ProbeError(f"Backend at {self.client.endpoint} answered unexpectedly: {exc}") from exc
        return True

    def probe(self) -> ServiceState:
        if self.version() is None:
            return ServiceState.NOT_INSTALLED
        if self.reachable():
            return ServiceState.RUNNING
        return ServiceState.STOPPED
