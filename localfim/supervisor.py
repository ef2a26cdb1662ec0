"""Bring the backend to a usable state: installed, running, model pulled."""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .cancellation import CancellationHandle
from .context import ServiceContext
from .errors import (
    LaunchCancelledError,
    LaunchFailedError,
    NotInstalledError,
    ProbeError,
    ProvisionError,
)
from .launcher import ServiceLauncher
from .probe import ProcessProbe
from .provisioner import ModelProvisioner
from .types import ModelIdentifier, ProgressUpdate, ServiceState

logger = logging.getLogger(__name__)

DOWNLOAD_URL = "https://ollama.com/download"


@dataclass
class HostAdapter:
    """Bridges the supervisor to whatever UI hosts it."""

    notify: Callable[[str], None]
    notify_error: Callable[[str, str | None], None]
    report_progress: Callable[[str, int], None]
    confirm: Callable[[str, str], bool]
    open_url: Callable[[str], None]


class Supervisor:
    def __init__(
        self,
        context: ServiceContext,
        host: HostAdapter,
        *,
        probe: ProcessProbe | None = None,
        launcher: ServiceLauncher | None = None,
        provisioner: ModelProvisioner | None = None,
        popen=subprocess.Popen,
    ) -> None:
        settings = context.settings
        self.context = context
        self.host = host
        self.probe = probe or ProcessProbe(settings.binary, context.client, settings.probe_timeout)
        self.launcher = launcher or ServiceLauncher(context, self.probe, popen=popen)
        self.provisioner = provisioner or ModelProvisioner(context.client, settings.binary)
        context.add_listener(self._on_state_change)

    def _on_state_change(self, previous: ServiceState, state: ServiceState) -> None:
        if state is ServiceState.STARTING and previous is not ServiceState.CRASHED:
            self.host.notify("Starting Ollama server.")
        elif state is ServiceState.CRASHED:
            self.host.notify("Ollama server stopped unexpectedly; restarting.")
        elif state is ServiceState.RUNNING and previous in (
            ServiceState.STARTING,
            ServiceState.CRASHED,
        ):
            self.host.notify("Ollama server started.")

    def request_installation(self) -> None:
        message = (
            "The local AI code assistant requires an Ollama installation. "
            "Install Ollama and restart the editor."
        )
        if self.host.confirm(message, "Install Ollama"):
            self.host.open_url(DOWNLOAD_URL)

    def ensure_ready(
        self,
        model: ModelIdentifier | None = None,
        cancel: CancellationHandle | None = None,
    ) -> bool:
        """Probe, launch and provision; return whether generation can start.

        Installation and provisioning problems are reported through the host;
        they need the user to act, so nothing here retries them.
        """
        model = model or self.context.settings.model_id
        cancel = cancel or self.context.cancel
        try:
            self.launcher.ensure_running(True, cancel)
        except NotInstalledError as exc:
            logger.info("%s", exc)
            self.request_installation()
            return False
        except LaunchCancelledError:
            logger.info("Backend launch cancelled")
            return False
        except (LaunchFailedError, ProbeError) as exc:
            logger.error("Backend unavailable: %s", exc)
            self.host.notify_error("Failed to start Ollama server.", str(exc))
            return False

        pulled = False

        def on_progress(update: ProgressUpdate) -> None:
            nonlocal pulled
            pulled = True
            self.host.report_progress(f"Installing {model}: {update.message}", update.increment)

        pull_stop = threading.Event()
        cancel.add_callback(pull_stop.set)
        try:
            self.provisioner.ensure_model(model, on_progress, stop_event=pull_stop)
        except ProvisionError as exc:
            logger.error("Provisioning %s failed: %s", model, exc)
            self.host.notify_error(
                "Language model has failed to install. "
                f"Open a terminal and run `{exc.remedy}`.",
                str(exc),
            )
            return False
        finally:
            cancel.remove_callback(pull_stop.set)
        if pulled:
            self.host.notify(f"Language model {model} has been installed.")
        return True

    def shutdown(self) -> None:
        self.context.close()
        self.launcher.stop()
