from __future__ import annotations

import json

import pytest

from localfim.context import BackendSettings, ServiceContext
from localfim.errors import (
    LaunchCancelledError,
    LaunchFailedError,
    NotInstalledError,
    PullFailedError,
)
from localfim.provisioner import ModelProvisioner
from localfim.supervisor import DOWNLOAD_URL, HostAdapter, Supervisor
from localfim.types import ModelIdentifier, ProgressUpdate, ReadySignal, ServiceState


class RecordingHost:
    def __init__(self, confirm=True):
        self.answer = confirm
        self.calls = []

    def adapter(self) -> HostAdapter:
        return HostAdapter(
            notify=lambda message: self.calls.append(("notify", message)),
            notify_error=lambda message, detail=None: self.calls.append(("error", message)),
            report_progress=lambda message, inc: self.calls.append(("progress", message, inc)),
            confirm=self._confirm,
            open_url=lambda url: self.calls.append(("open", url)),
        )

    def _confirm(self, message, action):
        self.calls.append(("confirm", action))
        return self.answer

    def kinds(self):
        return [call[0] for call in self.calls]


class FakeLauncher:
    def __init__(self, outcome=None):
        self.outcome = outcome
        self.calls = []
        self.stopped = False

    def ensure_running(self, desired=True, cancel=None, timeout=None):
        self.calls.append(desired)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return ReadySignal(ServiceState.RUNNING, spawned=True)

    def stop(self):
        self.stopped = True


class FakeProvisioner:
    def __init__(self, updates=(), error=None):
        self.updates = list(updates)
        self.error = error
        self.models = []

    def ensure_model(self, model, on_progress=None, stop_event=None):
        self.models.append(model)
        for update in self.updates:
            on_progress(update)
        if self.error is not None:
            raise self.error


@pytest.fixture
def context():
    ctx = ServiceContext(BackendSettings())
    yield ctx
    ctx.close()


def _supervisor(context, host, launcher=None, provisioner=None):
    return Supervisor(
        context,
        host.adapter(),
        probe=object(),
        launcher=launcher or FakeLauncher(),
        provisioner=provisioner or FakeProvisioner(),
    )


def test_ready_backend_with_installed_model(context):
    host = RecordingHost()
    provisioner = FakeProvisioner()

    assert _supervisor(context, host, provisioner=provisioner).ensure_ready() is True
    assert provisioner.models == [ModelIdentifier("codellama", "7b-code")]
    assert host.calls == []


def test_missing_binary_offers_download_page(context):
    host = RecordingHost(confirm=True)
    supervisor = _supervisor(context, host, launcher=FakeLauncher(NotInstalledError("ollama")))

    assert supervisor.ensure_ready() is False
    assert host.calls == [("confirm", "Install Ollama"), ("open", DOWNLOAD_URL)]


def test_declined_install_prompt_opens_nothing(context):
    host = RecordingHost(confirm=False)
    supervisor = _supervisor(context, host, launcher=FakeLauncher(NotInstalledError("ollama")))

    assert supervisor.ensure_ready() is False
    assert host.kinds() == ["confirm"]


def test_launch_failure_is_reported(context):
    host = RecordingHost()
    supervisor = _supervisor(context, host, launcher=FakeLauncher(LaunchFailedError("crashed 3 times")))

    assert supervisor.ensure_ready() is False
    assert host.calls == [("error", "Failed to start Ollama server.")]


def test_cancelled_launch_is_silent(context):
    host = RecordingHost()
    provisioner = FakeProvisioner()
    supervisor = _supervisor(
        context,
        host,
        launcher=FakeLauncher(LaunchCancelledError("cancelled")),
        provisioner=provisioner,
    )

    assert supervisor.ensure_ready() is False
    assert host.calls == []
    assert provisioner.models == []


def test_pull_progress_and_completion_are_reported(context):
    host = RecordingHost()
    provisioner = FakeProvisioner(
        updates=[
            ProgressUpdate("pulling 3a43", 40, 40),
            ProgressUpdate("pulling 3a43", 60, 100),
        ]
    )
    model = ModelIdentifier.parse("starcoder:1b")

    assert _supervisor(context, host, provisioner=provisioner).ensure_ready(model) is True
    assert host.calls == [
        ("progress", "Installing starcoder:1b: pulling 3a43", 40),
        ("progress", "Installing starcoder:1b: pulling 3a43", 60),
        ("notify", "Language model starcoder:1b has been installed."),
    ]


def test_provision_failure_names_manual_command(context):
    host = RecordingHost()
    provisioner = FakeProvisioner(
        error=PullFailedError("pull failed", "ollama pull codellama:7b-code")
    )

    assert _supervisor(context, host, provisioner=provisioner).ensure_ready() is False
    assert host.kinds() == ["error"]
    assert "`ollama pull codellama:7b-code`" in host.calls[0][1]


def test_state_changes_are_announced(context):
    host = RecordingHost()
    _supervisor(context, host)

    context.set_state(ServiceState.STARTING)
    context.set_state(ServiceState.RUNNING)
    context.set_state(ServiceState.CRASHED)
    context.set_state(ServiceState.STARTING)
    context.set_state(ServiceState.RUNNING)

    assert [message for _, message in host.calls] == [
        "Starting Ollama server.",
        "Ollama server started.",
        "Ollama server stopped unexpectedly; restarting.",
        "Ollama server started.",
    ]


def test_shutdown_cancels_and_stops_launcher(context):
    launcher = FakeLauncher()
    supervisor = _supervisor(context, RecordingHost(), launcher=launcher)

    supervisor.shutdown()

    assert context.cancel.cancelled
    assert launcher.stopped


class OllamaResponse:
    def __init__(self, payload=None, lines=()):
        self.payload = payload
        self.lines = [json.dumps(record).encode("utf-8") for record in lines]

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload

    def iter_lines(self, *, decode_unicode):
        yield from self.lines

    def close(self):
        pass


class OllamaSession:
    """Answers tags and pull; the pulled model shows up in later tag lists."""

    def __init__(self):
        self.models = []
        self.pulls = 0

    def get(self, url, *, timeout):
        assert url.endswith("/api/tags")
        return OllamaResponse({"models": [{"name": name} for name in self.models]})

    def post(self, url, *, json, stream, timeout):
        assert url.endswith("/api/pull")
        self.pulls += 1
        self.models.append(json["model"])
        return OllamaResponse(
            lines=[
                {"status": "pulling 3a43", "completed": 5, "total": 10},
                {"status": "pulling 3a43", "completed": 10, "total": 10},
                {"status": "success"},
            ]
        )

    def close(self):
        pass


@pytest.fixture
def ollama_context():
    session = OllamaSession()
    ctx = ServiceContext(BackendSettings(), session=session)
    yield ctx, session
    ctx.close()


def test_real_pull_installs_model_and_leaves_context_usable(ollama_context):
    context, session = ollama_context
    host = RecordingHost()
    supervisor = Supervisor(
        context,
        host.adapter(),
        probe=object(),
        launcher=FakeLauncher(),
        provisioner=ModelProvisioner(context.client),
    )

    assert supervisor.ensure_ready() is True
    assert session.pulls == 1
    assert host.calls == [
        ("progress", "Installing codellama:7b-code: pulling 3a43", 50),
        ("progress", "Installing codellama:7b-code: pulling 3a43", 50),
        ("progress", "Installing codellama:7b-code: success", 0),
        ("notify", "Language model codellama:7b-code has been installed."),
    ]
    assert not context.cancel.cancelled
    assert context.cancel._callbacks == []

    assert supervisor.ensure_ready() is True
    assert session.pulls == 1


def test_cancelled_context_interrupts_pull(ollama_context):
    context, session = ollama_context
    host = RecordingHost()
    supervisor = Supervisor(
        context,
        host.adapter(),
        probe=object(),
        launcher=FakeLauncher(),
        provisioner=ModelProvisioner(context.client),
    )
    context.cancel.cancel()

    assert supervisor.ensure_ready() is False
    assert host.kinds() == ["error"]
    assert "`ollama pull codellama:7b-code`" in host.calls[0][1]
