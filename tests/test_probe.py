from __future__ import annotations

import subprocess
from types import SimpleNamespace

import pytest
import requests

from localfim import probe as probe_module
from localfim.errors import ProbeError
from localfim.probe import ProcessProbe
from localfim.types import ServiceState


class ScriptedClient:
    endpoint = "http://localhost:11434"

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    def list_models(self, timeout=None):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _version_ok(cmd, **kwargs):
    return SimpleNamespace(returncode=0, stdout="ollama version is 0.1.20\n", stderr="")


def _version_missing(cmd, **kwargs):
    raise FileNotFoundError(2, "No such file or directory", cmd[0])


def test_missing_binary_is_not_installed(monkeypatch):
    monkeypatch.setattr(probe_module.subprocess, "run", _version_missing)
    client = ScriptedClient([])

    assert ProcessProbe("ollama", client).probe() is ServiceState.NOT_INSTALLED
    assert client.calls == 0


def test_failing_version_check_is_not_installed(monkeypatch):
    monkeypatch.setattr(
        probe_module.subprocess,
        "run",
        lambda cmd, **kw: SimpleNamespace(returncode=127, stdout="", stderr="broken"),
    )

    assert ProcessProbe("ollama", ScriptedClient([])).probe() is ServiceState.NOT_INSTALLED


def test_hanging_version_check_is_not_installed(monkeypatch):
    def hang(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(probe_module.subprocess, "run", hang)

    assert ProcessProbe("ollama", ScriptedClient([]), timeout=1).probe() is ServiceState.NOT_INSTALLED


def test_connection_refused_is_stopped(monkeypatch):
    monkeypatch.setattr(probe_module.subprocess, "run", _version_ok)
    client = ScriptedClient(requests.ConnectionError("[Errno 111] Connection refused"))

    assert ProcessProbe("ollama", client).probe() is ServiceState.STOPPED


def test_answering_daemon_is_running(monkeypatch):
    monkeypatch.setattr(probe_module.subprocess, "run", _version_ok)

    assert ProcessProbe("ollama", ScriptedClient([])).probe() is ServiceState.RUNNING


@pytest.mark.parametrize(
    "failure",
    [
        ValueError("Unexpected tags payload"),
        requests.HTTPError("500 Server Error"),
        requests.ReadTimeout("read timed out"),
    ],
)
def test_other_failures_are_errors_not_stopped(monkeypatch, failure):
    monkeypatch.setattr(probe_module.subprocess, "run", _version_ok)

    with pytest.raises(ProbeError):
        ProcessProbe("ollama", ScriptedClient(failure)).probe()


def test_version_returns_output(monkeypatch):
    monkeypatch.setattr(probe_module.subprocess, "run", _version_ok)

    assert ProcessProbe("ollama", ScriptedClient([])).version() == "ollama version is 0.1.20"
