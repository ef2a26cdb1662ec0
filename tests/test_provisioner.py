from __future__ import annotations

import threading

import pytest
import requests

from localfim.errors import PullFailedError, StreamError, VerificationFailedError
from localfim.provisioner import ModelProvisioner, ProgressTracker
from localfim.types import ModelIdentifier, PullProgress

MODEL = ModelIdentifier.parse("codellama:7b-code")


class FakeClient:
    def __init__(self, installed=(), events=(), install_on_pull=True, pull_error=None):
        self.installed = list(installed)
        self.events = list(events)
        self.install_on_pull = install_on_pull
        self.pull_error = pull_error
        self.pull_calls = 0
        self.list_calls = 0
        self.pull_started = threading.Event()
        self.release_pull = threading.Event()
        self.release_pull.set()

    def list_models(self, timeout=None):
        self.list_calls += 1
        return list(self.installed)

    def pull(self, model, stop_event=None):
        self.pull_calls += 1
        self.pull_started.set()
        self.release_pull.wait(5)
        yield from self.events
        if self.pull_error is not None:
            raise self.pull_error
        if self.install_on_pull:
            self.installed.append(model)


def test_progress_increments_are_per_phase():
    tracker = ProgressTracker()
    updates = [
        tracker.update(PullProgress("pull", 50, 100)),
        tracker.update(PullProgress("pull", 100, 100)),
        tracker.update(PullProgress("verify", 0, 50)),
    ]

    assert [u.increment for u in updates] == [50, 50, 0]
    assert [u.message for u in updates] == ["pull", "pull", "verify"]


def test_progress_never_negative_and_capped_per_phase():
    tracker = ProgressTracker()
    increments = [
        tracker.update(PullProgress("layer", 80, 100)).increment,
        tracker.update(PullProgress("layer", 40, 100)).increment,
        tracker.update(PullProgress("other", 10, 0)).increment,
        tracker.update(PullProgress("layer", 100, 100)).increment,
        tracker.update(PullProgress("layer", 100, 100)).increment,
    ]

    assert increments == [80, 0, 0, 20, 0]
    assert sum(increments) <= 100


def test_installed_model_returns_without_pulling():
    client = FakeClient(installed=[MODEL])
    provisioner = ModelProvisioner(client)

    provisioner.ensure_model(MODEL)
    provisioner.ensure_model(MODEL)

    assert client.pull_calls == 0


def test_missing_model_is_pulled_with_progress_then_verified():
    client = FakeClient(
        events=[
            PullProgress("pulling manifest"),
            PullProgress("pulling 3a43", 50, 100),
            PullProgress("pulling 3a43", 100, 100),
            PullProgress("verifying sha256 digest"),
            PullProgress("success"),
        ]
    )
    provisioner = ModelProvisioner(client)
    updates = []

    provisioner.ensure_model(MODEL, updates.append)
    provisioner.ensure_model(MODEL, updates.append)

    assert client.pull_calls == 1
    assert [u.increment for u in updates] == [0, 50, 50, 0, 0]
    assert client.list_calls == 3


def test_pull_stream_error_reports_manual_remedy():
    client = FakeClient(events=[PullProgress("pulling", 1, 10)], pull_error=StreamError("disk full"))
    provisioner = ModelProvisioner(client)

    with pytest.raises(PullFailedError) as excinfo:
        provisioner.ensure_model(MODEL)

    assert excinfo.value.remedy == "ollama pull codellama:7b-code"
    assert "disk full" in str(excinfo.value)
    assert client.pull_calls == 1


def test_network_error_during_pull_is_pull_failed():
    client = FakeClient(pull_error=requests.ConnectionError("reset"))

    with pytest.raises(PullFailedError):
        ModelProvisioner(client).ensure_model(MODEL)


def test_missing_after_successful_pull_is_verification_failure():
    client = FakeClient(events=[PullProgress("success")], install_on_pull=False)

    with pytest.raises(VerificationFailedError) as excinfo:
        ModelProvisioner(client, binary="/opt/ollama").ensure_model(MODEL)

    assert excinfo.value.remedy == "/opt/ollama pull codellama:7b-code"


def test_concurrent_callers_share_one_pull():
    client = FakeClient(events=[PullProgress("success")])
    client.release_pull.clear()
    provisioner = ModelProvisioner(client)
    errors = []

    def call():
        try:
            provisioner.ensure_model(MODEL)
        except Exception as exc:  # pragma: no cover - surfaced by assertion
            errors.append(exc)

    first = threading.Thread(target=call)
    first.start()
    assert client.pull_started.wait(5)
    second = threading.Thread(target=call)
    second.start()
    client.release_pull.set()
    first.join(5)
    second.join(5)

    assert errors == []
    assert client.pull_calls == 1
