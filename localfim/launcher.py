"""Start the backend daemon as a supervised child process.

The launcher runs one supervision thread per launch. It spawns ``<binary>
serve``, waits for the readiness marker in the child's output (or for the
tags endpoint to answer), and respawns the child whenever it exits while the
launch is still wanted. Cancelling the handle passed to ``ensure_running``
(or the context's own handle) stops the restarts and terminates the child.
"""
from __future__ import annotations

import atexit
import logging
import subprocess
import threading
import time
from concurrent import futures

from .cancellation import CancellationHandle
from .context import ServiceContext
from .errors import LaunchCancelledError, LaunchFailedError, NotInstalledError, ProbeError
from .probe import ProcessProbe
from .types import ReadySignal, ServiceState

logger = logging.getLogger(__name__)

WAIT_SLICE = 0.1
HEALTH_POLL_INTERVAL = 0.5
TERMINATE_GRACE = 5


class ServiceLauncher:
    def __init__(
        self,
        context: ServiceContext,
        probe: ProcessProbe,
        *,
        popen=subprocess.Popen,
        poll_health: bool = True,
    ) -> None:
        settings = context.settings
        self.context = context
        self.probe = probe
        self.binary = settings.binary
        self.marker = settings.readiness_marker
        self.restart_delay = settings.restart_delay
        self.max_restarts = settings.max_restarts
        self.poll_health = poll_health
        self._popen = popen
        self._lock = threading.Lock()
        self._future: futures.Future | None = None
        self._thread: threading.Thread | None = None
        self._launch_cancel: CancellationHandle | None = None
        self._process: subprocess.Popen | None = None
        self.spawn_count = 0
        atexit.register(self.stop)

    @property
    def process(self) -> subprocess.Popen | None:
        return self._process

    def ensure_running(
        self,
        desired: bool = True,
        cancel: CancellationHandle | None = None,
        timeout: float | None = None,
    ) -> ReadySignal:
        """Make sure the daemon is running and return once it is ready.

        Concurrent callers share the in-flight launch. Raises
        :class:`NotInstalledError` when the binary is missing and
        :class:`LaunchCancelledError` when ``cancel`` fires before readiness.
        """
        if not desired:
            self.stop()
            return ReadySignal(ServiceState.STOPPED)

        cancel = cancel or self.context.cancel
        with self._lock:
            if self._supervising():
                future = self._future
            else:
                state = self.probe.probe()
                if state is ServiceState.NOT_INSTALLED:
                    self.context.set_state(state)
                    raise NotInstalledError(self.binary)
                if state is ServiceState.RUNNING:
                    self.context.set_state(state)
                    return ReadySignal(ServiceState.RUNNING, spawned=False)
                future = self._start_supervision(cancel)
        return self._wait(future, cancel, timeout)

    def stop(self) -> None:
        """Stop restarting and terminate the supervised child, if any."""
        with self._lock:
            launch_cancel = self._launch_cancel
            thread = self._thread
        if launch_cancel is not None:
            launch_cancel.cancel()
        if thread is not None and thread is not threading.current_thread():
            thread.join(TERMINATE_GRACE * 2)

    def _supervising(self) -> bool:
        return (
            self._future is not None
            and self._thread is not None
            and self._thread.is_alive()
            and self._launch_cancel is not None
            and not self._launch_cancel.cancelled
        )

    def _start_supervision(self, cancel: CancellationHandle) -> futures.Future:
        launch_cancel = CancellationHandle()
        sources = [cancel]
        if cancel is not self.context.cancel:
            sources.append(self.context.cancel)
        for source in sources:
            source.add_callback(launch_cancel.cancel)
        future: futures.Future = futures.Future()
        self._future = future
        self._launch_cancel = launch_cancel
        self._thread = threading.Thread(
            target=self._supervise,
            args=(launch_cancel, sources),
            name=f"{self.binary}-supervisor",
            daemon=True,
        )
        self._thread.start()
        return future

    def _wait(
        self,
        future: futures.Future,
        cancel: CancellationHandle,
        timeout: float | None,
    ) -> ReadySignal:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel.cancelled:
                raise LaunchCancelledError(f"Launch of {self.binary} was cancelled")
            try:
                return future.result(timeout=WAIT_SLICE)
            except futures.TimeoutError:
                pass
            if deadline is not None and time.monotonic() >= deadline:
                raise LaunchFailedError(f"{self.binary} was not ready after {timeout}s")

    def _resolve(self, result: ReadySignal | None = None, exc: Exception | None = None) -> None:
        with self._lock:
            future = self._future
        if future is None or future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def _renew_future(self) -> None:
        with self._lock:
            if self._future is not None and self._future.done():
                self._future = futures.Future()

    def _spawn(self) -> subprocess.Popen:
        logger.info("Starting %s serve", self.binary)
        proc = self._popen(
            [self.binary, "serve"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
        self.spawn_count += 1
        self._process = proc
        return proc

    def _read_output(self, proc: subprocess.Popen, ready: threading.Event) -> None:
        if proc.stdout is None:
            return
        for line in proc.stdout:
            logger.debug("%s: %s", self.binary, line.rstrip())
            if self.marker and self.marker in line:
                ready.set()

    def _healthy(self) -> bool:
        try:
            return self.probe.reachable()
        except ProbeError as exc:
            logger.debug("Health check not conclusive yet: %s", exc)
            return False

    def _await_ready(
        self,
        proc: subprocess.Popen,
        ready: threading.Event,
        cancel: CancellationHandle,
    ) -> bool:
        next_poll = time.monotonic() + HEALTH_POLL_INTERVAL
        while not cancel.cancelled:
            if ready.wait(WAIT_SLICE):
                return True
            if proc.poll() is not None:
                return False
            if self.poll_health and time.monotonic() >= next_poll:
                if self._healthy():
                    return True
                next_poll = time.monotonic() + HEALTH_POLL_INTERVAL
        return False

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.info("Terminating %s serve (pid %s)", self.binary, proc.pid)
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _supervise(
        self, cancel: CancellationHandle, sources: list[CancellationHandle]
    ) -> None:
        restarts = 0
        try:
            while not cancel.cancelled:
                self.context.set_state(ServiceState.STARTING)
                try:
                    proc = self._spawn()
                except OSError as exc:
                    self.context.set_state(ServiceState.STOPPED)
                    self._resolve(exc=LaunchFailedError(f"Could not start {self.binary} serve: {exc}"))
                    return

                ready = threading.Event()
                threading.Thread(
                    target=self._read_output, args=(proc, ready), daemon=True
                ).start()

                def terminate(proc=proc):
                    self._terminate(proc)

                cancel.add_callback(terminate)
                try:
                    if self._await_ready(proc, ready, cancel):
                        self.context.set_state(ServiceState.RUNNING)
                        self._resolve(
                            ReadySignal(
                                ServiceState.RUNNING,
                                pid=proc.pid,
                                restarts=restarts,
                                spawned=True,
                            )
                        )
                    returncode = proc.wait()
                finally:
                    cancel.remove_callback(terminate)

                if cancel.cancelled:
                    break

                restarts += 1
                self.context.set_state(ServiceState.CRASHED)
                self._renew_future()
                logger.warning(
                    "%s serve exited unexpectedly with code %s (restart %d)",
                    self.binary,
                    returncode,
                    restarts,
                )
                if self.max_restarts is not None and restarts > self.max_restarts:
                    self._resolve(
                        exc=LaunchFailedError(
                            f"{self.binary} serve crashed {restarts} times; giving up"
                        )
                    )
                    return
                if cancel.wait(self.restart_delay):
                    break
        finally:
            for source in sources:
                source.remove_callback(cancel.cancel)
            self._process = None
            if cancel.cancelled:
                self.context.set_state(ServiceState.STOPPED)
                self._resolve(exc=LaunchCancelledError(f"Launch of {self.binary} was cancelled"))
