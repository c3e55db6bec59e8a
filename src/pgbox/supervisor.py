"""Background worker that owns the PostgreSQL server process.

A :class:`ProcessSupervisor` is bound at construction to one data directory,
one ``pg_ctl`` binary and one port. Commands are delivered through a private
queue and executed strictly in arrival order on a dedicated thread, so the
blocking ``pg_ctl start -w`` / ``pg_ctl stop -w`` calls never run on the
caller's thread. Every command is paired with a :class:`~concurrent.futures.Future`
that resolves once the command has been applied; callers block on that
acknowledgment instead of guessing with sleeps.

State machine::

    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
               |                      |
               +-------> FAILED <-----+

``FAILED`` is terminal: the supervisor rejects further commands and must be
replaced once the underlying problem has been fixed.
"""
from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future
from enum import Enum
from pathlib import Path
from typing import IO

from .errors import (
    PgBoxError,
    ProcessError,
    StartFailedError,
    StopFailedError,
    SupervisorFailedError,
)
from .options import encode_options
from .paths import MARKER_FILE_NAME

LOGGER = logging.getLogger(__name__)

_LOG_TAIL_LINES = 20


class SupervisorState(Enum):
    """Lifecycle states of a supervised server."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class SupervisorCommand(Enum):
    """Commands accepted by the supervisor."""

    START = "start"
    STOP = "stop"


_SHUTDOWN = object()


class ProcessSupervisor:
    """Own one PostgreSQL server process and apply start/stop commands."""

    def __init__(
        self,
        data_dir: Path,
        pg_ctl: Path,
        port: int,
        *,
        parameters: Mapping[str, str] | None = None,
        start_timeout: float = 30.0,
        poll_interval: float = 0.1,
        log_file: Path | None = None,
    ) -> None:
        """Bind the supervisor to its server and start the worker thread."""
        self.data_dir = Path(data_dir)
        self.pg_ctl = Path(pg_ctl)
        self.port = port
        self.parameters = dict(parameters or {})
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.log_file = log_file

        self._queue: queue.Queue[object] = queue.Queue()
        self._lock = threading.Lock()
        self._state = SupervisorState.IDLE
        self._error: ProcessError | None = None
        self._closed = False
        self._thread = threading.Thread(
            target=self._run,
            name=f"pgbox-supervisor-{port}",
            daemon=True,
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        """Return the state after the most recently applied command."""
        with self._lock:
            return self._state

    @property
    def error(self) -> ProcessError | None:
        """Return the failure that moved the supervisor to ``FAILED``."""
        with self._lock:
            return self._error

    @property
    def marker_file(self) -> Path:
        """Return the PID file whose presence means the server is up."""
        return self.data_dir / MARKER_FILE_NAME

    @property
    def alive(self) -> bool:
        """Return True while the worker thread accepts commands."""
        return self._thread.is_alive() and not self._closed

    @property
    def start_options(self) -> str:
        """Return the encoded ``-o`` option string passed on start."""
        return encode_options(self.port, self.parameters)

    def submit(self, command: SupervisorCommand) -> Future[SupervisorState]:
        """Enqueue *command* and return its acknowledgment future.

        The future resolves to the state reached after the command ran, or
        raises the :class:`ProcessError` that made it fail. Enqueued commands
        cannot be cancelled.
        """
        reply: Future[SupervisorState] = Future()
        reply.set_running_or_notify_cancel()
        with self._lock:
            if self._closed:
                raise ProcessError("Supervisor has been closed; create a new one.")
            self._queue.put((command, reply))
        return reply

    def start(self, timeout: float | None = None) -> SupervisorState:
        """Submit ``START`` and wait for it to be applied."""
        return self.submit(SupervisorCommand.START).result(timeout)

    def stop(self, timeout: float | None = None) -> SupervisorState:
        """Submit ``STOP`` and wait for it to be applied."""
        return self.submit(SupervisorCommand.STOP).result(timeout)

    def close(self, timeout: float | None = None) -> None:
        """Drain queued commands and stop the worker thread.

        The server process itself is left untouched.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_SHUTDOWN)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            try:
                envelope = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if envelope is _SHUTDOWN:
                LOGGER.debug("Supervisor for %s shutting down", self.data_dir)
                self._discard_pending()
                return
            command, reply = envelope  # type: ignore[misc]
            try:
                state = self._apply(command)
            except PgBoxError as exc:
                reply.set_exception(exc)
            except Exception as exc:  # noqa: BLE001 - reported through the reply
                failure = ProcessError(f"Unexpected supervisor failure: {exc}")
                failure.__cause__ = exc
                self._fail(failure)
                reply.set_exception(failure)
            else:
                reply.set_result(state)

    def _discard_pending(self) -> None:
        """Fail every command still queued behind the shutdown sentinel."""
        while True:
            try:
                envelope = self._queue.get_nowait()
            except queue.Empty:
                return
            if envelope is _SHUTDOWN:
                continue
            command, reply = envelope  # type: ignore[misc]
            reply.set_exception(
                ProcessError(f"Supervisor closed before {command.value} was applied.")
            )

    def _apply(self, command: SupervisorCommand) -> SupervisorState:
        current = self.state
        if current is SupervisorState.FAILED:
            raise SupervisorFailedError(
                f"Supervisor for {self.data_dir} has failed and must be recreated: "
                f"{self.error}",
            )
        if command is SupervisorCommand.START:
            return self._handle_start(current)
        if command is SupervisorCommand.STOP:
            return self._handle_stop()
        raise ProcessError(f"Unknown supervisor command: {command!r}")

    def _handle_start(self, current: SupervisorState) -> SupervisorState:
        if self.marker_file.exists():
            if current is not SupervisorState.RUNNING:
                LOGGER.info("Server already running for %s; not spawning", self.data_dir)
            return self._transition(SupervisorState.RUNNING)

        self._transition(SupervisorState.STARTING)
        args = ["start", "-w", "-D", str(self.data_dir), "-o", self.start_options]
        LOGGER.info("Starting PostgreSQL on port %s from %s", self.port, self.data_dir)
        deadline = time.monotonic() + self.start_timeout
        try:
            result = self._run_ctl(args, timeout=self.start_timeout)
        except subprocess.TimeoutExpired:
            raise self._fail(
                StartFailedError(
                    f"pg_ctl start did not finish within {self.start_timeout:g}s.",
                    output=self._log_tail(),
                )
            ) from None
        except OSError as exc:
            raise self._fail(
                StartFailedError(f"Unable to run {self.pg_ctl}: {exc}", output=str(exc))
            ) from exc

        if result.returncode != 0:
            raise self._fail(
                StartFailedError(
                    f"pg_ctl start failed (exit {result.returncode}).",
                    returncode=result.returncode,
                    output=self._log_tail(),
                )
            )
        if not self._wait_until(self.marker_file.exists, deadline):
            raise self._fail(
                StartFailedError(
                    f"Server did not create {self.marker_file} within "
                    f"{self.start_timeout:g}s.",
                    returncode=result.returncode,
                    output=self._log_tail(),
                )
            )
        return self._transition(SupervisorState.RUNNING)

    def _handle_stop(self) -> SupervisorState:
        if not self.marker_file.exists():
            LOGGER.debug("No %s present; nothing to stop", MARKER_FILE_NAME)
            return self._transition(SupervisorState.IDLE)

        self._transition(SupervisorState.STOPPING)
        args = ["stop", "-w", "-D", str(self.data_dir)]
        LOGGER.info("Stopping PostgreSQL in %s", self.data_dir)
        deadline = time.monotonic() + self.start_timeout
        try:
            result = self._run_ctl(args, timeout=self.start_timeout)
        except subprocess.TimeoutExpired:
            raise self._fail(
                StopFailedError(
                    f"pg_ctl stop did not finish within {self.start_timeout:g}s.",
                    output=self._log_tail(),
                )
            ) from None
        except OSError as exc:
            raise self._fail(
                StopFailedError(f"Unable to run {self.pg_ctl}: {exc}", output=str(exc))
            ) from exc

        if result.returncode != 0:
            raise self._fail(
                StopFailedError(
                    f"pg_ctl stop failed (exit {result.returncode}).",
                    returncode=result.returncode,
                    output=self._log_tail(),
                )
            )
        if not self._wait_until(lambda: not self.marker_file.exists(), deadline):
            raise self._fail(
                StopFailedError(
                    f"{self.marker_file} still present after pg_ctl stop.",
                    returncode=result.returncode,
                    output=self._log_tail(),
                )
            )
        return self._transition(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run_ctl(
        self,
        args: Sequence[str],
        *,
        timeout: float,
    ) -> subprocess.CompletedProcess[bytes]:
        """Invoke ``pg_ctl`` with output appended to the log file."""
        command = [str(self.pg_ctl), *args]
        with self._open_log() as sink:
            return subprocess.run(  # noqa: S603 - controlled command execution
                command,
                stdin=subprocess.DEVNULL,
                stdout=sink if sink is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )

    def _open_log(self) -> _LogSink:
        return _LogSink(self.log_file)

    def _log_tail(self) -> str:
        if self.log_file is None:
            return ""
        try:
            lines = self.log_file.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            return ""
        return "\n".join(lines[-_LOG_TAIL_LINES:])

    def _wait_until(self, predicate: Callable[[], bool], deadline: float) -> bool:
        while True:
            if predicate():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def _transition(self, state: SupervisorState) -> SupervisorState:
        with self._lock:
            previous, self._state = self._state, state
        if previous is not state:
            LOGGER.debug("Supervisor %s: %s -> %s", self.data_dir, previous.value, state.value)
        return state

    def _fail(self, error: ProcessError) -> ProcessError:
        with self._lock:
            self._state = SupervisorState.FAILED
            self._error = error
        LOGGER.error("Supervisor for %s failed: %s", self.data_dir, error)
        return error


class _LogSink:
    """Context manager yielding an append handle for the server log."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self._handle: IO[bytes] | None = None

    def __enter__(self) -> IO[bytes] | None:
        if self.path is None:
            return None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("ab")
        return self._handle

    def __exit__(self, *exc_info: object) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


__all__ = ["ProcessSupervisor", "SupervisorCommand", "SupervisorState"]
