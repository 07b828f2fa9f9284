from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
import threading
from typing import Sequence

from health_tap.errors import InvocationError
from health_tap.logging_utils import log_tool_output
from health_tap.models import ErrorKind

DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class InvocationResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Standard output followed by standard error."""
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


class ProcessInvoker:
    """Runs diagnostic tools as child processes.

    A non-zero exit status is returned to the caller, not raised: smartctl
    encodes drive problems in its exit bits. Only failing to run the tool at
    all raises :class:`InvocationError`.
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self.default_timeout = default_timeout
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._children: set[subprocess.Popen[bytes]] = set()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
    ) -> InvocationResult:
        argv = [command, *args]
        display = " ".join(argv)
        timeout = self.default_timeout if timeout is None else timeout
        self.logger.debug("Running: %s (timeout %ss)", display, timeout)

        with self._lock:
            if self._cancelled:
                raise InvocationError(ErrorKind.CANCELLED, display, "Invoker cancelled")
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                self.logger.debug("Command not found: %s", command)
                raise InvocationError(
                    ErrorKind.NOT_FOUND, display, f"{command} not found"
                ) from exc
            except PermissionError as exc:
                raise InvocationError(
                    ErrorKind.PERMISSION_DENIED,
                    display,
                    f"Permission denied executing {command}",
                ) from exc
            except (OSError, subprocess.SubprocessError) as exc:
                raise InvocationError(
                    ErrorKind.PROCESS_FAILURE, display, f"Failed to start {command}: {exc}"
                ) from exc
            self._children.add(proc)

        try:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                # Kill and reap so no zombie is left behind.
                proc.kill()
                proc.communicate()
                self.logger.warning("Command timed out after %ss: %s", timeout, display)
                raise InvocationError(
                    ErrorKind.TIMEOUT, display, f"{command} timed out after {timeout}s"
                ) from exc
        finally:
            with self._lock:
                self._children.discard(proc)

        if self._cancelled:
            raise InvocationError(ErrorKind.CANCELLED, display, "Invoker cancelled")

        result = InvocationResult(
            command=display,
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.exit_code != 0:
            self.logger.debug("Command exited with %s: %s", result.exit_code, display)
        log_tool_output(self.logger, "stderr", result.stderr)
        log_tool_output(self.logger, "stdout", result.stdout)
        return result

    def cancel(self) -> None:
        """Kill every running child and refuse new invocations."""
        with self._lock:
            self._cancelled = True
            children = list(self._children)
        for proc in children:
            if proc.poll() is None:
                self.logger.debug("Killing in-flight process %s", proc.pid)
                try:
                    proc.kill()
                except ProcessLookupError:
                    continue

    def reset(self) -> None:
        with self._lock:
            self._cancelled = False

    @property
    def running(self) -> int:
        with self._lock:
            return len(self._children)
