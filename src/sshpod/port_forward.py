"""Lifecycle of a kubectl port-forward subprocess."""

from __future__ import annotations

import logging
import queue
import re
import signal
import subprocess
import threading
from typing import IO

from sshpod.exceptions import KubectlNotInstalledError, TunnelFailedError

logger = logging.getLogger(__name__)

_FORWARD_RE = re.compile(r"Forwarding from (?:127\.0\.0\.1|\[::1\]|localhost):(\d+)")


def parse_forward_port(line: str) -> int | None:
    """Extract the local port from a port-forward status line.

    Args:
        line: One line of port-forward output, e.g.
            "Forwarding from 127.0.0.1:41235 -> 2222".

    Returns:
        Local port, or None if the line does not announce one.
    """
    match = _FORWARD_RE.search(line)
    if not match:
        return None
    return int(match.group(1))


def _pump_lines(stream: IO[str], sink: queue.Queue[str | None], label: str) -> None:
    for line in stream:
        line = line.rstrip("\n")
        logger.debug("[port-forward %s] %s", label, line)
        sink.put(line)
    sink.put(None)


class PortForward:
    """A running port-forward process.

    Used as a context manager: entering waits until the forward reports its
    local port, leaving terminates the process (SIGTERM, then SIGKILL).
    """

    def __init__(self, cmd: list[str], timeout: float = 10) -> None:
        """Prepare a port-forward.

        Args:
            cmd: Full port-forward command line.
            timeout: Seconds to wait for the local port to be reported.
        """
        self._cmd = cmd
        self._timeout = timeout
        self._proc: subprocess.Popen[str] | None = None
        self.local_port: int | None = None

    def start(self) -> int:
        """Spawn the process and wait for its local port.

        Returns:
            Local port number.

        Raises:
            TunnelFailedError: If the forward exits or stays silent too long.
                The process is stopped before any exception leaves start().
        """
        logger.debug("running %s", " ".join(self._cmd))
        try:
            self._proc = subprocess.Popen(
                self._cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(f"{self._cmd[0]} not found in PATH") from e

        # Anything escaping from here on, including SystemExit raised by a
        # signal handler, must not leave the child running.
        try:
            return self._wait_for_port()
        except BaseException:
            self.stop()
            raise

    def _wait_for_port(self) -> int:
        proc = self._proc
        assert proc is not None
        assert proc.stdout is not None and proc.stderr is not None
        lines: queue.Queue[str | None] = queue.Queue()
        errors: queue.Queue[str | None] = queue.Queue()
        pumps = []
        for stream, sink, label in (
            (proc.stdout, lines, "out"),
            (proc.stderr, errors, "err"),
        ):
            pump = threading.Thread(
                target=_pump_lines, args=(stream, sink, label), daemon=True
            )
            pump.start()
            pumps.append(pump)

        try:
            while True:
                line = lines.get(timeout=self._timeout)
                if line is None:
                    break
                port = parse_forward_port(line)
                if port is not None:
                    self.local_port = port
                    return port
        except queue.Empty:
            raise TunnelFailedError(
                f"timed out after {self._timeout}s waiting for port-forward "
                "to assign a local port"
            ) from None

        # stdout closed without announcing a port; let the process finish
        # writing its error before collecting stderr
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.stop()
        pumps[1].join(timeout=2)
        stderr_lines = []
        while not errors.empty():
            item = errors.get_nowait()
            if item is not None:
                stderr_lines.append(item)
        detail = "; ".join(stderr_lines) or f"exit status {proc.returncode}"
        raise TunnelFailedError(f"port-forward exited early: {detail}")

    def stop(self) -> None:
        """Terminate the port-forward process if it is still running."""
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        proc.send_signal(signal.SIGTERM)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    @property
    def alive(self) -> bool:
        """Whether the port-forward process is still running."""
        return self._proc is not None and self._proc.poll() is None

    def __enter__(self) -> PortForward:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
