"""Byte relay between the process's standard streams and a socket."""

from __future__ import annotations

import logging
import os
import select
import socket
from dataclasses import dataclass

from sshpod.exceptions import TunnelFailedError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class BridgeStats:
    """Bytes relayed in each direction."""

    to_remote: int = 0
    from_remote: int = 0


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def bridge(sock: socket.socket, stdin_fd: int, stdout_fd: int) -> BridgeStats:
    """Relay bytes until the remote side closes.

    Bytes from stdin go to the socket and bytes from the socket go to
    stdout, unmodified, in order, and without extra buffering. End of stdin
    half-closes the socket so the remote sshd can finish; end of the socket
    ends the bridge.

    Args:
        sock: Connected socket to the forwarded sshd port.
        stdin_fd: File descriptor to read client bytes from.
        stdout_fd: File descriptor to write remote bytes to.

    Returns:
        BridgeStats with byte counts.

    Raises:
        TunnelFailedError: If the channel fails mid-stream.
    """
    stats = BridgeStats()
    readers: list[int | socket.socket] = [stdin_fd, sock]

    try:
        while True:
            readable, _, _ = select.select(readers, [], [])

            if sock in readable:
                data = sock.recv(CHUNK_SIZE)
                if not data:
                    logger.debug("remote closed the connection")
                    break
                try:
                    _write_all(stdout_fd, data)
                except BrokenPipeError:
                    logger.debug("client closed stdout")
                    break
                stats.from_remote += len(data)

            if stdin_fd in readable:
                data = os.read(stdin_fd, CHUNK_SIZE)
                if not data:
                    logger.debug("client closed stdin; half-closing")
                    readers.remove(stdin_fd)
                    try:
                        sock.shutdown(socket.SHUT_WR)
                    except OSError:
                        break
                    continue
                sock.sendall(data)
                stats.to_remote += len(data)
    except OSError as e:
        raise TunnelFailedError(f"tunnel closed abnormally: {e}") from e

    logger.debug(
        "bytes_to_remote=%d bytes_from_remote=%d", stats.to_remote, stats.from_remote
    )
    return stats
