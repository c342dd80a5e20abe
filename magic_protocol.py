"""
Line protocol used to talk to a MAGIC VLSI instance over a loopback socket.

MAGIC is started with a small Tcl bootstrap script on its stdin which opens
a server socket. Every request is one line of text and every reply is one
line of text. This module holds the transport side only: errors, the
bootstrap payload, the line readers and the startup connect loop.
"""

import logging
import socket
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple


LINE_CHUNK_SIZE = 512
LOCALHOST = "127.0.0.1"

log = logging.getLogger("magic_protocol")


class Phase(Enum):
    """Stage of the client lifecycle in which a failure happened."""
    SPAWN = "spawn"
    HANDSHAKE_WRITE = "handshake-write"
    CONNECT = "connect"
    COMMAND_WRITE = "command-write"
    REPLY_READ = "reply-read"
    DECODE = "decode"


class MagicError(Exception):
    """Base exception for the MAGIC client."""

    phase = Phase.SPAWN

    def __init__(self, message: str, phase: Optional[Phase] = None,
                 suggestions: Optional[List[str]] = None):
        super().__init__(message)
        if phase is not None:
            self.phase = phase
        self.suggestions = suggestions or []


class MagicSpawnError(MagicError):
    """The MAGIC process could not be started."""
    phase = Phase.SPAWN


class MagicHandshakeError(MagicError):
    """MAGIC started but its command socket never became usable."""
    phase = Phase.CONNECT


class MagicStartupTimeout(MagicHandshakeError):
    """The command socket did not accept a connection in time."""
    phase = Phase.CONNECT


class MagicCommandError(MagicError):
    """A command could not be sent to MAGIC."""
    phase = Phase.COMMAND_WRITE


class MagicReplyError(MagicError):
    """A reply could not be read or decoded."""
    phase = Phase.REPLY_READ


# Evaluated by MAGIC's Tcl interpreter after `set svcPort <port>`.
# Every received line is evaluated in the global scope and answered with
# exactly one line, errors included.
MAGIC_SOCKET_SCRIPT = r"""
proc magicsvc_reply {sock msg} {
    catch {uplevel #0 $msg} result
    puts $sock [string map {"\n" " " "\r" " "} $result]
    flush $sock
}

proc magicsvc_read {sock} {
    if {[gets $sock line] < 0} {
        if {[eof $sock]} {
            close $sock
        }
        return
    }
    magicsvc_reply $sock $line
}

proc magicsvc_accept {sock addr port} {
    fconfigure $sock -buffering line -blocking 0 -encoding utf-8
    fileevent $sock readable [list magicsvc_read $sock]
}

socket -server magicsvc_accept -myaddr 127.0.0.1 $svcPort
vwait magicsvc_forever
"""


def bootstrap_payload(port: int) -> bytes:
    """Bytes written to MAGIC's stdin: the port assignment, then the script."""
    return f"set svcPort {port}\n".encode("utf-8") + MAGIC_SOCKET_SCRIPT.encode("utf-8")


def _recv_chunk(sock, chunk_size: int) -> bytes:
    try:
        chunk = sock.recv(chunk_size)
    except OSError as e:
        raise MagicReplyError(f"Failed to read reply from MAGIC: {e}", Phase.REPLY_READ) from e

    if not chunk:
        raise MagicReplyError(
            "Connection closed by MAGIC before a complete reply line arrived",
            Phase.REPLY_READ,
            ["Check whether the MAGIC process crashed or was killed"]
        )
    return chunk


def _decode_line(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MagicReplyError(f"Reply from MAGIC is not valid UTF-8: {raw!r}", Phase.DECODE) from e


def read_line(sock, chunk_size: int = LINE_CHUNK_SIZE) -> str:
    """
    Read one newline-terminated line from `sock` without keeping state.

    Anything received after the newline in the same chunk is dropped and
    will not be returned by a later call. Use `LineReader` where more than
    one line may arrive at once.
    """
    received = bytearray()

    while True:
        chunk = _recv_chunk(sock, chunk_size)
        idx = chunk.find(b"\n")
        if idx >= 0:
            received.extend(chunk[:idx])
            return _decode_line(bytes(received))
        received.extend(chunk)


class LineReader:
    """Newline-delimited reader that keeps unread bytes between calls."""

    def __init__(self, sock, chunk_size: int = LINE_CHUNK_SIZE):
        self.sock = sock
        self.chunk_size = chunk_size
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet returned as part of a line."""
        return bytes(self._buffer)

    def read_line(self) -> str:
        # Only scan the bytes that arrived since the last search.
        start = 0
        while True:
            idx = self._buffer.find(b"\n", start)
            if idx >= 0:
                raw = bytes(self._buffer[:idx])
                del self._buffer[:idx + 1]
                return _decode_line(raw)
            start = len(self._buffer)
            self._buffer.extend(_recv_chunk(self.sock, self.chunk_size))


def connect_with_backoff(port: int,
                         timeout: Optional[float] = None,
                         is_alive: Optional[Callable[[], bool]] = None,
                         initial_delay: float = 0.01,
                         max_delay: float = 0.5) -> Tuple[socket.socket, int]:
    """
    Connect to MAGIC's command listener on the loopback interface.

    The listener only appears once MAGIC has finished starting up, so failed
    attempts are retried with exponential backoff.

    :param port: Port the bootstrap script was told to listen on.
    :param timeout: Overall limit in seconds. None waits forever.
    :param is_alive: Called between attempts; returning False aborts the wait.
    :return: The connected socket and the number of attempts it took.
    :raises MagicStartupTimeout: If no connection succeeded within `timeout`.
    :raises MagicHandshakeError: If `is_alive` reports that MAGIC went away.
    """
    address = (LOCALHOST, port)
    deadline = None if timeout is None else time.monotonic() + timeout
    delay = initial_delay
    attempts = 0

    while True:
        attempts += 1
        try:
            sock = socket.create_connection(address)
        except OSError as e:
            last_error = e
        else:
            sock.settimeout(None)
            return sock, attempts

        if is_alive is not None and not is_alive():
            raise MagicHandshakeError(
                f"MAGIC exited before its command socket on port {port} came up",
                Phase.CONNECT,
                ["Check that the technology name is valid",
                 "Run MAGIC by hand with the same arguments to see its output"]
            )

        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise MagicStartupTimeout(
                    f"Timed out after {timeout}s waiting for MAGIC on {LOCALHOST}:{port} "
                    f"({attempts} attempts, last error: {last_error})",
                    Phase.CONNECT,
                    [f"Increase the startup timeout (current: {timeout}s)",
                     f"Make sure port {port} is not used by another process"]
                )
            delay = min(delay, remaining)

        log.debug(f"Connect attempt {attempts} to port {port} failed ({last_error}), retrying in {delay:.3f}s")
        time.sleep(delay)
        delay = min(delay * 2, max_delay)
