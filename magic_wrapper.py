import argparse
import logging
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Union

from magic_protocol import (
    LineReader,
    MagicCommandError,
    MagicError,
    MagicHandshakeError,
    MagicReplyError,
    MagicSpawnError,
    MagicStartupTimeout,
    Phase,
    bootstrap_payload,
    connect_with_backoff,
)

__all__ = [
    "MagicConfig",
    "MagicInstanceBuilder",
    "MagicInstance",
    "MagicError",
    "MagicSpawnError",
    "MagicHandshakeError",
    "MagicStartupTimeout",
    "MagicCommandError",
    "MagicReplyError",
    "Phase",
]

DEFAULT_PORT = 9999
DEFAULT_MAGIC_BINARY = "magic"
DEFAULT_STARTUP_TIMEOUT = 30.0
KILL_WAIT_TIMEOUT = 5.0

PathLike = Union[str, Path]


@dataclass(frozen=True)
class MagicConfig:
    """Startup parameters for a MAGIC instance."""
    cwd: Optional[Path] = None
    tech: Optional[str] = None
    magic: Optional[Path] = None
    port: int = DEFAULT_PORT
    startup_timeout: Optional[float] = DEFAULT_STARTUP_TIMEOUT
    debug_mode: bool = False
    log_file: Optional[Path] = None


class MagicInstanceBuilder:
    """
    Fluent builder for a `MagicInstance`.

    Every setter returns a new builder, the original is left untouched:

        magic = MagicInstanceBuilder().tech("sky130A").port(10001).build()
    """

    def __init__(self, config: Optional[MagicConfig] = None):
        self._config = config or MagicConfig()

    @property
    def config(self) -> MagicConfig:
        return self._config

    def _with(self, **changes) -> "MagicInstanceBuilder":
        return MagicInstanceBuilder(replace(self._config, **changes))

    def cwd(self, cwd: PathLike) -> "MagicInstanceBuilder":
        """Set the working directory MAGIC is started in."""
        return self._with(cwd=Path(cwd))

    def tech(self, tech: str) -> "MagicInstanceBuilder":
        """Set the technology MAGIC should load (`-T`)."""
        return self._with(tech=tech)

    def magic(self, magic: PathLike) -> "MagicInstanceBuilder":
        """Set the path to the MAGIC binary. Defaults to `magic` on PATH."""
        return self._with(magic=Path(magic))

    def port(self, port: int) -> "MagicInstanceBuilder":
        """
        Set the port MAGIC listens on for commands (default 9999).

        The port must not be in use by another MAGIC instance or any other process.
        """
        return self._with(port=port)

    def startup_timeout(self, seconds: Optional[float]) -> "MagicInstanceBuilder":
        """Limit how long to wait for MAGIC's command socket. None waits forever."""
        return self._with(startup_timeout=seconds)

    def debug(self, enabled: bool = True) -> "MagicInstanceBuilder":
        """Log every request and reply at DEBUG level."""
        return self._with(debug_mode=enabled)

    def log_file(self, log_file: PathLike) -> "MagicInstanceBuilder":
        """Append every command and its reply to `log_file`."""
        return self._with(log_file=Path(log_file))

    def build(self) -> "MagicInstance":
        """Start MAGIC in the background and connect to it."""
        return MagicInstance(self._config)


class MagicInstance:
    """
    Handle to a running MAGIC process and the socket connected to it.

    Created through `MagicInstanceBuilder`. The process is killed when the
    handle is closed, used as a context manager, or garbage collected.
    """

    def __init__(self, config: MagicConfig):
        self.config = config
        self.process: Optional[subprocess.Popen] = None
        self._sock = None
        self._reader: Optional[LineReader] = None
        self._closed = False
        self.lock = threading.Lock()
        self.logger = self._setup_logging()

        self.process = self._start_process()
        try:
            self._send_bootstrap()
            self._sock = self._connect()
        except BaseException:
            self.close()
            raise
        self._reader = LineReader(self._sock)

    def _setup_logging(self) -> logging.Logger:
        """Setup logging with proper formatting."""
        logger = logging.getLogger(f"MagicInstance_{self.config.port}")

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(logging.DEBUG if self.config.debug_mode else logging.INFO)

        return logger

    def _resolve_binary(self) -> str:
        if self.config.magic is not None:
            return str(self.config.magic)

        found = shutil.which(DEFAULT_MAGIC_BINARY)
        if found is None:
            raise MagicSpawnError(
                f"MAGIC executable '{DEFAULT_MAGIC_BINARY}' not found on PATH",
                Phase.SPAWN,
                ["Install MAGIC from http://opencircuitdesign.com/magic/",
                 "Add MAGIC to your system PATH",
                 "Pass the binary location with MagicInstanceBuilder.magic()"]
            )
        return found

    def _build_command(self) -> List[str]:
        cmd = [self._resolve_binary(), "-dnull", "-noconsole"]
        if self.config.tech is not None:
            cmd += ["-T", self.config.tech]
        return cmd

    def _start_process(self) -> subprocess.Popen:
        """Start the MAGIC process."""
        cmd = self._build_command()
        cwd = str(self.config.cwd) if self.config.cwd is not None else None

        self.logger.info(f"Starting MAGIC: {' '.join(cmd)}" + (f" (cwd: {cwd})" if cwd else ""))

        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=cwd
            )
        except FileNotFoundError as e:
            raise MagicSpawnError(
                f"MAGIC executable or working directory not found: {e}",
                Phase.SPAWN,
                [f"Check the binary path: {cmd[0]}",
                 f"Check the working directory: {cwd}" if cwd else "Check your PATH"]
            ) from e
        except PermissionError as e:
            raise MagicSpawnError(
                f"Permission denied starting MAGIC: {e}",
                Phase.SPAWN,
                ["Verify executable permissions"]
            ) from e
        except OSError as e:
            raise MagicSpawnError(f"Error starting MAGIC: {e}", Phase.SPAWN) from e

    def _send_bootstrap(self):
        try:
            self.process.stdin.write(bootstrap_payload(self.config.port))
            self.process.stdin.flush()
        except OSError as e:
            raise MagicHandshakeError(
                f"Failed to send the socket bootstrap script to MAGIC: {e}",
                Phase.HANDSHAKE_WRITE,
                ["MAGIC probably exited during startup; run it by hand to see why"]
            ) from e

    def _connect(self):
        sock, attempts = connect_with_backoff(
            self.config.port,
            timeout=self.config.startup_timeout,
            is_alive=lambda: self.process.poll() is None
        )
        self.logger.info(f"Connected to MAGIC on port {self.config.port} after {attempts} attempt(s)")
        return sock

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_running(self):
        if self._closed:
            raise MagicCommandError("MAGIC instance is already closed.", Phase.COMMAND_WRITE)
        returncode = self.process.poll()
        if returncode is not None:
            raise MagicCommandError(
                f"MAGIC process is not running (exit code {returncode}).",
                Phase.COMMAND_WRITE
            )

    def _log_transcript(self, command: str, reply: str):
        if self.config.log_file:
            with open(self.config.log_file, "a", encoding="utf-8") as logf:
                logf.write(f"Command: {command}\nOutput: {reply}\n---\n")

    def command(self, command: str) -> str:
        """
        Send one command line to MAGIC and return its one-line reply.

        :param command: Tcl command text, without a trailing newline.
        :return: Reply line with the newline stripped.
        :raises MagicCommandError: If the command could not be sent.
        :raises MagicReplyError: If the reply could not be read or decoded.
        """
        if "\n" in command or "\r" in command:
            raise ValueError(f"Command must be a single line: {command!r}")

        with self.lock:
            self._check_running()

            self.logger.debug(f"> {command}")
            try:
                self._sock.sendall(f"{command}\n".encode("utf-8"))
            except OSError as e:
                raise MagicCommandError(
                    f"Failed to send command '{command}' to MAGIC: {e}",
                    Phase.COMMAND_WRITE
                ) from e

            reply = self._reader.read_line()
            self.logger.debug(f"< {reply}")
            self._log_transcript(command, reply)
            return reply

    def getcell(self, cell: str):
        """
        Create an instance of `cell` in the current edit cell.

        With only a cell name the orientation is zero and the lower-left
        corner of the cell's bounding box lands on the lower-left corner of
        the cursor box.
        """
        self.command(f"getcell {cell}")

    def sideways(self):
        """Flip the selection left to right, keeping its lower-left corner in place."""
        self.command("sideways")

    def select_bbox(self):
        """Ask MAGIC for the bounding box of the selection. The reply is not returned."""
        self.command("select bbox")

    def close(self):
        """Kill the MAGIC process and drop the connection."""
        if self._closed:
            return
        self._closed = True

        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass

        if self.process is None:
            return

        try:
            self.process.kill()
        except OSError:
            pass

        try:
            self.process.wait(timeout=KILL_WAIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"MAGIC process {self.process.pid} did not exit after kill")

        if self.process.stdin is not None:
            try:
                self.process.stdin.close()
            except OSError:
                pass

        self.logger.info(f"MAGIC on port {self.config.port} stopped")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        if not getattr(self, "_closed", True):
            self.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send commands to MAGIC VLSI over its command socket")
    parser.add_argument("--magic", help="Path to the MAGIC binary (default: magic on PATH)")
    parser.add_argument("--tech", help="Technology name passed to MAGIC with -T")
    parser.add_argument("--cwd", help="Working directory for MAGIC")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Command socket port")
    parser.add_argument("--timeout", type=float, default=DEFAULT_STARTUP_TIMEOUT,
                        help="Seconds to wait for MAGIC to start (0 or less waits forever)")
    parser.add_argument("--log-file", help="Append a transcript of commands and replies here")
    parser.add_argument("--debug", action="store_true", help="Log every request and reply")
    return parser.parse_args(argv)


def builder_from_args(args: argparse.Namespace) -> MagicInstanceBuilder:
    timeout = args.timeout if args.timeout > 0 else None
    builder = MagicInstanceBuilder().port(args.port).startup_timeout(timeout).debug(args.debug)
    if args.magic:
        builder = builder.magic(args.magic)
    if args.tech:
        builder = builder.tech(args.tech)
    if args.cwd:
        builder = builder.cwd(args.cwd)
    if args.log_file:
        builder = builder.log_file(args.log_file)
    return builder


def main(argv: Optional[List[str]] = None) -> int:
    """Interactive shell: read MAGIC commands from stdin and print each reply."""
    args = parse_args(argv)
    builder = builder_from_args(args)

    try:
        with builder.build() as magic:
            print(f"✅ MAGIC ready on port {args.port}. Type 'quit' to stop.")
            while True:
                try:
                    line = input("magic> ").strip()
                except EOFError:
                    break
                if not line:
                    continue
                if line in ("quit", "exit"):
                    break
                print(magic.command(line))

    except MagicError as e:
        print(f"\n❌ MAGIC Error ({e.phase.value}): {e}")
        if e.suggestions:
            print("\n💡 Suggestions:")
            for suggestion in e.suggestions:
                print(f"   • {suggestion}")
        return 1

    except KeyboardInterrupt:
        print("\n\nSession interrupted by user.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
