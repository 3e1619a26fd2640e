"""Robot controller client over two TCP channels.

Handles:
    - Command channel: ASCII, newline-terminated request/response.  The
      controller sends one greeting line on accept, drained on connect.
    - Stream channel: raw ASCII program text, no reply.  A trailing
      newline is appended to every program sent.
    - Fixed open order: command channel first, then stream channel.
    - All-or-nothing connect: a failure leaves both sockets closed.
    - Any I/O failure on an open channel (timeout, reset, EOF, short
      line) closes both channels.  The reader may be mid-line and the
      stream may hold a partial program, so the link is not reused;
      ``is_connected`` turns False and the caller must reconnect.

Timeouts:
    ``connect_timeout`` and ``io_timeout`` default to ``None`` which
    blocks indefinitely, like the controller's own tooling.  Set them
    (seconds) to bound a hung peer.

Callers that must stay responsive should run ``connect``,
``send_command`` and ``send_program`` on a worker thread.  The client
has no internal lock; one caller at a time.
"""

from __future__ import annotations

import logging
import select
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from sorter_control.errors import (
    ProtocolError,
    RobotConnectionError,
    TemplateError,
    TransmitError,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "172.20.254.206"
DEFAULT_COMMAND_PORT = 29999
DEFAULT_STREAM_PORT = 30002

RUNNING_TRUE = "Program running: true"


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionEndpoint:
    """Robot address: one host, two ports."""

    host: str = DEFAULT_HOST
    command_port: int = DEFAULT_COMMAND_PORT
    stream_port: int = DEFAULT_STREAM_PORT

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("host is required")
        for name in ("command_port", "stream_port"):
            port = getattr(self, name)
            if not 1 <= int(port) <= 65535:
                raise ValueError(f"{name} must be in 1..65535, got {port}")

    def __str__(self) -> str:
        return f"{self.host}:{self.command_port}/{self.stream_port}"


def _encode(text: str, channel: str) -> bytes:
    try:
        return text.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ProtocolError(
            f"{channel} payload is not ASCII: {exc}"
        ) from exc


def _socket_alive(sock: socket.socket) -> bool:
    """Non-blocking health probe.

    A readable socket whose peek returns no bytes has been closed by
    the peer.
    """
    if sock.fileno() < 0:
        return False
    try:
        readable, _, errored = select.select([sock], [], [sock], 0)
        if errored:
            return False
        if not readable:
            return True
        original = sock.gettimeout()
        sock.setblocking(False)
        try:
            return sock.recv(1, socket.MSG_PEEK) != b""
        except BlockingIOError:
            return True
        finally:
            sock.settimeout(original)
    except (OSError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RobotConnection:
    """Command + program-stream connection to one robot controller.

    Parameters
    ----------
    endpoint : ConnectionEndpoint | None
        Robot address.  Defaults to :class:`ConnectionEndpoint` defaults.
    connect_timeout : float | None
        Seconds allowed for each TCP handshake (and the greeting).
        ``None`` blocks.
    io_timeout : float | None
        Seconds allowed for each read/write once connected.  ``None``
        blocks.

    Examples
    --------
    >>> with RobotConnection(ConnectionEndpoint("10.0.0.5")) as robot:
    ...     robot.program_running()
    ...     robot.send_program(script)
    """

    def __init__(
        self,
        endpoint: ConnectionEndpoint | None = None,
        *,
        connect_timeout: float | None = None,
        io_timeout: float | None = None,
    ) -> None:
        self._endpoint = endpoint if endpoint is not None else ConnectionEndpoint()
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout

        self._command_sock: socket.socket | None = None
        self._command_reader: BinaryIO | None = None
        self._stream_sock: socket.socket | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def endpoint(self) -> ConnectionEndpoint:
        return self._endpoint

    @endpoint.setter
    def endpoint(self, value: ConnectionEndpoint) -> None:
        if self._command_sock is not None or self._stream_sock is not None:
            raise ProtocolError(
                "Endpoint can only be changed while disconnected"
            )
        self._endpoint = value

    @property
    def is_connected(self) -> bool:
        """``True`` when both channels are open and healthy.  Never blocks."""
        if self._command_sock is None or self._stream_sock is None:
            return False
        return _socket_alive(self._command_sock) and _socket_alive(
            self._stream_sock,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, endpoint: ConnectionEndpoint | None = None) -> None:
        """Open the command channel, drain its greeting, open the stream.

        Any existing connection is closed first.

        Raises
        ------
        RobotConnectionError
            If either socket cannot be opened or the greeting never
            arrives.  Both channels are closed afterwards.
        """
        self.disconnect()
        if endpoint is not None:
            self._endpoint = endpoint
        ep = self._endpoint

        logger.info("Connecting to robot at %s", ep)
        try:
            self._command_sock = self._open(ep.host, ep.command_port)
            self._command_reader = self._command_sock.makefile("rb")
            greeting = self._read_line()
            logger.debug("Command channel greeting: %s", greeting)

            self._stream_sock = self._open(ep.host, ep.stream_port)
        except (OSError, ProtocolError) as exc:
            self.disconnect()
            raise RobotConnectionError(
                f"Failed to connect to robot at {ep}: {exc}"
            ) from exc

        logger.info("Connected to robot at %s", ep)

    def disconnect(self) -> None:
        """Close both channels.  Safe to call repeatedly; never raises."""
        was_open = self._command_sock is not None or self._stream_sock is not None
        for handle in (self._command_reader, self._command_sock, self._stream_sock):
            if handle is None:
                continue
            try:
                handle.close()
            except OSError as exc:
                logger.debug("Ignoring close error: %s", exc)
        self._command_reader = None
        self._command_sock = None
        self._stream_sock = None
        if was_open:
            logger.info("Disconnected from robot at %s", self._endpoint)

    def _open(self, host: str, port: int) -> socket.socket:
        sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        # Greeting read still uses the connect timeout; switched after
        sock.settimeout(self.connect_timeout)
        return sock

    def _arm_io_timeout(self) -> None:
        for sock in (self._command_sock, self._stream_sock):
            if sock is not None:
                sock.settimeout(self.io_timeout)

    # ------------------------------------------------------------------
    # Low-level transport
    # ------------------------------------------------------------------

    def _drop_link(self, reason: str) -> None:
        logger.warning("Closing robot link: %s", reason)
        self.disconnect()

    def _read_line(self) -> str:
        if self._command_reader is None:
            raise ProtocolError("Command channel is not open")
        try:
            raw = self._command_reader.readline()
        except socket.timeout as exc:
            self._drop_link("response timed out")
            raise TransmitError("Timed out waiting for a response line") from exc
        except OSError as exc:
            self._drop_link(f"read failed: {exc}")
            raise TransmitError(f"Command channel read failed: {exc}") from exc
        if not raw:
            self._drop_link("command channel closed by robot")
            raise ProtocolError("Command channel closed by robot")
        if not raw.endswith(b"\n"):
            self._drop_link("incomplete response line")
            raise ProtocolError(f"Incomplete response line: {raw!r}")
        return raw.decode("ascii", errors="replace").rstrip("\r\n")

    def send_command(self, text: str) -> str:
        """Send one command line and return the single-line response.

        A trailing newline is added when *text* has none.

        Raises
        ------
        ProtocolError
            If the command channel is not open, *text* is not ASCII, or
            the reply is missing (``TransmitError`` for I/O failures).
            Both channels are closed after any I/O failure.
        """
        if self._command_sock is None:
            raise ProtocolError("Command channel is not open")
        if not text.endswith("\n"):
            text += "\n"
        payload = _encode(text, "Command")

        self._arm_io_timeout()
        try:
            self._command_sock.sendall(payload)
        except OSError as exc:
            self._drop_link(f"command write failed: {exc}")
            raise TransmitError(f"Command channel write failed: {exc}") from exc

        response = self._read_line()
        logger.debug("Command %r -> %r", text.rstrip("\n"), response)
        return response

    def send_program(self, text: str) -> None:
        """Stream a program to the controller.  No response is read.

        Raises
        ------
        ProtocolError
            If the stream channel is not open or *text* is not ASCII.
        TransmitError
            If the write fails.  Both channels are closed afterwards.
        """
        if self._stream_sock is None:
            raise ProtocolError("Stream channel is not open")
        payload = _encode(text + "\n", "Program")

        self._arm_io_timeout()
        try:
            self._stream_sock.sendall(payload)
        except OSError as exc:
            self._drop_link(f"program write failed: {exc}")
            raise TransmitError(f"Stream channel write failed: {exc}") from exc
        logger.info("Sent program (%d bytes)", len(payload))

    def send_program_file(self, path: str | Path) -> None:
        """Read a program file and stream it.

        Raises
        ------
        TemplateError
            If the file cannot be read.
        """
        path = Path(path)
        try:
            program = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TemplateError(f"Cannot read program file {path}: {exc}") from exc
        self.send_program(program)

    # ------------------------------------------------------------------
    # Controller queries
    # ------------------------------------------------------------------

    def program_running(self) -> bool:
        """Ask whether a program is executing.  ``False`` when disconnected."""
        if self._command_sock is None:
            return False
        return self.send_command("running") == RUNNING_TRUE

    def robot_mode(self) -> str:
        """Return the controller's robot-mode reply line."""
        return self.send_command("robotmode")

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> RobotConnection:
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()
