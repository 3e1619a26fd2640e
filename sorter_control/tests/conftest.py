"""Shared fixtures: a mock robot controller on two local TCP ports."""

from __future__ import annotations

import socket
import threading
import time
from typing import Callable

import pytest

from sorter_control.hardware.robot_connection import ConnectionEndpoint

GREETING = "Connected: Universal Robots Dashboard Server"


def free_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class MockRobotServer:
    """Minimal mock of a robot controller.

    Command port: sends a greeting on accept, then answers each line
    from ``responses``.  Stream port: records every byte received.
    """

    def __init__(self, send_greeting: bool = True) -> None:
        self.send_greeting = send_greeting
        self.responses: dict[str, str] = {
            "running": "Program running: false",
            "robotmode": "Robotmode: RUNNING",
        }
        self.silent: set[str] = set()
        self.commands: list[str] = []
        self._received = bytearray()
        self._lock = threading.Lock()
        self._conns: list[socket.socket] = []
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._command_server = self._listen()
        self._stream_server = self._listen()

    @staticmethod
    def _listen() -> socket.socket:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind(("127.0.0.1", 0))
        server.listen(5)
        server.settimeout(0.1)
        return server

    @property
    def endpoint(self) -> ConnectionEndpoint:
        return ConnectionEndpoint(
            "127.0.0.1",
            self._command_server.getsockname()[1],
            self._stream_server.getsockname()[1],
        )

    @property
    def received(self) -> bytes:
        with self._lock:
            return bytes(self._received)

    def start(self) -> None:
        for server, handler in (
            (self._command_server, self._handle_command),
            (self._stream_server, self._handle_stream),
        ):
            thread = threading.Thread(
                target=self._accept_loop, args=(server, handler), daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _accept_loop(
        self,
        server: socket.socket,
        handler: Callable[[socket.socket], None],
    ) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(0.1)
            with self._lock:
                self._conns.append(conn)
            threading.Thread(target=handler, args=(conn,), daemon=True).start()

    def _handle_command(self, conn: socket.socket) -> None:
        if self.send_greeting:
            self._send(conn, GREETING + "\n")
        buf = b""
        while not self._stop.is_set():
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not data:
                break
            buf += data
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                command = line.decode("ascii")
                self.commands.append(command)
                if command in self.silent:
                    continue
                reply = self.responses.get(
                    command, f"could not understand: '{command}'",
                )
                self._send(conn, reply + "\n")

    def _handle_stream(self, conn: socket.socket) -> None:
        while not self._stop.is_set():
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not data:
                break
            with self._lock:
                self._received.extend(data)

    @staticmethod
    def _send(conn: socket.socket, text: str) -> None:
        try:
            conn.sendall(text.encode("ascii"))
        except OSError:
            pass

    def drop_clients(self) -> None:
        """Close every client connection (simulates a controller reboot)."""
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def stop(self) -> None:
        self._stop.set()
        self.drop_clients()
        self._command_server.close()
        self._stream_server.close()
        for thread in self._threads:
            thread.join(timeout=2.0)


@pytest.fixture()
def mock_robot():
    """Provide a running mock robot controller."""
    server = MockRobotServer()
    server.start()
    yield server
    server.stop()
