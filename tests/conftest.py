# tests/conftest.py
"""Shared fixtures: a recording sink, loopback backends and a running proxy.

Distinct peer keys come from distinct loopback addresses (127.0.0.x), which
Linux routes without extra configuration.
"""

import queue
import socket
import struct
import threading
import time

import pytest

from connectproxy.model.ConnectProxyServer import ConnectProxyServer
from connectproxy.model.Core.EventDeduper import EventDeduper
from connectproxy.model.Core.NotificationSink import NotificationSink
from connectproxy.model.Core.header import ProxyConfig, Severity

CLIENT_HOST = "127.0.0.1"
BACKEND_HOST = "127.0.0.2"


class RecordingSink(NotificationSink):
    """Sink that keeps every notification in memory."""

    def __init__(self):
        self.events = []
        self.lock = threading.Lock()

    def notify(self, title, description, severity=Severity.INFO, fields=None):
        with self.lock:
            self.events.append((title, description, severity, list(fields or [])))
        return True

    def matching(self, title):
        with self.lock:
            return [e for e in self.events if e[0] == title]

    def count(self, title):
        return len(self.matching(title))

    def peers(self, title):
        peers = []
        for _, _, _, fields in self.matching(title):
            peers.extend(f.value for f in fields if f.name == "Peer")
        return peers

    def wait_for(self, title, count=1, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.count(title) >= count:
                return True
            time.sleep(0.01)
        return False


class Backend:
    """
    Loopback TCP server standing in for the relay target.

    Each chunk received is answered with respond(chunk), or echoed back when
    respond is None. The full byte stream of every connection is put on
    `received` once that connection ends.
    """

    def __init__(self, respond=None, host=BACKEND_HOST):
        self.respond = respond
        self.received = queue.Queue()
        self.total = 0
        self.lock = threading.Lock()

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((host, 0))
        self.sock.listen(16)
        self.sock.settimeout(0.1)
        self.host = host
        self.port = self.sock.getsockname()[1]
        self.running = True
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        while self.running:
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        data = bytearray()
        try:
            while True:
                chunk = conn.recv(65536)
                if not chunk:
                    break
                data += chunk
                with self.lock:
                    self.total += len(chunk)
                reply = chunk if self.respond is None else self.respond(chunk)
                if reply:
                    conn.sendall(reply)
        except OSError:
            pass
        finally:
            conn.close()
            self.received.put(bytes(data))

    def wait_for_bytes(self, count, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self.lock:
                if self.total >= count:
                    return True
            time.sleep(0.01)
        return False

    def close(self):
        self.running = False
        self.sock.close()


def unused_port(host="127.0.0.1"):
    """A port nothing is listening on, so connecting to it is refused."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind((host, 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def tcp_pair(local_host="127.0.0.1", remote_host="127.0.0.1"):
    """
    Connected (near, far) TCP sockets; near's peer address is remote_host.
    """
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind((local_host, 0))
    listener.listen(1)
    far = socket.create_connection(listener.getsockname(), source_address=(remote_host, 0))
    near, _ = listener.accept()
    listener.close()
    return near, far


def connect(server, source=CLIENT_HOST):
    return socket.create_connection(
        ("127.0.0.1", server.listen_port), timeout=5, source_address=(source, 0)
    )


def recv_exactly(sock, size):
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(min(65536, size - len(data)))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def reset(sock):
    """Close sock with an RST instead of a FIN."""
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    sock.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def deduper():
    return EventDeduper()


@pytest.fixture
def backend():
    servers = []

    def factory(respond=None, host=BACKEND_HOST):
        server = Backend(respond, host)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()


@pytest.fixture
def proxy(deduper, sink):
    servers = []

    def factory(target_port, target_host=BACKEND_HOST, listen_port=0):
        config = ProxyConfig(
            listen_host="127.0.0.1",
            listen_port=listen_port,
            target_host=target_host,
            target_port=target_port,
            accept_timeout=0.1,
        )
        server = ConnectProxyServer(config, deduper, sink)
        threading.Thread(target=server.start, daemon=True).start()
        assert server.ready.wait(5), "proxy did not start listening"
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()
