import logging
import socket
import threading
from typing import Optional

from connectproxy.model.Core.EventDeduper import EventDeduper
from connectproxy.model.Core.Forwarder import Forwarder, close_socket
from connectproxy.model.Core.NotificationSink import NotificationSink
from connectproxy.model.Core.header import (
    EmbedField,
    EventCategory,
    ProxyConfig,
    Severity,
    format_addr,
    normalize_host,
)

logger = logging.getLogger('connectproxy.handler')

CLIENT_TO_BACKEND = "client->backend"
BACKEND_TO_CLIENT = "backend->client"


class ConnectionHandler:
    """
    Pairs an accepted client socket with a fresh backend connection.

    Attributes:
        config (ProxyConfig): Target address and socket tuning
        deduper (EventDeduper): Shared report bookkeeping
        sink (NotificationSink): Where milestones are reported
        forwarder (Forwarder): Runs each direction of the relay
    """

    def __init__(self, config: ProxyConfig, deduper: EventDeduper, sink: NotificationSink):
        self.config = config
        self.deduper = deduper
        self.sink = sink
        self.forwarder = Forwarder(deduper, sink, config.buffer_size)

    def handle(self, client_socket: socket.socket):
        """
        Relay one client connection until both directions have finished.

        Args:
            client_socket (socket): Accepted connection from the client
        """
        target_addr = self.config.target_addr

        try:
            client_addr = client_socket.getpeername()
        except OSError as e:
            logger.debug(f"Client went away before handling: {e}")
            close_socket(client_socket)
            return

        key = normalize_host(client_addr[0])
        if self.deduper.first_time(EventCategory.CLIENT_CONNECTED, key):
            logger.info(f"client connected from {format_addr(client_addr)}")
            self.sink.notify(
                "Client Connected",
                f"New client connected from {format_addr(client_addr)}",
                Severity.INFO,
                [EmbedField("Peer", key)],
            )

        backend_socket = self._dial_backend(target_addr)
        if backend_socket is None:
            close_socket(client_socket)
            return

        if self.deduper.first_time(EventCategory.BACKEND_CONNECTED, target_addr):
            logger.info(f"connected to backend server at {target_addr}")
            self.sink.notify(
                "Backend Connected",
                f"Connected to backend server at {target_addr}",
                Severity.INFO,
            )

        directions = [
            threading.Thread(
                target=self.forwarder.copy,
                args=(client_socket, backend_socket, CLIENT_TO_BACKEND),
                daemon=True,
            ),
            threading.Thread(
                target=self.forwarder.copy,
                args=(backend_socket, client_socket, BACKEND_TO_CLIENT),
                daemon=True,
            ),
        ]
        for thread in directions:
            thread.start()
        for thread in directions:
            thread.join()

        close_socket(backend_socket)
        close_socket(client_socket)

    def _dial_backend(self, target_addr: str) -> Optional[socket.socket]:
        try:
            backend_socket = socket.create_connection(
                (self.config.target_host, self.config.target_port),
                timeout=self.config.connect_timeout,
            )
        except OSError as e:
            logger.error(f"failed to connect to backend server at {target_addr}: {e}")
            self.sink.notify(
                "Backend Connection Error",
                f"Failed to connect to backend server at {target_addr}: {e}",
                Severity.ERROR,
            )
            return None

        # Timeout applies to connect only; relay reads block indefinitely.
        backend_socket.settimeout(None)
        return backend_socket
