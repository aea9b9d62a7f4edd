"""
ConnectProxy Server
License: MIT License
Description: ConnectProxy is a transparent TCP relay. Every accepted client
             connection is paired with a new connection to a fixed backend
             and bytes are copied both ways until either side closes.
             Lifecycle and connection milestones are reported to a
             notification sink, deduplicated per peer.
"""

import logging
import socket
import threading
import time
from typing import Optional

from connectproxy.model.Core.ConnectionHandler import ConnectionHandler
from connectproxy.model.Core.EventDeduper import EventDeduper
from connectproxy.model.Core.NotificationSink import NotificationSink
from connectproxy.model.Core.header import EventCategory, ProxyConfig, Severity, format_addr

logger = logging.getLogger('connectproxy.server')


class ConnectProxyServer:
    """
    Listens on the local address and hands each connection to its own thread.

    Attributes:
        config (ProxyConfig): Listen/target addresses and socket tuning
        deduper (EventDeduper): Shared report bookkeeping
        sink (NotificationSink): Where lifecycle events are reported
        handler (ConnectionHandler): Relays each accepted connection
        server_socket (socket): The listening socket while running
        listen_port (int): Port actually bound (differs from config when 0)
        running (bool): Flag indicating if the accept loop should continue
        ready (threading.Event): Set once the socket is listening
    """

    def __init__(self, config: ProxyConfig, deduper: EventDeduper, sink: NotificationSink):
        self.config = config
        self.deduper = deduper
        self.sink = sink
        self.handler = ConnectionHandler(config, deduper, sink)
        self.server_socket: Optional[socket.socket] = None
        self.listen_port = config.listen_port
        self.running = False
        self.ready = threading.Event()

    def start(self) -> bool:
        """
        Bind the listening socket and run the accept loop until stop().

        Returns:
            bool: False if the listen address could not be bound
        """
        listen_addr = self.config.listen_addr
        target_addr = self.config.target_addr

        if self.deduper.first_time(EventCategory.PROXY_STARTING, listen_addr):
            logger.info(f"Attempting to start tcp proxy on {listen_addr} and forwarding to {target_addr}")
            self.sink.notify(
                "Proxy Starting",
                f"Attempting to start TCP proxy on {listen_addr} and forwarding to {target_addr}",
                Severity.INFO,
            )

        try:
            self.server_socket = self._create_server_socket()
        except OSError as e:
            logger.error(f"failed to start tcp proxy on {listen_addr}: {e}")
            self.sink.notify(
                "Proxy Error",
                f"Failed to start TCP proxy on {listen_addr}: {e}",
                Severity.ERROR,
            )
            return False

        self.listen_port = self.server_socket.getsockname()[1]
        self.running = True
        self.ready.set()

        # Keyed on the configured address; the message shows the port actually bound.
        bound_addr = format_addr((self.config.listen_host, self.listen_port))
        if self.deduper.first_time(EventCategory.PROXY_LISTENING, listen_addr):
            logger.info(f"proxy successfully listening on {bound_addr}, forwarding to {target_addr}")
            self.sink.notify(
                "Proxy Online",
                f"Proxy successfully listening on {bound_addr}, forwarding to {target_addr}",
                Severity.INFO,
            )

        try:
            self._accept_loop(self.server_socket)
        finally:
            self.cleanup()
        return True

    def _create_server_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.config.listen_host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.config.listen_host, self.config.listen_port))
            sock.listen(128)
        except OSError:
            sock.close()
            raise
        sock.settimeout(self.config.accept_timeout)
        return sock

    def _accept_loop(self, server_socket: socket.socket):
        while self.running:
            try:
                client_socket, addr = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.debug(f"Accept error: {e}")
                    if self.config.accept_error_delay:
                        time.sleep(self.config.accept_error_delay)
                continue

            client_socket.settimeout(None)
            threading.Thread(
                target=self.handler.handle,
                args=(client_socket,),
                daemon=True,
            ).start()

    def stop(self):
        """
        Stop accepting connections. Connections already relaying are left to finish.
        """
        self.running = False
        self.cleanup()

    def cleanup(self):
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
