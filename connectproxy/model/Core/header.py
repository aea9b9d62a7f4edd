import ipaddress
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

# =============================================================================
# Core Types & Configuration
# =============================================================================

UNKNOWN_PEER = "unknown"


class Severity(Enum):
    INFO = "info"
    ERROR = "error"


class EventCategory(Enum):
    CLIENT_CONNECTED = "client-connected"
    BACKEND_CONNECTED = "backend-connected"
    PROXY_STARTING = "proxy-starting"
    PROXY_LISTENING = "proxy-listening"
    FORWARDING_ERROR = "forwarding-error"


@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str


@dataclass(frozen=True)
class ProxyConfig:
    listen_host: str
    listen_port: int
    target_host: str
    target_port: int
    buffer_size: int = 65536
    connect_timeout: Optional[float] = None
    accept_timeout: float = 1.0
    accept_error_delay: float = 0.0

    @property
    def listen_addr(self) -> str:
        return format_addr((self.listen_host, self.listen_port))

    @property
    def target_addr(self) -> str:
        return format_addr((self.target_host, self.target_port))


@dataclass(frozen=True)
class NotifierConfig:
    webhook_url: str = ""
    username: str = "connectproxy"
    timeout: float = 10.0


# =============================================================================
# Address Helpers
# =============================================================================

def format_addr(addr: Tuple) -> str:
    """Render a socket address as host:port, bracketing IPv6 hosts."""
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def normalize_host(host: str) -> str:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def peer_key(sock: socket.socket) -> str:
    """
    Host-only identifier of the socket's remote end.

    Raises OSError if the socket is no longer connected.
    """
    return normalize_host(sock.getpeername()[0])
