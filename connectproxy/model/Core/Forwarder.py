import logging
import socket

from connectproxy.model.Core.EventDeduper import EventDeduper
from connectproxy.model.Core.NotificationSink import NotificationSink
from connectproxy.model.Core.header import (
    UNKNOWN_PEER,
    EmbedField,
    EventCategory,
    Severity,
    peer_key,
)

logger = logging.getLogger('connectproxy.forwarder')


def close_socket(sock: socket.socket):
    """Shut down and close sock. Safe to call on an already closed socket."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class Forwarder:
    """
    Copies bytes in one direction between two sockets.

    Each call to copy() runs once to completion (end of stream or error),
    reports the outcome according to the deduper, and closes both sockets.
    Closing wakes the opposite direction, which is blocked reading one of them.
    """

    def __init__(self, deduper: EventDeduper, sink: NotificationSink, buffer_size: int = 65536):
        self.deduper = deduper
        self.sink = sink
        self.buffer_size = buffer_size

    def copy(self, src: socket.socket, dst: socket.socket, direction: str) -> int:
        try:
            key = peer_key(src)
        except OSError:
            key = UNKNOWN_PEER

        bytes_copied = 0
        try:
            while True:
                data = src.recv(self.buffer_size)
                if not data:
                    break
                dst.sendall(data)
                bytes_copied += len(data)
        except OSError as e:
            logger.debug(f"{direction} from {key} failed after {bytes_copied} bytes: {e}")
            self._report_error(key, bytes_copied, direction)
        else:
            self._report_success(key, bytes_copied, direction)
        finally:
            close_socket(src)
            close_socket(dst)

        return bytes_copied

    def _report_error(self, key: str, bytes_copied: int, direction: str):
        if not self.deduper.first_time(EventCategory.FORWARDING_ERROR, key):
            return
        logger.error(f"failed to forward {bytes_copied} bytes ({direction}) for {key}")
        self.sink.notify(
            "Forwarding Error",
            f"Failed to forward {bytes_copied} bytes ({direction})",
            Severity.ERROR,
            self._fields(key, bytes_copied, direction),
        )

    def _report_success(self, key: str, bytes_copied: int, direction: str):
        if not self.deduper.record_success(key):
            return
        logger.info(f"forwarded {bytes_copied} bytes ({direction})")
        self.sink.notify(
            "Forwarding Success",
            f"Forwarded {bytes_copied} bytes ({direction})",
            Severity.INFO,
            self._fields(key, bytes_copied, direction),
        )

    @staticmethod
    def _fields(key, bytes_copied, direction):
        return [
            EmbedField("Peer", key),
            EmbedField("Direction", direction),
            EmbedField("Bytes", str(bytes_copied)),
        ]
