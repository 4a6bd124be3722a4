"""
UDP Listener

Owns the IPv4 UDP socket the gateway receives datagrams on.

The socket is non-blocking and driven by the asyncio event loop through
`loop.sock_recvfrom`, so `receive()` suspends only the calling task. Nothing
is buffered in the application: datagrams that arrive while the caller is
busy wait in the OS socket buffer and are dropped by the OS once it is full.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from errors import BindError

# Receive buffer capacity. Larger datagrams are truncated by the OS.
UDP_BUFFER_SIZE = 2048


@dataclass(frozen=True)
class Datagram:
    """One received UDP packet, treated as an opaque payload."""

    payload: bytes
    sender: Tuple[str, int]

    @property
    def length(self) -> int:
        return len(self.payload)


class UdpListener:
    def __init__(
        self, host: str = "0.0.0.0", buffer_size: int = UDP_BUFFER_SIZE
    ) -> None:
        self.host = host
        self.buffer_size = buffer_size
        self.sock: Optional[socket.socket] = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_bound(self) -> bool:
        return self.sock is not None

    @property
    def address(self) -> Tuple[str, int]:
        """Local address the socket is bound to (useful after binding port 0)."""
        if self.sock is None:
            raise RuntimeError("UdpListener is not bound")
        host, port = self.sock.getsockname()[:2]
        return host, port

    def bind(self, port: int) -> None:
        """
        Open the socket and bind it to `host:port`.

        Raises:
            BindError: if the port is in use or may not be bound.
        """
        if self.sock is not None:
            raise RuntimeError("UdpListener is already bound")

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((self.host, port))
        except OSError as e:
            sock.close()
            raise BindError(port, e.strerror or str(e)) from e

        self.sock = sock
        self.logger.info(f"Successfully opened UDP port {self.address[1]}")

    async def receive(self) -> Datagram:
        """Wait for the next datagram. Blocks until one arrives."""
        if self.sock is None:
            raise RuntimeError("UdpListener is not bound")

        loop = asyncio.get_running_loop()
        data, sender = await loop.sock_recvfrom(self.sock, self.buffer_size)
        return Datagram(payload=data, sender=(sender[0], sender[1]))

    def close(self) -> None:
        """Release the socket. Safe to call more than once."""
        sock, self.sock = self.sock, None
        if sock is not None:
            sock.close()
            self.logger.info("Closed UDP socket")

    def __enter__(self) -> "UdpListener":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()
