"""
Broadcast Server
================

TCP endpoint that fans the encoded bitstream out to every attached client.

Protocol:
    None beyond TCP. The server writes raw encoded bytes in capture order;
    a client reads until the server closes the connection or it chooses
    to disconnect.

Address format:
    tcp://<ipv4>:<port>     e.g. tcp://0.0.0.0:8554
    tcp://<ipv4>            ephemeral port, read back from `port`

Lifecycle (driven by the main loop, never from another thread):
    start_listening() -> poll()/accept_connection() ... broadcast() ... stop()

Design Rules:
    - Any number of clients; the listening socket stays open while streaming
    - Writes are sequential and per-connection bounded by `write_timeout`
    - A failed write drops that client only, after the pass completes
    - Nothing survives stop(); the next start_listening() begins empty
"""

import ipaddress
import logging
import selectors
import socket
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlsplit


logger = logging.getLogger(__name__)


SUPPORTED_SCHEME = "tcp"


class AddressError(ValueError):
    """Raised when the server address cannot be parsed or uses another transport."""
    pass


@dataclass(frozen=True)
class ServerAddress:
    """Parsed server endpoint. Port 0 means pick an ephemeral port."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{SUPPORTED_SCHEME}://{self.host}:{self.port}"


def parse_address(address: str) -> ServerAddress:
    """
    Parse a `tcp://host:port` server address.

    Args:
        address: Address string from configuration

    Returns:
        ServerAddress with host and port (0 if no port was given)

    Raises:
        AddressError: If the address is malformed or not tcp
    """
    if "://" not in address:
        raise AddressError(f"bad network address {address!r}")

    parts = urlsplit(address)
    if parts.scheme.lower() != SUPPORTED_SCHEME:
        raise AddressError(f"unrecognised network protocol {parts.scheme!r} in {address!r}")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise AddressError(f"bad network address {address!r}")

    host = parts.hostname or "0.0.0.0"
    try:
        ipaddress.IPv4Address(host)
    except ValueError:
        raise AddressError(f"bad network address {address!r}: {host!r} is not an IPv4 address") from None

    try:
        port = parts.port
    except ValueError:
        raise AddressError(f"bad network address {address!r}: invalid port") from None

    return ServerAddress(host=host, port=port or 0)


class Connection:
    """
    One accepted client.

    Attributes:
        peer: Remote (host, port)
        ident: File descriptor at accept time, stable for logging
        bytes_sent: Total bytes written to this client
    """

    def __init__(
        self,
        sock: socket.socket,
        peer: Tuple[str, int],
        write_timeout: Optional[float],
    ) -> None:
        sock.settimeout(write_timeout)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        self._sock = sock
        self.peer = peer
        self.ident = sock.fileno()
        self.bytes_sent = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, chunk: bytes) -> None:
        """Write the whole chunk or raise OSError (including timeout)."""
        self._sock.sendall(chunk)
        self.bytes_sent += len(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # peer already gone
        self._sock.close()

    def __repr__(self) -> str:
        return f"Connection(fd={self.ident}, peer={self.peer[0]}:{self.peer[1]})"


class BroadcastServer:
    """
    Multi-client TCP fan-out.

    Not thread-safe: the main loop owns it exclusively.

    Attributes:
        address: Configured endpoint
        write_timeout: Per-connection bound on one chunk write (None = block)
        backlog: listen() backlog

    Example:
        server = BroadcastServer("tcp://0.0.0.0:8554")
        server.start_listening()

        if server.poll(timeout=0.1):
            server.accept_connection()

        server.broadcast(chunk)
        server.stop()
    """

    def __init__(
        self,
        address: str,
        write_timeout: Optional[float] = 2.0,
        backlog: int = 5,
    ) -> None:
        """
        Initialize broadcast server.

        Args:
            address: tcp://host:port endpoint
            write_timeout: Seconds one client may take to accept a chunk
            backlog: Pending connection queue length

        Raises:
            AddressError: If the address is invalid
        """
        self.address = parse_address(address)
        self.write_timeout = write_timeout
        self.backlog = backlog

        self._listener: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None
        self._connections: List[Connection] = []

        self.chunks_sent = 0
        self.clients_dropped = 0

    @property
    def is_listening(self) -> bool:
        return self._listener is not None

    @property
    def port(self) -> Optional[int]:
        """Bound port, or None when not listening."""
        if self._listener is None:
            return None
        return self._listener.getsockname()[1]

    @property
    def client_count(self) -> int:
        return len(self._connections)

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections)

    def start_listening(self) -> socket.socket:
        """
        Bind and listen on the configured endpoint.

        Returns:
            The non-blocking listening socket.

        Raises:
            OSError: If the endpoint cannot be bound
        """
        if self._listener is not None:
            return self._listener

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.address.host, self.address.port))
            sock.listen(self.backlog)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise

        self._selector = selectors.DefaultSelector()
        self._selector.register(sock, selectors.EVENT_READ)
        self._listener = sock

        logger.info(f"Broadcast server listening on tcp://{self.address.host}:{self.port}")
        return sock

    def poll(self, timeout: float = 0.0) -> bool:
        """
        Check for a pending connection.

        Args:
            timeout: Seconds to wait (0 = just check)

        Returns:
            True if accept_connection() would not block.
        """
        if self._selector is None:
            return False
        return bool(self._selector.select(timeout))

    def accept_connection(self) -> Optional[Connection]:
        """
        Accept one pending client and add it to the active set.

        Returns:
            The new Connection, or None if nothing was pending.
        """
        if self._listener is None:
            return None

        try:
            sock, peer = self._listener.accept()
        except (BlockingIOError, InterruptedError):
            return None

        connection = Connection(sock, peer, self.write_timeout)
        self._connections.append(connection)
        logger.info(
            f"Client connected: {peer[0]}:{peer[1]} "
            f"({len(self._connections)} active)"
        )
        return connection

    def broadcast(self, chunk: bytes) -> int:
        """
        Write a chunk to every active client.

        Clients are written one after another. A client whose write fails
        or times out is removed and closed once every client has had its
        turn; the others are unaffected.

        Args:
            chunk: Encoded bytes

        Returns:
            Number of clients that received the chunk.
        """
        failed: List[Connection] = []
        delivered = 0

        for connection in self._connections:
            try:
                connection.send(chunk)
                delivered += 1
            except OSError as e:
                logger.info(f"Dropping client {connection.peer[0]}:{connection.peer[1]}: {e!r}")
                failed.append(connection)

        if failed:
            for connection in failed:
                self._connections.remove(connection)
                connection.close()
            self.clients_dropped += len(failed)
            logger.info(f"{len(failed)} client(s) dropped, {len(self._connections)} active")

        self.chunks_sent += 1
        return delivered

    def on_output_ready(self, chunk: bytes, timestamp_us: int, keyframe: bool) -> None:
        """Encoder output-ready callback."""
        self.broadcast(chunk)

    def is_idle(self) -> bool:
        """Whether no client is attached."""
        return not self._connections

    def close_connections(self) -> int:
        """Close every active client. Returns how many were closed."""
        closed = len(self._connections)
        for connection in self._connections:
            connection.close()
        self._connections.clear()
        return closed

    def stop_listening(self) -> None:
        """Close the listening endpoint, keep active clients."""
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
            logger.info("Broadcast server stopped listening")

    def stop(self) -> None:
        """Close the listening endpoint and every client."""
        closed = self.close_connections()
        self.stop_listening()
        if closed:
            logger.info(f"Closed {closed} client connection(s)")

    def metrics(self) -> dict:
        """Get server metrics for observability."""
        return {
            "listening": self.is_listening,
            "port": self.port,
            "clients": [
                {"peer": f"{c.peer[0]}:{c.peer[1]}", "bytes_sent": c.bytes_sent}
                for c in self._connections
            ],
            "chunks_sent": self.chunks_sent,
            "clients_dropped": self.clients_dropped,
        }
