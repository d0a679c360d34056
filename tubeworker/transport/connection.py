"""
TCP connection with CRLF line framing and length-prefixed bodies.
"""

import asyncio
import logging
import socket
from collections.abc import Awaitable
from typing import TypeVar

from tubeworker.constants import CRLF, SERVER_ERROR_REPLIES
from tubeworker.errors import (
    ConnectionLost,
    ConnectionRefused,
    ProtocolError,
    ServerError,
    TransportError,
    TransportTimeout,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# StreamReader buffer limit; status lines are checked against max_line_length
_READER_LIMIT = 2**16


class Connection:
    """
    A single TCP connection to the queue server.

    Commands are written as ``<command>\\r\\n`` optionally followed by
    ``<body>\\r\\n``. Replies are read either as one status line or as a body of
    a known length. The socket is opened on first use and can be replaced by
    calling connect() again.
    """

    def __init__(
        self,
        host: str,
        port: int,
        persistent: bool = False,
        connect_timeout: float | None = 10.0,
        read_timeout: float | None = None,
        max_line_length: int = 224,
    ):
        """
        Initialize the connection parameters. No socket is opened yet.

        Args:
            host: Server host name or address.
            port: Server port.
            persistent: Enable TCP keepalive on the socket.
            connect_timeout: Seconds to wait for the TCP handshake.
            read_timeout: Seconds to wait for a reply. None blocks.
            max_line_length: Longest accepted status line, without CRLF.
        """
        self._host = host
        self._port = port
        self._persistent = persistent
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._max_line_length = max_line_length

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def persistent(self) -> bool:
        return self._persistent

    @property
    def connect_timeout(self) -> float | None:
        return self._connect_timeout

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """
        Open the socket, replacing any existing one.

        Raises:
            ConnectionRefused: Nothing listens on host:port.
            TransportTimeout: The handshake did not finish in time.
            TransportError: Any other socket failure.
        """
        await self.disconnect()

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port, limit=_READER_LIMIT),
                timeout=self._connect_timeout,
            )
        except ConnectionRefusedError as e:
            raise ConnectionRefused(
                f"Connection to {self._host}:{self._port} refused"
            ) from e
        except TimeoutError as e:
            raise TransportTimeout(
                f"Timed out connecting to {self._host}:{self._port}"
            ) from e
        except OSError as e:
            raise TransportError(
                f"Cannot connect to {self._host}:{self._port}: {e}"
            ) from e

        if self._persistent:
            sock = writer.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        self._reader = reader
        self._writer = writer

        logger.debug(
            "Connected to queue server",
            extra={"host": self._host, "port": self._port},
        )

    async def disconnect(self) -> None:
        """Close the socket. Safe to call repeatedly or before connect()."""
        writer = self._writer
        self._reader = None
        self._writer = None

        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # The peer already tore the socket down
            pass

        logger.debug(
            "Disconnected from queue server",
            extra={"host": self._host, "port": self._port},
        )

    async def write(self, command: str, body: bytes | None = None) -> None:
        """
        Send a command line and an optional body.

        Args:
            command: Command without the line terminator.
            body: Raw body bytes for commands that carry one.
        """
        if not self.is_connected:
            await self.connect()

        data = command.encode("ascii") + CRLF
        if body is not None:
            data += body + CRLF

        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            await self.disconnect()
            raise ConnectionLost(f"Write failed: {e}") from e

    async def read(self, length: int | None = None) -> str | bytes:
        """
        Read a reply.

        Args:
            length: Body size announced by the previous status line. When
                omitted a single status line is read.

        Returns:
            The status line without CRLF, or exactly ``length`` body bytes.

        Raises:
            ServerError: The server sent an error sentinel.
            ProtocolError: The reply is not properly framed.
            ConnectionLost: The socket closed mid-reply.
            TransportTimeout: No reply within read_timeout.
        """
        if self._reader is None:
            raise ConnectionLost("Not connected")

        try:
            if length is None:
                raw = await self._with_timeout(self._reader.readuntil(CRLF))
            else:
                raw = await self._with_timeout(self._reader.readexactly(length + len(CRLF)))
        except asyncio.IncompleteReadError as e:
            await self.disconnect()
            raise ConnectionLost("Server closed the connection") from e
        except asyncio.LimitOverrunError as e:
            await self.disconnect()
            raise ProtocolError("read", "status line too long") from e
        except TimeoutError as e:
            # A late reply would desynchronise the stream
            await self.disconnect()
            raise TransportTimeout("Timed out waiting for a reply") from e
        except OSError as e:
            await self.disconnect()
            raise ConnectionLost(f"Read failed: {e}") from e

        if length is not None:
            if not raw.endswith(CRLF):
                await self.disconnect()
                raise ProtocolError("read", "body not terminated by CRLF")
            return raw[: -len(CRLF)]

        if len(raw) - len(CRLF) > self._max_line_length:
            await self.disconnect()
            raise ProtocolError("read", "status line too long")

        try:
            line = raw[: -len(CRLF)].decode("ascii")
        except UnicodeDecodeError as e:
            await self.disconnect()
            raise ProtocolError("read", "status line is not ASCII") from e

        if line in SERVER_ERROR_REPLIES:
            raise ServerError(line)

        return line

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        if self._read_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._read_timeout)

    async def __aenter__(self) -> "Connection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()
