"""Game port listener: classifies the first packet of each connection."""

import asyncio
import logging
import struct
from typing import Optional, Dict, Any, List

from .utils import extract_token
from .wake_coordinator import WakeCoordinator, ConnectionIntent


logger = logging.getLogger(__name__)


class PacketBuffer:
    """Reads Minecraft packet fields with VarInt support."""

    def __init__(self, data: bytes = b''):
        self.data = data
        self.pos = 0

    def read_varint(self) -> int:
        """Read a VarInt from the buffer."""
        value = 0
        position = 0

        while True:
            if self.pos >= len(self.data):
                raise ValueError("Unexpected end of buffer while reading VarInt")

            byte = self.data[self.pos]
            self.pos += 1

            value |= (byte & 0x7F) << position

            if (byte & 0x80) == 0:
                break

            position += 7
            if position >= 32:
                raise ValueError("VarInt too long")

        return value

    def read_string(self) -> str:
        """Read a UTF-8 string from the buffer."""
        length = self.read_varint()
        if self.pos + length > len(self.data):
            raise ValueError("String length exceeds buffer size")

        string_data = self.data[self.pos:self.pos + length]
        self.pos += length

        return string_data.decode('utf-8')

    def read_ushort(self) -> int:
        """Read an unsigned short (2 bytes, big-endian)."""
        if self.pos + 2 > len(self.data):
            raise ValueError("Not enough data for unsigned short")

        value = struct.unpack('>H', self.data[self.pos:self.pos + 2])[0]
        self.pos += 2
        return value


def parse_handshake_next_state(data: bytes) -> Optional[int]:
    """Return the next state of a handshake packet (1 = status, 2 = login), or None."""
    try:
        buffer = PacketBuffer(data)
        buffer.read_varint()  # packet length
        if buffer.read_varint() != 0x00:
            return None
        buffer.read_varint()  # protocol version
        buffer.read_string()  # server address
        buffer.read_ushort()  # server port
        return buffer.read_varint()
    except (ValueError, UnicodeDecodeError):
        return None


class ConnectionListener:
    """Accepts game port connections and hands real join attempts to the coordinator."""

    def __init__(self, config: dict, coordinator: WakeCoordinator):
        listener_config = config["listener"]
        self.host = listener_config["host"]
        self.port = listener_config["port"]
        self.read_size = listener_config["read_size"]
        self.handshake_timeout = listener_config["handshake_timeout"]
        self.status_probe_markers: List[str] = list(listener_config["status_probe_markers"])
        self.detect_status_handshake = listener_config["detect_status_handshake"]
        self.coordinator = coordinator

        self.server: Optional[asyncio.Server] = None

        self.stats = {
            "connections": 0,
            "empty_tokens": 0,
            "status_probes": 0,
            "wake_requests": 0,
            "errors": 0
        }

    def classify(self, data: bytes) -> Optional[ConnectionIntent]:
        """Turn the first packet into a ConnectionIntent, or None if it carries no token."""
        raw_token = extract_token(data)
        if not raw_token:
            return None

        is_probe = any(marker in raw_token for marker in self.status_probe_markers)
        if not is_probe and self.detect_status_handshake:
            is_probe = parse_handshake_next_state(data) == 1

        return ConnectionIntent(raw_token=raw_token, is_status_probe=is_probe)

    async def handle_connection(self, reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter) -> None:
        """Handle one client connection: read once, respond at most once, close."""
        client_addr = writer.get_extra_info('peername')
        self.stats["connections"] += 1
        logger.debug(f"Connection from {client_addr}")

        try:
            try:
                data = await asyncio.wait_for(reader.read(self.read_size), timeout=self.handshake_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"No data from {client_addr} within {self.handshake_timeout}s")
                return

            intent = self.classify(data)
            if intent is None:
                self.stats["empty_tokens"] += 1
                logger.debug(f"Ignoring empty handshake from {client_addr}")
                return

            if intent.is_status_probe:
                self.stats["status_probes"] += 1
                logger.info(f"Ignoring server list ping from {client_addr}")
                return

            self.stats["wake_requests"] += 1
            logger.info(f"Join attempt from {client_addr} ({intent.raw_token})")
            response = await self.coordinator.handle(intent)

            if response:
                writer.write((response + "\n").encode('utf-8'))
                await writer.drain()

        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Error handling connection from {client_addr}: {e}")

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing connection from {client_addr}: {e}")

    async def start_server(self) -> asyncio.Server:
        """Start listening on the game port."""
        self.server = await asyncio.start_server(
            self.handle_connection,
            self.host,
            self.port,
            reuse_address=True
        )

        logger.info(f"Listening on {self.host}:{self.port}")
        return self.server

    def bound_port(self) -> Optional[int]:
        """Port actually bound (useful when configured with port 0)."""
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def stop_server(self) -> None:
        """Stop accepting connections."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Listener stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get listener statistics."""
        return {**self.stats, "host": self.host, "port": self.port}
