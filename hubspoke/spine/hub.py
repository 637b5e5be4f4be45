"""
Hub Listener - the serving side of the spine.

Binds a unix socket, accepts spoke connections, registers each spoke when
its welcome frame arrives and forwards every other frame to the
EventDispatcher. Upstream code asks find_spoke_for() which spoke owns a
market or index.

Usage:
    hub = HubListener(HubConfig(socket_path="/tmp/hubspoke.sock"), dispatcher)
    await hub.start()
    record = hub.find_spoke_for("BINANCE:btcusdt")
    await hub.send(record, "fetch", {"from": 0, "to": 1})
    await hub.close()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from functools import partial
from pathlib import Path
from typing import Any

from hubspoke.core.config import HubConfig
from hubspoke.spine.dispatcher import EventDispatcher
from hubspoke.spine.framing import FrameBuffer, FrameOverflowError, feed_and_deliver
from hubspoke.spine.registry import MembershipRegistry, SpokeRecord
from hubspoke.spine.schemas import FrameDecodeError, Message, Ops, encode_frame, parse_welcome

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class HubBindError(RuntimeError):
    """The hub could not bind its socket path. Fatal at startup."""


class SpokeConnection:
    """Hub-side handle for one accepted connection and its frame buffer."""

    def __init__(
        self,
        conn_id: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_pending: int | None = None,
    ):
        self.conn_id = conn_id
        self.reader = reader
        self.writer = writer
        self.buffer = FrameBuffer(max_pending=max_pending, name=f"spoke#{conn_id}")
        self.connected_at = time.time()

    def __repr__(self) -> str:
        return f"spoke#{self.conn_id}"

    @property
    def is_closing(self) -> bool:
        return self.writer.is_closing()

    async def write(self, frame: bytes) -> None:
        self.writer.write(frame)
        await self.writer.drain()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[HUB] {self} closed with error: {e}")


class HubListener:
    """
    Accepts spokes on a unix socket and keeps the membership registry.

    All callbacks run on the event loop thread, so the registry and the
    per-connection buffers need no locking.
    """

    def __init__(self, config: HubConfig, dispatcher: EventDispatcher):
        self._config = config
        self._dispatcher = dispatcher
        self._registry = MembershipRegistry()
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[SpokeConnection] = set()
        self._ids = itertools.count(1)
        self._stats = {
            "accepted": 0,
            "msgs_in": 0,
            "msgs_out": 0,
            "errors": 0,
        }
        self._start_time: float = 0.0

    @property
    def socket_path(self) -> str:
        return self._config.socket_path

    @property
    def registry(self) -> MembershipRegistry:
        return self._registry

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def connections(self) -> list[SpokeConnection]:
        return list(self._connections)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "active": len(self._connections),
            "registered": len(self._registry),
            "serving": self.is_serving,
            "uptime_s": time.time() - self._start_time if self._start_time else 0,
        }

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the socket and start accepting spokes. Raises HubBindError."""
        if self._server is not None:
            logger.warning("[HUB] Already listening (aborting)")
            return

        self._remove_stale_socket()

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=self.socket_path,
            )
        except OSError as e:
            logger.error(f"[HUB] Failed to bind {self.socket_path}: {e}")
            raise HubBindError(f"cannot bind {self.socket_path}: {e}") from e

        self._start_time = time.time()
        logger.info(f"[HUB] Listening on {self.socket_path}")

    async def close(self) -> None:
        """Stop accepting, drop every spoke and remove the socket file."""
        if self._server is None:
            return

        self._server.close()

        for conn in list(self._connections):
            await conn.close()

        await self._server.wait_closed()
        self._server = None
        self._registry.clear()

        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[HUB] Could not remove {self.socket_path}: {e}")

        logger.info(f"[HUB] Closed. {self._stats['msgs_in']} messages received.")

    def _remove_stale_socket(self) -> None:
        path = Path(self.socket_path)
        try:
            if path.exists():
                logger.debug(f"[HUB] Unix socket was not closed properly last time, removing {path}")
                path.unlink()
        except OSError as e:
            # treated as absent; bind will report the real problem
            logger.debug(f"[HUB] Stale socket check failed for {path}: {e}")

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        conn = SpokeConnection(next(self._ids), reader, writer, self._config.max_frame_bytes)
        self._connections.add(conn)
        self._stats["accepted"] += 1
        logger.info(f"[HUB] Spoke connected ({conn})")

        on_message = partial(self._on_message, conn)

        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    logger.info(f"[HUB] Spoke disconnected ({conn})")
                    break
                await feed_and_deliver(conn.buffer, chunk, on_message)

        except FrameOverflowError as e:
            self._stats["errors"] += 1
            logger.error(f"[HUB] Closing {conn}: {e}")
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            logger.warning(f"[HUB] Connection error on {conn}: {e}")
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"[HUB] Unexpected error on {conn}: {e}")
        finally:
            self._drop(conn)
            await conn.close()

    def _drop(self, conn: SpokeConnection) -> None:
        self._connections.discard(conn)
        record = self._registry.remove(conn)
        if record is not None:
            logger.info(
                f"[HUB] Unregistered {conn} "
                f"({len(record.markets)} markets, {len(record.indexes)} indexes)"
            )

    async def _on_message(self, conn: SpokeConnection, message: Message) -> None:
        self._stats["msgs_in"] += 1

        if message.op == Ops.WELCOME:
            self._register(conn, message.data)
            return

        # frames from connections that never said welcome are forwarded too
        await self._dispatcher.dispatch(message)

    def _register(self, conn: SpokeConnection, data: Any) -> None:
        try:
            welcome = parse_welcome(data)
        except FrameDecodeError as e:
            self._stats["errors"] += 1
            logger.error(f"[HUB] Ignoring welcome from {conn}: {e}")
            return

        self._registry.add(conn, welcome.markets, welcome.indexes)
        logger.info(
            f"[HUB] Registered {conn} with indexes {', '.join(welcome.indexes) or '-'}"
        )

    # -----------------------------------------------------------------------
    # Routing / outbound
    # -----------------------------------------------------------------------

    def find_spoke_for(self, identifier: str) -> SpokeRecord | None:
        """Which registered spoke owns this market or index, if any."""
        return self._registry.find_spoke_for(identifier)

    async def send(self, target: SpokeRecord | SpokeConnection, op: str, data: Any = None) -> bool:
        """Write one frame to a spoke. Returns False if it could not be written."""
        conn = target.connection if isinstance(target, SpokeRecord) else target
        return await self._send_frame(conn, encode_frame(op, data), op)

    async def broadcast(self, op: str, data: Any = None) -> int:
        """Send a frame to every registered spoke. Returns the number reached."""
        frame = encode_frame(op, data)
        sent = 0
        for record in self._registry:
            if await self._send_frame(record.connection, frame, op):
                sent += 1
        return sent

    async def _send_frame(self, conn: SpokeConnection, frame: bytes, op: str) -> bool:
        if conn.is_closing:
            return False

        try:
            await conn.write(frame)
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            logger.warning(f"[HUB] Send error on {conn} ({op}): {e}")
            return False

        self._stats["msgs_out"] += 1
        return True

    def snapshot(self) -> list[dict[str, Any]]:
        return self._registry.snapshot()
