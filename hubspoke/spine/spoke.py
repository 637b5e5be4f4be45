"""
Spoke Client - the collecting side of the spine.

Keeps exactly one outbound connection to the hub. Right after connecting
it sends a welcome frame with the markets and indexes this spoke owns,
then forwards every frame it receives to the EventDispatcher.

The spoke never hangs up on its own: any close or error on the hub
connection schedules one reconnection attempt after a fixed delay. Only
close() ends the connection for good.

States:
  DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (on failure)
                                          -> CLOSING -> CLOSED (close())
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any

from hubspoke.core.config import SpokeConfig
from hubspoke.spine.dispatcher import EventDispatcher
from hubspoke.spine.framing import FrameBuffer, FrameOverflowError, feed_and_deliver
from hubspoke.spine.schemas import Message, encode_frame, welcome_frame

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class SpokeState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class SpokeClient:
    """
    Outbound hub connection with handshake and fixed-delay reconnect.

    Usage:
        client = SpokeClient(SpokeConfig(markets=("BINANCE:btcusdt",)), dispatcher)
        await client.connect()
        await client.send("trades", [...])
        await client.close()
    """

    def __init__(self, config: SpokeConfig, dispatcher: EventDispatcher):
        self._config = config
        self._dispatcher = dispatcher
        self._state = SpokeState.DISCONNECTED

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._buffer: FrameBuffer | None = None
        self._read_task: asyncio.Task | None = None

        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task | None = None

        self._stats = {
            "connects": 0,
            "reconnects": 0,
            "msgs_in": 0,
            "msgs_out": 0,
            "errors": 0,
        }
        self._connect_time: float = 0.0

    @property
    def state(self) -> SpokeState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SpokeState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "state": self._state.value,
            "reconnect_pending": self.reconnect_pending,
            "uptime_s": time.time() - self._connect_time if self.is_connected else 0,
        }

    # -----------------------------------------------------------------------
    # Connect / handshake
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the hub connection and send the welcome frame."""
        if self._state in (SpokeState.CONNECTING, SpokeState.CONNECTED):
            logger.warning("[SPOKE] Already connected (aborting)")
            return
        if self._state in (SpokeState.CLOSING, SpokeState.CLOSED):
            logger.warning("[SPOKE] Client is closed, not connecting")
            return

        self._state = SpokeState.CONNECTING
        logger.debug(f"[SPOKE] Connecting to hub at {self._config.socket_path}...")

        try:
            reader, writer = await asyncio.open_unix_connection(self._config.socket_path)
        except OSError as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Failed to connect to hub: {e}")
            if self._state is SpokeState.CONNECTING:
                self._state = SpokeState.DISCONNECTED
                self._schedule_reconnect()
            return

        if self._state is not SpokeState.CONNECTING:
            # close() ran while we were connecting
            writer.close()
            return

        self._cancel_reconnect()
        self._reader, self._writer = reader, writer
        self._buffer = FrameBuffer(max_pending=self._config.max_frame_bytes, name="hub")
        self._state = SpokeState.CONNECTED
        self._stats["connects"] += 1
        self._connect_time = time.time()
        logger.info("[SPOKE] Successfully connected to hub")

        try:
            writer.write(welcome_frame(self._config.markets, self._config.indexes))
            await writer.drain()
            self._stats["msgs_out"] += 1
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Failed to send welcome: {e}")
            self._handle_disconnect()
            return

        self._read_task = asyncio.create_task(self._read_loop(reader, self._buffer))

    async def _read_loop(self, reader: asyncio.StreamReader, buffer: FrameBuffer) -> None:
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    logger.info("[SPOKE] Hub closed the connection")
                    break
                await feed_and_deliver(buffer, chunk, self._on_message)
        except FrameOverflowError as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Dropping hub connection: {e}")
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Hub connection error: {e}")
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Unexpected error on hub connection: {e}")

        self._handle_disconnect()

    async def _on_message(self, message: Message) -> None:
        self._stats["msgs_in"] += 1
        await self._dispatcher.dispatch(message)

    # -----------------------------------------------------------------------
    # Outbound
    # -----------------------------------------------------------------------

    async def send(self, op: str, data: Any = None) -> bool:
        """Write one frame to the hub. Returns False when not connected."""
        frame = encode_frame(op, data)
        if self._state is not SpokeState.CONNECTED or self._writer is None:
            logger.debug(f"[SPOKE] Not connected, dropping {op}")
            return False

        try:
            self._writer.write(frame)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            logger.error(f"[SPOKE] Send error ({op}): {e}")
            self._handle_disconnect()
            return False

        self._stats["msgs_out"] += 1
        return True

    # -----------------------------------------------------------------------
    # Reconnection
    # -----------------------------------------------------------------------

    def _handle_disconnect(self) -> None:
        """Any close or error on the hub connection ends up here."""
        if self._state in (SpokeState.CLOSING, SpokeState.CLOSED):
            return

        self._teardown()
        self._state = SpokeState.DISCONNECTED
        self._schedule_reconnect()

    def _teardown(self) -> None:
        """Make sure the previous connection is done with."""
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._read_task = None

        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None
        self._buffer = None

    def _schedule_reconnect(self) -> None:
        if self._state in (SpokeState.CLOSING, SpokeState.CLOSED):
            return
        if self._reconnect_handle is not None:
            logger.debug("[SPOKE] Reconnect already scheduled")
            return

        delay = self._config.reconnect_delay
        logger.info(f"[SPOKE] Schedule reconnect to hub ({delay}s)")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._stats["reconnects"] += 1
        self._connect_task = asyncio.create_task(self.connect())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # -----------------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------------

    async def close(self) -> None:
        """End the hub connection gracefully. No reconnection afterwards."""
        if self._state is SpokeState.CLOSED:
            return

        self._state = SpokeState.CLOSING
        self._cancel_reconnect()

        pending = [
            task for task in (self._connect_task, self._read_task)
            if task is not None and not task.done() and task is not asyncio.current_task()
        ]
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connect_task = None
        self._read_task = None

        writer = self._writer
        if writer is not None:
            logger.info("[SPOKE] Closing hub connection")
            try:
                if writer.can_write_eof():
                    writer.write_eof()
                writer.close()
                await writer.wait_closed()
                logger.info("[SPOKE] Successfully closed hub connection")
            except (ConnectionError, OSError) as e:
                logger.warning(f"[SPOKE] Hub connection closed with error: {e}")

        self._reader = None
        self._writer = None
        self._buffer = None
        self._state = SpokeState.CLOSED
