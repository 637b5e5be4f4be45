"""
Frame codec for the hub/spoke stream.

A stream socket hands us arbitrary chunks: half a frame, several frames,
or several frames plus the start of the next one. FrameBuffer reassembles
them into complete '#'-terminated frames and decodes each into a Message.

Rules:
- text after the last delimiter of a chunk stays pending until a later
  chunk terminates it
- every terminated frame is decoded exactly once; malformed frames are
  logged and dropped, never retried
- pending text is cleared after every decode attempt
"""

from __future__ import annotations

import codecs
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from hubspoke.spine.schemas import (
    DELIMITER,
    ENCODING,
    FrameDecodeError,
    Message,
    decode_message,
)

logger = logging.getLogger(__name__)

MessageConsumer = Callable[[Message], Optional[Awaitable[Any]]]


class FrameOverflowError(Exception):
    """
    Raised when a partial frame grows past the configured bound.

    messages holds the frames that were completed by the same chunk before
    the overflow was detected.
    """

    def __init__(self, size: int, limit: int, messages: list[Message] | None = None):
        super().__init__(f"pending frame of {size} bytes exceeds limit of {limit}")
        self.size = size
        self.limit = limit
        self.messages = messages or []


class FrameBuffer:
    """
    Per-connection reassembly state.

    One instance per connection, created when the connection opens and
    dropped with it. Not safe to share between connections.
    """

    def __init__(self, max_pending: int | None = None, name: str = "conn"):
        self._max_pending = max_pending
        self._name = name
        self._pending = ""
        # keeps partial multi-byte characters between chunks
        self._decoder = codecs.getincrementaldecoder(ENCODING)(errors="replace")
        self.frames_decoded = 0
        self.frames_dropped = 0

    @property
    def pending(self) -> str:
        return self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, chunk: bytes | str) -> list[Message]:
        """
        Consume one raw chunk and return the messages it completes.

        Raises FrameOverflowError if the trailing partial frame exceeds
        max_pending bytes; the buffer is cleared before raising.
        """
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk

        # every segment but the last was terminated by a delimiter
        *complete, tail = text.split(DELIMITER)
        messages: list[Message] = []

        for segment in complete:
            self._pending += segment
            if not self._pending:
                # consecutive delimiters
                continue

            frame, self._pending = self._pending, ""
            try:
                messages.append(decode_message(frame))
                self.frames_decoded += 1
            except FrameDecodeError as e:
                self.frames_dropped += 1
                logger.error(f"[FRAME:{self._name}] Dropped malformed frame: {e} ({frame[:200]!r})")

        self._pending += tail

        if self._max_pending is not None:
            size = self._pending_size()
            if size > self._max_pending:
                self.reset()
                raise FrameOverflowError(size, self._max_pending, messages)

        return messages

    def _pending_size(self) -> int:
        """UTF-8 size of the pending text, exact whenever it could exceed the bound."""
        if len(self._pending) * 4 <= self._max_pending:
            # at most 4 bytes per character, so still under the bound
            return len(self._pending)
        return len(self._pending.encode(ENCODING))

    def reset(self) -> None:
        """Discard pending text and any partially decoded character."""
        self._pending = ""
        self._decoder.reset()


async def feed_and_deliver(
    buffer: FrameBuffer,
    chunk: bytes | str,
    consumer: MessageConsumer,
) -> int:
    """
    Feed a chunk and hand every completed message to consumer, in order.

    Consumer errors are logged per message and never reach the codec.
    Returns the number of messages delivered. FrameOverflowError is
    re-raised after the messages completed before it were delivered.
    """
    overflow: FrameOverflowError | None = None
    try:
        messages = buffer.feed(chunk)
    except FrameOverflowError as e:
        overflow = e
        messages = e.messages

    for message in messages:
        try:
            result = consumer(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[FRAME] Failed to handle message op={message.op}: {e}")

    if overflow is not None:
        raise overflow

    return len(messages)
