"""
Tests for the frame codec.

Verifies:
- Multiple frames in one chunk decode in order
- Partial frames wait for the next chunk
- Malformed frames are dropped and the buffer is cleared
- Any chunking of the same stream yields the same messages
- Partial frames past the bound raise FrameOverflowError
- Consumer errors never leak into the codec
"""

import asyncio

import pytest

from hubspoke.spine.framing import FrameBuffer, FrameOverflowError, feed_and_deliver
from hubspoke.spine.schemas import Message, encode_frame


def _as_tuples(messages: list[Message]) -> list[tuple]:
    return [(m.op, m.data) for m in messages]


STREAM = (
    encode_frame("welcome", {"markets": ["BINANCE:btcusdt"], "indexes": ["BTCUSDT"]})
    + encode_frame("trades", [{"p": 64000.5, "s": 0.01, "side": "buy"}])
    + encode_frame("a", 1)
    + encode_frame("liquidations", {"exchange": "BYBIT", "note": "é ü 漢"})
)


class TestFrameBuffer:
    """Decoding behaviour of a single FrameBuffer."""

    def test_two_frames_in_one_chunk(self):
        """Both frames of a single chunk are emitted, in order."""
        buffer = FrameBuffer()

        messages = buffer.feed(b'{"op":"a","data":1}#{"op":"b","data":2}#')

        assert _as_tuples(messages) == [("a", 1), ("b", 2)]
        assert buffer.pending == ""

    def test_frame_split_over_two_chunks(self):
        """A partial frame produces nothing until its delimiter arrives."""
        buffer = FrameBuffer()

        assert buffer.feed(b'{"op":"a",') == []
        assert buffer.pending == '{"op":"a",'

        messages = buffer.feed(b'"data":1}#')

        assert _as_tuples(messages) == [("a", 1)]
        assert buffer.pending == ""

    def test_malformed_frames_are_dropped(self):
        """Malformed frames emit nothing, raise nothing, leave the buffer empty."""
        buffer = FrameBuffer()

        messages = buffer.feed(b"{bad#json}#")

        assert messages == []
        assert buffer.pending == ""
        assert buffer.frames_dropped == 2

    def test_malformed_frame_does_not_poison_next(self):
        """A good frame after a bad one still decodes."""
        buffer = FrameBuffer()

        messages = buffer.feed(b'not json#{"op":"ok","data":null}#')

        assert _as_tuples(messages) == [("ok", None)]

    def test_valid_json_without_op_is_dropped(self):
        """JSON that is not a message (no op, empty op, not an object) is dropped."""
        buffer = FrameBuffer()

        messages = buffer.feed(b'{"data":1}#{"op":"","data":1}#[1,2]#')

        assert messages == []
        assert buffer.frames_dropped == 3

    def test_oversized_integer_is_dropped(self):
        """An integer literal too long to convert is malformed, not fatal."""
        buffer = FrameBuffer()
        chunk = (
            b'{"op":"a","data":1}#'
            + b'{"op":"b","data":' + b"9" * 5000 + b"}#"
            + b'{"op":"c","data":3}#'
        )

        messages = buffer.feed(chunk)

        assert _as_tuples(messages) == [("a", 1), ("c", 3)]
        assert buffer.frames_dropped == 1

    def test_deeply_nested_frame_is_dropped(self):
        """Nesting deeper than the decoder can follow is malformed, not fatal."""
        buffer = FrameBuffer()

        messages = buffer.feed(b"[" * 200_000 + b'#{"op":"after","data":1}#')

        assert _as_tuples(messages) == [("after", 1)]
        assert buffer.frames_dropped == 1

    def test_consecutive_delimiters_are_skipped(self):
        """Empty segments between delimiters produce no messages."""
        buffer = FrameBuffer()

        messages = buffer.feed(b'##{"op":"a","data":1}###')

        assert _as_tuples(messages) == [("a", 1)]
        assert buffer.frames_dropped == 0

    def test_delimiter_arriving_alone(self):
        """A chunk boundary right before the delimiter still completes the frame."""
        buffer = FrameBuffer()

        assert buffer.feed(b'{"op":"a","data":1}') == []
        messages = buffer.feed(b'#{"op":"b","data":2}#')

        assert _as_tuples(messages) == [("a", 1), ("b", 2)]

    def test_multibyte_character_split_across_chunks(self):
        """UTF-8 sequences cut in half by the transport decode correctly."""
        frame = encode_frame("note", "漢字")
        cut = frame.index("漢".encode("utf-8")) + 1
        buffer = FrameBuffer()

        assert buffer.feed(frame[:cut]) == []
        messages = buffer.feed(frame[cut:])

        assert _as_tuples(messages) == [("note", "漢字")]

    def test_round_trip(self):
        """Encoding then decoding returns the same op and equal data."""
        data = {"markets": ["BINANCE:btcusdt"], "nested": {"x": [1, 2.5, None, True]}}
        buffer = FrameBuffer()

        messages = buffer.feed(Message(op="welcome", data=data).encode())

        assert len(messages) == 1
        assert messages[0].op == "welcome"
        assert messages[0].data == data


class TestChunkInvariance:
    """Any partition of the stream yields the same message sequence."""

    def _decode_in_chunks(self, chunks: list[bytes]) -> list[tuple]:
        buffer = FrameBuffer()
        out = []
        for chunk in chunks:
            out.extend(buffer.feed(chunk))
        assert buffer.pending == ""
        return _as_tuples(out)

    def test_every_two_way_split(self):
        """Splitting at any single byte offset gives the same result."""
        expected = self._decode_in_chunks([STREAM])
        assert len(expected) == 4

        for cut in range(1, len(STREAM)):
            assert self._decode_in_chunks([STREAM[:cut], STREAM[cut:]]) == expected, cut

    def test_byte_by_byte(self):
        """Feeding one byte at a time gives the same result."""
        expected = self._decode_in_chunks([STREAM])

        chunks = [STREAM[i:i + 1] for i in range(len(STREAM))]

        assert self._decode_in_chunks(chunks) == expected

    @pytest.mark.parametrize("size", [2, 3, 7, 16, 64])
    def test_fixed_size_chunks(self, size):
        """Fixed-size chunking gives the same result."""
        expected = self._decode_in_chunks([STREAM])

        chunks = [STREAM[i:i + size] for i in range(0, len(STREAM), size)]

        assert self._decode_in_chunks(chunks) == expected


class TestFrameOverflow:
    """Bounded reassembly buffer."""

    def test_unbounded_by_default(self):
        """Without a bound a long partial frame just accumulates."""
        buffer = FrameBuffer()

        buffer.feed(b"x" * 100_000)

        assert len(buffer) == 100_000

    def test_overflow_raises_and_clears(self):
        """A partial frame past the bound raises and empties the buffer."""
        buffer = FrameBuffer(max_pending=16)

        with pytest.raises(FrameOverflowError) as exc_info:
            buffer.feed(b"y" * 17)

        assert exc_info.value.size == 17
        assert exc_info.value.limit == 16
        assert buffer.pending == ""

    def test_bound_counts_encoded_bytes(self):
        """Six two-byte characters are twelve bytes, over a ten byte bound."""
        buffer = FrameBuffer(max_pending=10)

        with pytest.raises(FrameOverflowError) as exc_info:
            buffer.feed("é".encode("utf-8") * 6)

        assert exc_info.value.size == 12
        assert buffer.pending == ""

    def test_multibyte_text_under_bound_is_kept(self):
        buffer = FrameBuffer(max_pending=12)

        buffer.feed("é".encode("utf-8") * 6)

        assert buffer.pending == "é" * 6

    def test_overflow_keeps_completed_messages(self):
        """Frames completed before the overflow are carried on the error."""
        buffer = FrameBuffer(max_pending=16)

        with pytest.raises(FrameOverflowError) as exc_info:
            buffer.feed(b'{"op":"a","data":1}#' + b"z" * 32)

        assert _as_tuples(exc_info.value.messages) == [("a", 1)]

    def test_complete_frame_larger_than_bound_is_fine(self):
        """The bound applies to pending text, not to terminated frames."""
        buffer = FrameBuffer(max_pending=8)

        messages = buffer.feed(encode_frame("big", "x" * 64))

        assert _as_tuples(messages) == [("big", "x" * 64)]


class TestFeedAndDeliver:
    """Delivery of decoded messages to a consumer."""

    def test_consumer_error_is_isolated(self):
        """A failing consumer is logged; later messages are still delivered."""
        seen = []

        def consumer(message: Message) -> None:
            if message.op == "boom":
                raise RuntimeError("handler failed")
            seen.append(message.op)

        buffer = FrameBuffer()
        chunk = b'{"op":"a","data":1}#{"op":"boom","data":0}#{"op":"b","data":2}#'

        delivered = asyncio.run(feed_and_deliver(buffer, chunk, consumer))

        assert delivered == 3
        assert seen == ["a", "b"]
        assert buffer.pending == ""

    def test_async_consumer_is_awaited(self):
        """Coroutine consumers are awaited in order."""
        seen = []

        async def consumer(message: Message) -> None:
            await asyncio.sleep(0)
            seen.append(message.data)

        buffer = FrameBuffer()

        asyncio.run(feed_and_deliver(buffer, b'{"op":"n","data":1}#{"op":"n","data":2}#', consumer))

        assert seen == [1, 2]

    def test_overflow_delivers_then_raises(self):
        """Messages before an overflow reach the consumer before the error."""
        seen = []
        buffer = FrameBuffer(max_pending=4)

        with pytest.raises(FrameOverflowError):
            asyncio.run(
                feed_and_deliver(buffer, b'{"op":"a","data":1}#toolong', lambda m: seen.append(m.op))
            )

        assert seen == ["a"]
