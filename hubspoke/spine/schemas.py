"""
Message Schemas for the hub/spoke spine.

Every frame on the wire is the compact JSON encoding of a Message followed
by a single '#' delimiter, UTF-8 encoded:

  {"op":"welcome","data":{"markets":[...],"indexes":[...]}}#
  {"op":"trades","data":[...]}#

There is no escaping. A payload whose JSON contains '#' would split into
two broken frames on the receiving side, so encode_frame refuses it.

Operation names:
  welcome   - handshake sent once by a spoke right after connecting
  (others)  - opaque operational ops, routed by the EventDispatcher
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

DELIMITER = "#"
ENCODING = "utf-8"


class FrameDecodeError(ValueError):
    """Raised when a complete frame is not a valid Message."""


# ---------------------------------------------------------------------------
# Op helpers
# ---------------------------------------------------------------------------

class Ops:
    """Operation name constants."""

    WELCOME = "welcome"


# ---------------------------------------------------------------------------
# Message models
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """One decoded frame: an op key and its opaque payload."""

    op: str = Field(min_length=1)
    data: Any = None

    model_config = {"frozen": True}

    def encode(self) -> bytes:
        return encode_frame(self.op, self.data)


class WelcomeData(BaseModel):
    """Handshake payload: what the connecting spoke owns."""

    markets: list[str] = Field(default_factory=list)
    indexes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------

def encode_frame(op: str, data: Any = None) -> bytes:
    """Serialize one message into a delimited wire frame."""
    if not op:
        raise ValueError("op must be a non-empty string")

    text = json.dumps({"op": op, "data": data}, separators=(",", ":"), ensure_ascii=False)
    if DELIMITER in text:
        raise ValueError(
            f"payload for op {op!r} contains the frame delimiter {DELIMITER!r}"
        )
    return (text + DELIMITER).encode(ENCODING)


def welcome_frame(markets: list[str] | tuple[str, ...], indexes: list[str] | tuple[str, ...]) -> bytes:
    """Build the handshake frame a spoke sends after connecting."""
    payload = WelcomeData(markets=list(markets), indexes=list(indexes))
    return encode_frame(Ops.WELCOME, payload.model_dump())


def decode_message(text: str) -> Message:
    """
    Parse one complete frame body (without delimiter) into a Message.

    Raises FrameDecodeError on invalid JSON or on a JSON value that is not
    a {"op": ..., "data": ...} object with a non-empty op.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"invalid JSON: {e.msg}") from e
    except (ValueError, RecursionError) as e:
        # oversized integer literals, pathologically deep nesting
        raise FrameDecodeError(f"undecodable JSON: {e}") from e

    if not isinstance(raw, dict):
        raise FrameDecodeError(f"frame is a {type(raw).__name__}, expected an object")

    try:
        return Message.model_validate(raw)
    except ValidationError as e:
        raise FrameDecodeError(f"invalid message: {e.errors()[0]['msg']}") from e


def parse_welcome(data: Any) -> WelcomeData:
    """Validate a welcome payload. Raises FrameDecodeError when malformed."""
    try:
        return WelcomeData.model_validate(data if data is not None else {})
    except ValidationError as e:
        raise FrameDecodeError(f"invalid welcome payload: {e.errors()[0]['msg']}") from e
