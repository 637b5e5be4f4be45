"""
Centralized configuration for hubspoke.
Loads from environment variables with sensible defaults.

A process is exactly one role: it either binds the hub socket or connects
to it as a spoke. The role is picked once, here, and never mixed.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from hubspoke.spine.schemas import DELIMITER

DEFAULT_SOCKET_PATH = "/tmp/hubspoke.sock"
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_MAX_FRAME_BYTES = 8 * 1024 * 1024

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when the environment describes an invalid role configuration."""


@dataclass(frozen=True)
class HubConfig:
    """Hub role: bind the socket and serve registered spokes."""
    socket_path: str = DEFAULT_SOCKET_PATH
    max_frame_bytes: Optional[int] = DEFAULT_MAX_FRAME_BYTES

    @property
    def role(self) -> str:
        return "hub"


@dataclass(frozen=True)
class SpokeConfig:
    """Spoke role: connect to the hub and announce owned markets/indexes."""
    socket_path: str = DEFAULT_SOCKET_PATH
    markets: tuple[str, ...] = ()
    indexes: tuple[str, ...] = ()
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    max_frame_bytes: Optional[int] = DEFAULT_MAX_FRAME_BYTES

    def __post_init__(self) -> None:
        if self.reconnect_delay < 0:
            raise ConfigError(f"reconnect_delay must be >= 0, got {self.reconnect_delay}")
        for identifier in (*self.markets, *self.indexes):
            if DELIMITER in identifier:
                raise ConfigError(
                    f"identifier {identifier!r} contains the frame delimiter {DELIMITER!r}"
                )

    @property
    def role(self) -> str:
        return "spoke"


RoleConfig = Union[HubConfig, SpokeConfig]


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-level settings that do not depend on the role."""
    status_interval_sec: float = 60.0


def derive_index_ids(markets: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """
    Build index identifiers from a market list.

    "BINANCE:btcusdt" and "COINBASE:BTC-USDT" both become "BTCUSDT".
    Order of first appearance is kept, duplicates are dropped.
    """
    seen: dict[str, None] = {}
    for market in markets:
        pair = market.split(":", 1)[-1]
        index_id = re.sub(r"[^A-Za-z0-9]", "", pair).upper()
        if index_id:
            seen.setdefault(index_id, None)
    return tuple(seen)


def _get_bool(env: Mapping[str, str], key: str) -> Optional[bool]:
    raw = env.get(key)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _get_list(env: Mapping[str, str], key: str) -> tuple[str, ...]:
    raw = env.get(key, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _get_max_frame_bytes(env: Mapping[str, str]) -> Optional[int]:
    raw = env.get("HUBSPOKE_MAX_FRAME_BYTES")
    if raw is None or raw.strip() == "":
        return DEFAULT_MAX_FRAME_BYTES
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"HUBSPOKE_MAX_FRAME_BYTES must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError("HUBSPOKE_MAX_FRAME_BYTES must be >= 0")
    # 0 disables the bound
    return value or None


def _resolve_role(env: Mapping[str, str]) -> str:
    role = env.get("HUBSPOKE_ROLE", "").strip().lower()
    if role:
        if role not in ("hub", "spoke"):
            raise ConfigError(f"HUBSPOKE_ROLE must be 'hub' or 'spoke', got {role!r}")
        return role

    # api-only nodes serve data (hub), collect-only nodes collect it (spoke)
    api = _get_bool(env, "HUBSPOKE_API")
    collect = _get_bool(env, "HUBSPOKE_COLLECT")
    if api and not collect:
        return "hub"
    if collect and not api:
        return "spoke"
    raise ConfigError(
        "cannot select a role: set HUBSPOKE_ROLE, or exactly one of "
        "HUBSPOKE_API / HUBSPOKE_COLLECT"
    )


def load_role_config(env: Mapping[str, str] | None = None) -> RoleConfig:
    """Load the role configuration from environment variables."""
    env = os.environ if env is None else env

    role = _resolve_role(env)
    socket_path = env.get("HUBSPOKE_SOCKET_PATH", "").strip() or DEFAULT_SOCKET_PATH
    max_frame_bytes = _get_max_frame_bytes(env)

    if role == "hub":
        return HubConfig(socket_path=socket_path, max_frame_bytes=max_frame_bytes)

    markets = _get_list(env, "HUBSPOKE_MARKETS")
    indexes = _get_list(env, "HUBSPOKE_INDEXES") or derive_index_ids(markets)

    return SpokeConfig(
        socket_path=socket_path,
        markets=markets,
        indexes=indexes,
        reconnect_delay=_get_float(env, "HUBSPOKE_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY),
        max_frame_bytes=max_frame_bytes,
    )


def load_runtime_config(env: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Load process-level settings from environment variables."""
    env = os.environ if env is None else env
    return RuntimeConfig(
        status_interval_sec=_get_float(env, "HUBSPOKE_STATUS_INTERVAL", 60.0),
    )

