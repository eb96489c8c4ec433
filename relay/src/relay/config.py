from __future__ import annotations

import os
from dataclasses import dataclass

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class RelayConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    db_path: str | None = "chat.db"
    max_body_bytes: int = 50 * 1024 * 1024
    ws_heartbeat_s: int = 30
    log_level: str = "INFO"

    @property
    def ws_heartbeat(self) -> float | None:
        return float(self.ws_heartbeat_s) if self.ws_heartbeat_s > 0 else None


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_port() -> int:
    if os.environ.get("RELAY_PORT"):
        port = _parse_non_negative_int("RELAY_PORT", 3000)
        name = "RELAY_PORT"
    else:
        port = _parse_non_negative_int("PORT", 3000)
        name = "PORT"
    if port > 65535:
        raise ValueError(f"{name} must be at most 65535")
    return port


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env() -> RelayConfig:
    """Build a ``RelayConfig`` from ``RELAY_*`` environment variables.

    An empty ``RELAY_DB_PATH`` selects the in-memory stores.
    """

    db_path: str | None = os.environ.get("RELAY_DB_PATH", "chat.db")
    if db_path == "":
        db_path = None
    return RelayConfig(
        host=os.environ.get("RELAY_HOST") or "127.0.0.1",
        port=_parse_port(),
        db_path=db_path,
        max_body_bytes=max(1, _parse_non_negative_int("RELAY_MAX_BODY_BYTES", 50 * 1024 * 1024)),
        ws_heartbeat_s=_parse_non_negative_int("RELAY_WS_HEARTBEAT_S", 30),
        log_level=_parse_log_level("RELAY_LOG_LEVEL", "INFO"),
    )
