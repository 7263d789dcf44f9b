from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_EXIFTOOL = "exiftool"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_READ_SIZE = 64 * 1024


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    exiftool: str
    log_level: str
    read_size: int

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "exiftool": self.exiftool,
            "log_level": self.log_level,
            "read_size": self.read_size,
        }


def _read_int(name: str, default: int, *, minimum: int, maximum: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'.") from exc
    if value < minimum or (maximum is not None and value > maximum):
        upper = f" and {maximum}" if maximum is not None else ""
        raise ValueError(f"{name} must be between {minimum}{upper}, got {value}.")
    return value


def load_settings() -> Settings:
    return Settings(
        host=(os.getenv("TAGSTREAM_HOST") or DEFAULT_HOST).strip(),
        port=_read_int("TAGSTREAM_PORT", DEFAULT_PORT, minimum=1, maximum=65535),
        exiftool=(os.getenv("TAGSTREAM_EXIFTOOL") or DEFAULT_EXIFTOOL).strip(),
        log_level=(os.getenv("TAGSTREAM_LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper(),
        read_size=_read_int("TAGSTREAM_READ_SIZE", DEFAULT_READ_SIZE, minimum=1),
    )
