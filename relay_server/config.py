"""
Server configuration.

Defaults live in the dataclass; the environment overrides them:

    RELAY_HOST        interface to bind (default: 0.0.0.0)
    RELAY_PORT        listen port (default: 8080)
    RELAY_BACKLOG     listen() queue length (default: 64)
    RELAY_CHUNK_SIZE  bytes per read while relaying a file (default: 4096)
    RELAY_LOG_LEVEL   DEBUG, INFO, WARNING, ERROR (default: INFO)

Example:
    RELAY_PORT=9000 RELAY_LOG_LEVEL=DEBUG python -m relay_server.main
"""

import os
from dataclasses import dataclass

from relay_common.protocol import CHUNK_SIZE

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw!r}. Must be an integer.") from None


@dataclass
class ServerConfig:
    """Configuration for the relay server."""

    host: str = "0.0.0.0"
    port: int = 8080
    """Port 0 lets the OS pick a free port (used by the tests)."""

    backlog: int = 64
    chunk_size: int = CHUNK_SIZE
    """Upper bound of one raw read while streaming a file to a user."""

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create configuration from RELAY_* environment variables."""
        return cls(
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=_env_int("RELAY_PORT", 8080),
            backlog=_env_int("RELAY_BACKLOG", 64),
            chunk_size=_env_int("RELAY_CHUNK_SIZE", CHUNK_SIZE),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        """Fail fast on values the server cannot run with."""
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")
        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level}. Must be one of {', '.join(LOG_LEVELS)}.")
