"""Runtime configuration and logging setup for hostwatch."""

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass

from hostwatch.errors import ConfigError

MIN_POLL_INTERVAL = 0.1
DEFAULT_SERVER_ID = "local"


@dataclass(slots=True, frozen=True)
class Settings:
    """Server settings, usually read from the environment."""

    host: str = "127.0.0.1"
    port: int = 4000
    poll_interval: float = 2.0
    process_limit: int = 50
    optional_timeout: float = 5.0
    history_db: str | None = None
    debug_gpu: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # Minimum 0.1 seconds, same clamp for every caller
        if self.poll_interval < MIN_POLL_INTERVAL:
            object.__setattr__(self, "poll_interval", MIN_POLL_INTERVAL)
        if self.process_limit < 1:
            raise ConfigError(f"process_limit must be positive, got {self.process_limit}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Raises:
            ConfigError: If a numeric variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        port = env.get("HOSTWATCH_PORT") or env.get("PORT") or "4000"
        return cls(
            host=env.get("HOSTWATCH_HOST", "127.0.0.1"),
            port=_parse(int, "port", port),
            poll_interval=_parse(float, "HOSTWATCH_INTERVAL", env.get("HOSTWATCH_INTERVAL", "2.0")),
            process_limit=_parse(int, "HOSTWATCH_PROCESS_LIMIT", env.get("HOSTWATCH_PROCESS_LIMIT", "50")),
            optional_timeout=_parse(
                float, "HOSTWATCH_OPTIONAL_TIMEOUT", env.get("HOSTWATCH_OPTIONAL_TIMEOUT", "5.0")
            ),
            history_db=env.get("HOSTWATCH_HISTORY_DB") or None,
            debug_gpu=env.get("DEBUG_GPU", "false").lower() in ("1", "true", "yes", "on"),
            log_level=env.get("HOSTWATCH_LOG_LEVEL", "INFO").upper(),
        )


def _parse(kind, name: str, raw: str):
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid value for {name}: {raw!r}") from exc


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """
    Install a single stdout handler on the ``hostwatch`` logger.

    Safe to call more than once; existing handlers are replaced.
    """
    logger = logging.getLogger("hostwatch")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt="[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
    return logger
