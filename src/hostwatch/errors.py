"""Exceptions raised by hostwatch."""


class HostwatchError(Exception):
    """Base class for hostwatch errors."""


class SourceUnavailable(HostwatchError):
    """A mandatory metric source (cpu, memory) could not be read."""

    def __init__(self, source: str, reason: str | None = None) -> None:
        self.source = source
        self.reason = reason
        message = f"{source} source unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConfigError(HostwatchError):
    """Invalid configuration value."""
