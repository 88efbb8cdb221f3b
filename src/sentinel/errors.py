"""Exception types for sentinel."""


class SentinelError(Exception):
    """Base class for all sentinel errors."""


class ConfigError(SentinelError):
    """Raised when the monitor configuration is invalid. Fatal at startup."""


class SourceUnavailable(SentinelError):
    """A source family could not produce data this cycle."""


class SourceTimeout(SourceUnavailable):
    """A collector call exceeded its timeout."""


class MalformedThermalPayload(SourceUnavailable):
    """The thermal feed answered but its payload could not be parsed."""


class ShutdownExecutionError(SentinelError):
    """The OS-level shutdown command could not be invoked."""
