"""Exception types raised by webmon."""


class WebmonError(Exception):
    """Base class of all webmon errors."""


class ConfigError(WebmonError):
    """Raised when a configuration value is missing, unknown or out of range."""


class ServiceStateError(WebmonError):
    """Raised on an illegal background service lifecycle transition, e.g. a second start()."""
