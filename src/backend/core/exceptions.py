"""
Exception hierarchy for the screening core.

Only ConfigurationError is allowed to escape to the process boundary. The
other errors are raised inside lookups and parsers and recovered where the
screening pipeline calls them.
"""


class ScreeningError(Exception):
    """Base class for screening errors."""


class ProviderUnavailableError(ScreeningError):
    """An external lookup failed, returned garbage, or timed out."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(f"{provider}: {message}" if message else provider)


class MalformedInputError(ScreeningError):
    """Policy or metadata could not be parsed."""


class ConfigurationError(ScreeningError):
    """A required secret or setting is missing."""
