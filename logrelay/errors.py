"""Exception hierarchy for the relay."""


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError):
    """Invalid or missing configuration. Fatal at startup."""


class MappingError(ConfigError):
    """The user mapping table could not be parsed."""


class DeliveryError(RelayError):
    """A sink failed to accept an event."""


class TransientDeliveryError(DeliveryError):
    """The sink is temporarily unavailable; the event should be retried."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """The sink rejected the event; retrying will not help."""
