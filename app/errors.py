class ArkaiError(Exception):
    """Base class for errors raised by the Arkai service layer."""


class AuthenticationFailure(ArkaiError):
    """Inbound request signature is missing or does not match."""


class ConfigurationError(ArkaiError):
    """A required secret or setting is not configured."""


class PersistenceError(ArkaiError):
    """Database operation failed where the failure must not be swallowed."""


class DownstreamCallFailure(ArkaiError):
    """Call to the chat platform or a payment provider failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")
