"""Exception types shared by the relay core.

Each error carries an HTTP-equivalent status code so the REST layer can map
it directly; the WebSocket layer decides per type whether the sender hears
about it at all.
"""


class RelayError(Exception):
    """Base exception for chat relay errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(RelayError):
    """Raised when an incoming message is blank after normalization."""
    def __init__(self, message: str = "Text required"):
        super().__init__(message, status_code=400)


class StoreError(RelayError):
    """Raised when the persistence backend fails or times out."""
    def __init__(self, message: str = "Message store unavailable"):
        super().__init__(message, status_code=500)


class DeliveryError(RelayError):
    """Raised when a single connection cannot be reached during fanout.

    Never propagated past the broadcaster.
    """
    def __init__(self, connection_id: str, reason: str):
        self.connection_id = connection_id
        super().__init__(
            f"Delivery to connection {connection_id} failed: {reason}",
            status_code=500,
        )


class ConfigError(RelayError):
    """Raised at startup when required configuration is missing."""
    def __init__(self, message: str):
        super().__init__(message, status_code=500)
