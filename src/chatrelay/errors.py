class ChatRelayError(Exception):
    """Base class for failures that end an exchange with an error response."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.error_type


class NoActiveConnection(ChatRelayError):
    """Raised when a session id has no live connection record."""

    status_code = 404
    error_type = "no_active_connection"


class UnsupportedAction(ChatRelayError):
    """Raised when the requested action is neither ``cancel`` nor a routable model."""

    status_code = 400
    error_type = "unsupported_action"


class InvalidRequest(ChatRelayError):
    status_code = 400
    error_type = "invalid_request"


class ProviderUnavailable(ChatRelayError):
    """Raised when the upstream provider cannot be reached or rejects the call."""

    status_code = 500
    error_type = "provider_unavailable"


class UnknownModel(ChatRelayError):
    """Raised when a model has no entry in the price table."""

    status_code = 500
    error_type = "unknown_model"


class ConnectionGone(ChatRelayError):
    status_code = 410
    error_type = "connection_gone"
