"""Error types raised by the hub.

Per-backend failures during discovery are logged and reduced to an empty
contribution; everything raised here reaches the caller of a single call.
"""


class HubError(Exception):
    """Base class for all hub errors."""

    kind = "hub_error"

    def __init__(self, message: str, address: str | None = None):
        super().__init__(message)
        self.message = message
        self.address = address


class InvalidAddress(HubError):
    """Raised when a backend address is not an http(s) URL."""

    kind = "invalid_address"


class BackendNotFound(HubError):
    """Raised when an address names no registered backend."""

    kind = "backend_not_found"

    def __init__(self, address: str):
        super().__init__(f"Unknown backend: {address}", address)


class ModelNotFound(HubError):
    """Raised when the requested model is absent from the current catalog."""

    kind = "model_not_found"

    def __init__(self, model: str):
        super().__init__(f"Model '{model}' not found in available models")
        self.model = model


class QuotaExceeded(HubError):
    """Raised on HTTP 429. Never retried."""

    kind = "quota_exceeded"


class Unauthorized(HubError):
    """Raised on HTTP 401 so the caller can force re-authentication."""

    kind = "unauthorized"


SessionExpired = Unauthorized


class BackendUnreachable(HubError):
    """Raised on transport-level failure (timeout, DNS, refusal)."""

    kind = "backend_unreachable"


class MalformedResponse(HubError):
    """Raised when a response does not have the expected shape."""

    kind = "malformed_response"


class BackendError(HubError):
    """Raised on any other non-2xx response.

    Attributes:
        status_code: HTTP status returned by the backend
        detail: Short diagnostic extracted from the body, may be empty
    """

    kind = "backend_error"

    def __init__(self, status_code: int, detail: str = "", address: str | None = None):
        message = f"API error: {status_code}"
        if detail:
            message += f" - {detail}"
        super().__init__(message, address)
        self.status_code = status_code
        self.detail = detail
