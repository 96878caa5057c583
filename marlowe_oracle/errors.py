"""Exception hierarchy for the Marlowe Oracle Service.

Every per-item failure (one header, one choice, one datum, one request) is
raised as one of these and caught at the smallest enclosing boundary. Only
``ConfigurationError`` and fatal ``ScanError`` stop the service.
"""


class MOSError(Exception):
    """Base class for all service errors. ``name`` is a short machine-readable kind."""

    def __init__(self, name: str, message: str = ""):
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class ConfigurationError(MOSError):
    """Invalid or missing configuration. Raised before the loop starts."""


class ScanError(MOSError):
    """Failure while enumerating contracts or their next applicable actions."""

    def __init__(self, name: str, message: str = "", fatal: bool = False):
        super().__init__(name, message)
        self.fatal = fatal


class RequestError(MOSError):
    """Wrapped HTTP failure, carrying status and body for diagnostics."""

    def __init__(self, name: str, message: str = "", status: int | None = None, body: str | None = None):
        super().__init__(name, message)
        self.status = status
        self.body = body

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class FeedError(MOSError):
    """Price resolution failure for a single choice or request."""


class DecodeError(MOSError):
    """A datum did not match the expected shape."""

    def __init__(self, shape: str, reason: str):
        super().__init__("DecodeError", f"{shape}: {reason}")
        self.shape = shape
        self.reason = reason


class ExpiredPriceError(DecodeError):
    """A well-formed price record whose validity has already ended."""

    def __init__(self, shape: str, valid_through: int, now: int):
        super().__init__(shape, f"price expired at {valid_through} (now {now})")
        self.name = "ExpiredPrice"
        self.valid_through = valid_through
        self.now = now


class BuildTransactionError(MOSError):
    """Failure building, balancing, signing or submitting one transaction."""
