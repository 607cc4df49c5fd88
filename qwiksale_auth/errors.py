class OtpError(Exception):
    """Base class for OTP issuance and verification failures."""


class InvalidIdentifierError(OtpError, ValueError):
    pass


class InvalidCodeError(OtpError, ValueError):
    pass


class RateLimitedError(OtpError):
    """A throttle scope refused the request."""

    def __init__(self, scope: str, retry_after_seconds: int, limit: int) -> None:
        super().__init__(f"Too many requests ({scope}); retry in {retry_after_seconds}s")
        self.scope = scope
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit


class OtpBackendError(OtpError):
    """The code store could not be reached or refused the operation."""
