"""Exception hierarchy for the CORS relay."""


class RelayError(Exception):
    """Base exception for errors answered with a fixed client response.

    Attributes:
        status_code: HTTP status returned to the caller
        error_code: Stable machine-readable code returned to the caller
    """

    status_code = 500
    error_code = "internal_error"


class ConfigurationMissing(RelayError):
    """Raised when neither the query string nor the referer carries a policy."""

    status_code = 403
    error_code = "cors_configuration_missing"

    def __init__(self, message: str = "No CORS configuration found") -> None:
        super().__init__(message)


class ConfigurationMalformed(RelayError):
    """Raised when a policy source is present but cannot be parsed or validated.

    Attributes:
        source: Where the policy came from ('query' or 'referer')
        reason: Internal parser or validator message, for logs only
    """

    status_code = 400
    error_code = "cors_configuration_malformed"

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"CORS configuration from {source} is not a valid policy document")
        self.source = source
        self.reason = reason


class RequestBodyTooLarge(RelayError):
    """Inbound body exceeds the configured size limit."""

    status_code = 413
    error_code = "request_body_too_large"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Request body exceeds {limit} bytes")
        self.limit = limit


class UpstreamError(RelayError):
    """Raised when the transport to the upstream target fails.

    Attributes:
        target: Upstream URL the relay was talking to
    """

    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str, target: str, timeout: bool = False) -> None:
        super().__init__(message)
        self.target = target
        self.timeout = timeout
        if timeout:
            self.status_code = 504
