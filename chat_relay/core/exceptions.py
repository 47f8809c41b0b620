"""
Errors produced locally by the relay.

Each one is rendered by the exception handler in `chat_relay.main` before any
upstream byte reaches the client. Upstream HTTP errors are not represented
here: they are passed through verbatim.
"""

from fastapi import status


class RelayError(Exception):
    """Base class for errors the relay answers itself"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "relay_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidRequest(RelayError):
    """Malformed JSON, schema mismatch or unsupported model alias"""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class Unauthorized(RelayError):
    """Missing or incorrect inbound credential"""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"


class UpstreamUnreachable(RelayError):
    """Transport-level failure reaching the upstream (refused, DNS, timeout)"""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_unreachable"


class UpstreamResponseMalformed(RelayError):
    """The upstream answered 2xx with a body that does not match its contract"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "upstream_response_malformed"
