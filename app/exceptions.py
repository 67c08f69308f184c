"""
ERROR TAXONOMY
==============

Every failure a chat turn can hit is one of the classes below. The API layer
(app.main) turns a ChatError into `{"success": false, "error": message}` with
the class's HTTP status; the relay turns it into one terminal stream event.

  ValidationError        - empty or oversized message; rejected before any state change.
  UpstreamUnavailable    - model server unreachable (connection refused, DNS, ...).
  UpstreamTimeout        - model server did not finish within the timeout.
  UpstreamProtocolError  - model server answered with an error or an unusable response.
  NotFound               - unknown conversation id on lookup.
  ClientAbort            - the caller went away or cancelled (client side: user cancel / timeout).
"""

from typing import Optional


class ChatError(Exception):
    """
    Base class for chat failures.

    Attributes:
        code: Machine-readable code (e.g. "UPSTREAM_TIMEOUT").
        message: Human-readable text shown to the user.
        http_status: Status code used when the error ends an HTTP request.
    """

    code = "CHAT_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


class ValidationError(ChatError):
    code = "VALIDATION_ERROR"
    http_status = 400


class UpstreamUnavailable(ChatError):
    code = "UPSTREAM_UNAVAILABLE"
    http_status = 502


class UpstreamTimeout(ChatError):
    code = "UPSTREAM_TIMEOUT"
    http_status = 504


class UpstreamProtocolError(ChatError):
    code = "UPSTREAM_PROTOCOL_ERROR"
    http_status = 502


class NotFound(ChatError):
    code = "NOT_FOUND"
    http_status = 404


class ClientAbort(ChatError):
    # 499: nginx's "client closed request"; never actually sent to a live client.
    code = "CLIENT_ABORT"
    http_status = 499
