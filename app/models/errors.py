"""Proxy pipeline error hierarchy.

Every stage of the pipeline (validation, SSRF guard, fetch, rewrite) fails by
raising one of these. Each carries everything needed to build the outbound
error response, so nothing downstream has to re-derive a status code:

  ValidationError         400  empty/malformed input or URL
  ForbiddenError          403  SSRF guard rejection
  UnsupportedContentType  415  probe mode refused a non-HTML payload
  UpstreamHttpError       <upstream status>  non-2xx from the target
  NetworkError            502  DNS / TLS / connect / timeout / redirect loop
  ResponseTooLargeError   502  upstream body exceeded the buffer cap
  InternalError           500  anything unexpected

``details`` carries the underlying cause for diagnostics. It is included in
probe (JSON) error bodies only; passthrough bodies carry ``message`` alone.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    FORBIDDEN = "ForbiddenError"
    UPSTREAM_HTTP = "UpstreamHttpError"
    NETWORK = "NetworkError"
    RESPONSE_TOO_LARGE = "ResponseTooLargeError"
    UNSUPPORTED_CONTENT_TYPE = "UnsupportedContentType"
    INTERNAL = "InternalError"


class ProxyError(Exception):
    """Base class for all pipeline failures.

    Subclasses fix ``kind`` and the default ``status``; ``UpstreamHttpError``
    takes its status from the upstream response.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_status: int = 500
    default_message: str = "Proxy error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        self.status = status if status is not None else self.default_status
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """JSON error envelope: ``{message, details?, status}``."""
        payload: dict = {"message": self.message, "status": self.status}
        if self.details:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"details={self.details!r}, status={self.status})"
        )


class ValidationError(ProxyError):
    kind = ErrorKind.VALIDATION
    default_status = 400
    default_message = "Invalid URL"


class ForbiddenError(ProxyError):
    kind = ErrorKind.FORBIDDEN
    default_status = 403
    default_message = "Access denied"


class UnsupportedContentType(ProxyError):
    kind = ErrorKind.UNSUPPORTED_CONTENT_TYPE
    default_status = 415
    default_message = "Unsupported content type"


class UpstreamHttpError(ProxyError):
    kind = ErrorKind.UPSTREAM_HTTP
    default_status = 502

    def __init__(self, status: int, details: Optional[str] = None) -> None:
        super().__init__(
            message=f"Failed to fetch website ({status})",
            details=details,
            status=status,
        )


class NetworkError(ProxyError):
    kind = ErrorKind.NETWORK
    default_status = 502
    default_message = "Failed to fetch website"


class ResponseTooLargeError(ProxyError):
    kind = ErrorKind.RESPONSE_TOO_LARGE
    default_status = 502
    default_message = "Upstream response too large"


class InternalError(ProxyError):
    kind = ErrorKind.INTERNAL
    default_status = 500
    default_message = "Failed to fetch website"
