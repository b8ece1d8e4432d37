"""Error taxonomy shared by the backends, the streaming engine and the web layer.

Every error carries the HTTP status it maps to and a message that is safe to
show to API callers. Diagnostic detail for operators goes in ``details``.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.details = details

    def to_dict(self):
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(GatewayError):
    status_code = 400
    message = "Invalid request"


class InvalidSource(InvalidRequest):
    message = "Source is neither a magnet URI nor a valid .torrent file"


class PathViolation(GatewayError):
    status_code = 400
    message = "Invalid file path"


class NotFound(GatewayError):
    status_code = 404
    message = "Torrent not found"


class NotReady(GatewayError):
    status_code = 409
    message = "Torrent has not finished downloading"


class RangeNotSatisfiable(GatewayError):
    status_code = 416
    message = "Requested range not satisfiable"

    def __init__(self, size: int, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.size = size


class BackendError(GatewayError):
    status_code = 500
    message = "Torrent backend error"


class BackendUnavailable(BackendError):
    message = "Torrent backend unavailable"
