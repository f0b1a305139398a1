from typing import Any, Dict, Optional


class BusWhereError(Exception):
    """Base error carrying the HTTP status it maps to at the API boundary."""
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class InvalidInput(BusWhereError):
    status_code = 400


class Unauthorized(BusWhereError):
    status_code = 401


class Forbidden(BusWhereError):
    status_code = 403


class NotFound(BusWhereError):
    status_code = 404


class Conflict(BusWhereError):
    status_code = 409


class UpstreamFailure(BusWhereError):
    """The datastore or auth provider call failed. Never retried."""
    status_code = 500
