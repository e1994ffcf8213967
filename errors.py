"""
Error taxonomy shared by the stores, the session registry and the coordinator.

Every error carries the HTTP status it maps to; main.py renders them as
{"detail": message} the same way HTTPException does.
"""

from typing import Dict, List, Optional


class PortalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict:
        return {"detail": self.message}


class ValidationError(PortalError):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, [{"field": field, "message": message}])

    def to_dict(self) -> Dict:
        return {"detail": self.message, "errors": self.errors}


class AuthenticationFailure(PortalError):
    status_code = 401


class Forbidden(PortalError):
    status_code = 403


class NotFound(PortalError):
    status_code = 404


class DuplicateAttempt(PortalError):
    """The (student, test, attempt number) triple is already recorded."""

    status_code = 409

    def __init__(self, message: str = "You have already submitted this test attempt. Please refresh and try again."):
        super().__init__(message)


class SessionConflict(PortalError):
    status_code = 409
