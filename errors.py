"""
Error taxonomy

Every failure raised by the services maps to one HTTP status. The API layer
renders them as {"message": ..., "error": ...}.
"""
from typing import Optional


class BookstoreError(Exception):
    status_code = 500

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error = error

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.error:
            body["error"] = self.error
        return body


class ValidationError(BookstoreError):
    status_code = 400


class Unauthenticated(BookstoreError):
    status_code = 401


class Forbidden(BookstoreError):
    status_code = 403


class NotFound(BookstoreError):
    status_code = 404


class Conflict(BookstoreError):
    status_code = 409


class InsufficientStock(BookstoreError):
    status_code = 400


class OutOfStock(InsufficientStock):
    pass


class TerminalState(BookstoreError):
    status_code = 400


class AlreadyProcessed(TerminalState):
    pass


class Unexpected(BookstoreError):
    status_code = 500
