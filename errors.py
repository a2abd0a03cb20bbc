"""Domain errors raised by match lifecycle operations."""


class MatchdayError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MatchdayError):
    status_code = 400


class AuthorizationError(MatchdayError):
    status_code = 403


class NotFoundError(MatchdayError):
    status_code = 404


class ConflictError(MatchdayError):
    """The record changed underneath us; re-fetch before retrying."""

    status_code = 409


class DispatchError(MatchdayError):
    """A single notification could not be delivered."""

    status_code = 502
