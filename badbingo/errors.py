# badbingo/errors.py
"""
Engine error taxonomy.

Operations raise these; the HTTP layer maps them to JSON responses via
``code`` and ``status_code``. Sweeps treat StaleState and
InvalidStateTransition as "already handled elsewhere".
"""
from typing import Optional


class EngineError(Exception):
    code = "engine_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self):
        out = {"error": self.code, "detail": self.message}
        if self.retryable:
            out["retry"] = True
        out.update(self.context)
        return out


class InsufficientFunds(EngineError):
    code = "insufficient_funds"
    status_code = 400


class InvalidStateTransition(EngineError):
    code = "invalid_state_transition"
    status_code = 409


class AlreadyVoted(InvalidStateTransition):
    code = "already_voted"


class WindowStillOpen(InvalidStateTransition):
    code = "window_still_open"


class NotAParticipant(EngineError):
    code = "not_a_participant"
    status_code = 403


class StaleState(EngineError):
    code = "stale_state"
    status_code = 409
    retryable = True


class Expired(EngineError):
    code = "expired"
    status_code = 410


class WindowClosed(Expired):
    code = "window_closed"


class Unavailable(EngineError):
    code = "unavailable"
    status_code = 410


class ValidationError(EngineError):
    code = "validation_error"
    status_code = 422


class NotFound(EngineError):
    code = "not_found"
    status_code = 404


class BorrowDenied(EngineError):
    code = "borrow_denied"
    status_code = 400

    def __init__(self, message: str = "", max_borrowable: Optional[int] = None):
        super().__init__(message, max_borrowable=max_borrowable)
        self.max_borrowable = max_borrowable
