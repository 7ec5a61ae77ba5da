"""Expected failures of the circulation engine.

Each error carries a machine-readable ``kind`` and a human-readable
``reason``. They are raised by the services and propagate unchanged to the
request layer, which decides how to render them. Storage failures are not
wrapped: anything that is not a ``CirculationError`` is an infrastructure
problem.
"""

import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    INVALID_STATE = "InvalidState"
    ALREADY_RETURNED = "AlreadyReturned"
    CANNOT_RENEW = "CannotRenew"
    NOT_BORROWABLE = "NotBorrowable"
    ALREADY_AVAILABLE = "AlreadyAvailable"
    LIMIT_REACHED = "LimitReached"
    NO_COPIES_AVAILABLE = "NoCopiesAvailable"
    ALREADY_HELD = "AlreadyHeld"
    ALREADY_RESERVED = "AlreadyReserved"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID_ADJUSTMENT = "InvalidAdjustment"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_INPUT = "InvalidInput"
    INACTIVE_BORROWER = "InactiveBorrower"


class CirculationError(Exception):
    kind = ErrorKind.INVALID_STATE

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self):
        return {"kind": self.kind.value, "reason": self.reason}


class NotFound(CirculationError):
    kind = ErrorKind.NOT_FOUND


class Forbidden(CirculationError):
    kind = ErrorKind.FORBIDDEN


class InvalidState(CirculationError):
    kind = ErrorKind.INVALID_STATE


class AlreadyReturned(InvalidState):
    kind = ErrorKind.ALREADY_RETURNED


class CannotRenew(InvalidState):
    kind = ErrorKind.CANNOT_RENEW


class NotBorrowable(InvalidState):
    kind = ErrorKind.NOT_BORROWABLE


class AlreadyAvailable(InvalidState):
    kind = ErrorKind.ALREADY_AVAILABLE


class LimitReached(CirculationError):
    kind = ErrorKind.LIMIT_REACHED


class NoCopiesAvailable(CirculationError):
    kind = ErrorKind.NO_COPIES_AVAILABLE


class AlreadyHeld(CirculationError):
    kind = ErrorKind.ALREADY_HELD


class AlreadyReserved(CirculationError):
    kind = ErrorKind.ALREADY_RESERVED


class AlreadyExists(CirculationError):
    kind = ErrorKind.ALREADY_EXISTS


class InvalidAdjustment(CirculationError):
    kind = ErrorKind.INVALID_ADJUSTMENT


class InvalidAmount(CirculationError):
    kind = ErrorKind.INVALID_AMOUNT


class InvalidInput(CirculationError):
    kind = ErrorKind.INVALID_INPUT


class InactiveBorrower(CirculationError):
    kind = ErrorKind.INACTIVE_BORROWER
