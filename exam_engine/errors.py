"""
Exception hierarchy for the exam engine.

Every error carries a ``message`` that is safe to show to a student.
"""


class ExamError(Exception):
    """Base class for all exam engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ===== VALIDATION =====

class ValidationError(ExamError):
    """The request was rejected. Session state is unchanged."""


class StudentNotFound(ValidationError):
    pass


class SessionNotFound(ValidationError):
    pass


class InvalidAccessCode(ValidationError):
    pass


class AlreadyCompleted(ValidationError):
    pass


class InvalidPhase(ValidationError):
    pass


class UnknownQuestion(ValidationError):
    pass


class OptionOutOfRange(ValidationError):
    pass


# ===== CONCURRENCY =====

class ConcurrencyError(ExamError):
    """Lost a race for a resource that allows a single writer."""


class SessionAlreadyActive(ConcurrencyError):
    pass


# ===== PERSISTENCE =====

class PersistenceError(ExamError):
    """The Store could not be read or written."""


# ===== EXECUTION =====

class ExecutionError(ExamError):
    """Running submitted code failed for reasons outside the code itself."""


class ExecutorUnavailable(ExecutionError):
    """The executor could not be launched at all (missing interpreter, OS error)."""
