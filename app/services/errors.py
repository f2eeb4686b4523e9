"""Error taxonomy for the grading, selection and session core.

Every error is raised where the invariant is checked and surfaced to the
caller unchanged. ConcurrencyConflict is the only one the core retries
itself. Locked and SessionAlreadyTerminal describe immutable history and
are never retryable.
"""


class ReinforcementError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    @property
    def code(self) -> str:
        return type(self).__name__


class NotFound(ReinforcementError):
    status_code = 404


class DuplicateStatement(ReinforcementError):
    status_code = 409


class InvalidOptionSet(ReinforcementError):
    status_code = 400


class Locked(ReinforcementError):
    status_code = 403


class InvalidGrade(ReinforcementError):
    status_code = 400


class SessionAlreadyTerminal(ReinforcementError):
    status_code = 409


class ConcurrencyConflict(ReinforcementError):
    status_code = 503
    retryable = True


class InvalidAssignment(ReinforcementError):
    status_code = 400


class PendingSessionExists(ReinforcementError):
    status_code = 409


class SessionOverdue(ReinforcementError):
    status_code = 409
