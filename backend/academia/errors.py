"""Domain error taxonomy.

Services raise these exceptions; the HTTP layer maps each one to a
distinct status code so clients can tell a missing record apart from a
rejected permission, an invalid value or a uniqueness clash.
"""


class DomainError(Exception):
    """Base class for errors that are safe to report to the caller."""
    status_code = 400
    code = "domain_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(DomainError):
    """A referenced student, subject, group or plan entry does not exist."""
    status_code = 404
    code = "not_found"


class ForbiddenError(DomainError):
    """The caller may not act on the target, or the system is in maintenance."""
    status_code = 403
    code = "forbidden"


class ValidationFailure(DomainError):
    """A value is outside its allowed range or shape."""
    status_code = 422
    code = "validation_failed"


class ConflictError(DomainError):
    """A unique relation already exists or a state check did not match."""
    status_code = 409
    code = "conflict"
