"""
Error taxonomy shared by services and routes.

Services raise these; app.main renders every one of them as
``{"error": message}`` with the matching status code.
"""


class AuditError(Exception):
    """Base class for expected, client-facing failures"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AuditError):
    status_code = 400


class RunLocked(AuditError):
    """Mutation attempted on a locked audit run (or a child of one)"""

    status_code = 400

    def __init__(self, message: str = "Cannot modify locked audit run"):
        super().__init__(message)


class Forbidden(AuditError):
    status_code = 403


class InsufficientPermissions(Forbidden):
    """Role check failed; the message is surfaced verbatim to clients"""

    def __init__(self):
        super().__init__("Insufficient permissions")


class NotFound(AuditError):
    status_code = 404


class Conflict(AuditError):
    status_code = 409
