"""
Ledger Error Taxonomy

Driver-specific database errors are translated into these types at the
connection handle, so callers can tell a missing row from a broken
constraint from an unreachable backend.
"""


class LedgerError(Exception):
    """Base ledger error with a stable machine-readable code"""

    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize the error for logs and callers"""
        return {"error": self.message, "code": self.code}


class NotFoundError(LedgerError):
    """Raised when a query returns no row where one was required"""

    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} {identifier} not found"
        super().__init__(message)


class ConstraintViolationError(LedgerError):
    """Raised when a schema constraint (foreign key, not-null, unique) is broken"""

    code = "CONSTRAINT_VIOLATION"


class ConnectivityError(LedgerError):
    """Raised when the storage backend is unreachable or the connection is lost"""

    code = "CONNECTIVITY"


class MigrationError(LedgerError):
    """Raised when applying or rolling back a migration fails"""

    code = "MIGRATION_FAILED"
