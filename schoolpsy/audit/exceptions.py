"""
Audit exceptions.
"""


class AuditError(Exception):
    """Base exception for audit errors"""
    pass


class AuditEntryImmutable(AuditError):
    """Raised when code tries to change or delete a written audit entry"""
    pass
