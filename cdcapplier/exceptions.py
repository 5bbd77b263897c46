"""
Custom exceptions for the CDC change applier
"""


class ApplierException(Exception):
    """Base exception for change applier operations"""
    pass


class ConfigurationError(ApplierException):
    """Configuration related errors"""
    pass


class SinkError(ApplierException):
    """Transient warehouse errors (availability, lost connections)"""
    pass


class MergeConflictError(SinkError):
    """Stored merge cursor moved between read and commit"""
    pass


class RecordError(ApplierException):
    """Malformed change record or schema mismatch"""
    pass


class BranchFailedError(ApplierException):
    """Table branch halted after a fatal error"""

    def __init__(self, table: str, reason: str):
        super().__init__(f"Branch for table '{table}' failed: {reason}")
        self.table = table
        self.reason = reason
