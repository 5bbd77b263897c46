"""
cdcapplier - CDC change applier

Applies per-table change-data-capture streams to a warehouse as an
append-only changelog plus a periodically merged replica.
"""

__version__ = "1.0.0"

from .applier_service import ApplierService
from .exceptions import ApplierException

__all__ = [
    "ApplierService",
    "ApplierException",
    "__version__",
]
