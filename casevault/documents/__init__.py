"""
CaseVault Documents: file storage, version history and comparison.

The ``DocumentManager`` facade lives in ``casevault.documents.service``
and wires these together with backups, optimization and evidence.
"""

from casevault.documents.comparison import ComparisonOptions, ComparisonResult, compare_content
from casevault.documents.storage import RetrievalResult, StorageResult, StorageService, ValidationResult
from casevault.documents.versions import VersionResult, VersionService

__all__ = [
    "ComparisonOptions",
    "ComparisonResult",
    "compare_content",
    "RetrievalResult",
    "StorageResult",
    "StorageService",
    "ValidationResult",
    "VersionResult",
    "VersionService",
]
