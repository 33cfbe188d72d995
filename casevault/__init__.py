"""
CaseVault: document storage, versioning, backup and evidence integrity
for law-firm case management.

Subpackages:
    engine       configuration, errors, structured logging, hashing, encryption
    db           SQLAlchemy models and session management
    documents    storage, versioning, comparison and the DocumentManager facade
    backup       archives, restore, retention and scheduling
    maintenance  storage optimization and health metrics
    evidence     chain-of-custody ledger and integrity verification
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "documents", "backup", "maintenance", "evidence"]
