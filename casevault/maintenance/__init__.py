"""CaseVault Maintenance: storage optimization and health metrics."""

from casevault.maintenance.optimization import (
    HealthStatus,
    OptimizationOptions,
    OptimizationResult,
    OptimizationService,
    StorageMetrics,
)

__all__ = [
    "HealthStatus",
    "OptimizationOptions",
    "OptimizationResult",
    "OptimizationService",
    "StorageMetrics",
]
