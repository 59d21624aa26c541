"""Aggregate model imports for Alembic auto-detection."""

from gelatin_erp.models.batch import Batch, BatchType  # noqa: F401
from gelatin_erp.models.blend import Blend, BlendBatch, BlendStatus, BloomSelectionMode  # noqa: F401
from gelatin_erp.models.fiscal_year import FiscalYearArchive, FiscalYearCounter  # noqa: F401
from gelatin_erp.models.activity_log import ActivityLog  # noqa: F401

__all__ = [
    "Batch", "BatchType",
    "Blend", "BlendBatch", "BlendStatus", "BloomSelectionMode",
    "FiscalYearArchive", "FiscalYearCounter",
    "ActivityLog",
]
