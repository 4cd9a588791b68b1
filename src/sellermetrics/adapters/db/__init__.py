"""Tenant-scoped SQLAlchemy persistence."""

from sellermetrics.adapters.db.facade import DB, FeeApplyOutcome, RealFeeRow
from sellermetrics.adapters.db.models import Base

__all__ = ["DB", "Base", "FeeApplyOutcome", "RealFeeRow"]
