"""
Throttled batch release of generation units.
"""

from .batch_scheduler import BatchRecord, BatchScheduler, UnitWorker

__all__ = ["BatchRecord", "BatchScheduler", "UnitWorker"]
