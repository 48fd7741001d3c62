"""
Generation Orchestrator Service

Runs generation jobs end to end:
- Batched submission with credential rotation
- Per-unit polling, retry and cancel
- Progress streaming and history mirroring
- Ordered merge of completed clips
- Job snapshots and recovery after restart
"""

from .orchestrator import JobOrchestrator
from .snapshot import INTERRUPTED_ERROR_CODE, JobSnapshotStore, reconcile

__all__ = [
    "INTERRUPTED_ERROR_CODE",
    "JobOrchestrator",
    "JobSnapshotStore",
    "reconcile",
]
