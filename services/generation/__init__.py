"""
Video Generation Service

Units and jobs, the provider client, and the operation poller that drives
each submitted unit to a terminal state.
"""

from .client import ProviderClient, StatusReport, SubmitResult
from .models import (
    AspectRatio,
    Attempt,
    CancellationToken,
    GenerationJob,
    GenerationRequest,
    GenerationUnit,
    JobKind,
    UnitStatus,
)
from .poller import OperationPoller, PollingProfile, ProviderOutcome, normalize_status, profile_for
from .runner import UnitOutcome, UnitRunner

__all__ = [
    "AspectRatio",
    "Attempt",
    "CancellationToken",
    "GenerationJob",
    "GenerationRequest",
    "GenerationUnit",
    "JobKind",
    "OperationPoller",
    "PollingProfile",
    "ProviderClient",
    "ProviderOutcome",
    "StatusReport",
    "SubmitResult",
    "UnitOutcome",
    "UnitRunner",
    "UnitStatus",
    "normalize_status",
    "profile_for",
]
