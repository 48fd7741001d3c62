"""
Ordered concatenation of completed clips.
"""

from .pipeline import (
    Concatenator,
    FfmpegConcatenator,
    MergeInput,
    MergeJob,
    MergePipeline,
    MergeStatus,
)

__all__ = [
    "Concatenator",
    "FfmpegConcatenator",
    "MergeInput",
    "MergeJob",
    "MergePipeline",
    "MergeStatus",
]
