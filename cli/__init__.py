"""
Clipbatch CLI Tools

Command-line tools for interacting with the orchestrator server.

Tools:
- progress_monitor: Real-time job progress visualization
"""

from .progress_monitor import ProgressMonitor, format_event

__all__ = ["ProgressMonitor", "format_event"]
