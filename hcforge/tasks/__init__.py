"""Startup tasks: script DSL, progress tracking and the run queue.

Example:
    >>> from hcforge.tasks import script, progress, step
    >>>
    >>> text = script(
    ...     step(0, 50, progress(10, "Updating"), "apt-get update"),
    ...     step(50, 50, progress(100, "Done")),
    ... )
"""

from __future__ import annotations

# Core types and composition
from .compose import (
    Op,
    by_package_manager,
    export,
    fail,
    progress,
    resolve,
    script,
    shell_quote,
    split_windows,
    step,
    when,
    write_file,
)

# Sub-steps
from .scripts import auto_update, build_startup_script, generate_rdp_username, setup_gui_rdp

# Progress
from .progress import ProgressMarker, ProgressTracker, parse_progress_line

# Queue
from .orchestrator import DrainReport, TaskOrchestrator
from .repository import TaskRepository

__all__ = [
    "Op",
    "by_package_manager",
    "export",
    "fail",
    "progress",
    "resolve",
    "script",
    "shell_quote",
    "split_windows",
    "step",
    "when",
    "write_file",
    "auto_update",
    "build_startup_script",
    "generate_rdp_username",
    "setup_gui_rdp",
    "ProgressMarker",
    "ProgressTracker",
    "parse_progress_line",
    "DrainReport",
    "TaskOrchestrator",
    "TaskRepository",
]
