"""
Azure DevOps Process Migration Tool

Exports, imports and migrates inherited work item processes (work item types,
fields, picklists, states, rules and form layouts) between Azure DevOps
organizations and process files.
"""

from __future__ import annotations

from .cli import main
from .config import MigrationConfig, MigrationMode, MigrationOptions, load_config
from .exceptions import MigrationError
from .history import RunHistoryStore
from .models import ProcessModel, load_process_file, save_process_file
from .orchestrator import MigrationOrchestrator, RunResult, RunState, RunStatus, run
from .planner import MigrationPlan, build_plan
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "MigrationConfig",
    "MigrationError",
    "MigrationMode",
    "MigrationOptions",
    "MigrationOrchestrator",
    "MigrationPlan",
    "ProcessModel",
    "RunHistoryStore",
    "RunResult",
    "RunState",
    "RunStatus",
    "build_plan",
    "load_config",
    "load_process_file",
    "main",
    "run",
    "save_process_file",
    "setup_logging",
]
