"""
Fleet Hardening

Gathers facts from Linux and Windows hosts, renders per-host reports and
applies idempotent, conditional hardening tasks over SSH and WinRM.
"""

__version__ = "1.0.0"

from .core.orchestrator import Orchestrator
from .core.models import HostRunResult, RunSummary, TaskResult

__all__ = ["Orchestrator", "HostRunResult", "RunSummary", "TaskResult"]
