"""Deployment engine services."""

from .lifecycle import LifecycleCoordinator
from .log_broker import LogBroker
from .pipeline import PipelineExecutor
from .queue_manager import QueueManager
from .workspace import WorkspaceProvisioner

__all__ = [
    "LifecycleCoordinator",
    "LogBroker",
    "PipelineExecutor",
    "QueueManager",
    "WorkspaceProvisioner",
]
