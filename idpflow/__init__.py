"""idpflow: provisioning workflow tracking for an internal developer platform."""

from .contracts import (
    LogEntry,
    Step,
    StepStatus,
    Workflow,
    WorkflowDetails,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowType,
)
from .engines import ArgoEngine, DirectEngine, get_engine
from .events import get_publisher
from .logsink import LogSink
from .mirror import WorkflowMirror
from .persistence import get_store
from .registry import WorkflowRegistry
from .service import WorkflowService

__version__ = "0.1.0"
__all__ = [
    "ArgoEngine",
    "DirectEngine",
    "LogEntry",
    "LogSink",
    "Step",
    "StepStatus",
    "Workflow",
    "WorkflowDetails",
    "WorkflowEvent",
    "WorkflowMirror",
    "WorkflowRegistry",
    "WorkflowService",
    "WorkflowStatus",
    "WorkflowType",
    "get_engine",
    "get_publisher",
    "get_store",
]
