"""
cf-orchestrator: ordered deployment and teardown of CloudFormation stacks
"""
from .models import (
    Action,
    Environment,
    ErrorKind,
    OperationResult,
    Outcome,
    RunReport,
    StackDefinition,
    StackStatus,
    StatusReport,
)
from .orchestrator import EnvironmentOrchestrator
from .registry import StackRegistry, default_registry
from .stack_operator import StackOperator

__version__ = "1.0.0"

__all__ = [
    "Action",
    "Environment",
    "EnvironmentOrchestrator",
    "ErrorKind",
    "OperationResult",
    "Outcome",
    "RunReport",
    "StackDefinition",
    "StackOperator",
    "StackRegistry",
    "StackStatus",
    "StatusReport",
    "default_registry",
]
