"""
Data model for the stack orchestrator
Stack definitions, environments, observed stack status and run reports
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class StackStatus(Enum):
    """Closed set of stack conditions derived from raw CloudFormation statuses"""
    NOT_EXISTS = "NOT_EXISTS"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


class Action(Enum):
    DEPLOY = "deploy"
    DESTROY = "destroy"
    VALIDATE = "validate"


class Outcome(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


class ErrorKind(Enum):
    """Tags a FAILURE so operators know what to check next"""
    OPERATION_FAILED = "operation_failed"
    CONTROL_PLANE = "control_plane"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    INVALID_INPUT = "invalid_input"
    NOT_ATTEMPTED = "not_attempted"


READY_STATUSES = frozenset({
    'CREATE_COMPLETE',
    'UPDATE_COMPLETE',
    'IMPORT_COMPLETE',
})

FAILED_STATUSES = frozenset({
    'CREATE_FAILED',
    'ROLLBACK_FAILED',
    'ROLLBACK_COMPLETE',
    'DELETE_FAILED',
    'UPDATE_FAILED',
    'UPDATE_ROLLBACK_FAILED',
    'UPDATE_ROLLBACK_COMPLETE',
    'IMPORT_ROLLBACK_FAILED',
    'IMPORT_ROLLBACK_COMPLETE',
})


def classify_status(raw_status: Optional[str]) -> StackStatus:
    """Map a raw CloudFormation stack status onto a StackStatus category"""
    if raw_status is None:
        return StackStatus.NOT_EXISTS
    if raw_status == 'DELETE_COMPLETE':
        return StackStatus.NOT_EXISTS
    if raw_status in READY_STATUSES:
        return StackStatus.READY
    if raw_status in FAILED_STATUSES:
        return StackStatus.FAILED
    if raw_status.endswith('_IN_PROGRESS'):
        return StackStatus.IN_PROGRESS
    return StackStatus.UNKNOWN


@dataclass(frozen=True)
class Environment:
    """
    A named deployment target

    Carries no state of its own; everything observable about an environment
    lives in the control plane.
    """
    name: str
    region: str
    parameter_set: str
    project: str = "cf-scalable-web"


@dataclass(frozen=True)
class StackDefinition:
    """One deployable unit of infrastructure"""
    key: str
    name_template: str
    template_ref: str
    parameter_source_ref: str
    stateful: bool = False
    scopes: Tuple[str, ...] = ("foundation",)
    depends_on: Tuple[str, ...] = ()
    timeout_seconds: Optional[float] = None
    description: str = ""

    def physical_name(self, environment: Environment) -> str:
        return self.name_template.format(
            project=environment.project,
            environment=environment.name,
            key=self.key,
        )

    def parameter_source(self, environment: Environment) -> str:
        return self.parameter_source_ref.format(
            environment=environment.name,
            parameter_set=environment.parameter_set,
        )


@dataclass(frozen=True)
class StackObservation:
    """Point-in-time view of one physical stack"""
    stack_name: str
    status: StackStatus
    raw_status: Optional[str] = None
    reason: Optional[str] = None
    stack_id: Optional[str] = None


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operator invocation; immutable once produced"""
    stack_key: str
    stack_name: str
    action: Action
    outcome: Outcome
    final_status: StackStatus
    raw_status: Optional[str] = None
    error_detail: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    request: Optional[Dict[str, Any]] = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stack_key': self.stack_key,
            'stack_name': self.stack_name,
            'action': self.action.value,
            'outcome': self.outcome.value,
            'final_status': self.final_status.value,
            'raw_status': self.raw_status,
            'error_detail': self.error_detail,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'request': self.request,
            'duration_seconds': round(self.duration_seconds, 3),
        }


ABORT_CONFIRMATION_REQUIRED = "confirmation_required"


@dataclass
class RunReport:
    """Aggregated results of one deploy, destroy or validate run"""
    action: Action
    environment: str
    dry_run: bool = False
    results: List[OperationResult] = field(default_factory=list)
    abort_reason: Optional[str] = None
    abort_detail: Optional[str] = None
    interrupted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add(self, result: OperationResult) -> None:
        self.results.append(result)

    @property
    def failed_results(self) -> List[OperationResult]:
        return [result for result in self.results if result.failed]

    @property
    def confirmation_required(self) -> bool:
        return self.abort_reason == ABORT_CONFIRMATION_REQUIRED

    @property
    def succeeded(self) -> bool:
        return not self.abort_reason and not self.interrupted and not self.failed_results

    @property
    def halted_at(self) -> Optional[str]:
        """Key of the first failed stack, if any"""
        failed = self.failed_results
        return failed[0].stack_key if failed else None

    def result_for(self, key: str) -> Optional[OperationResult]:
        for result in self.results:
            if result.stack_key == key:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'environment': self.environment,
            'dry_run': self.dry_run,
            'started_at': self.started_at.isoformat(),
            'succeeded': self.succeeded,
            'abort_reason': self.abort_reason,
            'abort_detail': self.abort_detail,
            'interrupted': self.interrupted,
            'halted_at': self.halted_at,
            'results': [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class StatusEntry:
    stack_key: str
    observation: StackObservation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stack_key': self.stack_key,
            'stack_name': self.observation.stack_name,
            'status': self.observation.status.value,
            'raw_status': self.observation.raw_status,
            'reason': self.observation.reason,
        }


@dataclass
class StatusReport:
    """Point-in-time status sweep across a registry scope"""
    environment: str
    entries: List[StatusEntry] = field(default_factory=list)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def status_of(self, key: str) -> Optional[StackStatus]:
        for entry in self.entries:
            if entry.stack_key == key:
                return entry.observation.status
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'environment': self.environment,
            'observed_at': self.observed_at.isoformat(),
            'stacks': [entry.to_dict() for entry in self.entries],
        }
