"""
Stack operator
Deploys, destroys, validates and observes a single CloudFormation stack
"""
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .control_plane import CloudFormationControlPlane, is_empty_change_set
from .exceptions import (
    ControlPlaneError,
    ControlPlaneTransient,
    OperationFailed,
    ParameterSourceError,
    RunInterrupted,
    StackTimeout,
)
from .models import (
    Action,
    Environment,
    ErrorKind,
    OperationResult,
    Outcome,
    StackDefinition,
    StackObservation,
    StackStatus,
    classify_status,
)
from .parameters import ParameterStore, build_parameter_list

logger = logging.getLogger(__name__)

CAPABILITIES = ['CAPABILITY_NAMED_IAM']
CHANGE_SET_PREFIX = 'cf-orchestrator'


def observation_from(stack_name: str, stack: Optional[Dict[str, Any]]) -> StackObservation:
    """Build a StackObservation from a DescribeStacks entry (None when absent)"""
    if stack is None:
        return StackObservation(stack_name=stack_name, status=StackStatus.NOT_EXISTS)

    raw_status = stack.get('StackStatus')
    return StackObservation(
        stack_name=stack_name,
        status=classify_status(raw_status),
        raw_status=raw_status,
        reason=stack.get('StackStatusReason'),
        stack_id=stack.get('StackId'),
    )


class _StackWaiter:
    """
    Polls one stack until it settles, remembering the last status it saw

    ``last`` is only ever replaced by a successful observation, so a run that
    is interrupted or times out reports what was actually observed.
    """

    def __init__(self, operator: 'StackOperator', stack_name: str, deadline: float, timeout: float):
        self.operator = operator
        self.stack_name = stack_name
        self.deadline = deadline
        self.timeout = timeout
        self.last = StackObservation(stack_name=stack_name, status=StackStatus.UNKNOWN)

    def retry(self, description: str, call: Callable[..., Any], *args: Any) -> Any:
        """Run a read-only control-plane call, retrying transient errors a bounded number of times"""
        failures = 0
        while True:
            try:
                return call(*args)
            except ControlPlaneTransient as e:
                failures += 1
                logger.warning(f"Transient error {description} ({failures}): {e}")
                if failures > self.operator.transient_retries:
                    raise
                self._pause()

    def observe_with_retry(self) -> StackObservation:
        """Single observation, retrying transient errors a bounded number of times"""
        stack = self.retry(f"describing {self.stack_name}", self.operator.control_plane.describe_stack,
                           self.stack_name)
        self.last = observation_from(self.stack_name, stack)
        return self.last

    def submitted(self) -> None:
        """Record that a mutating call was accepted and the stack is now busy"""
        # The pre-submit raw status no longer describes the stack
        self.last = StackObservation(
            stack_name=self.stack_name,
            status=StackStatus.IN_PROGRESS,
            stack_id=self.last.stack_id,
        )

    def check_stop(self) -> None:
        """Raise RunInterrupted if a stop was requested; called before every mutating call"""
        if self.operator.stop_requested:
            raise RunInterrupted(self.stack_name, self.last.raw_status or self.last.status.value)

    def wait_until_settled(self) -> StackObservation:
        """Poll until the stack leaves IN_PROGRESS"""
        logger.info(f"Waiting for stack {self.stack_name} to reach a terminal state")
        failures = 0
        while True:
            try:
                stack = self.operator.control_plane.describe_stack(self.stack_name)
            except ControlPlaneTransient as e:
                failures += 1
                logger.warning(f"Transient error polling {self.stack_name} ({failures}): {e}")
                if failures > self.operator.transient_retries:
                    raise
            else:
                failures = 0
                self.last = observation_from(self.stack_name, stack)
                logger.debug(f"Stack {self.stack_name}: {self.last.raw_status or self.last.status.value}")
                if self.last.status is not StackStatus.IN_PROGRESS:
                    return self.last

            self._pause()

    def wait_for_change_set(self, change_set_name: str) -> Dict[str, Any]:
        """Poll until the change set has been computed or has failed"""
        failures = 0
        while True:
            try:
                change_set = self.operator.control_plane.describe_change_set(change_set_name, self.stack_name)
            except ControlPlaneTransient as e:
                failures += 1
                logger.warning(f"Transient error describing change set {change_set_name} ({failures}): {e}")
                if failures > self.operator.transient_retries:
                    raise
            else:
                failures = 0
                if change_set.get('Status') in ('CREATE_COMPLETE', 'FAILED'):
                    return change_set

            self._pause()

    def _pause(self) -> None:
        if self.operator.clock() >= self.deadline:
            raise StackTimeout(self.stack_name, self.timeout, self.last.raw_status or self.last.status.value)
        if self.operator.stop_event.wait(self.operator.poll_interval):
            raise RunInterrupted(self.stack_name, self.last.raw_status or self.last.status.value)


class StackOperator:
    """Performs one action against one physical stack and classifies the result"""

    def __init__(
        self,
        control_plane: CloudFormationControlPlane,
        parameter_store: Optional[ParameterStore] = None,
        dry_run: bool = False,
        poll_interval: float = 15.0,
        default_timeout: float = 3600.0,
        transient_retries: int = 3,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.control_plane = control_plane
        self.parameter_store = parameter_store or ParameterStore()
        self.dry_run = dry_run
        self.poll_interval = poll_interval
        self.default_timeout = default_timeout
        self.transient_retries = transient_retries
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def observe(self, stack_name: str) -> StackObservation:
        """Observe a stack; query failures come back as UNKNOWN, never raised"""
        try:
            stack = self.control_plane.describe_stack(stack_name)
        except ControlPlaneTransient as e:
            logger.warning(f"Could not determine status of {stack_name}: {e}")
            return StackObservation(stack_name=stack_name, status=StackStatus.UNKNOWN, reason=str(e))
        return observation_from(stack_name, stack)

    def query_status(self, stack_name: str) -> StackStatus:
        return self.observe(stack_name).status

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(self, stack: StackDefinition, environment: Environment) -> OperationResult:
        """
        Create or update a stack through a change set and wait for it to settle

        Raises:
            ParameterSourceError: If the stack's parameter source is unusable
        """
        stack_name = stack.physical_name(environment)
        started = self.clock()
        timeout = self._timeout_for(stack)
        waiter = _StackWaiter(self, stack_name, started + timeout, timeout)
        values = self.parameter_store.load(stack.parameter_source(environment))

        def result(outcome, observation, detail=None, kind=None, request=None):
            return self._result(stack, stack_name, Action.DEPLOY, outcome, observation, started,
                                detail=detail, kind=kind, request=request)

        logger.info(f"Deploying stack {stack_name} from {stack.template_ref}")
        try:
            if self.dry_run:
                current = waiter.last = self.observe(stack_name)
            else:
                current = waiter.observe_with_retry()
            logger.info(f"Current status of {stack_name}: {current.raw_status or current.status.value}")

            if current.status is StackStatus.IN_PROGRESS and current.raw_status != 'REVIEW_IN_PROGRESS':
                return result(Outcome.FAILURE, current,
                              f"Another operation is in progress on {stack_name} ({current.raw_status})",
                              ErrorKind.CONTROL_PLANE)
            if current.raw_status == 'ROLLBACK_COMPLETE':
                return result(Outcome.FAILURE, current,
                              f"Stack {stack_name} is in ROLLBACK_COMPLETE and must be deleted before it "
                              f"can be deployed again",
                              ErrorKind.OPERATION_FAILED)

            is_update = current.status is not StackStatus.NOT_EXISTS and current.raw_status != 'REVIEW_IN_PROGRESS'
            request = self._change_set_request(stack, stack_name, values, is_update, waiter)

            if self.dry_run:
                logger.info(f"[dry-run] Would create change set for {stack_name}")
                return result(Outcome.SKIPPED, current, "Dry run: no changes made",
                              request={'operation': 'CreateChangeSet', 'arguments': request})

            change_set_name = request['ChangeSetName']
            waiter.check_stop()
            self.control_plane.create_change_set(**request)
            change_set = waiter.wait_for_change_set(change_set_name)

            if change_set.get('Status') == 'FAILED':
                reason = change_set.get('StatusReason')
                if is_empty_change_set(reason):
                    self._discard_change_set(change_set_name, stack_name)
                    logger.info(f"No changes to deploy for {stack_name}")
                    return result(Outcome.SKIPPED, current, "No changes to deploy")
                raise OperationFailed(stack_name, 'FAILED', reason)

            # An unexecuted change set is left for the next deploy to replace
            waiter.check_stop()
            self.control_plane.execute_change_set(change_set_name, stack_name)
            waiter.submitted()
            final = waiter.wait_until_settled()

            if final.status is StackStatus.READY:
                logger.info(f"Stack deployed successfully: {stack_name} ({final.raw_status})")
                return result(Outcome.SUCCESS, final)

            reason = self.control_plane.latest_failure_reason(stack_name) or final.reason
            logger.error(f"Stack deployment failed: {stack_name} (status: {final.raw_status})")
            return result(Outcome.FAILURE, final, reason or f"Stack ended in {final.raw_status}",
                          ErrorKind.OPERATION_FAILED)

        except OperationFailed as e:
            logger.error(str(e))
            return result(Outcome.FAILURE, waiter.last, e.reason or str(e), ErrorKind.OPERATION_FAILED)
        except (StackTimeout, RunInterrupted, ControlPlaneError) as e:
            return self._failure_from(e, result, waiter)

    def _change_set_request(
        self,
        stack: StackDefinition,
        stack_name: str,
        values: Dict[str, str],
        is_update: bool,
        waiter: '_StackWaiter',
    ) -> Dict[str, Any]:
        if self.dry_run:
            try:
                template_keys = self.control_plane.template_parameter_keys(stack.template_ref)
            except ControlPlaneError as e:
                logger.warning(f"[dry-run] Could not read template parameters for {stack_name}, "
                               f"passing all parameters: {e}")
                template_keys = None
        else:
            template_keys = waiter.retry(f"reading parameters of {stack.template_ref}",
                                         self.control_plane.template_parameter_keys, stack.template_ref)

        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
        request = {
            'StackName': stack_name,
            'ChangeSetName': f"{CHANGE_SET_PREFIX}-{timestamp}-{uuid.uuid4().hex[:8]}",
            'ChangeSetType': 'UPDATE' if is_update else 'CREATE',
            'Capabilities': list(CAPABILITIES),
            'Parameters': build_parameter_list(values, template_keys, is_update=is_update),
        }
        request.update(self.control_plane.template_argument(stack.template_ref))
        return request

    def _discard_change_set(self, change_set_name: str, stack_name: str) -> None:
        try:
            self.control_plane.delete_change_set(change_set_name, stack_name)
        except ControlPlaneError as e:
            logger.warning(f"Could not delete empty change set {change_set_name}: {e}")

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def destroy(self, stack: StackDefinition, environment: Environment) -> OperationResult:
        """Delete a stack and wait until it is gone; absent stacks are a no-op"""
        stack_name = stack.physical_name(environment)
        started = self.clock()
        timeout = self._timeout_for(stack)
        waiter = _StackWaiter(self, stack_name, started + timeout, timeout)

        def result(outcome, observation, detail=None, kind=None, request=None):
            return self._result(stack, stack_name, Action.DESTROY, outcome, observation, started,
                                detail=detail, kind=kind, request=request)

        current = self.observe(stack_name)
        waiter.last = current
        if current.status is StackStatus.NOT_EXISTS:
            logger.info(f"Stack does not exist: {stack_name}")
            return result(Outcome.SUCCESS, current, "Stack does not exist")

        request = {'StackName': stack_name}
        if self.dry_run:
            logger.info(f"[dry-run] Would delete stack {stack_name}")
            return result(Outcome.SKIPPED, current, "Dry run: no changes made",
                          request={'operation': 'DeleteStack', 'arguments': request})

        logger.info(f"Deleting stack {stack_name} (current status: {current.raw_status or current.status.value})")
        try:
            waiter.check_stop()
            self.control_plane.delete_stack(stack_name)
            waiter.submitted()
            final = waiter.wait_until_settled()
        except (StackTimeout, RunInterrupted, ControlPlaneError) as e:
            return self._failure_from(e, result, waiter)

        if final.status is StackStatus.NOT_EXISTS:
            logger.info(f"Stack deleted successfully: {stack_name}")
            return result(Outcome.SUCCESS, final)

        reason = self.control_plane.latest_failure_reason(stack_name) or final.reason
        logger.error(f"Stack deletion failed: {stack_name} (status: {final.raw_status})")
        return result(Outcome.FAILURE, final, reason or f"Stack ended in {final.raw_status}",
                      ErrorKind.OPERATION_FAILED)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, stack: StackDefinition, environment: Environment) -> OperationResult:
        """Check the template with the control plane and the parameter source for completeness"""
        stack_name = stack.physical_name(environment)
        started = self.clock()
        current = self.observe(stack_name)

        def result(outcome, detail=None, kind=None):
            return self._result(stack, stack_name, Action.VALIDATE, outcome, current, started,
                                detail=detail, kind=kind)

        try:
            values = self.parameter_store.load(stack.parameter_source(environment))
            response = self.control_plane.validate_template(stack.template_ref)
        except ParameterSourceError as e:
            return result(Outcome.FAILURE, str(e), ErrorKind.INVALID_INPUT)
        except ControlPlaneTransient as e:
            return result(Outcome.FAILURE, str(e), ErrorKind.TRANSIENT)
        except ControlPlaneError as e:
            return result(Outcome.FAILURE, e.message, ErrorKind.INVALID_INPUT)

        missing = [
            parameter['ParameterKey']
            for parameter in response.get('Parameters', [])
            if parameter['ParameterKey'] not in values and 'DefaultValue' not in parameter
        ]
        if missing:
            return result(Outcome.FAILURE, f"Missing values for template parameters: {', '.join(missing)}",
                          ErrorKind.INVALID_INPUT)

        logger.info(f"Template valid: {stack.template_ref}")
        return result(Outcome.SUCCESS)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _timeout_for(self, stack: StackDefinition) -> float:
        return stack.timeout_seconds if stack.timeout_seconds is not None else self.default_timeout

    def _failure_from(self, error: Exception, result: Callable, waiter: _StackWaiter) -> OperationResult:
        if isinstance(error, StackTimeout):
            logger.error(str(error))
            return result(Outcome.FAILURE, waiter.last, str(error), ErrorKind.TIMEOUT)
        if isinstance(error, RunInterrupted):
            logger.warning(str(error))
            return result(Outcome.FAILURE, waiter.last, str(error), ErrorKind.INTERRUPTED)
        if isinstance(error, ControlPlaneTransient):
            logger.error(f"Giving up on {waiter.stack_name} after transient errors: {error}")
            return result(Outcome.FAILURE, waiter.last, str(error), ErrorKind.TRANSIENT)
        logger.error(str(error))
        return result(Outcome.FAILURE, waiter.last, error.message, ErrorKind.CONTROL_PLANE)

    def _result(
        self,
        stack: StackDefinition,
        stack_name: str,
        action: Action,
        outcome: Outcome,
        observation: StackObservation,
        started: float,
        detail: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
        request: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        return OperationResult(
            stack_key=stack.key,
            stack_name=stack_name,
            action=action,
            outcome=outcome,
            final_status=observation.status,
            raw_status=observation.raw_status,
            error_detail=detail,
            error_kind=kind,
            request=request,
            duration_seconds=max(self.clock() - started, 0.0),
        )
