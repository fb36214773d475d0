"""
Environment orchestrator
Runs deploy, destroy, validate and status across the registry for one environment
"""
import logging
from typing import List, Optional

from .exceptions import ConfirmationRequired
from .models import (
    ABORT_CONFIRMATION_REQUIRED,
    Action,
    Environment,
    ErrorKind,
    OperationResult,
    Outcome,
    RunReport,
    StackDefinition,
    StatusEntry,
    StatusReport,
    StackStatus,
)
from .registry import FOUNDATION_SCOPE, StackRegistry
from .stack_operator import StackOperator

logger = logging.getLogger(__name__)


class EnvironmentOrchestrator:
    """
    Walks the stack registry for one environment

    Deploys run forward and halt on the first failure, since later stacks
    consume earlier stacks' outputs. Destroys run in reverse and carry on
    past failures so as much as possible is torn down. Runs are strictly
    sequential; at most one orchestrator per environment is assumed.
    """

    def __init__(
        self,
        registry: StackRegistry,
        operator: StackOperator,
        environment: Environment,
        scope: str = FOUNDATION_SCOPE,
    ):
        self.registry = registry
        self.operator = operator
        self.environment = environment
        self.scope = scope

    @property
    def dry_run(self) -> bool:
        return self.operator.dry_run

    def request_stop(self) -> None:
        """Stop submitting stacks; an in-flight wait returns its last observed status"""
        logger.warning(f"Stop requested for {self.environment.name}; no further stacks will be submitted")
        self.operator.request_stop()

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy_all(self) -> RunReport:
        return self._deploy(self.registry.list(self.scope))

    def deploy_stack(self, key: str) -> RunReport:
        return self._deploy([self.registry.resolve(key)])

    def _deploy(self, stacks: List[StackDefinition]) -> RunReport:
        # Parameter sources are checked up front so a bad file aborts before anything changes
        for stack in stacks:
            self.operator.parameter_store.load(stack.parameter_source(self.environment))

        report = self._new_report(Action.DEPLOY)
        logger.info(f"Deploying {len(stacks)} stack(s) to {self.environment.name}: "
                    f"{', '.join(stack.key for stack in stacks)}")

        for position, stack in enumerate(stacks):
            if self.operator.stop_requested:
                self._skip_remaining(report, stacks[position:], Action.DEPLOY, "Not attempted: run interrupted",
                                     ErrorKind.INTERRUPTED)
                report.interrupted = True
                break

            result = self.operator.deploy(stack, self.environment)
            report.add(result)

            if result.error_kind is ErrorKind.INTERRUPTED:
                report.interrupted = True
                self._skip_remaining(report, stacks[position + 1:], Action.DEPLOY,
                                     "Not attempted: run interrupted", ErrorKind.INTERRUPTED)
                break

            if result.failed:
                logger.error(f"Deployment failed at: {stack.key}")
                self._skip_remaining(report, stacks[position + 1:], Action.DEPLOY,
                                     f"Not attempted: deployment halted after {stack.key} failed",
                                     ErrorKind.NOT_ATTEMPTED)
                break

        return report

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def destroy_all(self, confirmation: Optional[str] = None) -> RunReport:
        return self._destroy(self.registry.reverse(self.scope), confirmation)

    def destroy_stack(self, key: str, confirmation: Optional[str] = None) -> RunReport:
        return self._destroy([self.registry.resolve(key)], confirmation)

    def requires_confirmation(self, stacks: List[StackDefinition]) -> List[str]:
        """Keys of stateful stacks among ``stacks``; destroying them needs confirmation"""
        if self.dry_run:
            return []
        return [stack.key for stack in stacks if stack.stateful]

    def check_confirmation(self, stacks: List[StackDefinition], confirmation: Optional[str]) -> None:
        """
        Raises:
            ConfirmationRequired: If a stateful stack would be destroyed and
                ``confirmation`` does not match the environment name
        """
        stateful = self.requires_confirmation(stacks)
        if stateful and confirmation != self.environment.name:
            raise ConfirmationRequired(self.environment.name, stateful)

    def _destroy(self, stacks: List[StackDefinition], confirmation: Optional[str]) -> RunReport:
        report = self._new_report(Action.DESTROY)

        try:
            self.check_confirmation(stacks, confirmation)
        except ConfirmationRequired as e:
            logger.warning(str(e))
            report.abort_reason = ABORT_CONFIRMATION_REQUIRED
            report.abort_detail = str(e)
            return report

        logger.info(f"Destroying {len(stacks)} stack(s) in {self.environment.name}: "
                    f"{', '.join(stack.key for stack in stacks)}")

        for position, stack in enumerate(stacks):
            if self.operator.stop_requested:
                self._skip_remaining(report, stacks[position:], Action.DESTROY, "Not attempted: run interrupted",
                                     ErrorKind.INTERRUPTED)
                report.interrupted = True
                break

            result = self.operator.destroy(stack, self.environment)
            report.add(result)

            if result.error_kind is ErrorKind.INTERRUPTED:
                report.interrupted = True
            elif result.failed:
                logger.error(f"Deletion failed at: {stack.key}; continuing with remaining stacks")

        return report

    # ------------------------------------------------------------------
    # Read-only sweeps
    # ------------------------------------------------------------------

    def status(self) -> StatusReport:
        """Observe every stack in scope; individual query failures show as UNKNOWN"""
        report = StatusReport(environment=self.environment.name)
        for stack in self.registry.list(self.scope):
            observation = self.operator.observe(stack.physical_name(self.environment))
            report.entries.append(StatusEntry(stack_key=stack.key, observation=observation))
        return report

    def validate_all(self) -> RunReport:
        """Validate every template and parameter source; never halts early"""
        report = self._new_report(Action.VALIDATE)
        for stack in self.registry.list(self.scope):
            report.add(self.operator.validate(stack, self.environment))
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_report(self, action: Action) -> RunReport:
        return RunReport(action=action, environment=self.environment.name, dry_run=self.dry_run)

    def _skip_remaining(
        self,
        report: RunReport,
        stacks: List[StackDefinition],
        action: Action,
        detail: str,
        kind: ErrorKind,
    ) -> None:
        for stack in stacks:
            report.add(OperationResult(
                stack_key=stack.key,
                stack_name=stack.physical_name(self.environment),
                action=action,
                outcome=Outcome.SKIPPED,
                final_status=StackStatus.UNKNOWN,
                error_detail=detail,
                error_kind=kind,
            ))
