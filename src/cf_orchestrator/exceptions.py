"""
Exception hierarchy for the stack orchestrator
Configuration errors abort a run before any report exists; control-plane
and operation errors are captured into per-stack results instead
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors"""


class ConfigurationError(OrchestratorError):
    """Programming or configuration error; fatal and never retried"""


class UnknownStackKey(ConfigurationError):
    """Raised when a stack key is not present in the registry"""

    def __init__(self, key: str, known: Optional[list] = None):
        self.key = key
        self.known = list(known or [])
        message = f"Unknown stack key: {key}"
        if self.known:
            message += f" (known keys: {', '.join(self.known)})"
        super().__init__(message)


class UnknownScope(ConfigurationError):
    """Raised when no stack in the registry belongs to the requested scope"""

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Unknown stack scope: {scope}")


class RegistryError(ConfigurationError):
    """Raised when registry definitions violate ordering or uniqueness"""


class ParameterSourceError(ConfigurationError):
    """Raised when a parameter source is missing or cannot be parsed"""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Parameter source {source}: {reason}")


class InvalidEnvironment(ConfigurationError):
    """Raised when an environment name cannot be used in stack names"""


class ControlPlaneError(OrchestratorError):
    """
    Error reported by the control plane for a single request

    The provider's message is kept verbatim in ``message`` so it can be
    surfaced to operators unchanged.
    """

    def __init__(self, operation: str, message: str, code: Optional[str] = None):
        self.operation = operation
        self.message = message
        self.code = code
        prefix = f"{operation} failed"
        if code:
            prefix += f" ({code})"
        super().__init__(f"{prefix}: {message}")


class ControlPlaneTransient(ControlPlaneError):
    """Network, credential or throttling error; the request may succeed later"""


class OperationFailed(OrchestratorError):
    """The control plane reported a terminal failure for a mutating operation"""

    def __init__(self, stack_name: str, raw_status: Optional[str], reason: Optional[str]):
        self.stack_name = stack_name
        self.raw_status = raw_status
        self.reason = reason
        super().__init__(f"Stack {stack_name} ended in {raw_status}: {reason or 'no reason reported'}")


class StackTimeout(OrchestratorError):
    """A blocking wait exceeded its ceiling"""

    def __init__(self, stack_name: str, timeout_seconds: float, last_status: Optional[str] = None):
        self.stack_name = stack_name
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        super().__init__(
            f"Timed out after {timeout_seconds:.0f}s waiting for stack {stack_name} "
            f"(last observed status: {last_status or 'unknown'}); check the CloudFormation console"
        )


class ConfirmationRequired(OrchestratorError):
    """A destructive action against stateful stacks was attempted without confirmation"""

    def __init__(self, environment: str, stack_keys: list):
        self.environment = environment
        self.stack_keys = list(stack_keys)
        super().__init__(
            f"Destroying {', '.join(self.stack_keys)} in '{environment}' deletes data that cannot be "
            f"regenerated; confirm with the environment name"
        )


class RunInterrupted(OrchestratorError):
    """An operator-issued stop arrived while waiting on a stack"""

    def __init__(self, stack_name: str, last_status: Optional[str] = None):
        self.stack_name = stack_name
        self.last_status = last_status
        super().__init__(
            f"Interrupted while waiting for stack {stack_name} "
            f"(last observed status: {last_status or 'unknown'})"
        )
