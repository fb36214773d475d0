"""
CloudFormation control-plane client
Thin boto3 wrapper that translates botocore errors into orchestrator errors
"""
import logging
import os
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import ControlPlaneError, ControlPlaneTransient

logger = logging.getLogger(__name__)

THROTTLING_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
})

# Change set failure reasons that mean "nothing to deploy"
EMPTY_CHANGE_SET_REASONS = (
    "The submitted information didn't contain changes",
    "No updates are to be performed",
)


def is_not_found(error: ClientError) -> bool:
    """True if a ClientError reports a missing stack"""
    error_info = error.response.get('Error', {})
    return error_info.get('Code') == 'ValidationError' and 'does not exist' in error_info.get('Message', '')


def is_empty_change_set(reason: Optional[str]) -> bool:
    return bool(reason) and any(marker in reason for marker in EMPTY_CHANGE_SET_REASONS)


def _translate(operation: str, error: Exception) -> ControlPlaneError:
    if isinstance(error, ClientError):
        error_info = error.response.get('Error', {})
        code = error_info.get('Code')
        message = error_info.get('Message', str(error))
        if code in THROTTLING_CODES:
            return ControlPlaneTransient(operation, message, code)
        return ControlPlaneError(operation, message, code)
    # BotoCoreError covers connection failures and missing credentials
    return ControlPlaneTransient(operation, str(error), type(error).__name__)


class CloudFormationControlPlane:
    """Client for the CloudFormation API and the STS identity check"""

    def __init__(
        self,
        region: str = None,
        endpoint_url: str = None,
        base_dir: str = '.',
        client: Any = None,
        sts_client: Any = None,
    ):
        """
        Initialize the CloudFormation client

        Args:
            region: AWS region (defaults to environment variable)
            endpoint_url: Custom endpoint for LocalStack (optional)
            base_dir: Directory that local template paths are relative to
            client: Pre-built CloudFormation client (optional)
            sts_client: Pre-built STS client (optional)
        """
        self.region = region or os.getenv('AWS_DEFAULT_REGION', 'us-east-1')
        self.endpoint_url = endpoint_url or os.getenv('AWS_ENDPOINT_URL')
        self.base_dir = base_dir

        client_config = {
            'region_name': self.region
        }

        if self.endpoint_url:
            client_config['endpoint_url'] = self.endpoint_url
            logger.info(f"Using custom endpoint: {self.endpoint_url}")

        self._client_config = client_config
        self.client = client or boto3.client('cloudformation', **client_config)
        self._sts_client = sts_client

    # ------------------------------------------------------------------
    # Read-only calls
    # ------------------------------------------------------------------

    def describe_stack(self, stack_name: str) -> Optional[Dict[str, Any]]:
        """
        Describe a stack by name

        Returns:
            The stack description, or None if the stack does not exist

        Raises:
            ControlPlaneTransient: For any other error, since a failed query
                says nothing about the stack itself
        """
        try:
            response = self.client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_not_found(e):
                return None
            error_info = e.response.get('Error', {})
            raise ControlPlaneTransient(
                'DescribeStacks', error_info.get('Message', str(e)), error_info.get('Code')
            )
        except BotoCoreError as e:
            raise ControlPlaneTransient('DescribeStacks', str(e), type(e).__name__)

        stacks = response.get('Stacks', [])
        return stacks[0] if stacks else None

    def describe_change_set(self, change_set_name: str, stack_name: str) -> Dict[str, Any]:
        try:
            return self.client.describe_change_set(ChangeSetName=change_set_name, StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise _translate('DescribeChangeSet', e)

    def validate_template(self, template_ref: str) -> Dict[str, Any]:
        try:
            return self.client.validate_template(**self.template_argument(template_ref))
        except (ClientError, BotoCoreError) as e:
            raise _translate('ValidateTemplate', e)

    def template_parameter_keys(self, template_ref: str) -> List[str]:
        """Parameter names the template declares, in declaration order"""
        response = self.validate_template(template_ref)
        return [parameter['ParameterKey'] for parameter in response.get('Parameters', [])]

    def latest_failure_reason(self, stack_name: str) -> Optional[str]:
        """
        Root-cause failure reason from the stack's most recent operation

        Walks events newest-first back to the "User Initiated" event that
        started the operation and reports the oldest failed resource event.
        """
        try:
            response = self.client.describe_stack_events(StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not read events for stack {stack_name}: {e}")
            return None

        root_cause = None
        for event in response.get('StackEvents', []):
            is_stack_event = event.get('LogicalResourceId') == stack_name
            if is_stack_event and event.get('ResourceStatusReason') == 'User Initiated':
                break
            if event.get('ResourceStatus', '').endswith('_FAILED') and event.get('ResourceStatusReason'):
                root_cause = event

        if root_cause is None:
            return None

        return (
            f"{root_cause.get('LogicalResourceId')} ({root_cause.get('ResourceType')}) "
            f"{root_cause.get('ResourceStatus')}: {root_cause.get('ResourceStatusReason')}"
        )

    def verify_credentials(self) -> Dict[str, Any]:
        """Check that ambient AWS credentials work; returns the caller identity"""
        if self._sts_client is None:
            self._sts_client = boto3.client('sts', **self._client_config)
        try:
            return self._sts_client.get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise _translate('GetCallerIdentity', e)

    # ------------------------------------------------------------------
    # Mutating calls
    # ------------------------------------------------------------------

    def create_change_set(self, **request: Any) -> Dict[str, Any]:
        logger.info(f"Creating change set {request.get('ChangeSetName')} for stack {request.get('StackName')}")
        try:
            return self.client.create_change_set(**request)
        except (ClientError, BotoCoreError) as e:
            raise _translate('CreateChangeSet', e)

    def execute_change_set(self, change_set_name: str, stack_name: str) -> None:
        logger.info(f"Executing change set {change_set_name} for stack {stack_name}")
        try:
            self.client.execute_change_set(ChangeSetName=change_set_name, StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise _translate('ExecuteChangeSet', e)

    def delete_change_set(self, change_set_name: str, stack_name: str) -> None:
        logger.info(f"Deleting change set {change_set_name} for stack {stack_name}")
        try:
            self.client.delete_change_set(ChangeSetName=change_set_name, StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise _translate('DeleteChangeSet', e)

    def delete_stack(self, stack_name: str) -> None:
        logger.info(f"Deleting stack {stack_name}")
        try:
            self.client.delete_stack(StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise _translate('DeleteStack', e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def template_argument(self, template_ref: str) -> Dict[str, str]:
        """
        Request argument for a template reference

        URLs are passed through as TemplateURL; anything else is a local
        file whose contents are sent unchanged as TemplateBody.
        """
        if template_ref.startswith(('https://', 'http://')):
            return {'TemplateURL': template_ref}

        path = template_ref if os.path.isabs(template_ref) else os.path.join(self.base_dir, template_ref)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return {'TemplateBody': f.read()}
        except OSError as e:
            raise ControlPlaneError('ReadTemplate', f"Cannot read template {path}: {e}")
