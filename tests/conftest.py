"""
Pytest configuration and fixtures for cf-orchestrator tests
Provides a scripted CloudFormation control plane and a fast-polling operator
"""
import os
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Credentials for moto; set before any boto3 client is built
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_SECURITY_TOKEN', 'testing')
os.environ.setdefault('AWS_SESSION_TOKEN', 'testing')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from cf_orchestrator.control_plane import CloudFormationControlPlane  # noqa: E402
from cf_orchestrator.models import Environment  # noqa: E402
from cf_orchestrator.orchestrator import EnvironmentOrchestrator  # noqa: E402
from cf_orchestrator.parameters import ParameterStore  # noqa: E402
from cf_orchestrator.registry import default_registry  # noqa: E402
from cf_orchestrator.stack_operator import StackOperator  # noqa: E402

FOUNDATION_KEYS = ['vpc', 'iam', 'storage', 'database', 'cache']

# Control-plane methods that change state
MUTATING_CALLS = (
    'create_change_set',
    'execute_change_set',
    'delete_change_set',
    'delete_stack',
)


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: marks fast tests with no AWS access"
    )
    config.addinivalue_line(
        "markers", "property: marks hypothesis property-based tests"
    )
    config.addinivalue_line(
        "markers", "moto: marks tests that run against moto's mocked AWS"
    )


def stack_name(key, environment='sandbox'):
    return f"cf-scalable-web-{environment}-{key}"


def stack(status, reason=None):
    """A DescribeStacks entry with the given raw status"""
    entry = {'StackName': 'stack', 'StackId': 'arn:aws:cloudformation:stack/id', 'StackStatus': status}
    if reason:
        entry['StackStatusReason'] = reason
    return entry


class ScriptedStacks:
    """
    describe_stack side effect that plays back a status script per stack name

    Each script item is a raw status string, None for "does not exist", or
    an exception instance to raise. The last item repeats once the script
    runs out; unscripted stacks do not exist.
    """

    def __init__(self, scripts=None):
        self.scripts = {name: list(items) for name, items in (scripts or {}).items()}

    def set(self, name, *items):
        self.scripts[name] = list(items)

    def __call__(self, name):
        items = self.scripts.get(name)
        if not items:
            return None
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return None if item is None else stack(item)


def mutating_calls(control_plane):
    """Names of mutating control-plane methods that were invoked"""
    return [name for name in MUTATING_CALLS if getattr(control_plane, name).called]


@pytest.fixture
def environment():
    return Environment(name='sandbox', region='us-east-1', parameter_set='sandbox')


@pytest.fixture
def base_dir(tmp_path):
    """Workspace with a template per foundation stack and a sandbox parameter file"""
    templates = tmp_path / "cloudformation"
    (templates / "parameters").mkdir(parents=True)
    for key in FOUNDATION_KEYS:
        (templates / f"cf-{key}.yaml").write_text(
            "AWSTemplateFormatVersion: '2010-09-09'\n"
            "Parameters:\n"
            "  Environment:\n"
            "    Type: String\n"
            "Resources:\n"
            "  Topic:\n"
            "    Type: AWS::SNS::Topic\n"
        )
    (templates / "parameters" / "sandbox.json").write_text(
        '{"Parameters": {"Environment": "sandbox", "DBInstanceClass": "db.t3.micro"}}'
    )
    return tmp_path


@pytest.fixture
def scripted_stacks():
    return ScriptedStacks()


@pytest.fixture
def control_plane(base_dir, scripted_stacks):
    """MagicMock control plane whose stacks follow ``scripted_stacks``"""
    mock_cp = MagicMock(spec=CloudFormationControlPlane)
    mock_cp.describe_stack.side_effect = scripted_stacks
    mock_cp.template_parameter_keys.return_value = ['Environment']
    mock_cp.template_argument.side_effect = lambda ref: {'TemplateBody': f"# {ref}"}
    mock_cp.describe_change_set.return_value = {'Status': 'CREATE_COMPLETE', 'ExecutionStatus': 'AVAILABLE'}
    mock_cp.latest_failure_reason.return_value = None
    mock_cp.validate_template.return_value = {'Parameters': [{'ParameterKey': 'Environment'}]}
    mock_cp.verify_credentials.return_value = {'Account': '123456789012', 'Arn': 'arn:aws:iam::123456789012:user/test'}
    return mock_cp


class FakeClock:
    """Monotonic clock that advances a fixed step on every read"""

    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def make_operator(control_plane, base_dir):
    def factory(dry_run=False, timeout=600.0, retries=2, clock=None, stop_event=None):
        return StackOperator(
            control_plane,
            parameter_store=ParameterStore(str(base_dir)),
            dry_run=dry_run,
            poll_interval=0,
            default_timeout=timeout,
            transient_retries=retries,
            stop_event=stop_event or threading.Event(),
            clock=clock or FakeClock(),
        )
    return factory


@pytest.fixture
def operator(make_operator):
    return make_operator()


@pytest.fixture
def make_orchestrator(make_operator, environment):
    def factory(**kwargs):
        return EnvironmentOrchestrator(default_registry(), make_operator(**kwargs), environment)
    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
