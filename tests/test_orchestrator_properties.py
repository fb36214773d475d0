"""
Property-based tests for the stack orchestrator
Ordering, fail-fast deploys, best-effort destroys and dry-run isolation
"""
import threading
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings, HealthCheck, strategies as st

from cf_orchestrator.control_plane import CloudFormationControlPlane
from cf_orchestrator.exceptions import RegistryError
from cf_orchestrator.models import (
    Environment,
    ErrorKind,
    FAILED_STATUSES,
    Outcome,
    READY_STATUSES,
    StackDefinition,
    StackStatus,
    classify_status,
)
from cf_orchestrator.orchestrator import EnvironmentOrchestrator
from cf_orchestrator.parameters import ParameterStore
from cf_orchestrator.registry import StackRegistry, default_registry
from cf_orchestrator.stack_operator import StackOperator

from conftest import FOUNDATION_KEYS, FakeClock, ScriptedStacks, mutating_calls, stack_name

SETTINGS = settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])

RAW_STATUSES = sorted(READY_STATUSES | FAILED_STATUSES | {
    'CREATE_IN_PROGRESS',
    'UPDATE_IN_PROGRESS',
    'DELETE_IN_PROGRESS',
    'ROLLBACK_IN_PROGRESS',
    'UPDATE_COMPLETE_CLEANUP_IN_PROGRESS',
    'UPDATE_ROLLBACK_IN_PROGRESS',
    'REVIEW_IN_PROGRESS',
    'DELETE_COMPLETE',
})


def build_orchestrator(base_dir, scripts, dry_run=False):
    """Fresh orchestrator over a scripted MagicMock control plane"""
    control_plane = MagicMock(spec=CloudFormationControlPlane)
    control_plane.describe_stack.side_effect = ScriptedStacks(scripts)
    control_plane.template_parameter_keys.return_value = ['Environment']
    control_plane.template_argument.side_effect = lambda ref: {'TemplateBody': f"# {ref}"}
    control_plane.describe_change_set.return_value = {'Status': 'CREATE_COMPLETE'}
    control_plane.latest_failure_reason.return_value = None

    operator = StackOperator(
        control_plane,
        parameter_store=ParameterStore(str(base_dir)),
        dry_run=dry_run,
        poll_interval=0,
        default_timeout=600.0,
        transient_retries=2,
        stop_event=threading.Event(),
        clock=FakeClock(),
    )
    environment = Environment(name='sandbox', region='us-east-1', parameter_set='sandbox')
    return EnvironmentOrchestrator(default_registry(), operator, environment), control_plane


@pytest.mark.property
class TestStatusClassificationProperties:
    """Test raw status classification"""

    @given(raw_status=st.sampled_from(RAW_STATUSES))
    def test_every_known_status_has_one_category(self, raw_status):
        """Known raw statuses never classify as UNKNOWN"""
        assert classify_status(raw_status) is not StackStatus.UNKNOWN

    @given(prefix=st.text(alphabet='ABCDEFGHIJKLMNOPQRSTUVWXYZ_', min_size=1, max_size=20))
    def test_in_progress_suffix_is_in_progress(self, prefix):
        """Any *_IN_PROGRESS status is in progress"""
        assert classify_status(f"{prefix}_IN_PROGRESS") is StackStatus.IN_PROGRESS


@pytest.mark.property
class TestRegistryProperties:
    """Test registry ordering invariants"""

    @given(keys=st.lists(st.text(alphabet='abcdefghij', min_size=1, max_size=6), min_size=1, max_size=8, unique=True))
    def test_list_preserves_declaration_order(self, keys):
        """list() returns stacks in declaration order and reverse() mirrors it"""
        registry = StackRegistry(
            StackDefinition(key=key, name_template='{key}', template_ref='t', parameter_source_ref='p')
            for key in keys
        )

        assert registry.keys() == keys
        assert [stack.key for stack in registry.reverse()] == list(reversed(keys))
        assert registry.keys() == registry.keys()

    @given(data=st.data(), size=st.integers(min_value=2, max_value=6))
    def test_forward_dependency_is_rejected(self, data, size):
        """A stack may not depend on one declared after it"""
        keys = [f"stack{index}" for index in range(size)]
        dependent = data.draw(st.integers(min_value=0, max_value=size - 2))
        dependency = data.draw(st.integers(min_value=dependent + 1, max_value=size - 1))

        definitions = [
            StackDefinition(
                key=key, name_template='{key}', template_ref='t', parameter_source_ref='p',
                depends_on=(keys[dependency],) if index == dependent else (),
            )
            for index, key in enumerate(keys)
        ]

        with pytest.raises(RegistryError):
            StackRegistry(definitions)


@pytest.mark.property
class TestDeployProperties:
    """Test deploy-all halting"""

    @SETTINGS
    @given(
        failing=st.integers(min_value=0, max_value=len(FOUNDATION_KEYS) - 1),
        failed_status=st.sampled_from(['ROLLBACK_COMPLETE', 'CREATE_FAILED', 'ROLLBACK_FAILED']),
    )
    def test_halts_at_first_failure(self, base_dir, failing, failed_status):
        """Stacks after the first failure are never submitted"""
        scripts = {stack_name(key): [None, 'CREATE_COMPLETE'] for key in FOUNDATION_KEYS}
        scripts[stack_name(FOUNDATION_KEYS[failing])] = [None, 'CREATE_IN_PROGRESS', failed_status]
        orchestrator, control_plane = build_orchestrator(base_dir, scripts)

        report = orchestrator.deploy_all()

        outcomes = [report.result_for(key).outcome for key in FOUNDATION_KEYS]
        assert outcomes[:failing] == [Outcome.SUCCESS] * failing
        assert outcomes[failing] is Outcome.FAILURE
        assert outcomes[failing + 1:] == [Outcome.SKIPPED] * (len(FOUNDATION_KEYS) - failing - 1)
        assert control_plane.create_change_set.call_count == failing + 1
        assert report.halted_at == FOUNDATION_KEYS[failing]
        assert all(
            report.result_for(key).error_kind is ErrorKind.NOT_ATTEMPTED
            for key in FOUNDATION_KEYS[failing + 1:]
        )


@pytest.mark.property
class TestDestroyProperties:
    """Test destroy-all continuation"""

    @SETTINGS
    @given(failing=st.sets(st.sampled_from(FOUNDATION_KEYS)))
    def test_every_stack_is_attempted(self, base_dir, failing):
        """A failed deletion never stops the remaining stacks from being deleted"""
        scripts = {
            stack_name(key): ['CREATE_COMPLETE', 'DELETE_IN_PROGRESS', 'DELETE_FAILED' if key in failing else None]
            for key in FOUNDATION_KEYS
        }
        orchestrator, control_plane = build_orchestrator(base_dir, scripts)

        report = orchestrator.destroy_all(confirmation='sandbox')

        assert control_plane.delete_stack.call_count == len(FOUNDATION_KEYS)
        assert [call.args[0] for call in control_plane.delete_stack.call_args_list] == [
            stack_name(key) for key in reversed(FOUNDATION_KEYS)
        ]
        assert {result.stack_key for result in report.failed_results} == failing
        assert report.succeeded == (not failing)


@pytest.mark.property
class TestDryRunProperties:
    """Test that dry-run never mutates"""

    @SETTINGS
    @given(statuses=st.lists(st.one_of(st.none(), st.sampled_from(RAW_STATUSES)),
                             min_size=len(FOUNDATION_KEYS), max_size=len(FOUNDATION_KEYS)))
    def test_no_mutating_calls(self, base_dir, statuses):
        """Dry-run deploy-all and destroy-all make no mutating calls whatever the starting state"""
        scripts = {stack_name(key): [status] for key, status in zip(FOUNDATION_KEYS, statuses)}
        orchestrator, control_plane = build_orchestrator(base_dir, scripts, dry_run=True)

        deploy_report = orchestrator.deploy_all()
        destroy_report = orchestrator.destroy_all()

        assert mutating_calls(control_plane) == []
        assert deploy_report.dry_run and destroy_report.dry_run
        assert not destroy_report.confirmation_required
