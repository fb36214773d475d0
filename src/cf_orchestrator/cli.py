#!/usr/bin/env python3
"""
Command line entry point for the stack orchestrator
Deploys, destroys and reports on the foundation stacks of one environment
"""
import argparse
import json
import logging
import signal
import sys
from typing import Any, Callable, Dict, List, Optional

from .config import build_environment, get_config
from .control_plane import CloudFormationControlPlane
from .exceptions import ConfigurationError, ControlPlaneError
from .models import Outcome, RunReport, StackDefinition, StackStatus, StatusReport
from .orchestrator import EnvironmentOrchestrator
from .parameters import ParameterStore
from .registry import default_registry
from .stack_operator import StackOperator

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONFIRMATION_REQUIRED = 3
EXIT_INTERRUPTED = 130

MUTATING_COMMANDS = ('deploy', 'deploy-all', 'destroy', 'destroy-all')

OUTCOME_ICONS = {
    Outcome.SUCCESS: '✅',
    Outcome.FAILURE: '❌',
    Outcome.SKIPPED: '⏭️',
}

STATUS_ICONS = {
    StackStatus.READY: '✅',
    StackStatus.NOT_EXISTS: '⚪',
    StackStatus.IN_PROGRESS: '⏳',
    StackStatus.FAILED: '❌',
    StackStatus.UNKNOWN: '❓',
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cf-orchestrator',
        description="Deploy and tear down the CloudFormation stacks of one environment",
    )
    parser.add_argument(
        "--env",
        help="Target environment, e.g. sandbox, staging, production (default: $ENVIRONMENT or sandbox)"
    )
    parser.add_argument(
        "--region",
        help="AWS region (default: $AWS_REGION or us-east-1)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes"
    )
    parser.add_argument(
        "--output",
        choices=["text", "json"],
        default="text",
        help="Report format (default: text)"
    )
    parser.add_argument(
        "--base-dir",
        help="Directory that template and parameter paths are relative to (default: $CF_BASE_DIR or .)"
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between status polls while waiting (default: $CF_POLL_INTERVAL or 15)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Default per-stack wait ceiling in seconds (default: $CF_STACK_TIMEOUT or 3600)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    subparsers.required = True

    deploy = subparsers.add_parser("deploy", help="Deploy a single stack")
    deploy.add_argument("stack_key", help="Stack key, e.g. vpc")

    destroy = subparsers.add_parser("destroy", help="Delete a single stack")
    destroy.add_argument("stack_key", help="Stack key, e.g. cache")
    destroy.add_argument("--confirm", metavar="ENV", help="Environment name, confirming data loss")

    subparsers.add_parser("deploy-all", help="Deploy all stacks in dependency order")

    destroy_all = subparsers.add_parser("destroy-all", help="Delete all stacks in reverse order")
    destroy_all.add_argument("--confirm", metavar="ENV", help="Environment name, confirming data loss")

    subparsers.add_parser("status", help="Show status of all stacks")
    subparsers.add_parser("validate", help="Validate templates and parameter files")
    subparsers.add_parser("list", help="List the stacks in deployment order")

    return parser


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, get_config().get_log_level(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )
    # botocore is chatty at debug level
    logging.getLogger('botocore').setLevel(logging.WARNING)


def build_orchestrator(
    args: argparse.Namespace,
    control_plane: Optional[CloudFormationControlPlane] = None,
) -> EnvironmentOrchestrator:
    """Wire registry, operator and control plane from arguments and config"""
    config = get_config()
    environment = build_environment(args.env, args.region)
    base_dir = args.base_dir or config.get_base_dir()

    if control_plane is None:
        control_plane = CloudFormationControlPlane(
            region=environment.region,
            endpoint_url=config.get_endpoint_url(),
            base_dir=base_dir,
        )

    operator = StackOperator(
        control_plane,
        parameter_store=ParameterStore(base_dir),
        dry_run=args.dry_run,
        poll_interval=args.poll_interval if args.poll_interval is not None else config.get_poll_interval(),
        default_timeout=args.timeout if args.timeout is not None else config.get_stack_timeout(),
        transient_retries=config.get_transient_retries(),
    )
    return EnvironmentOrchestrator(default_registry(), operator, environment)


def prompt_for_confirmation(
    orchestrator: EnvironmentOrchestrator,
    stacks: List[StackDefinition],
    input_func: Optional[Callable[[], str]] = None,
    stdin: Any = None,
) -> Optional[str]:
    """Ask for the environment name on a TTY when stateful stacks would be destroyed"""
    stateful = orchestrator.requires_confirmation(stacks)
    if not stateful:
        return None

    stdin = stdin or sys.stdin
    if not stdin.isatty():
        return None

    # stdout is reserved for the report
    env_name = orchestrator.environment.name
    print(f"⚠️ WARNING: This will delete {', '.join(stateful)} in '{env_name}' and all data they hold!",
          file=sys.stderr)
    sys.stderr.write(f"Type the environment name '{env_name}' to confirm: ")
    sys.stderr.flush()
    try:
        return (input_func or input)().strip()
    except EOFError:
        return None


def install_signal_handlers(orchestrator: EnvironmentOrchestrator) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to a graceful stop; returns the previous handlers"""
    def handler(signum, frame):
        sys.stderr.write("\n🛑 Interrupt received: finishing the current status check, "
                         "no further stacks will start\n")
        orchestrator.request_stop()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def exit_code_for(report: RunReport) -> int:
    if report.confirmation_required:
        return EXIT_CONFIRMATION_REQUIRED
    if report.interrupted:
        return EXIT_INTERRUPTED
    if report.failed_results:
        return EXIT_FAILURE
    return EXIT_SUCCESS


def _describe_request(request: Dict[str, Any]) -> str:
    arguments = dict(request.get('arguments', {}))
    if 'TemplateBody' in arguments:
        arguments['TemplateBody'] = f"<{len(arguments['TemplateBody'])} bytes>"
    parts = [f"{name}={value}" for name, value in arguments.items() if name != 'Parameters']
    for parameter in arguments.get('Parameters', []):
        value = '<previous>' if parameter.get('UsePreviousValue') else parameter.get('ParameterValue')
        parts.append(f"{parameter['ParameterKey']}={value}")
    return f"{request.get('operation')} " + ' '.join(parts)


def print_run_report(report: RunReport) -> None:
    title = report.action.value.title()
    print(f"\n📋 {title} Summary for {report.environment}{' (dry-run)' if report.dry_run else ''}:")
    print("=" * 50)

    for result in report.results:
        icon = OUTCOME_ICONS[result.outcome]
        status = result.raw_status or result.final_status.value
        print(f"{icon} {result.stack_key}: {result.outcome.value} ({status})")
        if result.error_detail:
            print(f"    {result.error_detail}")
        if result.request:
            print(f"    [dry-run] {_describe_request(result.request)}")

    print("=" * 50)

    if report.confirmation_required:
        print(f"🛑 Aborted: {report.abort_detail}")
        print(f"   Re-run with --confirm {report.environment} to proceed")
    elif report.interrupted:
        print("⚠️ Run interrupted; check the CloudFormation console for stacks still in progress")
    elif report.failed_results:
        failed = ', '.join(result.stack_key for result in report.failed_results)
        print(f"💥 {title} failed for {report.environment} (failed: {failed})")
    else:
        print(f"🎉 {title} completed successfully for {report.environment}!")


def print_status_report(report: StatusReport) -> None:
    print(f"\n📊 Stack Status for {report.environment}:")
    print("=" * 50)
    for entry in report.entries:
        observation = entry.observation
        icon = STATUS_ICONS[observation.status]
        raw = f" ({observation.raw_status})" if observation.raw_status else ""
        print(f"{icon} {entry.stack_key}: {observation.status.value}{raw}  [{observation.stack_name}]")
        if observation.status in (StackStatus.FAILED, StackStatus.UNKNOWN) and observation.reason:
            print(f"    {observation.reason}")
    print("=" * 50)


def print_stack_list(orchestrator: EnvironmentOrchestrator) -> None:
    print(f"\n📦 Stacks for {orchestrator.environment.name} (deployment order):")
    print("=" * 50)
    for position, stack in enumerate(orchestrator.registry.list(orchestrator.scope), start=1):
        marker = " ⚠️ stateful" if stack.stateful else ""
        print(f"{position}. {stack.key}: {stack.physical_name(orchestrator.environment)}{marker}")
        print(f"    template: {stack.template_ref}")
        print(f"    parameters: {stack.parameter_source(orchestrator.environment)}")
    print("=" * 50)


def _emit(report: Any, output: str, printer: Callable[[Any], None]) -> None:
    if output == 'json':
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        printer(report)


def run(argv: Optional[List[str]] = None, control_plane: Optional[CloudFormationControlPlane] = None) -> int:
    """Parse arguments, run one command and return the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        orchestrator = build_orchestrator(args, control_plane)
    except ConfigurationError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.dry_run and args.output == 'text':
        print("=== DRY-RUN MODE ===")
        print("No changes will be made to AWS\n")

    if args.command == 'list':
        print_stack_list(orchestrator)
        return EXIT_SUCCESS

    if args.command in MUTATING_COMMANDS and not args.dry_run:
        try:
            identity = orchestrator.operator.control_plane.verify_credentials()
            logger.info(f"Using AWS account {identity.get('Account')} as {identity.get('Arn')}")
        except ControlPlaneError as e:
            print(f"❌ Error: AWS credentials not configured or not usable: {e.message}", file=sys.stderr)
            print("Run: aws configure", file=sys.stderr)
            return EXIT_CONFIG_ERROR

    # The prompt runs before the stop handlers so Ctrl-C there still aborts immediately
    confirmation = None
    if args.command in ('destroy', 'destroy-all'):
        try:
            if args.command == 'destroy':
                stacks = [orchestrator.registry.resolve(args.stack_key)]
            else:
                stacks = orchestrator.registry.reverse(orchestrator.scope)
            confirmation = args.confirm or prompt_for_confirmation(orchestrator, stacks)
        except ConfigurationError as e:
            print(f"❌ Error: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        except KeyboardInterrupt:
            print("\n🛑 Aborted", file=sys.stderr)
            return EXIT_INTERRUPTED

    previous_handlers = install_signal_handlers(orchestrator)
    try:
        if args.command == 'status':
            _emit(orchestrator.status(), args.output, print_status_report)
            return EXIT_SUCCESS

        if args.command == 'validate':
            report = orchestrator.validate_all()
        elif args.command == 'deploy':
            report = orchestrator.deploy_stack(args.stack_key)
        elif args.command == 'deploy-all':
            report = orchestrator.deploy_all()
        elif args.command == 'destroy':
            report = orchestrator.destroy_stack(args.stack_key, confirmation)
        else:
            report = orchestrator.destroy_all(confirmation)
    except ConfigurationError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    finally:
        restore_signal_handlers(previous_handlers)

    _emit(report, args.output, print_run_report)
    return exit_code_for(report)


def main():
    """Console script entry point"""
    sys.exit(run())


if __name__ == "__main__":
    main()
