"""CLI entry point for postpro.

Handles argument parsing and dispatches to send, run-scenario or list mode.
Exit codes: 0 when every test passed, 1 when a test failed or a send was
aborted, 2 on configuration errors.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

from postpro.config_loader import build_session, load_workspace_config
from postpro.errors import ConfigError, PipelineBusyError, SendAborted
from postpro.logging_config import configure_logging
from postpro.orchestrator import PipelineResult, RequestOrchestrator
from postpro.scenario import ScenarioRunner, ScenarioRunResult
from postpro.session import Session
from postpro.transport import TransportExecutor

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def positive_float(value: str) -> float:
    """Parse and validate a positive float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


@dataclass
class SendArgs:
    """Parsed arguments for send mode."""

    config: Path
    collection: str
    request: str
    timeout: float | None
    log_level: str
    log_json: bool


@dataclass
class RunScenarioArgs:
    """Parsed arguments for run-scenario mode."""

    config: Path
    scenario: str
    collection: str | None
    timeout: float | None
    log_level: str
    log_json: bool


@dataclass
class ListArgs:
    """Parsed arguments for list mode."""

    config: Path
    log_level: str
    log_json: bool


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the workspace YAML file",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="WARNING",
        help="Log level for diagnostics on stderr (default: WARNING)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit logs as JSON lines",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with send, run-scenario and list subcommands."""
    parser = argparse.ArgumentParser(
        prog="postpro",
        description="Send HTTP requests from a workspace, run their scripts and report test results.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Execution mode")

    send_parser = subparsers.add_parser("send", help="Send one request and run its tests")
    _add_common_arguments(send_parser)
    send_parser.add_argument(
        "--collection",
        required=True,
        help="Collection name or id",
    )
    send_parser.add_argument(
        "--request",
        required=True,
        help="Request name or id within the collection",
    )
    send_parser.add_argument(
        "--timeout",
        type=positive_float,
        default=None,
        help="Request timeout in seconds (default: from settings)",
    )

    scenario_parser = subparsers.add_parser(
        "run-scenario",
        help="Send every request of a scenario in order",
    )
    _add_common_arguments(scenario_parser)
    scenario_parser.add_argument(
        "--scenario",
        required=True,
        help="Scenario name or id",
    )
    scenario_parser.add_argument(
        "--collection",
        default=None,
        help="Collection whose variables the scenario can read (name or id)",
    )
    scenario_parser.add_argument(
        "--timeout",
        type=positive_float,
        default=None,
        help="Per-request timeout in seconds (default: from settings)",
    )

    list_parser = subparsers.add_parser("list", help="List collections, requests and scenarios")
    _add_common_arguments(list_parser)

    return parser


def parse_args(args: list[str] | None = None) -> SendArgs | RunScenarioArgs | ListArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "send":
        return SendArgs(
            config=namespace.config,
            collection=namespace.collection,
            request=namespace.request,
            timeout=namespace.timeout,
            log_level=namespace.log_level,
            log_json=namespace.log_json,
        )
    elif namespace.command == "run-scenario":
        return RunScenarioArgs(
            config=namespace.config,
            scenario=namespace.scenario,
            collection=namespace.collection,
            timeout=namespace.timeout,
            log_level=namespace.log_level,
            log_json=namespace.log_json,
        )
    elif namespace.command == "list":
        return ListArgs(
            config=namespace.config,
            log_level=namespace.log_level,
            log_json=namespace.log_json,
        )
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parsed = parse_args(argv)
    configure_logging(parsed.log_level, parsed.log_json)

    try:
        config = load_workspace_config(parsed.config)
        session = build_session(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        if isinstance(parsed, SendArgs):
            return run_send(parsed, session)
        elif isinstance(parsed, RunScenarioArgs):
            return run_scenario(parsed, session)
        else:
            return run_list(session)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_FAILED
    finally:
        session.close()


def _timeout_ms(timeout: float | None) -> int | None:
    return int(timeout * 1000) if timeout is not None else None


def run_send(args: SendArgs, session: Session) -> int:
    """Run send mode."""
    collection = session.find_collection(args.collection)
    if collection is None:
        print(f"Error: Collection '{args.collection}' not found", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    request = next((r for r in collection.requests if r.id == args.request), None)
    if request is None:
        request = next((r for r in collection.requests if r.name == args.request), None)
    if request is None:
        print(
            f"Error: Request '{args.request}' not found in collection '{collection.name}'",
            file=sys.stderr,
        )
        return EXIT_CONFIG_ERROR

    session.store.select_collection(collection.id)
    session.store.load_from_storage()

    with TransportExecutor(session.settings) as executor:
        orchestrator = RequestOrchestrator(session, executor)
        try:
            result = orchestrator.send(request, timeout_ms=_timeout_ms(args.timeout))
        except (SendAborted, PipelineBusyError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED

    _print_result(request.name or request.id, result)
    return EXIT_OK if result.all_passed else EXIT_FAILED


def run_scenario(args: RunScenarioArgs, session: Session) -> int:
    """Run run-scenario mode."""
    scenario = session.find_scenario(args.scenario)
    if scenario is None:
        print(f"Error: Scenario '{args.scenario}' not found", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.collection is not None:
        collection = session.find_collection(args.collection)
        if collection is None:
            print(f"Error: Collection '{args.collection}' not found", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        session.store.select_collection(collection.id)
        session.store.load_from_storage()

    with TransportExecutor(session.settings) as executor:
        runner = ScenarioRunner(RequestOrchestrator(session, executor))
        outcome = runner.run(scenario, timeout_ms=_timeout_ms(args.timeout))

    _print_scenario(outcome)
    return EXIT_OK if outcome.success else EXIT_FAILED


def run_list(session: Session) -> int:
    """Run list mode."""
    for collection in session.collections:
        print(f"{collection.name or collection.id} [{collection.id}]")
        for request in collection.requests:
            print(f"  {request.method.upper():7} {request.name or request.id} [{request.id}]")
            print(f"          {request.url}")
        print()

    if session.scenarios:
        print("Scenarios:")
        for scenario in session.scenarios:
            print(f"  {scenario.name or scenario.id} [{scenario.id}] ({len(scenario.requests)} steps)")
        print()

    print(f"Total: {len(session.collections)} collections, {len(session.scenarios)} scenarios")
    return EXIT_OK


# =============================================================================
# Output
# =============================================================================


def _print_result(label: str, result: PipelineResult) -> None:
    response = result.response
    print(f"{result.request.method.upper()} {result.request.url}")
    print(
        f"  {response.status} {response.status_text} | "
        f"{response.duration:.0f} ms | {response.size} bytes"
    )
    for warning in result.warnings:
        print(f"  [WARN] {warning.line}: {warning.message}")
    for test in result.test_results:
        if test.passed:
            print(f"  [PASS] {test.name}")
        else:
            print(f"  [FAIL] {test.name}: {test.error}")
    print(f"{label}: {result.passed_count} passed, {result.failed_count} failed")


def _print_scenario(outcome: ScenarioRunResult) -> None:
    print(f"Scenario: {outcome.scenario_name or outcome.scenario_id}")
    for index, step in enumerate(outcome.steps, start=1):
        label = f"[{index}/{len(outcome.steps)}] {step.request_name or step.request_id}"
        if step.error is not None:
            print(f"{label}: ABORTED - {step.error}")
        elif step.result is not None:
            _print_result(label, step.result)
        print()
    print(
        f"Total: {outcome.passed_tests} passed, {outcome.failed_tests} failed, "
        f"{outcome.aborted_steps} aborted"
    )


if __name__ == "__main__":
    sys.exit(main())
