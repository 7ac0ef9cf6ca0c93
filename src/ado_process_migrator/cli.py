"""
Command-line interface for the process migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

from . import ado_utils
from .config import MigrationConfig, MigrationMode, load_config, resolve_tokens
from .events import ProgressEvent
from .exceptions import ConfigError
from .history import RunHistoryStore
from .orchestrator import MigrationOrchestrator, RunResult
from .planner import MigrationPlan
from .utils import setup_logging
from .writer import Outcome

logger = logging.getLogger(__name__)


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Export, import or migrate Azure DevOps inherited processes")

    _ = parser.add_argument("--mode", choices=[m.value for m in MigrationMode], help="Run mode")
    _ = parser.add_argument("--config", help="Path to the JSON run configuration")
    _ = parser.add_argument("--file", help="Process file path (overrides the config file)")

    _ = parser.add_argument(
        "--overwrite-picklist",
        action="store_true",
        help="Replace target picklists instead of refusing to drop values",
    )
    _ = parser.add_argument(
        "--continue-on-rule-import-failure",
        action="store_true",
        help="Skip rules (and form contributions) whose identities cannot be resolved",
    )
    _ = parser.add_argument(
        "--continue-on-identity-default-value-failure",
        action="store_true",
        help="Skip fields whose identity default value cannot be resolved",
    )
    _ = parser.add_argument(
        "--skip-import-form-contributions",
        action="store_true",
        help="Do not import extension contributions on work item forms",
    )

    _ = parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Read both sides and print the planned changes and conflicts without applying them",
    )
    _ = parser.add_argument("--history-file", help="Record the run in this JSON history file")
    _ = parser.add_argument(
        "--list-processes",
        metavar="URL",
        help="List the processes of an organization and exit (also checks the URL and token)",
    )

    _ = parser.add_argument(
        "--source-pass-token", help="Path for the source token in pass utility (default: azure-devops/source/token)"
    )
    _ = parser.add_argument(
        "--target-pass-token", help="Path for the target token in pass utility (default: azure-devops/target/token)"
    )

    _ = parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase console verbosity (-v for info, -vv for debug)",
    )

    args = parser.parse_args()
    if not args.list_processes and (not args.mode or not args.config):
        parser.error("--mode and --config are required unless --list-processes is given")
    return args


class ConsoleProgress:
    """Prints progress events as they arrive."""

    def on_event(self, event: object) -> None:
        if isinstance(event, ProgressEvent):
            print(f"[{event.completed}/{event.total}] {event.step}")


def _print_run_report(result: RunResult) -> None:
    print("=" * 60)
    print(f"Run {result.id} ({result.mode})")
    if result.source_url or result.source_process_name:
        print(f"Source: {result.source_url or '-'} / {result.source_process_name or '-'}")
    if result.target_url or result.target_process_name:
        print(f"Target: {result.target_url or '-'} / {result.target_process_name or '-'}")

    status = "PASSED" if result.success else "FAILED"
    print(f"Status: {status} ({result.status})")
    print(
        f"Operations: {len(result.outcomes)} total, {result.count(Outcome.APPLIED)} applied, "
        f"{result.count(Outcome.SKIPPED)} skipped, {result.count(Outcome.FAILED)} failed"
    )
    print(f"Duration: {result.duration_ms} ms")

    noteworthy = [o for o in result.outcomes if o.outcome is Outcome.FAILED or o.tolerated]
    for outcome in noteworthy:
        print(f"  - {outcome.outcome}: {outcome.operation.describe()}: {outcome.error}")
    if result.error:
        print(f"Error: {result.error}")
    print("=" * 60)


def _print_plan(plan: MigrationPlan) -> None:
    print("=" * 60)
    print(f"Planned operations: {len(plan)}")
    for kind, count in plan.count_by_kind().items():
        print(f"  {kind}: {count}")
    if plan.blocking_issues:
        print(f"Blocking issues: {len(plan.blocking_issues)}")
        for issue in plan.blocking_issues:
            print(f"  - {issue.kind} on {issue.work_item_type}: {issue.message}")
    else:
        print("No blocking issues")
    print("=" * 60)


def _build_config(args: argparse.Namespace) -> MigrationConfig:
    config = load_config(args.config, args.mode)

    options = config.options
    options = replace(
        options,
        overwrite_picklist=options.overwrite_picklist or args.overwrite_picklist,
        continue_on_rule_import_failure=options.continue_on_rule_import_failure
        or args.continue_on_rule_import_failure,
        continue_on_identity_default_value_failure=options.continue_on_identity_default_value_failure
        or args.continue_on_identity_default_value_failure,
        skip_import_form_contributions=options.skip_import_form_contributions or args.skip_import_form_contributions,
    )
    config = replace(config, options=options, file_path=args.file or config.file_path)

    return resolve_tokens(
        config,
        source_pass_path=getattr(args, "source_pass_token", None),
        target_pass_path=getattr(args, "target_pass_token", None),
    )


def _list_processes(url: str, pass_path: str | None) -> None:
    client = ado_utils.get_client(url, ado_utils.get_token("source", pass_path=pass_path))
    for process in client.list_processes():
        default = " (default)" if process.get("isDefault") else ""
        print(f"{process['id']}  {process['name']}{default}")


def _run_interruptible(orchestrator: MigrationOrchestrator, config: MigrationConfig) -> RunResult:
    # Ctrl-C requests cancellation; the operation in flight still completes.
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="migration-run") as pool:
        future = pool.submit(orchestrator.start, config)
        try:
            return future.result()
        except KeyboardInterrupt:
            orchestrator.cancel()
            return future.result()


def main() -> None:
    """Main entry point."""
    args = parse_arguments()

    setup_logging(verbosity=args.verbose)

    try:
        if args.list_processes:
            _list_processes(args.list_processes, args.source_pass_token)
            sys.exit(0)

        config = _build_config(args)
        history = RunHistoryStore(args.history_file) if args.history_file else None

        orchestrator = MigrationOrchestrator(history=history)
        orchestrator.subscribe(ConsoleProgress())

        if args.dry_run:
            plan = orchestrator.preview(config)
            _print_plan(plan)
            sys.exit(1 if plan.blocking_issues else 0)

        result = _run_interruptible(orchestrator, config)
        _print_run_report(result)

        if result.success:
            sys.exit(0)
        else:
            sys.exit(1)

    except ConfigError as e:
        logger.error(str(e))  # noqa: TRY400
        sys.exit(1)
    except Exception:
        logger.exception("Migration failed")
        sys.exit(1)
