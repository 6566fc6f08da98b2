"""Command line entry point: ``agent-sandbox [options] <command> [args...]``."""

import argparse
import shlex
import sys
from typing import Optional

from rich.markup import escape
from rich.table import Table

from agent_sandbox.messaging import (
    emit_error,
    emit_info,
    emit_panel,
    emit_success,
    get_console,
    setup_logging,
)
from agent_sandbox.sandbox import SandboxConfig, SandboxLauncher
from agent_sandbox.sandbox.errors import SandboxBlockedError, SandboxError

USAGE_EXIT_CODE = 2
# Same convention as the shell for a command that cannot be found
COMMAND_NOT_FOUND_EXIT_CODE = 127


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-sandbox",
        description=(
            "Run a command (usually a coding agent) with access limited to the "
            "current project and the paths it needs."
        ),
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="diagnose the host and show settings without running anything",
    )
    parser.add_argument(
        "--print-plan",
        action="store_true",
        help="print the mounts and the rendered invocation, then exit",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command to run")
    return parser


def _print_status(launcher: SandboxLauncher):
    table = Table(title="agent-sandbox", show_header=False)
    for key, value in launcher.get_status().items():
        table.add_row(key, escape(str(value)))
    get_console().print(table)


def run_check(launcher: SandboxLauncher) -> int:
    _print_status(launcher)
    reason = launcher.should_bypass()
    if reason:
        emit_info(reason)
        return 0
    report = launcher.diagnose()
    if report.blocked:
        raise SandboxBlockedError(report)
    emit_success("Sandbox self-test passed")
    return 0


def run_print_plan(launcher: SandboxLauncher, command: list[str]) -> int:
    with launcher.workspace() as workspace:
        plan, invocation = launcher.assemble(command or ["true"], workspace)
    for line in plan.describe():
        print(line)
    if invocation.profile:
        print(invocation.profile)
    print(shlex.join(invocation.argv))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = SandboxConfig.from_environment()
    setup_logging(config.debug)
    launcher = SandboxLauncher(config=config)

    try:
        if args.check:
            return run_check(launcher)
        if args.print_plan:
            return run_print_plan(launcher, args.command)
        if not args.command:
            parser.print_usage(sys.stderr)
            return USAGE_EXIT_CODE
        launcher.launch(args.command)
    except SandboxBlockedError as e:
        emit_panel(
            e.report.remediation,
            title=f"Sandbox blocked: {e.report.kind.value}",
        )
        if e.report.diagnostic_output:
            emit_info(f"[dim]bwrap said: {escape(e.report.diagnostic_output)}[/dim]")
        return e.exit_code
    except SandboxError as e:
        emit_error(escape(str(e)))
        return e.exit_code
    except FileNotFoundError as e:
        emit_error(escape(f"{e.filename or args.command[0]}: {e.strerror}"))
        return COMMAND_NOT_FOUND_EXIT_CODE
    # Only reached when exec was mocked out
    return 0


if __name__ == "__main__":
    sys.exit(main())
