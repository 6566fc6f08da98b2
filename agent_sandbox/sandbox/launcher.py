"""
Top-level orchestration of a sandboxed launch.

Dispatch picks the backend, Diagnose (Linux only) makes sure bubblewrap can
start, and Assemble&Exec builds the plan, renders it and replaces the current
process. Failures before the exec raise ``SandboxError`` subclasses and the
target command never runs.
"""

import contextlib
import logging
import shlex
from typing import Callable, Optional

from rich.markup import escape

from agent_sandbox.messaging import emit_info, emit_warning

from .base import BackendKind, FilesystemIsolator, SandboxInvocation, SandboxPlan
from .config import IN_SANDBOX_VAR, SandboxConfig
from .diagnostics import BlockerDiagnostics, BlockerKind, BlockerReport
from .discovery import discover_mounts
from .errors import IsolatorUnavailableError, SandboxBlockedError
from .filesystem_isolation import NoOpIsolator, get_filesystem_isolator
from .linux_isolator import NIX_STORE_BWRAP_GLOB
from .workspace import TemporaryWorkspace

logger = logging.getLogger(__name__)


class SandboxLauncher:
    """
    Runs a command inside the sandbox, or explains why it cannot.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        isolator: Optional[FilesystemIsolator] = None,
        diagnostics_factory: Optional[Callable[[str], BlockerDiagnostics]] = None,
        git_runner=None,
    ):
        """
        Initialize the launcher.

        Args:
            config: Sandbox configuration (read from the environment if None)
            isolator: Backend to use (selected for this platform if None)
            diagnostics_factory: Builds diagnostics for a bwrap binary path
            git_runner: subprocess.run replacement for git queries
        """
        self.config = config or SandboxConfig()
        self._isolator = isolator
        self.diagnostics_factory = diagnostics_factory or BlockerDiagnostics
        self.git_runner = git_runner

    def _get_isolator(self) -> FilesystemIsolator:
        """Get or create the filesystem isolator."""
        if self._isolator is None:
            self._isolator = get_filesystem_isolator(config=self.config)
            logger.info(
                f"Using filesystem isolator: {self._isolator.__class__.__name__} "
                f"(platform: {self._isolator.get_platform()})"
            )
        return self._isolator

    def should_bypass(self) -> Optional[str]:
        """Return why the command should run without a sandbox, if it should."""
        if not self.config.enabled:
            return "sandboxing disabled (AGENT_SANDBOX=false)"
        if self.config.already_sandboxed:
            return f"already inside a sandbox ({IN_SANDBOX_VAR} is set)"
        if self._get_isolator().backend is BackendKind.NONE:
            return "no isolation backend for this platform; running unsandboxed"
        return None

    def diagnose(self) -> BlockerReport:
        """Check that the isolation primitive can start on this host."""
        isolator = self._get_isolator()
        if not isolator.is_available():
            raise IsolatorUnavailableError(self._unavailable_message(isolator))
        if isolator.backend is not BackendKind.LINUX_NAMESPACE:
            return BlockerReport(kind=BlockerKind.NONE)
        return self.diagnostics_factory(isolator.binary).diagnose()

    def _unavailable_message(self, isolator: FilesystemIsolator) -> str:
        if isolator.backend is BackendKind.LINUX_NAMESPACE:
            return (
                "bubblewrap (bwrap) not found. Install it to use agent sandboxing.\n"
                f"Searched: BWRAP_PATH={self.config.bwrap_path or 'unset'}, PATH, "
                f"and {NIX_STORE_BWRAP_GLOB}"
            )
        return "sandbox-exec not found. This backend requires macOS."

    def build_plan(self, workspace: Optional[str] = None) -> SandboxPlan:
        """Assemble the mount plan for the current project."""
        isolator = self._get_isolator()
        plan = SandboxPlan(working_directory=self.config.cwd)
        isolator.prepare(plan, workspace)
        discover_mounts(plan, self.config, runner=self.git_runner)

        plan.environment["PATH"] = self.config.search_path
        plan.environment[IN_SANDBOX_VAR] = "1"
        if plan.work_dir:
            plan.environment["AGENT_WORK_DIR"] = plan.work_dir
        return plan

    def assemble(
        self, command: list[str], workspace: Optional[TemporaryWorkspace] = None
    ) -> tuple[SandboxPlan, SandboxInvocation]:
        """Build the plan and render it into a ready-to-exec invocation."""
        isolator = self._get_isolator()
        plan = self.build_plan(workspace.path if workspace else None)
        invocation = isolator.render(plan, command)
        if workspace is not None:
            invocation.argv = workspace.wrap(invocation.argv)
        if self.config.debug:
            self._print_debug(plan, invocation)
        return plan, invocation

    def _print_debug(self, plan: SandboxPlan, invocation: SandboxInvocation):
        emit_info(f"=== Sandbox plan ({plan.backend.value}) ===")
        for line in plan.describe():
            emit_info(f"  {escape(line)}")
        if invocation.profile:
            emit_info("=== Sandbox profile ===")
            emit_info(escape(invocation.profile))
        emit_info("=== Invocation ===")
        emit_info(escape(shlex.join(invocation.argv)))

    def workspace(self):
        """Context manager for the host workspace, if the backend needs one."""
        if self._get_isolator().needs_host_workspace:
            return TemporaryWorkspace()
        return contextlib.nullcontext()

    def launch(self, command: list[str]):
        """
        Replace the current process with ``command`` running in the sandbox.

        Does not return on success. Raises IsolatorUnavailableError or
        SandboxBlockedError before anything is executed.
        """
        if not command:
            raise ValueError("No command given")

        reason = self.should_bypass()
        if reason:
            emit_warning(reason)
            self._exec_direct(command)
            return

        report = self.diagnose()
        if report.blocked:
            raise SandboxBlockedError(report)

        isolator = self._get_isolator()
        with self.workspace() as workspace:
            _, invocation = self.assemble(command, workspace)
            isolator.execute(invocation)

    def _exec_direct(self, command: list[str]):
        noop = NoOpIsolator()
        plan = SandboxPlan(working_directory=self.config.cwd)
        noop.execute(noop.render(plan, command))

    def get_status(self) -> dict:
        """
        Get the current status of sandboxing.

        Returns:
            Dictionary with status information
        """
        isolator = self._get_isolator()

        return {
            **self.config.get_status(),
            "isolator": isolator.__class__.__name__,
            "isolator_platform": isolator.get_platform(),
            "isolator_available": isolator.is_available(),
        }


def launch(command: list[str], config: Optional[SandboxConfig] = None):
    """Run ``command`` sandboxed; see ``SandboxLauncher.launch``."""
    SandboxLauncher(config=config).launch(command)
