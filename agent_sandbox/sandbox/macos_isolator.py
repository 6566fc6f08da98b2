"""
macOS filesystem isolation using sandbox-exec.

The profile never contains a filesystem path. Every path is passed as a named
``-D`` parameter and referenced with ``(param "NAME")``, so odd characters in
paths cannot change the meaning of the policy.
"""

import logging
import os
import shutil
from typing import Optional

from .base import (
    BackendKind,
    FilesystemIsolator,
    MountMode,
    MountSpec,
    SandboxInvocation,
    SandboxPlan,
)

logger = logging.getLogger(__name__)

SANDBOX_EXEC = "/usr/bin/sandbox-exec"

# Personal credential directories hidden unless a mount re-exposes them
DENIED_HOME_DIRS = [".ssh", ".aws", ".gnupg", ".config/gcloud"]

BASE_PROFILE = """(version 1)
(deny default)

;; Allow basic system operations
(allow process-exec*)
(allow process-fork)
(allow signal (target same-sandbox))
(allow sysctl-read)
(allow mach-lookup)
(allow ipc-posix-shm)
(allow pseudo-tty)
(allow file-ioctl)
(allow user-preference-read)

;; Reads are broad; writes are limited to the parameters below
(allow file-read*)

(allow file-write*
    (literal "/dev/null")
    (literal "/dev/zero")
    (literal "/dev/dtracehelper")
    (regex #"^/dev/tty")
    (regex #"^/dev/fd/")
)
"""


def canonicalize(path: str) -> str:
    """Resolve symlinks; /var and /tmp are symlinks into /private on macOS."""
    return os.path.realpath(os.path.expanduser(path))


class SandboxExecIsolator(FilesystemIsolator):
    """Filesystem isolation using sandbox-exec on macOS."""

    backend = BackendKind.MACOS_MAC_POLICY
    needs_host_workspace = True

    def __init__(self, home: Optional[str] = None, tmpdir: Optional[str] = None):
        """
        Args:
            home: Home directory used for credential deny rules (default: $HOME)
            tmpdir: Per-user temp directory made writable (default: $TMPDIR)
        """
        self.home = home or os.environ.get("HOME") or os.path.expanduser("~")
        self.tmpdir = tmpdir or os.environ.get("TMPDIR") or "/tmp"

    def is_available(self) -> bool:
        """Check if sandbox-exec is available on the system."""
        return shutil.which("sandbox-exec") is not None

    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        return "macos"

    @property
    def binary(self) -> str:
        return shutil.which("sandbox-exec") or SANDBOX_EXEC

    def prepare(self, plan: SandboxPlan, workspace: Optional[str] = None):
        """Expose the host workspace read-write at its canonical path."""
        super().prepare(plan, workspace)
        if workspace:
            plan.work_dir = canonicalize(workspace)
            plan.add_mount(
                MountSpec(plan.work_dir, mode=MountMode.READ_WRITE, required=True)
            )

    def _denied_dirs(self, plan: SandboxPlan) -> list[str]:
        denied = []
        for relative in DENIED_HOME_DIRS:
            path = os.path.join(self.home, relative)
            spec = MountSpec(path, mode=MountMode.READ_ONLY)
            if plan.find_cover(spec) is None:
                denied.append(path)
        return denied

    def _generate_sandbox_profile(self, plan: SandboxPlan) -> tuple[str, dict[str, str]]:
        """
        Generate a sandbox profile and the parameters it references.

        Args:
            plan: The sandbox plan to enforce

        Returns:
            Tuple of (profile, parameters)
        """
        params: dict[str, str] = {}
        profile = BASE_PROFILE

        if plan.network_enabled:
            profile += "\n;; Network is all-or-nothing\n(allow network*)\n"

        denied = self._denied_dirs(plan)
        if denied:
            profile += "\n;; Personal credentials\n(deny file-read* file-write*\n"
            for i, path in enumerate(denied):
                name = f"DENY_{i}"
                params[name] = canonicalize(path)
                profile += f'    (subpath (param "{name}"))\n'
            profile += ")\n"

        # Read rules come after the deny so agent-scoped keys stay readable
        if plan.read_only:
            profile += "\n(allow file-read*\n"
            for i, spec in enumerate(plan.read_only):
                name = f"RO_{i}"
                params[name] = canonicalize(spec.source)
                profile += f'    (subpath (param "{name}"))\n'
            profile += ")\n"

        params["PROJECT_DIR"] = canonicalize(plan.working_directory)
        params["TMPDIR"] = canonicalize(self.tmpdir)
        writable = ["PROJECT_DIR", "TMPDIR"]
        for i, spec in enumerate(plan.read_write):
            name = f"RW_{i}"
            params[name] = canonicalize(spec.source)
            writable.append(name)

        profile += "\n(allow file-read* file-write*\n"
        for name in writable:
            profile += f'    (subpath (param "{name}"))\n'
        profile += ")\n"

        return profile, params

    def render(self, plan: SandboxPlan, command: list[str]) -> SandboxInvocation:
        """
        Render a plan into a sandbox-exec command line.

        Args:
            plan: The sandbox plan to enforce
            command: The target command and its arguments

        Returns:
            SandboxInvocation running ``command`` under sandbox-exec
        """
        profile, params = self._generate_sandbox_profile(plan)

        sandbox_args = [self.binary, "-p", profile]
        for name, value in params.items():
            sandbox_args.append(f"-D{name}={value}")
        sandbox_args.append("--")
        sandbox_args.extend(command)

        env = dict(os.environ)
        env.update(plan.environment)
        return SandboxInvocation(argv=sandbox_args, env=env, profile=profile)
