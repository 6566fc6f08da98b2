"""
Linux filesystem isolation using bubblewrap (bwrap).
"""

import glob
import logging
import os
import shutil
from typing import Optional

from .base import (
    BackendKind,
    FilesystemIsolator,
    MountMode,
    SandboxInvocation,
    SandboxPlan,
)

logger = logging.getLogger(__name__)

NIX_STORE_BWRAP_GLOB = "/nix/store/*-bubblewrap-*/bin/bwrap"
SANDBOX_TMP = "/tmp"
SANDBOX_WORK_DIR = "/tmp/agent-work"


def find_bwrap(
    override: Optional[str] = None,
    search_path: Optional[str] = None,
    store_glob: str = NIX_STORE_BWRAP_GLOB,
) -> Optional[str]:
    """
    Locate the bubblewrap binary.

    Order: explicit override, then the search path, then the Nix store.
    """
    if override and os.path.isfile(override) and os.access(override, os.X_OK):
        return override
    found = shutil.which("bwrap", path=search_path)
    if found:
        return found
    for candidate in sorted(glob.glob(store_glob)):
        if os.access(candidate, os.X_OK):
            return candidate
    return None


class BubblewrapIsolator(FilesystemIsolator):
    """Filesystem isolation using bubblewrap on Linux."""

    backend = BackendKind.LINUX_NAMESPACE

    def __init__(self, bwrap_path: Optional[str] = None, search_path: Optional[str] = None):
        """
        Args:
            bwrap_path: Explicit bubblewrap binary (BWRAP_PATH)
            search_path: PATH used to look bwrap up (default: $PATH)
        """
        self.bwrap_path = bwrap_path
        self.search_path = search_path
        self._binary: Optional[str] = None

    @property
    def binary(self) -> Optional[str]:
        if self._binary is None:
            self._binary = find_bwrap(self.bwrap_path, self.search_path)
        return self._binary

    def is_available(self) -> bool:
        """Check if bwrap is available on the system."""
        return self.binary is not None

    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        return "linux"

    def prepare(self, plan: SandboxPlan, workspace: Optional[str] = None):
        """The workspace is a tmpfs inside the mount namespace."""
        super().prepare(plan, workspace)
        plan.work_dir = SANDBOX_WORK_DIR

    def render(self, plan: SandboxPlan, command: list[str]) -> SandboxInvocation:
        """
        Render a plan into a bwrap command line.

        Args:
            plan: The sandbox plan to enforce
            command: The target command and its arguments

        Returns:
            SandboxInvocation running ``command`` under bwrap
        """
        bwrap_args = [self.binary or "bwrap"]

        # Core isolation settings
        bwrap_args.extend([
            "--unshare-all",  # mount, pid, uts, ipc, user, cgroup, net
            "--die-with-parent",  # Kill sandbox when parent dies
        ])
        if plan.network_enabled:
            bwrap_args.append("--share-net")

        bwrap_args.extend([
            "--dev", "/dev",
            "--proc", "/proc",
            "--tmpfs", SANDBOX_TMP,
        ])
        if plan.work_dir:
            bwrap_args.extend(["--dir", plan.work_dir])

        # Remaps go after every identity bind so no ancestor bind hides them
        mounts = list(plan.mounts())
        ordered = [s for s in mounts if not s.is_remap] + [s for s in mounts if s.is_remap]
        for spec in ordered:
            if spec.is_remap:
                bwrap_args.extend(["--dir", os.path.dirname(spec.destination)])
            flag = "--bind" if spec.mode is MountMode.READ_WRITE else "--ro-bind"
            bwrap_args.extend([flag, spec.source, spec.destination])

        bwrap_args.extend(["--chdir", plan.working_directory])

        for name, value in plan.environment.items():
            bwrap_args.extend(["--setenv", name, value])

        bwrap_args.append("--")
        bwrap_args.extend(command)

        # bwrap passes its own environment through; --setenv adds the rest
        return SandboxInvocation(argv=bwrap_args, env=dict(os.environ))
