"""
Diagnostics for hosts where bubblewrap cannot create its namespaces.

A single cheap self-test runs first. Only when it fails are the host checks
consulted to explain why, so a working host pays for one short process spawn.
"""

import logging
import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

CONTAINER_CGROUP_MARKERS = ("docker", "kubepods", "lxc", "containerd", "libpod")


class BlockerKind(str, Enum):
    """Why the isolation primitive cannot start."""

    NONE = "none"
    MAC_USERNS = "mandatory-access-control-userns"
    KERNEL_USERNS_DISABLED = "kernel-userns-disabled"
    MAC_ENFORCING = "mandatory-access-control-enforcing"
    CONTAINERIZED_HOST = "containerized-host"
    UNKNOWN = "unknown"


DISABLE_HINT = (
    "To run this command without a sandbox instead, set AGENT_SANDBOX=false:\n"
    "  AGENT_SANDBOX=false agent-sandbox <command>"
)

REMEDIATIONS = {
    BlockerKind.MAC_USERNS: (
        "AppArmor restricts unprivileged user namespaces on this host.\n"
        "Allow them for the current boot with:\n"
        "  sudo sysctl -w kernel.apparmor_restrict_unprivileged_userns=0\n"
        "or make it permanent:\n"
        "  echo 'kernel.apparmor_restrict_unprivileged_userns=0' | "
        "sudo tee /etc/sysctl.d/60-agent-sandbox.conf"
    ),
    BlockerKind.KERNEL_USERNS_DISABLED: (
        "The kernel has unprivileged user namespaces disabled.\n"
        "Enable them with:\n"
        "  sudo sysctl -w kernel.unprivileged_userns_clone=1\n"
        "  sudo sysctl -w user.max_user_namespaces=15000"
    ),
    BlockerKind.MAC_ENFORCING: (
        "SELinux is enforcing and denies namespace creation for bwrap.\n"
        "Inspect recent denials with:\n"
        "  sudo ausearch -m avc -ts recent\n"
        "or switch to permissive mode for this boot:\n"
        "  sudo setenforce 0"
    ),
    BlockerKind.CONTAINERIZED_HOST: (
        "This looks like a container; nested namespaces are usually blocked.\n"
        "Run the container with user namespaces allowed, for example:\n"
        "  docker run --security-opt seccomp=unconfined "
        "--security-opt apparmor=unconfined ...\n"
        "or rely on the container itself for isolation."
    ),
    BlockerKind.UNKNOWN: (
        "bubblewrap failed for an unrecognized reason. "
        "Re-run with AGENT_SANDBOX_DEBUG=true for details."
    ),
}


class BlockerReport(BaseModel):
    """Result of diagnosing the host."""

    kind: BlockerKind
    diagnostic_output: str = ""

    @property
    def blocked(self) -> bool:
        return self.kind is not BlockerKind.NONE

    @property
    def remediation(self) -> str:
        """Static remediation text for this blocker kind."""
        if not self.blocked:
            return ""
        return f"{REMEDIATIONS[self.kind]}\n\n{DISABLE_HINT}"


def _read_flag(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


class BlockerDiagnostics:
    """Self-test bubblewrap and classify the failure if there is one."""

    def __init__(
        self,
        bwrap: str,
        proc_root: Path = Path("/proc"),
        sys_root: Path = Path("/sys"),
        root: Path = Path("/"),
        environ: Optional[Mapping[str, str]] = None,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
    ):
        """
        Args:
            bwrap: Path of the bubblewrap binary to self-test
            proc_root: Where /proc lives (tests point this at a fake tree)
            sys_root: Where /sys lives
            root: Filesystem root used for container marker files
            environ: Environment to inspect (default: os.environ)
            runner: subprocess.run replacement (mainly for testing)
        """
        self.bwrap = bwrap
        self.proc_root = Path(proc_root)
        self.sys_root = Path(sys_root)
        self.root = Path(root)
        self.environ = os.environ if environ is None else environ
        self.runner = runner or subprocess.run

    def self_test_command(self) -> list[str]:
        return [
            self.bwrap,
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
            "--unshare-all",
            "--share-net",
            "--die-with-parent",
            "--",
            "true",
        ]

    def self_test(self) -> tuple[bool, str]:
        """Run bubblewrap once with a trivial command."""
        try:
            result = self.runner(
                self.self_test_command(),
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return False, str(e)
        output = (result.stderr or "").strip()
        logger.debug(f"bwrap self-test exited {result.returncode}: {output}")
        return result.returncode == 0, output

    def apparmor_restricts_userns(self) -> bool:
        flag = _read_flag(
            self.proc_root / "sys/kernel/apparmor_restrict_unprivileged_userns"
        )
        return flag == "1"

    def kernel_userns_disabled(self) -> bool:
        if _read_flag(self.proc_root / "sys/kernel/unprivileged_userns_clone") == "0":
            return True
        return _read_flag(self.proc_root / "sys/user/max_user_namespaces") == "0"

    def selinux_enforcing(self) -> bool:
        return _read_flag(self.sys_root / "fs/selinux/enforce") == "1"

    def in_container(self) -> bool:
        if self.environ.get("container"):
            return True
        for marker in (".dockerenv", "run/.containerenv"):
            if (self.root / marker).exists():
                return True
        cgroup = _read_flag(self.proc_root / "1/cgroup") or ""
        return any(marker in cgroup for marker in CONTAINER_CGROUP_MARKERS)

    def classify(self, output: str = "") -> BlockerReport:
        """Check the host in priority order; first match wins."""
        checks = [
            (BlockerKind.MAC_USERNS, self.apparmor_restricts_userns),
            (BlockerKind.KERNEL_USERNS_DISABLED, self.kernel_userns_disabled),
            (BlockerKind.MAC_ENFORCING, self.selinux_enforcing),
            (BlockerKind.CONTAINERIZED_HOST, self.in_container),
        ]
        for kind, check in checks:
            if check():
                return BlockerReport(kind=kind, diagnostic_output=output)
        return BlockerReport(kind=BlockerKind.UNKNOWN, diagnostic_output=output)

    def diagnose(self) -> BlockerReport:
        ok, output = self.self_test()
        if ok:
            return BlockerReport(kind=BlockerKind.NONE)
        report = self.classify(output)
        logger.debug(f"Sandbox blocker: {report.kind.value}")
        return report
