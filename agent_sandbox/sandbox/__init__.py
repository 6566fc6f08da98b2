"""
Sandboxing module for agent-sandbox.

Runs an untrusted command (usually a coding agent) with filesystem access
limited to the current project and the paths it needs to work.

Supports:
- Linux: bubblewrap (bwrap), with diagnostics for hosts that block it
- macOS: sandbox-exec with a parameterized profile
- Other platforms: direct execution with a warning
"""

from .base import BackendKind, MountMode, MountSpec, SandboxInvocation, SandboxPlan
from .config import SandboxConfig, parse_path_list
from .diagnostics import BlockerDiagnostics, BlockerKind, BlockerReport
from .discovery import discover_mounts
from .filesystem_isolation import get_filesystem_isolator
from .launcher import SandboxLauncher, launch

__all__ = [
    "BackendKind",
    "BlockerDiagnostics",
    "BlockerKind",
    "BlockerReport",
    "MountMode",
    "MountSpec",
    "SandboxConfig",
    "SandboxInvocation",
    "SandboxLauncher",
    "SandboxPlan",
    "discover_mounts",
    "get_filesystem_isolator",
    "launch",
    "parse_path_list",
]
