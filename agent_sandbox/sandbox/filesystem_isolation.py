"""
Factory for creating platform-specific filesystem isolators.
"""

import os
from typing import Optional

from .base import (
    BackendKind,
    FilesystemIsolator,
    SandboxInvocation,
    SandboxPlan,
    get_current_platform,
)
from .config import SandboxConfig
from .linux_isolator import BubblewrapIsolator
from .macos_isolator import SandboxExecIsolator


class NoOpIsolator(FilesystemIsolator):
    """No-op isolator for platforms without sandboxing or when disabled."""

    backend = BackendKind.NONE

    def is_available(self) -> bool:
        """Always available as a fallback."""
        return True

    def get_platform(self) -> str:
        """Platform-agnostic."""
        return "noop"

    def render(self, plan: SandboxPlan, command: list[str]) -> SandboxInvocation:
        """Return the command unchanged."""
        env = dict(os.environ)
        env.update(plan.environment)
        return SandboxInvocation(argv=list(command), env=env)


def get_filesystem_isolator(
    platform: Optional[str] = None,
    config: Optional[SandboxConfig] = None,
) -> FilesystemIsolator:
    """
    Get the isolator for the current platform.

    Unlike a best-effort wrapper, an unavailable primitive on a supported
    platform is still returned; the launcher reports it instead of silently
    running unsandboxed.

    Args:
        platform: Override platform detection (mainly for testing)
        config: Sandbox configuration (BWRAP_PATH, PATH, HOME)

    Returns:
        FilesystemIsolator instance for the platform
    """
    if platform is None:
        platform = get_current_platform()
    config = config or SandboxConfig()

    if platform == "linux":
        return BubblewrapIsolator(
            bwrap_path=config.bwrap_path, search_path=config.search_path
        )
    if platform == "macos":
        return SandboxExecIsolator(
            home=config.home, tmpdir=config.environ.get("TMPDIR")
        )
    return NoOpIsolator()
