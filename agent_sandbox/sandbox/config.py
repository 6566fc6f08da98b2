"""
Configuration management for sandboxing.

All behavior-modifying toggles come from the process environment. An optional
dotenv file in the user's config directory can supply defaults for variables
that are not already set.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from .base import MountMode, MountSpec

logger = logging.getLogger(__name__)

ENABLED_VAR = "AGENT_SANDBOX"
BIND_HOME_VAR = "AGENT_SANDBOX_BIND_HOME"
FULL_SSH_VAR = "AGENT_SANDBOX_SSH"
DEBUG_VAR = "AGENT_SANDBOX_DEBUG"
BWRAP_PATH_VAR = "BWRAP_PATH"
LEGACY_EXTRA_PATHS_VAR = "BWRAP_EXTRA_PATHS"
READ_ONLY_PATHS_VAR = "AGENT_SANDBOX_RO_PATHS"
READ_WRITE_PATHS_VAR = "AGENT_SANDBOX_RW_PATHS"
IN_SANDBOX_VAR = "IN_AGENT_SANDBOX"

TRUTHY = ("1", "true", "yes", "on")

DEFAULT_ENV_FILE = Path.home() / ".config" / "agent-sandbox" / "env"


def load_environment_file(env_file: Optional[Path] = None) -> bool:
    """Load sandbox defaults from a dotenv file without overriding the environment.

    Returns:
        True if a file was found and loaded
    """
    env_file = env_file or DEFAULT_ENV_FILE
    if not env_file.is_file():
        return False

    from dotenv import load_dotenv

    # override=False: variables already exported by the caller win
    load_dotenv(env_file, override=False)
    logger.debug(f"Loaded sandbox environment from {env_file}")
    return True


def expand_home(path: str, home: str) -> str:
    """Expand ``~`` and ``~/`` against ``home``; ``~user`` forms are left alone."""
    if path == "~":
        return home
    if path.startswith("~/"):
        return home + path[1:]
    return path


def parse_path_list(
    value: Optional[str],
    mode: MountMode,
    home: Optional[str] = None,
) -> list[MountSpec]:
    """
    Parse a colon-separated list of paths into optional mount specs.

    Entries are tilde-expanded against ``home``; empty entries are ignored. An
    entry of the form ``source=destination`` remaps ``source`` onto
    ``destination`` inside the sandbox.

    This function never touches the filesystem, so missing paths come back as
    optional specs and are dropped when they are added to a plan.
    """
    if not value:
        return []
    home = home or str(Path.home())

    specs = []
    for entry in value.split(":"):
        entry = entry.strip()
        if not entry:
            continue
        source, _, destination = entry.partition("=")
        specs.append(
            MountSpec(
                expand_home(source, home),
                destination=expand_home(destination, home) if destination else None,
                mode=mode,
                required=False,
            )
        )
    return specs


def _is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in TRUTHY


class SandboxConfig:
    """Sandbox settings resolved from an environment mapping."""

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        home: Optional[str] = None,
        cwd: Optional[str] = None,
    ):
        """
        Initialize sandbox configuration.

        Args:
            environ: Environment to read toggles from (default: os.environ)
            home: Home directory override (default: $HOME)
            cwd: Project directory override (default: current directory)
        """
        self.environ = dict(os.environ if environ is None else environ)
        self.home = home or self.environ.get("HOME") or str(Path.home())
        self.cwd = os.path.abspath(cwd or os.getcwd())

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None) -> "SandboxConfig":
        """Build a config from os.environ after loading the optional dotenv file."""
        load_environment_file(env_file)
        return cls()

    def _flag(self, name: str, default: bool = False) -> bool:
        value = self.environ.get(name)
        if value is None or value == "":
            return default
        return _is_truthy(value)

    @property
    def enabled(self) -> bool:
        """Check if sandboxing is enabled (on unless explicitly disabled)."""
        return self._flag(ENABLED_VAR, default=True)

    @property
    def bind_home(self) -> bool:
        """Full read-write home access. Breaks isolation."""
        return self._flag(BIND_HOME_VAR)

    @property
    def full_ssh(self) -> bool:
        """Full personal SSH directory access. Weakens isolation."""
        return self._flag(FULL_SSH_VAR)

    @property
    def debug(self) -> bool:
        """Verbose diagnostic logging."""
        return self._flag(DEBUG_VAR)

    @property
    def already_sandboxed(self) -> bool:
        """True when running inside a sandbox created by this tool."""
        return bool(self.environ.get(IN_SANDBOX_VAR))

    @property
    def bwrap_path(self) -> Optional[str]:
        """Explicit path to the bubblewrap binary."""
        return self.environ.get(BWRAP_PATH_VAR) or None

    @property
    def search_path(self) -> str:
        return self.environ.get("PATH", os.defpath)

    @property
    def extra_read_only_paths(self) -> list[MountSpec]:
        """User-supplied read-only paths, in order."""
        return parse_path_list(
            self.environ.get(READ_ONLY_PATHS_VAR), MountMode.READ_ONLY, self.home
        )

    @property
    def extra_read_write_paths(self) -> list[MountSpec]:
        """User-supplied read-write paths, legacy list first, in order."""
        return parse_path_list(
            self.environ.get(LEGACY_EXTRA_PATHS_VAR), MountMode.READ_WRITE, self.home
        ) + parse_path_list(
            self.environ.get(READ_WRITE_PATHS_VAR), MountMode.READ_WRITE, self.home
        )

    @property
    def extra_paths(self) -> list[MountSpec]:
        return self.extra_read_only_paths + self.extra_read_write_paths

    def get_status(self) -> dict:
        """Get current sandbox settings as a dictionary."""
        return {
            "enabled": self.enabled,
            "bind_home": self.bind_home,
            "full_ssh": self.full_ssh,
            "debug": self.debug,
            "already_sandboxed": self.already_sandboxed,
            "bwrap_path": self.bwrap_path,
            "extra_read_only_paths": [s.source for s in self.extra_read_only_paths],
            "extra_read_write_paths": [s.source for s in self.extra_read_write_paths],
        }
