"""
Base classes and interfaces for sandbox implementations.

The mount model lives here: a ``MountSpec`` is one host path exposed inside
the sandbox, and a ``SandboxPlan`` is the ordered, deduplicated set of
exposures for a single launch.
"""

import logging
import os
import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MountMode(str, Enum):
    """Access mode of a mount."""

    READ_ONLY = "ro"
    READ_WRITE = "rw"

    def covers(self, other: "MountMode") -> bool:
        """True if this mode grants at least the access of ``other``."""
        return self is MountMode.READ_WRITE or other is MountMode.READ_ONLY


class BackendKind(str, Enum):
    """Isolation backend selected for a plan."""

    LINUX_NAMESPACE = "linux-namespace"
    MACOS_MAC_POLICY = "macos-mac-policy"
    NONE = "none"


def _is_within(path: str, parent: str) -> bool:
    if path == parent:
        return True
    if parent == "/":
        return path.startswith("/")
    return path.startswith(parent.rstrip("/") + "/")


@dataclass
class MountSpec:
    """A single host path exposed inside the sandbox."""

    source: str
    destination: Optional[str] = None
    mode: MountMode = MountMode.READ_ONLY
    required: bool = False

    def __post_init__(self):
        """Normalize paths; the destination defaults to the source."""
        self.source = os.path.abspath(os.path.expanduser(self.source))
        if self.destination is None:
            self.destination = self.source
        else:
            self.destination = os.path.abspath(os.path.expanduser(self.destination))
        self.mode = MountMode(self.mode)

    @property
    def is_remap(self) -> bool:
        return self.source != self.destination

    def covers(self, other: "MountSpec") -> bool:
        """Check whether this mount already grants what ``other`` asks for."""
        if not self.mode.covers(other.mode):
            return False
        if other.is_remap or self.is_remap:
            return (
                self.source == other.source and self.destination == other.destination
            )
        return _is_within(other.source, self.source)


@dataclass
class SandboxPlan:
    """The complete set of exposures and settings for one sandboxed launch."""

    backend: BackendKind = BackendKind.NONE
    read_only: list[MountSpec] = field(default_factory=list)
    read_write: list[MountSpec] = field(default_factory=list)
    working_directory: str = "."
    network_enabled: bool = True
    environment: dict[str, str] = field(default_factory=dict)
    # Sandbox-side path of the temporary workspace, if one is used
    work_dir: Optional[str] = None

    def __post_init__(self):
        self.working_directory = os.path.abspath(self.working_directory)

    def mounts(self) -> Iterator[MountSpec]:
        """Iterate over all mounts, read-only first, in insertion order."""
        yield from self.read_only
        yield from self.read_write

    def find_cover(self, spec: MountSpec) -> Optional[MountSpec]:
        """Return an existing mount that already covers ``spec``, if any."""
        for existing in self.mounts():
            if existing.covers(spec):
                return existing
        return None

    def _conflicts(self, spec: MountSpec) -> bool:
        for existing in self.mounts():
            if existing.destination == spec.destination and existing.source != spec.source:
                return True
        return False

    def add_mount(self, spec: MountSpec) -> bool:
        """
        Add ``spec`` to the plan unless it is redundant.

        Optional mounts whose source does not exist are dropped. A mount that is
        already covered by an existing entry of equal or stronger access is a
        no-op, and a mount whose destination is already bound from another
        source is rejected.

        Returns:
            True if the mount was added to the plan
        """
        if not spec.required and not os.path.lexists(spec.source):
            logger.debug(f"Skipping missing optional mount: {spec.source}")
            return False

        cover = self.find_cover(spec)
        if cover is not None:
            logger.debug(
                f"Mount {spec.source} ({spec.mode.value}) already covered by "
                f"{cover.source} ({cover.mode.value})"
            )
            return False

        if self._conflicts(spec):
            logger.debug(
                f"Refusing mount {spec.source} -> {spec.destination}: "
                f"destination already bound from another source"
            )
            return False

        if spec.mode is MountMode.READ_WRITE:
            self.read_write.append(spec)
        else:
            self.read_only.append(spec)
        return True

    def add_path(
        self,
        path: str,
        mode: MountMode = MountMode.READ_ONLY,
        required: bool = False,
    ) -> bool:
        """Shorthand for adding an identity mount of ``path``."""
        return self.add_mount(MountSpec(path, mode=mode, required=required))

    def describe(self) -> list[str]:
        """Human readable one-line-per-mount summary."""
        lines = []
        for spec in self.mounts():
            target = f" -> {spec.destination}" if spec.is_remap else ""
            lines.append(f"{spec.mode.value} {spec.source}{target}")
        return lines


class SandboxInvocation(BaseModel):
    """A rendered, ready-to-exec invocation of an isolation primitive."""

    argv: list[str]
    env: dict[str, str]
    # Extra text for debug output, e.g. the generated policy document
    profile: Optional[str] = None


class FilesystemIsolator(ABC):
    """Abstract base class for filesystem isolation implementations."""

    backend: BackendKind = BackendKind.NONE
    # Whether the launcher must create a host-side temporary workspace
    needs_host_workspace: bool = False

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the isolation mechanism is available on this system."""
        pass

    @abstractmethod
    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        pass

    @abstractmethod
    def render(self, plan: SandboxPlan, command: list[str]) -> SandboxInvocation:
        """
        Translate a plan into a concrete invocation of the isolation primitive.

        Args:
            plan: The sandbox plan to enforce
            command: The target command and its arguments

        Returns:
            SandboxInvocation ready to be executed
        """
        pass

    def prepare(self, plan: SandboxPlan, workspace: Optional[str] = None):
        """Backend-specific plan adjustments made before discovery."""
        plan.backend = self.backend

    def execute(self, invocation: SandboxInvocation):
        """Replace the current process with the rendered invocation."""
        logger.debug(f"exec: {invocation.argv}")
        os.execvpe(invocation.argv[0], invocation.argv, invocation.env)


def get_current_platform() -> str:
    """Get the current platform name."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    return system
