"""
Discovery of the host paths an agent session needs inside the sandbox.

Every function here only adds mounts to a ``SandboxPlan``; nothing is created
on the host except the per-agent state directories.
"""

import glob
import logging
import os
import re
import shlex
import subprocess
from typing import Callable, Iterable, Optional

from rich.markup import escape

from agent_sandbox.messaging import emit_warning

from .base import BackendKind, MountMode, MountSpec, SandboxPlan
from .config import SandboxConfig, expand_home

logger = logging.getLogger(__name__)

# Package store, bound read-only as a whole when present
STORE_ROOT = "/nix"

# Agent config/cache/data directories (created if missing)
AGENT_STATE_DIRS = [
    "~/.config/opencode",
    "~/.config/claude",
    "~/.claude",
    "~/.cache/opencode",
    "~/.cache/claude",
    "~/.local/share/opencode",
    "~/.local/share/claude",
]

# Agent state files (never created)
AGENT_STATE_FILES = [
    "~/.claude.json",
]

AGENT_SSH_KEYS = ["agent-github", "agent-gitlab", "agent-gitea"]
AGENT_SSH_CONFIG = "~/.ssh/config.agent"

GIT_CONFIG_FILES = [
    "~/.gitconfig",
    "~/.config/git/config",
    "~/.config/git/ignore",
    "~/.config/git/attributes",
    "~/.gitignore_global",
]

TRUST_AND_RESOLVER_PATHS = [
    "/etc/ssl",
    "/etc/pki",
    "/etc/ca-certificates",
    "/etc/static/ssl",
    "/etc/hosts",
    "/etc/resolv.conf",
    "/etc/nsswitch.conf",
    "/etc/passwd",
    "/etc/group",
    "/etc/localtime",
]

LINKER_DIRS = ["/lib", "/lib64", "/usr/lib", "/usr/lib64", "/usr/local/lib"]
LD_SO_CONF = "/etc/ld.so.conf"

# Language tool caches (bound only if they already exist)
LANGUAGE_CACHE_DIRS = [
    "~/.cache/go-build",
    "~/.cargo",
    "~/.cache/pip",
    "~/.gem",
    "~/.cache/yarn",
    "~/.npm",
    "~/.local/share/pnpm",
    "~/.bun",
    "~/.cache/nix",
]

_SECTION_RE = re.compile(r'^\[\s*([A-Za-z0-9.-]+)(?:\s+"(.*)")?\s*\]')
_PATH_KEY_RE = re.compile(r"^path\s*=\s*(.*)$", re.IGNORECASE)

Runner = Callable[..., subprocess.CompletedProcess]


def _within(path: str, parent: str) -> bool:
    return path == parent or path.startswith(parent.rstrip("/") + "/")


def git_metadata_dirs(
    cwd: str, runner: Optional[Runner] = None
) -> tuple[Optional[str], Optional[str]]:
    """
    Ask git for the metadata directory and the common metadata directory.

    Returns:
        Tuple of (git_dir, common_dir) as absolute real paths, or (None, None)
        when ``cwd`` is not inside a repository or git is unavailable.
    """
    runner = runner or subprocess.run
    try:
        result = runner(
            ["git", "-C", cwd, "rev-parse", "--git-dir", "--git-common-dir"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        logger.debug("git not found; skipping repository metadata mounts")
        return None, None

    if result.returncode != 0:
        return None, None

    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if len(lines) < 2:
        return None, None

    git_dir, common_dir = (
        os.path.realpath(os.path.join(cwd, line)) for line in lines[:2]
    )
    return git_dir, common_dir


def add_git_mounts(plan: SandboxPlan, cwd: str, runner: Optional[Runner] = None):
    """Expose repository metadata so commit and push work from a worktree."""
    git_dir, common_dir = git_metadata_dirs(cwd, runner)
    if git_dir is None:
        return

    plan.add_mount(MountSpec(git_dir, mode=MountMode.READ_WRITE))

    if common_dir == git_dir:
        return

    # Linked worktree: shared history lives in the primary checkout
    plan.add_mount(MountSpec(common_dir, mode=MountMode.READ_WRITE))
    parent = os.path.dirname(common_dir)
    if parent != os.path.realpath(plan.working_directory):
        plan.add_mount(MountSpec(parent, mode=MountMode.READ_ONLY))


def parse_git_includes(config_file: str, home: str) -> list[str]:
    """
    Return the files referenced by ``[include]`` and ``[includeIf]`` sections.

    Paths are tilde-expanded and resolved relative to the directory of the
    including file.
    """
    try:
        with open(config_file, encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except OSError as e:
        logger.debug(f"Cannot read git config {config_file}: {e}")
        return []

    base_dir = os.path.dirname(config_file)
    section = None
    includes = []
    for raw in lines:
        line = raw.strip()
        if not line or line[0] in "#;":
            continue
        match = _SECTION_RE.match(line)
        if match:
            section = match.group(1).lower()
            continue
        if section not in ("include", "includeif"):
            continue
        match = _PATH_KEY_RE.match(line)
        if not match:
            continue
        value = match.group(1).split(" #")[0].split(" ;")[0].strip().strip('"')
        if not value:
            continue
        path = expand_home(value, home)
        if not os.path.isabs(path):
            path = os.path.join(base_dir, path)
        includes.append(os.path.normpath(path))
    return includes


def _add_resolved_file(plan: SandboxPlan, path: str):
    """
    Bind a possibly symlinked file so it is readable at ``path``.

    The real target is bound at its own location, and additionally onto
    ``path`` unless an existing mount already makes ``path`` visible.
    """
    real = os.path.realpath(path)
    plan.add_mount(MountSpec(real, mode=MountMode.READ_ONLY))
    if real == path:
        return
    if plan.find_cover(MountSpec(path, mode=MountMode.READ_ONLY)) is None:
        plan.add_mount(MountSpec(real, destination=path, mode=MountMode.READ_ONLY))


def add_git_config_mounts(plan: SandboxPlan, home: str):
    """Bind git configuration read-only, following symlinks and includes."""
    pending = [expand_home(p, home) for p in GIT_CONFIG_FILES]
    seen = set()
    parsed = set()
    while pending:
        path = os.path.abspath(pending.pop(0))
        if path in seen or not os.path.exists(path):
            continue
        seen.add(path)
        _add_resolved_file(plan, path)
        real = os.path.realpath(path)
        if real not in parsed and os.path.isfile(real):
            parsed.add(real)
            pending.extend(parse_git_includes(real, home))


def ensure_agent_state_dirs(home: str) -> list[str]:
    """Create the agent state directories if they are missing."""
    created = []
    for entry in AGENT_STATE_DIRS:
        path = expand_home(entry, home)
        if os.path.isdir(path):
            continue
        try:
            os.makedirs(path, exist_ok=True)
            created.append(path)
        except OSError as e:
            logger.warning(f"Could not create agent directory {path}: {e}")
    return created


def add_agent_state_mounts(plan: SandboxPlan, home: str):
    ensure_agent_state_dirs(home)
    for entry in AGENT_STATE_DIRS + AGENT_STATE_FILES:
        plan.add_mount(MountSpec(expand_home(entry, home), mode=MountMode.READ_WRITE))


def add_credential_mounts(plan: SandboxPlan, config: SandboxConfig):
    """Expose agent-scoped SSH material only, unless overridden."""
    home = config.home
    ssh_dir = os.path.join(home, ".ssh")
    macos = plan.backend is BackendKind.MACOS_MAC_POLICY

    if config.full_ssh:
        emit_warning(
            "AGENT_SANDBOX_SSH=true exposes your personal SSH directory "
            f"({escape(ssh_dir)}) inside the sandbox"
        )
        # sandbox-exec can only widen access with write rules
        mode = MountMode.READ_WRITE if macos else MountMode.READ_ONLY
        plan.add_mount(MountSpec(ssh_dir, mode=mode))

    for name in AGENT_SSH_KEYS:
        key = os.path.join(ssh_dir, name)
        plan.add_mount(MountSpec(key, mode=MountMode.READ_ONLY))
        plan.add_mount(MountSpec(key + ".pub", mode=MountMode.READ_ONLY))

    agent_config = expand_home(AGENT_SSH_CONFIG, home)
    plan.add_mount(MountSpec(agent_config, mode=MountMode.READ_ONLY))
    if config.full_ssh or not os.path.isfile(agent_config):
        return
    personal_config = os.path.join(ssh_dir, "config")
    remappable = plan.backend is BackendKind.LINUX_NAMESPACE and (
        plan.find_cover(MountSpec(personal_config, mode=MountMode.READ_ONLY)) is None
    )
    if remappable:
        # The agent config stands in for the personal one
        plan.add_mount(
            MountSpec(agent_config, destination=personal_config, mode=MountMode.READ_ONLY)
        )
    elif plan.backend is not BackendKind.NONE:
        # No remap possible (sandbox-exec, or ~/.ssh already bound from the
        # host); point ssh at the agent config instead
        plan.environment["GIT_SSH_COMMAND"] = f"ssh -F {shlex.quote(agent_config)}"


def add_home_override(plan: SandboxPlan, config: SandboxConfig):
    if not config.bind_home:
        return
    emit_warning(
        "AGENT_SANDBOX_BIND_HOME=true grants read-write access to your whole "
        f"home directory ({escape(config.home)}); this breaks sandbox isolation"
    )
    plan.add_mount(MountSpec(config.home, mode=MountMode.READ_WRITE))


def add_system_mounts(plan: SandboxPlan, paths: Iterable[str] = TRUST_AND_RESOLVER_PATHS):
    for path in paths:
        plan.add_mount(MountSpec(path, mode=MountMode.READ_ONLY))


def add_executable_mounts(plan: SandboxPlan, search_path: str, home: str):
    """Bind every directory on the search path, outside the store and home."""
    plan.add_mount(MountSpec(STORE_ROOT, mode=MountMode.READ_ONLY))
    for entry in search_path.split(os.pathsep):
        if not entry or not os.path.isabs(entry) or not os.path.isdir(entry):
            continue
        directory = os.path.normpath(entry)
        if _within(directory, STORE_ROOT) or _within(directory, home):
            continue
        plan.add_mount(MountSpec(directory, mode=MountMode.READ_ONLY))


def _read_ld_so_conf(path: str, seen: set) -> list[str]:
    real = os.path.realpath(path)
    if real in seen or not os.path.isfile(real):
        return []
    seen.add(real)
    dirs = []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except OSError:
        return []
    for raw in lines:
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if line.startswith("include "):
            pattern = line.split(None, 1)[1]
            if not os.path.isabs(pattern):
                pattern = os.path.join(os.path.dirname(path), pattern)
            for included in sorted(glob.glob(pattern)):
                dirs.extend(_read_ld_so_conf(included, seen))
        elif os.path.isabs(line):
            dirs.append(line)
    return dirs


def linker_search_dirs(environ: dict, ld_so_conf: str = LD_SO_CONF) -> list[str]:
    """Directories the dynamic linker may load libraries from."""
    dirs = list(LINKER_DIRS)
    dirs.extend(_read_ld_so_conf(ld_so_conf, set()))
    for entry in environ.get("LD_LIBRARY_PATH", "").split(os.pathsep):
        if entry and os.path.isabs(entry):
            dirs.append(entry)
    return dirs


def add_linker_mounts(
    plan: SandboxPlan, environ: dict, home: str, ld_so_conf: str = LD_SO_CONF
):
    for directory in linker_search_dirs(environ, ld_so_conf):
        if _within(directory, home):
            continue
        plan.add_mount(MountSpec(directory, mode=MountMode.READ_ONLY))


def add_language_cache_mounts(plan: SandboxPlan, home: str):
    # Not created: only caches the user already has are shared
    for entry in LANGUAGE_CACHE_DIRS:
        plan.add_mount(MountSpec(expand_home(entry, home), mode=MountMode.READ_WRITE))


def add_extra_mounts(plan: SandboxPlan, config: SandboxConfig):
    for spec in config.extra_paths:
        plan.add_mount(spec)


def discover_mounts(
    plan: SandboxPlan,
    config: SandboxConfig,
    runner: Optional[Runner] = None,
) -> SandboxPlan:
    """
    Populate ``plan`` with every mount a working agent session needs.

    Args:
        plan: The plan to populate (its backend decides whether remaps are used)
        config: Resolved sandbox configuration
        runner: subprocess.run replacement for git queries (mainly for testing)

    Returns:
        The same plan, for chaining
    """
    home = config.home

    plan.add_mount(MountSpec(config.cwd, mode=MountMode.READ_WRITE, required=True))
    add_home_override(plan, config)
    add_git_mounts(plan, config.cwd, runner)
    add_git_config_mounts(plan, home)
    add_agent_state_mounts(plan, home)
    add_credential_mounts(plan, config)
    add_system_mounts(plan)
    add_executable_mounts(plan, config.search_path, home)
    add_linker_mounts(plan, config.environ, home)
    add_language_cache_mounts(plan, home)
    add_extra_mounts(plan, config)

    logger.debug(
        f"Discovered {len(plan.read_only)} read-only and "
        f"{len(plan.read_write)} read-write mounts"
    )
    return plan
