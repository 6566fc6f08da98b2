"""
Temporary workspace owned by the launcher.

Until the launcher replaces itself, the workspace is removed by the context
manager, including when a terminating signal arrives. After replacement no
Python code runs any more, so the exec'd image is a small shell trampoline
that removes the workspace when the wrapped command exits.
"""

import logging
import shutil
import signal
import tempfile
from typing import Optional

logger = logging.getLogger(__name__)

CLEANUP_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)

# $1 is the workspace, the rest is the command. The command is not exec'd so
# the EXIT trap still fires; its status becomes the shell's status.
TRAMPOLINE_SCRIPT = (
    'dir=$1; shift; '
    'trap \'rm -rf "$dir"\' EXIT; '
    "trap 'exit 129' HUP; trap 'exit 130' INT; trap 'exit 143' TERM; "
    '"$@"'
)


def _raise_exit(signum, frame):
    raise SystemExit(128 + signum)


class TemporaryWorkspace:
    """A scratch directory that never outlives the launch."""

    def __init__(self, prefix: str = "agent-", dir: Optional[str] = None):
        self.prefix = prefix
        self.dir = dir
        self.path: Optional[str] = None
        self._previous_handlers = {}

    def __enter__(self) -> "TemporaryWorkspace":
        self.path = tempfile.mkdtemp(prefix=self.prefix, dir=self.dir)
        logger.debug(f"Created workspace {self.path}")
        for signum in CLEANUP_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _raise_exit)
        return self

    def __exit__(self, exc_type, exc, tb):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        self.cleanup()
        return False

    def cleanup(self):
        if self.path is None:
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug(f"Removed workspace {self.path}")

    def wrap(self, argv: list[str]) -> list[str]:
        """Prefix ``argv`` with the trampoline that removes this workspace."""
        return ["/bin/sh", "-c", TRAMPOLINE_SCRIPT, "agent-sandbox", self.path] + argv
