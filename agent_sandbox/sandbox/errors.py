"""
Exceptions raised while preparing a sandboxed launch.
"""


class SandboxError(Exception):
    """Base class for sandbox setup failures."""

    exit_code = 1


class IsolatorUnavailableError(SandboxError):
    """The isolation primitive could not be located on this system."""


class SandboxBlockedError(SandboxError):
    """A host configuration condition prevents the sandbox from starting."""

    def __init__(self, report):
        self.report = report
        super().__init__(f"Sandbox blocked: {report.kind.value}")
