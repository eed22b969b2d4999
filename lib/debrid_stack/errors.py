from __future__ import annotations


class StackError(Exception):
    """Base orchestrator error."""

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


class FatalError(StackError):
    """A precondition failed; the run cannot continue."""


class PrivilegeError(FatalError):
    """Not running with administrative privileges."""


class ToolInstallError(FatalError):
    """Container runtime or mount tool could not be installed."""


class PullAborted(FatalError):
    def __init__(self, image: str):
        super().__init__(
            f"Image pull aborted by user: {image}",
            hint=f"docker pull {image}",
        )
        self.image = image


class NoExistingInstallation(StackError):
    """Update or repair was requested but nothing is installed."""


class RenderError(StackError):
    """A typed artifact builder rejected its input."""
