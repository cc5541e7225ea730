"""Error taxonomy for the build pipeline.

Request faults derive from ``ValueError``, infrastructure faults from
``OSError`` and toolchain faults from ``RuntimeError`` so callers can map
them onto HTTP status classes without knowing every subclass.
"""

from __future__ import annotations


class BuildValidationError(ValueError):
    """The request is malformed or incomplete; the caller must fix it."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class PayloadTooLarge(BuildValidationError):
    pass


class WorkspaceError(OSError):
    """Workspace or filesystem failure."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class StageError(RuntimeError):
    """An external toolchain stage rejected the supplied sources.

    ``diagnostics`` is the tool's merged stdout/stderr, kept verbatim.
    """

    def __init__(
        self,
        stage: str,
        diagnostics: str,
        *,
        reason: str = "exit-status",
        returncode: int | None = None,
    ):
        super().__init__(f"{stage} stage failed ({reason})")
        self.stage = stage
        self.diagnostics = diagnostics
        self.reason = reason
        self.returncode = returncode

    def report(self) -> str:
        head = str(self)
        if self.returncode is not None:
            head += f", exit status {self.returncode}"
        return f"{head}:\n{self.diagnostics}"


class StageTimeoutError(StageError):
    def __init__(self, stage: str, diagnostics: str, *, timeout: float):
        super().__init__(stage, diagnostics, reason="timeout")
        self.timeout = timeout


class BuildCancelled(RuntimeError):
    """The caller went away while a stage was running."""

    def __init__(self, stage: str):
        super().__init__(f"build cancelled during {stage} stage")
        self.stage = stage
