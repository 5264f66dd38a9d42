"""Exceptions raised by the build pipeline.

Every stage failure aborts the whole build. Each error records the stage it
came from and, where known, the target it was building for.
"""

from __future__ import annotations

from typing import Iterable, Optional

__all__ = [
    "AwsLcFipsError",
    "ConfigurationError",
    "UnparsableTarget",
    "MissingPrerequisite",
    "NativeBuildFailure",
    "UnsupportedPlatform",
    "BindingGenerationFailure",
    "SymbolPrefixMismatch",
    "FilesystemError",
]


class AwsLcFipsError(RuntimeError):
    """Base class for all pipeline failures."""

    stage = "build"

    def __init__(self, message: str, *, target: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.target = target

    def __str__(self) -> str:
        text = f"[{self.stage}] {self.message}"
        if self.target:
            text += f" (target: {self.target})"
        return text


class ConfigurationError(AwsLcFipsError):
    stage = "configuration"


class UnparsableTarget(AwsLcFipsError):
    stage = "target"

    def __init__(self, triple: str, reason: str = "unrecognized target"):
        super().__init__(f"{reason}: {triple!r}")
        self.triple = triple


class MissingPrerequisite(AwsLcFipsError):
    stage = "prerequisites"

    def __init__(self, tool_name: str, detail: str = "", **kwargs):
        message = f"missing prerequisite: {tool_name}"
        if detail:
            message += f" ({detail})"
        super().__init__(message, **kwargs)
        self.tool_name = tool_name


class NativeBuildFailure(AwsLcFipsError):
    stage = "native-build"

    def __init__(self, exit_code: int, output: str, command=None, **kwargs):
        step = f"`{' '.join(map(str, command))}`" if command else "native build"
        super().__init__(f"{step} exited with status {exit_code}", **kwargs)
        self.exit_code = exit_code
        self.output = output
        self.command = command

    def __str__(self) -> str:
        text = super().__str__()
        if self.output:
            text += f"\n{self.output.rstrip()}"
        return text


class UnsupportedPlatform(AwsLcFipsError):
    stage = "bindings"


class BindingGenerationFailure(AwsLcFipsError):
    stage = "bindings"

    def __init__(self, reason: str, **kwargs):
        super().__init__(f"binding generation failed: {reason}", **kwargs)
        self.reason = reason


class SymbolPrefixMismatch(AwsLcFipsError):
    stage = "bindings"

    def __init__(self, message: str, missing: Iterable[str] = (), **kwargs):
        self.missing = tuple(missing)
        if self.missing:
            shown = ", ".join(self.missing[:10])
            if len(self.missing) > 10:
                shown += f", ... ({len(self.missing)} total)"
            message = f"{message}: {shown}"
        super().__init__(message, **kwargs)


class FilesystemError(AwsLcFipsError):
    stage = "filesystem"
