"""Error taxonomy shared by the unpack / repack pipelines.

Every fatal condition derives from AitError. Per-path attribute failures are
not exceptions; they are collected as reconcile.AttributeApplyWarning.
"""
from __future__ import annotations
from typing import Optional

from .file_utils import human_size

__all__ = [
    'AitError', 'NotFound', 'UnmountableImage', 'CorruptFilesystem',
    'CapacityExceeded', 'BuilderFailure', 'ConfigError', 'PartitionFailed',
]


class AitError(Exception):
    """Base class for fatal pipeline errors."""


class NotFound(AitError):
    """Input image, working directory, metadata artifact or tool missing."""


class UnmountableImage(AitError):
    """Mounting failed, including after sparse to raw conversion."""


class CorruptFilesystem(AitError):
    """The repair collaborator could not bring the image into a usable state."""


class ConfigError(AitError):
    """Invalid preset values or option combination."""


class BuilderFailure(AitError):
    """An external image builder exited with an error."""

    def __init__(self, tool: str, returncode: int, output: str = ''):
        self.tool = tool
        self.returncode = returncode
        self.output = output
        msg = f"{tool} failed with exit code {returncode}"
        tail = output.strip().splitlines()[-5:] if output else []
        if tail:
            msg += ":\n  " + "\n  ".join(tail)
        super().__init__(msg)


class CapacityExceeded(AitError):
    """Content does not fit a fixed capacity (image geometry or super device)."""

    def __init__(self, required: int, available: int, unit: str = 'bytes', what: Optional[str] = None):
        self.required = required
        self.available = available
        self.unit = unit
        self.what = what
        if unit == 'bytes':
            req = f"{required} bytes ({human_size(required)})"
            avail = f"{available} bytes ({human_size(available)})"
        else:
            req = f"{required} {unit}"
            avail = f"{available} {unit}"
        subject = what or 'content'
        super().__init__(f"{subject} does not fit: required {req}, available {avail}")


class PartitionFailed(AitError):
    """One logical partition of a super image failed; queued ones were cancelled."""

    def __init__(self, partition: str, cause: BaseException, completed=()):
        self.partition = partition
        self.cause = cause
        self.completed = list(completed)
        super().__init__(f"partition {partition} failed: {cause}")
