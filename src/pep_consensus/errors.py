"""Exception types raised by pep_consensus."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ConsensusError(Exception):
    """Base class for all pep_consensus failures."""


class InvalidConfiguration(ConsensusError, ValueError):
    """A threshold or tolerance setting is out of range."""


class InputReadFailure(ConsensusError):
    def __init__(self, message: str, *, run_id: Optional[str] = None, path: Optional[Path] = None):
        self.run_id = run_id
        self.path = None if path is None else Path(path)
        prefix = f"{run_id}: " if run_id else ""
        super().__init__(f"{prefix}{message}")


class OutputWriteFailure(ConsensusError):
    def __init__(self, message: str, *, path: Optional[Path] = None):
        self.path = None if path is None else Path(path)
        super().__init__(message)


class ConsensusExecutionError(ConsensusError):
    """Terminal failure of a consensus run, wrapping the error that caused it."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


__all__ = [
    "ConsensusError",
    "InvalidConfiguration",
    "InputReadFailure",
    "OutputWriteFailure",
    "ConsensusExecutionError",
]
