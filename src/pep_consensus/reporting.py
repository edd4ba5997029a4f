"""Status reporting passed explicitly through the consensus pipeline.

Components never print or log on their own; they receive a reporter and send
progress lines to it. The command line uses :class:`PrintReporter`, library
callers get :class:`LoggingReporter` unless they pass something else.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO


class StatusReporter:
    """Interface for status messages. Subclasses override ``emit``."""

    def emit(self, level: int, message: str) -> None:
        raise NotImplementedError

    def info(self, message: str) -> None:
        self.emit(logging.INFO, message)

    def debug(self, message: str) -> None:
        self.emit(logging.DEBUG, message)

    def warning(self, message: str) -> None:
        self.emit(logging.WARNING, message)


class NullReporter(StatusReporter):
    def emit(self, level: int, message: str) -> None:
        return None


class PrintReporter(StatusReporter):
    """Print status lines; debug lines only when ``verbose``."""

    def __init__(self, stream: Optional[TextIO] = None, *, verbose: bool = False):
        self.stream = stream
        self.verbose = verbose

    def emit(self, level: int, message: str) -> None:
        if level < logging.INFO and not self.verbose:
            return
        stream = self.stream
        if stream is None:
            stream = sys.stderr if level >= logging.WARNING else sys.stdout
        print(message, file=stream)


class LoggingReporter(StatusReporter):
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("pep_consensus")

    def emit(self, level: int, message: str) -> None:
        self.logger.log(level, message)


def resolve_reporter(reporter: Optional[StatusReporter]) -> StatusReporter:
    return reporter if reporter is not None else LoggingReporter()


__all__ = ["StatusReporter", "NullReporter", "PrintReporter", "LoggingReporter", "resolve_reporter"]
