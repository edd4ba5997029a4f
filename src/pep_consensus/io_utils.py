from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, TextIO

from .errors import OutputWriteFailure


def _discard(tmp: Path) -> None:
    try:
        if tmp.exists():
            tmp.unlink()
    except OSError:
        pass


@contextlib.contextmanager
def atomic_output(path: Path) -> Iterator[TextIO]:
    """Write to ``<path>.tmp`` and move it over ``path`` only after a clean close.

    A failed or interrupted write never leaves a file at ``path``; the temporary
    file is removed and OSErrors surface as OutputWriteFailure.
    """
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8", newline="") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        _discard(tmp)
        raise OutputWriteFailure(f"could not write {path}: {exc}", path=path) from exc
    except BaseException:
        _discard(tmp)
        raise


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    with atomic_output(path) as handle:
        handle.write(json.dumps(payload, indent=2, sort_keys=True, default=str))
        handle.write("\n")


def format_float(value: Optional[float]) -> str:
    """Shortest text that parses back to the same float; empty for None."""
    if value is None:
        return ""
    return repr(float(value))


def format_int(value: Optional[int]) -> str:
    return "" if value is None else str(int(value))
