from __future__ import annotations

import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class LoadError(Exception):
    pass


def _read_text(path: Path) -> str:
    if not path.exists():
        raise LoadError(f"File not found: {path}")
    if not path.is_file():
        raise LoadError(f"Not a file: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise LoadError(f"File is not valid UTF-8: {path}") from e
    except OSError as e:
        raise LoadError(f"Cannot read file: {path}") from e
    logger.debug("Loaded %d characters from %s", len(content), path)
    return content


def load_dockerfile(source: str | Path) -> str:
    return _read_text(Path(source))


def load_history(source: str | Path) -> str:
    """Read ``docker history`` output from a file, or stdin when source is ``-``."""
    if str(source) == "-":
        return sys.stdin.read()
    return _read_text(Path(source))
