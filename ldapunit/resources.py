from __future__ import annotations

import sys
from pathlib import Path

from .logging import logger

#: The directory holding the LDIF files bundled with ldapunit
RESOURCE_DIR: Path = Path(__file__).parent / "resources"


def resolve_resource(path: str | Path, relative_to: str | Path | None = None) -> Path:
    """
    Find the file named by ``path``.  Absolute paths are used as-is.  Relative
    paths are looked for, in order, under ``relative_to`` (usually the folder
    holding the test module that declared them), under each entry of
    :py:data:`sys.path`, and finally under the current working directory.

    Args:
        path: the file to find

    Keyword Args:
        relative_to: the folder to look in first

    Raises:
        FileNotFoundError: the file was not found in any of those places

    Returns:
        The absolute path to the file.

    """
    candidate = Path(path)
    if candidate.is_absolute():
        if candidate.is_file():
            return candidate
        msg = f"{candidate} does not exist"
        raise FileNotFoundError(msg)
    search_path: list[Path] = []
    if relative_to is not None:
        search_path.append(Path(relative_to))
    search_path.extend(Path(entry) for entry in sys.path if entry)
    search_path.append(Path.cwd())
    for folder in search_path:
        full_path = folder / candidate
        if full_path.is_file():
            logger.debug("resolve_resource path=%s resolved=%s", path, full_path)
            return full_path.resolve()
    msg = f"{path} does not exist"
    raise FileNotFoundError(msg)
