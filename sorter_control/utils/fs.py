"""File helpers for config and rendered programs.

Rendered programs are written through a temporary file in the target
directory and renamed into place, so an operator's editor or the
controller's file share never sees half a program.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Union

import yaml


def load_yaml(path: Union[str, Path]) -> Any:
    """Parse a YAML document with ``yaml.safe_load``.

    Returns ``None`` for an empty document.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    yaml.YAMLError
        If the document is malformed; the message names the file.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"YAML file not found: {path}")
    with path.open('r', encoding='utf-8') as fh:
        try:
            return yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise yaml.YAMLError(f"{path}: {exc}") from exc


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """Replace *path* with *data* in one rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent,
    )
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Union[str, Path], text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))
