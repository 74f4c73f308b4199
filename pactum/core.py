"""Core primitives for pactum.

Shared file I/O used throughout the package:
- YAML/JSON/TOML loading with consistent encoding
- atomic (write-then-rename) file writes
- RFC3339 timestamps

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import json
import os
import pathlib
import tempfile
import tomllib
from datetime import datetime, timezone
from typing import Any, Union

import yaml

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent

DEFAULT_TEXT_ENCODING = "utf-8"


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding=DEFAULT_TEXT_ENCODING))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding=DEFAULT_TEXT_ENCODING))


def load_toml(path: pathlib.Path) -> Any:
    """Load TOML file (read-only; the standard library has no TOML writer)."""
    return tomllib.loads(pathlib.Path(path).read_text(encoding=DEFAULT_TEXT_ENCODING))


def load_structured(path: pathlib.Path) -> Any:
    """Load a YAML, JSON or TOML document, chosen by file extension."""
    suffix = pathlib.Path(path).suffix.lower()
    if suffix in (".yaml", ".yml"):
        return load_yaml(path)
    if suffix == ".json":
        return load_json(path)
    if suffix == ".toml":
        return load_toml(path)
    raise ValueError(f"unsupported structured file type: {path}")


def atomic_write_bytes(path: pathlib.Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a sibling temp file and ``os.replace``.

    Readers either see the previous file or the complete new one, never a
    partial write. This does not serialize concurrent writers.
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_text(path: pathlib.Path, text: str) -> None:
    atomic_write_bytes(path, text.encode(DEFAULT_TEXT_ENCODING))


def write_json(path: pathlib.Path, obj: Any, *, atomic: bool = True) -> None:
    """Write pretty-printed JSON with a trailing newline."""
    text = json.dumps(obj, indent=2, ensure_ascii=False) + "\n"
    if atomic:
        atomic_write_text(path, text)
    else:
        pathlib.Path(path).write_text(text, encoding=DEFAULT_TEXT_ENCODING)


def now_rfc3339() -> str:
    """RFC3339 UTC timestamp.

    For reproducible output set ``SOURCE_DATE_EPOCH`` (seconds since the Unix
    epoch). When unset, uses the current wall clock.
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and sde.strip() != "":
        try:
            epoch = int(sde.strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    else:
        dt = datetime.now(timezone.utc)
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def resolve_against(base_dir: Union[str, pathlib.Path], rel: Union[str, pathlib.Path]) -> pathlib.Path:
    """Resolve ``rel`` against ``base_dir`` (absolute paths are returned as-is)."""
    p = pathlib.Path(rel).expanduser()
    if p.is_absolute():
        return p
    return (pathlib.Path(base_dir) / p).resolve()
