"""Working-directory setup and atomic file writes."""

from __future__ import annotations

import dataclasses
import json
import os
import tempfile
from typing import Any

from conjuronboard.http_errors import OnboardError

_GENERATED_GITIGNORE = """# Generated by conjur-onboard.
# Keep runtime credentials and live token captures out of source control.
*token*
*secret*
*credential*
apply-log*.json
validate-log*.json
"""


def ensure_work_dir(path: str | os.PathLike[str]) -> str:
    """Create a working directory with a baseline .gitignore and return its clean path."""
    raw = os.fspath(path)
    if not raw:
        raise OnboardError("work directory is empty")

    clean = os.path.normpath(raw)
    try:
        os.makedirs(clean, exist_ok=True)
    except OSError as exc:
        raise OnboardError(f"creating {clean}: {exc}") from exc

    gitignore_path = os.path.join(clean, ".gitignore")
    if not os.path.lexists(gitignore_path):
        _write_file_atomic(gitignore_path, _GENERATED_GITIGNORE.encode("utf-8"))
    return clean


def _json_default(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def write_json(directory: str | os.PathLike[str], name: str, value: Any) -> None:
    """Write pretty-printed JSON with a trailing newline to directory/name."""
    try:
        text = json.dumps(value, indent=2, ensure_ascii=False, default=_json_default)
    except (TypeError, ValueError) as exc:
        raise OnboardError(f"marshaling {name}: {exc}") from exc
    write_file(directory, name, (text + "\n").encode("utf-8"))


def write_text(directory: str | os.PathLike[str], name: str, value: str) -> None:
    """Write UTF-8 text to directory/name using an atomic replace."""
    write_file(directory, name, value.encode("utf-8"))


def write_file(directory: str | os.PathLike[str], name: str, data: bytes) -> None:
    """Write bytes to directory/name using an atomic replace."""
    directory = os.fspath(directory)
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        raise OnboardError(f"creating {directory}: {exc}") from exc
    _write_file_atomic(os.path.join(directory, name), data)


def _write_file_atomic(path: str, data: bytes, mode: int = 0o644) -> None:
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        raise OnboardError(f"creating {directory}: {exc}") from exc

    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
        )
    except OSError as exc:
        raise OnboardError(f"creating temp file for {path}: {exc}") from exc

    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError as exc:
        raise OnboardError(f"replacing {path}: {exc}") from exc
    finally:
        if os.path.exists(tmp_name):
            try:
                os.remove(tmp_name)
            except OSError:
                pass