"""Crash-safe file writes and content hashing.

``metadata.json`` is the marker of a complete installation, so it must
never be observed half-written. Writes go to a unique temp file in the
target directory, are fsynced, then renamed over the target.

Example:
    from deskmarket.core.utils.atomic_write import atomic_write_json

    atomic_write_json(app_dir / "metadata.json", metadata.to_api())
"""

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

HASH_CHUNK_SIZE = 1024 * 1024


def compute_file_hash(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in 1MB chunks."""
    digest = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write(file_path: Union[str, Path], content: Union[str, bytes]) -> Path:
    """Replace file_path with content; text is written as UTF-8.

    Returns:
        The target path
    """
    target = Path(file_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    return target


def atomic_write_json(file_path: Union[str, Path], data: Dict[str, Any]) -> Path:
    """atomic_write for a JSON document (2-space indent, non-ASCII kept)."""
    return atomic_write(file_path, json.dumps(data, indent=2, ensure_ascii=False))


__all__ = [
    "atomic_write",
    "atomic_write_json",
    "compute_file_hash",
]
