"""Crash-safe file placement into the apps directory"""

import errno
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable

from deskmarket.core.marketplace.exceptions import InstallationError

logger = logging.getLogger(__name__)

FILE_MOVE_ATTEMPTS = 3
FILE_MOVE_BASE_DELAY = 0.1  # 100ms, doubled per attempt

PLACE_ATTEMPTS = 3
PLACE_DELAY = 0.5


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _rename_or_copy(src: Path, dst: Path) -> None:
    """Rename, falling back to copy+delete across filesystems"""
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.debug(f"Cross-device move, copying {src} -> {dst}")
        shutil.copy2(src, dst, follow_symlinks=False)
        os.unlink(src)


def move_file(
    src: Path,
    dst: Path,
    attempts: int = FILE_MOVE_ATTEMPTS,
    base_delay: float = FILE_MOVE_BASE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Move one file, replacing dst, with exponential-backoff retries

    Raises:
        InstallationError: If every attempt failed
    """
    for attempt in range(1, attempts + 1):
        try:
            if dst.exists() or dst.is_symlink():
                _remove_path(dst)
            _rename_or_copy(src, dst)
            return
        except OSError as e:
            if attempt == attempts:
                raise InstallationError(f"Failed to move {src} to {dst}: {e}") from e
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"Move of {src.name} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {e}")
            sleep(delay)


def move_tree(src: Path, dst: Path, sleep: Callable[[float], None] = time.sleep) -> None:
    """
    Move the contents of src into dst file by file

    dst is created if needed. src is pruned afterwards when it ends up empty;
    failing to prune is only logged.
    """
    src = Path(src)
    dst = Path(dst)
    dst.mkdir(parents=True, exist_ok=True)

    for entry in sorted(src.iterdir()):
        target = dst / entry.name
        if entry.is_dir() and not entry.is_symlink():
            move_tree(entry, target, sleep=sleep)
        else:
            move_file(entry, target, sleep=sleep)

    try:
        src.rmdir()
    except OSError as e:
        logger.warning(f"Could not remove emptied directory {src}: {e}")


def _move_directory(src: Path, dst: Path, sleep: Callable[[float], None]) -> None:
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        move_tree(src, dst, sleep=sleep)


def place_app(
    staging_dir: Path,
    final_dir: Path,
    attempts: int = PLACE_ATTEMPTS,
    delay: float = PLACE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Swap a fully staged app directory into its final location

    An existing final_dir is renamed aside first and only deleted once the
    new tree is in place; if placement fails it is restored.

    Raises:
        InstallationError: If the staged tree could not be placed
    """
    staging_dir = Path(staging_dir)
    final_dir = Path(final_dir)
    displaced_dir = final_dir.parent / f".{final_dir.name}.displaced-{staging_dir.name.lstrip('.')}"

    if final_dir.exists() or final_dir.is_symlink():
        if displaced_dir.exists():
            _remove_path(displaced_dir)
        os.replace(final_dir, displaced_dir)

    try:
        for attempt in range(1, attempts + 1):
            try:
                _move_directory(staging_dir, final_dir, sleep)
                break
            except (OSError, InstallationError) as e:
                if attempt == attempts:
                    raise InstallationError(f"Failed to place app into {final_dir}: {e}") from e
                logger.warning(f"Placing {final_dir.name} failed (attempt {attempt}/{attempts}), retrying: {e}")
                sleep(delay)
    except InstallationError:
        if displaced_dir.exists():
            if final_dir.exists():
                shutil.rmtree(final_dir, ignore_errors=True)
            os.replace(displaced_dir, final_dir)
            logger.info(f"Restored previous installation of {final_dir.name}")
        raise

    if displaced_dir.exists():
        try:
            shutil.rmtree(displaced_dir)
        except OSError as e:
            logger.warning(f"Failed to remove replaced installation {displaced_dir}: {e}")

    logger.info(f"Placed app at {final_dir}")
