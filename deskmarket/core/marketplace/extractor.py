"""Archive extraction via the system unzip/tar tools"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List

from deskmarket.core.marketplace.exceptions import (
    ExtractionError,
    SizeLimitExceeded,
    UnsupportedArchiveError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ARCHIVE_SIZE = 200 * 1024 * 1024  # 200MB
DEFAULT_TIMEOUT = 300  # 5 minutes

ZIP_EXTENSIONS = {'.zip'}
TAR_EXTENSIONS = {'.tar', '.gz', '.tgz', '.bz2', '.xz'}


def archive_kind(archive_path: Path) -> str:
    """Return 'zip' or 'tar' for a supported archive extension"""
    suffix = Path(archive_path).suffix.lower()
    if suffix in ZIP_EXTENSIONS:
        return 'zip'
    if suffix in TAR_EXTENSIONS:
        return 'tar'
    raise UnsupportedArchiveError(f"Unsupported archive format: {suffix or '(none)'}")


def build_command(archive_path: Path, dest_dir: Path) -> List[str]:
    """Command line that unpacks archive_path into dest_dir"""
    if archive_kind(archive_path) == 'zip':
        return ['unzip', '-q', '-o', str(archive_path), '-d', str(dest_dir)]
    return ['tar', 'xf', str(archive_path), '-C', str(dest_dir)]


def find_escaping_symlinks(root: Path) -> List[str]:
    """Relative paths of symlinks under root that resolve outside root"""
    root = Path(root).resolve()
    escaping = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        for name in sorted(dirnames + filenames):
            path = Path(dirpath) / name
            if not path.is_symlink():
                continue
            target = path.resolve()
            try:
                target.relative_to(root)
            except ValueError:
                escaping.append(str(path.relative_to(root)))
    return escaping


class ArchiveExtractor:
    """Size-checked, time-bounded archive extractor"""

    def __init__(
        self,
        max_archive_size: int = DEFAULT_MAX_ARCHIVE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.max_archive_size = max_archive_size
        self.timeout = timeout

    def check_size(self, archive_path: Path) -> int:
        """
        Reject archives over the size limit before any tool runs

        Raises:
            SizeLimitExceeded: If the archive is too large
        """
        size = Path(archive_path).stat().st_size
        if size > self.max_archive_size:
            raise SizeLimitExceeded(
                f"Archive too large: {size / 1024 / 1024:.2f}MB "
                f"(max: {self.max_archive_size / 1024 / 1024:.2f}MB)",
                actual_size=size,
                limit=self.max_archive_size,
            )
        return size

    async def extract(self, archive_path: Path, dest_dir: Path) -> None:
        """
        Extract archive into dest_dir

        Args:
            archive_path: Path to .zip/.tar/.gz/.tgz/.bz2/.xz archive
            dest_dir: Destination directory (created if missing)

        Raises:
            SizeLimitExceeded: If the archive exceeds max_archive_size
            UnsupportedArchiveError: If the extension is not supported
            ExtractionError: If the tool fails, is missing, or times out
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir)

        self.check_size(archive_path)
        command = build_command(archive_path, dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Extracting {archive_path.name} with {command[0]}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExtractionError(f"Failed to extract archive: {command[0]} unavailable ({e})")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ExtractionError(f"Failed to extract archive: timed out after {self.timeout}s")

        if process.returncode != 0:
            detail = stderr.decode('utf-8', errors='replace').strip()
            raise ExtractionError(
                f"Failed to extract archive: {command[0]} exited with code {process.returncode}"
                + (f": {detail}" if detail else "")
            )

        escaping = find_escaping_symlinks(dest_dir)
        if escaping:
            raise ExtractionError(
                f"Failed to extract archive: symlink points outside package: {', '.join(escaping)}"
            )

        logger.info(f"Extracted {archive_path.name} to {dest_dir}")
