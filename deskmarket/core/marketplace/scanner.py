"""Security scanner for extracted app packages"""

import codecs
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, List, Pattern, Tuple, Union

from deskmarket.core.marketplace.exceptions import SecurityScanError
from deskmarket.core.marketplace.models import ScanLevel, SecurityScanResult

logger = logging.getLogger(__name__)

MAX_DEPTH = 10
SOFT_MAX_DEPTH = 5

LARGE_FILE_THRESHOLD = 50 * 1024 * 1024  # 50MB
FULL_READ_LIMIT = 1024 * 1024  # 1MB
PARTIAL_READ_SIZE = 64 * 1024  # 64KB

# Matched by filename only; content is never read
BINARY_EXTENSIONS = frozenset({
    '.exe', '.dll', '.so', '.dylib', '.bin', '.com', '.msi', '.class', '.o', '.a',
    '.wasm', '.jar', '.zip', '.tar', '.gz', '.tgz', '.bz2', '.xz', '.7z', '.rar',
})

MEDIA_EXTENSIONS = frozenset({
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.webp',
    '.mp3', '.mp4', '.wav', '.ogg', '.webm', '.flac',
    '.woff', '.woff2', '.ttf', '.otf', '.eot',
})

QUICK_PATTERNS = (
    r'\.exe$',
    r'\.bat$',
    r'\.cmd$',
    r'\.scr$',
    r'\.vbs$',
    r'eval\s*\(',
    r'exec\s*\(',
    r'system\s*\(',
)

STANDARD_PATTERNS = QUICK_PATTERNS + (
    r'\.jar$',
    r'\.ps1$',
    r'\.msi$',
    r'shell_exec\s*\(',
    r'passthru\s*\(',
)

THOROUGH_PATTERNS = STANDARD_PATTERNS + (
    r'\.dll$',
    r'\.com$',
    r'\.pif$',
    r'\.hta$',
    r'require\s*\(\s*[\'"]\.\.',
    r'import\s*.*\.\.',
    r'document\.write\s*\(',
    r'innerHTML\s*=',
    r'new\s+Function\s*\(',
)


@dataclass(frozen=True)
class ScanProfile:
    """Budgets and patterns for one scan level"""
    level: ScanLevel
    max_files: int
    excluded_dirs: FrozenSet[str]
    excluded_extensions: FrozenSet[str]
    patterns: Tuple[Pattern, ...]
    large_file_threshold: int
    time_budget: float


def _compile(patterns) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


SCAN_PROFILES = {
    ScanLevel.QUICK: ScanProfile(
        level=ScanLevel.QUICK,
        max_files=500,
        excluded_dirs=frozenset({'.git', '.svn', '.hg', 'node_modules', '__pycache__'}),
        excluded_extensions=MEDIA_EXTENSIONS | {'.svg', '.map', '.md', '.txt'},
        patterns=_compile(QUICK_PATTERNS),
        large_file_threshold=LARGE_FILE_THRESHOLD,
        time_budget=5.0,
    ),
    ScanLevel.STANDARD: ScanProfile(
        level=ScanLevel.STANDARD,
        max_files=2000,
        excluded_dirs=frozenset({'.git', '.svn', '.hg', '__pycache__'}),
        excluded_extensions=MEDIA_EXTENSIONS,
        patterns=_compile(STANDARD_PATTERNS),
        large_file_threshold=LARGE_FILE_THRESHOLD,
        time_budget=30.0,
    ),
    ScanLevel.THOROUGH: ScanProfile(
        level=ScanLevel.THOROUGH,
        max_files=10000,
        excluded_dirs=frozenset({'.git', '.svn', '.hg'}),
        excluded_extensions=frozenset(),
        patterns=_compile(THOROUGH_PATTERNS),
        large_file_threshold=LARGE_FILE_THRESHOLD,
        time_budget=120.0,
    ),
}


class _BudgetExhausted(Exception):
    pass


class SecurityScanner:
    """
    Bounded recursive pattern scanner

    Walks the tree in sorted order so repeated scans of an unchanged tree
    give identical findings. The walk stops at the level's file cap or time
    budget and reports ``truncated=True``; a clean result is therefore only
    as strong as the budget that produced it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock

    def scan(self, root: Union[str, Path], level: Union[str, ScanLevel] = ScanLevel.STANDARD) -> SecurityScanResult:
        """
        Scan an extracted package

        Args:
            root: Directory to scan
            level: quick, standard or thorough

        Returns:
            SecurityScanResult

        Raises:
            SecurityScanError: If root is not a directory
        """
        root = Path(root)
        if not root.is_dir():
            raise SecurityScanError(f"Scan root is not a directory: {root}")

        profile = SCAN_PROFILES[ScanLevel(level)]
        state = _ScanState(profile=profile, started=self.clock())

        try:
            self._walk(root, root, 0, state)
        except _BudgetExhausted:
            state.truncated = True

        duration = self.clock() - state.started
        result = SecurityScanResult(
            threats=state.threats,
            safe=not state.threats,
            files_scanned=state.files_scanned,
            files_skipped=state.files_skipped,
            scan_duration=round(duration, 3),
            scan_level=profile.level,
            truncated=state.truncated,
        )
        logger.info(
            f"Security scan ({profile.level.value}) of {root}: {len(result.threats)} threats, "
            f"{result.files_scanned} scanned, {result.files_skipped} skipped"
            + (", truncated" if result.truncated else "")
        )
        return result

    def _walk(self, root: Path, directory: Path, depth: int, state: "_ScanState") -> None:
        if depth >= MAX_DEPTH:
            return

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning(f"Cannot list {directory}: {e}")
            state.files_skipped += 1
            return

        profile = state.profile
        for entry in entries:
            if state.files_scanned >= profile.max_files:
                raise _BudgetExhausted()
            if self.clock() - state.started > profile.time_budget:
                raise _BudgetExhausted()

            if entry.is_symlink():
                state.files_skipped += 1
                continue

            if entry.is_dir():
                if entry.name in profile.excluded_dirs:
                    continue
                if depth + 1 > SOFT_MAX_DEPTH:
                    state.files_skipped += 1
                    state.truncated = True
                    continue
                self._walk(root, Path(entry.path), depth + 1, state)
                continue

            if not entry.is_file():
                state.files_skipped += 1
                continue

            self._scan_file(root, Path(entry.path), state)

    def _scan_file(self, root: Path, path: Path, state: "_ScanState") -> None:
        profile = state.profile
        suffix = path.suffix.lower()
        relative = path.relative_to(root).as_posix()

        if suffix in profile.excluded_extensions:
            state.files_skipped += 1
            return

        try:
            size = path.stat().st_size
        except OSError:
            state.files_skipped += 1
            return

        if size > profile.large_file_threshold:
            state.files_scanned += 1
            state.threats.append(f"Large file detected: {relative} ({size} bytes)")
            return

        if suffix in BINARY_EXTENSIONS:
            state.files_scanned += 1
            self._match(relative, path.name, "", state)
            return

        try:
            content = _read_text(path, size)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Skipping unreadable file {relative}: {e}")
            state.files_skipped += 1
            return

        state.files_scanned += 1
        self._match(relative, path.name, content, state)

    @staticmethod
    def _match(relative: str, name: str, content: str, state: "_ScanState") -> None:
        # At most one finding per file
        for pattern in state.profile.patterns:
            if pattern.search(name) or (content and pattern.search(content)):
                state.threats.append(f"Suspicious content in {relative}: {pattern.pattern}")
                return


@dataclass
class _ScanState:
    profile: ScanProfile
    started: float
    threats: List[str] = field(default_factory=list)
    files_scanned: int = 0
    files_skipped: int = 0
    truncated: bool = False


def _read_text(path: Path, size: int) -> str:
    """Read a whole small file, or the first 64KB of a larger one"""
    with open(path, 'rb') as f:
        if size <= FULL_READ_LIMIT:
            return f.read().decode('utf-8')
        head = f.read(PARTIAL_READ_SIZE)
    # Tolerate a multi-byte sequence cut at the read boundary
    return codecs.getincrementaldecoder('utf-8')().decode(head, final=False)


def scan_directory(root: Union[str, Path], level: Union[str, ScanLevel] = ScanLevel.STANDARD) -> SecurityScanResult:
    """Convenience wrapper: scan root with a default SecurityScanner"""
    return SecurityScanner().scan(root, level)
