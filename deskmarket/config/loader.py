"""
Settings loader

Priority (highest first):
1. Environment variables (MARKETPLACE_DIR, DESKMARKET_*)
2. YAML file (DESKMARKET_CONFIG env var, or explicit config_path)
3. Hard-coded defaults
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

MB = 1024 * 1024

DEFAULT_MARKETPLACE_DIR = Path.home() / ".web-desktop" / "marketplace"

# env var -> settings attribute
ENV_OVERRIDES = {
    "MARKETPLACE_DIR": "marketplace_dir",
    "DESKMARKET_MAX_DOWNLOAD_SIZE": "max_download_size",
    "DESKMARKET_MAX_ARCHIVE_SIZE": "max_archive_size",
    "DESKMARKET_DOWNLOAD_TIMEOUT": "download_timeout",
    "DESKMARKET_EXTRACT_TIMEOUT": "extract_timeout",
    "DESKMARKET_SCAN_LEVEL": "default_scan_level",
    "DESKMARKET_GC_INTERVAL": "gc_interval",
    "DESKMARKET_TERMINAL_JOB_TTL": "terminal_job_ttl",
    "DESKMARKET_ACTIVE_JOB_TTL": "active_job_ttl",
    "DESKMARKET_LOCK_TIMEOUT": "lock_timeout",
    "DESKMARKET_HOST": "host",
    "DESKMARKET_PORT": "port",
}


@dataclass
class MarketplaceSettings:
    """Marketplace service settings

    Attributes:
        marketplace_dir: Root for apps, cache, temp and security dirs
        max_download_size: Largest artifact the downloader accepts (bytes)
        max_archive_size: Largest archive the extractor accepts (bytes)
        download_timeout: HTTP timeout in seconds
        extract_timeout: Unpack subprocess timeout in seconds
        default_scan_level: quick, standard or thorough
        gc_interval: Seconds between job registry GC ticks
        terminal_job_ttl: Age (seconds) after which finished jobs are reaped
        active_job_ttl: Age (seconds) after which unfinished jobs are reaped
        lock_timeout: Max seconds to wait for a per-app/per-source lock
    """
    marketplace_dir: Path = field(default_factory=lambda: DEFAULT_MARKETPLACE_DIR)
    max_download_size: int = 500 * MB
    max_archive_size: int = 200 * MB
    download_timeout: float = 300.0
    extract_timeout: float = 300.0
    default_scan_level: str = "standard"
    gc_interval: float = 300.0
    terminal_job_ttl: float = 3600.0
    active_job_ttl: float = 86400.0
    lock_timeout: float = 600.0
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self):
        self.marketplace_dir = Path(self.marketplace_dir).expanduser()
        if self.default_scan_level not in ("quick", "standard", "thorough"):
            raise ValueError(
                f"Invalid scan level '{self.default_scan_level}'. "
                "Must be one of: quick, standard, thorough"
            )

    @property
    def apps_dir(self) -> Path:
        return self.marketplace_dir / "apps"

    @property
    def cache_dir(self) -> Path:
        return self.marketplace_dir / "cache"

    @property
    def temp_dir(self) -> Path:
        return self.marketplace_dir / "temp"

    @property
    def security_dir(self) -> Path:
        return self.marketplace_dir / "security"

    def ensure_directories(self) -> None:
        """Create the marketplace directory tree (failures are logged)"""
        for directory in (
            self.marketplace_dir,
            self.apps_dir,
            self.cache_dir,
            self.temp_dir,
            self.security_dir,
        ):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create directory {directory}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["marketplace_dir"] = str(self.marketplace_dir)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketplaceSettings":
        """Create from a dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def _coerce(name: str, raw: str) -> Any:
    """Convert an env var string to the type of the settings field"""
    default = MarketplaceSettings.__dataclass_fields__[name]
    if name == "marketplace_dir":
        return Path(raw)
    if default.type in (int, "int"):
        return int(raw)
    if default.type in (float, "float"):
        return float(raw)
    return raw


def load_settings(config_path: Optional[Path] = None) -> MarketplaceSettings:
    """
    Load marketplace settings

    Args:
        config_path: YAML file path (optional, DESKMARKET_CONFIG wins)

    Returns:
        MarketplaceSettings
    """
    data: Dict[str, Any] = {}

    env_config_path = os.getenv("DESKMARKET_CONFIG")
    if env_config_path:
        config_path = Path(env_config_path)

    if config_path is not None:
        config_path = Path(config_path).expanduser()
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            # Empty file loads as None
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file must contain a mapping: {config_path}")
            data.update(loaded)
            logger.info(f"Loaded marketplace settings from {config_path}")
        else:
            logger.warning(f"Config file not found, using defaults: {config_path}")

    for env_name, attr in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            data[attr] = _coerce(attr, raw)

    return MarketplaceSettings.from_dict(data)
