"""
Marketplace app installation

Download, extract, validate, scan and place app packages into the apps
directory, with per-session progress tracking.
"""

from deskmarket.core.marketplace.catalog import AppCatalog
from deskmarket.core.marketplace.coordinator import InstallationCoordinator, InstallRequest
from deskmarket.core.marketplace.downloader import DownloadManager
from deskmarket.core.marketplace.exceptions import (
    AlreadyInstalledError,
    AppNotFoundError,
    DownloadError,
    ExtractionError,
    InstallationError,
    InstallCancelled,
    JobNotFoundError,
    ManifestError,
    MarketplaceError,
    NotImplementedInstallError,
    SecurityScanError,
    SizeLimitExceeded,
    UnsupportedArchiveError,
)
from deskmarket.core.marketplace.extractor import ArchiveExtractor
from deskmarket.core.marketplace.jobs import JobRegistry
from deskmarket.core.marketplace.models import (
    AppManifest,
    InstallationProgress,
    InstallationStatus,
    InstalledAppMetadata,
    JobInfo,
    JobStatus,
    JobType,
    ManifestValidationResult,
    ScanLevel,
    SecurityScanResult,
)
from deskmarket.core.marketplace.scanner import SecurityScanner
from deskmarket.core.marketplace.service import MarketplaceService
from deskmarket.core.marketplace.validator import validate_manifest

__all__ = [
    "AppCatalog",
    "InstallationCoordinator",
    "InstallRequest",
    "DownloadManager",
    "ArchiveExtractor",
    "JobRegistry",
    "SecurityScanner",
    "MarketplaceService",
    "validate_manifest",
    "AppManifest",
    "InstallationProgress",
    "InstallationStatus",
    "InstalledAppMetadata",
    "JobInfo",
    "JobStatus",
    "JobType",
    "ManifestValidationResult",
    "ScanLevel",
    "SecurityScanResult",
    "MarketplaceError",
    "DownloadError",
    "SizeLimitExceeded",
    "ExtractionError",
    "UnsupportedArchiveError",
    "ManifestError",
    "SecurityScanError",
    "InstallationError",
    "AlreadyInstalledError",
    "AppNotFoundError",
    "InstallCancelled",
    "NotImplementedInstallError",
    "JobNotFoundError",
]
