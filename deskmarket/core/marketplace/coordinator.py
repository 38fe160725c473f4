"""
Installation coordinator

Runs each install/update job as an asyncio task through the pipeline:

    1 download -> 2 hash -> 3 extract -> 4 manifest -> 5 scan -> 6 install -> 7 finalize

Callers get the JobInfo back immediately and poll the JobRegistry by
session id. Cancellation is cooperative: the job checks for it between
stages, so a running download or extraction finishes its current stage.
"""

import asyncio
import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional, Set
from urllib.parse import urlparse

from pydantic import ValidationError

from deskmarket.config import MarketplaceSettings
from deskmarket.core.locks import KeyedLock, LockTimeout, app_lock_key, source_lock_key
from deskmarket.core.marketplace.downloader import DownloadManager, validate_download_url
from deskmarket.core.marketplace.exceptions import (
    AlreadyInstalledError,
    AppNotFoundError,
    DownloadError,
    InstallationError,
    InstallCancelled,
    ManifestError,
    MarketplaceError,
    NotImplementedInstallError,
    SecurityScanError,
)
from deskmarket.core.marketplace.extractor import ArchiveExtractor
from deskmarket.core.marketplace.jobs import CANCELLED_MESSAGE, JobRegistry
from deskmarket.core.marketplace.models import (
    AppManifest,
    InstallationStatus,
    InstalledAppMetadata,
    JobInfo,
    JobStatus,
    JobType,
    ScanLevel,
    SecurityScanResult,
)
from deskmarket.core.marketplace.placement import move_tree, place_app
from deskmarket.core.marketplace.scanner import SecurityScanner
from deskmarket.core.marketplace.validator import is_valid_app_id, validate_manifest
from deskmarket.core.time import utc_now
from deskmarket.core.utils.atomic_write import atomic_write_json, compute_file_hash

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"

CLEANUP_ATTEMPTS = 3
CLEANUP_DELAY = 0.2  # seconds, grows linearly per attempt

DEFAULT_ARCHIVE_NAME = "package.zip"

# Keys the installer owns in metadata.json; never taken from the manifest
RESERVED_METADATA_KEYS = {
    "installedAt", "installed_at",
    "fileHash", "file_hash",
    "securityScan", "security_scan",
    "permissions",
    "sandboxConfig", "sandbox_config",
    "source",
}


@dataclass
class InstallRequest:
    """Parameters of an install or update job"""
    url: Optional[str] = None
    manifest_id: Optional[str] = None
    permissions: Any = None
    sandbox_options: Optional[Dict[str, Any]] = None
    scan_level: Optional[ScanLevel] = None
    user_id: Optional[str] = None


def archive_name_from_url(url: str) -> str:
    """Safe local filename for the artifact behind url"""
    name = PurePosixPath(urlparse(url).path).name
    name = re.sub(r'[^a-zA-Z0-9._-]', '_', name)[:100].lstrip('.')
    return name or DEFAULT_ARCHIVE_NAME


def read_manifest(package_dir: Path) -> Dict[str, Any]:
    """
    Load manifest.json from the package root

    Raises:
        ManifestError: If it is missing or not valid JSON
    """
    manifest_path = Path(package_dir) / MANIFEST_FILE
    try:
        with open(manifest_path, encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.debug(f"Cannot read {manifest_path}: {e}")
        raise ManifestError("Manifest.json not found or invalid")


class InstallationCoordinator:
    """Drives install, update and uninstall jobs"""

    def __init__(
        self,
        settings: MarketplaceSettings,
        registry: JobRegistry,
        locks: KeyedLock,
        downloader: Optional[DownloadManager] = None,
        extractor: Optional[ArchiveExtractor] = None,
        scanner: Optional[SecurityScanner] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.locks = locks
        self.downloader = downloader or DownloadManager(
            max_size=settings.max_download_size,
            timeout=settings.download_timeout,
        )
        self.extractor = extractor or ArchiveExtractor(
            max_archive_size=settings.max_archive_size,
            timeout=settings.extract_timeout,
        )
        self.scanner = scanner or SecurityScanner()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Job entry points
    # ------------------------------------------------------------------

    def app_dir(self, app_id: str) -> Path:
        """
        Directory of an app, directly under apps/

        Raises:
            InstallationError: If app_id is not a valid id or the path would
                land anywhere but directly inside the apps directory
        """
        apps_dir = self.settings.apps_dir
        if is_valid_app_id(app_id):
            app_dir = apps_dir / app_id
            if app_dir.resolve().parent == apps_dir.resolve():
                return app_dir
        raise InstallationError(f"Refusing to use app directory for invalid app id: {app_id!r}")

    def start_install(self, request: InstallRequest) -> JobInfo:
        """
        Accept an install request and run it in the background

        Raises:
            DownloadError: If neither a usable url nor a manifest id was given
        """
        if request.url:
            validate_download_url(request.url)
        elif not request.manifest_id:
            raise DownloadError("Either url or manifestId is required")

        job = self.registry.create_job(JobType.INSTALL, url=request.url, user_id=request.user_id)
        self._spawn(job, request, expected_app_id=None)
        return job

    def start_update(self, app_id: str, request: InstallRequest) -> JobInfo:
        """
        Accept an update of an installed app and run it in the background

        Raises:
            InstallationError: If app_id cannot name an app directory
            AppNotFoundError: If app_id is not installed
            DownloadError: If the url is missing or invalid
        """
        if not (self.app_dir(app_id) / METADATA_FILE).exists():
            raise AppNotFoundError(app_id)
        if not request.url:
            raise DownloadError("url is required for updates")
        validate_download_url(request.url)

        job = self.registry.create_job(
            JobType.UPDATE, app_id=app_id, url=request.url, user_id=request.user_id,
        )
        self._spawn(job, request, expected_app_id=app_id)
        return job

    async def uninstall(self, app_id: str, user_id: Optional[str] = None) -> JobInfo:
        """
        Remove an installed app under its app lock

        Runs to completion before returning; the job is kept for auditing.

        Raises:
            InstallationError: If app_id cannot name an app directory
            AppNotFoundError: If there is no directory for app_id
            LockTimeout: If another job holds the app for too long
        """
        app_dir = self.app_dir(app_id)
        if not app_dir.is_dir():
            raise AppNotFoundError(app_id)

        job = self.registry.create_job(JobType.UNINSTALL, app_id=app_id, user_id=user_id)
        session_id = job.session_id
        self.registry.start_job(session_id)

        try:
            async with self.locks.hold(app_lock_key(app_id), timeout=self.settings.lock_timeout):
                self.registry.update_progress(
                    session_id, 1, status=InstallationStatus.VALIDATING,
                    current_step="Checking installation", message=f"Checking {app_id}",
                )
                if not app_dir.is_dir():
                    raise AppNotFoundError(app_id)

                self.registry.update_progress(
                    session_id, 2, status=InstallationStatus.INSTALLING,
                    current_step="Removing files", message=f"Removing {app_id}",
                )
                await asyncio.to_thread(shutil.rmtree, app_dir)
        except (MarketplaceError, LockTimeout, OSError) as e:
            self.registry.complete_job(session_id, JobStatus.FAILED, error=str(e))
            raise

        self.registry.complete_job(session_id, JobStatus.COMPLETED, message="App uninstalled successfully")
        logger.info(f"Uninstalled {app_id}")
        return job

    async def cancel(self, session_id: str) -> JobInfo:
        """
        Cancel a non-terminal job and remove its temp dir

        Raises:
            JobNotFoundError: Unknown session id
            ValueError: If the job already finished
        """
        job = self.registry.cancel_job(session_id)
        await self._cleanup_temp_dir(self.settings.temp_dir / session_id)
        return job

    async def wait(self, session_id: str) -> None:
        """Wait until the background task of a job has finished"""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all running job tasks"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} running jobs")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _spawn(self, job: JobInfo, request: InstallRequest, expected_app_id: Optional[str]) -> None:
        session_id = job.session_id
        task = asyncio.create_task(self._run(job, request, expected_app_id), name=f"marketplace-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(session_id, None))

    def _checkpoint(self, session_id: str) -> None:
        if self.registry.is_cancelled(session_id):
            raise InstallCancelled(CANCELLED_MESSAGE)

    async def _run(self, job: JobInfo, request: InstallRequest, expected_app_id: Optional[str]) -> None:
        session_id = job.session_id
        temp_dir = self.settings.temp_dir / session_id
        self.registry.start_job(session_id)

        try:
            if not request.url:
                raise NotImplementedInstallError("Manifest ID installation not implemented yet")

            async with self.locks.hold(source_lock_key(request.url), timeout=self.settings.lock_timeout):
                self._checkpoint(session_id)
                await self._pipeline(job, request, temp_dir, expected_app_id)

        except InstallCancelled:
            logger.info(f"Job {session_id} stopped after cancellation")

        except (MarketplaceError, LockTimeout) as e:
            logger.warning(f"Job {session_id} failed: {e}")
            self.registry.complete_job(session_id, JobStatus.FAILED, error=str(e))

        except asyncio.CancelledError:
            self.registry.complete_job(session_id, JobStatus.FAILED, error="Installation interrupted by shutdown")
            raise

        except Exception as e:
            logger.error(f"Job {session_id} failed unexpectedly: {e}", exc_info=True)
            self.registry.complete_job(session_id, JobStatus.FAILED, error=str(e))

        finally:
            await self._cleanup_temp_dir(temp_dir)

    async def _pipeline(
        self,
        job: JobInfo,
        request: InstallRequest,
        temp_dir: Path,
        expected_app_id: Optional[str],
    ) -> None:
        session_id = job.session_id
        registry = self.registry
        url = request.url

        # 1. Download
        registry.update_progress(
            session_id, 1, status=InstallationStatus.DOWNLOADING,
            current_step="Downloading package", message=f"Downloading from {url}",
        )
        archive_path = temp_dir / archive_name_from_url(url)
        size = await self.downloader.download(
            url,
            archive_path,
            progress_callback=lambda fraction: registry.update_progress(session_id, 1, sub_progress=fraction),
        )
        registry.update_progress(session_id, 1, sub_progress=1.0, details={"downloadedBytes": size})
        self._checkpoint(session_id)

        # 2. Hash (provenance only)
        registry.update_progress(
            session_id, 2, status=InstallationStatus.VALIDATING,
            current_step="Verifying download", message="Computing package checksum",
        )
        file_hash = await asyncio.to_thread(compute_file_hash, archive_path)
        registry.update_progress(session_id, 2, sub_progress=1.0, details={"fileHash": file_hash})
        self._checkpoint(session_id)

        # 3. Extract
        registry.update_progress(
            session_id, 3, status=InstallationStatus.EXTRACTING,
            current_step="Extracting package", message=f"Extracting {archive_path.name}",
        )
        extract_dir = temp_dir / "extracted"
        await self.extractor.extract(archive_path, extract_dir)
        self._checkpoint(session_id)

        # 4. Manifest
        registry.update_progress(
            session_id, 4, status=InstallationStatus.VALIDATING,
            current_step="Validating manifest", message="Validating app manifest",
        )
        manifest = read_manifest(extract_dir)
        validation = validate_manifest(manifest)
        if not validation.valid:
            raise ManifestError(f"Invalid manifest: {', '.join(validation.errors)}")
        try:
            app = AppManifest.model_validate(manifest)
        except ValidationError as e:
            fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in e.errors())
            raise ManifestError(f"Invalid manifest: wrong type for {fields}")

        app_id = app.id
        if expected_app_id is not None and app_id != expected_app_id:
            raise ManifestError(f"Invalid manifest: id '{app_id}' does not match app '{expected_app_id}'")
        registry.update_progress(session_id, 4, sub_progress=1.0, app_id=app_id, app_name=app.name)
        self._checkpoint(session_id)

        # 5. Security scan
        scan_level = ScanLevel(request.scan_level or self.settings.default_scan_level)
        registry.update_progress(
            session_id, 5, status=InstallationStatus.SCANNING,
            current_step="Scanning for threats", message=f"Running {scan_level.value} security scan",
        )
        scan = await asyncio.to_thread(self.scanner.scan, extract_dir, scan_level)
        registry.update_progress(
            session_id, 5, sub_progress=1.0,
            details={
                "filesScanned": scan.files_scanned,
                "filesSkipped": scan.files_skipped,
                "scanTruncated": scan.truncated,
            },
        )
        if not scan.safe:
            raise SecurityScanError(f"Security scan failed: {', '.join(scan.threats)}", threats=scan.threats)
        self._checkpoint(session_id)

        # 6-7. Install and finalize
        async with self.locks.hold(app_lock_key(app_id), timeout=self.settings.lock_timeout):
            await self._install(job, request, manifest, extract_dir, file_hash, scan)

        registry.complete_job(
            session_id,
            JobStatus.COMPLETED,
            message=f"{app.name} {'updated' if job.type == JobType.UPDATE else 'installed'} successfully",
        )

    async def _install(
        self,
        job: JobInfo,
        request: InstallRequest,
        manifest: Dict[str, Any],
        extract_dir: Path,
        file_hash: str,
        scan: SecurityScanResult,
    ) -> None:
        session_id = job.session_id
        app_id = manifest["id"]
        apps_dir = self.settings.apps_dir
        final_dir = self.app_dir(app_id)
        metadata_path = final_dir / METADATA_FILE

        self.registry.update_progress(
            session_id, 6, status=InstallationStatus.INSTALLING,
            current_step="Installing files", message=f"Installing {app_id}",
        )

        if final_dir.exists():
            if metadata_path.exists():
                if job.type != JobType.UPDATE:
                    raise AlreadyInstalledError(app_id)
            else:
                logger.warning(f"Removing incomplete installation of {app_id}")
                await asyncio.to_thread(shutil.rmtree, final_dir)

        # metadata.json is only ever written by the installer
        shipped_metadata = extract_dir / METADATA_FILE
        if shipped_metadata.exists():
            logger.warning(f"Package for {app_id} ships its own {METADATA_FILE}, discarding it")
            shipped_metadata.unlink()

        self._checkpoint(session_id)

        staging_dir = apps_dir / f".staging-{session_id}"
        try:
            await asyncio.to_thread(move_tree, extract_dir, staging_dir)
            await asyncio.to_thread(place_app, staging_dir, final_dir)
        finally:
            if staging_dir.exists():
                await asyncio.to_thread(shutil.rmtree, staging_dir, True)

        self.registry.update_progress(
            session_id, 7, current_step="Finalizing", message="Writing app metadata",
        )
        metadata = build_metadata(manifest, request, file_hash, scan, session_id)
        await asyncio.to_thread(atomic_write_json, metadata_path, metadata.to_api())
        logger.info(f"Installed {app_id} {manifest.get('version')} to {final_dir}")

    async def _cleanup_temp_dir(self, temp_dir: Path) -> None:
        """Best-effort removal of a job temp dir; failures are only logged"""
        for attempt in range(1, CLEANUP_ATTEMPTS + 1):
            if not temp_dir.exists():
                return
            try:
                await asyncio.to_thread(shutil.rmtree, temp_dir)
                return
            except OSError as e:
                if attempt == CLEANUP_ATTEMPTS:
                    logger.warning(f"Failed to clean up {temp_dir} after {attempt} attempts: {e}")
                    return
                await asyncio.sleep(CLEANUP_DELAY * attempt)

    @property
    def running_sessions(self) -> Set[str]:
        return set(self._tasks)


def build_metadata(
    manifest: Dict[str, Any],
    request: InstallRequest,
    file_hash: str,
    scan: SecurityScanResult,
    session_id: str,
) -> InstalledAppMetadata:
    """Merge the manifest with installer-owned fields"""
    data = {k: v for k, v in manifest.items() if k not in RESERVED_METADATA_KEYS}
    data.update(
        installed_at=utc_now(),
        file_hash=file_hash,
        security_scan=scan,
        permissions=request.permissions if request.permissions is not None else manifest.get("permissions"),
        source={"url": request.url, "sessionId": session_id},
    )
    if request.sandbox_options:
        data["sandbox_config"] = request.sandbox_options
    return InstalledAppMetadata.model_validate(data)
