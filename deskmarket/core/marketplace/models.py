"""Data models for the marketplace install pipeline"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deskmarket.core.time import utc_now


class CamelModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InstallationStatus(str, Enum):
    """Pipeline stage reported to polling clients"""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    SCANNING = "scanning"
    VALIDATING = "validating"
    INSTALLING = "installing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InstallationStatus.COMPLETED, InstallationStatus.FAILED)


class JobType(str, Enum):
    """Kind of marketplace job"""
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"


class JobStatus(str, Enum):
    """Job lifecycle status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ScanLevel(str, Enum):
    """Security scanner strictness tier"""
    QUICK = "quick"
    STANDARD = "standard"
    THOROUGH = "thorough"


class AppType(str, Enum):
    """Application runtime type"""
    WEB = "web"
    NATIVE = "native"
    HYBRID = "hybrid"


class InstallationProgress(CamelModel):
    """Progress record for one session, polled by clients"""
    session_id: str
    status: InstallationStatus = InstallationStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = "Queued"
    total_steps: int = Field(default=7, ge=1)
    message: str = "Installation queued"
    start_time: datetime = Field(default_factory=utc_now)
    app_id: Optional[str] = None
    app_name: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class JobInfo(CamelModel):
    """Job record; owns its InstallationProgress"""
    session_id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    app_id: Optional[str] = None
    app_name: Optional[str] = None
    url: Optional[str] = None
    user_id: Optional[str] = None
    progress: InstallationProgress


class SecurityScanResult(CamelModel):
    """
    Outcome of one security scan.

    ``safe`` only means that nothing suspicious was found within the scan
    level's file-count, depth and time budgets. Files beyond those budgets
    were never looked at, so ``safe=True`` is a bounded-effort signal and
    not a proof that the package is harmless. ``truncated`` tells whether a
    budget cut the walk short.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    threats: List[str] = Field(default_factory=list)
    safe: bool
    files_scanned: int = 0
    files_skipped: int = 0
    scan_duration: float = 0.0
    scan_level: ScanLevel
    truncated: bool = False


class ManifestValidationResult(BaseModel):
    """Result of manifest validation"""
    valid: bool
    errors: List[str] = Field(default_factory=list)


class AppManifest(BaseModel):
    """manifest.json shipped inside an app package"""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    version: str
    description: str
    author: str
    license: str
    main: str
    type: AppType
    permissions: Optional[Any] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class InstalledAppMetadata(CamelModel):
    """metadata.json written as the last step of a successful install"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    installed_at: datetime
    file_hash: str
    security_scan: SecurityScanResult
    permissions: Optional[Any] = None
    sandbox_config: Dict[str, Any] = Field(
        default_factory=lambda: {"enabled": True, "type": "partial"}
    )
    source: Dict[str, Any] = Field(default_factory=dict)
