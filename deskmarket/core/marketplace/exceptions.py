"""Exception classes for the marketplace install pipeline"""


class MarketplaceError(Exception):
    """Base exception for all marketplace errors"""
    pass


class DownloadError(MarketplaceError):
    """Raised when an artifact download fails"""
    pass


class SizeLimitExceeded(MarketplaceError):
    """Raised when a download or archive exceeds its configured size limit"""

    def __init__(self, message: str, actual_size: int = 0, limit: int = 0):
        super().__init__(message)
        self.actual_size = actual_size
        self.limit = limit


class ExtractionError(MarketplaceError):
    """Raised when an archive cannot be unpacked"""
    pass


class UnsupportedArchiveError(ExtractionError):
    """Raised for archive extensions with no unpack mechanism"""
    pass


class ManifestError(MarketplaceError):
    """Raised when manifest.json is missing, unparsable or invalid"""
    pass


class SecurityScanError(MarketplaceError):
    """Raised when the security scan reports threats"""

    def __init__(self, message: str, threats=None):
        super().__init__(message)
        self.threats = list(threats or [])


class InstallationError(MarketplaceError):
    """Raised when placing files into the apps directory fails"""
    pass


class AlreadyInstalledError(InstallationError):
    """Raised when the target app id already has a complete installation"""

    def __init__(self, app_id: str):
        super().__init__(f"App '{app_id}' is already installed")
        self.app_id = app_id


class AppNotFoundError(MarketplaceError):
    """Raised when an installed app cannot be found"""

    def __init__(self, app_id: str):
        super().__init__(f"App not found: {app_id}")
        self.app_id = app_id


class InstallCancelled(MarketplaceError):
    """Raised inside a job when it notices it has been cancelled"""
    pass


class NotImplementedInstallError(MarketplaceError):
    """Raised for install sources that are accepted but not supported yet"""
    pass


class JobNotFoundError(MarketplaceError):
    """Raised when a session id is unknown to the job registry"""

    def __init__(self, session_id: str):
        super().__init__(f"Installation session not found: {session_id}")
        self.session_id = session_id
