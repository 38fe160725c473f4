"""Read-side views of the marketplace: registry, installed apps, categories"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from deskmarket.core.marketplace.exceptions import AppNotFoundError
from deskmarket.core.time import iso_z

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"
CATEGORIES_FILE = "categories.json"
MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"

DEFAULT_CATEGORIES = [
    {"id": "productivity", "name": "Productivity", "icon": "briefcase"},
    {"id": "development", "name": "Development", "icon": "code"},
    {"id": "multimedia", "name": "Multimedia", "icon": "play-circle"},
    {"id": "games", "name": "Games", "icon": "gamepad-2"},
    {"id": "education", "name": "Education", "icon": "graduation-cap"},
    {"id": "utilities", "name": "Utilities", "icon": "wrench"},
    {"id": "system", "name": "System", "icon": "settings"},
    {"id": "graphics", "name": "Graphics", "icon": "palette"},
    {"id": "network", "name": "Network", "icon": "globe"},
    {"id": "office", "name": "Office", "icon": "file-text"},
]

SORT_KEYS = ("name", "rating", "downloads", "updated")


def sanitize_app_id(app_id: str) -> str:
    """Replace characters outside [a-zA-Z0-9._-] and cap the length at 100"""
    return re.sub(r'[^a-zA-Z0-9._-]', '_', app_id)[:100]


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _tree_size(path: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def _mtime_iso(path: Path) -> str:
    return iso_z(datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc))


class AppCatalog:
    """Views over the apps directory"""

    def __init__(self, apps_dir: Path):
        self.apps_dir = Path(apps_dir)

    def list_available(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort: str = "name",
    ) -> Dict[str, Any]:
        """
        Filter, sort and paginate registry.json

        A missing or unreadable registry is reported as an empty listing.
        """
        try:
            apps = _read_json(self.apps_dir / REGISTRY_FILE)
        except (OSError, ValueError) as e:
            logger.debug(f"No usable app registry: {e}")
            apps = []
        if not isinstance(apps, list):
            logger.warning(f"{REGISTRY_FILE} is not a list, ignoring it")
            apps = []
        apps = [app for app in apps if isinstance(app, dict)]

        if category and category != "all":
            apps = [app for app in apps if app.get("category") == category]

        if search:
            term = search.lower()
            apps = [
                app for app in apps
                if term in str(app.get("name", "")).lower()
                or term in str(app.get("description", "")).lower()
                or any(term in str(tag).lower() for tag in app.get("tags") or [])
            ]

        if sort == "name":
            apps.sort(key=lambda a: str(a.get("name", "")).lower())
        elif sort == "rating":
            apps.sort(key=lambda a: a.get("rating") or 0, reverse=True)
        elif sort == "downloads":
            apps.sort(key=lambda a: a.get("downloadCount") or 0, reverse=True)
        elif sort == "updated":
            apps.sort(key=lambda a: str(a.get("updatedAt") or ""), reverse=True)

        offset = (page - 1) * limit
        return {
            "apps": apps[offset:offset + limit],
            "total": len(apps),
            "page": page,
            "limit": limit,
            "hasMore": offset + limit < len(apps),
        }

    def get_app(self, app_id: str) -> Dict[str, Any]:
        """
        Manifest of an installed app plus installedSize and installedAt

        Raises:
            AppNotFoundError: If the app has no readable manifest
        """
        app_dir = self.apps_dir / app_id
        try:
            manifest = _read_json(app_dir / MANIFEST_FILE)
        except (OSError, ValueError):
            raise AppNotFoundError(app_id)
        if not isinstance(manifest, dict):
            raise AppNotFoundError(app_id)

        metadata = self._read_metadata(app_dir)
        manifest["installedSize"] = _tree_size(app_dir)
        manifest["installedAt"] = metadata.get("installedAt") or _mtime_iso(app_dir)
        return manifest

    def list_installed(self) -> Dict[str, Any]:
        """Every app directory with a manifest, merged with its metadata"""
        installed: List[Dict[str, Any]] = []
        if not self.apps_dir.is_dir():
            logger.warning(f"No apps directory found at {self.apps_dir}")
            return {"apps": installed, "total": 0}

        for app_dir in sorted(self.apps_dir.iterdir()):
            # Staging and displaced trees are dot-prefixed
            if not app_dir.is_dir() or app_dir.name.startswith("."):
                continue
            try:
                manifest = _read_json(app_dir / MANIFEST_FILE)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load app {app_dir.name}: {e}")
                continue
            if not isinstance(manifest, dict):
                continue

            metadata = self._read_metadata(app_dir)
            installed.append({
                **manifest,
                **metadata,
                "installPath": str(app_dir),
                "installedSize": _tree_size(app_dir),
                "status": "installed" if metadata else "incomplete",
            })

        return {"apps": installed, "total": len(installed)}

    def list_categories(self) -> List[Dict[str, Any]]:
        """categories.json, or the built-in defaults"""
        try:
            categories = _read_json(self.apps_dir / CATEGORIES_FILE)
        except (OSError, ValueError):
            return [dict(c) for c in DEFAULT_CATEGORIES]
        if not isinstance(categories, list):
            return [dict(c) for c in DEFAULT_CATEGORIES]
        return categories

    def check_updates(self, app_id: str) -> Dict[str, Any]:
        """
        Update check placeholder; there is no remote registry to ask

        Raises:
            AppNotFoundError: If the app is not installed
        """
        try:
            manifest = _read_json(self.apps_dir / app_id / MANIFEST_FILE)
        except (OSError, ValueError):
            raise AppNotFoundError(app_id)

        version = manifest.get("version") if isinstance(manifest, dict) else None
        return {
            "hasUpdates": False,
            "currentVersion": version,
            "latestVersion": version,
            "updates": [],
        }

    @staticmethod
    def _read_metadata(app_dir: Path) -> Dict[str, Any]:
        try:
            metadata = _read_json(app_dir / METADATA_FILE)
        except (OSError, ValueError):
            return {}
        return metadata if isinstance(metadata, dict) else {}
