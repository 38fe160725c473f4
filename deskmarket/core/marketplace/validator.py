"""Validator for app manifests"""

import logging
import re
from typing import Any

from deskmarket.core.marketplace.models import AppType, ManifestValidationResult

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('id', 'name', 'version', 'description', 'author', 'license', 'main', 'type')

APP_ID_PATTERN = re.compile(r'^[a-z0-9._-]+$', re.IGNORECASE)
MAX_APP_ID_LENGTH = 100
VERSION_PATTERN = re.compile(r'^\d+\.\d+\.\d+')
VALID_APP_TYPES = {t.value for t in AppType}


def is_valid_app_id(app_id: Any) -> bool:
    """
    True when app_id can name a directory directly under apps/

    Dot-prefixed names are rejected: they include "." and "..", and the
    installer keeps its staging and displaced trees under such names.
    """
    return (
        isinstance(app_id, str)
        and bool(APP_ID_PATTERN.match(app_id))
        and len(app_id) <= MAX_APP_ID_LENGTH
        and not app_id.startswith('.')
    )


def validate_manifest(manifest: Any) -> ManifestValidationResult:
    """
    Validate a parsed manifest.json

    Collects every violation instead of stopping at the first one. Pure
    function: performs no I/O and never raises.

    Args:
        manifest: Parsed JSON value

    Returns:
        ManifestValidationResult with valid flag and error list
    """
    if not isinstance(manifest, dict):
        return ManifestValidationResult(valid=False, errors=["Manifest must be a JSON object"])

    errors = []

    for field_name in REQUIRED_FIELDS:
        if not manifest.get(field_name):
            errors.append(f"Missing required field: {field_name}")

    app_id = manifest.get('id')
    if app_id and not is_valid_app_id(app_id):
        errors.append('Invalid app ID format')

    version = manifest.get('version')
    if version and not (isinstance(version, str) and VERSION_PATTERN.match(version)):
        errors.append('Invalid version format')

    app_type = manifest.get('type')
    if app_type and app_type not in VALID_APP_TYPES:
        errors.append('Invalid app type')

    if errors:
        logger.debug(f"Manifest validation failed: {errors}")

    return ManifestValidationResult(valid=not errors, errors=errors)
