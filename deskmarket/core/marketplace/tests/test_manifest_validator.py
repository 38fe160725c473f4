"""Tests for manifest validation."""

import pytest

from deskmarket.core.marketplace.validator import REQUIRED_FIELDS, validate_manifest


def make_manifest(**overrides):
    manifest = {
        "id": "notes-app",
        "name": "Notes",
        "version": "1.2.3",
        "description": "Take notes",
        "author": "Desk Team",
        "license": "MIT",
        "main": "index.html",
        "type": "web",
    }
    manifest.update(overrides)
    return manifest


class TestValidateManifest:
    def test_valid_manifest(self):
        result = validate_manifest(make_manifest())
        assert result.valid is True
        assert result.errors == []

    def test_extra_fields_are_allowed(self):
        result = validate_manifest(make_manifest(permissions=["fs"], tags=["text"], icon="icon.png"))
        assert result.valid is True

    def test_version_with_suffix_is_valid(self):
        assert validate_manifest(make_manifest(version="2.0.0-beta.1")).valid is True

    def test_collects_every_missing_field(self):
        result = validate_manifest({})
        assert result.valid is False
        assert result.errors == [f"Missing required field: {f}" for f in REQUIRED_FIELDS]

    def test_empty_string_counts_as_missing(self):
        result = validate_manifest(make_manifest(author=""))
        assert result.errors == ["Missing required field: author"]

    def test_invalid_id(self):
        result = validate_manifest(make_manifest(id="../evil"))
        assert result.errors == ["Invalid app ID format"]

    @pytest.mark.parametrize("app_id", [".", "..", ".hidden", ".staging-abc", "x" * 101, 42])
    def test_ids_that_cannot_name_an_app_dir(self, app_id):
        result = validate_manifest(make_manifest(id=app_id))
        assert result.errors == ["Invalid app ID format"]

    def test_uppercase_id_is_accepted(self):
        assert validate_manifest(make_manifest(id="Notes.App_2")).valid is True

    def test_invalid_version(self):
        result = validate_manifest(make_manifest(version="1.0"))
        assert result.errors == ["Invalid version format"]

    def test_invalid_type(self):
        result = validate_manifest(make_manifest(type="plugin"))
        assert result.errors == ["Invalid app type"]

    def test_multiple_violations(self):
        result = validate_manifest(make_manifest(id="bad id", version="x", type="other", main=None))
        assert result.valid is False
        assert result.errors == [
            "Missing required field: main",
            "Invalid app ID format",
            "Invalid version format",
            "Invalid app type",
        ]

    def test_non_object_input(self):
        for value in (None, [], "manifest", 42):
            result = validate_manifest(value)
            assert result.valid is False
            assert result.errors == ["Manifest must be a JSON object"]
