"""Tests for the registry/installed/categories views."""

import json

import pytest

from deskmarket.core.marketplace.catalog import DEFAULT_CATEGORIES, AppCatalog, sanitize_app_id
from deskmarket.core.marketplace.exceptions import AppNotFoundError
from deskmarket.core.marketplace.validator import is_valid_app_id

REGISTRY = [
    {"id": "notes", "name": "Notes", "description": "Write things down", "category": "productivity",
     "tags": ["text"], "rating": 4.1, "downloadCount": 50, "updatedAt": "2026-01-02T00:00:00Z"},
    {"id": "paint", "name": "Paint", "description": "Draw pictures", "category": "graphics",
     "tags": ["image", "draw"], "rating": 4.8, "downloadCount": 10, "updatedAt": "2026-03-01T00:00:00Z"},
    {"id": "chess", "name": "chess", "description": "Board game", "category": "games",
     "tags": ["fun"], "rating": 3.9, "downloadCount": 900, "updatedAt": "2025-12-01T00:00:00Z"},
]


def install_app(apps_dir, app_id, manifest=None, metadata=None):
    app_dir = apps_dir / app_id
    app_dir.mkdir(parents=True)
    manifest = manifest or {"id": app_id, "name": app_id.title(), "version": "1.0.0"}
    (app_dir / "manifest.json").write_text(json.dumps(manifest))
    if metadata is not None:
        (app_dir / "metadata.json").write_text(json.dumps(metadata))
    return app_dir


class TestAppIds:
    @pytest.mark.parametrize("app_id", ["notes", "Notes.App", "my_app-2"])
    def test_valid(self, app_id):
        assert is_valid_app_id(app_id)

    @pytest.mark.parametrize("app_id", [
        "", "a b", "../etc", "a/b", ".", "..", ".staging-abc", ".notes.displaced-1", "x" * 101, None,
    ])
    def test_invalid(self, app_id):
        assert not is_valid_app_id(app_id)

    def test_sanitize(self):
        assert sanitize_app_id("a/b c") == "a_b_c"
        assert len(sanitize_app_id("x" * 300)) == 100


class TestAppCatalog:
    def setup_method(self):
        self.apps_dir = None

    def make_catalog(self, tmp_path, registry=REGISTRY):
        self.apps_dir = tmp_path / "apps"
        self.apps_dir.mkdir()
        if registry is not None:
            (self.apps_dir / "registry.json").write_text(json.dumps(registry))
        return AppCatalog(self.apps_dir)

    def test_list_sorted_by_name(self, tmp_path):
        result = self.make_catalog(tmp_path).list_available()

        assert [a["id"] for a in result["apps"]] == ["chess", "notes", "paint"]
        assert result["total"] == 3
        assert result["page"] == 1
        assert result["limit"] == 20
        assert result["hasMore"] is False

    @pytest.mark.parametrize("sort,expected", [
        ("rating", ["paint", "notes", "chess"]),
        ("downloads", ["chess", "notes", "paint"]),
        ("updated", ["paint", "notes", "chess"]),
    ])
    def test_sort(self, tmp_path, sort, expected):
        result = self.make_catalog(tmp_path).list_available(sort=sort)
        assert [a["id"] for a in result["apps"]] == expected

    def test_filter_category(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        assert [a["id"] for a in catalog.list_available(category="games")["apps"]] == ["chess"]
        assert catalog.list_available(category="all")["total"] == 3

    def test_search_name_description_and_tags(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        assert [a["id"] for a in catalog.list_available(search="NOTES")["apps"]] == ["notes"]
        assert [a["id"] for a in catalog.list_available(search="board")["apps"]] == ["chess"]
        assert [a["id"] for a in catalog.list_available(search="draw")["apps"]] == ["paint"]

    def test_pagination(self, tmp_path):
        catalog = self.make_catalog(tmp_path)

        first = catalog.list_available(page=1, limit=2)
        second = catalog.list_available(page=2, limit=2)

        assert [a["id"] for a in first["apps"]] == ["chess", "notes"]
        assert first["hasMore"] is True
        assert [a["id"] for a in second["apps"]] == ["paint"]
        assert second["hasMore"] is False

    def test_missing_registry(self, tmp_path):
        result = self.make_catalog(tmp_path, registry=None).list_available()
        assert result == {"apps": [], "total": 0, "page": 1, "limit": 20, "hasMore": False}

    def test_get_app(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        install_app(self.apps_dir, "notes", metadata={"installedAt": "2026-02-01T00:00:00.000000Z"})

        app = catalog.get_app("notes")

        assert app["id"] == "notes"
        assert app["installedAt"] == "2026-02-01T00:00:00.000000Z"
        assert app["installedSize"] > 0

    def test_get_app_not_found(self, tmp_path):
        with pytest.raises(AppNotFoundError):
            self.make_catalog(tmp_path).get_app("ghost")

    def test_list_installed(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        install_app(self.apps_dir, "notes", metadata={"fileHash": "abc"})
        install_app(self.apps_dir, "paint")
        (self.apps_dir / ".staging-123").mkdir()
        (self.apps_dir / "broken").mkdir()

        result = catalog.list_installed()

        assert result["total"] == 2
        by_id = {a["id"]: a for a in result["apps"]}
        assert by_id["notes"]["status"] == "installed"
        assert by_id["notes"]["fileHash"] == "abc"
        assert by_id["notes"]["installPath"] == str(self.apps_dir / "notes")
        assert by_id["paint"]["status"] == "incomplete"

    def test_categories_default(self, tmp_path):
        categories = self.make_catalog(tmp_path).list_categories()
        assert categories == DEFAULT_CATEGORIES
        assert len(categories) == 10

    def test_categories_from_file(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        (self.apps_dir / "categories.json").write_text(json.dumps([{"id": "x", "name": "X", "icon": "star"}]))

        assert catalog.list_categories() == [{"id": "x", "name": "X", "icon": "star"}]

    def test_check_updates(self, tmp_path):
        catalog = self.make_catalog(tmp_path)
        install_app(self.apps_dir, "notes", manifest={"id": "notes", "version": "1.4.0"})

        assert catalog.check_updates("notes") == {
            "hasUpdates": False,
            "currentVersion": "1.4.0",
            "latestVersion": "1.4.0",
            "updates": [],
        }

    def test_check_updates_not_installed(self, tmp_path):
        with pytest.raises(AppNotFoundError):
            self.make_catalog(tmp_path).check_updates("ghost")
