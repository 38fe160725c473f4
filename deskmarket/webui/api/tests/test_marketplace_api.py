"""HTTP tests for the marketplace API.

The app runs with its lifespan (``with TestClient(app)``) so install jobs
execute on the test client's event loop; downloads go through an
httpx.MockTransport.
"""

import io
import json
import tarfile
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from deskmarket.config import MarketplaceSettings
from deskmarket.core.marketplace.downloader import DownloadManager
from deskmarket.core.marketplace.jobs import CANCELLED_MESSAGE
from deskmarket.core.marketplace.scanner import SecurityScanner
from deskmarket.core.marketplace.service import MarketplaceService
from deskmarket.webui.app import create_app

BASE_URL = "https://apps.example.com"

MANIFEST = {
    "id": "notes",
    "name": "Notes",
    "version": "1.0.0",
    "description": "Take notes",
    "author": "Desk Team",
    "license": "MIT",
    "main": "index.html",
    "type": "web",
}


def make_package(manifest) -> bytes:
    files = {"index.html": "<html><body>notes</body></html>", "manifest.json": json.dumps(manifest)}
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


PACKAGES = {"/notes.tar.gz": make_package(MANIFEST)}


def serve_package(request: httpx.Request) -> httpx.Response:
    body = PACKAGES.get(request.url.path)
    if body is None:
        return httpx.Response(404)
    if request.method == "HEAD":
        return httpx.Response(200, headers={"Content-Length": str(len(body))})
    return httpx.Response(200, content=body)


class GatedScanner(SecurityScanner):
    """Scanner that blocks in its worker thread until released"""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def scan(self, root, level="standard"):
        self.entered.set()
        self.release.wait(5)
        return super().scan(root, level)


def wait_for_job(client, session_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/api/marketplace/jobs/{session_id}").json()
        if job["status"] in ("completed", "failed", "cancelled"):
            return job
        time.sleep(0.05)
    raise AssertionError(f"Job {session_id} did not finish in {timeout}s")


class TestMarketplaceAPI:
    @pytest.fixture(autouse=True)
    def client(self, tmp_path):
        settings = MarketplaceSettings(marketplace_dir=tmp_path / "marketplace", gc_interval=3600)
        downloader = DownloadManager(transport=httpx.MockTransport(serve_package))
        self.service = MarketplaceService(settings, downloader=downloader)
        self.apps_dir = settings.apps_dir
        with TestClient(create_app(service=self.service)) as client:
            self.client = client
            yield client

    def install_notes(self):
        response = self.client.post(
            "/api/marketplace/install",
            json={"url": f"{BASE_URL}/notes.tar.gz", "userId": "alice"},
        )
        assert response.status_code == 200
        return response.json()["sessionId"]

    def test_health(self):
        body = self.client.get("/api/health").json()
        assert body["ok"] is True
        assert body["runningJobs"] == 0

    def test_install_requires_url_or_manifest_id(self):
        response = self.client.post("/api/marketplace/install", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["message"] == "URL or manifest ID is required"
        assert body["reason_code"] == "VALIDATION_ERROR"
        assert "timestamp" in body

    def test_install_rejects_bad_scan_level(self):
        response = self.client.post(
            "/api/marketplace/install",
            json={"url": f"{BASE_URL}/notes.tar.gz", "scanLevel": "paranoid"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_install_rejects_non_http_url(self):
        response = self.client.post("/api/marketplace/install", json={"url": "ftp://x/app.zip"})

        assert response.status_code == 400
        assert "Invalid URL scheme" in response.json()["message"]

    def test_install_flow(self):
        response = self.client.post("/api/marketplace/install", json={"url": f"{BASE_URL}/notes.tar.gz"})
        body = response.json()
        session_id = body["sessionId"]

        assert body["success"] is True
        assert body["message"] == "Installation started"
        assert body["progressUrl"] == f"/api/marketplace/install/{session_id}/progress"

        job = wait_for_job(self.client, session_id)
        assert job["status"] == "completed"
        assert job["type"] == "install"
        assert job["appId"] == "notes"
        assert job["durations"]["totalMs"] >= 0

        progress = self.client.get(f"/api/marketplace/install/{session_id}/progress").json()
        assert progress["status"] == "completed"
        assert progress["progress"] == 100
        assert progress["message"] == "Notes installed successfully"
        assert progress["elapsedTime"] >= 0

        legacy = self.client.get(f"/api/marketplace/install/{session_id}").json()
        assert legacy["sessionId"] == session_id
        assert "elapsedTime" not in legacy

        metadata = json.loads((self.apps_dir / "notes" / "metadata.json").read_text())
        assert metadata["securityScan"]["safe"] is True
        assert metadata["sandboxConfig"] == {"enabled": True, "type": "partial"}

    def test_failed_download_reported_on_job(self):
        response = self.client.post("/api/marketplace/install", json={"url": f"{BASE_URL}/missing.zip"})

        job = wait_for_job(self.client, response.json()["sessionId"])

        assert job["status"] == "failed"
        assert job["progress"]["error"] == "Download failed with status 404"

    def test_unknown_session(self):
        for path in ("/api/marketplace/install/nope", "/api/marketplace/install/nope/progress"):
            response = self.client.get(path)
            assert response.status_code == 404
            assert response.json() == {
                "sessionId": "nope",
                "status": "not_found",
                "message": "Installation session not found or completed",
            }

        response = self.client.get("/api/marketplace/jobs/nope")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_cancel_unknown_or_finished(self):
        assert self.client.delete("/api/marketplace/install/nope").status_code == 400

        session_id = self.install_notes()
        wait_for_job(self.client, session_id)

        response = self.client.delete(f"/api/marketplace/install/{session_id}")
        assert response.status_code == 400
        assert "Cannot cancel job in status: completed" in response.json()["message"]

    def test_list_jobs(self):
        session_id = self.install_notes()
        wait_for_job(self.client, session_id)

        body = self.client.get("/api/marketplace/jobs", params={"userId": "alice", "type": "install"}).json()
        assert [j["sessionId"] for j in body["jobs"]] == [session_id]
        assert body["stats"]["completed"] == 1
        assert body["stats"]["total"] == 1

        assert self.client.get("/api/marketplace/jobs", params={"userId": "bob"}).json()["jobs"] == []
        assert self.client.get("/api/marketplace/jobs", params={"status": "bogus"}).status_code == 400

    def test_installed_get_and_uninstall(self):
        wait_for_job(self.client, self.install_notes())

        installed = self.client.get("/api/marketplace/installed").json()
        assert installed["total"] == 1
        assert installed["apps"][0]["id"] == "notes"
        assert installed["apps"][0]["status"] == "installed"

        app = self.client.get("/api/marketplace/apps/notes").json()
        assert app["version"] == "1.0.0"
        assert app["installedSize"] > 0

        response = self.client.delete("/api/marketplace/apps/notes")
        assert response.status_code == 200
        assert response.json()["message"] == "App uninstalled successfully"
        assert not (self.apps_dir / "notes").exists()

        response = self.client.get("/api/marketplace/apps/notes")
        assert response.status_code == 404
        assert response.json()["message"] == "App not found: notes"

    def test_reinstall_without_update_fails(self):
        wait_for_job(self.client, self.install_notes())

        job = wait_for_job(self.client, self.install_notes())

        assert job["status"] == "failed"
        assert job["progress"]["error"] == "App 'notes' is already installed"

    def test_update_flow(self):
        wait_for_job(self.client, self.install_notes())

        response = self.client.post(
            "/api/marketplace/apps/notes/update", json={"url": f"{BASE_URL}/notes.tar.gz"},
        )
        assert response.json()["message"] == "App update started"

        job = wait_for_job(self.client, response.json()["sessionId"])
        assert job["status"] == "completed"
        assert job["type"] == "update"

    def test_update_requires_url_and_installed_app(self):
        response = self.client.post("/api/marketplace/apps/notes/update", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "URL is required"

        response = self.client.post(
            "/api/marketplace/apps/notes/update", json={"url": f"{BASE_URL}/notes.tar.gz"},
        )
        assert response.status_code == 404

    def test_invalid_app_id(self):
        response = self.client.delete("/api/marketplace/apps/bad id")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_APP_ID"

    def test_dot_prefixed_app_id_rejected(self):
        staging = self.apps_dir / ".staging-abc"
        staging.mkdir(parents=True)

        for path in ("/api/marketplace/apps/.staging-abc", "/api/marketplace/apps/.notes.displaced-1"):
            response = self.client.delete(path)
            assert response.status_code == 400
            assert response.json()["error_code"] == "INVALID_APP_ID"

        assert staging.is_dir()

    def test_cancelled_job_stays_visible(self):
        scanner = GatedScanner()
        self.service.coordinator.scanner = scanner
        session_id = self.install_notes()
        try:
            assert scanner.entered.wait(5)
            assert self.client.get(f"/api/marketplace/install/{session_id}").json()["status"] == "scanning"

            response = self.client.delete(f"/api/marketplace/install/{session_id}")
            assert response.status_code == 200
            assert response.json() == {"success": True, "message": "Installation cancelled"}
        finally:
            scanner.release.set()
        job = wait_for_job(self.client, session_id)

        progress = self.client.get(f"/api/marketplace/install/{session_id}")
        assert progress.status_code == 200
        assert progress.json()["status"] == "failed"
        assert progress.json()["error"] == CANCELLED_MESSAGE
        assert job["status"] == "cancelled"
        assert not (self.apps_dir / "notes").exists()

    def test_uninstall_missing_app(self):
        assert self.client.delete("/api/marketplace/apps/ghost").status_code == 404

    def test_check_updates(self):
        wait_for_job(self.client, self.install_notes())

        body = self.client.get("/api/marketplace/apps/notes/updates").json()

        assert body["hasUpdates"] is False
        assert body["currentVersion"] == "1.0.0"

    def test_apps_and_categories(self):
        (self.apps_dir / "registry.json").write_text(json.dumps([
            {"id": "b", "name": "Beta", "category": "games"},
            {"id": "a", "name": "Alpha", "category": "office"},
        ]))

        body = self.client.get("/api/marketplace/apps", params={"limit": 1}).json()
        assert [a["id"] for a in body["apps"]] == ["a"]
        assert body["hasMore"] is True

        assert self.client.get("/api/marketplace/apps", params={"limit": 0}).status_code == 400

        categories = self.client.get("/api/marketplace/categories").json()
        assert len(categories) == 10
