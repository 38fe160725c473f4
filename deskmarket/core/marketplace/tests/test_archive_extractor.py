"""Tests for archive extraction through unzip/tar."""

import asyncio
import io
import shutil
import tarfile
import zipfile
from unittest.mock import AsyncMock, patch

import pytest

from deskmarket.core.marketplace.exceptions import (
    ExtractionError,
    SizeLimitExceeded,
    UnsupportedArchiveError,
)
from deskmarket.core.marketplace.extractor import (
    ArchiveExtractor,
    build_command,
    find_escaping_symlinks,
)


def make_tar(path, files, symlinks=None):
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path


class TestBuildCommand:
    def test_zip(self, tmp_path):
        cmd = build_command(tmp_path / "a.zip", tmp_path / "out")
        assert cmd == ["unzip", "-q", "-o", str(tmp_path / "a.zip"), "-d", str(tmp_path / "out")]

    @pytest.mark.parametrize("name", ["a.tar", "a.tar.gz", "a.tgz", "a.tar.bz2", "a.tar.xz", "A.TGZ"])
    def test_tar_family(self, tmp_path, name):
        cmd = build_command(tmp_path / name, tmp_path / "out")
        assert cmd[:2] == ["tar", "xf"]
        assert cmd[-2:] == ["-C", str(tmp_path / "out")]

    @pytest.mark.parametrize("name", ["a.rar", "a.7z", "archive"])
    def test_unsupported(self, tmp_path, name):
        with pytest.raises(UnsupportedArchiveError):
            build_command(tmp_path / name, tmp_path / "out")


class TestArchiveExtractor:
    def setup_method(self):
        self.extractor = ArchiveExtractor(max_archive_size=1024 * 1024, timeout=30)

    @pytest.mark.asyncio
    async def test_extract_tar_gz(self, tmp_path):
        archive = make_tar(tmp_path / "app.tar.gz", {
            "manifest.json": "{}",
            "src/index.html": "<html></html>",
        })
        dest = tmp_path / "out"

        await self.extractor.extract(archive, dest)

        assert (dest / "manifest.json").read_text() == "{}"
        assert (dest / "src" / "index.html").exists()

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which("unzip") is None, reason="unzip not installed")
    async def test_extract_zip(self, tmp_path):
        archive = tmp_path / "app.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("manifest.json", "{}")
            zf.writestr("assets/app.js", "console.log(1)")
        dest = tmp_path / "out"

        await self.extractor.extract(archive, dest)

        assert (dest / "assets" / "app.js").read_text() == "console.log(1)"

    @pytest.mark.asyncio
    async def test_archive_size_checked_first(self, tmp_path):
        archive = tmp_path / "big.tar.gz"
        archive.write_bytes(b"\0" * 4096)
        extractor = ArchiveExtractor(max_archive_size=1024)

        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(SizeLimitExceeded, match=r"Archive too large: 0\.00MB \(max: 0\.00MB\)"):
                await extractor.extract(archive, tmp_path / "out")
            mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "broken.tar.gz"
        archive.write_bytes(b"this is not a tarball")

        with pytest.raises(ExtractionError, match="Failed to extract archive"):
            await self.extractor.extract(archive, tmp_path / "out")

    @pytest.mark.asyncio
    async def test_missing_tool(self, tmp_path):
        archive = make_tar(tmp_path / "app.tgz", {"a.txt": "a"})

        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("tar")):
            with pytest.raises(ExtractionError, match="Failed to extract archive: tar unavailable"):
                await self.extractor.extract(archive, tmp_path / "out")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        archive = make_tar(tmp_path / "app.tgz", {"a.txt": "a"})

        async def never_finishes():
            await asyncio.sleep(10)

        process = AsyncMock()
        process.communicate = never_finishes
        process.kill = lambda: None
        process.wait = AsyncMock(return_value=-9)
        extractor = ArchiveExtractor(timeout=0.05)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ExtractionError, match="timed out"):
                await extractor.extract(archive, tmp_path / "out")

        process.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_escaping_symlink_rejected(self, tmp_path):
        archive = make_tar(tmp_path / "app.tar.gz", {"a.txt": "a"}, symlinks={"link": "/etc/passwd"})

        with pytest.raises(ExtractionError, match="symlink points outside package: link"):
            await self.extractor.extract(archive, tmp_path / "out")

    def test_internal_symlink_allowed(self, tmp_path):
        (tmp_path / "real.txt").write_text("x")
        (tmp_path / "alias.txt").symlink_to(tmp_path / "real.txt")
        (tmp_path / "up").symlink_to(tmp_path.parent)

        assert find_escaping_symlinks(tmp_path) == ["up"]
