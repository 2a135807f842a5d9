"""Tests for the working-tree scanner."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import TYPE_CHECKING

import pytest

from gitrelay.exceptions import ScanReadError
from gitrelay.services.scan_service import (
    is_binary_content,
    read_scanned_file,
    scan_repository,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestBinaryDetection:
    def test_plain_text_is_not_binary(self) -> None:
        assert not is_binary_content("héllo\n".encode())

    def test_nul_byte_is_binary(self) -> None:
        assert is_binary_content(b"abc\x00def")

    def test_invalid_utf8_is_binary(self) -> None:
        assert is_binary_content(b"\xff\xfe\xfa")

    def test_empty_is_text(self) -> None:
        assert not is_binary_content(b"")


class TestScanRepository:
    def test_skips_git_metadata_at_any_depth(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / "sub" / ".git").mkdir(parents=True)
        (tmp_path / "sub" / ".git" / "config").write_text("x")
        (tmp_path / "vendor").mkdir()
        (tmp_path / "vendor" / ".git").write_text("gitdir: ../.git/modules/vendor\n")
        (tmp_path / "vendor" / "lib.py").write_text("print(1)\n")
        (tmp_path / ".gitignore").write_text("*.pyc\n")

        paths = {f.path for f in scan_repository(tmp_path)}
        assert paths == {"vendor/lib.py", ".gitignore"}

    def test_text_file_fields(self, tmp_path: Path) -> None:
        (tmp_path / "docs").mkdir()
        data = "# Title\n\nbody\n".encode()
        (tmp_path / "docs" / "readme.md").write_bytes(data)

        [scanned] = scan_repository(tmp_path)
        assert scanned.path == "docs/readme.md"
        assert scanned.sha == hashlib.sha256(data).hexdigest()
        assert scanned.size == len(data)
        assert scanned.content == "# Title\n\nbody\n"
        assert not scanned.is_binary
        assert scanned.encoding == "utf-8"

    def test_binary_file_is_base64(self, tmp_path: Path) -> None:
        data = bytes(range(256))
        (tmp_path / "blob.bin").write_bytes(data)

        [scanned] = scan_repository(tmp_path)
        assert scanned.is_binary
        assert scanned.encoding == "base64"
        assert base64.b64decode(scanned.content) == data
        assert scanned.sha == hashlib.sha256(data).hexdigest()
        assert scanned.size == 256

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinks_are_skipped(self, tmp_path: Path) -> None:
        (tmp_path / "real.txt").write_text("real")
        (tmp_path / "link.txt").symlink_to(tmp_path / "real.txt")
        (tmp_path / "dir").mkdir()
        (tmp_path / "dir" / "inner.txt").write_text("inner")
        (tmp_path / "dirlink").symlink_to(tmp_path / "dir", target_is_directory=True)

        paths = {f.path for f in scan_repository(tmp_path)}
        assert paths == {"real.txt", "dir/inner.txt"}

    def test_unreadable_file_is_skipped(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / "good.txt").write_text("ok")
        (tmp_path / "bad.txt").write_text("nope")

        import gitrelay.services.scan_service as scan_module

        real_read = scan_module.read_scanned_file

        def flaky_read(root: Path, full_path: Path):  # type: ignore[no-untyped-def]
            if full_path.name == "bad.txt":
                raise ScanReadError("bad.txt", PermissionError("denied"))
            return real_read(root, full_path)

        monkeypatch.setattr(scan_module, "read_scanned_file", flaky_read)
        assert [f.path for f in scan_repository(tmp_path)] == ["good.txt"]

    def test_read_error_wraps_os_error(self, tmp_path: Path) -> None:
        with pytest.raises(ScanReadError) as exc_info:
            read_scanned_file(tmp_path, tmp_path / "missing.txt")
        assert exc_info.value.path == "missing.txt"
