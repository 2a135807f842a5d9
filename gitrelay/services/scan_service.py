"""Working-tree scanner: hashes and classifies every tracked file."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from gitrelay.exceptions import ScanReadError

logger = logging.getLogger(__name__)

GIT_DIR_NAME = ".git"
BINARY_SNIFF_BYTES = 8192

ContentEncoding = Literal["utf-8", "base64"]


@dataclass(frozen=True)
class ScannedFile:
    """One regular file found in a working tree."""

    path: str
    sha: str
    size: int
    content: str
    is_binary: bool
    encoding: ContentEncoding


def is_binary_content(data: bytes) -> bool:
    """Return True when a NUL byte appears early or the data is not valid UTF-8."""
    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def hash_bytes(data: bytes) -> str:
    """Compute the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def read_scanned_file(root: Path, full_path: Path) -> ScannedFile:
    """Read and classify one file. Raises ScanReadError when it cannot be read."""
    rel = full_path.relative_to(root).as_posix()
    try:
        data = full_path.read_bytes()
    except OSError as exc:
        raise ScanReadError(rel, exc) from exc

    binary = is_binary_content(data)
    if binary:
        content = base64.b64encode(data).decode("ascii")
        encoding: ContentEncoding = "base64"
    else:
        content = data.decode("utf-8")
        encoding = "utf-8"
    return ScannedFile(
        path=rel,
        sha=hash_bytes(data),
        size=len(data),
        content=content,
        is_binary=binary,
        encoding=encoding,
    )


def scan_repository(root: Path) -> list[ScannedFile]:
    """Scan a working tree, skipping ``.git`` entries at any depth and symlinks.

    Unreadable files are logged and skipped. The result order is not significant.
    """
    files: list[ScannedFile] = []
    for dirpath, dirs, filenames in os.walk(root, followlinks=False):
        dirs[:] = [
            d for d in dirs if d != GIT_DIR_NAME and not (Path(dirpath) / d).is_symlink()
        ]
        for filename in filenames:
            if filename == GIT_DIR_NAME:
                continue
            full = Path(dirpath) / filename
            if full.is_symlink() or not full.is_file():
                continue
            try:
                files.append(read_scanned_file(root, full))
            except ScanReadError as exc:
                logger.warning("Skipping unreadable file %s: %s", exc.path, exc)
    logger.debug("Scanned %d files under %s", len(files), root)
    return files
