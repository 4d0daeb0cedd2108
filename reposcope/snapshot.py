"""Build immutable repository snapshots from a local checkout."""

from __future__ import annotations

import hashlib
import logging
import os
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from .analysis.languages import BINARY_SNIFF_BYTES, is_binary_content
from .config import DEFAULT_IGNORE_DIRS, DEFAULT_IGNORE_EXTENSIONS, Config
from .models import RepositorySnapshot, SnapshotFile

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 1_000_000


def _git(repo_path: Path, *args: str) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        logger.debug("git %s failed in %s", " ".join(args), repo_path, exc_info=True)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip()


def content_digest(files: Iterable[SnapshotFile]) -> str:
    """SHA-256 over ordered ``(path, content)`` pairs."""
    digest = hashlib.sha256()
    for f in files:
        digest.update(f.path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(f.sha256.encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def resolve_revision(repo_path: Path, files: list[SnapshotFile]) -> str:
    """Commit id for a clean git checkout, otherwise a content digest.

    A dirty working tree gets the commit id suffixed with the digest so
    uncommitted edits produce a distinct revision.
    """
    toplevel = _git(repo_path, "rev-parse", "--show-toplevel")
    # Only a checkout rooted at repo_path names its revision by commit.
    head = None
    if toplevel and Path(toplevel).resolve() == repo_path.resolve():
        head = _git(repo_path, "rev-parse", "HEAD")
    if head:
        status = _git(repo_path, "status", "--porcelain")
        if not status:
            return head
        return f"{head}-dirty-{content_digest(files)[:16]}"
    return content_digest(files)


def iter_repo_files(
    repo_path: Path,
    ignore_dirs: Iterable[str],
    ignore_extensions: Iterable[str],
) -> list[Path]:
    """Files under ``repo_path`` in sorted order, skipping ignored names."""
    skip_dirs = set(ignore_dirs)
    skip_exts = {e.lower() for e in ignore_extensions}
    found: list[Path] = []
    for root, dirs, files in os.walk(repo_path):
        dirs[:] = sorted(d for d in dirs if d not in skip_dirs)
        for name in sorted(files):
            path = Path(root) / name
            if path.suffix.lower() in skip_exts:
                continue
            if path.is_symlink() or not path.is_file():
                continue
            found.append(path)
    found.sort(key=lambda p: p.relative_to(repo_path).as_posix())
    return found


def build_snapshot(
    repo_path: Path,
    config: Optional[Config] = None,
    repo_name: Optional[str] = None,
) -> RepositorySnapshot:
    """Read a checkout into a ``RepositorySnapshot``.

    Oversized and binary files are left out; the rest keep their raw bytes.
    """
    repo_path = Path(repo_path).expanduser().resolve()
    if not repo_path.is_dir():
        raise FileNotFoundError(f"Repository path does not exist: {repo_path}")

    if config is not None:
        ignore_dirs = config.snapshot_ignore_dirs
        ignore_extensions = config.snapshot_ignore_extensions
        max_bytes = config.snapshot_max_file_bytes
    else:
        ignore_dirs = DEFAULT_IGNORE_DIRS
        ignore_extensions = DEFAULT_IGNORE_EXTENSIONS
        max_bytes = DEFAULT_MAX_FILE_BYTES

    files: list[SnapshotFile] = []
    too_large = 0
    binary = 0
    unreadable = 0
    for path in iter_repo_files(repo_path, ignore_dirs, ignore_extensions):
        rel = path.relative_to(repo_path).as_posix()
        try:
            if path.stat().st_size > max_bytes:
                too_large += 1
                continue
            content = path.read_bytes()
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
            unreadable += 1
            continue
        if is_binary_content(rel, content[:BINARY_SNIFF_BYTES]):
            binary += 1
            continue
        files.append(SnapshotFile(path=rel, content=content))

    revision = resolve_revision(repo_path, files)
    logger.info(
        "Snapshot scan summary for %s: included=%d too_large=%d binary=%d unreadable=%d revision=%s",
        repo_path,
        len(files),
        too_large,
        binary,
        unreadable,
        revision[:12],
    )
    return RepositorySnapshot(
        revision=revision,
        files=tuple(files),
        repo_name=repo_name or repo_path.name,
    )
