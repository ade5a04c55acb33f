"""
Archive caching for bannerkit.

Fingerprints unit output directories and remembers the last fingerprint per
unit so unchanged units are never re-zipped.
"""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Callable, Optional

from bannerkit.core.utils import is_noise, log


# =============================================================================
# Directory Fingerprints
# =============================================================================


def fingerprint_directory(directory: Path) -> str:
    """Hash a directory's file set: relative paths, sizes and mtimes.

    Directories contribute only their relative path; files contribute
    path, size and ``st_mtime_ns``. Noise entries (OS metadata, zips) are
    skipped for traversal and digest alike. Entries are visited in sorted
    order so the digest depends only on the tree state.

    This is not a content hash: a file rewritten with identical bytes but a
    new mtime counts as changed.
    """
    hasher = hashlib.sha256()
    stack: list[str] = [""]

    while stack:
        sub = stack.pop()
        current = directory / sub if sub else directory
        entries = sorted(current.iterdir(), key=lambda p: p.name)
        child_dirs: list[str] = []
        for entry in entries:
            if is_noise(entry.name):
                continue
            rel = f"{sub}/{entry.name}" if sub else entry.name
            if entry.is_dir():
                hasher.update(f"D:{rel}\0".encode("utf-8", errors="surrogateescape"))
                child_dirs.append(rel)
            else:
                st = entry.stat()
                token = f"F:{rel}:{st.st_size}:{st.st_mtime_ns}\0"
                hasher.update(token.encode("utf-8", errors="surrogateescape"))
        # Reversed so the stack pops subdirectories in lexical order
        stack.extend(reversed(child_dirs))

    return hasher.hexdigest()


# =============================================================================
# Fingerprint Store
# =============================================================================


class FingerprintStore:
    """One ``<unit>.hash`` file per unit under the cache directory.

    Lives outside the output tree so a rebuilt-but-unchanged unit is still
    recognized after the build directory was wiped. Entries are never
    deleted; stale ones for removed units are simply unreferenced.
    """

    SUFFIX = ".hash"

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir
        self._lock = threading.Lock()

    def _path(self, unit: str) -> Path:
        return self.cache_dir / f"{unit}{self.SUFFIX}"

    def load(self, unit: str) -> Optional[str]:
        """Return the last recorded digest, or None if never recorded."""
        path = self._path(unit)
        with self._lock:
            try:
                return path.read_text(encoding="utf-8").strip() or None
            except FileNotFoundError:
                return None

    def save(self, unit: str, digest: str) -> None:
        path = self._path(unit)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(digest, encoding="utf-8")


# =============================================================================
# Archive Cache
# =============================================================================


class ArchiveCache:
    """Decides whether a unit's archive must be (re)written."""

    def __init__(
        self,
        store: FingerprintStore,
        archive_path_for: Callable[[str], Path],
        fingerprint: Callable[[Path], str] = fingerprint_directory,
    ):
        self.store = store
        self.archive_path_for = archive_path_for
        self.fingerprint = fingerprint

    def should_archive(self, unit_dir: Path) -> bool:
        """True when the unit changed since the last decision or its zip is gone.

        Records the new fingerprint whenever it differs from the stored one.
        """
        unit = unit_dir.name
        current = self.fingerprint(unit_dir)
        previous = self.store.load(unit)

        changed = previous is None or previous != current
        if changed:
            self.store.save(unit, current)
            if previous is None:
                log.debug(f"[zip] {unit}: no previous fingerprint")
            else:
                log.debug(f"[zip] {unit}: changed ({previous[:8]} -> {current[:8]})")

        missing_artifact = not self.archive_path_for(unit).exists()
        if missing_artifact and not changed:
            log.debug(f"[zip] {unit}: archive missing, regenerating")

        return changed or missing_artifact
