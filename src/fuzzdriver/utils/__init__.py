"""Shared file and toolchain helpers for engines."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

log = logging.getLogger(__name__)


def copy_corpus(source: Path, target_dir: Path) -> int:
    """Seed *target_dir* from a corpus directory (recursively) or a single file.

    Files are flattened into *target_dir* by name; a name collision gets a
    numeric prefix. The source is never modified. Returns the number of
    files copied.
    """
    source = Path(source)
    target_dir.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        files = sorted(p for p in source.rglob("*") if p.is_file())
    elif source.is_file():
        files = [source]
    else:
        log.warning("Corpus path does not exist: %s", source)
        return 0

    copied = 0
    for f in files:
        dest = target_dir / f.name
        n = 1
        while dest.exists():
            dest = target_dir / f"{n}_{f.name}"
            n += 1
        try:
            shutil.copy2(f, dest)
            copied += 1
        except OSError as e:
            log.warning("Failed to copy corpus file %s: %s", f, e)
    return copied


def count_files(directory: Path) -> int:
    """Number of regular files directly inside *directory* (0 if missing)."""
    if not directory.is_dir():
        return 0
    return sum(1 for p in directory.iterdir() if p.is_file())


def resolve_tool(name: str, search_dir: str | None = None) -> str:
    """Locate an engine tool, preferring *search_dir* over PATH.

    Falls back to the bare name so the spawn itself reports a missing tool.
    """
    if search_dir:
        candidate = Path(search_dir) / name
        if candidate.is_file():
            return str(candidate)
    found = shutil.which(name)
    return found or name


def is_launchable(executable: str | Path) -> bool:
    """True if *executable* is an executable file, either by path or on PATH."""
    path = Path(executable)
    if path.is_file():
        return os.access(path, os.X_OK)
    if path.parent == Path("."):
        return shutil.which(str(executable)) is not None
    return False
