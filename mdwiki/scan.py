"""Discovery of text files under an input directory."""

from __future__ import annotations

import codecs
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

_log = logging.getLogger(__name__)

PEEK_BYTES = 8192
FILE_COUNT_WARN = 10_000
DEPTH_WARN = 20

EXCLUDED_NAMES = frozenset({".git", "node_modules", "dist", "build", "target"})
WIKI_HIDDEN_DIR = ".wiki"


@dataclass
class ScanConfig:
    """What to scan: the root, extra absolute paths to skip, and whether to recurse."""

    root: Path
    extra_excluded: list = field(default_factory=list)
    recursive: bool = True

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.extra_excluded = [Path(p) for p in self.extra_excluded]


@dataclass(frozen=True)
class ScannedFile:
    """A text file found by a scan, relative to the scan root."""

    relative_path: Path
    size: int


def _normalized_abs(path: Path) -> Path:
    try:
        return path.resolve(strict=True)
    except OSError:
        return path.absolute()


def is_probably_text(path) -> bool:
    """True when the head of the file has no NUL byte and is valid UTF-8."""
    path = Path(path)
    try:
        with path.open("rb") as handle:
            head = handle.read(PEEK_BYTES)
    except OSError as err:
        _log.warning("failed to read %s: %s", path, err)
        return False
    if b"\x00" in head:
        _log.warning("%s contains NULL byte, treating as binary", path)
        return False
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        # A multi-byte sequence cut off at the peek boundary is accepted.
        decoder.decode(head, final=False)
    except UnicodeDecodeError as err:
        _log.warning("%s is not valid UTF-8, skipping: %s", path, err)
        return False
    return True


def scan_single_file(path) -> Optional[ScannedFile]:
    """Describe one file by its name, or return None if it is unreadable or binary."""
    path = Path(path)
    rel = Path(path.name) if path.name else path
    try:
        size = path.stat().st_size
    except OSError as err:
        _log.warning("failed to read metadata of %s: %s", rel, err)
        return None
    if not is_probably_text(path):
        return None
    return ScannedFile(relative_path=rel, size=size)


def _should_prune(entry: os.DirEntry, excluded: set) -> bool:
    try:
        is_dir = entry.is_dir(follow_symlinks=False)
    except OSError:
        is_dir = False
    if is_dir and excluded and _normalized_abs(Path(entry.path)) in excluded:
        return True
    name = entry.name
    # Excluded names are blocked for files too, e.g. a worktree's `.git` file.
    if name in EXCLUDED_NAMES:
        return True
    return is_dir and name.startswith(".") and name != WIKI_HIDDEN_DIR


def _walk(
    directory: Path, depth: int, recursive: bool, excluded: set
) -> Iterator[tuple]:
    try:
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda e: e.name)
    except OSError as err:
        _log.warning("walk error, skipping subtree %s: %s", directory, err)
        return
    for entry in children:
        if _should_prune(entry, excluded):
            continue
        yield entry, depth
        if not recursive:
            continue
        try:
            descend = entry.is_dir(follow_symlinks=False)
        except OSError:
            descend = False
        if descend:
            yield from _walk(Path(entry.path), depth + 1, recursive, excluded)


def scan(config: ScanConfig) -> list:
    """Return the text files under ``config.root``, sorted by relative path."""
    root = config.root
    if not root.is_dir():
        if root.is_file():
            if not is_probably_text(root):
                return []
            return [ScannedFile(relative_path=Path(), size=root.stat().st_size)]
        _log.warning("walk error, cannot read %s", root)
        return []

    excluded = {_normalized_abs(p) for p in config.extra_excluded}
    files: list = []
    warned_count = False
    warned_depth = False

    for entry, depth in _walk(root, 1, config.recursive, excluded):
        if not warned_depth and depth > DEPTH_WARN:
            _log.warning("directory depth exceeds %d at %s", DEPTH_WARN, entry.path)
            warned_depth = True
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            size = entry.stat(follow_symlinks=False).st_size
        except OSError as err:
            _log.warning("failed to read metadata of %s: %s", entry.path, err)
            continue
        path = Path(entry.path)
        if not is_probably_text(path):
            continue
        files.append(ScannedFile(relative_path=path.relative_to(root), size=size))
        if not warned_count and len(files) >= FILE_COUNT_WARN:
            _log.warning("scanned files reached %d, continuing", FILE_COUNT_WARN)
            warned_count = True

    files.sort(key=lambda f: f.relative_path)
    return files