"""Output path layout: sanitising names, entry/fragment paths and relative links."""

from __future__ import annotations

import os
import unicodedata
from pathlib import PurePath, PurePosixPath
from typing import Union

PathInput = Union[str, "os.PathLike[str]"]

FORBIDDEN_CHARS = frozenset('<>:"|?*\\')


def _pure(path: PathInput) -> PurePosixPath:
    if isinstance(path, PurePath):
        return PurePosixPath(path.as_posix())
    return PurePosixPath(os.fspath(path))


def _normal_parts(path: PurePosixPath) -> list[str]:
    return [part for part in path.parts if part not in ("/", ".", "..")]


def markdown_path(path: PathInput) -> str:
    """Render a path with forward slashes, as used inside generated Markdown."""
    text = _pure(path).as_posix()
    return "" if text == "." else text


def sanitize_component(name: str) -> str:
    """Replace characters that cannot appear in a file name with ``_``."""
    return "".join(
        "_" if ch in FORBIDDEN_CHARS or unicodedata.category(ch) == "Cc" else ch
        for ch in name
    )


def sanitize_path(path: PathInput) -> PurePosixPath:
    """Sanitise every normal component of a path, dropping roots and ``..``."""
    return PurePosixPath(*(sanitize_component(part) for part in _normal_parts(_pure(path))))


def entry_dir(source_file: PathInput) -> PurePosixPath:
    """Directory holding a note's pages: ``docs/foo.md`` -> ``fragments/docs/foo``."""
    source = _pure(source_file)
    name = source.name
    stem = source.stem if name and name != ".." else "note"
    parent = sanitize_path(source.parent)
    return PurePosixPath("fragments", *parent.parts, sanitize_component(stem))


def entry_index_path(source_file: PathInput) -> PurePosixPath:
    """Entry page of a note: ``fragments/<rel>/index.md``."""
    return entry_dir(source_file) / "index.md"


def fragment_leaf_path(entry_dir: PathInput, slug: str) -> PurePosixPath:
    """Page of an h2 fragment: ``<entry_dir>/<slug>.md``."""
    return _pure(entry_dir) / f"{sanitize_component(slug)}.md"


def shell_index_path(entry_dir: PathInput, slug: str) -> PurePosixPath:
    """Shell page of an h2 split into h3 children: ``<entry_dir>/<slug>/index.md``."""
    return _pure(entry_dir) / sanitize_component(slug) / "index.md"


def h3_leaf_path(entry_dir: PathInput, h2_slug: str, h3_slug: str) -> PurePosixPath:
    """Page of an h3 child fragment: ``<entry_dir>/<h2-slug>/<h3-slug>.md``."""
    return _pure(entry_dir) / sanitize_component(h2_slug) / f"{sanitize_component(h3_slug)}.md"


def relative_link(from_path: PathInput, to_path: PathInput) -> str:
    """Relative link from the directory of ``from_path`` to ``to_path``."""
    from_parts = _normal_parts(_pure(from_path).parent)
    to_parts = _normal_parts(_pure(to_path))
    common = 0
    for left, right in zip(from_parts, to_parts):
        if left != right:
            break
        common += 1
    parts = [".."] * (len(from_parts) - common) + to_parts[common:]
    return "/".join(parts) if parts else "."


def resolve_conflict(path: PathInput, used: set) -> PurePosixPath:
    """Return ``path`` or the first free ``<stem>-N`` variant, recording it in ``used``."""
    candidate = _pure(path)
    if candidate not in used:
        used.add(candidate)
        return candidate
    stem = candidate.stem
    ext = candidate.suffix[1:]
    parent = candidate.parent
    n = 1
    while True:
        name = f"{stem}-{n}.{ext}" if ext else f"{stem}-{n}"
        option = parent / name
        if option not in used:
            used.add(option)
            return option
        n += 1