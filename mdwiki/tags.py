"""Tag index and the tag pages built from it."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import PurePath, PurePosixPath
from typing import Iterable, Mapping

from mdwiki.paths import relative_link
from mdwiki.text import link_label


def _as_path(path) -> PurePosixPath:
    if isinstance(path, PurePath):
        return PurePosixPath(path.as_posix())
    return PurePosixPath(os.fspath(path))


@dataclass
class TagIndex:
    """Normalised tag name -> sorted, unique output paths of tagged notes."""

    entries: dict = field(default_factory=dict)


def tag_prefixes(tag: str) -> list:
    """``auth/session/x`` -> ``["auth", "auth/session", "auth/session/x"]``."""
    parts = [part for part in tag.split("/") if part]
    return ["/".join(parts[:n]) for n in range(1, len(parts) + 1)]


def build_tag_index(notes: Iterable) -> TagIndex:
    """Build the index from ``(output_path, tags)`` pairs, one per note."""
    collected: dict = {}
    for output_path, tags in notes:
        path = _as_path(output_path)
        for tag in tags:
            norm = tag.strip()
            if not norm:
                continue
            for prefix in tag_prefixes(norm):
                collected.setdefault(prefix, set()).add(path)
    return TagIndex(entries={tag: sorted(collected[tag]) for tag in sorted(collected)})


def tag_page_path(tag: str) -> PurePosixPath:
    """``auth`` -> ``tags/auth.md``; ``auth/session`` -> ``tags/auth/session.md``."""
    parts = [part for part in tag.split("/") if part]
    if not parts:
        raise ValueError("tag must have at least one segment")
    *rest, last = parts
    return PurePosixPath("tags", *rest, f"{last}.md")


def render_tag_index_page(tag_index: TagIndex) -> str:
    """Body of ``tags/index.md`` listing every tag."""
    lines = ["# Tags", ""]
    if not tag_index.entries:
        lines.append("_(no tags)_")
        return "\n".join(lines) + "\n"
    source = PurePosixPath("tags/index.md")
    for tag, paths in tag_index.entries.items():
        link = relative_link(source, tag_page_path(tag))
        lines.append(f"- [`{tag}`]({link}) ({len(paths)} 件)")
    return "\n".join(lines) + "\n"


def render_tag_page(tag: str, node_paths: Iterable, titles: Mapping) -> str:
    """Body of one tag page; ``titles`` maps output paths to note titles."""
    lines = [f"# Tag: `{tag}`", ""]
    paths = [_as_path(p) for p in node_paths]
    if not paths:
        lines.append("_(no entries)_")
        return "\n".join(lines) + "\n"
    title_by_path = {_as_path(k): v for k, v in titles.items()}
    source = tag_page_path(tag)
    for path in paths:
        title = title_by_path.get(path, str(path))
        lines.append(f"- [{link_label(title)}]({relative_link(source, path)})")
    return "\n".join(lines) + "\n"