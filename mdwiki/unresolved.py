"""Report page for wikilinks that could not be resolved."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import PurePath, PurePosixPath
from typing import Iterable, Optional


@dataclass
class UnresolvedLink:
    """A wikilink in ``source`` whose target note or heading was not found."""

    source: PurePosixPath
    target: str
    heading: Optional[str] = None
    alias: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.source, PurePath):
            self.source = PurePosixPath(self.source.as_posix())
        else:
            self.source = PurePosixPath(os.fspath(self.source))

    def notation(self) -> str:
        """The link written back in ``[[target#heading|alias]]`` form."""
        text = f"[[{self.target}"
        if self.heading is not None:
            text += f"#{self.heading}"
        if self.alias is not None:
            text += f"|{self.alias}"
        return text + "]]"


def render_unresolved(links: Iterable[UnresolvedLink]) -> str:
    """Body of ``_unresolved.md``, grouped by the page each link came from."""
    lines = ["# Unresolved wikilinks", ""]
    by_source: dict = {}
    for link in links:
        by_source.setdefault(link.source, []).append(link)
    if not by_source:
        lines.append("_(すべての wikilink が解決されました)_")
        return "\n".join(lines) + "\n"
    for source in sorted(by_source):
        lines.extend([f"## `{source}`", ""])
        for link in by_source[source]:
            reason = (
                " — 対象ノート内に見出しが見つからない"
                if link.heading is not None
                else " — 対象ノートが見つからない"
            )
            lines.append(f"- `{link.notation()}`{reason}")
        lines.append("")
    return "\n".join(lines) + "\n"