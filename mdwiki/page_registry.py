"""Registry of planned pages, checked for size limits and consistent navigation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath, PurePosixPath
from typing import Iterable, Iterator, Optional

PAGE_HARD_LIMIT_CHARS = 40_000


class RegistryError(Exception):
    """Raised when a set of page plans is inconsistent."""


class PageKind(Enum):
    ENTRY = "entry"
    SHELL = "shell"
    LEAF = "leaf"
    PAGED_INDEX = "paged_index"


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int


@dataclass(frozen=True)
class LineRange:
    start: int
    end: int


def _as_path(path) -> PurePosixPath:
    if isinstance(path, PurePath):
        return PurePosixPath(path.as_posix())
    return PurePosixPath(os.fspath(path))


def _optional_path(path) -> Optional[PurePosixPath]:
    return None if path is None else _as_path(path)


@dataclass
class PagePlan:
    """One generated page; ``parent``, ``prev`` and ``next`` are relative to it."""

    page_id: str
    page_kind: PageKind
    output_path: PurePosixPath
    source_path: Optional[PurePosixPath] = None
    section_path: list = field(default_factory=list)
    byte_ranges: list = field(default_factory=list)
    line_ranges: list = field(default_factory=list)
    split_reason: str = "heading"
    parent: Optional[PurePosixPath] = None
    prev: Optional[PurePosixPath] = None
    next: Optional[PurePosixPath] = None
    estimated_chars: int = 0

    def __post_init__(self) -> None:
        self.output_path = _as_path(self.output_path)
        self.source_path = _optional_path(self.source_path)
        self.parent = _optional_path(self.parent)
        self.prev = _optional_path(self.prev)
        self.next = _optional_path(self.next)


def _resolve_neighbor(from_path: PurePosixPath, rel: PurePosixPath) -> PurePosixPath:
    out: list = []
    for part in (from_path.parent / rel).parts:
        if part == "..":
            if out:
                out.pop()
        elif part in (".", "/"):
            continue
        else:
            out.append(part)
    return PurePosixPath(*out)


class PageRegistry:
    """Pages keyed by output path, with unique paths and valid links between them."""

    def __init__(self, pages: Optional[dict] = None) -> None:
        self._pages = dict(sorted((pages or {}).items()))

    @classmethod
    def build(cls, plans: Iterable[PagePlan]) -> "PageRegistry":
        pages: dict = {}
        for plan in plans:
            if plan.estimated_chars > PAGE_HARD_LIMIT_CHARS:
                raise RegistryError(
                    f"page exceeds hard limit: {plan.estimated_chars} chars at "
                    f"{plan.output_path}"
                )
            if plan.output_path in pages:
                raise RegistryError("duplicate output path registered")
            pages[plan.output_path] = plan
        registry = cls(pages)
        registry._validate_navigation()
        return registry

    def pages(self) -> Iterator[PagePlan]:
        """Pages in output-path order."""
        return iter(self._pages.values())

    def _validate_navigation(self) -> None:
        for plan in self._pages.values():
            if plan.parent is not None:
                target = _resolve_neighbor(plan.output_path, plan.parent)
                if target not in self._pages:
                    raise RegistryError(
                        f"missing parent {plan.parent} for {plan.output_path}"
                    )
            if plan.next is not None:
                target = _resolve_neighbor(plan.output_path, plan.next)
                next_plan = self._pages.get(target)
                if next_plan is None:
                    raise RegistryError(f"missing next {plan.next} for {plan.output_path}")
                back = (
                    None
                    if next_plan.prev is None
                    else _resolve_neighbor(next_plan.output_path, next_plan.prev)
                )
                if back != plan.output_path:
                    raise RegistryError(
                        f"next.prev does not point back to {plan.output_path}"
                    )


def page_kind_name(kind: PageKind) -> str:
    return kind.value