"""Scanning, output paths, tag and report pages, output plans, page registry, schema catalogs and context packs for Markdown wikis."""

__version__ = "0.1.3"

__all__ = [
    "context_pack",
    "output_plan",
    "page_registry",
    "paths",
    "scan",
    "schema",
    "tags",
    "text",
    "unresolved",
]