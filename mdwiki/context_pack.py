"""Context packs: selecting catalog pages for a task and packing them within a budget."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

import yaml

from mdwiki.schema import (
    CATALOG_PATH,
    CatalogPage,
    ContextRecipe,
    InternalCatalog,
    SchemaError,
    SchemaPack,
    compact_line,
    load_schema,
)

DEFAULT_BUDGET_CHARS = 20_000

_SOURCE_HEADING = "\n## Source Trail\n\n"
_OMITTED = "\n\nOmitted due to budget.\n"
_TRAIL_OMITTED = "- Omitted due to budget.\n"
_BARE_FLOOR = "---\nmd_wiki_context: {}\n---\n## Source Trail\n"


@dataclass
class PageSelection:
    """Pages chosen for a pack, in priority order, and the paths that count as in scope."""

    pages: list = field(default_factory=list)
    required_scope_paths: set = field(default_factory=set)


def _lines(text: str) -> list:
    parts = text.split("\n")
    last = parts.pop()
    out = [part[:-1] if part.endswith("\r") else part for part in parts]
    if last:
        out.append(last)
    return out


def _entity_matches(page: CatalogPage, entities: Sequence[str]) -> bool:
    return any(entity in page.entities or entity in page.tags for entity in entities)


def _page_matches(page: CatalogPage, needle: str) -> bool:
    haystacks = [page.title, *page.entities, *page.tags, *page.headings]
    if any(needle in text.lower() for text in haystacks):
        return True
    return any(
        needle in item.text.lower() for items in page.fields.values() for item in items
    )


def _add_candidate(candidates: dict, priority: int, page: CatalogPage) -> None:
    existing = candidates.get(page.generated_path)
    if existing is None or priority < existing[0]:
        candidates[page.generated_path] = (priority, page)


def select_pages(
    catalog: InternalCatalog,
    recipe: ContextRecipe,
    entities: Iterable[str],
    query: Optional[str],
    time: Optional[str],
) -> PageSelection:
    """Pick pages by entity, linked neighbour, recipe field, query and time, in that priority."""
    entities = list(entities)
    recipe_fields = {name for section in recipe.sections for name in section.fields}
    query = query.lower() if query is not None else None
    time = time.lower() if time is not None else None
    by_path = {page.generated_path: page for page in catalog.pages}
    candidates: dict = {}
    target_paths: set = set()
    has_target = bool(entities) or query is not None or time is not None

    for page in catalog.pages:
        if _entity_matches(page, entities):
            _add_candidate(candidates, 0, page)
            target_paths.add(page.generated_path)
            for neighbor in [*page.outgoing_links, *page.backlinks]:
                linked = by_path.get(neighbor)
                if linked is not None:
                    _add_candidate(candidates, 1, linked)
                    target_paths.add(linked.generated_path)

    for page in catalog.pages:
        if any(name in recipe_fields for name in page.fields):
            _add_candidate(candidates, 2, page)

    for page in catalog.pages:
        if query is not None and _page_matches(page, query):
            _add_candidate(candidates, 3, page)
            target_paths.add(page.generated_path)
        if time is not None and _page_matches(page, time):
            _add_candidate(candidates, 4, page)
            target_paths.add(page.generated_path)

    ordered = sorted(candidates.values(), key=lambda item: (item[0], item[1].generated_path))
    pages = [page for _, page in ordered]
    scope = target_paths if has_target else {page.generated_path for page in pages}
    return PageSelection(pages=pages, required_scope_paths=scope)


def _context_header(
    schema: SchemaPack,
    task: str,
    title: str,
    entities: list,
    query: Optional[str],
    time: Optional[str],
    budget: int,
) -> str:
    data: dict = {
        "schema_id": schema.id,
        "schema_version": schema.version,
        "task": task,
        "budget_chars": budget,
    }
    if entities:
        data["entities"] = list(entities)
    if query is not None:
        data["query"] = query
    if time is not None:
        data["time"] = time
    body = yaml.safe_dump(
        {"md_wiki_context": data},
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
        width=float("inf"),
    )
    return f"---\n{body}---\n# {title}\n"


def _pack_with_budget(
    schema: SchemaPack,
    recipe: ContextRecipe,
    task: str,
    selection: PageSelection,
    entities: list,
    query: Optional[str],
    time: Optional[str],
    budget: int,
) -> str:
    title = recipe.title if recipe.title is not None else task
    pack = _context_header(schema, task, title, entities, query, time, budget)
    source_trail: list = []
    cited_pages: set = set()
    missing: list = []

    for section in recipe.sections:
        if section.kind == "sources":
            continue
        section_body = ""
        for field_name in section.fields:
            found = False
            for page in selection.pages:
                if field_name not in page.fields:
                    continue
                if not section.required or page.generated_path in selection.required_scope_paths:
                    found = True
                for item in page.fields[field_name]:
                    source_trail.append(
                        f"- `{page.generated_path}` from `{item.source_path}` "
                        f"lines {item.line_start}-{item.line_end} ({field_name})"
                    )
                    cited_pages.add(page.generated_path)
                    section_body += (
                        f"- `{page.generated_path}` lines {item.line_start}-{item.line_end}: "
                        f"{compact_line(item.text)}\n"
                    )
            if section.required and not found:
                missing.append(f"- `{field_name}` for section `{section.title}`")
        if section_body:
            pack += f"\n## {section.title}\n\n{section_body}"

    for page in selection.pages:
        if page.generated_path in cited_pages:
            continue
        source_trail.append(
            f"- `{page.generated_path}` from `{page.source_path}` "
            f"lines {page.source_range.line_start}-{page.source_range.line_end}"
        )

    if missing:
        pack += "\n## Missing Required Evidence\n\n"
        pack += "".join(f"{item}\n" for item in missing)
    pack += _SOURCE_HEADING
    if source_trail:
        pack += "".join(f"{item}\n" for item in sorted(set(source_trail)))
    else:
        pack += "- No sources matched.\n"

    return enforce_budget(pack, budget)


def build_context_pack(
    schema: SchemaPack,
    catalog: InternalCatalog,
    task: str,
    entities: Iterable[str] = (),
    query: Optional[str] = None,
    time: Optional[str] = None,
    budget: Optional[int] = None,
) -> str:
    """Render the context pack for ``task`` from an already loaded schema and catalog."""
    recipe = schema.contexts.get(task)
    if recipe is None:
        raise SchemaError(f"schema context `{task}` is not defined")
    if catalog.schema.id != schema.id or catalog.schema.version != schema.version:
        raise SchemaError(
            "catalog schema does not match schema pack; rerun init or add with --schema"
        )
    entities = list(entities)
    selection = select_pages(catalog, recipe, entities, query, time)
    if budget is not None:
        limit = budget
    elif recipe.default_budget_chars is not None:
        limit = recipe.default_budget_chars
    else:
        limit = DEFAULT_BUDGET_CHARS
    return _pack_with_budget(schema, recipe, task, selection, entities, query, time, limit)


def _markdown_section(body: str, title: str) -> Optional[str]:
    marker = f"\n## {title}"
    start = body.find(marker)
    if start < 0:
        return None
    content_start = start + len(marker)
    end = body.find("\n## ", content_start)
    return body[start : end if end >= 0 else len(body)]


def _compact_budget_floor(mandatory_prefix: str, budget: int) -> str:
    title_line = next(
        (line for line in _lines(mandatory_prefix) if line.startswith("# ")), "# Context"
    )
    compact_prefix = f"---\nmd_wiki_context:\n  budget_chars: {budget}\n---\n"
    with_title = f"{compact_prefix}{title_line}\n\n## Source Trail\n"
    if len(with_title) <= budget:
        return with_title
    without_title = f"{compact_prefix}## Source Trail\n"
    if len(without_title) <= budget:
        return without_title
    return _BARE_FLOOR[:budget]


def enforce_budget(pack: str, budget: int) -> str:
    """Shrink ``pack`` to at most ``budget`` characters, keeping header and missing evidence."""
    if len(pack) <= budget:
        return pack
    heading_at = pack.find(_SOURCE_HEADING)
    source_start = heading_at if heading_at >= 0 else len(pack)
    prefix_end = pack.find("\n## ", 0, source_start)
    if prefix_end < 0:
        prefix_end = source_start
    mandatory_prefix = pack[:prefix_end]
    missing_required = _markdown_section(pack[prefix_end:source_start], "Missing Required Evidence")
    source_body = pack[heading_at + len(_SOURCE_HEADING) :] if heading_at >= 0 else ""

    out = mandatory_prefix
    reserved = len(_OMITTED) + len(_SOURCE_HEADING) + len(_TRAIL_OMITTED)
    if missing_required is not None and len(out) + len(missing_required) + reserved <= budget:
        out += missing_required
    out += _OMITTED + _SOURCE_HEADING

    if len(out) + len(_TRAIL_OMITTED) > budget:
        return _compact_budget_floor(mandatory_prefix, budget)

    source_lines = _lines(source_body)
    used = len(out)
    written = 0
    for line in source_lines:
        line_len = len(line) + 1
        if used + line_len + len(_TRAIL_OMITTED) > budget:
            break
        out += line + "\n"
        used += line_len
        written += 1
    if written == 0 or written < len(source_lines):
        out += _TRAIL_OMITTED
    return out


def render_context_pack(
    wiki,
    schema_path,
    task: str,
    entities: Iterable[str] = (),
    query: Optional[str] = None,
    time: Optional[str] = None,
    budget: Optional[int] = None,
) -> str:
    """Load the schema pack and the wiki's catalog, then render the pack for ``task``."""
    schema = load_schema(schema_path)
    if task not in schema.contexts:
        raise SchemaError(f"schema context `{task}` is not defined")
    catalog_path = Path(wiki) / CATALOG_PATH
    try:
        body = catalog_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise SchemaError(f"failed to read {catalog_path}: {err}") from err
    try:
        catalog = InternalCatalog.from_dict(json.loads(body))
    except (json.JSONDecodeError, SchemaError) as err:
        raise SchemaError(f"failed to parse {catalog_path}: {err}") from err
    return build_context_pack(schema, catalog, task, entities, query, time, budget)