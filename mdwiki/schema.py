"""Schema packs, the page catalog, and field extraction helpers."""

from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional

import yaml

from mdwiki.output_plan import insert_bytes, insert_text

COMPACT_LINE_LIMIT = 220
CATALOG_PATH = ".md-wiki/catalog.json"


class SchemaError(Exception):
    """Raised when a schema pack or catalog is missing, malformed or invalid."""


class _YamlLoader(yaml.SafeLoader):
    """Safe loader closer to YAML 1.2: no timestamps, only true/false as booleans."""


_YamlLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp)
        for tag, regexp in resolvers
        if tag not in ("tag:yaml.org,2002:timestamp", "tag:yaml.org,2002:bool")
    ]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_YamlLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)


def _load_yaml(text: str) -> Any:
    return yaml.load(text, Loader=_YamlLoader)


def _lines(text: str) -> list:
    """Split into lines on ``\\n`` or ``\\r\\n``, without a trailing empty line."""
    parts = text.split("\n")
    last = parts.pop()
    out = [part[:-1] if part.endswith("\r") else part for part in parts]
    if last:
        out.append(last)
    return out


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _opt_str(value, name: str) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    raise SchemaError(f"invalid value for `{name}`: expected a string")


def _req_str(data: Mapping, key: str, where: str) -> str:
    if key not in data:
        raise SchemaError(f"missing field `{key}` in {where}")
    value = data[key]
    if not isinstance(value, str):
        raise SchemaError(f"invalid value for `{key}` in {where}: expected a string")
    return value


def _req_uint(data: Mapping, key: str, where: str, bits: int = 64) -> int:
    if key not in data:
        raise SchemaError(f"missing field `{key}` in {where}")
    value = data[key]
    if not _is_int(value) or value < 0 or value >= 2**bits:
        raise SchemaError(f"invalid value for `{key}` in {where}: expected an unsigned integer")
    return value


def _mapping(value, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaError(f"invalid value for `{name}`: expected a mapping")
    return value


def _sequence(value, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaError(f"invalid value for `{name}`: expected a sequence")
    return value


def _string_list(value, name: str) -> list:
    items = _sequence(value, name)
    if not all(isinstance(item, str) for item in items):
        raise SchemaError(f"invalid value for `{name}`: expected strings")
    return list(items)


@dataclass
class FieldSource:
    """Where a field's value comes from: a frontmatter path or a heading."""

    frontmatter: Optional[str] = None
    heading: Optional[str] = None


@dataclass
class FieldDef:
    label: Optional[str] = None
    sources: list = field(default_factory=list)


@dataclass
class ContextSection:
    title: str
    fields: list = field(default_factory=list)
    kind: Optional[str] = None
    required: bool = False


@dataclass
class ContextRecipe:
    title: Optional[str] = None
    default_budget_chars: Optional[int] = None
    sections: list = field(default_factory=list)


def _field_source(data, name: str) -> FieldSource:
    data = _mapping(data, name)
    return FieldSource(
        frontmatter=_opt_str(data.get("frontmatter"), "frontmatter"),
        heading=_opt_str(data.get("heading"), "heading"),
    )


def _field_def(data, name: str) -> FieldDef:
    data = _mapping(data, name)
    return FieldDef(
        label=_opt_str(data.get("label"), "label"),
        sources=[_field_source(item, "sources") for item in _sequence(data.get("sources"), "sources")],
    )


def _context_section(data) -> ContextSection:
    data = _mapping(data, "sections")
    required = data.get("required", False)
    if required is None:
        required = False
    if not isinstance(required, bool):
        raise SchemaError("invalid value for `required`: expected a boolean")
    return ContextSection(
        title=_req_str(data, "title", "context section"),
        fields=_string_list(data.get("fields"), "fields"),
        kind=_opt_str(data.get("kind"), "kind"),
        required=required,
    )


def _context_recipe(data, name: str) -> ContextRecipe:
    data = _mapping(data, name)
    budget = data.get("default_budget_chars")
    if budget is not None and (not _is_int(budget) or budget < 0):
        raise SchemaError("invalid value for `default_budget_chars`: expected an unsigned integer")
    return ContextRecipe(
        title=_opt_str(data.get("title"), "title"),
        default_budget_chars=budget,
        sections=[_context_section(item) for item in _sequence(data.get("sections"), "sections")],
    )


def _str_keys(data: dict, name: str) -> dict:
    if not all(isinstance(key, str) for key in data):
        raise SchemaError(f"invalid value for `{name}`: keys must be strings")
    return data


@dataclass
class SchemaPack:
    """A set of named fields and the context recipes built from them."""

    id: str
    version: int
    fields: dict = field(default_factory=dict)
    contexts: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.fields = dict(sorted(self.fields.items()))
        self.contexts = dict(sorted(self.contexts.items()))

    @classmethod
    def from_dict(cls, data) -> "SchemaPack":
        if not isinstance(data, dict):
            raise SchemaError("schema must be a mapping")
        fields = _str_keys(_mapping(data.get("fields"), "fields"), "fields")
        contexts = _str_keys(_mapping(data.get("contexts"), "contexts"), "contexts")
        return cls(
            id=_req_str(data, "id", "schema"),
            version=_req_uint(data, "version", "schema", bits=32),
            fields={name: _field_def(value, name) for name, value in fields.items()},
            contexts={name: _context_recipe(value, name) for name, value in contexts.items()},
        )

    def validate(self) -> None:
        """Raise SchemaError if the pack is incomplete or inconsistent."""
        if not self.id.strip():
            raise SchemaError("schema id is required")
        if self.version != 1:
            raise SchemaError(f"unsupported schema version: {self.version}")
        if not self.fields:
            raise SchemaError("schema fields are required")
        if not self.contexts:
            raise SchemaError("schema contexts are required")
        for name, field_def in self.fields.items():
            if not field_def.sources:
                raise SchemaError(f"field `{name}` must define at least one source")
            for source in field_def.sources:
                if source.frontmatter is None and source.heading is None:
                    raise SchemaError(f"field `{name}` source must define frontmatter or heading")
        for name, context in self.contexts.items():
            if not context.sections:
                raise SchemaError(f"context `{name}` must define at least one section")
            for section in context.sections:
                is_sources = section.kind == "sources"
                if not section.fields and not is_sources:
                    raise SchemaError(
                        f"context `{name}` section `{section.title}` must define fields "
                        "or kind: sources"
                    )
                for field_name in section.fields:
                    if field_name not in self.fields:
                        raise SchemaError(
                            f"context `{name}` section `{section.title}` references "
                            f"undefined field `{field_name}`"
                        )

    def field_label(self, field: str) -> str:
        """The field's label, or its name when it has none."""
        field_def = self.fields.get(field)
        if field_def is not None and field_def.label is not None:
            return field_def.label
        return field


def load_schema(path) -> SchemaPack:
    """Read, parse and validate a YAML schema pack."""
    path = Path(path)
    try:
        body = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise SchemaError(f"failed to read {path}: {err}") from err
    try:
        schema = SchemaPack.from_dict(_load_yaml(body))
    except (yaml.YAMLError, SchemaError) as err:
        raise SchemaError(f"failed to parse {path}: {err}") from err
    schema.validate()
    return schema


@dataclass
class SourceRange:
    line_start: int
    line_end: int


@dataclass
class FieldEvidence:
    """A field value found in a source note, with its line span."""

    text: str
    source_path: str
    line_start: int
    line_end: int


@dataclass
class CatalogSchema:
    id: str
    version: int


@dataclass
class CatalogPage:
    """Everything the catalog records about one generated page."""

    generated_path: str
    source_path: str
    source_range: SourceRange
    title: str
    doc_type: str
    entities: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    headings: list = field(default_factory=list)
    fields: dict = field(default_factory=dict)
    outgoing_links: list = field(default_factory=list)
    backlinks: list = field(default_factory=list)


def _obj(value, where: str) -> dict:
    if not isinstance(value, dict):
        raise SchemaError(f"invalid catalog: expected an object for {where}")
    return value


def _req(data: dict, key: str, where: str):
    if key not in data:
        raise SchemaError(f"invalid catalog: missing field `{key}` in {where}")
    return data[key]


def _catalog_strings(data: dict, key: str, where: str) -> list:
    value = _req(data, key, where)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SchemaError(f"invalid catalog: `{key}` in {where} must be a list of strings")
    return list(value)


def _evidence_from(data) -> FieldEvidence:
    data = _obj(data, "field evidence")
    return FieldEvidence(
        text=_req_str(data, "text", "field evidence"),
        source_path=_req_str(data, "source_path", "field evidence"),
        line_start=_req_uint(data, "line_start", "field evidence"),
        line_end=_req_uint(data, "line_end", "field evidence"),
    )


def _page_from(data) -> CatalogPage:
    data = _obj(data, "page")
    range_data = _obj(_req(data, "source_range", "page"), "source_range")
    fields = _obj(_req(data, "fields", "page"), "fields")
    parsed_fields = {}
    for name in sorted(fields):
        items = fields[name]
        if not isinstance(items, list):
            raise SchemaError(f"invalid catalog: field `{name}` must be a list")
        parsed_fields[name] = [_evidence_from(item) for item in items]
    return CatalogPage(
        generated_path=_req_str(data, "generated_path", "page"),
        source_path=_req_str(data, "source_path", "page"),
        source_range=SourceRange(
            line_start=_req_uint(range_data, "line_start", "source_range"),
            line_end=_req_uint(range_data, "line_end", "source_range"),
        ),
        title=_req_str(data, "title", "page"),
        doc_type=_req_str(data, "doc_type", "page"),
        entities=_catalog_strings(data, "entities", "page"),
        tags=_catalog_strings(data, "tags", "page"),
        headings=_catalog_strings(data, "headings", "page"),
        fields=parsed_fields,
        outgoing_links=_catalog_strings(data, "outgoing_links", "page"),
        backlinks=_catalog_strings(data, "backlinks", "page"),
    )


@dataclass
class InternalCatalog:
    """The machine-readable catalog of generated pages and extracted fields."""

    schema_version: int
    schema: CatalogSchema
    pages: list = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        for page in data["pages"]:
            page["fields"] = dict(sorted(page["fields"].items()))
        return data

    @classmethod
    def from_dict(cls, data) -> "InternalCatalog":
        data = _obj(data, "catalog")
        schema = _obj(_req(data, "schema", "catalog"), "schema")
        pages = _req(data, "pages", "catalog")
        if not isinstance(pages, list):
            raise SchemaError("invalid catalog: `pages` must be a list")
        return cls(
            schema_version=_req_uint(data, "schema_version", "catalog", bits=32),
            schema=CatalogSchema(
                id=_req_str(schema, "id", "schema"),
                version=_req_uint(schema, "version", "schema", bits=32),
            ),
            pages=[_page_from(page) for page in pages],
        )


def value_at_path(value, path: str):
    """Follow a dotted path of string keys through nested mappings; None if absent."""
    current = value
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def _number_text(value: float) -> str:
    if math.isnan(value):
        return ".nan"
    if math.isinf(value):
        return ".inf" if value > 0 else "-.inf"
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        return f"{mantissa}e{int(exponent)}"
    return text


def value_to_text(value) -> Optional[str]:
    """Render a YAML value as field text; None for null or an empty sequence."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _number_text(value)
    if isinstance(value, list):
        text = "\n".join(
            item_text for item_text in (value_to_text(item) for item in value) if item_text is not None
        )
        return text or None
    try:
        dumped = yaml.safe_dump(value, default_flow_style=False, allow_unicode=True, sort_keys=False)
    except yaml.YAMLError:
        return None
    return dumped.strip()


def frontmatter_yaml_value(source: str):
    """Parse the leading ``---`` frontmatter block, or return None."""
    if not source.startswith("---\n"):
        return None
    rest = source[4:]
    offset = 0
    end = None
    for line in _lines(rest):
        if line.strip() == "---":
            end = offset
            break
        offset += len(line) + 1
    if end is None:
        return None
    try:
        return _load_yaml(rest[:end])
    except yaml.YAMLError:
        return None


def frontmatter_line_end(source: str) -> int:
    """1-based line of the closing ``---`` of the frontmatter, or 1 if there is none."""
    if not source.startswith("---\n"):
        return 1
    for idx, line in enumerate(_lines(source)):
        if idx == 0:
            continue
        if line.strip() == "---":
            return idx + 1
    return 1


def _parse_heading(line: str) -> Optional[tuple]:
    trimmed = line.lstrip()
    level = len(trimmed) - len(trimmed.lstrip("#"))
    if level == 0 or level > 6:
        return None
    rest = trimmed[level:]
    if not rest.startswith(" "):
        return None
    return level, rest.strip().rstrip("#").strip()


def _heading_body(lines: list, heading_idx: int, end_idx: int) -> Optional[tuple]:
    start = heading_idx + 1
    while start < end_idx and not lines[start].strip():
        start += 1
    end = end_idx
    while end > start and not lines[end - 1].strip():
        end -= 1
    text = "\n".join(lines[start:end]).strip()
    if not text:
        return None
    return text, start + 1, end


def section_under_heading(body: str, target: str) -> Optional[tuple]:
    """Text under the first heading named ``target`` as ``(text, line_start, line_end)``."""
    lines = _lines(body)
    found = None
    for idx, line in enumerate(lines):
        parsed = _parse_heading(line)
        if parsed is None:
            continue
        level, text = parsed
        if found is None and text == target:
            found = (idx, level)
            continue
        if found is not None and idx > found[0] and level <= found[1]:
            return _heading_body(lines, found[0], idx)
    if found is None:
        return None
    return _heading_body(lines, found[0], len(lines))


def compact_line(text: str) -> str:
    """Collapse whitespace to single spaces and cap the length at 220 characters."""
    out = " ".join(text.split())
    if len(out) > COMPACT_LINE_LIMIT:
        out = out[: COMPACT_LINE_LIMIT - 3] + "..."
    return out


def render_field_catalogs(plan: dict, schema: SchemaPack, catalog: InternalCatalog) -> None:
    """Add ``agent/fields/<field>.md`` pages and their index to ``plan``."""
    index = "# Fields\n\n"
    for field_name in schema.fields:
        label = schema.field_label(field_name)
        index += f"- [{label}]({field_name}.md)\n"
        body = f"# {label}\n\n"
        for page in catalog.pages:
            for item in page.fields.get(field_name, []):
                body += (
                    f"- `{page.generated_path}` lines {item.line_start}-{item.line_end}: "
                    f"{compact_line(item.text)}\n"
                )
        insert_text(plan, PurePosixPath("agent/fields") / f"{field_name}.md", body)
    insert_text(plan, "agent/fields/index.md", index)


def add_catalog_outputs(plan: dict, schema: SchemaPack, catalog: InternalCatalog) -> None:
    """Add the JSON catalog and the field catalog pages to ``plan``."""
    body = json.dumps(catalog.to_dict(), indent=2, ensure_ascii=False)
    insert_bytes(plan, CATALOG_PATH, body.encode("utf-8"))
    render_field_catalogs(plan, schema, catalog)