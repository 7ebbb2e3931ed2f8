# mdwiki

mdwiki is a library of building blocks for turning a folder of local Markdown
notes into an offline, link-navigable wiki, a machine-readable page catalog,
and compact "context packs" that fit a character budget.

Every piece is a plain Python function or class. Errors are raised as
exceptions: `OutputError` (in `mdwiki.output_plan`) for unsafe or invalid
output operations, `RegistryError` (in `mdwiki.page_registry`) for broken page
plans, and `SchemaError` (in `mdwiki.schema`) for invalid schema packs,
malformed catalogs or a catalog that does not match its schema pack.

## Modules

- **`mdwiki.scan`**: `scan(ScanConfig(root, extra_excluded, recursive))`
  walks a notes directory and returns `ScannedFile(relative_path, size)`
  entries sorted by path. It skips `.git`, `node_modules`, `dist`, `build` and
  `target` (files or directories), hidden directories other than `.wiki`, and
  any directory listed in `extra_excluded`. `is_probably_text(path)` accepts a
  file whose first 8 KiB hold no NUL byte and are valid UTF-8 (a multi-byte
  character cut at the boundary is allowed). `scan_single_file(path)` does the
  same for one file.
- **`mdwiki.paths`**: `entry_dir`, `entry_index_path`, `fragment_leaf_path`,
  `shell_index_path` and `h3_leaf_path` lay out output pages;
  `sanitize_component` / `sanitize_path` replace `< > : " | ? * \` and control
  characters with `_`; `relative_link` computes the link between two
  output-relative paths; `resolve_conflict` appends `-1`, `-2`, ... to clashing
  paths; `markdown_path` renders a path with forward slashes.
- **`mdwiki.text`**: `link_label` flattens Markdown images, links and HTML
  tags into plain text and escapes brackets so it is safe inside `[...]`.
- **`mdwiki.tags`**: `build_tag_index` takes `(output_path, tags)` pairs and
  returns a `TagIndex` where `a/b/c` is listed under `a`, `a/b` and `a/b/c`;
  `tag_prefixes`, `tag_page_path`, `render_tag_index_page` and
  `render_tag_page(tag, node_paths, titles)` produce the tag pages.
- **`mdwiki.unresolved`**: `UnresolvedLink(source, target, heading, alias)`
  and `render_unresolved` build `_unresolved.md`, grouped by source page.
- **`mdwiki.output_plan`**: an output plan is a `dict` of relative path to
  bytes (`insert_text`, `insert_bytes`, `collect_markdown_plan_from_dir`).
  `write_plan_to_clean_dir` clears a previous output (only if it looks like
  one: a manifest, `index.md` or `fragments/`) and writes the plan.
  `apply_incremental(output_root, desired, previous_manifest)` updates only
  changed files, removes files the previous build generated but no longer
  wants, refuses to overwrite unmanaged files and never follows symlinks.
  `Manifest` (with `create`, `to_dict`, `from_dict`), `read_manifest` and
  `write_manifest` handle `.md-wiki/manifest.json`. `OutputLock.acquire`
  takes an exclusive lock on an output directory and works as a context
  manager. `stable_hash` is 64-bit FNV-1a as 16 hex digits; `plan_hashes` and
  `source_hashes` apply it to plans and scanned files.
- **`mdwiki.page_registry`**: `PageRegistry.build(plans)` checks a list of
  `PagePlan` objects for the 40,000-character hard limit, unique output paths,
  existing parents, and `next`/`prev` links that point back at each other.
- **`mdwiki.schema`**: `load_schema` reads and validates a YAML `SchemaPack`
  of fields (taken from frontmatter keys or headings) and context recipes.
  `InternalCatalog` (with `to_dict` / `from_dict`) describes generated pages
  and their field evidence. Helpers: `value_at_path`, `value_to_text`,
  `frontmatter_yaml_value`, `frontmatter_line_end`, `section_under_heading`,
  `compact_line`. `add_catalog_outputs` adds `.md-wiki/catalog.json` and the
  `agent/fields/` pages to a plan.
- **`mdwiki.context_pack`**: `select_pages` picks catalog pages by entity,
  linked neighbour, recipe field, query and time; `build_context_pack` and
  `render_context_pack` render the Markdown pack; `enforce_budget` trims a
  pack to its character budget while keeping its header, any missing-evidence
  notes and as much of the source trail as fits.

## Examples

```python
from mdwiki.paths import entry_index_path, relative_link
from mdwiki.text import link_label
from mdwiki.tags import tag_prefixes, tag_page_path
from mdwiki.output_plan import stable_hash

entry_index_path("docs/a/b.md")          # PurePosixPath('fragments/docs/a/b/index.md')
relative_link("fragments/a/intro.md", "fragments/b/index.md")   # '../b/index.md'
link_label("Array [T]")                  # 'Array \\[T\\]'
tag_prefixes("a/b/c")                    # ['a', 'a/b', 'a/b/c']
tag_page_path("auth/session")            # PurePosixPath('tags/auth/session.md')
stable_hash(b"")                         # 'cbf29ce484222325'
```

Rendering a context pack from an output directory that holds
`.md-wiki/catalog.json`:

```python
from mdwiki.context_pack import render_context_pack

pack = render_context_pack(
    "wiki-out",
    "schema.yaml",
    "onboarding",
    ["Session"],
    None,
    None,
    8000,
)
print(pack)
```

A schema pack looks like this:

```yaml
id: notes
version: 1
fields:
  summary:
    label: Summary
    sources:
      - frontmatter: summary
      - heading: Summary
contexts:
  onboarding:
    title: Onboarding
    default_budget_chars: 20000
    sections:
      - title: Overview
        fields: [summary]
        required: true
      - title: Sources
        kind: sources
```

## What this package does not do

- There is no command-line program; everything is called from Python.
- It does not parse notes into headings and fragments, resolve wikilinks, or
  render entry, fragment, headings, links or directory index pages. It does
  not build an `InternalCatalog` from notes either: the caller supplies the
  catalog (or an output directory that already holds `catalog.json`), and
  supplies the page plans, tag lists, titles and unresolved links that the
  renderers here take as input.