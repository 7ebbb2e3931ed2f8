import pytest

from mdwiki.context_pack import (
    PageSelection,
    build_context_pack,
    enforce_budget,
    render_context_pack,
    select_pages,
)
from mdwiki.output_plan import write_plan_files
from mdwiki.schema import (
    CatalogPage,
    CatalogSchema,
    ContextRecipe,
    ContextSection,
    FieldDef,
    FieldEvidence,
    FieldSource,
    InternalCatalog,
    SchemaError,
    SchemaPack,
    SourceRange,
    add_catalog_outputs,
    frontmatter_yaml_value,
)

A = "fragments/a/index.md"
B = "fragments/b/index.md"
C = "fragments/c/index.md"

SCHEMA_YAML = """id: s
version: 1
fields:
  setup:
    label: Setup
    sources:
      - heading: Setup
contexts:
  brief:
    title: Brief
    sections:
      - title: Setup
        fields: [setup]
        required: true
      - title: Sources
        kind: sources
"""


def _schema(default_budget=None):
    return SchemaPack(
        id="s",
        version=1,
        fields={"setup": FieldDef(label="Setup", sources=[FieldSource(heading="Setup")])},
        contexts={
            "brief": ContextRecipe(
                title="Brief",
                default_budget_chars=default_budget,
                sections=[
                    ContextSection(title="Setup", fields=["setup"], required=True),
                    ContextSection(title="Sources", kind="sources"),
                ],
            )
        },
    )


def _page(path, source, **kw):
    return CatalogPage(
        generated_path=path,
        source_path=source,
        source_range=SourceRange(line_start=1, line_end=3),
        title=kw.pop("title", path),
        doc_type="entry",
        **kw,
    )


def _catalog(schema_id="s"):
    a = _page(
        A,
        "a.md",
        fields={
            "setup": [
                FieldEvidence(text="alpha  text", source_path="a.md", line_start=5, line_end=9)
            ]
        },
    )
    b = _page(B, "b.md", entities=["Bob"], outgoing_links=[A])
    c = _page(C, "c.md", entities=["Carol"], headings=["Timeline 2020"])
    return InternalCatalog(
        schema_version=1, schema=CatalogSchema(id=schema_id, version=1), pages=[a, b, c]
    )


def test_select_pages_entity_and_neighbour_priority():
    recipe = _schema().contexts["brief"]
    selection = select_pages(_catalog(), recipe, ["Bob"], None, None)
    assert [p.generated_path for p in selection.pages] == [B, A]
    assert selection.required_scope_paths == {A, B}


def test_select_pages_without_target_scopes_all_selected():
    recipe = _schema().contexts["brief"]
    selection = select_pages(_catalog(), recipe, [], None, None)
    assert isinstance(selection, PageSelection)
    assert [p.generated_path for p in selection.pages] == [A]
    assert selection.required_scope_paths == {A}


def test_select_pages_query_is_case_insensitive():
    recipe = _schema().contexts["brief"]
    selection = select_pages(_catalog(), recipe, [], "ALPHA", None)
    assert selection.required_scope_paths == {A}
    selection = select_pages(_catalog(), recipe, [], None, "timeline")
    assert [p.generated_path for p in selection.pages] == [A, C]
    assert selection.required_scope_paths == {C}


def test_pack_contains_sections_and_source_trail():
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Bob"], None, None, None)
    assert "# Brief\n" in pack
    assert "\n## Setup\n\n- `fragments/a/index.md` lines 5-9: alpha text\n" in pack
    assert "- `fragments/a/index.md` from `a.md` lines 5-9 (setup)\n" in pack
    assert "- `fragments/b/index.md` from `b.md` lines 1-3\n" in pack
    assert "Missing Required Evidence" not in pack


def test_pack_frontmatter_records_request():
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Bob"], "q", None, 5000)
    meta = frontmatter_yaml_value(pack)
    assert meta == {
        "md_wiki_context": {
            "schema_id": "s",
            "schema_version": 1,
            "task": "brief",
            "budget_chars": 5000,
            "entities": ["Bob"],
            "query": "q",
        }
    }


def test_pack_budget_defaults():
    pack = build_context_pack(_schema(), _catalog(), "brief")
    assert frontmatter_yaml_value(pack)["md_wiki_context"]["budget_chars"] == 20000
    assert "entities" not in frontmatter_yaml_value(pack)["md_wiki_context"]
    pack = build_context_pack(_schema(default_budget=3000), _catalog(), "brief")
    assert frontmatter_yaml_value(pack)["md_wiki_context"]["budget_chars"] == 3000


def test_missing_required_evidence_outside_scope():
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Carol"])
    assert "\n## Missing Required Evidence\n\n- `setup` for section `Setup`\n" in pack
    assert "- `fragments/c/index.md` from `c.md` lines 1-3\n" in pack


def test_no_sources_matched():
    empty = InternalCatalog(schema_version=1, schema=CatalogSchema(id="s", version=1), pages=[])
    pack = build_context_pack(_schema(), empty, "brief")
    assert pack.endswith("\n## Source Trail\n\n- No sources matched.\n")


def test_unknown_task_and_schema_mismatch():
    with pytest.raises(SchemaError, match="is not defined"):
        build_context_pack(_schema(), _catalog(), "nope")
    with pytest.raises(SchemaError, match="does not match"):
        build_context_pack(_schema(), _catalog(schema_id="other"), "brief")


def test_enforce_budget_keeps_fitting_pack():
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Bob"])
    assert enforce_budget(pack, len(pack)) == pack


@pytest.mark.parametrize("budget", [5, 10, 40, 80, 150, 200, 260, 320])
def test_enforce_budget_never_exceeds_budget(budget):
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Carol"])
    assert len(pack) > budget
    out = enforce_budget(pack, budget)
    assert len(out) <= budget
    assert out.startswith("---\n"[: min(4, budget)])


def test_enforce_budget_omits_sections_but_keeps_header():
    pack = build_context_pack(_schema(), _catalog(), "brief", ["Bob"], None, None, 10_000)
    header_end = pack.find("\n## ")
    budget = header_end + 120
    out = enforce_budget(pack, budget)
    assert out.startswith(pack[:header_end])
    assert "Omitted due to budget." in out
    assert "\n## Source Trail\n\n" in out
    assert "## Setup" not in out


def test_enforce_budget_floor_is_truncated_bare_text():
    out = enforce_budget("x" * 50, 10)
    assert out == "---\nmd_wiki_context: {}\n---\n## Source Trail\n"[:10]


def test_render_context_pack_from_files(tmp_path):
    schema_path = tmp_path / "schema.yaml"
    schema_path.write_text(SCHEMA_YAML, encoding="utf-8")
    wiki = tmp_path / "wiki"
    plan = {}
    add_catalog_outputs(plan, _schema(), _catalog())
    write_plan_files(wiki, plan)
    out = render_context_pack(wiki, schema_path, "brief", ["Bob"], None, None, None)
    assert out == build_context_pack(_schema(), _catalog(), "brief", ["Bob"])


def test_render_context_pack_errors(tmp_path):
    schema_path = tmp_path / "schema.yaml"
    schema_path.write_text(SCHEMA_YAML, encoding="utf-8")
    with pytest.raises(SchemaError, match="failed to read"):
        render_context_pack(tmp_path / "wiki", schema_path, "brief")
    with pytest.raises(SchemaError, match="is not defined"):
        render_context_pack(tmp_path / "wiki", schema_path, "other")
    wiki = tmp_path / "wiki"
    (wiki / ".md-wiki").mkdir(parents=True)
    (wiki / ".md-wiki" / "catalog.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(SchemaError, match="failed to parse"):
        render_context_pack(wiki, schema_path, "brief")