import json
from pathlib import PurePosixPath

import pytest

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
    compact_line,
    frontmatter_line_end,
    frontmatter_yaml_value,
    load_schema,
    render_field_catalogs,
    section_under_heading,
    value_at_path,
    value_to_text,
)


def _schema(**overrides):
    base = dict(
        id="s",
        version=1,
        fields={
            "setup": FieldDef(label="Setup", sources=[FieldSource(frontmatter="setup")]),
            "goal": FieldDef(sources=[FieldSource(heading="Goal")]),
        },
        contexts={
            "task": ContextRecipe(
                sections=[ContextSection(title="Main", fields=["setup"])]
            )
        },
    )
    base.update(overrides)
    return SchemaPack(**base)


def _catalog():
    return InternalCatalog(
        schema_version=1,
        schema=CatalogSchema(id="s", version=1),
        pages=[
            CatalogPage(
                generated_path="fragments/n/index.md",
                source_path="n.md",
                source_range=SourceRange(line_start=1, line_end=12),
                title="N",
                doc_type="entry",
                entities=["N"],
                tags=["story"],
                headings=["N", "Setup"],
                fields={
                    "setup": [
                        FieldEvidence(
                            text="alpha   beta\ngamma",
                            source_path="n.md",
                            line_start=5,
                            line_end=9,
                        )
                    ]
                },
                outgoing_links=["fragments/m/index.md"],
                backlinks=[],
            )
        ],
    )


SCHEMA_YAML = """\
id: story
version: 1
fields:
  setup:
    label: Setup
    sources:
      - frontmatter: narrative.setup
      - heading: Setup
contexts:
  scene:
    title: Scene
    default_budget_chars: 5000
    sections:
      - title: Setup
        fields: [setup]
        required: true
      - title: Sources
        kind: sources
"""


def test_rejects_undefined_context_field():
    schema = SchemaPack(
        id="s",
        version=1,
        fields={"known": FieldDef(label=None, sources=[FieldSource(frontmatter="known")])},
        contexts={
            "task": ContextRecipe(
                title=None,
                default_budget_chars=None,
                sections=[ContextSection(title="Missing", fields=["unknown"])],
            )
        },
    )
    with pytest.raises(SchemaError, match="undefined field"):
        schema.validate()


def test_extracts_nested_frontmatter_value():
    value = frontmatter_yaml_value("---\nnarrative:\n  setup: key\n---\n")
    assert value_to_text(value_at_path(value, "narrative.setup")) == "key"


def test_extracts_heading_section_body():
    body = "# A\n\n## Setup\n\nalpha\n\n### Detail\n\nbeta\n\n## Next\n\nno"
    text, line_start, line_end = section_under_heading(body, "Setup")
    assert "alpha" in text
    assert "### Detail" in text
    assert line_start == 5
    assert line_end == 9


def test_section_under_heading_missing_or_empty():
    assert section_under_heading("# A\n\n## Other\n\nx\n", "Setup") is None
    assert section_under_heading("## Setup\n\n## Next\n\nx\n", "Setup") is None


def test_section_under_heading_strips_closing_hashes():
    assert section_under_heading("## Setup ##\ntext\n", "Setup") == ("text", 2, 2)


def test_section_under_heading_requires_space_after_hashes():
    assert section_under_heading("##Setup\ntext\n", "Setup") is None


def test_load_schema_from_file(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text(SCHEMA_YAML, encoding="utf-8")
    schema = load_schema(path)
    assert schema.id == "story"
    assert schema.fields["setup"].sources[0].frontmatter == "narrative.setup"
    assert schema.fields["setup"].sources[1].heading == "Setup"
    assert schema.contexts["scene"].default_budget_chars == 5000
    assert schema.contexts["scene"].sections[0].required is True
    assert schema.contexts["scene"].sections[1].kind == "sources"


def test_load_schema_missing_file(tmp_path):
    with pytest.raises(SchemaError, match="failed to read"):
        load_schema(tmp_path / "absent.yaml")


def test_load_schema_invalid_yaml(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text("id: [unclosed\n", encoding="utf-8")
    with pytest.raises(SchemaError, match="failed to parse"):
        load_schema(path)


def test_load_schema_missing_id(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    with pytest.raises(SchemaError, match="failed to parse"):
        load_schema(path)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"id": "  "}, "schema id is required"),
        ({"version": 2}, "unsupported schema version: 2"),
        ({"fields": {}}, "schema fields are required"),
        ({"contexts": {}}, "schema contexts are required"),
        ({"fields": {"x": FieldDef()}}, "field `x` must define at least one source"),
        (
            {"fields": {"x": FieldDef(sources=[FieldSource()])}},
            "field `x` source must define frontmatter or heading",
        ),
        ({"contexts": {"t": ContextRecipe()}}, "context `t` must define at least one section"),
        (
            {"contexts": {"t": ContextRecipe(sections=[ContextSection(title="S")])}},
            "context `t` section `S` must define fields or kind: sources",
        ),
    ],
)
def test_validate_errors(overrides, message):
    with pytest.raises(SchemaError) as info:
        _schema(**overrides).validate()
    assert str(info.value) == message


def test_sources_section_without_fields_is_valid():
    schema = _schema(
        contexts={"t": ContextRecipe(sections=[ContextSection(title="S", kind="sources")])}
    )
    schema.validate()
    assert schema.contexts["t"].sections[0].kind == "sources"


def test_field_label_falls_back_to_name():
    schema = _schema()
    assert schema.field_label("setup") == "Setup"
    assert schema.field_label("goal") == "goal"
    assert schema.field_label("unknown") == "unknown"


def test_from_dict_sorts_fields():
    schema = SchemaPack.from_dict(
        {
            "id": "s",
            "version": 1,
            "fields": {"b": {"sources": [{"heading": "B"}]}, "a": {"sources": [{"heading": "A"}]}},
        }
    )
    assert list(schema.fields) == ["a", "b"]
    assert schema.contexts == {}


def test_from_dict_rejects_bad_version():
    with pytest.raises(SchemaError):
        SchemaPack.from_dict({"id": "s", "version": "one"})


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        ("text", "text"),
        (True, "true"),
        (False, "false"),
        (42, "42"),
        (1.5, "1.5"),
        ([1, None, "x"], "1\nx"),
        ([], None),
        ({"a": 1}, "a: 1"),
    ],
)
def test_value_to_text(value, expected):
    assert value_to_text(value) == expected


def test_value_at_path_missing_segments():
    value = {"a": {"b": 1}}
    assert value_at_path(value, "a.b") == 1
    assert value_at_path(value, "a.c") is None
    assert value_at_path(value, "a.b.c") is None


def test_frontmatter_keeps_dates_and_words_as_strings():
    value = frontmatter_yaml_value("---\ndate: 2024-01-01\nflag: yes\nok: true\n---\nbody\n")
    assert value == {"date": "2024-01-01", "flag": "yes", "ok": True}


@pytest.mark.parametrize(
    "source",
    ["no frontmatter", "---\ntitle: A\nno end\n", "---\n: [\n---\nbody"],
)
def test_frontmatter_yaml_value_absent(source):
    assert frontmatter_yaml_value(source) is None


def test_frontmatter_line_end():
    assert frontmatter_line_end("---\na: 1\nb: 2\n---\nbody\n") == 4
    assert frontmatter_line_end("body\n") == 1
    assert frontmatter_line_end("---\nnever closed\n") == 1


def test_compact_line_collapses_whitespace():
    assert compact_line("  a \n b\t c  ") == "a b c"


def test_compact_line_truncates():
    out = compact_line("x" * 300)
    assert len(out) == 220
    assert out.endswith("...")
    assert out[:217] == "x" * 217


def test_render_field_catalogs():
    plan = {}
    render_field_catalogs(plan, _schema(), _catalog())
    assert plan[PurePosixPath("agent/fields/index.md")] == (
        b"# Fields\n\n- [goal](goal.md)\n- [Setup](setup.md)\n"
    )
    assert plan[PurePosixPath("agent/fields/setup.md")] == (
        b"# Setup\n\n- `fragments/n/index.md` lines 5-9: alpha beta gamma\n"
    )
    assert plan[PurePosixPath("agent/fields/goal.md")] == b"# goal\n\n"


def test_add_catalog_outputs_writes_json():
    plan = {}
    catalog = _catalog()
    add_catalog_outputs(plan, _schema(), catalog)
    raw = plan[PurePosixPath(".md-wiki/catalog.json")]
    assert raw.startswith(b'{\n  "schema_version": 1,')
    data = json.loads(raw)
    assert data == catalog.to_dict()
    assert data["pages"][0]["source_range"] == {"line_start": 1, "line_end": 12}
    assert PurePosixPath("agent/fields/index.md") in plan


def test_catalog_round_trip():
    catalog = _catalog()
    restored = InternalCatalog.from_dict(json.loads(json.dumps(catalog.to_dict())))
    assert restored == catalog


def test_catalog_from_dict_rejects_missing_field():
    data = _catalog().to_dict()
    del data["pages"][0]["title"]
    with pytest.raises(SchemaError, match="title"):
        InternalCatalog.from_dict(data)