from __future__ import annotations

from appforge.domain.schema import FieldDef, RelationDef
from appforge.services.schema_validator import validate


def _codes(violations: list[dict[str, str]]) -> list[tuple[str, str]]:
    return [(v["field"], v["code"]) for v in violations]


def test_empty_schema_accepts_any_object() -> None:
    assert validate({"anything": [1, 2, 3], "nested": {"a": None}}, []) == []


def test_required_field_missing_null_or_empty_string() -> None:
    schema = [FieldDef(name="title", type="text", required=True)]

    for payload in ({}, {"title": None}, {"title": ""}):
        violations = validate(payload, schema)
        assert _codes(violations) == [("title", "required")]
        assert violations[0]["message"] == 'Field "title" is required'


def test_optional_absent_field_is_not_type_checked() -> None:
    schema = [FieldDef(name="age", type="number", min=0)]
    assert validate({}, schema) == []


def test_optional_empty_string_is_type_checked() -> None:
    schema = [
        FieldDef(name="age", type="number"),
        FieldDef(name="contact", type="email"),
        FieldDef(name="site", type="url"),
        FieldDef(name="due", type="date"),
        FieldDef(name="flag", type="boolean"),
        FieldDef(name="code", type="text", minLength=3),
    ]
    payload = {"age": "", "contact": "", "site": "", "due": "", "flag": "", "code": ""}

    assert _codes(validate(payload, schema)) == [
        ("age", "type"),
        ("contact", "type"),
        ("site", "type"),
        ("due", "type"),
        ("flag", "type"),
        ("code", "min_length"),
    ]
    assert validate({"note": ""}, [FieldDef(name="note", type="text")]) == []
    assert validate({"age": None}, [FieldDef(name="age", type="number")]) == []


def test_number_bounds_and_bool_rejection() -> None:
    schema = [FieldDef(name="age", type="number", min=0, max=130)]

    assert _codes(validate({"age": -1}, schema)) == [("age", "min")]
    assert _codes(validate({"age": 131}, schema)) == [("age", "max")]
    assert _codes(validate({"age": True}, schema)) == [("age", "type")]
    assert _codes(validate({"age": "12"}, schema)) == [("age", "type")]
    assert validate({"age": 42.5}, schema) == []


def test_text_length_limits() -> None:
    schema = [FieldDef(name="code", type="text", minLength=2, maxLength=4)]

    assert _codes(validate({"code": "a"}, schema)) == [("code", "min_length")]
    assert _codes(validate({"code": "abcde"}, schema)) == [("code", "max_length")]
    assert _codes(validate({"code": 12}, schema)) == [("code", "type")]
    assert validate({"code": "abc"}, schema) == []


def test_boolean_is_strict() -> None:
    schema = [FieldDef(name="done", type="boolean")]

    assert validate({"done": False}, schema) == []
    assert _codes(validate({"done": "true"}, schema)) == [("done", "type")]
    assert _codes(validate({"done": 1}, schema)) == [("done", "type")]


def test_date_email_url_shapes() -> None:
    schema = [
        FieldDef(name="due", type="date"),
        FieldDef(name="contact", type="email"),
        FieldDef(name="site", type="url"),
    ]

    ok = {"due": "2026-03-01T10:00:00Z", "contact": "ada@appforge.dev", "site": "https://appforge.dev/x"}
    assert validate(ok, schema) == []
    assert validate({"due": "2026-03-01"}, schema) == []

    bad = {"due": "next tuesday", "contact": "not-an-email", "site": "appforge.dev"}
    assert _codes(validate(bad, schema)) == [("due", "type"), ("contact", "type"), ("site", "type")]


def test_enum_membership() -> None:
    schema = [FieldDef(name="status", type="enum", enum_values=["todo", "done"])]

    assert validate({"status": "done"}, schema) == []
    violations = validate({"status": "blocked"}, schema)
    assert _codes(violations) == [("status", "enum")]
    assert "todo, done" in violations[0]["message"]


def test_json_field_accepts_anything_and_extra_fields_pass() -> None:
    schema = [FieldDef(name="meta", type="json"), FieldDef(name="title", type="text", required=True)]
    assert validate({"meta": [1, {"a": 2}], "title": "x", "extra": 5}, schema) == []


def test_all_violations_are_reported_together() -> None:
    schema = [
        FieldDef(name="title", type="text", required=True),
        FieldDef(name="priority", type="number", min=1, max=5),
        FieldDef(name="project_id", type="text", relation=RelationDef(collection="projects")),
    ]

    violations = validate({"priority": 9}, schema)
    assert _codes(violations) == [("title", "required"), ("priority", "max")]
