import pytest

from catalog_sync import field_spec
from catalog_sync.errors import MappingError
from catalog_sync.field_spec import (
    LiteralSpec,
    PathListSpec,
    PathSpec,
    TransformedSpec,
    is_constant,
    parse_field_map,
    parse_field_spec,
    resolve,
)


def test_parse_string_forms():
    assert parse_field_spec("=ACME") == LiteralSpec("ACME")
    assert parse_field_spec("") == LiteralSpec("")
    assert parse_field_spec('""') == LiteralSpec("")
    assert parse_field_spec("=") == LiteralSpec("")
    assert parse_field_spec("product.name") == PathSpec("product.name")
    assert parse_field_spec(5) == LiteralSpec(5)
    assert parse_field_spec(None) is None


def test_parse_object_forms():
    spec = parse_field_spec({"paths": ["a", "b"], "transforms": ["trim"]})
    assert isinstance(spec, TransformedSpec)
    assert spec.inner == PathListSpec((PathSpec("a"), PathSpec("b")))
    assert parse_field_spec({"const": 3}) == LiteralSpec(3)
    assert is_constant(parse_field_spec({"value": "x", "ops": ["trim"]}))


def test_parse_rejects_malformed_specs():
    with pytest.raises(MappingError):
        parse_field_spec({"transforms": ["trim"]})
    with pytest.raises(MappingError):
        parse_field_spec({"path": "a", "transforms": ["shout"]})
    with pytest.raises(MappingError):
        parse_field_map(["a"], "fields")


def test_alternatives_stop_at_first_non_empty(monkeypatch):
    seen = []
    original = field_spec.lookup

    def counting(record, path, variant=None):
        seen.append(path)
        return original(record, path, variant)

    monkeypatch.setattr(field_spec, "lookup", counting)
    record = {"a": "", "b": "X", "c": "Y"}

    assert resolve(record, parse_field_spec(["a", "b", "c"])) == "X"
    assert seen == ["a", "b"]


def test_alternatives_report_empty_string_when_only_blanks():
    assert resolve({"a": ""}, parse_field_spec(["a", "missing"])) == ""
    assert resolve({}, parse_field_spec(["missing", "other"])) is None


def test_path_roots():
    record = {
        "name": "Root name",
        "product": {"name": "Item name", "images": ["a.jpg", "b.jpg"]},
        "meta": {"description": "Meta text"},
    }
    assert resolve(record, PathSpec("product.name")) == "Item name"
    assert resolve(record, PathSpec("name")) == "Item name"
    assert resolve(record, PathSpec("$.name")) == "Root name"
    assert resolve(record, PathSpec("meta.description")) == "Meta text"
    assert resolve(record, PathSpec("product.images.1")) == "b.jpg"
    assert resolve(record, PathSpec("variant.code"), {"code": "RED"}) == "RED"
    assert resolve(record, PathSpec("product.images.7")) is None


def test_bare_path_falls_back_to_record():
    record = {"item": {"sku": ""}, "sku": "SKU1"}
    assert resolve(record, PathSpec("sku")) == "SKU1"


def test_resolved_placeholders_become_empty():
    assert resolve({"name": " undefined "}, PathSpec("name")) == ""
    assert resolve({"name": "NaN"}, PathSpec("name")) == ""


def test_transforms_apply_to_constants_and_paths():
    record = {"title": "  Widget Pro  "}
    spec = parse_field_spec({"path": "title", "transforms": ["trim", {"op": "truncate", "len": 6}]})
    assert resolve(record, spec) == "Widget"
    assert resolve(record, parse_field_spec({"const": "Hello World", "transforms": ["slugify"]})) == "hello-world"


def test_resolve_never_raises():
    assert resolve("not a dict", PathSpec("a.b")) is None
    assert resolve({"a": 5}, PathSpec("a.b")) is None
