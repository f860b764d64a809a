"""Variable reference parsing and resolution."""

import pytest

from stepwise.errors import InvalidReferenceError, MissingVariableError
from stepwise.variables import find_references, parse_reference, reference_roots, resolve

BAG = {
    "input": {"name": "Ada", "count": 3, "tags": ["a", "b"], "nested": {"ok": True}},
    "lead": {"id": 42, "emails": [{"address": "ada@example.com"}]},
    "empty": None,
}


def test_single_marker_preserves_type():
    assert resolve("{{input.count}}", BAG) == 3
    assert resolve("{{input.tags}}", BAG) == ["a", "b"]
    assert resolve("{{input.nested}}", BAG) == {"ok": True}
    assert resolve("{{empty}}", BAG) is None


def test_single_marker_with_surrounding_whitespace_inside_braces():
    assert resolve("{{ lead.id }}", BAG) == 42


def test_embedded_markers_interpolate_as_strings():
    assert resolve("Hi {{input.name}}, you have {{input.count}} items", BAG) == "Hi Ada, you have 3 items"
    assert resolve("tags={{input.tags}}", BAG) == 'tags=["a", "b"]'


def test_index_segments():
    assert resolve("{{lead.emails[0].address}}", BAG) == "ada@example.com"
    assert resolve("{{lead.emails.0.address}}", BAG) == "ada@example.com"


def test_nested_structures_are_resolved_without_mutation():
    template = {"to": "{{lead.emails[0].address}}", "meta": ["{{lead.id}}", "static", 7]}
    result = resolve(template, BAG)
    assert result == {"to": "ada@example.com", "meta": [42, "static", 7]}
    assert template["meta"][0] == "{{lead.id}}"


def test_non_string_values_pass_through():
    assert resolve(5, BAG) == 5
    assert resolve(None, BAG) is None
    assert resolve("no markers here", BAG) == "no markers here"


def test_missing_root_raises():
    with pytest.raises(MissingVariableError) as exc:
        resolve("{{unknown.value}}", BAG, step_name="send")
    assert exc.value.step_name == "send"
    assert exc.value.segment == "unknown"


def test_missing_segment_reports_walked_path():
    with pytest.raises(MissingVariableError) as exc:
        resolve("{{lead.emails[3].address}}", BAG)
    assert exc.value.segment == "lead.emails[3]"


def test_missing_is_not_silently_empty_inside_strings():
    with pytest.raises(MissingVariableError):
        resolve("Hello {{input.surname}}", BAG)


def test_parse_reference_segments():
    ref = parse_reference("lead.emails[0].address")
    assert ref.root == "lead"
    assert ref.segments == ("emails", 0, "address")


@pytest.mark.parametrize("expression", ["", "1abc", "lead..id", "lead[x]", "lead.id extra"])
def test_invalid_references(expression):
    with pytest.raises(InvalidReferenceError):
        parse_reference(expression)


def test_find_references_walks_nested_templates():
    refs = find_references({"a": "{{x.y}} and {{input.z}}", "b": ["{{w}}"]})
    assert [r.root for r in refs] == ["x", "input", "w"]
    assert reference_roots(["{{x}}", "{{x.y}}"]) == {"x"}
