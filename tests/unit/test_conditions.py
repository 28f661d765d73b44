import pytest

from waystone.conditions import evaluate_condition, resolve_path, validate_condition
from waystone.contracts import Condition

CONTEXT = {
    "root": {"subject": "Quarterly REPORT ready"},
    "steps": {
        "collect": {"status": "completed", "summary": "ok", "output": {"priority": 7, "tags": ["a", "b"]}},
    },
    "current": {"status": "completed", "summary": "ok", "output": {"priority": "12"}},
}


def test_resolve_path_reads_nested_mappings_and_indexes():
    assert resolve_path(CONTEXT, "steps.collect.output.priority") == 7
    assert resolve_path(CONTEXT, "steps.collect.output.tags[1]") == "b"
    assert resolve_path(CONTEXT, "steps.collect.output.tags.5") is None
    assert resolve_path(CONTEXT, "steps.missing.output") is None


def test_resolve_path_blocks_reserved_segments():
    source = {"__proto__": {"polluted": True}, "constructor": {"x": 1}, "a": {"__class__": 1}}
    assert resolve_path(source, "__proto__.polluted") is None
    assert resolve_path(source, "constructor.x") is None
    assert resolve_path(source, "a.__class__") is None


def test_resolve_path_never_follows_attributes():
    class Holder:
        secret = "nope"

    assert resolve_path({"obj": Holder()}, "obj.secret") is None


def test_special_paths():
    assert resolve_path(CONTEXT, "__always") is True
    assert resolve_path(CONTEXT, "*") is CONTEXT


@pytest.mark.parametrize(
    "operator,path,value,expected",
    [
        ("string_equals", "current.status", "COMPLETED", True),
        ("string_contains", "root.subject", "report", True),
        ("string_contains", "root.subject", "invoice", False),
        ("exists", "steps.collect.output.priority", None, True),
        ("not_exists", "steps.collect.output.missing", None, True),
        ("regex_match", "root.subject", r"^Quarterly\s+\w+", True),
    ],
)
def test_operators(operator, path, value, expected):
    condition = Condition(source_path=path, operator=operator, value=value)
    assert evaluate_condition(condition, CONTEXT) is expected


def test_string_equals_respects_case_sensitivity():
    condition = Condition(
        source_path="current.status", operator="string_equals", value="COMPLETED", case_sensitive=True
    )
    assert evaluate_condition(condition, CONTEXT) is False


@pytest.mark.parametrize(
    "comparator,value,expected",
    [("gt", 5, True), ("gte", 7, True), ("lt", 7, False), ("lte", 7, True), ("eq", "7", True)],
)
def test_number_compare(comparator, value, expected):
    condition = Condition(
        source_path="steps.collect.output.priority",
        operator="number_compare",
        value=value,
        number_comparator=comparator,
    )
    assert evaluate_condition(condition, CONTEXT) is expected


def test_number_compare_accepts_numeric_strings_in_context():
    condition = Condition(
        source_path="current.output.priority", operator="number_compare", value=10, number_comparator="gt"
    )
    assert evaluate_condition(condition, CONTEXT) is True


def test_number_compare_with_missing_value_is_false():
    condition = Condition(
        source_path="current.output.none", operator="number_compare", value=1, number_comparator="gt"
    )
    assert evaluate_condition(condition, CONTEXT) is False


def test_regex_flags_are_applied():
    condition = Condition(
        source_path="root.subject", operator="regex_match", value="quarterly", regex_flags="i"
    )
    assert evaluate_condition(condition, CONTEXT) is True


def test_validate_condition_reports_problems():
    assert validate_condition(
        Condition(source_path="current.output.priority", operator="number_compare", value="high")
    )
    assert validate_condition(Condition(source_path="root.subject", operator="regex_match", value="("))
    assert validate_condition(Condition(source_path="root.subject", operator="string_equals"))
    assert validate_condition(Condition(source_path="__proto__.x", operator="exists"))
    assert validate_condition(Condition(source_path="__always", operator="exists")) == []
