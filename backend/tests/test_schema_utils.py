import pytest

from adapters.schema_utils import schema_to_validator, validate_arguments

SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "Search terms"},
        "limit": {"type": "integer"},
        "score": {"type": "number"},
        "include_archived": {"type": "boolean"},
        "labels": {"type": "array", "items": {"type": "string"}},
        "state": {"type": "string", "enum": ["open", "closed"]},
        "filters": {
            "type": "object",
            "properties": {"owner": {"type": "string"}},
            "required": ["owner"],
        },
        "extra": {"type": "object"},
    },
    "required": ["query"],
}


def test_required_and_optional_fields_follow_the_schema() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    assert validate_arguments(model, {"query": "bug"}) == {"query": "bug"}
    with pytest.raises(ValueError, match="query"):
        validate_arguments(model, {"limit": 3})


def test_values_of_every_supported_kind_pass_through() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")
    arguments = {
        "query": "bug",
        "limit": 5,
        "score": 0.5,
        "include_archived": True,
        "labels": ["p1", "ui"],
        "state": "open",
        "filters": {"owner": "me"},
        "extra": {"anything": [1, 2]},
    }

    assert validate_arguments(model, arguments) == arguments


def test_number_keeps_integers_as_integers() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    assert validate_arguments(model, {"query": "x", "score": 3})["score"] == 3


def test_enum_rejects_values_outside_the_list() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    with pytest.raises(ValueError, match="state"):
        validate_arguments(model, {"query": "x", "state": "merged"})


def test_nested_object_requirements_are_enforced() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    with pytest.raises(ValueError, match="filters.owner"):
        validate_arguments(model, {"query": "x", "filters": {}})


def test_array_item_types_are_checked() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    with pytest.raises(ValueError, match="labels"):
        validate_arguments(model, {"query": "x", "labels": [{"not": "a string"}]})


def test_property_names_that_are_not_identifiers_survive_forwarding() -> None:
    schema = {
        "type": "object",
        "properties": {
            "page-size": {"type": "integer"},
            "from": {"type": "string"},
            "_cursor": {"type": "string"},
            "model_name": {"type": "string"},
            "schema": {"type": "string"},
        },
        "required": ["from"],
    }
    model = schema_to_validator(schema, "list items")
    arguments = {
        "page-size": 10,
        "from": "2024-01-01",
        "_cursor": "abc",
        "model_name": "gpt",
        "schema": "public",
    }

    assert validate_arguments(model, arguments) == arguments


def test_empty_or_missing_schema_accepts_no_arguments() -> None:
    for schema in (None, {}, {"type": "object"}):
        model = schema_to_validator(schema, "ping")
        assert validate_arguments(model, None) == {}


def test_unknown_keys_are_dropped_unless_additional_properties_allowed() -> None:
    closed = schema_to_validator(
        {"type": "object", "properties": {"a": {"type": "string"}}}, "closed"
    )
    open_ = schema_to_validator(
        {
            "type": "object",
            "properties": {"a": {"type": "string"}},
            "additionalProperties": True,
        },
        "open",
    )

    assert validate_arguments(closed, {"a": "x", "b": 1}) == {"a": "x"}
    assert validate_arguments(open_, {"a": "x", "b": 1}) == {"a": "x", "b": 1}


def test_nullable_and_union_types() -> None:
    schema = {
        "type": "object",
        "properties": {
            "due": {"type": ["string", "null"]},
            "id": {"anyOf": [{"type": "integer"}, {"type": "string"}]},
        },
        "required": ["due", "id"],
    }
    model = schema_to_validator(schema, "update-task")

    assert validate_arguments(model, {"due": None, "id": 7}) == {"due": None, "id": 7}
    assert validate_arguments(model, {"due": "tomorrow", "id": "T-7"}) == {
        "due": "tomorrow",
        "id": "T-7",
    }
    with pytest.raises(ValueError):
        validate_arguments(model, {"due": None, "id": [1]})


def test_descriptions_are_carried_onto_fields() -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    assert model.model_fields["query"].description == "Search terms"


def test_aliased_names_never_collide_with_declared_properties() -> None:
    schema = {
        "type": "object",
        "properties": {
            "page-id": {"type": "integer"},
            "field_0": {"type": "integer"},
            "_cursor": {"type": "string"},
            "field_1": {"type": "string"},
        },
        "required": ["page-id", "field_0"],
    }
    model = schema_to_validator(schema, "get-page")
    arguments = {"page-id": 7, "field_0": 8, "_cursor": "c", "field_1": "x"}

    assert len(model.model_fields) == 4
    assert validate_arguments(model, arguments) == arguments
    with pytest.raises(ValueError, match="page-id"):
        validate_arguments(model, {"field_0": 8})


@pytest.mark.parametrize(
    "arguments",
    [
        {"query": "x", "limit": "5"},
        {"query": "x", "score": "2.5"},
        {"query": "x", "include_archived": "yes"},
        {"query": 42},
        {"query": "x", "limit": True},
    ],
)
def test_scalars_are_not_coerced(arguments) -> None:
    model = schema_to_validator(SEARCH_SCHEMA, "search-issues")

    with pytest.raises(ValueError):
        validate_arguments(model, arguments)
