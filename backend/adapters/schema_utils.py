"""
Translate JSON Schema tool parameter declarations into pydantic validators.

Upstream MCP servers describe their parameters with JSON Schema. The gateway
validates every proxied call against a model built from that declaration
before forwarding it, so malformed arguments never reach the upstream.

    >>> Model = schema_to_validator({"type": "object",
    ...                              "properties": {"q": {"type": "string"}},
    ...                              "required": ["q"]}, "Search")
    >>> validate_arguments(Model, {"q": "mcp"})
    {'q': 'mcp'}
"""

import keyword
import re
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

_NON_WORD = re.compile(r"\W+")


def _model_name(raw: str) -> str:
    cleaned = _NON_WORD.sub("_", raw).strip("_") or "Arguments"
    if cleaned[0].isdigit():
        cleaned = f"M_{cleaned}"
    return cleaned


def _needs_alias(key: str) -> bool:
    return (
        not key.isidentifier()
        or keyword.iskeyword(key)
        or key.startswith("_")
        or key.startswith("model_")
        or hasattr(BaseModel, key)
    )


def _alias_field_name(taken: set) -> str:
    """First `field_N` that is neither a declared property nor already assigned."""
    index = 0
    while f"field_{index}" in taken:
        index += 1
    name = f"field_{index}"
    taken.add(name)
    return name


def _literal(values: List[Any]) -> Any:
    hashable = [value for value in values if isinstance(value, (str, int, float, bool))]
    if not hashable or len(hashable) != len(values):
        return Any
    return Literal[tuple(hashable)]


def _annotation(schema: Any, name: str) -> Tuple[Any, bool]:
    """Return (python type, nullable) for one JSON Schema node."""
    if not isinstance(schema, dict):
        return Any, False

    if "enum" in schema and isinstance(schema["enum"], list):
        values = schema["enum"]
        nullable = None in values
        return _literal([value for value in values if value is not None]), nullable

    if "const" in schema:
        return _literal([schema["const"]]), False

    for combinator in ("anyOf", "oneOf"):
        options = schema.get(combinator)
        if isinstance(options, list) and options:
            members = []
            nullable = False
            for index, option in enumerate(options):
                if isinstance(option, dict) and option.get("type") == "null":
                    nullable = True
                    continue
                member, member_nullable = _annotation(option, f"{name}_{index}")
                nullable = nullable or member_nullable
                members.append(member)
            if not members:
                return Any, True
            if Any in members:
                return Any, nullable
            if len(members) == 1:
                return members[0], nullable
            return Union[tuple(members)], nullable

    declared = schema.get("type")
    nullable = False
    if isinstance(declared, list):
        nullable = "null" in declared
        concrete = [item for item in declared if item != "null"]
        if len(concrete) != 1:
            return Any, nullable
        declared = concrete[0]

    # Scalars are strict: "5" is not an integer and "yes" is not a boolean.
    if declared == "string":
        return StrictStr, nullable
    if declared == "integer":
        return StrictInt, nullable
    if declared == "number":
        return Union[StrictInt, StrictFloat], nullable
    if declared == "boolean":
        return StrictBool, nullable
    if declared == "null":
        return type(None), True
    if declared == "array":
        item_type, item_nullable = _annotation(schema.get("items"), f"{name}_item")
        if item_nullable:
            item_type = Optional[item_type]
        return List[item_type], nullable
    if declared == "object" or (declared is None and "properties" in schema):
        if schema.get("properties"):
            return schema_to_validator(schema, name), nullable
        return Dict[str, Any], nullable
    return Any, nullable


def schema_to_validator(schema: Optional[Dict[str, Any]], name: str) -> Type[BaseModel]:
    """
    Build a pydantic model from an object-typed JSON Schema.

    Args:
        schema: The declared `inputSchema` (missing or empty means "no params")
        name: Used for the generated model name, typically the tool name

    Returns:
        A BaseModel subclass. Required properties are required fields;
        optional ones default to None. Property names that are not valid
        Python identifiers are kept as aliases.
    """
    schema = schema if isinstance(schema, dict) else {}
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    model_name = _model_name(name)

    fields: Dict[str, Any] = {}
    taken = set(properties)
    for key, prop_schema in properties.items():
        annotation, nullable = _annotation(prop_schema, f"{model_name}_{key}")
        description = (
            prop_schema.get("description") if isinstance(prop_schema, dict) else None
        )
        field_name = _alias_field_name(taken) if _needs_alias(key) else key
        alias = key if field_name != key else None

        if key in required:
            if nullable:
                annotation = Optional[annotation]
            fields[field_name] = (
                annotation,
                Field(..., alias=alias, description=description),
            )
        else:
            fields[field_name] = (
                Optional[annotation],
                Field(default=None, alias=alias, description=description),
            )

    extra = "allow" if schema.get("additionalProperties") is True else "ignore"
    return create_model(
        model_name,
        __config__=ConfigDict(extra=extra),
        **fields,
    )


def validate_arguments(validator: Type[BaseModel], arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate raw arguments and return the payload to forward upstream.

    Raises:
        ValueError: If the arguments do not satisfy the schema
    """
    try:
        instance = validator.model_validate(arguments or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValueError(f"Invalid arguments: {problems}") from exc
    return instance.model_dump(by_alias=True, exclude_unset=True, mode="json")
