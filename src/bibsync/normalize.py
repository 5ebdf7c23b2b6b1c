"""Type normalization layer.

The remote repository is loosely typed: most metadata fields may be
missing, null, a scalar, or an array. The export format is strict. We
bridge the two with a fixed table of named, pure conversion rules, and
we bind each field to a rule once, in a schema, rather than switching on
the runtime type of a single value.

The same table is used when importing (producing cached items) and when
exporting (producing the package), so a cached item that is already
normalized passes through export unchanged.

Every rule is deterministic and idempotent:

    convert(rule, convert(rule, value)) == convert(rule, value)
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from typing import Any, Final

from .errors import NormalizationError

Rule = Callable[[Any], Any]

STRING_OR_NULL_TO_STRING: Final[str] = "string_or_null_to_string"
STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING: Final[str] = "string_array_or_string_or_null_to_string"
STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING_ARRAY: Final[str] = (
    "string_array_or_string_or_null_to_string_array"
)
SEMICOLON_SPLIT_TO_STRING_ARRAY: Final[str] = (
    "semicolon_split_string_or_string_array_or_null_to_string_array"
)
STRING_OR_NUMBER_OR_NULL_TO_NUMBER: Final[str] = "string_or_number_or_null_to_number"
STRING_OR_NUMBER_OR_NULL_TO_INTEGER: Final[str] = "string_or_number_or_null_to_integer"


def _scalar_to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        raise NormalizationError(f"expected a scalar, got {type(value).__name__}")
    return str(value)


def string_or_null_to_string(value: Any) -> str:
    """Missing/null becomes the empty string and scalars pass through."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        raise NormalizationError("expected a scalar, got an array")
    return _scalar_to_string(value)


def string_array_or_string_or_null_to_string(value: Any) -> str:
    """Arrays become their non-empty elements joined by newlines."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        parts = [_scalar_to_string(elem) for elem in value if elem is not None]
        return "\n".join(part for part in parts if part)
    return _scalar_to_string(value)


def string_array_or_string_or_null_to_string_array(value: Any) -> list[str]:
    """Scalars become one-element lists; null/empty elements are dropped."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = [_scalar_to_string(elem) for elem in value if elem is not None]
        return [part for part in parts if part]
    text = _scalar_to_string(value)
    return [text] if text else []


def semicolon_split_string_or_string_array_or_null_to_string_array(value: Any) -> list[str]:
    """Like the string-array rule, but a scalar is split on semicolons."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return string_array_or_string_or_null_to_string_array(value)
    text = _scalar_to_string(value)
    return [part.strip() for part in text.split(";") if part.strip()]


def _parse_number(text: str) -> int | float:
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return number


def string_or_number_or_null_to_number(value: Any) -> int | float:
    """Missing/null and unparsable strings become zero."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return 0
        return value
    if isinstance(value, str):
        return _parse_number(value)
    raise NormalizationError(f"expected a number, got {type(value).__name__}")


def string_or_number_or_null_to_integer(value: Any) -> int:
    """Same as the number rule, truncated to an integer."""
    return int(string_or_number_or_null_to_number(value))


RULES: Final[Mapping[str, Rule]] = {
    STRING_OR_NULL_TO_STRING: string_or_null_to_string,
    STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING: string_array_or_string_or_null_to_string,
    STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING_ARRAY: string_array_or_string_or_null_to_string_array,
    SEMICOLON_SPLIT_TO_STRING_ARRAY: semicolon_split_string_or_string_array_or_null_to_string_array,
    STRING_OR_NUMBER_OR_NULL_TO_NUMBER: string_or_number_or_null_to_number,
    STRING_OR_NUMBER_OR_NULL_TO_INTEGER: string_or_number_or_null_to_integer,
}
"""The fixed table of conversion rules, keyed by rule name."""


ITEM_SCHEMA: Final[Mapping[str, str]] = {
    "id": STRING_OR_NULL_TO_STRING,
    "title": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "creator": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "description": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "date": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "language": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING_ARRAY,
    "subject": SEMICOLON_SPLIT_TO_STRING_ARRAY,
    "collection": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING_ARRAY,
    "files": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING_ARRAY,
    "mediatype": STRING_OR_NULL_TO_STRING,
    "coverImage": STRING_OR_NULL_TO_STRING,
    "coverWidth": STRING_OR_NUMBER_OR_NULL_TO_INTEGER,
    "coverHeight": STRING_OR_NUMBER_OR_NULL_TO_INTEGER,
    "favoriteCount": STRING_OR_NUMBER_OR_NULL_TO_INTEGER,
    "downloads": STRING_OR_NUMBER_OR_NULL_TO_NUMBER,
}
"""Rule bound to each item field."""

COLLECTION_SCHEMA: Final[Mapping[str, str]] = {
    "id": STRING_OR_NULL_TO_STRING,
    "name": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "description": STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING,
    "tags": SEMICOLON_SPLIT_TO_STRING_ARRAY,
    "query": STRING_OR_NULL_TO_STRING,
}
"""Rule bound to each collection field."""

EXPORT_ITEM_FIELDS: Final[tuple[str, ...]] = (
    "id",
    "title",
    "description",
    "creator",
    "date",
    "language",
    "subject",
    "collection",
    "mediatype",
    "coverImage",
    "coverWidth",
    "coverHeight",
    "favoriteCount",
)
"""Item fields included in the export package."""

_FAVORITE_PREFIX: Final[str] = "fav-"


def convert(
    rule_name: str,
    value: Any,
    *,
    field: str | None = None,
    allow_array: bool = False,
) -> Any:
    """
    Apply the named rule to the given value.

    Arguments:
        rule_name: one of the keys of RULES.
        value: the raw value.
        field: optional field name used to annotate errors.
        allow_array: when the rule is `string_or_null_to_string`, accept
            arrays by falling back to the newline-joining rule.

    Raises:
        KeyError: if the rule does not exist.
        NormalizationError: if the value does not fit the rule.
    """
    if rule_name not in RULES:
        raise KeyError(f"unknown normalization rule: {rule_name}")
    if (
        allow_array
        and rule_name == STRING_OR_NULL_TO_STRING
        and isinstance(value, (list, tuple))
    ):
        rule_name = STRING_ARRAY_OR_STRING_OR_NULL_TO_STRING
    try:
        return RULES[rule_name](value)
    except NormalizationError as exc:
        if exc.field is not None or field is None:
            raise
        raise NormalizationError(str(exc), field=field) from exc


def normalize_record(raw: Mapping[str, Any], schema: Mapping[str, str]) -> dict[str, Any]:
    """
    Normalize every field declared by the schema.

    Schema fields missing from the record get the rule's empty value, and
    fields the schema does not know about are preserved verbatim.
    """
    result = dict(raw)
    for field, rule_name in schema.items():
        result[field] = convert(rule_name, raw.get(field), field=field)
    return result


def normalize_item(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a raw item record and fold `fav-*` collections into a count."""
    item = normalize_record(raw, ITEM_SCHEMA)
    favorites = [name for name in item["collection"] if name.startswith(_FAVORITE_PREFIX)]
    if favorites:
        item["collection"] = [
            name for name in item["collection"] if not name.startswith(_FAVORITE_PREFIX)
        ]
        item["favoriteCount"] += len(favorites)
    return item


def normalize_collection(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a raw collection record."""
    return normalize_record(raw, COLLECTION_SCHEMA)


def project_item(item: Mapping[str, Any]) -> dict[str, Any]:
    """Return the export view of a cached item, normalized with the same rules."""
    return {
        field: convert(ITEM_SCHEMA[field], item.get(field), field=field)
        for field in EXPORT_ITEM_FIELDS
    }
