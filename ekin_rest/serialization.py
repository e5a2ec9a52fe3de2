"""JSON encoding and typed decoding for request and response bodies.

Objects are first flattened into plain JSON values so that two policies can
be applied while walking them:

    serialize_nulls        -- keep members whose value is None
    allow_reference_loops  -- write a {"$ref": "<pointer>"} back-reference
                              when an object contains one of its ancestors,
                              instead of failing

Pydantic models, dataclasses, mappings, sequences and plain objects (through
their public ``__dict__``) are walked. Leaf values that json cannot write
natively (datetime, UUID, Decimal, bytes, ...) go through pydantic's
``to_jsonable_python``.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic_core import PydanticSerializationError, to_jsonable_python

T = TypeVar("T")

REF_KEY = "$ref"

_SCALARS = (str, int, float, bool, type(None))


class SerializationError(ValueError):
    """Raised when an object cannot be written as JSON."""


def to_json(
    obj: Any,
    *,
    serialize_nulls: bool = False,
    allow_reference_loops: bool = True,
) -> str:
    """Serialize ``obj`` to JSON text.

    Args:
        obj: Object to serialize.
        serialize_nulls: Include members whose value is None.
        allow_reference_loops: Replace cyclic references with a JSON pointer
            back-reference. When False, a cycle raises SerializationError.

    Raises:
        SerializationError: If the object contains an unserializable value,
            or a reference loop while loops are not allowed.
    """
    walker = _Walker(serialize_nulls, allow_reference_loops)
    plain = walker.walk(obj, "#", {})
    try:
        return json.dumps(plain, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e)) from e


def from_json(text: str | bytes, type_: type[T]) -> T:
    """Decode JSON text into ``type_``. Raises pydantic.ValidationError."""
    return TypeAdapter(type_).validate_json(text)


class _Walker:
    def __init__(self, serialize_nulls: bool, allow_reference_loops: bool) -> None:
        self._serialize_nulls = serialize_nulls
        self._allow_loops = allow_reference_loops

    def walk(self, value: Any, path: str, ancestors: dict[int, str]) -> Any:
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, _SCALARS):
            return value

        members = self._members(value)
        is_sequence = isinstance(value, (list, tuple, set, frozenset))
        if members is None and not is_sequence:
            try:
                return to_jsonable_python(value)
            except PydanticSerializationError as e:
                raise SerializationError(
                    f"Unable to serialize value of type '{type(value).__name__}' at '{path}'"
                ) from e

        key = id(value)
        if key in ancestors:
            if self._allow_loops:
                return {REF_KEY: ancestors[key]}
            raise SerializationError(
                f"Self referencing loop detected with type '{type(value).__name__}'. "
                f"Path '{path}' refers back to '{ancestors[key]}'."
            )

        ancestors[key] = path
        try:
            if is_sequence:
                return [
                    self.walk(item, f"{path}/{index}", ancestors)
                    for index, item in enumerate(value)
                ]
            result = {}
            for name, member in members.items():
                if member is None and not self._serialize_nulls:
                    continue
                result[name] = self.walk(member, f"{path}/{_escape_pointer(name)}", ancestors)
            return result
        finally:
            del ancestors[key]

    @staticmethod
    def _members(value: Any) -> dict[str, Any] | None:
        """Name -> value pairs of an object-like value, or None for anything else."""
        if isinstance(value, BaseModel):
            return {
                info.alias or name: getattr(value, name)
                for name, info in type(value).model_fields.items()
            }
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        if isinstance(value, Mapping):
            return {str(k): v for k, v in value.items()}
        if isinstance(value, (list, tuple, set, frozenset, bytes, bytearray)):
            return None
        attrs = getattr(value, "__dict__", None)
        if isinstance(attrs, dict) and not isinstance(value, type):
            return {k: v for k, v in attrs.items() if not k.startswith("_")}
        return None


def _escape_pointer(name: str) -> str:
    return name.replace("~", "~0").replace("/", "~1")
