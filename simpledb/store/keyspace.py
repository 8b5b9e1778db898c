"""
Keyspace codec for SimpleDB.

Maps logical keys to storage keys and values to the text stored in the
Value column.

Primitive shapes (str, int, float, bool) are stored as their text form.
Every other shape goes through a pluggable ValueCodec; the default one is
JSON via pydantic TypeAdapters, so dataclasses, pydantic models, TypedDicts
and parametrised containers (list[int], dict[str, float]) all work.

The caller states the shape; nothing inspects the stored text to guess it.

Invariants:
    - storage_key() is pure and deterministic for a given prefix/suffix
    - Decoding an empty or absent value yields the shape's zero value
    - None is stored as NULL
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from ..errors import DecodeError

logger = logging.getLogger(__name__)

PRIMITIVE_SHAPES: tuple[type, ...] = (str, bool, int, float)

_TRUE_TEXT = frozenset({"true", "1", "yes", "on"})
_FALSE_TEXT = frozenset({"false", "0", "no", "off"})


@runtime_checkable
class ValueCodec(Protocol):
    """Structured value codec plugged into a Keyspace."""

    def encode(self, value: Any, shape: Any) -> str:
        """Serialize value to text."""
        ...

    def decode(self, text: str, shape: Any) -> Any:
        """Parse text into shape. Raises ValueError on malformed input."""
        ...


@lru_cache(maxsize=256)
def _adapter(shape: Any) -> TypeAdapter:
    return TypeAdapter(shape)


class JsonValueCodec:
    """JSON codec backed by pydantic TypeAdapter."""

    def encode(self, value: Any, shape: Any) -> str:
        return _adapter(shape).dump_json(value).decode("utf-8")

    def decode(self, text: str, shape: Any) -> Any:
        return _adapter(shape).validate_json(text)


def zero_value(shape: Any) -> Any:
    """Return the default value of a shape, or None when it has none.

    >>> zero_value(int), zero_value(str), zero_value(list[int])
    (0, '', [])
    """
    if shape is None:
        return None
    try:
        return shape()
    except Exception:
        return None


def is_primitive(shape: Any) -> bool:
    return shape in PRIMITIVE_SHAPES


class Keyspace:
    """Storage key derivation and value encoding for one store instance.

    Attributes:
        prefix: Prepended to logical keys unless raw keys are requested
        suffix: Appended to logical keys unless raw keys are requested
        codec: Structured value codec
    """

    def __init__(
        self,
        prefix: str | None = "",
        suffix: str | None = "",
        codec: ValueCodec | None = None,
    ) -> None:
        self.prefix = prefix or ""
        self.suffix = suffix or ""
        self.codec = codec or JsonValueCodec()

    def storage_key(self, key: str, raw: bool = False) -> str:
        """Build the storage key for a logical key."""
        return key if raw else f"{self.prefix}{key}{self.suffix}"

    def logical_key(self, storage_key: str) -> str:
        """Strip prefix/suffix from a storage key when both are present."""
        if (
            storage_key.startswith(self.prefix)
            and storage_key.endswith(self.suffix)
            and len(storage_key) >= len(self.prefix) + len(self.suffix)
        ):
            return storage_key[len(self.prefix) : len(storage_key) - len(self.suffix)]
        return storage_key

    def encode(self, value: Any, shape: Any = None) -> str | None:
        """Encode a value for storage.

        Args:
            value: Value to store
            shape: Declared type of the value (defaults to type(value))

        Returns:
            Text to store, or None for a None value

        Raises:
            ValueError: If a text value declared as bool is not a boolean word
        """
        if value is None:
            return None
        if shape is None:
            shape = type(value)
        if is_primitive(shape):
            if shape is bool:
                if isinstance(value, str):
                    value = _parse_bool(value)
                return "True" if value else "False"
            return str(value)
        return self.codec.encode(value, shape)

    def decode(self, text: str | None, shape: Any = str, tolerate_errors: bool = False) -> Any:
        """Decode stored text into shape.

        Args:
            text: Stored text (None for NULL)
            shape: Target type
            tolerate_errors: Return the shape's zero value instead of raising

        Returns:
            Decoded value

        Raises:
            DecodeError: If the text is malformed and errors are not tolerated
        """
        if text is None or text == "":
            return zero_value(shape)
        try:
            if shape is str:
                return text
            if shape is bool:
                return _parse_bool(text)
            if is_primitive(shape):
                return shape(text.strip())
            return self.codec.decode(text, shape)
        except (ValueError, TypeError, ValidationError) as e:
            if tolerate_errors:
                logger.debug(
                    "Tolerated decode failure",
                    extra={"shape": repr(shape), "error": str(e)},
                )
                return zero_value(shape)
            raise DecodeError(f"Cannot decode stored value as {shape!r}: {e}", shape=shape) from e


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in _TRUE_TEXT:
        return True
    if lowered in _FALSE_TEXT:
        return False
    raise ValueError(f"Invalid boolean text: {text!r}")
