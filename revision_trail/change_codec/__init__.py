"""Change payload codec.

A change payload maps attribute names to ``(old, new)`` pairs. It is stored
either as JSON text (for stores whose payload column is a plain text column)
or as a structured JSON-compatible document (for stores with a native JSON
column). The logical payload is identical either way, and
``decode(encode(changes)) == changes`` for any payload built from JSON types.

Usage:
    from revision_trail.change_codec import ChangeCodec, ColumnEncoding

    codec = ChangeCodec(lambda: ColumnEncoding.TEXT)
    raw = codec.encode({"name": (None, "Bolt")})
    changes = codec.decode(raw)
"""

import json
import math
from enum import Enum
from typing import Any, Callable, Mapping

from revision_trail.errors import CodecError

ChangeSet = dict[str, tuple[Any, Any]]


class ColumnEncoding(str, Enum):
    """Physical representation of the payload column."""

    TEXT = "text"
    STRUCTURED = "structured"


def _check_value(value: Any, path: str) -> None:
    """Reject anything JSON cannot carry back unchanged."""
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CodecError(f"Non-finite float at {path}")
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_value(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise CodecError(f"Non-string key {key!r} at {path}")
            _check_value(item, f"{path}.{key}")
        return
    raise CodecError(f"Value of type {type(value).__name__} at {path} is not serializable")


def _to_document(changes: Mapping[str, Any]) -> dict[str, list[Any]]:
    if not isinstance(changes, Mapping):
        raise CodecError(f"Change payload must be a mapping, got {type(changes).__name__}")

    document: dict[str, list[Any]] = {}
    for attribute, pair in changes.items():
        if not isinstance(attribute, str):
            raise CodecError(f"Attribute name must be a string, got {attribute!r}")
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise CodecError(f"Change for {attribute!r} must be an (old, new) pair")
        _check_value(pair[0], f"{attribute}.old")
        _check_value(pair[1], f"{attribute}.new")
        document[attribute] = [pair[0], pair[1]]
    return document


def _from_document(document: Any) -> ChangeSet:
    if not isinstance(document, dict):
        raise CodecError(f"Decoded payload must be an object, got {type(document).__name__}")

    changes: ChangeSet = {}
    for attribute, pair in document.items():
        if not isinstance(pair, list) or len(pair) != 2:
            raise CodecError(f"Stored change for {attribute!r} is not an (old, new) pair")
        changes[attribute] = (pair[0], pair[1])
    return changes


def encode(changes: Mapping[str, Any], encoding: ColumnEncoding = ColumnEncoding.TEXT) -> str | dict[str, list[Any]]:
    """Serialize a change payload for storage.

    Args:
        changes: Mapping of attribute name to ``(old, new)`` pair.
        encoding: Physical column representation.

    Returns:
        Compact JSON text for ``TEXT`` columns, or a plain dict of
        ``[old, new]`` lists for ``STRUCTURED`` columns.

    Raises:
        CodecError: If the payload holds values JSON cannot represent.
    """
    document = _to_document(changes)
    try:
        text = json.dumps(document, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Failed to encode change payload: {e}") from e

    if encoding == ColumnEncoding.STRUCTURED:
        # Fresh copy so later mutation of the caller's values cannot leak in
        return json.loads(text)
    return text


def decode(payload: Any, encoding: ColumnEncoding = ColumnEncoding.TEXT) -> ChangeSet:
    """Deserialize a stored change payload.

    Args:
        payload: JSON text (``TEXT``) or structured document (``STRUCTURED``).
            ``None`` decodes to an empty payload.
        encoding: Physical column representation.

    Returns:
        Mapping of attribute name to ``(old, new)`` tuple.

    Raises:
        CodecError: If the payload is not a valid encoded change set.
    """
    if payload is None:
        return {}

    if encoding == ColumnEncoding.STRUCTURED:
        document = payload
        _check_value(document, "payload")
    else:
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise CodecError(f"Change payload is not UTF-8: {e}") from e
        if not isinstance(payload, str):
            raise CodecError(f"Text payload must be str, got {type(payload).__name__}")
        try:
            document = json.loads(payload)
        except json.JSONDecodeError as e:
            raise CodecError(f"Invalid change payload JSON: {e}") from e

    return _from_document(document)


class ChangeCodec:
    """Codec bound to a column capability query.

    The capability callable answers "is the payload column text-encoded or
    structured?" and is consulted on every call, so a schema migration is
    picked up without rebuilding the codec.
    """

    def __init__(self, column_encoding: Callable[[], ColumnEncoding] | None = None) -> None:
        """
        Args:
            column_encoding: Capability query for the payload column.
                Defaults to text encoding.
        """
        self._column_encoding = column_encoding or (lambda: ColumnEncoding.TEXT)

    @property
    def encoding(self) -> ColumnEncoding:
        return ColumnEncoding(self._column_encoding())

    def encode(self, changes: Mapping[str, Any]) -> str | dict[str, list[Any]]:
        return encode(changes, self.encoding)

    def decode(self, payload: Any) -> ChangeSet:
        return decode(payload, self.encoding)


__all__ = [
    "ChangeCodec",
    "ChangeSet",
    "CodecError",
    "ColumnEncoding",
    "decode",
    "encode",
]
