"""Versioned, tagged JSON encoding for persisted execution state.

Values JSON cannot represent are written as ``{"__kind__": <kind>, "value": ...}``
and revived only from those explicit tags, never from the shape of a value.
The whole document is wrapped in ``{"version": 1, "payload": ...}``.

Supported kinds: ``datetime``, ``date``, ``set``, ``frozenset``, ``tuple``,
``map`` (mappings with non-string keys), ``decimal``, ``uuid`` and ``object``
(string-keyed mappings that themselves contain a ``__kind__`` key).
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from litestar_flows.exceptions import ContextSerializationError

__all__ = ["CODEC_VERSION", "KIND_KEY", "decode", "dumps", "encode", "loads"]

CODEC_VERSION = 1
KIND_KEY = "__kind__"


def _tag(kind: str, value: Any) -> dict[str, Any]:
    return {KIND_KEY: kind, "value": value}


def encode(value: Any) -> Any:
    """Convert ``value`` into a JSON-compatible tagged structure.

    Args:
        value: Any supported value.

    Returns:
        The JSON-compatible structure.

    Raises:
        ContextSerializationError: If a value of an unsupported type is found.
    """
    if value is None or isinstance(value, bool | int | float | str):
        return value
    # datetime is a subclass of date
    if isinstance(value, datetime):
        return _tag("datetime", value.isoformat())
    if isinstance(value, date):
        return _tag("date", value.isoformat())
    if isinstance(value, Decimal):
        return _tag("decimal", str(value))
    if isinstance(value, UUID):
        return _tag("uuid", str(value))
    if isinstance(value, list):
        return [encode(item) for item in value]
    if isinstance(value, tuple):
        return _tag("tuple", [encode(item) for item in value])
    if isinstance(value, frozenset):
        return _tag("frozenset", [encode(item) for item in value])
    if isinstance(value, set):
        return _tag("set", [encode(item) for item in value])
    if isinstance(value, Mapping):
        if all(isinstance(key, str) for key in value):
            encoded = {key: encode(item) for key, item in value.items()}
            return _tag("object", encoded) if KIND_KEY in value else encoded
        return _tag("map", [[encode(key), encode(item)] for key, item in value.items()])
    msg = f"Cannot serialize value of type {type(value).__name__}"
    raise ContextSerializationError(msg)


def _decode_items(raw: Any) -> list[Any]:
    if not isinstance(raw, list):
        msg = "Tagged collection must hold a list"
        raise ContextSerializationError(msg)
    return [decode(item) for item in raw]


def _decode_map(raw: Any) -> dict[Any, Any]:
    try:
        return {decode(key): decode(item) for key, item in raw}
    except (TypeError, ValueError) as exc:
        msg = f"Malformed map entry: {exc}"
        raise ContextSerializationError(msg) from exc


def _decode_object(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        msg = "Tagged object must hold a mapping"
        raise ContextSerializationError(msg)
    return {key: decode(item) for key, item in raw.items()}


_DECODERS: dict[str, Callable[[Any], Any]] = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "decimal": Decimal,
    "uuid": UUID,
    "tuple": lambda raw: tuple(_decode_items(raw)),
    "set": lambda raw: set(_decode_items(raw)),
    "frozenset": lambda raw: frozenset(_decode_items(raw)),
    "map": _decode_map,
    "object": _decode_object,
}


def decode(value: Any) -> Any:
    """Revive a structure produced by :func:`encode`.

    Raises:
        ContextSerializationError: On an unknown tag or a malformed value.
    """
    if isinstance(value, list):
        return [decode(item) for item in value]
    if not isinstance(value, Mapping):
        return value
    if KIND_KEY not in value:
        return {key: decode(item) for key, item in value.items()}
    kind = value[KIND_KEY]
    decoder = _DECODERS.get(kind)
    if decoder is None or "value" not in value:
        msg = f"Unknown or malformed tagged value of kind {kind!r}"
        raise ContextSerializationError(msg)
    try:
        return decoder(value["value"])
    except ContextSerializationError:
        raise
    except (TypeError, ValueError, InvalidOperation) as exc:
        msg = f"Cannot decode {kind!r} value: {exc}"
        raise ContextSerializationError(msg) from exc


def dumps(value: Any) -> str:
    """Serialize ``value`` into a versioned JSON document."""
    return json.dumps({"version": CODEC_VERSION, "payload": encode(value)}, ensure_ascii=False)


def loads(text: str | bytes) -> Any:
    """Deserialize a document produced by :func:`dumps`.

    Raises:
        ContextSerializationError: If the document is not valid JSON, has an
            unsupported version or contains unknown tags.
    """
    try:
        document = json.loads(text)
    except ValueError as exc:
        msg = f"Stored state is not valid JSON: {exc}"
        raise ContextSerializationError(msg) from exc
    if not isinstance(document, Mapping) or document.get("version") != CODEC_VERSION or "payload" not in document:
        msg = f"Unsupported state document version: {document.get('version') if isinstance(document, Mapping) else None!r}"
        raise ContextSerializationError(msg)
    return decode(document["payload"])
