"""
Transport codec for row values.

Exports store each row as plain JSON. Values JSON cannot represent directly
(datetimes, binary data, special floats, big integers, sets and maps with
non-string keys) are replaced by a JSON-safe form and their location is
recorded in a ``$types`` object, Typeson style::

    {"id": 1, "when": 1700000000000, "$types": {"when": "date"}}

When the root value itself is typed, or is not an object, the encoded value
is wrapped::

    {"$": 1700000000000, "$types": {"$": {"": "date"}}}

Paths join object keys and list indices with ``.``. Inside a component
``~`` is written ``~0`` and ``.`` is written ``~1``; an empty key is ``~2``.
"""

import base64
import json
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from ..utils.exceptions import CodecError

TYPES_KEY = "$types"
WRAPPED_KEY = "$"

MAX_SAFE_INTEGER = 2**53 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def escape_component(component: str) -> str:
    if component == "":
        return "~2"
    return component.replace("~", "~0").replace(".", "~1")


def unescape_component(component: str) -> str:
    if component == "~2":
        return ""
    return component.replace("~1", ".").replace("~0", "~")


def _child(path: str, component: Any) -> str:
    escaped = escape_component(str(component))
    return f"{path}.{escaped}" if path else escaped


def _split(path: str) -> List[str]:
    if path == "":
        return []
    return [unescape_component(part) for part in path.split(".")]


# Encoding


def _encode_date(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    millis = (value - _EPOCH).total_seconds() * 1000
    return int(millis) if millis.is_integer() else millis


def _encode(value: Any, path: str, types: Dict[str, str]) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            types[path] = "bigint"
            return str(value)
        return value
    if isinstance(value, float):
        if math.isnan(value):
            types[path] = "NaN"
            return "NaN"
        if math.isinf(value):
            name = "Infinity" if value > 0 else "-Infinity"
            types[path] = name
            return name
        return value
    if isinstance(value, datetime):
        types[path] = "date"
        return _encode_date(value)
    if isinstance(value, bytes):
        types[path] = "arraybuffer"
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, (bytearray, memoryview)):
        types[path] = "uint8array"
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        types[path] = "set"
        return [_encode(item, _child(path, i), types) for i, item in enumerate(value)]
    if isinstance(value, Mapping):
        if all(isinstance(key, str) for key in value):
            return {key: _encode(item, _child(path, key), types) for key, item in value.items()}
        types[path] = "map"
        pairs = []
        for i, (key, item) in enumerate(value.items()):
            pair_path = _child(path, i)
            pairs.append(
                [
                    _encode(key, _child(pair_path, 0), types),
                    _encode(item, _child(pair_path, 1), types),
                ]
            )
        return pairs
    if isinstance(value, (list, tuple)):
        return [_encode(item, _child(path, i), types) for i, item in enumerate(value)]
    raise CodecError(f"Cannot encode value of type {type(value).__name__} at '{path}'")


def encapsulate(value: Any) -> Any:
    """Convert a native value into its JSON-safe transport form."""
    types: Dict[str, str] = {}
    encoded = _encode(value, "", types)

    if isinstance(encoded, dict) and "" not in types:
        if TYPES_KEY in encoded or WRAPPED_KEY in encoded:
            # A literal "$types" or "$" key would be mistaken for the markers
            return {WRAPPED_KEY: encoded, TYPES_KEY: {WRAPPED_KEY: types}}
        if types:
            encoded[TYPES_KEY] = types
        return encoded
    if not types:
        return encoded
    return {WRAPPED_KEY: encoded, TYPES_KEY: {WRAPPED_KEY: types}}


# Reviving


def _revive_date(encoded: Any) -> Any:
    if encoded == "NaN":
        return None
    return datetime.fromtimestamp(encoded / 1000, tz=timezone.utc)


def _revive_map(encoded: Any) -> Dict[Any, Any]:
    try:
        return {key: item for key, item in encoded}
    except (TypeError, ValueError) as exc:
        raise CodecError(f"Invalid map encoding: {exc}") from exc


def _revive_set(encoded: Any) -> set:
    try:
        return set(encoded)
    except TypeError as exc:
        raise CodecError(f"Invalid set encoding: {exc}") from exc


_REVIVERS = {
    "date": _revive_date,
    "arraybuffer": lambda encoded: base64.b64decode(encoded),
    "uint8array": lambda encoded: bytearray(base64.b64decode(encoded)),
    "NaN": lambda encoded: math.nan,
    "Infinity": lambda encoded: math.inf,
    "-Infinity": lambda encoded: -math.inf,
    "bigint": lambda encoded: int(encoded),
    "map": _revive_map,
    "set": _revive_set,
}


def _container_key(container: Any, component: str) -> Any:
    if isinstance(container, list):
        return int(component)
    return component


def _unwrap(transport: Any) -> Tuple[Any, Dict[str, str]]:
    if not isinstance(transport, dict) or TYPES_KEY not in transport:
        return transport, {}

    types = transport[TYPES_KEY]
    if not isinstance(types, dict):
        raise CodecError(f"Invalid {TYPES_KEY} specification: {types!r}")

    if set(transport) == {WRAPPED_KEY, TYPES_KEY} and set(types) == {WRAPPED_KEY}:
        inner = types[WRAPPED_KEY]
        if not isinstance(inner, dict):
            raise CodecError(f"Invalid {TYPES_KEY} specification: {inner!r}")
        return transport[WRAPPED_KEY], inner

    value = {key: item for key, item in transport.items() if key != TYPES_KEY}
    return value, types


def revive(transport: Any) -> Any:
    """Reconstruct a native value from its transport form.

    Containers of ``transport`` may be reused in the result.
    """
    value, types = _unwrap(transport)
    if not types:
        return value

    # Deepest paths first so typed containers see already-revived children
    ordered = sorted(types.items(), key=lambda item: len(_split(item[0])), reverse=True)
    for path, type_name in ordered:
        reviver = _REVIVERS.get(type_name)
        if reviver is None:
            raise CodecError(f"Unknown type '{type_name}' at '{path}'")

        components = _split(path)
        if not components:
            value = reviver(value)
            continue

        parent = value
        try:
            for component in components[:-1]:
                parent = parent[_container_key(parent, component)]
            key = _container_key(parent, components[-1])
            parent[key] = reviver(parent[key])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise CodecError(f"Cannot revive '{type_name}' at '{path}': {exc}") from exc

    return value


def dumps(value: Any, canonical: bool = False) -> str:
    """Serialize a native value to JSON text in transport form."""
    try:
        return json.dumps(
            encapsulate(value),
            sort_keys=canonical,
            separators=(",", ":"),
            allow_nan=False,
        )
    except ValueError as exc:
        raise CodecError(f"Cannot serialize value: {exc}") from exc


def loads(text: str) -> Any:
    """Parse JSON text produced by :func:`dumps` back to a native value."""
    try:
        return revive(json.loads(text))
    except json.JSONDecodeError as exc:
        raise CodecError(f"Invalid transport JSON: {exc}") from exc
