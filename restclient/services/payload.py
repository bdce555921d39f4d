"""Schema-agnostic helpers over raw JSON bodies.

APIs disagree on response shapes: some return the object, some wrap it in
a one-element array, some echo only part of it on writes. These helpers
resolve one object out of a body and pull identifiers from it without
knowing anything else about its schema.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from restclient.config import ClientOptions
from restclient.exceptions import DecodingError, InvalidImportIdError


def decode_json(body: str) -> Any:
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise DecodingError(f"response body is not valid JSON: {exc}") from exc


def decode_object(body: str | Mapping[str, Any] | list) -> dict[str, Any]:
    """Resolve the single object carried by *body*.

    An object is returned as-is; an array yields its first element, which
    must itself be an object. Anything else is a :class:`DecodingError`.
    """
    data = decode_json(body) if isinstance(body, str) else body
    if isinstance(data, Mapping):
        return dict(data)
    if isinstance(data, list):
        if not data:
            raise DecodingError("the JSON data is an empty array")
        first = data[0]
        if not isinstance(first, Mapping):
            raise DecodingError(
                f"the first array element is not an object: {type(first).__name__}"
            )
        return dict(first)
    raise DecodingError(
        f"the JSON data is not an array, neither an object: {type(data).__name__}"
    )


def lookup_path(obj: Mapping[str, Any], path: str) -> Any:
    """Walk a ``/``-delimited key path through nested objects.

    Every intermediate segment must be an object; arrays are not indexed.
    """
    segments = path.split("/")
    current: Any = obj
    for depth, segment in enumerate(segments):
        if not isinstance(current, Mapping):
            walked = "/".join(segments[:depth])
            raise DecodingError(f"{walked!r} is not an object; cannot resolve {path!r}")
        if segment not in current:
            raise DecodingError(f"{path!r} not found")
        current = current[segment]
    return current


def _as_string(value: Any, name: str) -> str:
    # bool is an int subclass; true/false are not identifiers
    if isinstance(value, bool) or value is None:
        raise DecodingError(f"{name!r} value can't be represented as a string: {value!r}")
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    raise DecodingError(
        f"{name!r} value can't be represented as a string: {type(value).__name__}"
    )


def get_field(body: str | Mapping[str, Any] | list, name: str) -> str:
    """Return the string value at *name* (possibly a nested path) in *body*."""
    obj = decode_object(body)
    return _as_string(lookup_path(obj, name), name)


def merge_copy_keys(
    outgoing: Mapping[str, Any],
    known: Mapping[str, Any],
    copy_keys: Iterable[str],
) -> dict[str, Any]:
    """Carry *copy_keys* from the last known object into an update payload.

    Keys present in *known* overwrite the same keys in *outgoing*; keys
    absent from *known* are left alone.
    """
    merged = dict(outgoing)
    for key in copy_keys:
        if key in known:
            merged[key] = known[key]
    return merged


def returns_object(options: ClientOptions, operation: str) -> bool:
    """Whether a write response body is the authoritative new object state.

    *operation* is ``"create"`` or ``"update"``.
    """
    if operation == "create":
        return options.create_returns_object or options.write_returns_object
    if operation == "update":
        return options.write_returns_object
    raise ValueError(f"not a write operation: {operation!r}")


def parse_import_id(import_id: str) -> tuple[str, str]:
    """Split ``"<path>,<identifier>"`` on the first comma."""
    path, sep, identifier = import_id.partition(",")
    if not sep or not path or not identifier:
        raise InvalidImportIdError(
            f"import identifier must be '<path>,<identifier>', got {import_id!r}"
        )
    return path, identifier
