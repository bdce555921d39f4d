"""Lifecycle of one remote object driven through a ``RestApiClient``.

``NotExist → create → Known``; ``Known → read/update → Known``;
``Known → delete → NotExist``; ``NotExist → import → read → Known``.
Nothing is cached here: each transition is one or two requests and the
returned ``ObjectState`` is the caller's to persist.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from restclient.client import RestApiClient
from restclient.exceptions import DecodingError
from restclient.services.payload import (
    decode_json,
    decode_object,
    get_field,
    lookup_path,
    merge_copy_keys,
    parse_import_id,
    returns_object,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectState:
    """Last known representation of a remote object."""

    path: str
    identifier: str
    data: dict[str, Any] = field(default_factory=dict)


def _to_object(data: Mapping[str, Any] | str) -> dict[str, Any]:
    """Caller payloads must be a single JSON object; arrays are not unwrapped."""
    if isinstance(data, str):
        data = decode_json(data)
    if not isinstance(data, Mapping):
        raise DecodingError(
            f"request payload must be a JSON object, got {type(data).__name__}"
        )
    return dict(data)


class RestObject:
    """Objects living under one collection *path* of the API.

    Individual objects are addressed as ``path/<id>``, or as
    ``path?<query_param>=<id>`` when *query_param* is given.
    """

    def __init__(
        self,
        client: RestApiClient,
        path: str,
        *,
        query_param: str | None = None,
    ) -> None:
        self.client = client
        self.path = path
        self.query_param = query_param

    @property
    def _options(self):
        return self.client.options

    def object_path(self, identifier: str) -> str:
        base = self.path.rstrip("/")
        if self.query_param:
            return f"{base}?{self.query_param}={identifier}"
        return f"{base}/{identifier}"

    def create(self, data: Mapping[str, Any] | str) -> ObjectState:
        payload = _to_object(data)
        opts = self._options
        response = self.client.send_request(opts.create_method, self.path, json.dumps(payload))
        try:
            identifier = get_field(response, opts.id_attribute)
        except DecodingError:
            # Some APIs echo nothing useful; fall back to a caller-chosen id
            try:
                identifier = get_field(payload, opts.id_attribute)
            except DecodingError:
                raise DecodingError(
                    f"{opts.id_attribute!r} found neither in the create response "
                    f"nor in the submitted data"
                ) from None

        if returns_object(opts, "create"):
            state = ObjectState(self.path, identifier, decode_object(response))
        else:
            state = self.read(identifier)
        logger.info("Created object %s under %s", identifier, self.path)
        return state

    def read(self, identifier: str) -> ObjectState:
        opts = self._options
        response = self.client.send_request(
            opts.read_method, self.object_path(identifier), opts.read_data
        )
        return ObjectState(self.path, identifier, decode_object(response))

    def update(self, state: ObjectState, data: Mapping[str, Any] | str) -> ObjectState:
        opts = self._options
        payload = _to_object(data)
        if opts.update_data:
            payload.update(_to_object(opts.update_data))
        payload = merge_copy_keys(payload, state.data, opts.copy_keys)

        response = self.client.send_request(
            opts.update_method, self.object_path(state.identifier), json.dumps(payload)
        )
        if returns_object(opts, "update"):
            return ObjectState(self.path, state.identifier, decode_object(response))
        return self.read(state.identifier)

    def delete(self, state: ObjectState) -> None:
        opts = self._options
        self.client.send_request(
            opts.destroy_method, self.object_path(state.identifier), opts.destroy_data
        )
        logger.info("Deleted object %s under %s", state.identifier, self.path)

    def lookup(self, state: ObjectState, name: str) -> Any:
        """Read a (possibly ``/``-nested) field from the known representation."""
        return lookup_path(state.data, name)

    @classmethod
    def import_object(
        cls,
        client: RestApiClient,
        import_id: str,
        *,
        query_param: str | None = None,
    ) -> ObjectState:
        """Re-derive state for ``"<path>,<identifier>"`` purely from a remote read."""
        path, identifier = parse_import_id(import_id)
        return cls(client, path, query_param=query_param).read(identifier)
