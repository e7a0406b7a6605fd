"""
JSON encoding of values sent to the client.

Optimistic values must survive the round trip to the client's mirror
unchanged, so they are restricted to JSON-native data: None, bool, int
within the client's exact range, finite float, str, list and str-keyed dict.
Server-only values may use richer types; those travel tagged
({"__type__": "Decimal", "value": "1.10"}) and are decoded by decode().
"""

import dataclasses
import json
import math
import uuid
from datetime import date, datetime
from decimal import Decimal

from reactive.errors import WireError
from reactive.expr import MAX_SAFE_INT


# Python types an optimistic field may declare.
WIRE_TYPES = (object, int, float, str, bool, list, dict)


class _JSONEncoder(json.JSONEncoder):
    """Handles datetime, date, Decimal, UUID, and dataclass serialization."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return {"__type__": "datetime", "value": obj.isoformat()}
        if isinstance(obj, date):
            return {"__type__": "date", "value": obj.isoformat()}
        if isinstance(obj, Decimal):
            return {"__type__": "Decimal", "value": str(obj)}
        if isinstance(obj, uuid.UUID):
            return {"__type__": "UUID", "value": str(obj)}
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        return super().default(obj)


def _json_decoder_hook(d):
    """Reconstruct tagged server-only types."""
    if "__type__" in d:
        t = d["__type__"]
        v = d["value"]
        if t == "datetime":
            return datetime.fromisoformat(v)
        if t == "date":
            return date.fromisoformat(v)
        if t == "Decimal":
            return Decimal(v)
        if t == "UUID":
            return uuid.UUID(v)
    return d


def encode(values: dict) -> str:
    return json.dumps(values, cls=_JSONEncoder, allow_nan=False)


def decode(text: str) -> dict:
    return json.loads(text, object_hook=_json_decoder_hook)


def check_round_trip(name: str, value, path: str = "") -> None:
    """Raise WireError unless value reaches the client unchanged."""
    where = name + path
    if value is None or isinstance(value, (bool, str)):
        return
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INT:
            raise WireError(where, value, "integer outside the client's exact range")
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise WireError(where, value, "non-finite float")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            check_round_trip(name, item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for k, item in value.items():
            if not isinstance(k, str):
                raise WireError(where, k, "record keys must be strings")
            check_round_trip(name, item, f"{path}.{k}")
        return
    if isinstance(value, tuple):
        raise WireError(where, value, "tuples arrive on the client as lists")
    raise WireError(where, value, f"{type(value).__name__} is not JSON-native")


def client_payload(component, values: dict) -> dict:
    """JSON-compatible payload for the client.

    Values the client mirrors (optimistic fields, mirrored derivations) are
    checked for a lossless round trip; everything else is tag-encoded.
    """
    mirrored = set(component.optimistic_fields()) | set(component.client_mirrored)
    payload = {}
    tagged = {}
    for name, value in values.items():
        if name in mirrored:
            check_round_trip(name, value)
            payload[name] = value
        else:
            tagged[name] = value
    if tagged:
        payload.update(json.loads(encode(tagged)))
    return payload
