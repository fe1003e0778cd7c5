"""Serialization of request bodies to JSON."""

import json
from typing import Any


def serialize_body(body: Any) -> Any:
    """Convert a request body to a JSON-compatible structure.

    Supports:
    - None, str, int, float, bool (passed through)
    - dict, list, tuple (contents serialized recursively, keys must be str)
    - Pydantic v2 models (model_dump)
    - Objects with to_json() or to_dict() method (duck typing)

    Raises:
        ValueError: If a bytes value is found
        TypeError: If a value type is not supported
    """
    if body is None or isinstance(body, (str, bool, int, float)):
        return body
    if isinstance(body, (bytes, bytearray)):
        raise ValueError("bytes data is not supported")
    if isinstance(body, dict):
        for key in body:
            if not isinstance(key, str):
                raise TypeError(f"JSON object keys must be str, got {type(key).__name__}")
        return {k: serialize_body(v) for k, v in body.items()}
    if isinstance(body, (list, tuple)):
        return [serialize_body(item) for item in body]
    if hasattr(body, "model_dump") and callable(body.model_dump):  # Pydantic v2
        return serialize_body(body.model_dump(mode="json"))
    if hasattr(body, "to_json") and callable(body.to_json):
        return serialize_body(body.to_json())
    if hasattr(body, "to_dict") and callable(body.to_dict):
        return serialize_body(body.to_dict())
    raise TypeError(
        f"Cannot serialize value of type {type(body).__name__}. Expected dict, list, primitive, or Serializable."
    )


def dumps(body: Any) -> bytes:
    """Serialize ``body`` to UTF-8 encoded JSON. NaN and infinity are rejected."""
    return json.dumps(serialize_body(body), ensure_ascii=False, allow_nan=False).encode("utf-8")
