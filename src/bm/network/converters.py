"""Decoding of JSON response bodies into typed results.

A :class:`ConverterRegistry` maps a target class to a function converting a JSON
object into an instance of that class. Registering ``User`` also covers
``list[User]``: the converter is applied to every element and the first failing
element is reported by index.

Registries are plain objects handed to an executor. Register converters at
start-up; the mapping is read concurrently by in-flight requests and is not meant
to be modified under live traffic.
"""

import json
import logging
from collections.abc import MutableMapping, MutableSequence
from types import UnionType
from typing import Any, Callable, Dict, Optional, Type, Union, get_args, get_origin

from bm.network.errors import APIError, APIErrorType, IndexedConversionError

logger = logging.getLogger(__name__)

Converter = Callable[[Dict[str, Any]], Any]

# Errors a converter may raise when the JSON does not have the expected shape.
# Pydantic's ValidationError is a ValueError.
CONVERSION_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


def _origin_is(cls: Type, abc: type) -> bool:
    # Parameterized aliases are checked through their origin, plain classes directly
    try:
        return issubclass(get_origin(cls) or cls, abc)
    except TypeError:
        return False


def _is_list_type(cls: Type) -> bool:
    """Whether JSON arrays converted to cls get element-wise conversion."""
    return _origin_is(cls, MutableSequence)


def _is_dict_type(cls: Type) -> bool:
    """Whether JSON objects converted to cls are passed through unchanged."""
    return _origin_is(cls, MutableMapping)


def _is_optional_type(cls: Type) -> bool:
    return get_origin(cls) in (Union, UnionType) and type(None) in get_args(cls)


def _type_name(cls: Any) -> str:
    return getattr(cls, "__name__", None) or str(cls)


def _conversion_failed(detail: str) -> APIError:
    return APIError(APIErrorType.DATA_CONVERSION_FAILED, detail=detail)


class ConverterRegistry:
    def __init__(self):
        self._converters: Dict[Any, Converter] = {}

    def register(self, cls: Type, converter: Optional[Converter] = None):
        """Register ``converter`` for ``cls``.

        Can be used as a decorator::

            @registry.register(User)
            def user_from_json(data: dict) -> User:
                return User(id=data["id"], name=data["name"])
        """
        if converter is None:

            def decorator(fn: Converter) -> Converter:
                self._converters[cls] = fn
                return fn

            return decorator
        self._converters[cls] = converter
        return converter

    def unregister(self, cls: Type) -> None:
        self._converters.pop(cls, None)

    def __contains__(self, cls: Any) -> bool:
        return cls in self._converters

    def decode(self, content: bytes, cls: Any = None) -> Any:
        """Decode a JSON response body and convert it to ``cls``.

        Raises:
            APIError: DATA_CONVERSION_FAILED if the body is not JSON or does not fit ``cls``
            IndexedConversionError: if an element of a list response does not fit
        """
        try:
            data = json.loads(content)
        except (ValueError, UnicodeDecodeError) as e:
            raise _conversion_failed(f"Response body is not valid JSON: {e}") from e
        return self.convert(data, cls)

    def convert(self, data: Any, cls: Any = None) -> Any:
        if cls is None or cls is Any:
            return data

        converter = self._converters.get(cls)
        if converter is not None:
            return self._apply(converter, data, cls)

        if _is_optional_type(cls):
            if data is None:
                return None
            inner = [arg for arg in get_args(cls) if arg is not type(None)]
            return self.convert(data, inner[0] if len(inner) == 1 else Union[tuple(inner)])

        if _is_list_type(cls):
            if not isinstance(data, list):
                raise _conversion_failed(f"Expected a JSON array for {_type_name(cls)}, got {type(data).__name__}.")
            args = getattr(cls, "__args__", ())
            if not args:
                return data
            return [self._convert_item(index, item, args[0]) for index, item in enumerate(data)]

        return self._fallback(data, cls)

    def _convert_item(self, index: int, item: Any, cls: Any) -> Any:
        try:
            return self.convert(item, cls)
        except APIError as e:
            raise IndexedConversionError(index, e.detail) from e

    @staticmethod
    def _apply(converter: Converter, data: Any, cls: Any) -> Any:
        if not isinstance(data, dict):
            raise _conversion_failed(f"Expected a JSON object for {_type_name(cls)}, got {type(data).__name__}.")
        try:
            return converter(data)
        except CONVERSION_ERRORS as e:
            raise _conversion_failed(f"Could not convert to {_type_name(cls)}: {e!r}") from e

    def _fallback(self, data: Any, cls: Any) -> Any:
        """Conversion for classes without a registered converter.

        Supports:
        - dict-like types and JSON primitives (checked, never cast)
        - Pydantic v2 models (model_validate)
        - Classes with from_dict() or from_json() class method
        """
        if _is_dict_type(cls):
            if isinstance(data, dict):
                return data
            raise _conversion_failed(f"Expected a JSON object for {_type_name(cls)}, got {type(data).__name__}.")

        if cls is bool or cls is str:
            if isinstance(data, cls):
                return data
            raise _conversion_failed(f"Expected {cls.__name__}, got {type(data).__name__}.")
        if cls is int:
            if isinstance(data, int) and not isinstance(data, bool):
                return data
            raise _conversion_failed(f"Expected int, got {type(data).__name__}.")
        if cls is float:
            if isinstance(data, (int, float)) and not isinstance(data, bool):
                return float(data)
            raise _conversion_failed(f"Expected float, got {type(data).__name__}.")

        for factory_name in ("model_validate", "from_dict", "from_json"):
            factory = getattr(cls, factory_name, None)
            if callable(factory):
                try:
                    return factory(data)
                except CONVERSION_ERRORS as e:
                    raise _conversion_failed(f"Could not convert to {_type_name(cls)}: {e!r}") from e

        logger.warning(f"No converter registered for {_type_name(cls)}")
        raise _conversion_failed(
            f"No converter registered for {_type_name(cls)}. "
            f"Register one or give the class a model_validate(), from_dict() or from_json() class method."
        )
