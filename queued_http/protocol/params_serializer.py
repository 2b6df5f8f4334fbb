"""
Query-String Pre-Resolution

When a caller supplies a params serializer, it only exists in the caller's
process, so the query string has to be built before the request is published.
The envelope then carries the full URL and no params.

Accepted serializers, in order of precedence:
1. A plain callable: serializer(params) -> str
2. An object with a callable `serialize`: serializer.serialize(params, serializer)
3. ParamsSerializerOptions without `serialize`: the built-in encoder below,
   optionally driven by a visitor
4. httpx.QueryParams params are rendered as-is, whatever the options

Built-in encoder (ParamsSerializerOptions):
    {"a": {"b": 1}}            -> a[b]=1         (dots=True: a.b=1)
    {"ids": [1, 2]}            -> ids=1&ids=2    (indexes=False: ids[]=1&ids[]=2,
                                                  indexes=True:  ids[0]=1&ids[1]=2)
    {"filter{}": {"x": 1}}     -> filter={"x":1}  (JSON sub-object)
    {"tags[]": ("a", "b")}     -> tags=a&tags=b   (forced array flattening)
    meta_tokens=True           -> every top-level object gets the {} suffix
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any
from urllib.parse import quote

import httpx
import orjson

ParamsVisitor = Callable[[Any, str, list[str], "VisitorHelpers"], bool]

_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass
class ParamsSerializerOptions:
    """
    Options for the built-in query-string encoder.

    Attributes:
        encode: Percent-encode keys and values
        serialize: Custom serializer taking (params, options); bypasses the encoder
        indexes: None repeats the key, False appends [], True appends [i]
        dots: Use dot notation for nested mappings
        meta_tokens: JSON-encode top-level objects (adds the {} key suffix)
        visitor: Called for every key; returns True to descend into the value
    """

    encode: bool = False
    serialize: Callable[[Any, "ParamsSerializerOptions"], str] | None = None
    indexes: bool | None = None
    dots: bool = False
    meta_tokens: bool = False
    visitor: ParamsVisitor | None = None


@dataclass
class VisitorHelpers:
    """
    Helpers handed to a params visitor.

    A visitor emits pairs with append(key, value) and returns True when the
    encoder should descend into the value instead.
    """

    is_visitable: Callable[[Any], bool]
    convert_value: Callable[[Any], Any]
    default_visitor: ParamsVisitor
    append: Callable[[str, Any], None]


def is_visitable(value: Any) -> bool:
    return isinstance(value, (Mapping, list, tuple))


def convert_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class QueryStringBuilder:
    """Walks params depth-first and collects (key, value) pairs."""

    def __init__(self, options: ParamsSerializerOptions):
        self._options = options
        self._pairs: list[tuple[str, str]] = []
        self._helpers = VisitorHelpers(
            is_visitable=is_visitable,
            convert_value=convert_value,
            default_visitor=self.default_visitor,
            append=self.append,
        )

    def append(self, key: str, value: Any) -> None:
        self._pairs.append((key, convert_value(value)))

    def child_key(self, parent: str, key: Any, in_sequence: bool) -> str:
        if in_sequence:
            if self._options.indexes is None:
                return parent
            if self._options.indexes:
                return f"{parent}[{key}]"
            return f"{parent}[]"
        if self._options.dots:
            return f"{parent}.{key}"
        return f"{parent}[{key}]"

    def default_visitor(self, value: Any, key: str, path: list[str], helpers: VisitorHelpers) -> bool:
        if value is not None and not path and is_visitable(value):
            if key.endswith("{}"):
                self.append(key[:-2], orjson.dumps(value, default=convert_value).decode())
                return False
            forced = key.endswith("[]")
            if forced or (isinstance(value, (list, tuple)) and not any(is_visitable(v) for v in value)):
                base = key[:-2] if forced else key
                items = value.values() if isinstance(value, Mapping) else value
                for index, item in enumerate(items):
                    self.append(self.child_key(base, index, in_sequence=True), item)
                return False

        if is_visitable(value):
            return True

        self.append(key, value)
        return False

    def walk(self, value: Any, key: str, path: list[str]) -> None:
        visitor = self._options.visitor or self.default_visitor
        if visitor(value, key, path, self._helpers) is True and is_visitable(value):
            in_sequence = not isinstance(value, Mapping)
            items = value.items() if isinstance(value, Mapping) else enumerate(value)
            for child, item in items:
                self.walk(item, self.child_key(key, child, in_sequence), path + [str(child)])

    def build(self, params: Mapping[str, Any]) -> str:
        for key, value in params.items():
            key = str(key)
            if self._options.meta_tokens and isinstance(value, Mapping) and not key.endswith("{}"):
                key += "{}"
            self.walk(value, key, [])

        if self._options.encode:
            return "&".join(
                f"{quote(k, safe=_URI_COMPONENT_SAFE)}={quote(v, safe=_URI_COMPONENT_SAFE)}"
                for k, v in self._pairs
            )
        return "&".join(f"{k}={v}" for k, v in self._pairs)


def serialize_params(params: Any, options: ParamsSerializerOptions | None = None) -> str:
    """Render params with the built-in encoder."""
    if isinstance(params, httpx.QueryParams):
        return str(params)
    if not isinstance(params, Mapping):
        params = dict(params)
    return QueryStringBuilder(options or ParamsSerializerOptions()).build(params)


def build_url(url: str | None, params: Any, serializer: Any = None) -> str | None:
    """
    Append serialized params to url.

    Returns url unchanged when either url or params is empty.
    """
    if not url or not params:
        return url

    if callable(serializer) and not callable(getattr(serializer, "serialize", None)):
        query = serializer(params)
    elif callable(getattr(serializer, "serialize", None)):
        query = serializer.serialize(params, serializer)
    elif isinstance(serializer, ParamsSerializerOptions) or serializer is None:
        query = serialize_params(params, serializer)
    else:
        raise TypeError(f"Unsupported params serializer: {type(serializer).__name__}")

    if not query:
        return url

    url = url.split("#", 1)[0]
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"
