"""
Result Sanitizer

Strips values that cannot (or must not) be pickled onto a response queue
before the worker publishes an outcome.
"""

import inspect
import weakref
from collections.abc import Mapping
from types import GeneratorType
from typing import Any

_REMOVED = object()

_UNTRANSMISSIBLE = (
    set,
    frozenset,
    GeneratorType,
    weakref.WeakKeyDictionary,
    weakref.WeakValueDictionary,
    weakref.WeakSet,
    weakref.ref,
)


def _is_untransmissible(value: Any) -> bool:
    if isinstance(value, type):
        return True
    if callable(value) or isinstance(value, _UNTRANSMISSIBLE):
        return True
    if inspect.isawaitable(value) or inspect.isasyncgen(value):
        return True
    if isinstance(value, Mapping) and not isinstance(value, dict):
        return True
    return False


def clean_non_serializable(value: Any, _seen: set[int] | None = None) -> Any:
    """
    Recursively remove non-transmissible values.

    - Callables, classes, coroutines/futures/awaitables, generators, weak
      collections, sets and non-dict mappings are removed.
    - Dict keys that are not str or int are removed.
    - Dicts and lists are cleaned in place; tuples are rebuilt.
    - Objects with a __dict__ have their attributes cleaned; attributes that
      refuse assignment are left as they are.
    - A container reached a second time (a cycle or shared reference) is
      removed at the second position.

    Returns:
        The cleaned value, or None if value itself is not transmissible
    """
    cleaned = _clean(value, set() if _seen is None else _seen)
    return None if cleaned is _REMOVED else cleaned


def _clean(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (str, bytes, bytearray, int, float, bool, complex)):
        return value
    if _is_untransmissible(value):
        return _REMOVED
    if not isinstance(value, (dict, list, tuple)) and not isinstance(getattr(value, "__dict__", None), dict):
        return value

    marker = id(value)
    if marker in seen:
        return _REMOVED
    seen.add(marker)

    if isinstance(value, dict):
        for key in list(value.keys()):
            if not isinstance(key, (str, int)):
                del value[key]
                continue
            item = _clean(value[key], seen)
            if item is _REMOVED:
                del value[key]
            else:
                value[key] = item
        return value

    if isinstance(value, list):
        kept = [item for item in (_clean(item, seen) for item in value) if item is not _REMOVED]
        value[:] = kept
        return value

    if isinstance(value, tuple):
        items = [item for item in (_clean(item, seen) for item in value) if item is not _REMOVED]
        if hasattr(value, "_fields"):
            try:
                return type(value)(*items)
            except TypeError:
                return tuple(items)
        return tuple(items)

    attributes = getattr(value, "__dict__", None)
    if isinstance(attributes, dict):
        for name, attribute in list(attributes.items()):
            item = _clean(attribute, seen)
            try:
                if item is _REMOVED:
                    delattr(value, name)
                elif item is not attribute:
                    setattr(value, name, item)
            except (AttributeError, TypeError):
                continue

    return value
