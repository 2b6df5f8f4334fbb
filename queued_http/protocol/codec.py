"""
Binary Codec for Worker -> Caller Payloads

Outcomes and progress events are pickled so that bytes, datetimes and tuples
survive the trip unchanged. Decoding goes through a restricted unpickler: a
payload naming any class outside ALLOWED_GLOBALS is rejected instead of
imported, so a hostile producer on the broker cannot execute code in the
caller.
"""

import io
import pickle
from typing import Any

from queued_http.core.exceptions import DeserializationError

ALLOWED_GLOBALS: frozenset[tuple[str, str]] = frozenset(
    {
        ("builtins", "bytearray"),
        ("builtins", "complex"),
        ("builtins", "frozenset"),
        ("builtins", "set"),
        ("builtins", "slice"),
        ("builtins", "range"),
        ("collections", "OrderedDict"),
        ("datetime", "date"),
        ("datetime", "datetime"),
        ("datetime", "time"),
        ("datetime", "timedelta"),
        ("datetime", "timezone"),
        ("decimal", "Decimal"),
        ("uuid", "UUID"),
    }
)


class RestrictedUnpickler(pickle.Unpickler):
    """Unpickler that only resolves globals from ALLOWED_GLOBALS."""

    def find_class(self, module: str, name: str) -> Any:
        if (module, name) in ALLOWED_GLOBALS:
            return super().find_class(module, name)
        raise pickle.UnpicklingError(f"Global '{module}.{name}' is forbidden")


def encode(value: Any) -> bytes:
    """Serialize a value for a progress or response queue."""
    return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)


def decode(raw: bytes) -> Any:
    """
    Deserialize a payload produced by encode().

    Raises:
        DeserializationError: If the payload is truncated, malformed or
            references a forbidden global
    """
    try:
        return RestrictedUnpickler(io.BytesIO(raw)).load()
    except (pickle.UnpicklingError, EOFError, ValueError, TypeError, AttributeError, IndexError, KeyError) as e:
        raise DeserializationError(f"Failed to deserialize payload: {e}") from e
