"""Binary codec for request and response envelopes.

The generated method descriptors reference exactly two entry points of this module, `ser` and
`de`. Both fail loudly: a value that cannot be encoded or bytes that cannot be decoded raise
`CodecError`.

Envelopes are pickled, but decoding only resolves the classes in `SAFE_GLOBALS` and the message
types registered with `message`. Any other global named by the input is rejected, so a peer
cannot make the decoder import or call arbitrary code.
"""

from __future__ import annotations

import io
import logging
import pickle
import threading
import time
from typing import Any, BinaryIO, TypeVar

logger = logging.getLogger(__name__)

PROTOCOL = pickle.HIGHEST_PROTOCOL

_T = TypeVar("_T", bound=type)

# Value types beyond the ones pickle encodes natively (None, bool, int, float, str, bytes,
# bytearray, list, tuple, dict, set, frozenset).
SAFE_GLOBALS: frozenset[tuple[str, str]] = frozenset(
    {
        ("builtins", "complex"),
        ("builtins", "range"),
        ("builtins", "slice"),
        ("collections", "OrderedDict"),
        ("collections", "deque"),
        ("datetime", "date"),
        ("datetime", "datetime"),
        ("datetime", "time"),
        ("datetime", "timedelta"),
        ("datetime", "timezone"),
        ("decimal", "Decimal"),
        ("uuid", "UUID"),
    }
)

_registry_lock = threading.Lock()
_message_types: dict[tuple[str, str], type] = {}


class CodecError(Exception):
    """Raised when a message cannot be serialized or deserialized."""

    pass


def message(cls: _T) -> _T:
    """Register a class as a message type that `de` may decode.

    Usable as a class decorator. Registering the same class twice is a no-op, registering a
    different class under the same module and qualified name replaces the earlier one.
    """
    with _registry_lock:
        _message_types[(cls.__module__, cls.__qualname__)] = cls
    logger.debug("Registered message type %s.%s", cls.__module__, cls.__qualname__)
    return cls


def is_message(cls: type) -> bool:
    """Whether a class was registered with `message`."""
    return _message_types.get((cls.__module__, cls.__qualname__)) is cls


class _MessageUnpickler(pickle.Unpickler):
    def find_class(self, module: str, name: str) -> Any:
        registered = _message_types.get((module, name))
        if registered is not None:
            return registered
        if (module, name) in SAFE_GLOBALS:
            return super().find_class(module, name)
        raise pickle.UnpicklingError(f"`{module}.{name}` is not a registered message type")


def ser(msg: Any, buf: bytearray) -> None:
    """Serialize a message into an empty buffer.

    Args:
        msg: The message to serialize.
        buf: The destination buffer, which must be empty.

    Raises:
        CodecError: If the buffer is not empty or the message cannot be pickled.
    """
    start_time = time.perf_counter()
    if len(buf) != 0:
        raise CodecError(f"serialize buffer must be empty, it holds {len(buf)} byte(s)")

    try:
        serialized = pickle.dumps(msg, protocol=PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise CodecError(f"serialize message failed: {e}") from e

    buf[:] = serialized
    logger.debug(
        "serialize %s time cost %.6fs on thread %s",
        type(msg).__name__,
        time.perf_counter() - start_time,
        threading.current_thread().name,
    )


def de(reader: BinaryIO) -> Any:
    """Deserialize a message from a reader.

    Args:
        reader: A binary reader positioned at the start of the message.

    Returns:
        Any: The decoded message.

    Raises:
        CodecError: If the bytes do not hold a message, or name a class that is not a message type.
    """
    start_time = time.perf_counter()
    data = reader.read()

    try:
        result = _MessageUnpickler(io.BytesIO(data)).load()
    except Exception as e:
        raise CodecError(f"deserializing message from buffer failed: {e}") from e

    logger.debug(
        "deserialize %s time cost %.6fs on thread %s",
        type(result).__name__,
        time.perf_counter() - start_time,
        threading.current_thread().name,
    )
    return result
