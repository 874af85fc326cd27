"""Tests for the envelope codec."""

from __future__ import annotations

import datetime
import decimal
import enum
import io
import logging
import os
import pickle
import threading
from dataclasses import dataclass

import pytest

from grpc_stub_generator.codec import CodecError, de, is_message, message, ser

calls: list[str] = []


def record(value: str) -> None:
    calls.append(value)


@message
@dataclass(frozen=True)
class Point:
    x: int
    y: int


@message
class Color(enum.Enum):
    RED = "red"
    GREEN = "green"


@dataclass(frozen=True)
class Unregistered:
    x: int


class Recording:
    def __reduce__(self):
        return (record, ("decoded",))


class Shell:
    def __reduce__(self):
        return (os.system, ("true",))


def round_trip(value):
    buf = bytearray()
    ser(value, buf)
    return de(io.BytesIO(bytes(buf)))


@pytest.fixture(autouse=True)
def clear_calls():
    calls.clear()
    yield
    calls.clear()


class TestRoundTrip:
    """Test that decoding an encoded envelope gives back an equal value."""

    def test_zero_fields(self):
        assert round_trip(()) == ()

    def test_single_field(self):
        assert round_trip((Point(1, 2),)) == (Point(1, 2),)

    def test_multiple_fields(self):
        assert round_trip((7, True, "label", [1.5, None])) == (7, True, "label", [1.5, None])

    def test_unit_response(self):
        assert round_trip(None) is None

    def test_registered_enum(self):
        assert round_trip((Color.GREEN,)) == (Color.GREEN,)

    def test_safe_value_types(self):
        value = (
            decimal.Decimal("1.5"),
            datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc),
            {1, 2},
            frozenset({"a"}),
            complex(1, 2),
        )
        assert round_trip(value) == value

    def test_timings_are_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="grpc_stub_generator.codec"):
            round_trip((1,))
        messages = [entry.getMessage() for entry in caplog.records]
        assert any(text.startswith("serialize tuple time cost") for text in messages)
        assert any(text.startswith("deserialize tuple time cost") for text in messages)


class TestMessageTypes:
    """Test that decoding only resolves registered classes."""

    def test_registration(self):
        assert is_message(Point)
        assert not is_message(Unregistered)

    def test_unregistered_class_is_rejected(self):
        with pytest.raises(CodecError, match="not a registered message type"):
            round_trip((Unregistered(1),))

    def test_reduce_payload_is_not_called(self):
        data = pickle.dumps((Recording(),), protocol=pickle.HIGHEST_PROTOCOL)

        with pytest.raises(CodecError, match="not a registered message type"):
            de(io.BytesIO(data))
        assert calls == []

    def test_system_call_is_rejected(self):
        data = pickle.dumps(Shell(), protocol=pickle.HIGHEST_PROTOCOL)

        with pytest.raises(CodecError, match="is not a registered message type"):
            de(io.BytesIO(data))

    def test_old_protocol_globals_are_rejected(self):
        data = pickle.dumps(Recording(), protocol=0)

        with pytest.raises(CodecError):
            de(io.BytesIO(data))
        assert calls == []


class TestErrors:
    """Test that codec failures raise `CodecError`."""

    def test_buffer_must_be_empty(self):
        with pytest.raises(CodecError, match="must be empty"):
            ser((1,), bytearray(b"x"))

    def test_unpicklable_value(self):
        buf = bytearray()
        with pytest.raises(CodecError, match="serialize message failed"):
            ser((threading.Lock(),), buf)
        assert buf == bytearray()

    def test_malformed_input(self):
        with pytest.raises(CodecError, match="deserializing message from buffer failed"):
            de(io.BytesIO(b"\x00not a pickle"))

    def test_empty_input(self):
        with pytest.raises(CodecError):
            de(io.BytesIO(b""))
