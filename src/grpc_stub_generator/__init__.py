"""Generate grpc client and server stubs from annotated Python declarations.

The `service` and `server` markers only tag classes for the generator and leave them unchanged
at runtime, so a module keeps importing before it has been expanded. `message` registers the
classes that travel in requests and replies, the codec refuses to decode any other class.
"""

from __future__ import annotations

from typing import TypeVar

from grpc_stub_generator.codec import message

__version__ = "0.1.0"

_C = TypeVar("_C", bound=type)


def service(cls: _C) -> _C:
    """Mark a class as a service declaration."""
    return cls


def server(cls: _C) -> _C:
    """Mark a class as the server implementation of a service."""
    return cls


__all__ = ["message", "server", "service"]
