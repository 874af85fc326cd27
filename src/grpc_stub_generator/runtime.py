"""Transport adapter between generated code and grpcio.

Generated modules only talk to the transport through this module:

* `Method` and `Marshaller` describe one RPC method (call type, wire name, codecs),
* `ServiceBuilder` registers handlers and builds a `Service`, the dispatch table that a
  `grpc.Server` routes requests through,
* `Client` performs unary and server-streaming calls on a `grpc.Channel`,
* `RpcContext` and `UnarySink` form the calling convention of transport-facing methods:
  `method_grpc(ctx, req, sink)` replies by spawning `sink.success(value)` on the context.

Every call completes its sink exactly once. Replying twice raises `SinkError`, and a handler
that returns without replying drops the sink, which ends the call with `UNKNOWN`.
"""

from __future__ import annotations

import enum
import functools
import io
import logging
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, BinaryIO, Generic, TypeVar

import grpc

logger = logging.getLogger(__name__)

T = TypeVar("T")
ReqT = TypeVar("ReqT")
RespT = TypeVar("RespT")

SendFailureHook = Callable[["Method[Any, Any]", BaseException], None]
UnaryHandler = Callable[["RpcContext", Any, "UnarySink[Any]"], None]


class SinkError(Exception):
    """Raised when a sink is asked to reply more than once."""

    pass


class SendError(Exception):
    """Raised when a reply cannot be delivered to the transport."""

    pass


class NoReplyError(Exception):
    """Raised when a call finished without producing a reply message."""

    pass


class MethodType(enum.Enum):
    """Call types of RPC methods."""

    UNARY = "unary"
    SERVER_STREAMING = "server_streaming"


@dataclass(frozen=True)
class Marshaller(Generic[T]):
    """A pair of codec entry points for one message type.

    Attributes:
        ser: Serializes a message into an empty buffer.
        de: Deserializes a message from a binary reader.
    """

    ser: Callable[[T, bytearray], None]
    de: Callable[[BinaryIO], T]

    def serialize(self, msg: T) -> bytes:
        buf = bytearray()
        self.ser(msg, buf)
        return bytes(buf)

    def deserialize(self, data: bytes) -> T:
        return self.de(io.BytesIO(data))

    def deserialize_boxed(self, data: bytes) -> _Boxed[T]:
        """Deserialize into a box, grpc reads a deserializer result of None as a decoding failure."""
        return _Boxed(self.deserialize(data))


@dataclass(frozen=True)
class _Boxed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Method(Generic[ReqT, RespT]):
    """Descriptor of one RPC method.

    Attributes:
        ty: The call type.
        name: The wire name of the method.
        req_mar: Codec of the request envelope.
        resp_mar: Codec of the response envelope.
    """

    ty: MethodType
    name: str
    req_mar: Marshaller[ReqT]
    resp_mar: Marshaller[RespT]

    @property
    def path(self) -> str:
        """The path the method is called under."""
        return f"/{self.name}"


@dataclass(frozen=True)
class RpcStatus:
    """A non-OK status that ends a call."""

    code: grpc.StatusCode
    details: str = ""


@dataclass(frozen=True)
class CallOption:
    """Per-call options of client calls."""

    timeout: float | None = None
    metadata: Sequence[tuple[str, str | bytes]] | None = None
    credentials: grpc.CallCredentials | None = None
    wait_for_ready: bool | None = None
    compression: grpc.Compression | None = None

    def kwargs(self) -> dict[str, Any]:
        """The options as keyword arguments of a grpc multi-callable."""
        return {
            "timeout": self.timeout,
            "metadata": self.metadata,
            "credentials": self.credentials,
            "wait_for_ready": self.wait_for_ready,
            "compression": self.compression,
        }


def _log_send_failure(method: Method[Any, Any], error: BaseException) -> None:
    logger.error("failed to reply %s: %s", method.name, error)


_send_failure_hook: SendFailureHook = _log_send_failure


def set_send_failure_hook(hook: SendFailureHook | None) -> None:
    """Replace the hook that is told about replies that could not be delivered.

    Args:
        hook: Called with the method and the error. `None` restores the default, which logs the error.
    """
    global _send_failure_hook
    _send_failure_hook = hook if hook is not None else _log_send_failure


def report_send_failure(method: Method[Any, Any], error: BaseException) -> None:
    """Report a reply that could not be delivered. The error is not propagated further."""
    _send_failure_hook(method, error)


_default_executor_lock = threading.Lock()
_default_executor: Executor | None = None


def default_executor() -> Executor:
    """The executor that runs spawned replies of services built without an explicit one."""
    global _default_executor
    with _default_executor_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolExecutor(thread_name_prefix="grpc-stub-reply")
        return _default_executor


@dataclass(frozen=True)
class _Outcome:
    value: Any = None
    status: RpcStatus | None = None


class Send:
    """A unit of work that completes a sink when it runs."""

    def __init__(self, sink: UnarySink[Any], outcome: _Outcome):
        self._sink = sink
        self._outcome = outcome

    def __call__(self) -> None:
        self._sink._deliver(self._outcome)


class UnarySink(Generic[T]):
    """One-shot channel that delivers the reply of a unary call."""

    def __init__(self, method: Method[Any, T], servicer_context: grpc.ServicerContext):
        self._method = method
        self._context = servicer_context
        self._lock = threading.Lock()
        self._claimed = False
        self._done: Future[_Outcome] = Future()

    @property
    def method(self) -> Method[Any, T]:
        return self._method

    @property
    def completed(self) -> bool:
        return self._done.done()

    def success(self, value: T) -> Send:
        """Claim the sink for a successful reply. The returned `Send` delivers it."""
        self._claim()
        return Send(self, _Outcome(value=value))

    def fail(self, status: RpcStatus) -> Send:
        """Claim the sink for a failed reply. The returned `Send` delivers it."""
        if status.code is grpc.StatusCode.OK:
            raise ValueError("a failed reply needs a non-OK status code")
        self._claim()
        return Send(self, _Outcome(status=status))

    def drop(self) -> bool:
        """End the call with `UNKNOWN` unless a reply was claimed.

        Returns:
            bool: Whether the sink was dropped.
        """
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
        self._settle(_Outcome(status=RpcStatus(grpc.StatusCode.UNKNOWN, f"{self._method.name} did not reply")))
        return True

    def cancel(self) -> bool:
        """End the call with `CANCELLED` unless it already completed.

        Registered as a termination callback of the call, so a reply that was claimed but never
        sent cannot keep the handler waiting after the call ended.

        Returns:
            bool: Whether the sink was cancelled.
        """
        return self._settle(_Outcome(status=RpcStatus(grpc.StatusCode.CANCELLED, "call ended before a reply was sent")))

    def wait(self, timeout: float | None = None) -> _Outcome:
        return self._done.result(timeout)

    def _claim(self) -> None:
        with self._lock:
            if self._claimed:
                raise SinkError(f"a reply to {self._method.name} was already sent")
            self._claimed = True

    def _settle(self, outcome: _Outcome) -> bool:
        with self._lock:
            if self._done.done():
                return False
            self._done.set_result(outcome)
            return True

    def _deliver(self, outcome: _Outcome) -> None:
        if not self._context.is_active():
            self._settle(_Outcome(status=RpcStatus(grpc.StatusCode.CANCELLED, "call is no longer active")))
            raise SendError(f"call of {self._method.name} is no longer active")
        if not self._settle(outcome):
            raise SendError(f"call of {self._method.name} was already completed")


class RpcContext:
    """The server side context of one call."""

    def __init__(self, method: Method[Any, Any], servicer_context: grpc.ServicerContext, executor: Executor):
        self._method = method
        self._context = servicer_context
        self._executor = executor

    @property
    def method(self) -> Method[Any, Any]:
        return self._method

    @property
    def servicer_context(self) -> grpc.ServicerContext:
        return self._context

    def peer(self) -> str:
        return self._context.peer()

    def invocation_metadata(self) -> Any:
        return self._context.invocation_metadata()

    def time_remaining(self) -> float | None:
        return self._context.time_remaining()

    def is_active(self) -> bool:
        return self._context.is_active()

    def spawn(self, task: Callable[[], object], on_error: Callable[[BaseException], None] | None = None) -> None:
        """Run a unit of work in the background, without waiting for it.

        Args:
            task: The work, usually a `Send` from a sink.
            on_error: Told about an error raised by the task. Defaults to the send-failure hook.
        """
        future = self._executor.submit(task)
        future.add_done_callback(functools.partial(self._report, on_error))

    def _report(self, on_error: Callable[[BaseException], None] | None, future: Future[object]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        if on_error is not None:
            on_error(error)
        else:
            report_send_failure(self._method, error)


class Service(grpc.GenericRpcHandler):
    """Dispatch table of one service, registrable with a `grpc.Server`."""

    def __init__(self, handlers: Mapping[str, grpc.RpcMethodHandler]):
        self._handlers = dict(handlers)

    def service(self, handler_call_details: grpc.HandlerCallDetails) -> grpc.RpcMethodHandler | None:
        return self._handlers.get(handler_call_details.method)

    @property
    def methods(self) -> list[str]:
        """The paths of all registered methods."""
        return list(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


class ServiceBuilder:
    """Collects handlers and builds a `Service`."""

    def __init__(self, executor: Executor | None = None):
        """Initialize an empty builder.

        Args:
            executor (Executor | None): Runs the replies that handlers spawn. Defaults to a shared thread pool.
        """
        self._executor = executor
        self._handlers: dict[str, grpc.RpcMethodHandler] = {}

    def add_unary_handler(self, method: Method[ReqT, RespT], handler: UnaryHandler) -> ServiceBuilder:
        """Register a handler for a unary method.

        Args:
            method: The method descriptor.
            handler: Called as `handler(ctx, req, sink)` once per request.

        Returns:
            ServiceBuilder: This builder.
        """
        if method.ty is not MethodType.UNARY:
            raise ValueError(f"{method.name} is not a unary method")
        if method.path in self._handlers:
            raise ValueError(f"a handler for {method.name} is already registered")

        self._handlers[method.path] = grpc.unary_unary_rpc_method_handler(
            self._unary_behavior(method, handler),
            request_deserializer=method.req_mar.deserialize_boxed,
            response_serializer=method.resp_mar.serialize,
        )
        logger.debug("Registered unary handler for %s.", method.path)
        return self

    def build(self) -> Service:
        return Service(self._handlers)

    def _unary_behavior(
        self, method: Method[ReqT, RespT], handler: UnaryHandler
    ) -> Callable[[_Boxed[ReqT], grpc.ServicerContext], RespT]:
        def behavior(request: _Boxed[ReqT], servicer_context: grpc.ServicerContext) -> RespT:
            ctx = RpcContext(method, servicer_context, self._executor or default_executor())
            sink: UnarySink[RespT] = UnarySink(method, servicer_context)
            if not servicer_context.add_callback(sink.cancel):
                sink.cancel()
            try:
                handler(ctx, request.value, sink)
            except Exception:
                sink._settle(_Outcome(status=RpcStatus(grpc.StatusCode.UNKNOWN, f"{method.name} raised")))
                raise
            sink.drop()

            outcome = sink.wait()
            if outcome.status is not None:
                servicer_context.abort(outcome.status.code, outcome.status.details)
            return outcome.value

        return behavior


def add_service(server: grpc.Server, *services: Service) -> None:
    """Register services with a server."""
    server.add_generic_rpc_handlers(services)


class ClientSStreamReceiver(Generic[T]):
    """The receiving end of a server-streaming call.

    For methods that reply once, `result()` returns that reply.
    """

    def __init__(self, call: Any):
        self._call = call

    def __iter__(self) -> Iterator[T]:
        return self

    def __next__(self) -> T:
        return next(self._call).value

    def result(self) -> T:
        """Wait for the first message.

        Raises:
            NoReplyError: If the call ended without a message.
            grpc.RpcError: If the call failed.
        """
        for message in self._call:
            return message.value
        raise NoReplyError("the call ended without a reply")

    def cancel(self) -> bool:
        return self._call.cancel()

    def code(self) -> grpc.StatusCode:
        return self._call.code()

    def details(self) -> str:
        return self._call.details()


class Client:
    """Calls methods over a channel."""

    def __init__(self, channel: grpc.Channel):
        self.channel = channel
        self._unary_callables: dict[str, grpc.UnaryUnaryMultiCallable] = {}
        self._stream_callables: dict[str, grpc.UnaryStreamMultiCallable] = {}

    def unary_call(self, method: Method[ReqT, RespT], req: ReqT, opt: CallOption) -> RespT:
        """Call a method and block until the reply arrives.

        Raises:
            grpc.RpcError: If the call fails.
        """
        callable_ = self._unary_callables.get(method.path)
        if callable_ is None:
            callable_ = self.channel.unary_unary(
                method.path,
                request_serializer=method.req_mar.serialize,
                response_deserializer=method.resp_mar.deserialize_boxed,
            )
            self._unary_callables[method.path] = callable_
        return callable_(req, **opt.kwargs()).value

    def server_streaming(self, method: Method[ReqT, RespT], req: ReqT, opt: CallOption) -> ClientSStreamReceiver[RespT]:
        """Call a method without waiting, the reply is read from the returned receiver."""
        callable_ = self._stream_callables.get(method.path)
        if callable_ is None:
            callable_ = self.channel.unary_stream(
                method.path,
                request_serializer=method.req_mar.serialize,
                response_deserializer=method.resp_mar.deserialize_boxed,
            )
            self._stream_callables[method.path] = callable_
        return ClientSStreamReceiver(callable_(req, **opt.kwargs()))
