"""Tests for parsing declarations and the diagnostics of malformed ones."""

from __future__ import annotations

import textwrap

import pytest

from grpc_stub_generator.parser import ANY_TYPE, parse_module
from grpc_stub_generator.writer_dto import SchemaError, Visibility


def parse(source: str):
    return parse_module(textwrap.dedent(source), "sample.py")


def schema_error(source: str) -> SchemaError:
    with pytest.raises(SchemaError) as exc_info:
        parse(source)
    return exc_info.value


class TestServiceParsing:
    """Test the normalized model of well-formed declarations."""

    def test_module_without_markers_is_empty(self):
        parsed = parse(
            """
            def service(cls):
                return cls

            @service
            class Greeter:
                def say_hello(self, name: str) -> str: ...
            """
        )
        assert parsed.is_empty
        assert parsed.names is None

    def test_greeter(self):
        parsed = parse(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                \"\"\"Greets callers.\"\"\"

                def say_hello(self, request: HelloRequest) -> HelloReply: ...
            """
        )
        assert len(parsed.services) == 1
        service = parsed.services[0]
        assert service.name == "Greeter"
        assert service.docstring == "Greets callers."
        assert service.visibility is Visibility.PUBLIC
        assert service.lineno == 4
        assert service.end_lineno == 8

        (method,) = service.methods
        assert method.name == "say_hello"
        assert method.req_type == "tuple[HelloRequest]"
        assert method.resp_type == "HelloReply"
        assert method.method_declaration_ident(service) == "GREETER_METHOD_SAY_HELLO"
        assert method.grpc_method_ident == "say_hello_grpc"
        assert method.client_method_idents == ("say_hello", "say_hello_opt", "say_hello_async", "say_hello_async_opt")
        assert service.service_create_fn_ident == "create_greeter"
        assert service.client_ident == "GreeterClient"

    def test_declaration_order_and_envelopes(self):
        parsed = parse(
            """
            import grpc_stub_generator as g

            @g.service
            class Forwarder:
                def forward(self, id: int, only: bool): ...

                def reset(self) -> None:
                    pass
            """
        )
        forward, reset = parsed.services[0].methods
        assert forward.argument_names == ["id", "only"]
        assert forward.req_type == "tuple[int, bool]"
        assert forward.return_type is None
        assert forward.resp_type == "None"
        assert reset.req_type == "tuple[()]"
        assert reset.return_type is None

    def test_missing_annotation_is_any(self):
        parsed = parse(
            """
            from grpc_stub_generator import service

            @service
            class Echo:
                def echo(self, value, times=2): ...
            """
        )
        (method,) = parsed.services[0].methods
        assert method.req_type == f"tuple[{ANY_TYPE}, {ANY_TYPE}]"
        assert method.signature_parameters == ["self", f"value: {ANY_TYPE}", f"times: {ANY_TYPE} = 2"]

    def test_positional_only_parameters(self):
        parsed = parse(
            """
            from grpc_stub_generator import service

            @service
            class Clock:
                def tick(self, seq: int, /, label: str = "t") -> None: ...
            """
        )
        (method,) = parsed.services[0].methods
        assert method.signature_parameters == ["self", "seq: int", "/", "label: str = 't'"]

    def test_private_service(self):
        parsed = parse(
            """
            from grpc_stub_generator import service as rpc

            @rpc
            class _Internal:
                def echo(self, value: int) -> int: ...
            """
        )
        service = parsed.services[0]
        assert service.visibility is Visibility.PRIVATE
        assert service.methods[0].method_declaration_ident(service) == "_INTERNAL_METHOD_ECHO"
        assert service.service_create_fn_ident == "_create_internal"
        assert service.client_ident == "_InternalClient"

    def test_shared_method_names_across_services(self):
        parsed = parse(
            """
            from grpc_stub_generator import service

            @service
            class Alpha:
                def status(self) -> str: ...

            @service
            class Beta:
                def status(self) -> str: ...
            """
        )
        alpha, beta = parsed.services
        assert alpha.methods[0].method_declaration_ident(alpha) == "ALPHA_METHOD_STATUS"
        assert beta.methods[0].method_declaration_ident(beta) == "BETA_METHOD_STATUS"

    def test_imports_go_after_docstring_and_future_imports(self):
        parsed = parse(
            """\
            \"\"\"Docs.\"\"\"
            from __future__ import annotations
            from grpc_stub_generator import service
            """
        )
        assert parsed.import_lineno == 2


class TestServerParsing:
    """Test which methods of a server implementation get a transport-facing companion."""

    def test_server_methods(self):
        parsed = parse(
            """
            from grpc_stub_generator import server

            @server
            class GreeterServer(Greeter):
                def __init__(self):
                    self.calls = []

                def say_hello(self, request: HelloRequest) -> HelloReply:
                    return HelloReply(request.name)

                def ping(self) -> None:
                    pass

                def ping_grpc(self, ctx, req, sink):
                    pass

                def _helper(self):
                    pass

                @staticmethod
                def build():
                    pass
            """
        )
        (server,) = parsed.servers
        assert [method.name for method in server.methods] == ["say_hello"]
        assert server.marker_lineno == 4
        assert server.body_indent == "    "

    def test_methods_of_implemented_service(self):
        parsed = parse(
            """
            from grpc_stub_generator import server, service

            @server
            class ForwarderServer(Forwarder):
                def forward(self, id: int, only: bool):
                    pass

                def configure(self, **options):
                    pass

                def describe(self) -> str:
                    return "forwarder"

            @service
            class Forwarder:
                def forward(self, id: int, only: bool): ...
            """
        )
        (server,) = parsed.servers
        assert [method.name for method in server.methods] == ["forward"]

    def test_service_from_another_module(self):
        parsed = parse(
            """
            from grpc_stub_generator import server
            from services import Forwarder

            @server
            class ForwarderServer(Forwarder):
                def forward(self, id: int, only: bool):
                    pass

                def describe(self) -> str:
                    return "forwarder"
            """
        )
        (server,) = parsed.servers
        assert [method.name for method in server.methods] == ["forward", "describe"]

    def test_one_line_server_body(self):
        error = schema_error(
            """
            from grpc_stub_generator import server

            @server
            class GreeterServer: pass
            """
        )
        assert "must start on its own line" in error.message


class TestDiagnostics:
    """Test that malformed declarations are rejected at the offending construct."""

    def test_error_format(self):
        error = SchemaError("boom", "sample.py", 3, 4)
        assert str(error) == "sample.py:3:5: boom"

    def test_invalid_syntax(self):
        error = schema_error("def broken(:\n")
        assert error.message.startswith("invalid syntax")
        assert error.lineno == 1

    def test_missing_receiver(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(request: str) -> str: ...
            """
        )
        assert "missing the `self` receiver" in error.message
        assert error.lineno == 6
        assert str(error).startswith("sample.py:6:")

    def test_receiver_not_first(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(request: str, self) -> str: ...
            """
        )
        assert "`self` as its first parameter" in error.message

    @pytest.mark.parametrize("decorator", ["staticmethod", "classmethod"])
    def test_non_instance_methods(self, decorator):
        error = schema_error(
            f"""
            from grpc_stub_generator import service

            @service
            class Greeter:
                @{decorator}
                def say_hello(cls, request: str) -> str: ...
            """
        )
        assert decorator in error.message
        assert error.lineno == 6

    def test_property(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                @property
                def name(self) -> str: ...
            """
        )
        assert "must not be a property" in error.message

    @pytest.mark.parametrize(
        ("parameters", "expected"),
        [
            ("*names: str", "`*names`"),
            ("**options: str", "`**options`"),
            ("*, name: str", "keyword-only parameter `name`"),
        ],
    )
    def test_parameters_that_bind_no_single_value(self, parameters, expected):
        error = schema_error(
            f"""
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(self, {parameters}) -> str: ...
            """
        )
        assert expected in error.message

    @pytest.mark.parametrize("name", ["ctx", "req", "sink", "resp"])
    def test_reserved_parameter_names(self, name):
        error = schema_error(
            f"""
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(self, {name}: str) -> str: ...
            """
        )
        assert f"`{name}`" in error.message
        assert "reserved" in error.message

    def test_method_body(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(self, name: str) -> str:
                    return name
            """
        )
        assert "must not have a body" in error.message

    def test_async_method(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                async def say_hello(self, name: str) -> str: ...
            """
        )
        assert "must not be `async`" in error.message

    def test_non_method_member(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                greeting = "hello"
            """
        )
        assert "may only contain method signatures" in error.message

    def test_nested_declaration(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            def factory():
                @service
                class Greeter:
                    def say_hello(self, name: str) -> str: ...
            """
        )
        assert "module level" in error.message
        assert error.lineno == 6

    def test_marker_with_arguments(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service(name="greeter")
            class Greeter:
                def say_hello(self, name: str) -> str: ...
            """
        )
        assert "takes no arguments" in error.message

    def test_two_markers(self):
        error = schema_error(
            """
            from grpc_stub_generator import server, service

            @service
            @server
            class Greeter:
                def say_hello(self, name: str) -> str: ...
            """
        )
        assert "more than one" in error.message


class TestNameCollisions:
    """Test that generated identifiers never collide silently."""

    def test_constant_clashes_with_module_name(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            GREETER_METHOD_SAY_HELLO = 1

            @service
            class Greeter:
                def say_hello(self, name: str) -> str: ...
            """
        )
        assert "`GREETER_METHOD_SAY_HELLO`" in error.message
        assert "(line 4)" in error.message
        assert error.lineno == 8

    def test_client_clashes_with_module_class(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            class GreeterClient:
                pass

            @service
            class Greeter:
                def say_hello(self, name: str) -> str: ...
            """
        )
        assert "`GreeterClient`" in error.message

    def test_constants_clash_after_case_conversion(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def say_hello(self, name: str) -> str: ...

                def sayHello(self, name: str) -> str: ...
            """
        )
        assert "`GREETER_METHOD_SAY_HELLO`" in error.message
        assert "module namespace" in error.message

    def test_method_clashes_with_transport_method(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def ping(self) -> None: ...

                def ping_grpc(self) -> None: ...
            """
        )
        assert "`ping_grpc`" in error.message
        assert "interface namespace" in error.message

    def test_method_clashes_with_client_variant(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def ping(self) -> None: ...

                def ping_opt(self) -> None: ...
            """
        )
        assert "`ping_opt`" in error.message
        assert "client namespace" in error.message

    def test_method_clashes_with_client_attribute(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def client(self) -> None: ...
            """
        )
        assert "`client`" in error.message

    def test_generated_import_alias(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            _copy = None

            @service
            class Greeter:
                def ping(self) -> None: ...
            """
        )
        assert "`_copy`" in error.message
        assert "generated import" in error.message

    def test_two_services_with_one_name(self):
        error = schema_error(
            """
            from grpc_stub_generator import service

            @service
            class Greeter:
                def ping(self) -> None: ...

            @service
            class Greeter:
                def pong(self) -> None: ...
            """
        )
        assert "`Greeter`" in error.message
