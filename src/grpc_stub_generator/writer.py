"""Expand service declarations and server implementations into grpc stubs.

A service declaration is replaced by five derived artifacts:

* one method descriptor constant per method (`GREETER_METHOD_SAY_HELLO`),
* the rewritten interface, which adds one transport-facing method per business method,
* the service factory (`create_greeter`), which builds the dispatch table of an implementation,
* the client type (`GreeterClient`) with four calling variants per method.

A server implementation gets one transport-facing method injected per business method.
Everything else in the module is left as it is.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass
from typing import Literal

from grpc_stub_generator import helper
from grpc_stub_generator.parser import ANY_TYPE, ParsedModule, parse_module
from grpc_stub_generator.writer_dto import (
    CONTEXT_PARAMETER,
    REQUEST_PARAMETER,
    RESPONSE_VARIABLE,
    SINK_PARAMETER,
    MethodInfo,
    ServerInfo,
    ServiceInfo,
)

logger = logging.getLogger(__name__)

RUNTIME = "_grpc_runtime"
CODEC = "_grpc_codec"

ImportName = Literal["abc", "copy", "typing", "grpc", "codec", "runtime"]

IMPORT_LINES: dict[ImportName, str] = {
    "abc": "import abc as _abc",
    "copy": "import copy as _copy",
    "typing": "import typing as _typing",
    "grpc": "import grpc as _grpc",
    "codec": f"from grpc_stub_generator import codec as {CODEC}",
    "runtime": f"from grpc_stub_generator import runtime as {RUNTIME}",
}


@dataclass(frozen=True)
class _Edit:
    """Replace the source lines `[start:end]` (0-based, end exclusive) with new lines.

    Edits are applied from the bottom of the file up, `priority` orders edits at the same position.
    """

    start: int
    end: int
    lines: list[str]
    priority: int = 0


class Writer:
    """A class that expands one module, based on the declarations found in its source."""

    def __init__(self, source: str, filename: str = "<unknown>"):
        """Parse a module for expansion.

        Args:
            source (str): The module source text.
            filename (str): The path the source was read from, used in diagnostics and the banner.

        Raises:
            SchemaError: If a declaration in the module is malformed.
        """
        self._parsed: ParsedModule = parse_module(source, filename)
        self._source_lines = source.splitlines()
        self._imports: list[ImportName] = []
        self._edits: list[_Edit] = []
        self._generated = False

        self.banner = (
            f"# This module was generated by grpc-stub-generator from `{pathlib.Path(filename).name}`. "
            "Do not edit by hand."
        )

    @property
    def services(self) -> list[ServiceInfo]:
        return self._parsed.services

    @property
    def servers(self) -> list[ServerInfo]:
        return self._parsed.servers

    @property
    def has_expansions(self) -> bool:
        """Whether the module contains anything to expand."""
        return not self._parsed.is_empty

    def _add_import(self, name: ImportName) -> None:
        if name not in self._imports:
            self._imports.append(name)

    @property
    def imports(self) -> list[str]:
        """The import lines the generated code needs, in a deterministic order."""
        return [line for name, line in IMPORT_LINES.items() if name in self._imports]

    def _use_annotations(self, method: MethodInfo) -> None:
        if any(ANY_TYPE in parameter.annotation for parameter in method.parameters):
            self._add_import("typing")

    def gen_method_declarations(self, service: ServiceInfo) -> list[str]:
        """Generate one method descriptor constant per method of a service."""
        self._add_import("runtime")
        self._add_import("codec")

        marshaller = f"{RUNTIME}.Marshaller(ser={CODEC}.ser, de={CODEC}.de)"
        lines: list[str] = []
        for method in service.methods:
            self._use_annotations(method)
            ident = method.method_declaration_ident(service)
            lines.extend(
                [
                    f"{ident}: {RUNTIME}.Method[{method.req_type}, {method.resp_type}] = {RUNTIME}.Method(",
                    f"    ty={RUNTIME}.MethodType.UNARY,",
                    f'    name="{ident}",',
                    f"    req_mar={marshaller},",
                    f"    resp_mar={marshaller},",
                    ")",
                ]
            )
        return lines

    def _grpc_method_parameters(self, method: MethodInfo) -> list[str]:
        return [
            "self",
            f"{CONTEXT_PARAMETER}: {RUNTIME}.RpcContext",
            f"{REQUEST_PARAMETER}: {method.req_type}",
            f"{SINK_PARAMETER}: {RUNTIME}.UnarySink[{method.resp_type}]",
        ]

    def gen_interface(self, service: ServiceInfo) -> list[str]:
        """Generate the rewritten interface.

        It holds the business methods unchanged, followed by their transport-facing counterparts.
        Every method is abstract, implementations author the business methods and let the
        server expansion synthesize the rest.
        """
        self._add_import("abc")
        self._add_import("runtime")

        lines = [helper.new_decorator(decorator) for decorator in service.decorators]
        lines.append(helper.new_class_declaration(service.name, list(service.bases) or ["_abc.ABC"]))

        body: list[str] = []
        if service.docstring is not None:
            body.extend(helper.new_docstring(service.docstring))

        for method in service.methods:
            if body:
                body.append("")
            body.extend(helper.new_decorator(decorator) for decorator in method.decorators)
            body.append(helper.new_decorator("_abc.abstractmethod"))
            docstring = helper.new_docstring(method.docstring) if method.docstring is not None else None
            body.extend(helper.new_function(method.name, method.signature_parameters, method.return_type, docstring))

        for method in service.methods:
            body.append("")
            body.extend(helper.new_decorator(decorator) for decorator in method.decorators)
            body.append(helper.new_decorator("_abc.abstractmethod"))
            body.extend(helper.new_function(method.grpc_method_ident, self._grpc_method_parameters(method)))

        lines.extend(helper.indent(body or ["pass"]))
        return lines

    def gen_create_service(self, service: ServiceInfo) -> list[str]:
        """Generate the service factory.

        Every handler forwards to the transport-facing method of its own copy of the implementation.
        """
        self._add_import("typing")
        self._add_import("copy")
        self._add_import("runtime")

        type_var = service.type_var_ident
        body = [f"builder = {RUNTIME}.ServiceBuilder()"]
        for method in service.methods:
            body.extend(
                [
                    "instance = _copy.copy(s)",
                    f"builder = builder.add_unary_handler({method.method_declaration_ident(service)}, "
                    f"instance.{method.grpc_method_ident})",
                ]
            )
        body.append("return builder.build()")

        lines = [f'{type_var} = _typing.TypeVar("{type_var}", bound={service.name})', "", ""]
        lines.extend(
            helper.new_function(
                service.service_create_fn_ident,
                [f"s: {type_var}"],
                f"{RUNTIME}.Service",
                [*helper.new_docstring(f"Build the dispatch table of a `{service.name}` implementation."), *body],
            )
        )
        return lines

    def gen_client_methods(self, method: MethodInfo, service: ServiceInfo) -> list[str]:
        """Generate the four calling variants of one method."""
        ident, opt_ident, async_ident, async_opt_ident = method.client_method_idents
        declaration = method.method_declaration_ident(service)
        request = f"req: {method.req_type}"
        option = f"opt: {RUNTIME}.CallOption"
        receiver = f"{RUNTIME}.ClientSStreamReceiver[{method.resp_type}]"

        variants = [
            helper.new_function(
                ident,
                ["self", request],
                method.resp_type,
                [f"return self.{opt_ident}(req, {RUNTIME}.CallOption())"],
            ),
            helper.new_function(
                opt_ident,
                ["self", request, option],
                method.resp_type,
                [f"return self.client.unary_call({declaration}, req, opt)"],
            ),
            helper.new_function(
                async_ident,
                ["self", request],
                receiver,
                [f"return self.{async_opt_ident}(req, {RUNTIME}.CallOption())"],
            ),
            helper.new_function(
                async_opt_ident,
                ["self", request, option],
                receiver,
                [f"return self.client.server_streaming({declaration}, req, opt)"],
            ),
        ]

        lines: list[str] = []
        for variant in variants:
            lines.append("")
            lines.extend(variant)
        return lines

    def gen_client(self, service: ServiceInfo) -> list[str]:
        """Generate the client type of a service."""
        self._add_import("grpc")
        self._add_import("runtime")

        body = [
            *helper.new_docstring(f"Client of the `{service.name}` service."),
            "",
            *helper.new_function(
                "__init__",
                ["self", "channel: _grpc.Channel"],
                body=[f"self.client = {RUNTIME}.Client(channel)"],
            ),
        ]
        for method in service.methods:
            body.extend(self.gen_client_methods(method, service))

        return [helper.new_class_declaration(service.client_ident), *helper.indent(body)]

    def gen_service(self, service: ServiceInfo) -> list[str]:
        """Generate all artifacts of a service declaration, in dependency order."""
        fragments = [
            self.gen_method_declarations(service),
            self.gen_interface(service),
            self.gen_create_service(service),
            self.gen_client(service),
        ]

        lines: list[str] = []
        for fragment in fragments:
            if not fragment:
                continue
            if lines:
                lines.extend(["", ""])
            lines.extend(fragment)
        return lines

    def gen_server_method(self, method: MethodInfo) -> list[str]:
        """Generate the transport-facing method of one business method.

        The request envelope is unpacked positionally into the business parameters, the reply is
        spawned on the call context so a failed delivery is only reported.
        """
        self._use_annotations(method)

        body: list[str] = []
        if method.parameters:
            body.append(f"{helper.new_tuple_target(method.argument_names)} = {REQUEST_PARAMETER}")
        body.extend(
            [
                f"{RESPONSE_VARIABLE} = self.{method.name}({helper.join_parameters(method.argument_names)})",
                f"{CONTEXT_PARAMETER}.spawn({SINK_PARAMETER}.success({RESPONSE_VARIABLE}))",
            ]
        )
        return helper.new_function(method.grpc_method_ident, self._grpc_method_parameters(method), body=body)

    def gen_server_methods(self, server: ServerInfo) -> list[str]:
        """Generate the transport-facing methods of a server implementation."""
        self._add_import("runtime")

        lines: list[str] = []
        for method in server.methods:
            lines.append("")
            lines.extend(self.gen_server_method(method))
        return lines

    def generate_all(self) -> None:
        """Generate the expansions of all declarations in the module."""
        if self._generated:
            return

        for service in self.services:
            lines = self.gen_service(service)
            prefix = " " * service.col_offset
            self._edits.append(_Edit(service.lineno - 1, service.end_lineno, helper.indent(lines, prefix)))
            logger.debug("Expanded service %s with %d method(s).", service.name, len(service.methods))

        for server in self.servers:
            self._edits.append(_Edit(server.marker_lineno - 1, server.marker_end_lineno, []))
            lines = self.gen_server_methods(server)
            if lines:
                self._edits.append(
                    _Edit(server.end_lineno, server.end_lineno, helper.indent(lines, server.body_indent))
                )
            logger.debug("Expanded server %s with %d method(s).", server.name, len(server.methods))

        banner_lineno = 1 if self._source_lines and self._source_lines[0].startswith("#!") else 0

        if self._imports:
            import_lineno = max(self._parsed.import_lineno, banner_lineno)
            import_lines = [*self.imports, ""]
            if import_lineno > banner_lineno:
                import_lines.insert(0, "")
            self._edits.append(_Edit(import_lineno, import_lineno, import_lines, priority=1))

        self._edits.append(_Edit(banner_lineno, banner_lineno, [self.banner]))

        self._generated = True

    def dumps(self) -> str:
        """Generates the expanded module.

        Returns:
            str: The output string.
        """
        self.generate_all()

        out = list(self._source_lines)
        for edit in sorted(self._edits, key=lambda e: (e.start, e.end, e.priority), reverse=True):
            out[edit.start : edit.end] = edit.lines

        return "\n".join(out) + "\n"
