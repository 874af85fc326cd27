"""Parse service declarations and server implementations out of Python source.

A service declaration is a module-level class decorated with the `service` marker:

    from grpc_stub_generator import service

    @service
    class Greeter:
        def say_hello(self, request: HelloRequest) -> HelloReply: ...

A server implementation is a module-level class decorated with the `server` marker, whose
public methods carry the business logic of a service. When the class inherits from services
declared in the same module, only the methods of those services are RPC methods and any other
public method is left alone.

Parsing only checks the syntactic shape of the declarations. Every violation raises a
`SchemaError` anchored at the offending construct, no partial result is returned.
"""

from __future__ import annotations

import ast
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from grpc_stub_generator import helper
from grpc_stub_generator.writer_dto import (
    GRPC_METHOD_SUFFIX,
    RESERVED_PARAMETER_NAMES,
    MethodInfo,
    NameRegistry,
    ParameterInfo,
    SchemaError,
    ServerInfo,
    ServiceInfo,
    Visibility,
)

logger = logging.getLogger(__name__)

MARKER_MODULE = "grpc_stub_generator"
SERVICE_MARKER = "service"
SERVER_MARKER = "server"

ANY_TYPE = "_typing.Any"

# Names that the expansion binds at module level for its own use.
GENERATED_IMPORT_ALIASES = ("_abc", "_copy", "_typing", "_grpc", "_grpc_codec", "_grpc_runtime")

_NON_INSTANCE_DECORATORS = {"staticmethod", "classmethod"}


@dataclass
class ParsedModule:
    """The result of parsing one module.

    Attributes:
        filename: The file the source was read from, used in diagnostics.
        source: The module source text.
        services: The service declarations in order of appearance.
        servers: The server implementations in order of appearance.
        import_lineno: The line after which generated imports go (0 for the top of the file).
        names: The module-level identifiers, including everything the expansion generates.
    """

    filename: str
    source: str
    services: list[ServiceInfo] = field(default_factory=list)
    servers: list[ServerInfo] = field(default_factory=list)
    import_lineno: int = 0
    names: NameRegistry | None = None

    @property
    def is_empty(self) -> bool:
        """Whether the module contains nothing to expand."""
        return not self.services and not self.servers


class _MarkerResolver:
    """Resolves decorator expressions to the markers of this package.

    Only names bound by importing the markers (`from grpc_stub_generator import service`) or the
    package (`import grpc_stub_generator as g` and `@g.service`) are recognized, so unrelated
    decorators that happen to share a name are left alone.
    """

    def __init__(self, tree: ast.Module):
        self.marker_names: dict[str, str] = {}
        self.module_names: set[str] = set()

        for node in tree.body:
            if isinstance(node, ast.ImportFrom) and node.module == MARKER_MODULE and not node.level:
                for alias in node.names:
                    if alias.name in (SERVICE_MARKER, SERVER_MARKER):
                        self.marker_names[alias.asname or alias.name] = alias.name
            elif isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.name == MARKER_MODULE:
                        self.module_names.add(alias.asname or alias.name)

    def resolve(self, decorator: ast.expr) -> str | None:
        """Return the marker a decorator refers to, or None."""
        target = decorator.func if isinstance(decorator, ast.Call) else decorator

        marker: str | None = None
        if isinstance(target, ast.Name):
            marker = self.marker_names.get(target.id)
        elif (
            isinstance(target, ast.Attribute)
            and isinstance(target.value, ast.Name)
            and target.value.id in self.module_names
            and target.attr in (SERVICE_MARKER, SERVER_MARKER)
        ):
            marker = target.attr

        return marker

    def find(self, node: ast.ClassDef) -> tuple[str, ast.expr] | None:
        """Return the marker of a class and its decorator expression, if the class is decorated with one."""
        found: tuple[str, ast.expr] | None = None
        for decorator in node.decorator_list:
            marker = self.resolve(decorator)
            if marker is None:
                continue
            if found is not None:
                raise _error(f"class `{node.name}` carries more than one service/server marker", decorator)
            found = (marker, decorator)
        return found


class _ErrorAnchor(Exception):
    """Carries a diagnostic up to the parser, which adds the file name."""

    def __init__(self, message: str, lineno: int, col_offset: int):
        super().__init__(message)
        self.message = message
        self.lineno = lineno
        self.col_offset = col_offset


def _error(message: str, node: ast.AST) -> _ErrorAnchor:
    return _ErrorAnchor(message, getattr(node, "lineno", 0), getattr(node, "col_offset", 0))


def _decorator_name(decorator: ast.expr) -> str:
    target = decorator.func if isinstance(decorator, ast.Call) else decorator
    if isinstance(target, ast.Name):
        return target.id
    if isinstance(target, ast.Attribute):
        return target.attr
    return ""


def _is_docstring(node: ast.stmt) -> bool:
    return isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant) and isinstance(node.value.value, str)


def _is_stub_body(body: list[ast.stmt]) -> bool:
    """Whether a function body is only a docstring, `...` and/or `pass`."""
    for statement in body:
        if isinstance(statement, ast.Pass) or _is_docstring(statement):
            continue
        if isinstance(statement, ast.Expr) and isinstance(statement.value, ast.Constant):
            if statement.value.value is Ellipsis:
                continue
        return False
    return True


def _module_level_names(body: list[ast.stmt]) -> dict[str, ast.AST]:
    """Collect the names bound at module level, descending into `if`/`try` blocks."""
    names: dict[str, ast.AST] = {}

    def bind(target: ast.expr, node: ast.AST) -> None:
        if isinstance(target, ast.Name):
            names.setdefault(target.id, node)
        elif isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                bind(element, node)

    for node in body:
        if isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
            names.setdefault(node.name, node)
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                bind(target, node)
        elif isinstance(node, (ast.AnnAssign, ast.AugAssign)):
            bind(node.target, node)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name != "*":
                    names.setdefault(alias.asname or alias.name.split(".")[0], node)
        elif isinstance(node, ast.If):
            for name, child in _module_level_names(node.body + node.orelse).items():
                names.setdefault(name, child)
        elif isinstance(node, ast.Try):
            blocks = node.body + node.orelse + node.finalbody
            for handler in node.handlers:
                blocks = blocks + handler.body
            for name, child in _module_level_names(blocks).items():
                names.setdefault(name, child)

    return names


def _import_lineno(tree: ast.Module) -> int:
    """The line after the module docstring and `__future__` imports."""
    lineno = 0
    for index, node in enumerate(tree.body):
        if index == 0 and _is_docstring(node):
            lineno = node.end_lineno or node.lineno
        elif isinstance(node, ast.ImportFrom) and node.module == "__future__":
            lineno = node.end_lineno or node.lineno
        else:
            break
    return lineno


def parse_method(node: ast.FunctionDef | ast.AsyncFunctionDef, owner: str) -> MethodInfo:
    """Validate the shape of an RPC method and normalize it.

    The receiver must be the instance (`self`, first positional parameter, no static or class
    method), and every other parameter must bind exactly one positional value.

    Args:
        node: The method definition.
        owner: Name of the class the method belongs to, for diagnostics.

    Returns:
        MethodInfo: The normalized method.
    """
    qualified = f"{owner}.{node.name}"

    if isinstance(node, ast.AsyncFunctionDef):
        raise _error(f"RPC method `{qualified}` must not be `async`", node)

    decorators: list[str] = []
    for decorator in node.decorator_list:
        name = _decorator_name(decorator)
        if name in _NON_INSTANCE_DECORATORS:
            raise _error(
                f"RPC method `{qualified}` must take the instance receiver `self`, not be a {name}",
                decorator,
            )
        if name == "property" or name in ("setter", "getter", "deleter"):
            raise _error(f"RPC method `{qualified}` must not be a property", decorator)
        decorators.append(ast.unparse(decorator))

    arguments = node.args
    positional = [*arguments.posonlyargs, *arguments.args]

    if not positional or positional[0].arg != "self":
        receivers = [argument for argument in positional[1:] if argument.arg == "self"]
        if receivers:
            raise _error(f"RPC method `{qualified}` must take `self` as its first parameter", receivers[0])
        raise _error(f"RPC method `{qualified}` is missing the `self` receiver", node)

    if arguments.vararg is not None:
        raise _error(
            f"parameter `*{arguments.vararg.arg}` of `{qualified}` does not bind a single value",
            arguments.vararg,
        )
    if arguments.kwarg is not None:
        raise _error(
            f"parameter `**{arguments.kwarg.arg}` of `{qualified}` does not bind a single value",
            arguments.kwarg,
        )
    if arguments.kwonlyargs:
        raise _error(
            f"keyword-only parameter `{arguments.kwonlyargs[0].arg}` of `{qualified}` "
            "cannot be carried in a positional request envelope",
            arguments.kwonlyargs[0],
        )

    defaults: list[ast.expr | None] = [None] * (len(positional) - len(arguments.defaults))
    defaults.extend(arguments.defaults)

    parameters: list[ParameterInfo] = []
    for argument, default in zip(positional[1:], defaults[1:]):
        if argument.arg in RESERVED_PARAMETER_NAMES:
            raise _error(
                f"parameter name `{argument.arg}` of `{qualified}` is reserved for the transport-facing method",
                argument,
            )
        annotation = ast.unparse(argument.annotation) if argument.annotation is not None else ANY_TYPE
        parameters.append(
            ParameterInfo(
                name=argument.arg,
                annotation=annotation,
                default=ast.unparse(default) if default is not None else None,
            )
        )

    return_type: str | None = None
    if node.returns is not None and not (isinstance(node.returns, ast.Constant) and node.returns.value is None):
        return_type = ast.unparse(node.returns)

    return MethodInfo(
        name=node.name,
        parameters=tuple(parameters),
        return_type=return_type,
        decorators=tuple(decorators),
        docstring=ast.get_docstring(node),
        lineno=node.lineno,
        col_offset=node.col_offset,
        positional_only=max(len(arguments.posonlyargs) - 1, 0),
    )


def _parse_service(node: ast.ClassDef, marker: ast.expr, names: NameRegistry) -> ServiceInfo:
    methods: list[MethodInfo] = []
    interface_names = NameRegistry(names.filename, namespace=f"`{node.name}` interface")
    client_names = NameRegistry(names.filename, namespace=f"`{node.name}` client")
    client_names.claim("client", "the client's channel attribute", node.lineno, node.col_offset)

    for index, statement in enumerate(node.body):
        if index == 0 and _is_docstring(statement):
            continue
        if _is_stub_body([statement]):
            continue
        if not isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef)):
            raise _error(f"service `{node.name}` may only contain method signatures", statement)

        method = parse_method(statement, node.name)
        if not _is_stub_body(statement.body):
            raise _error(f"method `{node.name}.{method.name}` of a service declaration must not have a body", statement)

        owner = f"method `{method.name}`"
        interface_names.claim(method.name, owner, method.lineno, method.col_offset)
        interface_names.claim(method.grpc_method_ident, owner, method.lineno, method.col_offset)
        for ident in method.client_method_idents:
            client_names.claim(ident, owner, method.lineno, method.col_offset)
        methods.append(method)

    service = ServiceInfo(
        name=node.name,
        methods=tuple(methods),
        visibility=Visibility.of(node.name),
        bases=tuple(ast.unparse(base) for base in [*node.bases, *node.keywords]),
        decorators=tuple(ast.unparse(decorator) for decorator in node.decorator_list if decorator is not marker),
        docstring=ast.get_docstring(node),
        lineno=min([node.lineno, *(decorator.lineno for decorator in node.decorator_list)]),
        end_lineno=node.end_lineno or node.lineno,
        col_offset=node.col_offset,
    )

    owner = f"service `{service.name}`"
    for ident in (service.client_ident, service.service_create_fn_ident, service.type_var_ident):
        names.claim(ident, owner, node.lineno, node.col_offset)
    for method in service.methods:
        names.claim(
            method.method_declaration_ident(service),
            f"method `{service.name}.{method.name}`",
            method.lineno,
            method.col_offset,
        )

    return service


def _parse_server(
    node: ast.ClassDef,
    marker: ast.expr,
    source_lines: list[str],
    services: Mapping[str, ServiceInfo],
) -> ServerInfo:
    implemented = [base.id for base in node.bases if isinstance(base, ast.Name) and base.id in services]
    rpc_names: set[str] | None = None
    if implemented:
        rpc_names = {method.name for name in implemented for method in services[name].methods}

    authored: set[str] = set()
    for statement in node.body:
        if isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            authored.add(statement.name)
        elif isinstance(statement, ast.Assign):
            authored.update(target.id for target in statement.targets if isinstance(target, ast.Name))
        elif isinstance(statement, ast.AnnAssign) and isinstance(statement.target, ast.Name):
            authored.add(statement.target.id)

    methods: list[MethodInfo] = []
    for statement in node.body:
        if not isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        if statement.name.startswith("_") or statement.name.endswith(GRPC_METHOD_SUFFIX):
            continue
        if rpc_names is not None and statement.name not in rpc_names:
            logger.debug("%s.%s is not a method of %s.", node.name, statement.name, ", ".join(implemented))
            continue
        if f"{statement.name}{GRPC_METHOD_SUFFIX}" in authored:
            logger.debug("%s.%s already has a transport-facing method.", node.name, statement.name)
            continue
        if any(
            _decorator_name(decorator) in {*_NON_INSTANCE_DECORATORS, "property", "setter", "getter", "deleter"}
            for decorator in statement.decorator_list
        ):
            continue
        methods.append(parse_method(statement, node.name))

    if node.body[0].lineno == node.lineno:
        raise _error(f"the body of server `{node.name}` must start on its own line", node.body[0])

    first_line = source_lines[node.body[0].lineno - 1]
    body_indent = first_line[: len(first_line) - len(first_line.lstrip())] or helper.INDENT

    return ServerInfo(
        name=node.name,
        methods=tuple(methods),
        marker_lineno=marker.lineno,
        marker_end_lineno=marker.end_lineno or marker.lineno,
        end_lineno=node.end_lineno or node.lineno,
        body_indent=body_indent,
    )


def parse_module(source: str, filename: str = "<unknown>") -> ParsedModule:
    """Parse a module and collect the service declarations and server implementations it contains.

    Args:
        source: The module source text.
        filename: The file the source was read from, used in diagnostics.

    Returns:
        ParsedModule: The parsed declarations, in order of appearance.

    Raises:
        SchemaError: If the source cannot be parsed or a declaration is malformed.
    """
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        raise SchemaError(f"invalid syntax: {e.msg}", filename, e.lineno or 0, max((e.offset or 1) - 1, 0)) from e

    parsed = ParsedModule(filename=filename, source=source, import_lineno=_import_lineno(tree))
    resolver = _MarkerResolver(tree)
    if not resolver.marker_names and not resolver.module_names:
        return parsed

    names = NameRegistry(filename)
    source_lines = source.splitlines()

    try:
        top_level = set(tree.body)
        for node in ast.walk(tree):
            if not isinstance(node, ast.ClassDef) or node in top_level:
                continue
            if resolver.find(node) is not None:
                raise _error(f"class `{node.name}` must be declared at module level to be expanded", node)

        services: list[tuple[ast.ClassDef, ast.expr]] = []
        servers: list[tuple[ast.ClassDef, ast.expr]] = []
        for node in tree.body:
            if not isinstance(node, ast.ClassDef):
                continue
            found = resolver.find(node)
            if found is None:
                continue
            marker, decorator = found
            if isinstance(decorator, ast.Call):
                raise _error(f"the `{marker}` marker takes no arguments", decorator)
            if marker == SERVICE_MARKER:
                services.append((node, decorator))
            else:
                servers.append((node, decorator))

        if not services and not servers:
            return parsed
        parsed.names = names

        for alias in GENERATED_IMPORT_ALIASES:
            names.claim(alias, "a generated import", 0)

        declared = {node.name for node, _ in services}
        for name, node in _module_level_names(tree.body).items():
            if name in declared:
                continue
            names.claim(name, f"the module-level definition of `{name}`", getattr(node, "lineno", 0))

        for node, decorator in services:
            names.claim(node.name, f"service `{node.name}`", node.lineno, node.col_offset)
            parsed.services.append(_parse_service(node, decorator, names))

        declared_services = {service.name: service for service in parsed.services}
        for node, decorator in servers:
            parsed.servers.append(_parse_server(node, decorator, source_lines, declared_services))

    except _ErrorAnchor as e:
        raise SchemaError(e.message, filename, e.lineno, e.col_offset) from None

    logger.debug(
        "Parsed %s: %d service(s), %d server(s).",
        filename,
        len(parsed.services),
        len(parsed.servers),
    )
    return parsed
