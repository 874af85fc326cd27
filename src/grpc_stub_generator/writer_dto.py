"""Data Transfer Objects for the parser and writer.

This module contains the normalized representation of parsed service declarations and
server implementations, together with the identifier derivation rules that all emitters
share, and the registry that keeps generated identifiers unique.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from grpc_stub_generator import helper

GRPC_METHOD_SUFFIX = "_grpc"
CLIENT_SUFFIX = "Client"
CREATE_PREFIX = "create_"
METHOD_INFIX = "_METHOD_"

# Parameter names of the transport-facing method signature.
CONTEXT_PARAMETER = "ctx"
REQUEST_PARAMETER = "req"
SINK_PARAMETER = "sink"
RESPONSE_VARIABLE = "resp"
RESERVED_PARAMETER_NAMES = frozenset({CONTEXT_PARAMETER, REQUEST_PARAMETER, SINK_PARAMETER, RESPONSE_VARIABLE})


class SchemaError(Exception):
    """Raised when a declaration cannot be turned into generated code.

    The error is anchored at the offending construct of the source file.
    """

    def __init__(self, message: str, filename: str = "<unknown>", lineno: int = 0, col_offset: int = 0):
        super().__init__(message)
        self.message = message
        self.filename = filename
        self.lineno = lineno
        self.col_offset = col_offset

    def __str__(self) -> str:
        return f"{self.filename}:{self.lineno}:{self.col_offset + 1}: {self.message}"


class Visibility(enum.Enum):
    """Visibility of a service and everything generated for it."""

    PUBLIC = "public"
    PRIVATE = "private"

    @classmethod
    def of(cls, name: str) -> Visibility:
        """Derive the visibility from a name, private names start with an underscore."""
        return cls.PRIVATE if name.startswith("_") else cls.PUBLIC

    @property
    def prefix(self) -> str:
        """The prefix that generated module-level names get."""
        return "_" if self is Visibility.PRIVATE else ""


@dataclass(frozen=True)
class ParameterInfo:
    """A single business method parameter, bound to exactly one identifier."""

    name: str
    annotation: str
    default: str | None = None

    def __str__(self) -> str:
        parameter = f"{self.name}: {self.annotation}"
        if self.default is not None:
            parameter = f"{parameter} = {self.default}"
        return parameter


@dataclass(frozen=True)
class MethodInfo:
    """A normalized RPC method.

    Attributes:
        name: The business method name.
        parameters: The parameters after the `self` receiver, in declaration order.
        return_type: The return annotation, `None` when the method declares none.
        decorators: Decorator expressions (without `@`) to carry over.
        docstring: The method docstring, if any.
        lineno: Line of the method definition.
        col_offset: Column of the method definition.
        positional_only: Number of leading parameters that are positional-only.
    """

    name: str
    parameters: tuple[ParameterInfo, ...] = ()
    return_type: str | None = None
    decorators: tuple[str, ...] = ()
    docstring: str | None = None
    lineno: int = 0
    col_offset: int = 0
    positional_only: int = 0

    def method_declaration_ident(self, service: ServiceInfo) -> str:
        """`say_hello` of `Greeter` to `GREETER_METHOD_SAY_HELLO`."""
        return (
            f"{service.visibility.prefix}{helper.to_shouty_snake_case(service.name)}"
            f"{METHOD_INFIX}{helper.to_shouty_snake_case(self.name)}"
        )

    @property
    def grpc_method_ident(self) -> str:
        """`method` to `method_grpc`."""
        return f"{self.name}{GRPC_METHOD_SUFFIX}"

    @property
    def client_method_idents(self) -> tuple[str, str, str, str]:
        """The four client calling variants: default, with options, async and async with options."""
        return (self.name, f"{self.name}_opt", f"{self.name}_async", f"{self.name}_async_opt")

    @property
    def argument_names(self) -> list[str]:
        return [parameter.name for parameter in self.parameters]

    @property
    def req_type(self) -> str:
        """The request envelope: a tuple of the parameter types in declaration order."""
        return helper.new_tuple_type([parameter.annotation for parameter in self.parameters])

    @property
    def resp_type(self) -> str:
        """The response envelope: the return type, or `None` when nothing is returned."""
        return self.return_type if self.return_type is not None else "None"

    @property
    def signature_parameters(self) -> list[str]:
        """The parameter list of the business method, receiver included."""
        parameters = ["self", *(str(parameter) for parameter in self.parameters)]
        if self.positional_only:
            parameters.insert(self.positional_only + 1, "/")
        return parameters


@dataclass(frozen=True)
class ServiceInfo:
    """A parsed service declaration (one decorated interface class).

    Attributes:
        name: The interface name.
        methods: The RPC methods in declaration order.
        visibility: Derived from the interface name.
        bases: Base class expressions of the declaration.
        decorators: Decorator expressions other than the service marker.
        docstring: The class docstring, if any.
        lineno: First line of the declaration, decorators included.
        end_lineno: Last line of the declaration.
        col_offset: Column of the `class` keyword.
    """

    name: str
    methods: tuple[MethodInfo, ...]
    visibility: Visibility = Visibility.PUBLIC
    bases: tuple[str, ...] = ()
    decorators: tuple[str, ...] = ()
    docstring: str | None = None
    lineno: int = 0
    end_lineno: int = 0
    col_offset: int = 0

    @property
    def service_create_fn_ident(self) -> str:
        """`Greeter` to `create_greeter`."""
        return f"{self.visibility.prefix}{CREATE_PREFIX}{helper.to_snake_case(self.name)}"

    @property
    def client_ident(self) -> str:
        """`Greeter` to `GreeterClient`."""
        return f"{self.name}{CLIENT_SUFFIX}"

    @property
    def type_var_ident(self) -> str:
        """The type variable bound to the rewritten interface, used by the service factory."""
        return f"_{self.name.lstrip('_')}T"


@dataclass(frozen=True)
class ServerInfo:
    """A parsed server implementation (one decorated class authoring business methods).

    Attributes:
        name: The implementing class name.
        methods: Business methods that need a transport-facing companion.
        marker_lineno: First line of the server marker decorator.
        marker_end_lineno: Last line of the server marker decorator.
        end_lineno: Last line of the class body.
        body_indent: Indentation of the class body statements.
    """

    name: str
    methods: tuple[MethodInfo, ...]
    marker_lineno: int = 0
    marker_end_lineno: int = 0
    end_lineno: int = 0
    body_indent: str = helper.INDENT


@dataclass(frozen=True)
class NameClaim:
    """The owner of a generated identifier."""

    owner: str
    lineno: int
    col_offset: int


@dataclass
class NameRegistry:
    """Table of identifiers in one namespace, populated while a module is parsed.

    A name may only be claimed once. The second claim of a name raises a `SchemaError`
    that points at the second claimant and names the first one.
    """

    filename: str
    namespace: str = "module"
    claims: dict[str, NameClaim] = field(default_factory=dict)

    def claim(self, name: str, owner: str, lineno: int, col_offset: int = 0) -> None:
        """Claim a name for an owner.

        Args:
            name: The identifier that will be generated.
            owner: Human readable description of what generates the identifier.
            lineno: Line of the construct that generates the identifier.
            col_offset: Column of the construct that generates the identifier.

        Raises:
            SchemaError: If the name was claimed before.
        """
        previous = self.claims.get(name)
        if previous is not None:
            location = f" (line {previous.lineno})" if previous.lineno else ""
            raise SchemaError(
                f"`{name}` of {owner} clashes with {previous.owner}{location} in the {self.namespace} namespace",
                self.filename,
                lineno,
                col_offset,
            )
        self.claims[name] = NameClaim(owner, lineno, col_offset)

    def __contains__(self, name: object) -> bool:
        return name in self.claims

    def __len__(self) -> int:
        return len(self.claims)
