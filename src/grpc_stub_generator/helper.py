"""Helper functionality that is used in other modules of this package."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

INDENT = "    "

# An all-caps run that is not the start of a capitalized word (`HTTP` in `HTTPServer`),
# a (capitalized) lowercase word, or a bare number. Trailing digits stick to their word.
_WORD_PATTERN = re.compile(r"[A-Z]+(?![a-z])[0-9]*|[A-Z]?[a-z]+[0-9]*|[0-9]+")


def split_words(name: str) -> list[str]:
    """Split an identifier into its words.

    Underscores and other non-alphanumeric characters separate words, and so do case changes.
    E.g. `sayHello` and `say_hello` both become `['say', 'Hello']` resp. `['say', 'hello']`,
    `HTTPServer2` becomes `['HTTP', 'Server2']`.

    Args:
        name (str): The identifier.

    Returns:
        list[str]: The words, in order of appearance.
    """
    words: list[str] = []
    for chunk in re.split(r"[^0-9A-Za-z]+", name):
        words.extend(_WORD_PATTERN.findall(chunk))
    return words


def to_snake_case(name: str) -> str:
    """Convert an identifier to `snake_case`.

    E.g. `TestService3` becomes `test_service3`.
    """
    return "_".join(word.lower() for word in split_words(name))


def to_shouty_snake_case(name: str) -> str:
    """Convert an identifier to `SHOUTY_SNAKE_CASE`.

    E.g. `say_hello` becomes `SAY_HELLO` and `Greeter` becomes `GREETER`.
    """
    return "_".join(word.upper() for word in split_words(name))


def join_parameters(parameters: Sequence[str] | None) -> str:
    """Joins parameters by means of ', '.

    Args:
        parameters (Sequence[str] | None): The parameters to join.

    Returns:
        str: The joined parameters.
    """
    if parameters:
        return ", ".join(str(p) for p in parameters if p)

    else:
        return ""


def new_group(name: str, members: list[str]) -> str:
    """Create a string for a group name and its members.

    For example, when the group name is 'tuple', and the members are 'str', and 'int',
    the output will be 'tuple[str, int]'.

    Args:
        name (str): The name of the group.
        members (list[str]): The members of the group

    Returns:
        str: The resulting group string.
    """
    return f"{name}[{join_parameters(members)}]"


def new_tuple_type(members: list[str]) -> str:
    """Create the type of a fixed-size tuple.

    An empty member list gives `tuple[()]`, the type of the empty tuple.
    """
    if not members:
        return "tuple[()]"
    return new_group("tuple", members)


def new_tuple_target(names: list[str]) -> str:
    """Create an assignment target that unpacks a tuple into the given names.

    E.g. `['request']` becomes `(request,)` and `['id', 'only']` becomes `(id, only)`.
    """
    if len(names) == 1:
        return f"({names[0]},)"
    return f"({join_parameters(names)})"


def new_function(
    name: str,
    parameters: Sequence[str] | None = None,
    return_type: str | None = None,
    body: Sequence[str] | None = None,
) -> list[str]:
    """Create the lines of a function.

    Without a body, the function is a one-line signature ending in `...`.

    Args:
        name (str): The function name.
        parameters (Sequence[str] | None, optional): The function parameters, if any. Defaults to None.
        return_type (str | None, optional): The function's return type. Defaults to None.
        body (Sequence[str] | None, optional): The unindented body lines, if any. Defaults to None.

    Returns:
        list[str]: The function lines.
    """
    if return_type is None:
        return_type = "None"

    arguments = join_parameters(parameters)
    signature = f"def {name}({arguments}) -> {return_type}:"

    if not body:
        return [f"{signature} ..."]

    return [signature, *indent(body)]


def new_decorator(name: str, parameters: Sequence[str] | None = None) -> str:
    """Create a new decorator.

    Args:
        name (str): The name of the decorator.
        parameters (Sequence[str] | None, optional): The parameters (args, kwargs) of the decorator,
            if any. Defaults to None.

    Returns:
        str: The decorator string.
    """
    if parameters:
        return f"@{name}({join_parameters(parameters)})"

    else:
        return f"@{name}"


def new_class_declaration(name: str, parameters: Sequence[str] | None = None) -> str:
    """Creates a string for declaring a class.

    For example, for a name of 'SomeClass' and a list of parameters that is 'str, Type[str, int]', the output
    will be 'class SomeClass(str, Type[str, int]):'.

    If no parameters are provided, the output is just 'class SomeClass:'.

    Args:
        name (str): The class name.
        parameters (Sequence[str] | None, optional):
            A list of parameters that are part of the class declaration. Defaults to None.

    Returns:
        str: The class declaration.
    """
    if parameters:
        return f"class {name}({join_parameters(parameters)}):"
    else:
        return f"class {name}:"


def new_docstring(docstring: str) -> list[str]:
    """Create the lines of a docstring literal.

    Backslashes, triple quotes and trailing quotes are escaped, so the literal closes where it should.
    """
    text = docstring.replace("\\", "\\\\")
    body = text.rstrip('"')
    text = body.replace('"""', '\\"\\"\\"') + '\\"' * (len(text) - len(body))
    lines = text.splitlines() or [""]
    if len(lines) == 1:
        return [f'"""{lines[0]}"""']
    return [f'"""{lines[0]}', *lines[1:], '"""']


def indent(lines: Iterable[str], prefix: str = INDENT) -> list[str]:
    """Indent all non-empty lines by a prefix."""
    return [f"{prefix}{line}" if line else line for line in lines]
