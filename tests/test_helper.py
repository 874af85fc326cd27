"""Unit tests for the code generation helpers."""

import ast

import pytest

from grpc_stub_generator import helper


class TestNameConversion:
    """Test word splitting and case conversion of identifiers."""

    def test_split_snake_case(self):
        assert helper.split_words("say_hello") == ["say", "hello"]

    def test_split_camel_case(self):
        assert helper.split_words("sayHello") == ["say", "Hello"]

    def test_split_acronym(self):
        assert helper.split_words("HTTPServer2") == ["HTTP", "Server2"]

    def test_split_ignores_leading_underscore(self):
        assert helper.split_words("_Internal") == ["Internal"]

    def test_snake_case(self):
        assert helper.to_snake_case("TestService3") == "test_service3"
        assert helper.to_snake_case("Greeter") == "greeter"

    def test_shouty_snake_case(self):
        assert helper.to_shouty_snake_case("say_hello") == "SAY_HELLO"
        assert helper.to_shouty_snake_case("Greeter") == "GREETER"
        assert helper.to_shouty_snake_case("getHTTPStatus") == "GET_HTTP_STATUS"


class TestTupleHelpers:
    """Test the request envelope helpers."""

    def test_empty_tuple_type(self):
        assert helper.new_tuple_type([]) == "tuple[()]"

    def test_tuple_type(self):
        assert helper.new_tuple_type(["int", "bool"]) == "tuple[int, bool]"

    def test_single_target(self):
        assert helper.new_tuple_target(["request"]) == "(request,)"

    def test_multi_target(self):
        assert helper.new_tuple_target(["id", "only"]) == "(id, only)"


class TestCodeHelpers:
    """Test the line-based code builders."""

    def test_join_parameters(self):
        assert helper.join_parameters(["self", "", "a: int"]) == "self, a: int"
        assert helper.join_parameters(None) == ""

    def test_function_stub(self):
        assert helper.new_function("ping", ["self"]) == ["def ping(self) -> None: ..."]

    def test_function_with_body(self):
        lines = helper.new_function("add", ["a: int", "b: int"], "int", ["return a + b"])
        assert lines == ["def add(a: int, b: int) -> int:", "    return a + b"]

    def test_decorator(self):
        assert helper.new_decorator("_abc.abstractmethod") == "@_abc.abstractmethod"
        assert helper.new_decorator("lru_cache", ["maxsize=1"]) == "@lru_cache(maxsize=1)"

    def test_class_declaration(self):
        assert helper.new_class_declaration("Greeter") == "class Greeter:"
        assert helper.new_class_declaration("Greeter", ["_abc.ABC"]) == "class Greeter(_abc.ABC):"

    def test_single_line_docstring(self):
        assert helper.new_docstring("Says hello.") == ['"""Says hello."""']

    def test_multi_line_docstring(self):
        assert helper.new_docstring("Says hello.\n\nTo anyone.") == ['"""Says hello.', "", "To anyone.", '"""']

    def test_docstring_escapes_quotes(self):
        assert helper.new_docstring('A """quoted""" \\ text') == ['"""A \\"\\"\\"quoted\\"\\"\\" \\\\ text"""']

    def test_docstring_escapes_trailing_quote(self):
        assert helper.new_docstring('Say "hi"') == ['"""Say "hi\\""""']

    @pytest.mark.parametrize("docstring", ['Say "hi"', 'ends in ""', '"""', 'a """ b\\', "plain"])
    def test_docstring_literal_evaluates_to_text(self, docstring):
        literal = "\n".join(helper.new_docstring(docstring))
        assert ast.literal_eval(literal) == docstring

    def test_indent_skips_empty_lines(self):
        assert helper.indent(["a", "", "b"]) == ["    a", "", "    b"]
        assert helper.indent(["a"], "  ") == ["  a"]
