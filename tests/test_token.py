"""Test the Token unit used by the token based analyzer."""

import io
import sys
sys.path.insert(0, "tests")

import tokenize

import pytest

from pyclosure import Token


class TestToken:
    """Tests for constructing and matching tokens."""

    def test_literal_token(self):
        """A bare string produces a token with no type or line."""
        token = Token("(")

        assert token.code == "("
        assert token.value is None
        assert token.name is None
        assert token.line is None
        assert str(token) == "("

    def test_token_with_parts(self):
        token = Token("lambda", tokenize.NAME, 2)

        assert token.code == "lambda"
        assert token.value == tokenize.NAME
        assert token.name == "NAME"
        assert token.line == 2

    def test_token_from_tokenizer_output(self):
        """TokenInfo tuples are unpacked into text, type and line."""
        infos = list(tokenize.generate_tokens(io.StringIO("\nf = lambda: 1\n").readline))
        info = next(info for info in infos if info.string == "lambda")

        token = Token(info)

        assert token.code == "lambda"
        assert token.value == tokenize.NAME
        assert token.name == "NAME"
        assert token.line == 2

    def test_matches(self):
        token = Token("lambda", tokenize.NAME, 2)

        assert token.matches(tokenize.NAME)
        assert token.matches("lambda")
        assert not token.matches("cat")
        assert not token.matches(tokenize.OP)

    def test_prefix_is_rendered(self):
        """The whitespace before a token is kept when it is rendered."""
        token = Token("+", tokenize.OP, 1, prefix="  ")

        assert token.code == "+"
        assert str(token) == "  +"

    def test_rejects_non_string_code(self):
        with pytest.raises(TypeError, match="Code must be a string"):
            Token(42)
