import io
import re
import textwrap
import tokenize
from enum import IntEnum
from typing import Iterator, List, Optional, Union

from ..exceptions import ClosureAnalysisError
from .base import ClosureAnalyzer, ClosureRecord

_OPENERS = frozenset("([{")
_CLOSERS = frozenset(")]}")

# Token types that can sit between a def's colon and its first statement
_LAYOUT_TYPES = frozenset({tokenize.NEWLINE, tokenize.NL, tokenize.COMMENT})

_RECEIVER_PATTERN = re.compile(r"\bself\b")


class Token:
    """A unit of source text, with its token type and line when known.

    Args:
        code: The token text, or a ``tokenize.TokenInfo`` to take the text,
            type and line from.
        value: Token type, one of the ``tokenize`` constants.
        line: Line the token starts on.
        prefix: Source text between the previous token and this one.
    """

    def __init__(
        self,
        code: Union[str, tokenize.TokenInfo],
        value: Optional[int] = None,
        line: Optional[int] = None,
        prefix: str = "",
    ):

        if isinstance(code, tokenize.TokenInfo):
            value = code.type
            line = code.start[0]
            code = code.string

        if not isinstance(code, str):
            raise TypeError("Code must be a string.")

        self.code = code
        self.value = value
        self.line = line
        self.prefix = prefix

    @property
    def name(self) -> Optional[str]:
        return tokenize.tok_name[self.value] if self.value is not None else None

    def matches(self, value: Union[int, str]) -> bool:
        """Whether the token has the given type (int) or text (str)."""

        if isinstance(value, int):
            return self.value == value

        return self.code == value

    def __str__(self) -> str:
        return self.prefix + self.code

    def __repr__(self) -> str:
        return f"Token({self.code!r}, {self.name}, line={self.line})"


class _Step(IntEnum):

    BEFORE_DECL = 0
    IN_SIGNATURE = 1
    IN_BODY = 2
    AFTER = 3


class TokenAnalyzer(ClosureAnalyzer):
    """Finds a closure's code by scanning the tokens of its own lines.

    Only the lines the function spans are read and tokenized, which makes this
    strategy fast, at the price of accuracy: ``__file__`` and ``__name__`` are
    left as written, and receiver use is detected by a plain text match.
    """

    def determine_code(self, record: ClosureRecord) -> None:

        self._determine_tokens(record)

        record.code = "".join(map(str, record.tokens)).rstrip()
        record.has_this = _RECEIVER_PATTERN.search(record.code) is not None

    def _fragment(self, record: ClosureRecord) -> str:

        reflection = record.reflection

        lines = self._read_source(reflection).splitlines(keepends=True)
        lines = lines[reflection.start_line - 1 : reflection.end_line]

        if not lines:
            raise ClosureAnalysisError(
                f"The closure was not found within the source of "
                f"{reflection.file_name!r}."
            )

        fragment = textwrap.dedent("".join(lines))

        if reflection.name == "<lambda>":
            # A lambda can span lines inside brackets opened on an earlier
            # line. Opening one here keeps line breaks from ending it early.
            fragment = "(" + fragment

        return fragment

    def _potential_tokens(self, fragment: str) -> Iterator[Token]:
        # Token text is sliced from the fragment rather than taken from
        # TokenInfo.string so f-string pieces keep their escaped braces.
        offsets = [0]
        for line in fragment.splitlines(keepends=True):
            offsets.append(offsets[-1] + len(line))

        def offset(position):
            row, col = position
            return offsets[min(row, len(offsets)) - 1] + col

        previous = 0

        for info in tokenize.generate_tokens(io.StringIO(fragment).readline):

            start = max(offset(info.start), previous)
            end = max(offset(info.end), start)

            yield Token(
                fragment[start:end],
                info.type,
                info.start[0],
                prefix=fragment[previous:start],
            )

            previous = end

    def _determine_tokens(self, record: ClosureRecord) -> None:

        free_names = set(record.reflection.free_variable_names)

        record.tokens = tokens = []
        context_names = []

        step = _Step.BEFORE_DECL
        is_lambda = False
        pending_async = None
        depth = 0
        nested_lambdas = 0
        level = 0
        seen_statement = False

        try:
            for token in self._potential_tokens(self._fragment(record)):

                if step == _Step.BEFORE_DECL:

                    if token.matches("async"):
                        pending_async = token
                        continue

                    if token.matches("lambda") or token.matches("def"):

                        is_lambda = token.matches("lambda")

                        if pending_async is not None and not is_lambda:
                            tokens.append(Token(pending_async.code, pending_async.value, pending_async.line))
                            tokens.append(token)
                        else:
                            tokens.append(Token(token.code, token.value, token.line))

                        step = _Step.IN_SIGNATURE

                    pending_async = None

                elif step == _Step.IN_SIGNATURE:

                    tokens.append(token)

                    if token.code in _OPENERS:
                        depth += 1
                    elif token.code in _CLOSERS:
                        depth -= 1
                    elif token.matches("lambda") and depth == 0:
                        nested_lambdas += 1
                    elif token.matches(":") and depth == 0:
                        if nested_lambdas:
                            nested_lambdas -= 1
                        else:
                            step = _Step.IN_BODY

                elif step == _Step.IN_BODY:

                    if is_lambda:
                        ended, depth, nested_lambdas = self._lambda_body_ends(
                            token, depth, nested_lambdas
                        )
                    else:
                        if token.matches(tokenize.INDENT):
                            level += 1
                        elif token.matches(tokenize.DEDENT):
                            level -= 1
                        elif token.value not in _LAYOUT_TYPES:
                            seen_statement = True

                        ended = (
                            (token.matches(tokenize.DEDENT) and level <= 0)
                            or (token.matches(tokenize.NEWLINE) and level == 0 and seen_statement)
                            or token.matches(tokenize.ENDMARKER)
                        )

                    if ended:
                        step = _Step.AFTER
                        continue

                    tokens.append(token)

                    if token.matches(tokenize.NAME):
                        if token.code in free_names and token.code not in context_names:
                            context_names.append(token.code)
                        elif token.code == "nonlocal":
                            record.has_refs = True

                elif token.matches("lambda") or token.matches("def"):

                    raise ClosureAnalysisError(
                        "Multiple closures were declared on the same line of code. "
                        "Could not determine which closure was the intended target."
                    )

        except (tokenize.TokenError, SyntaxError) as e:

            if step == _Step.IN_BODY and is_lambda:
                step = _Step.AFTER
            elif step != _Step.AFTER:
                raise ClosureAnalysisError(
                    f"There was an error analyzing the closure code: {e}"
                ) from e

        if step < _Step.IN_BODY:
            raise ClosureAnalysisError(
                "The closure was not found within the tokens of "
                f"{record.reflection.file_name}:{record.reflection.start_line}."
            )

        # Names the scan could not see, such as those inside an f-string that
        # the tokenizer reports as a single string.
        for name in record.reflection.free_variable_names:
            if name not in context_names:
                context_names.append(name)

        record.context = dict.fromkeys(context_names)

    def _lambda_body_ends(self, token: Token, depth: int, nested_lambdas: int):

        if token.code in _OPENERS:
            return False, depth + 1, nested_lambdas

        if token.code in _CLOSERS:
            if depth == 0:
                return True, depth, nested_lambdas
            return False, depth - 1, nested_lambdas

        if token.matches(tokenize.NEWLINE) or token.matches(tokenize.ENDMARKER):
            return True, depth, nested_lambdas

        if depth > 0:
            return False, depth, nested_lambdas

        if token.matches("lambda"):
            return False, depth, nested_lambdas + 1

        if token.matches(":"):
            if nested_lambdas:
                return False, depth, nested_lambdas - 1
            return True, depth, nested_lambdas

        return token.code in (",", ";", "for"), depth, nested_lambdas

    def determine_context(self, record: ClosureRecord) -> None:

        values = record.reflection.free_variables

        for name in record.context:
            record.context[name] = values.get(name)
