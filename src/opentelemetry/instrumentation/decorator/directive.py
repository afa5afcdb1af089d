# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsing of the ``@instrument`` directive text.

A directive is a comma separated list of clauses, in any order:

.. code:: python

    @instrument('skip(password), ret, err, fields(operation = "login")')
    @instrument("parent = ctx, name = 'child_operation'")
    @instrument("err = e.__cause__, fields(user_id, region = cfg.region)")

The text is split with the Python tokenizer, so expressions can contain
strings, calls and nested brackets. Expressions are compiled here and
evaluated for every call of the decorated function.
"""

import ast
import io
import tokenize
from dataclasses import dataclass
from types import CodeType
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from opentelemetry.instrumentation.decorator.errors import (
    DuplicateField,
    InvalidDirective,
    ReservedFieldKey,
)

RETURN_KEY = "return"
ERROR_KEY = "error"

_CLAUSES = ("skip", "skip_all", "fields", "ret", "err", "parent", "name")

_IGNORED_TOKENS = frozenset(
    (
        tokenize.NL,
        tokenize.NEWLINE,
        tokenize.COMMENT,
        tokenize.INDENT,
        tokenize.DEDENT,
        tokenize.ENDMARKER,
    )
)
_OPENING = frozenset("([{")
_CLOSING = frozenset(")]}")


@dataclass(frozen=True)
class Expression:
    """A directive expression, compiled once and evaluated per call."""

    source: str
    code: CodeType

    @classmethod
    def compile(cls, source: str, clause: str) -> "Expression":
        try:
            # Line breaks were legal inside the directive's brackets, so
            # they must stay legal here.
            code = compile(f"(\n{source}\n)", f"<instrument {clause}>", "eval")
        except SyntaxError as exc:
            raise InvalidDirective(
                f"Invalid expression {source!r} in {clause!r} clause: {exc.msg}",
                clause=clause,
            ) from exc
        return cls(source, code)

    def evaluate(self, scope: Dict[str, Any]) -> Any:
        # ``scope`` is passed as globals: lambdas, generator expressions
        # and comprehensions only resolve free names there.
        return eval(self.code, scope)  # pylint: disable=eval-used


@dataclass(frozen=True)
class FieldEntry:
    key: str
    expression: Expression


@dataclass(frozen=True)
class ParentSource:
    """Where the parent context comes from.

    Exactly one of ``parameter`` (a bare identifier, validated against the
    function parameters) or ``expression`` is set.
    """

    parameter: Optional[str] = None
    expression: Optional[Expression] = None


@dataclass(frozen=True)
class Directive:
    skip_all: bool = False
    skip: FrozenSet[str] = frozenset()
    fields: Tuple[FieldEntry, ...] = ()
    record_return: bool = False
    record_error: bool = False
    error_expression: Optional[Expression] = None
    parent: Optional[ParentSource] = None
    span_name: Optional[str] = None


class _Source:
    """Directive text wrapped in parentheses, with token offset lookup."""

    def __init__(self, text: str):
        # The parentheses keep newlines between clauses from producing
        # NEWLINE/INDENT tokens.
        self.text = "(" + text + ")"
        self._line_starts = [0]
        for line in self.text.splitlines(keepends=True):
            self._line_starts.append(self._line_starts[-1] + len(line))

    def tokens(self) -> List[tokenize.TokenInfo]:
        readline = io.StringIO(self.text).readline
        try:
            tokens = [
                token
                for token in tokenize.generate_tokens(readline)
                if token.type not in _IGNORED_TOKENS
            ]
        except (tokenize.TokenError, SyntaxError) as exc:
            raise InvalidDirective(
                f"Malformed directive {self.text[1:-1]!r}: {exc}"
            ) from exc
        if (
            len(tokens) < 2
            or tokens[0].string != "("
            or tokens[-1].string != ")"
        ):
            raise InvalidDirective(
                f"Malformed directive {self.text[1:-1]!r}: unbalanced brackets"
            )
        return tokens[1:-1]

    def _offset(self, position: Tuple[int, int]) -> int:
        row, col = position
        return self._line_starts[row - 1] + col

    def slice(self, tokens: List[tokenize.TokenInfo]) -> str:
        return self.text[
            self._offset(tokens[0].start) : self._offset(tokens[-1].end)
        ]


def _split_top_level(
    tokens: List[tokenize.TokenInfo], where: str
) -> List[List[tokenize.TokenInfo]]:
    """Split tokens on commas that are not nested inside brackets.

    A single trailing comma is accepted.
    """
    segments: List[List[tokenize.TokenInfo]] = [[]]
    depth = 0
    for token in tokens:
        if token.type == tokenize.OP and token.string in _OPENING:
            depth += 1
        elif token.type == tokenize.OP and token.string in _CLOSING:
            depth -= 1
            if depth < 0:
                raise InvalidDirective(
                    f"Unbalanced {token.string!r} in {where}"
                )
        elif depth == 0 and token.type == tokenize.OP and token.string == ",":
            segments.append([])
            continue
        segments[-1].append(token)
    if depth != 0:
        raise InvalidDirective(f"Unclosed bracket in {where}")
    if not tokens:
        return []
    if len(segments) > 1 and not segments[-1]:
        segments.pop()
    for segment in segments:
        if not segment:
            raise InvalidDirective(f"Empty entry in {where}")
    return segments


def _is_op(token: tokenize.TokenInfo, string: str) -> bool:
    return token.type == tokenize.OP and token.string == string


def _parenthesized(
    clause: str, rest: List[tokenize.TokenInfo]
) -> List[tokenize.TokenInfo]:
    """Return the tokens between ``(`` and its matching final ``)``."""
    if len(rest) < 2 or not _is_op(rest[0], "(") or not _is_op(rest[-1], ")"):
        raise InvalidDirective(
            f"Expected {clause}(...), e.g. {clause}(a, b)", clause=clause
        )
    depth = 0
    for index, token in enumerate(rest):
        if token.type == tokenize.OP and token.string in _OPENING:
            depth += 1
        elif token.type == tokenize.OP and token.string in _CLOSING:
            depth -= 1
            if depth == 0 and index != len(rest) - 1:
                raise InvalidDirective(
                    f"Unexpected tokens after {clause}(...)", clause=clause
                )
    return rest[1:-1]


def _assigned(
    source: _Source, clause: str, rest: List[tokenize.TokenInfo]
) -> str:
    """Return the expression text of a ``clause = <expr>`` clause."""
    if len(rest) < 2 or not _is_op(rest[0], "="):
        raise InvalidDirective(
            f"Expected {clause} = <value> in {clause!r} clause", clause=clause
        )
    return source.slice(rest[1:])


def _parse_skip(source, inner) -> FrozenSet[str]:
    names = set()
    for entry in _split_top_level(inner, "skip(...)"):
        if len(entry) != 1 or entry[0].type != tokenize.NAME:
            raise InvalidDirective(
                f"skip(...) entries must be parameter names, got "
                f"{source.slice(entry)!r}",
                clause="skip",
            )
        names.add(entry[0].string)
    return frozenset(names)


def _field_key(source: _Source, token: tokenize.TokenInfo) -> str:
    if token.type == tokenize.NAME:
        return token.string
    if token.type == tokenize.STRING:
        try:
            key = ast.literal_eval(token.string)
        except (ValueError, SyntaxError):
            key = None
        if isinstance(key, str) and key:
            return key
    raise InvalidDirective(
        f"Invalid field key {source.slice([token])!r}", clause="fields"
    )


def _parse_fields(source, inner) -> Tuple[FieldEntry, ...]:
    entries: List[FieldEntry] = []
    seen = set()
    for entry in _split_top_level(inner, "fields(...)"):
        key = _field_key(source, entry[0])
        if len(entry) == 1:
            if entry[0].type != tokenize.NAME:
                raise InvalidDirective(
                    f"Field {key!r} needs a value: fields({entry[0].string} = ...)",
                    clause="fields",
                )
            # ``fields(user_id)`` is shorthand for ``fields(user_id = user_id)``
            expression = Expression.compile(key, "fields")
        else:
            expression = Expression.compile(
                _assigned(source, "fields", entry[1:]), "fields"
            )
        if key in seen:
            raise DuplicateField(key)
        seen.add(key)
        entries.append(FieldEntry(key, expression))
    return tuple(entries)


def _parse_span_name(source, rest) -> str:
    text = _assigned(source, "name", rest)
    if not all(token.type == tokenize.STRING for token in rest[1:]):
        raise InvalidDirective(
            f"name must be a string literal, got {text!r}", clause="name"
        )
    try:
        value = ast.literal_eval(text)
    except (ValueError, SyntaxError) as exc:
        raise InvalidDirective(
            f"name must be a string literal, got {text!r}", clause="name"
        ) from exc
    if not isinstance(value, str):
        raise InvalidDirective(
            f"name must be a string literal, got {text!r}", clause="name"
        )
    return value


def _parse_parent(source, rest) -> ParentSource:
    expression = Expression.compile(_assigned(source, "parent", rest), "parent")
    node = ast.parse(f"(\n{expression.source}\n)", mode="eval").body
    if isinstance(node, ast.Name):
        return ParentSource(parameter=node.id)
    return ParentSource(expression=expression)


def parse_directive(text: Optional[str]) -> Directive:
    """Parse directive text into a :class:`Directive`.

    Raises:
        InvalidDirective: unknown or repeated clause, or malformed syntax.
        DuplicateField: a key repeated inside ``fields(...)``.
        ReservedFieldKey: a field key shadowing ``ret``/``err`` output.
    """
    if text is None or not text.strip():
        return Directive()

    source = _Source(text)
    values: Dict[str, Any] = {}
    for clause_tokens in _split_top_level(source.tokens(), "directive"):
        head, rest = clause_tokens[0], clause_tokens[1:]
        if head.type != tokenize.NAME:
            raise InvalidDirective(
                f"Expected a clause name, found {head.string!r}"
            )
        clause = head.string
        if clause not in _CLAUSES:
            raise InvalidDirective(
                f"Unknown directive clause {clause!r}", clause=clause
            )
        if clause in values:
            raise InvalidDirective(
                f"Clause {clause!r} may only be given once", clause=clause
            )

        if clause in ("skip_all", "ret"):
            if rest:
                raise InvalidDirective(
                    f"{clause!r} takes no arguments", clause=clause
                )
            values[clause] = True
        elif clause == "err":
            values[clause] = (
                Expression.compile(_assigned(source, clause, rest), clause)
                if rest
                else None
            )
        elif clause == "skip":
            values[clause] = _parse_skip(
                source, _parenthesized(clause, rest)
            )
        elif clause == "fields":
            values[clause] = _parse_fields(
                source, _parenthesized(clause, rest)
            )
        elif clause == "name":
            values[clause] = _parse_span_name(source, rest)
        else:
            values[clause] = _parse_parent(source, rest)

    directive = Directive(
        skip_all=values.get("skip_all", False),
        skip=values.get("skip", frozenset()),
        fields=values.get("fields", ()),
        record_return="ret" in values,
        record_error="err" in values,
        error_expression=values.get("err"),
        parent=values.get("parent"),
        span_name=values.get("name"),
    )
    for entry in directive.fields:
        if entry.key == RETURN_KEY and directive.record_return:
            raise ReservedFieldKey(entry.key, "ret")
        if entry.key == ERROR_KEY and directive.record_error:
            raise ReservedFieldKey(entry.key, "err")
    return directive
