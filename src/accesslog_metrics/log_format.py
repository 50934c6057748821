"""
Compile an nginx ``log_format`` description into a token grammar.

Accepts either the bare format body::

    $remote_addr - $remote_user [$time_local] "$request" $status

or the full directive as it appears in nginx.conf::

    log_format combined '$remote_addr - $remote_user [$time_local]';

The result is an ordered sequence of ``Literal`` and ``Field`` tokens. Every
field except the last one is followed by a literal, whose first character
marks where the field's value ends.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple, Union

from accesslog_metrics.errors import CompileError

_IDENT_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz0123456789_")


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Field:
    name: str


Token = Union[Literal, Field]


@dataclass(frozen=True)
class CompiledFormat:
    tokens: Tuple[Token, ...]

    @property
    def fields(self) -> Tuple[str, ...]:
        """Field names in declaration order; duplicates are kept."""
        return tuple(t.name for t in self.tokens if isinstance(t, Field))


class _FormatCompiler:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.tokens: List[Token] = []

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def skip_whitespace(self) -> None:
        while not self.at_end() and self.text[self.pos].isspace():
            self.pos += 1

    def maybe_consume(self, s: str) -> bool:
        if self.text.startswith(s, self.pos):
            self.pos += len(s)
            return True
        return False

    def compile(self) -> CompiledFormat:
        self.skip_whitespace()
        if self.at_end():
            raise CompileError("Empty string")

        if self.maybe_consume("log_format"):
            self.skip_whitespace()
            if self.maybe_consume("combined"):
                self.skip_whitespace()
            if not self.maybe_consume("'"):
                raise CompileError("Missing '")
            self.parse_body()
            if not self.maybe_consume("'"):
                raise CompileError("Missing final '")
            self.maybe_consume(";")
            self.skip_whitespace()
        else:
            self.parse_body()

        if not self.at_end():
            raise CompileError(f"Unexpected characters at the end: {self.text[self.pos:]!r}")
        return CompiledFormat(tokens=tuple(self.tokens))

    def parse_body(self) -> None:
        literal: List[str] = []
        while not self.at_end():
            c = self.peek()
            if c == "'":
                break
            if c == "$":
                self.pos += 1
                name = self.read_identifier()
                if literal:
                    self.tokens.append(Literal("".join(literal)))
                    literal = []
                elif self.tokens and isinstance(self.tokens[-1], Field):
                    raise CompileError(
                        f"Field ${name} directly follows ${self.tokens[-1].name}, "
                        "fields must be separated by literal text"
                    )
                self.tokens.append(Field(name))
            else:
                literal.append(c)
                self.pos += 1
        if literal:
            self.tokens.append(Literal("".join(literal)))

    def read_identifier(self) -> str:
        start = self.pos
        while not self.at_end() and self.text[self.pos] in _IDENT_CHARS:
            self.pos += 1
        if self.pos == start:
            raise CompileError("Expected identifier")
        return self.text[start:self.pos]


def compile_format(text: str) -> CompiledFormat:
    """Compile a log_format description, raising CompileError if malformed."""
    return _FormatCompiler(text).compile()
