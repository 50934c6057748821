from __future__ import annotations

from typing import List, Optional, Tuple, Union

from accesslog_metrics.errors import CompileError, ParseError
from accesslog_metrics.log_format import CompiledFormat, Field, Literal, compile_format

ParsedLine = List[Tuple[str, str]]


class LogParser:
    """
    Split log lines into named field values using a compiled log_format.

    A field's value runs up to the first character of the literal that
    follows it in the format, or to the end of the line if it is the last
    token. Values are slices of the input line; callers should treat them as
    belonging to the line being processed and not keep them around past it.

    Example:
        >>> parser = LogParser.from_format('$remote_addr [$time_local] $status')
        >>> parser.parse('1.2.3.4 [11/Nov/2021:02:34:39 +0000] 200')
        [('remote_addr', '1.2.3.4'), ('time_local', '11/Nov/2021:02:34:39 +0000'), ('status', '200')]
    """

    def __init__(self, compiled: CompiledFormat):
        self.compiled = compiled
        # (token, terminator): a field ends at the first char of the next literal
        self._steps: List[Tuple[Union[Literal, Field], Optional[str]]] = []
        tokens = compiled.tokens
        for i, token in enumerate(tokens):
            terminator = None
            if isinstance(token, Field) and i + 1 < len(tokens):
                nxt = tokens[i + 1]
                if not isinstance(nxt, Literal):
                    raise CompileError(f"Field ${token.name} is not followed by a separator")
                terminator = nxt.text[0]
            self._steps.append((token, terminator))

    @classmethod
    def from_format(cls, text: str) -> "LogParser":
        return cls(compile_format(text))

    @property
    def fields(self) -> Tuple[str, ...]:
        return self.compiled.fields

    def parse(self, line: str) -> ParsedLine:
        values: ParsedLine = []
        pos = 0
        for token, terminator in self._steps:
            if isinstance(token, Literal):
                if not line.startswith(token.text, pos):
                    found = line[pos:pos + len(token.text)]
                    raise ParseError(f"Expected {token.text!r}, found {found!r} at position {pos}")
                pos += len(token.text)
            elif terminator is None:
                values.append((token.name, line[pos:]))
                pos = len(line)
            else:
                end = line.find(terminator, pos)
                if end == -1:
                    raise ParseError(f"Missing separator {terminator!r} after ${token.name}")
                values.append((token.name, line[pos:end]))
                pos = end

        # Anything after the last token is ignored
        return values
