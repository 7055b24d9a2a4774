"""
Splits a block of source code into statements that can be submitted one at a time.

The scanner only knows enough about each language to avoid cutting inside a string,
a comment or an open bracket. It never decides whether a statement is complete; the
server does that. Concatenating ``unit.text + unit.separator`` over the returned units
gives back the original source exactly.
"""

import logging
import re
import warnings
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Tuple

from livy_interpreter.exc import SegmentationDegenerate
from livy_interpreter.types import SessionKind

logger = logging.getLogger(__name__)


class LexState(Enum):
    NORMAL = "NORMAL"
    LINE_COMMENT = "LINE_COMMENT"
    BLOCK_COMMENT = "BLOCK_COMMENT"
    SINGLE_QUOTE_STRING = "SINGLE_QUOTE_STRING"
    DOUBLE_QUOTE_STRING = "DOUBLE_QUOTE_STRING"
    TRIPLE_QUOTE_STRING = "TRIPLE_QUOTE_STRING"
    QUOTED_IDENTIFIER = "QUOTED_IDENTIFIER"


_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}

# Scala character literal: 'a', '\n', '"'
_CHAR_LITERAL = re.compile(r"'(?:\\.|[^\\'\n])'")


@dataclass(frozen=True)
class LexicalProfile:
    """What the scanner needs to know about one language."""

    separator: str = "\n"
    line_comments: Tuple[str, ...] = ()
    block_comment: Optional[Tuple[str, str]] = None
    triple_quotes: Tuple[str, ...] = ()
    raw_triple_quotes: bool = False
    single_quote_strings: bool = True
    char_literals: bool = False
    quoted_identifiers: bool = False
    doubled_quote_escape: bool = False
    backslash_escapes: bool = True
    backslash_continuation: bool = False
    leading_dot_continues: bool = False
    decorator_lines: bool = False
    continuation_keywords: Tuple[str, ...] = ()
    trailing_operators: Tuple[str, ...] = ()


SCALA_PROFILE = LexicalProfile(
    line_comments=("//",),
    block_comment=("/*", "*/"),
    triple_quotes=('"""',),
    raw_triple_quotes=True,
    single_quote_strings=False,
    char_literals=True,
    quoted_identifiers=True,
    leading_dot_continues=True,
    continuation_keywords=("else", "catch", "finally", "with", "extends", "match", "yield"),
    trailing_operators=("=", "=>", "+", "&&", "||", "::", "++", ","),
)

PYTHON_PROFILE = LexicalProfile(
    line_comments=("#",),
    triple_quotes=('"""', "'''"),
    backslash_continuation=True,
    decorator_lines=True,
    continuation_keywords=("else", "elif", "except", "finally"),
)

R_PROFILE = LexicalProfile(
    line_comments=("#",),
    quoted_identifiers=True,
    continuation_keywords=("else",),
    trailing_operators=("+", "-", "*", "/", "%>%", "|>", "<-", "=", "&", "|", ",", "~"),
)

SQL_PROFILE = LexicalProfile(
    separator=";",
    line_comments=("--",),
    block_comment=("/*", "*/"),
    quoted_identifiers=True,
)

# ANSI quoting: '' inside a literal is a quote, a backslash is just a character
ANSI_SQL_PROFILE = replace(SQL_PROFILE, doubled_quote_escape=True, backslash_escapes=False)


@dataclass(frozen=True)
class SourceBlock:
    """Code submitted by a caller, tagged with the language it is written in."""

    source: str
    kind: SessionKind


@dataclass(frozen=True)
class StatementUnit:
    """
    A slice of a SourceBlock that can be submitted on its own.

    ``text`` is the exact slice (including any leading blank or comment lines),
    ``separator`` the newline or ``;`` that ended it plus any trailing trivia.
    ``possibly_incomplete`` is set on the last unit when the block ended inside a
    string, a comment or an open bracket.
    """

    text: str
    separator: str
    offset: int
    possibly_incomplete: bool = False

    @property
    def code(self) -> str:
        return self.text.strip()

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


class _Scanner:
    """Single pass finite-state scanner over one block."""

    def __init__(self, source: str, profile: LexicalProfile):
        self.source = source
        self.profile = profile
        self.state = LexState.NORMAL
        self.closing = ""
        self.brackets: List[str] = []
        self.stray_closers = 0
        self.segment_has_code = False
        self.line_code_start: Optional[int] = None
        self.line_code_end: Optional[int] = None
        # (start, cut, has_code); cut is the index of the separator character
        self.segments: List[Tuple[int, int, bool]] = []

    def scan(self) -> List[Tuple[int, int, bool]]:
        src = self.source
        n = len(src)
        start = 0
        i = 0
        while i < n:
            ch = src[i]
            if self.state is LexState.NORMAL:
                if ch == self.profile.separator and not self.brackets:
                    if not self._continues(i):
                        self.segments.append((start, i, self.segment_has_code))
                        start = i + 1
                        self.segment_has_code = False
                    if ch == "\n":
                        self._new_line()
                    i += 1
                elif ch == "\n":
                    self._new_line()
                    i += 1
                else:
                    i = self._scan_normal(i)
            elif self.state is LexState.LINE_COMMENT:
                if ch == "\n":
                    # the newline itself may be a statement boundary
                    self.state = LexState.NORMAL
                else:
                    i += 1
            elif self.state is LexState.BLOCK_COMMENT:
                if src.startswith(self.closing, i):
                    self.state = LexState.NORMAL
                    i += len(self.closing)
                else:
                    if ch == "\n":
                        self._new_line()
                    i += 1
            else:
                i = self._scan_quoted(i)

        self.segments.append((start, n, self.segment_has_code))
        return self.segments

    @property
    def ended_cleanly(self) -> bool:
        return (
            self.state in (LexState.NORMAL, LexState.LINE_COMMENT) and not self.brackets
        )

    def _new_line(self):
        self.line_code_start = None
        self.line_code_end = None

    def _mark_code(self, begin: int, end: int):
        self.segment_has_code = True
        if self.line_code_start is None:
            self.line_code_start = begin
        self.line_code_end = end

    def _enter(self, state: LexState, closing: str):
        self.state = state
        self.closing = closing

    def _scan_normal(self, i: int) -> int:
        src = self.source
        p = self.profile

        if p.block_comment and src.startswith(p.block_comment[0], i):
            self._enter(LexState.BLOCK_COMMENT, p.block_comment[1])
            return i + len(p.block_comment[0])

        for marker in p.line_comments:
            if src.startswith(marker, i):
                self._enter(LexState.LINE_COMMENT, "\n")
                return i + len(marker)

        for quote in p.triple_quotes:
            if src.startswith(quote, i):
                self._mark_code(i, i + len(quote))
                self._enter(LexState.TRIPLE_QUOTE_STRING, quote)
                return i + len(quote)

        ch = src[i]
        if ch == '"':
            self._enter(LexState.DOUBLE_QUOTE_STRING, '"')
        elif ch == "'":
            if p.single_quote_strings:
                self._enter(LexState.SINGLE_QUOTE_STRING, "'")
            elif p.char_literals:
                match = _CHAR_LITERAL.match(src, i)
                if match:
                    self._mark_code(i, match.end())
                    return match.end()
        elif ch == "`" and p.quoted_identifiers:
            self._enter(LexState.QUOTED_IDENTIFIER, "`")
        elif ch in _OPENERS:
            self.brackets.append(ch)
        elif ch in _CLOSERS:
            self._close_bracket(_CLOSERS[ch])

        if not ch.isspace():
            self._mark_code(i, i + 1)
        return i + 1

    def _close_bracket(self, opener: str):
        if self.brackets and self.brackets[-1] == opener:
            self.brackets.pop()
        elif opener in self.brackets:
            # unwind to the matching opener, dropping the unclosed ones in between
            while self.brackets.pop() != opener:
                self.stray_closers += 1
        else:
            self.stray_closers += 1

    def _scan_quoted(self, i: int) -> int:
        src = self.source
        p = self.profile
        ch = src[i]

        escapes = p.backslash_escapes and not (
            self.state is LexState.QUOTED_IDENTIFIER
            or (self.state is LexState.TRIPLE_QUOTE_STRING and p.raw_triple_quotes)
        )
        if ch == "\\" and escapes:
            return i + 2

        if src.startswith(self.closing, i):
            if (
                p.doubled_quote_escape
                and self.state is not LexState.TRIPLE_QUOTE_STRING
                and src.startswith(self.closing, i + 1)
            ):
                return i + 2
            end = i + len(self.closing)
            self._mark_code(i, end)
            self.state = LexState.NORMAL
            return end

        if ch == "\n":
            self._new_line()
        return i + 1

    def _continues(self, i: int) -> bool:
        """Whether the statement goes on past the newline at ``i``."""
        p = self.profile
        if p.separator != "\n" or not self.segment_has_code:
            return False

        if self.line_code_start is not None:
            line_code = self.source[self.line_code_start : self.line_code_end]
            if p.backslash_continuation and line_code.endswith("\\"):
                return True
            if p.decorator_lines and line_code.startswith("@"):
                return True
            if any(line_code.endswith(op) for op in p.trailing_operators):
                return True

        next_line = self._next_code_line(i + 1)
        if next_line is None:
            return False
        if next_line[0] in " \t":
            return True
        if p.leading_dot_continues and next_line.startswith(".") and not next_line.startswith(".."):
            return True
        for keyword in p.continuation_keywords:
            if next_line.startswith(keyword):
                rest = next_line[len(keyword) : len(keyword) + 1]
                if not rest or not (rest.isalnum() or rest == "_"):
                    return True
        return False

    def _next_code_line(self, pos: int) -> Optional[str]:
        """The next line after ``pos`` that is neither blank nor a line comment."""
        src = self.source
        n = len(src)
        while pos < n:
            end = src.find("\n", pos)
            if end == -1:
                end = n
            line = src[pos:end]
            stripped = line.strip()
            if stripped and not any(
                stripped.startswith(marker) for marker in self.profile.line_comments
            ):
                return line
            pos = end + 1
        return None


class LexicalSegmenter:
    """
    Splits a SourceBlock into StatementUnits.

    A boundary (a newline, or ``;`` for SQL) is only honored outside strings and
    comments with no bracket open. Blank and comment-only lines are attached to the
    statement that follows them. The split never fails: a block that ends inside a
    string, a comment or an open bracket yields a final unit tagged
    ``possibly_incomplete``.
    """

    def __init__(self, sql_doubled_quote_escape: bool = True):
        self.sql_doubled_quote_escape = sql_doubled_quote_escape

    def profile_for(self, kind: SessionKind) -> LexicalProfile:
        if kind is SessionKind.PYSPARK:
            return PYTHON_PROFILE
        if kind is SessionKind.SPARKR:
            return R_PROFILE
        if kind is SessionKind.SQL:
            return ANSI_SQL_PROFILE if self.sql_doubled_quote_escape else SQL_PROFILE
        return SCALA_PROFILE

    def split(self, block: SourceBlock) -> List[StatementUnit]:
        source = block.source
        scanner = _Scanner(source, self.profile_for(block.kind))
        segments = scanner.scan()

        units: List[List] = []
        pending = ""
        for start, cut, has_code in segments:
            text = source[start:cut]
            separator = source[cut : cut + 1]
            if not has_code:
                pending += text + separator
                continue
            units.append([start - len(pending), pending + text, separator])
            pending = ""

        if pending:
            if units:
                units[-1][2] += pending
            else:
                units.append([0, pending, ""])

        incomplete = not scanner.ended_cleanly
        if incomplete or scanner.stray_closers:
            message = (
                "Source block ended in state {} with {} open and {} unmatched brackets".format(
                    scanner.state.value, len(scanner.brackets), scanner.stray_closers
                )
            )
            logger.debug(message)
            warnings.warn(SegmentationDegenerate(message), stacklevel=2)

        result = []
        for index, (offset, text, separator) in enumerate(units):
            is_last = index == len(units) - 1
            result.append(
                StatementUnit(
                    text=text,
                    separator=separator,
                    offset=offset,
                    possibly_incomplete=incomplete and is_last,
                )
            )
        return result
