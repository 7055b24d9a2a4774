"""
Turns raw statement output into display-ready results.

Classification only ever looks at what the server returned, never at the code
that produced it. It does not raise: anything it cannot make sense of is shown
as plain text, verbatim.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from livy_interpreter.config import DEFAULT_MAX_FIELD_LENGTH, DEFAULT_MAX_RESULT_ROWS
from livy_interpreter.statement import RawOutput
from livy_interpreter.types import MimeType

logger = logging.getLogger(__name__)

HTML_MARKER = "%html"
TABLE_MARKER = "%table"
IMAGE_MARKER = "%img"

ELLIPSIS = "..."

_IMAGE_TYPES = (MimeType.PNG, MimeType.JPEG, MimeType.SVG)


class ResultKind(Enum):
    TEXT = "TEXT"
    HTML = "HTML"
    TABLE = "TABLE"
    IMAGE = "IMAGE"
    ERROR = "ERROR"


@dataclass(frozen=True)
class TypedResult:
    kind: ResultKind
    data: Union[str, bytes]
    mime_type: Optional[MimeType] = None

    @classmethod
    def text(cls, data: str) -> "TypedResult":
        return cls(ResultKind.TEXT, data, MimeType.PLAIN)

    @classmethod
    def html(cls, data: str) -> "TypedResult":
        return cls(ResultKind.HTML, data, MimeType.HTML)

    @classmethod
    def error(cls, trace: str) -> "TypedResult":
        return cls(ResultKind.ERROR, trace, MimeType.PLAIN)

    @property
    def is_error(self) -> bool:
        return self.kind is ResultKind.ERROR


def _strip_marker(text: str, marker: str) -> Optional[str]:
    """The text after a leading ``marker``, or None when it does not start with it."""
    stripped = text.lstrip()
    if not stripped.startswith(marker):
        return None
    rest = stripped[len(marker) :]
    if rest and not rest[0].isspace():
        # %htmlfoo is not a directive
        return None
    return rest[1:] if rest[:1] in (" ", "\n") else rest


def parse_show_output(text: str) -> Optional[Tuple[List[str], List[List[str]]]]:
    """
    Parse the ASCII grid printed by Spark's ``Dataset.show()``::

        +-----+-----+
        |col_1|col_2|
        +-----+-----+
        |hello|   20|
        +-----+-----+

    Returns (columns, rows), or None if ``text`` holds no grid.
    """
    lines = [line.strip() for line in text.splitlines()]
    borders = [i for i, line in enumerate(lines) if line.startswith("+-") and line.endswith("+")]
    if len(borders) < 2:
        return None

    grid = [
        line
        for line in lines[borders[0] : borders[-1] + 1]
        if line.startswith("|") and line.endswith("|")
    ]
    if not grid:
        return None

    cells = [[cell.strip() for cell in line[1:-1].split("|")] for line in grid]
    columns, rows = cells[0], cells[1:]
    if any(len(row) != len(columns) for row in rows):
        return None
    return columns, rows


class OutputClassifier:
    """
    Classifies RawOutput into a TypedResult.

    Tables are rendered as a tab separated header line followed by one tab separated
    line per row. With ``enable_field_truncation`` on, each cell longer than
    ``max_field_length`` is cut so that, ellipsis included, it is exactly
    ``max_field_length`` characters long.
    """

    def __init__(
        self,
        max_result_rows: int = DEFAULT_MAX_RESULT_ROWS,
        max_field_length: int = DEFAULT_MAX_FIELD_LENGTH,
        enable_field_truncation: bool = True,
    ):
        self.max_result_rows = max_result_rows
        self.max_field_length = max_field_length
        self.enable_field_truncation = enable_field_truncation

    def classify(self, raw: RawOutput) -> TypedResult:
        if not raw.success:
            trace = raw.trace if raw.trace is not None else raw.text
            return TypedResult.error(trace or "Unknown error")

        try:
            return self._classify_success(raw)
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.debug("Falling back to text output: %s", e)
            return TypedResult.text(raw.text)

    def _classify_success(self, raw: RawOutput) -> TypedResult:
        data = raw.data or {}
        text = raw.text or ""

        for mime_type in _IMAGE_TYPES:
            if data.get(mime_type.value):
                return TypedResult(ResultKind.IMAGE, data[mime_type.value], mime_type)
        image = _strip_marker(text, IMAGE_MARKER)
        if image is not None:
            return TypedResult(ResultKind.IMAGE, image.strip())

        table = self._table_from_data(data)
        if table is not None:
            return table
        tabbed = _strip_marker(text, TABLE_MARKER)
        if tabbed is not None:
            return self._table_from_tabbed_text(tabbed)

        html = _strip_marker(text, HTML_MARKER)
        if html is not None:
            return TypedResult.html(html)
        if isinstance(data.get(MimeType.HTML.value), str):
            return TypedResult.html(data[MimeType.HTML.value])

        return TypedResult.text(text)

    def _table_from_data(self, data: Dict[str, Any]) -> Optional[TypedResult]:
        livy_table = data.get(MimeType.LIVY_TABLE.value)
        if isinstance(livy_table, dict):
            columns = [header["name"] for header in livy_table["headers"]]
            return self._table(columns, livy_table.get("data") or [])

        value = data.get(MimeType.JSON.value)
        if isinstance(value, dict) and "schema" in value and "data" in value:
            columns = [f["name"] for f in value["schema"]["fields"]]
            return self._table(columns, value["data"] or [])
        if isinstance(value, list) and value and all(isinstance(row, dict) for row in value):
            columns: List[str] = []
            for row in value:
                columns.extend(name for name in row if name not in columns)
            return self._table(columns, value)
        return None

    def _table_from_tabbed_text(self, text: str) -> TypedResult:
        lines = [line for line in text.strip("\n").split("\n") if line != ""]
        if not lines:
            return TypedResult(ResultKind.TABLE, "", MimeType.PLAIN)
        columns = lines[0].split("\t")
        rows = [line.split("\t") for line in lines[1:]]
        return self._table(columns, rows)

    def show_output_to_table(self, text: str) -> TypedResult:
        """Turn ``Dataset.show()`` output into a TABLE result, or TEXT if it is not a grid."""
        parsed = parse_show_output(text)
        if parsed is None:
            return TypedResult.text(text)
        return self._table(*parsed)

    def _table(self, columns: Sequence[str], rows: Sequence[Any]) -> TypedResult:
        return TypedResult(ResultKind.TABLE, self.render_table(columns, rows), MimeType.PLAIN)

    def render_table(self, columns: Sequence[str], rows: Sequence[Any]) -> str:
        if len(rows) > self.max_result_rows:
            logger.debug(
                "Table has %s rows, showing the first %s", len(rows), self.max_result_rows
            )
        lines = ["\t".join(self._cell(column) for column in columns)]
        for row in rows[: self.max_result_rows]:
            if isinstance(row, dict):
                values = [row.get(column) for column in columns]
            else:
                values = list(row)
            lines.append("\t".join(self._cell(value) for value in values))
        return "\n".join(lines)

    def _cell(self, value: Any) -> str:
        text = self._format(value).replace("\t", " ").replace("\n", " ")
        if self.enable_field_truncation and len(text) > self.max_field_length:
            return text[: self.max_field_length - len(ELLIPSIS)] + ELLIPSIS
        return text

    @staticmethod
    def _format(value: Any) -> str:
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
