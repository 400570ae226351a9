"""
CSV row parsing for record ingestion.

Turns uploaded CSV text into normalized rows: content is detected across the
column names labeling exports use, the row type can be overridden per row,
and rows carry the source system's task id for duplicate detection.
"""

import csv
from dataclasses import dataclass, field
from io import StringIO
from typing import Any

CONTENT_COLUMNS = (
    "prompt",
    "feedback_content",
    "feedback",
    "content",
    "body",
    "task_content",
    "text",
    "message",
    "instruction",
    "response",
)
EXTERNAL_ID_COLUMNS = ("task_id", "id", "uuid", "record_id")
MIN_CONTENT_LENGTH = 10

SKIP_KEYWORD_MISMATCH = "Keyword Mismatch"
SKIP_DUPLICATE_ID = "Duplicate ID"
SKIP_EMPTY_ROW = "Empty Row"


@dataclass
class ParsedRow:
    """One CSV row ready to be stored as a data record."""

    row_number: int
    content: str
    record_type: str
    external_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


def read_csv_rows(csv_content: str | bytes) -> list[dict[str, str]]:
    """Read CSV text into a list of column -> value dictionaries."""
    if isinstance(csv_content, bytes):
        csv_content = csv_content.decode("utf-8")

    reader = csv.DictReader(StringIO(csv_content))
    # DictReader puts overflow cells under a None key
    return [
        {k.strip(): (v or "").strip() for k, v in row.items() if k is not None}
        for row in reader
    ]


def count_csv_rows(csv_content: str | bytes) -> int:
    return len(read_csv_rows(csv_content))


def extract_content(row: dict[str, str]) -> str:
    """
    Pick the text of a row.

    Known content columns are tried in order; when none holds a meaningful
    value the longest text cell wins.
    """
    content = next((row[c] for c in CONTENT_COLUMNS if row.get(c)), "")
    if len(content) < MIN_CONTENT_LENGTH:
        candidates = sorted(
            (v for v in row.values() if len(v) > MIN_CONTENT_LENGTH),
            key=len,
            reverse=True,
        )
        if candidates:
            content = candidates[0]
    return content


def detect_record_type(row: dict[str, str], default: str) -> str:
    row_type = row.get("type", "").lower()
    if row_type == "feedback":
        return "FEEDBACK"
    if row_type in ("prompt", "task"):
        return "TASK"
    return default


def extract_external_id(row: dict[str, str]) -> str | None:
    return next((row[c] for c in EXTERNAL_ID_COLUMNS if row.get(c)), None)


def matches_keywords(content: str, keywords: list[str]) -> bool:
    """Case-insensitive match against any keyword; no keywords matches all."""
    if not keywords:
        return True
    lowered = content.lower()
    return any(k.lower() in lowered for k in keywords if k)


def parse_row(
    row: dict[str, str], row_number: int, default_record_type: str
) -> ParsedRow | None:
    """Normalize a CSV row, or return None when it has no usable content."""
    content = extract_content(row)
    if not content:
        return None

    return ParsedRow(
        row_number=row_number,
        content=content,
        record_type=detect_record_type(row, default_record_type),
        external_id=extract_external_id(row),
        metadata={**row, "source_row": row_number},
    )
