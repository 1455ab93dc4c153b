"""Parsing and validation of uploaded train/eval datasets.

Accepted formats:
- CSV with columns text,true_category,true_risk (header row optional)
- JSON array of {"text", "true_category", "true_risk"} objects

Categories are lower-cased and risks upper-cased before validation against
the label vocabularies. Any invalid row rejects the whole upload with one
message per bad row.
"""

import csv
import io
import json
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from src.labels import CATEGORIES, RISK_LEVELS, normalize_category, normalize_risk
from src.training.errors import DatasetError

EXPECTED_COLUMNS = ("text", "true_category", "true_risk")


class SampleRow(BaseModel):
    text: str
    true_category: str
    true_risk: str

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Missing or empty text")
        return v

    @field_validator("true_category")
    @classmethod
    def validate_category(cls, v: str) -> str:
        category = normalize_category(v)
        if not category:
            raise ValueError("Missing true_category")
        if category not in CATEGORIES:
            raise ValueError(f'Invalid category "{v}". Must be one of: {", ".join(CATEGORIES)}')
        return category

    @field_validator("true_risk")
    @classmethod
    def validate_risk(cls, v: str) -> str:
        risk = normalize_risk(v)
        if not risk:
            raise ValueError("Missing true_risk")
        if risk not in RISK_LEVELS:
            raise ValueError(f'Invalid risk "{v}". Must be one of: {", ".join(RISK_LEVELS)}')
        return risk


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        field = ".".join(str(loc) for loc in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        parts.append(f"{field}: {message}" if field else message)
    return "; ".join(parts)


def validate_rows(rows: list[Any], first_row_number: int = 1) -> list[SampleRow]:
    """Validate already-decoded rows.

    Raises:
        DatasetError: If the list is empty or any row is invalid
    """
    if not rows:
        raise DatasetError("Dataset is empty", ["Dataset is empty"])

    samples: list[SampleRow] = []
    errors: list[str] = []
    for offset, row in enumerate(rows):
        number = first_row_number + offset
        if not isinstance(row, dict):
            errors.append(f"Row {number}: Must be an object")
            continue
        try:
            samples.append(SampleRow.model_validate({k: row.get(k) or "" for k in EXPECTED_COLUMNS}))
        except ValidationError as e:
            errors.append(f"Row {number}: {_describe(e)}")

    if errors:
        raise DatasetError(f"{len(errors)} invalid row(s)", errors)
    return samples


def parse_csv(content: str) -> list[SampleRow]:
    """Parse CSV text. Row numbers in errors are the physical line a record starts on."""
    reader = csv.reader(io.StringIO(content), skipinitialspace=True)
    records: list[tuple[int, list[str]]] = []
    first_line = 1
    for cells in reader:
        if any(cell.strip() for cell in cells):
            records.append((first_line, cells))
        first_line = reader.line_num + 1

    if not records:
        raise DatasetError("CSV file is empty", ["CSV file is empty"])

    header = [cell.strip().lower() for cell in records[0][1]]
    has_header = all(column in header for column in EXPECTED_COLUMNS)
    positions = {column: header.index(column) for column in EXPECTED_COLUMNS} if has_header else {}

    samples: list[SampleRow] = []
    errors: list[str] = []
    for line_number, cells in records[1:] if has_header else records:
        if len(cells) < 3:
            errors.append(
                f"Row {line_number}: Invalid format. Expected 3 columns: text,true_category,true_risk"
            )
            continue
        if has_header:
            row = {
                column: cells[position]
                for column, position in positions.items()
                if position < len(cells)
            }
        else:
            row = dict(zip(EXPECTED_COLUMNS, cells[:3]))
        try:
            samples.extend(validate_rows([row], first_row_number=line_number))
        except DatasetError as e:
            errors.extend(e.errors)

    if errors:
        raise DatasetError(f"{len(errors)} invalid row(s)", errors)
    if not samples:
        raise DatasetError("CSV file has no data rows", ["CSV file has no data rows"])
    return samples


def parse_json(content: str) -> list[SampleRow]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise DatasetError("Invalid JSON", [f"JSON parsing error: {e}"]) from e

    if not isinstance(parsed, list):
        raise DatasetError("Invalid JSON", ["JSON must be an array of objects"])
    return validate_rows(parsed)


def parse_dataset(content: str | list[Any], filename: str | None = None) -> list[SampleRow]:
    """Parse an upload, detecting the format from the filename or content.

    Raises:
        DatasetError: If the upload is neither text nor a decoded list, or
            any row is invalid
    """
    if isinstance(content, list):
        return validate_rows(content)
    if not isinstance(content, str):
        raise DatasetError("Invalid dataset", ["Dataset must be CSV text or a JSON array"])

    trimmed = content.strip()
    if filename:
        lowered = filename.lower()
        if lowered.endswith(".json"):
            return parse_json(trimmed)
        if lowered.endswith(".csv"):
            return parse_csv(content)

    if trimmed.startswith("[") or trimmed.startswith("{"):
        return parse_json(trimmed)
    return parse_csv(content)
