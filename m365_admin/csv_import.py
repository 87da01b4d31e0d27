"""CSV parsing and validation for bulk user imports."""
from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import DEFAULT_COLUMNS, ImportConfig
from .models import ImportRecord, ImportSummary, RecordStatus, RowError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USAGE_LOCATION_PATTERN = re.compile(r"^[A-Z]{2}$")
DISPLAY_NAME_FORBIDDEN = re.compile(r'[<>"]')
DISPLAY_NAME_MIN = 2
DISPLAY_NAME_MAX = 64
PASSWORD_MIN = 8

_TRUE_VALUES = {"true", "1", "yes"}
_FALSE_VALUES = {"false", "0", "no"}

_TEMPLATE_FIELDS = (
    "display_name",
    "principal_name",
    "first_name",
    "last_name",
    "job_title",
    "department",
    "office",
    "manager",
    "license_sku",
    "groups",
    "password",
    "force_password_change",
    "usage_location",
)
_TEMPLATE_ROWS = (
    (
        "John Doe",
        "john.doe@contoso.com",
        "John",
        "Doe",
        "Software Engineer",
        "IT",
        "New York",
        "",
        "DEVELOPERPACK_E5",
        "Engineering;All Employees",
        "",
        "true",
        "US",
    ),
    (
        "Jane Smith",
        "jane.smith@contoso.com",
        "Jane",
        "Smith",
        "Product Manager",
        "Marketing",
        "San Francisco",
        "john.doe@contoso.com",
        "SPE_E5",
        "",
        "",
        "true",
        "US",
    ),
)


def _parse_flag(value: str) -> Optional[bool]:
    if not value:
        return None
    return value.lower() not in _FALSE_VALUES


def _read_rows(reader: Any, errors: List[RowError]) -> Iterator[List[str]]:
    try:
        for row in reader:
            yield row
    except csv.Error as exc:
        logger.warning("Stopped reading CSV at line %s: %s", reader.line_num, exc)
        errors.append(_unreadable(reader.line_num, exc))


def _unreadable(line: int, exc: csv.Error) -> RowError:
    return RowError(row=line, field="file", value="", error=f"Unreadable CSV content: {exc}")


@dataclass(frozen=True)
class ImportParseResult:
    """Parsed records plus the validation summary.

    Records are fully materialized, so the result can be iterated any number
    of times.
    """

    records: Tuple[ImportRecord, ...]
    summary: ImportSummary

    def __iter__(self) -> Iterator[ImportRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def provisionable(self) -> List[ImportRecord]:
        return [record for record in self.records if record.is_provisionable]

    def to_dict(self) -> Dict[str, object]:
        return {
            "users": [record.to_dict() for record in self.records],
            "summary": self.summary.to_dict(),
        }


class CSVParser:
    """Turns CSV text into :class:`ImportRecord` objects with validation flags."""

    def __init__(self, options: Optional[ImportConfig] = None) -> None:
        self.options = options or ImportConfig()
        self.columns: Dict[str, str] = dict(DEFAULT_COLUMNS)
        self.columns.update(self.options.columns or {})

    def parse(self, text: str) -> ImportParseResult:
        content = (text or "").lstrip("\ufeff")
        if not content.strip():
            summary = ImportSummary(
                errors=[RowError(row=0, field="file", value="", error="CSV file is empty")]
            )
            return ImportParseResult(records=(), summary=summary)

        reader = csv.reader(io.StringIO(content))
        try:
            header = [cell.strip() for cell in next(reader)]
        except csv.Error as exc:
            summary = ImportSummary(errors=[_unreadable(reader.line_num, exc)])
            return ImportParseResult(records=(), summary=summary)
        index: Dict[str, int] = {}
        for position, name in enumerate(header):
            index.setdefault(name, position)

        errors: List[RowError] = []
        missing = [
            self.columns[name] for name in self.options.required_fields if self.columns[name] not in index
        ]
        if missing:
            errors.append(
                RowError(
                    row=1,
                    field="headers",
                    value=",".join(header),
                    error=f"Missing required columns: {', '.join(missing)}",
                )
            )

        records: List[ImportRecord] = []
        first_seen: Dict[str, int] = {}
        for row in _read_rows(reader, errors):
            if not any(cell.strip() for cell in row):
                continue
            record = self._build_record(reader.line_num, row, index)
            problems: List[RowError] = []
            if len(row) != len(header):
                problems.append(
                    RowError(
                        row=record.row_number,
                        field="structure",
                        value=",".join(row),
                        error=f"Row has {len(row)} values but expected {len(header)}",
                    )
                )
            problems.extend(self._validate(record, row, index))

            if problems:
                record.status = RecordStatus.INVALID
            elif self.options.check_duplicates:
                key = record.principal_name.lower()
                if key in first_seen:
                    record.status = RecordStatus.DUPLICATE
                    problems.append(
                        RowError(
                            row=record.row_number,
                            field="principal_name",
                            value=record.principal_name,
                            error=f"Duplicate principal name in CSV (first seen on row {first_seen[key]})",
                        )
                    )
                else:
                    first_seen[key] = record.row_number
                    record.status = RecordStatus.VALID
            else:
                record.status = RecordStatus.VALID

            record.errors = [problem.error for problem in problems]
            errors.extend(problems)
            records.append(record)

        summary = ImportSummary(
            total=len(records),
            valid=sum(1 for record in records if record.status is RecordStatus.VALID),
            invalid=sum(1 for record in records if record.status is RecordStatus.INVALID),
            duplicate=sum(1 for record in records if record.status is RecordStatus.DUPLICATE),
            errors=errors,
        )
        logger.info(
            "CSV parse result: %s total, %s valid, %s invalid, %s duplicates",
            summary.total,
            summary.valid,
            summary.invalid,
            summary.duplicate,
        )
        return ImportParseResult(records=tuple(records), summary=summary)

    # ------------------------------------------------------------------ #
    # Row helpers                                                        #
    # ------------------------------------------------------------------ #
    def _cell(self, row: Sequence[str], index: Mapping[str, int], field_name: str) -> str:
        position = index.get(self.columns[field_name])
        if position is None or position >= len(row):
            return ""
        return row[position].strip()

    def _build_record(self, row_number: int, row: Sequence[str], index: Mapping[str, int]) -> ImportRecord:
        def cell(name: str) -> str:
            return self._cell(row, index, name)

        display_name = cell("display_name")
        first_name = cell("first_name")
        last_name = cell("last_name")
        if display_name and not first_name:
            first_name = display_name.split()[0]
        if display_name and not last_name:
            last_name = " ".join(display_name.split()[1:])

        return ImportRecord(
            row_number=row_number,
            display_name=display_name,
            principal_name=cell("principal_name"),
            first_name=first_name,
            last_name=last_name,
            department=cell("department") or None,
            job_title=cell("job_title") or None,
            office=cell("office") or None,
            manager=cell("manager") or None,
            license_sku=cell("license_sku") or None,
            groups=cell("groups").split(";"),
            password=cell("password") or None,
            force_password_change=_parse_flag(cell("force_password_change")),
            usage_location=cell("usage_location") or None,
        )

    def _validate(
        self, record: ImportRecord, row: Sequence[str], index: Mapping[str, int]
    ) -> List[RowError]:
        problems: List[RowError] = []
        row_number = record.row_number

        def fail(field_name: str, value: str, message: str) -> None:
            problems.append(RowError(row=row_number, field=field_name, value=value, error=message))

        for name in self.options.required_fields:
            if not self._cell(row, index, name):
                fail(name, "", f"Required field '{self.columns[name]}' is missing or empty")

        if self.options.validate_emails and record.principal_name:
            if not EMAIL_PATTERN.match(record.principal_name):
                fail("principal_name", record.principal_name, "Invalid email format")

        if record.display_name:
            if len(record.display_name) < DISPLAY_NAME_MIN:
                fail(
                    "display_name",
                    record.display_name,
                    f"Display name must be at least {DISPLAY_NAME_MIN} characters long",
                )
            if len(record.display_name) > DISPLAY_NAME_MAX:
                fail(
                    "display_name",
                    record.display_name,
                    f"Display name cannot exceed {DISPLAY_NAME_MAX} characters",
                )
            if DISPLAY_NAME_FORBIDDEN.search(record.display_name):
                fail("display_name", record.display_name, 'Display name cannot contain < > or " characters')

        if record.password:
            if len(record.password) < PASSWORD_MIN:
                fail("password", "***", f"Password must be at least {PASSWORD_MIN} characters long")
            if not (
                any(char.islower() for char in record.password)
                and any(char.isupper() for char in record.password)
                and any(char.isdigit() for char in record.password)
            ):
                fail(
                    "password",
                    "***",
                    "Password must contain at least one uppercase, lowercase, and numeric character",
                )

        force_change = self._cell(row, index, "force_password_change")
        if force_change and force_change.lower() not in _TRUE_VALUES | _FALSE_VALUES:
            fail(
                "force_password_change",
                force_change,
                "Force password change must be one of true, false, yes, no, 1, 0",
            )

        if record.usage_location and not USAGE_LOCATION_PATTERN.match(record.usage_location):
            fail(
                "usage_location",
                record.usage_location,
                "Usage location must be a 2-letter country code (e.g., US, GB, CA)",
            )
        return problems


def parse_csv(text: str, options: Optional[ImportConfig] = None) -> ImportParseResult:
    return CSVParser(options).parse(text)


def generate_template(columns: Optional[Mapping[str, str]] = None) -> str:
    """Return a CSV template with a header row and sample data."""

    names = dict(DEFAULT_COLUMNS)
    names.update(columns or {})
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([names[field_name] for field_name in _TEMPLATE_FIELDS])
    writer.writerows(_TEMPLATE_ROWS)
    return buffer.getvalue()


__all__ = ["CSVParser", "ImportParseResult", "generate_template", "parse_csv"]
