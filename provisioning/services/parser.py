"""
Turns an uploaded member file into CandidateRows.

Either the whole file is rejected (MalformedFileError) or every non-empty
data line becomes exactly one CandidateRow. Lines that cannot be read
cleanly keep whatever data they had and carry a parse problem that the
rule engine reports later.
"""

import csv
import io
import re
from dataclasses import dataclass, field

from provisioning.schemas.imports import CandidateRow
from provisioning.services.errors import MalformedFileError

# Normalized header -> CandidateRow attribute
HEADER_ALIASES: dict[str, str] = {
    "name": "name",
    "email": "email",
    "username": "username",
    "role": "role",
    "department": "department",
    "usertype": "worker_type",
    "workertype": "worker_type",
    "password": "password",
    "pin": "password",
    "manageremail": "manager_email",
    "managerpersonid": "manager_person_id",
    "manageremployeeid": "manager_employee_id",
    "companycode": "company_code",
    "employeeid": "employee_id",
    "personid": "person_id",
    "position": "position",
    "shift": "shift",
}

# Lower-cased on read so matching against enums is case-insensitive
LOWERCASE_FIELDS = ("role", "worker_type")

MSG_COLUMN_MISMATCH = "Column count mismatch"


@dataclass
class ParsedFile:
    rows: list[CandidateRow]
    columns: list[str]
    parse_errors: list[str] = field(default_factory=list)


def normalize_header(raw: str) -> str:
    return re.sub(r"[^a-z0-9]", "", raw.strip().strip('"').strip("'").lower())


def decode_file(data: bytes, *, max_bytes: int) -> str:
    if not data:
        raise MalformedFileError(["File is empty"])
    if len(data) > max_bytes:
        raise MalformedFileError([f"File too large: {len(data)} bytes (limit {max_bytes})"])
    try:
        # utf-8-sig drops a leading BOM written by spreadsheet exports
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedFileError([f"File is not valid UTF-8 (byte {exc.start})"]) from exc


def _map_header(cells: list[str]) -> list[str | None]:
    mapped: list[str | None] = []
    seen: set[str] = set()
    duplicates: list[str] = []
    for cell in cells:
        attr = HEADER_ALIASES.get(normalize_header(cell))
        if attr is not None:
            if attr in seen:
                duplicates.append(cell.strip())
            seen.add(attr)
        mapped.append(attr)

    errors: list[str] = []
    if duplicates:
        errors.append(f"Duplicate header columns: {', '.join(duplicates)}")
    if "name" not in seen:
        errors.append("Header is missing required column: name")
    if "email" not in seen and "username" not in seen:
        errors.append("Header must contain an email or username column")
    if errors:
        raise MalformedFileError(errors)
    return mapped


def _is_blank(cells: list[str]) -> bool:
    return all(not c.strip() for c in cells)


def parse_member_file(data: bytes, *, max_rows: int, max_bytes: int) -> ParsedFile:
    text = decode_file(data, max_bytes=max_bytes)
    reader = csv.reader(io.StringIO(text, newline=""))

    header: list[str] | None = None
    for cells in reader:
        if not _is_blank(cells):
            header = cells
            break
    if header is None:
        raise MalformedFileError(["CSV must have a header row and at least one data row"])

    columns = _map_header(header)

    rows: list[CandidateRow] = []
    parse_errors: list[str] = []
    try:
        for cells in reader:
            if _is_blank(cells):
                continue
            index = len(rows)
            if index >= max_rows:
                raise MalformedFileError([f"Too many rows: limit is {max_rows}"])

            values: dict[str, str] = {}
            for attr, cell in zip(columns, cells):
                cell = cell.strip()
                if attr is None or not cell:
                    continue
                values[attr] = cell.lower() if attr in LOWERCASE_FIELDS else cell

            problems: list[str] = []
            if len(cells) != len(columns):
                problems.append(MSG_COLUMN_MISMATCH)
                parse_errors.append(
                    f"Line {reader.line_num}: expected {len(columns)} columns, found {len(cells)}"
                )

            rows.append(
                CandidateRow(index=index, line_number=reader.line_num, parse_problems=problems, **values)
            )
    except csv.Error as exc:
        raise MalformedFileError([f"Line {reader.line_num}: {exc}"]) from exc

    if not rows:
        raise MalformedFileError(["CSV must have a header row and at least one data row"])

    return ParsedFile(rows=rows, columns=[c for c in columns if c], parse_errors=parse_errors)


def estimate_rows(byte_size: int, bytes_per_row: int) -> int:
    return max(1, byte_size // bytes_per_row)
