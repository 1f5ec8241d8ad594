"""Data access layer for the band ledger.

This module reads from and writes to the ledger workbook, a single ``.xlsx``
file holding one worksheet per collection (``Bands``, ``Transactions``,
``ActivityLogs`` and ``Reports``). Business rules belong in
:mod:`band_ledger.core_logic`.

The public API is organised around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading typed records, appending new rows, and rewriting
   a band row in place when its lifecycle advances.

Timestamps are stored as ISO-8601 strings so that timezone offsets survive a
round trip through Excel.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_DEPOSITS, SHEET_COLUMNS, SheetName, VisitorType


CONFIG_FILE_NAME = "config.ini"
BANDS_SHEET = SheetName.BANDS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
ACTIVITY_LOGS_SHEET = SheetName.ACTIVITY_LOGS.value
REPORTS_SHEET = SheetName.REPORTS.value

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    park_name: str
    adult_deposit: int = DEFAULT_DEPOSITS[VisitorType.ADULT]
    child_deposit: int = DEFAULT_DEPOSITS[VisitorType.CHILD]
    time_zone: Optional[str] = None

    def default_deposit(self, visitor_type: VisitorType) -> int:
        if visitor_type is VisitorType.ADULT:
            return self.adult_deposit
        return self.child_deposit


@dataclass(frozen=True)
class BandRow:
    """In-memory view of a row from the ``Bands`` sheet."""

    band_id: str
    code: str
    visitor_type: str
    deposit_amount: int
    printed_by: str
    printed_at: datetime
    entry_time: Optional[datetime]
    exit_time: Optional[datetime]
    is_active: bool
    is_refunded: bool


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    band_id: str
    transaction_type: str
    amount: int
    timestamp: datetime
    processed_by: str


@dataclass(frozen=True)
class ActivityLogRow:
    """In-memory view of a row from the ``ActivityLogs`` sheet."""

    log_id: str
    user_id: str
    action: str
    details: str
    timestamp: datetime


@dataclass(frozen=True)
class ReportRow:
    """In-memory view of a row from the ``Reports`` sheet."""

    report_id: str
    start_date: datetime
    end_date: datetime
    total_visitors: int
    total_adults: int
    total_children: int
    total_deposits: int
    total_refunds: int
    generated_by: str
    generated_at: datetime


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the ledger store.

    An explicit path wins without verification so callers can deliberately
    target a non-standard location. Otherwise the search walks up from the
    current working directory toward the filesystem root and returns the first
    ``config.ini`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory contains ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] ParkName`` are required. The
    ``[Defaults]`` deposit rates are optional and fall back to the standard
    Adult/Child rates. ``[System] TimeZone`` optionally names the IANA zone
    whose calendar decides which day a timestamp belongs to. Relative data file paths are anchored at ``base_path``
    (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative ``DataFile``
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If a deposit rate is not a non-negative integer, or the
            time zone is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        park_name = parser.get("System", "ParkName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    adult_deposit = parser.getint(
        "Defaults", "AdultDeposit", fallback=DEFAULT_DEPOSITS[VisitorType.ADULT])
    child_deposit = parser.getint(
        "Defaults", "ChildDeposit", fallback=DEFAULT_DEPOSITS[VisitorType.CHILD])
    if adult_deposit < 0 or child_deposit < 0:
        raise ValueError("Configured deposit rates must be zero or positive")

    time_zone = parser.get("System", "TimeZone", fallback="").strip() or None
    if time_zone is not None:
        try:
            ZoneInfo(time_zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown time zone in configuration: {time_zone}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        park_name=park_name,
        adult_deposit=adult_deposit,
        child_deposit=child_deposit,
        time_zone=time_zone,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and check that every collection sheet exists.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the collection sheets is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    validate_workbook(wb)
    log.debug("Opened ledger workbook '%s'", data_file)
    return wb


def validate_workbook(workbook: Workbook) -> None:
    """Raise ``KeyError`` when a collection sheet or header is missing."""

    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name not in workbook.sheetnames:
            raise KeyError(f"Workbook is missing sheet: {sheet_name}")
        headers = [cell.value for cell in workbook[sheet_name][1]]
        if headers[: len(columns)] != list(columns):
            raise KeyError(f"Unexpected header layout on sheet: {sheet_name}")


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook wholesale, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserialize: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def iter_bands(workbook: Workbook) -> Iterable[BandRow]:
    """Stream band records from the ``Bands`` worksheet in sheet order.

    Args:
        workbook (Workbook): Workbook containing the ``Bands`` sheet.

    Yields:
        BandRow: One typed record per populated row.
    """

    return _iter_sheet(workbook, BANDS_SHEET, deserialize_band)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream deposit and refund records from the ``Transactions`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the transaction sheet.

    Yields:
        TransactionRow: Typed record for each populated row.
    """

    return _iter_sheet(workbook, TRANSACTIONS_SHEET, deserialize_transaction)


def iter_activity_logs(workbook: Workbook) -> Iterable[ActivityLogRow]:
    """Stream audit entries from the ``ActivityLogs`` worksheet."""

    return _iter_sheet(workbook, ACTIVITY_LOGS_SHEET, deserialize_activity_log)


def iter_reports(workbook: Workbook) -> Iterable[ReportRow]:
    """Stream persisted report snapshots from the ``Reports`` worksheet."""

    return _iter_sheet(workbook, REPORTS_SHEET, deserialize_report)


def append_band(workbook: Workbook, record: BandRow) -> None:
    """Append a newly issued band to the ``Bands`` worksheet."""

    workbook[BANDS_SHEET].append(serialize_band(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a deposit or refund to the ``Transactions`` worksheet.

    The ledger is append-only; there is deliberately no update counterpart.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_activity_log(workbook: Workbook, record: ActivityLogRow) -> None:
    """Append an audit entry to the ``ActivityLogs`` worksheet."""

    workbook[ACTIVITY_LOGS_SHEET].append(serialize_activity_log(record))


def append_report(workbook: Workbook, record: ReportRow) -> None:
    """Append a report snapshot to the ``Reports`` worksheet."""

    workbook[REPORTS_SHEET].append(serialize_report(record))


def update_band(workbook: Workbook, record: BandRow) -> None:
    """Rewrite the row of an existing band with the values of ``record``.

    The row is located by ``BandID`` and every column is overwritten in the
    sheet's column order, so the caller is responsible for only changing the
    lifecycle fields.

    Args:
        workbook (Workbook): Workbook containing the bands sheet.
        record (BandRow): Updated band state.

    Raises:
        KeyError: If no row carries ``record.band_id``.
    """

    row_index = locate_row(workbook, BANDS_SHEET, "BandID", record.band_id)
    if row_index is None:
        raise KeyError(f"Band not found: {record.band_id}")

    sheet = workbook[BANDS_SHEET]
    for col, value in enumerate(serialize_band(record), start=1):
        sheet.cell(row=row_index, column=col, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index] == key_value:
            return row_idx

    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 text, keeping ``None`` as a blank cell."""

    return value.isoformat() if value is not None else None


def parse_timestamp(raw: object) -> Optional[datetime]:
    """Parse an ISO-8601 cell back into a ``datetime``.

    Cells that Excel converted into native dates are accepted as-is; blanks
    become ``None``.
    """

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _require_timestamp(raw: object, column: str) -> datetime:
    parsed = parse_timestamp(raw)
    if parsed is None:
        raise ValueError(f"Missing timestamp in column {column}")
    return parsed


def _as_int(raw: object) -> int:
    return int(raw) if raw is not None else 0


def serialize_band(record: BandRow) -> list[object]:
    """Convert a band dataclass into the ``Bands`` column ordering."""

    return [
        record.band_id,
        record.code,
        record.visitor_type,
        record.deposit_amount,
        record.printed_by,
        format_timestamp(record.printed_at),
        format_timestamp(record.entry_time),
        format_timestamp(record.exit_time),
        record.is_active,
        record.is_refunded,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.band_id,
        record.transaction_type,
        record.amount,
        format_timestamp(record.timestamp),
        record.processed_by,
    ]


def serialize_activity_log(record: ActivityLogRow) -> list[object]:
    return [
        record.log_id,
        record.user_id,
        record.action,
        record.details,
        format_timestamp(record.timestamp),
    ]


def serialize_report(record: ReportRow) -> list[object]:
    return [
        record.report_id,
        format_timestamp(record.start_date),
        format_timestamp(record.end_date),
        record.total_visitors,
        record.total_adults,
        record.total_children,
        record.total_deposits,
        record.total_refunds,
        record.generated_by,
        format_timestamp(record.generated_at),
    ]


def deserialize_band(raw_row: Sequence[object]) -> BandRow:
    """Convert a raw ``Bands`` row into a typed record.

    Identifiers and codes are coerced to ``str`` because Excel happily turns
    all-digit values into numbers; the deposit becomes an ``int`` and the
    optional lifecycle timestamps stay ``None`` when blank.
    """

    (
        band_id,
        code,
        visitor_type,
        deposit_raw,
        printed_by,
        printed_at_raw,
        entry_raw,
        exit_raw,
        is_active,
        is_refunded,
    ) = raw_row[:10]

    return BandRow(
        band_id=str(band_id),
        code=str(code),
        visitor_type=str(visitor_type),
        deposit_amount=_as_int(deposit_raw),
        printed_by=str(printed_by) if printed_by is not None else "",
        printed_at=_require_timestamp(printed_at_raw, "PrintedAt"),
        entry_time=parse_timestamp(entry_raw),
        exit_time=parse_timestamp(exit_raw),
        is_active=bool(is_active),
        is_refunded=bool(is_refunded),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a typed record."""

    transaction_id, band_id, transaction_type, amount_raw, timestamp_raw, processed_by = raw_row[:6]
    return TransactionRow(
        transaction_id=str(transaction_id),
        band_id=str(band_id),
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        amount=_as_int(amount_raw),
        timestamp=_require_timestamp(timestamp_raw, "Timestamp"),
        processed_by=str(processed_by) if processed_by is not None else "",
    )


def deserialize_activity_log(raw_row: Sequence[object]) -> ActivityLogRow:
    log_id, user_id, action, details, timestamp_raw = raw_row[:5]
    return ActivityLogRow(
        log_id=str(log_id),
        user_id=str(user_id) if user_id is not None else "",
        action=str(action) if action is not None else "",
        details=str(details) if details is not None else "",
        timestamp=_require_timestamp(timestamp_raw, "Timestamp"),
    )


def deserialize_report(raw_row: Sequence[object]) -> ReportRow:
    (
        report_id,
        start_raw,
        end_raw,
        visitors,
        adults,
        children,
        deposits,
        refunds,
        generated_by,
        generated_raw,
    ) = raw_row[:10]
    return ReportRow(
        report_id=str(report_id),
        start_date=_require_timestamp(start_raw, "StartDate"),
        end_date=_require_timestamp(end_raw, "EndDate"),
        total_visitors=_as_int(visitors),
        total_adults=_as_int(adults),
        total_children=_as_int(children),
        total_deposits=_as_int(deposits),
        total_refunds=_as_int(refunds),
        generated_by=str(generated_by) if generated_by is not None else "",
        generated_at=_require_timestamp(generated_raw, "GeneratedAt"),
    )

