"""Business logic layer for the band ledger.

This module holds the wristband lifecycle engine together with the
transaction ledger and activity log it drives. A band moves strictly through
``Issued -> Entered -> Exited -> Refunded``; every transition re-checks the
stored state before writing, and every precondition is evaluated before the
first row is touched so a rejected call never leaves a partial write behind.

All state lives in the ledger workbook owned by :mod:`band_ledger.data_manager`.
The :class:`RuntimeContext` bundles that workbook with the injected clock,
identity provider and random source, plus read caches that are dropped after
every write.
"""

from __future__ import annotations

import random
import uuid
import zipfile
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    MAX_CODE_ATTEMPTS,
    SYSTEM_ACTOR_ID,
    ActivityAction,
    TransactionType,
    UserRole,
    VisitorType,
)


class ErrorKind(str, Enum):
    """Error categories surfaced to presentation layers."""

    INVALID_INPUT = "InvalidInput"
    NOT_FOUND = "NotFound"
    BAND_INACTIVE = "BandInactive"
    BAND_EXPIRED = "BandExpired"
    ALREADY_ENTERED = "AlreadyEntered"
    NO_ENTRY_RECORDED = "NoEntryRecorded"
    ALREADY_EXITED = "AlreadyExited"
    CODE_SPACE_EXHAUSTED = "CodeSpaceExhausted"
    STORE_UNAVAILABLE = "StoreUnavailable"


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers.

    Concrete subclasses set ``kind``; the grouping bases leave it ``None``.
    """

    kind: Optional[ErrorKind] = None


class InvalidInputError(LedgerError, ValueError):
    """Raised when caller arguments are malformed."""

    kind = ErrorKind.INVALID_INPUT


class StoreUnavailableError(LedgerError):
    """Raised when the ledger workbook cannot be loaded or saved."""

    kind = ErrorKind.STORE_UNAVAILABLE


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced band, transaction, or report is unknown."""

    kind = ErrorKind.NOT_FOUND


class CodeSpaceExhaustedError(BusinessRuleViolation):
    """Raised when no unused band code could be drawn for the current minute."""

    kind = ErrorKind.CODE_SPACE_EXHAUSTED


class BandStateError(BusinessRuleViolation):
    """A scan was rejected because of the band's current lifecycle state."""

    def __init__(self, message: str, band: data_manager.BandRow) -> None:
        super().__init__(message)
        self.band = band


class BandInactiveError(BandStateError):
    kind = ErrorKind.BAND_INACTIVE


class BandExpiredError(BandStateError):
    kind = ErrorKind.BAND_EXPIRED


class AlreadyEnteredError(BandStateError):
    kind = ErrorKind.ALREADY_ENTERED


class NoEntryRecordedError(BandStateError):
    kind = ErrorKind.NO_ENTRY_RECORDED


class AlreadyExitedError(BandStateError):
    kind = ErrorKind.ALREADY_EXITED


@dataclass(frozen=True)
class Identity:
    """Authenticated operator handed over by the identity collaborator."""

    user_id: str
    name: str
    role: UserRole


Clock = Callable[[], datetime]
IdentityProvider = Callable[[], Optional[Identity]]
DateLike = Union[date, datetime]


def local_clock() -> datetime:
    """Return the current wall-clock time as an aware local datetime."""

    return datetime.now(UTC).astimezone()


def anonymous_identity() -> Optional[Identity]:
    return None


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and injected capabilities.

    ``autosave`` controls whether each successful mutating operation writes
    the workbook back to ``settings.data_file`` before returning.
    ``zone`` fixes the calendar used for day boundaries; see :func:`day_zone`.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    clock: Clock = local_clock
    identity_provider: IdentityProvider = anonymous_identity
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)
    autosave: bool = True
    zone: Optional[tzinfo] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class IssueCommand:
    """User intent for printing one or more bands of the same visitor type.

    ``deposit_amount`` falls back to the configured rate for the visitor type,
    ``issued_by`` to the acting identity, and ``park_label`` to the configured
    park name.
    ``issued_by`` is recorded on the band and its deposit; the "Band Printed"
    audit entry always names the acting identity.
    """

    visitor_type: Union[VisitorType, str]
    quantity: int = 1
    deposit_amount: Optional[int] = None
    issued_by: Optional[str] = None
    park_label: Optional[str] = None


def current_time(context: RuntimeContext) -> datetime:
    """Read the injected clock."""

    return context.clock()


def acting_user_id(context: RuntimeContext) -> str:
    """Resolve the identity to attribute writes to, or the system actor."""

    identity = context.identity_provider()
    return identity.user_id if identity is not None else SYSTEM_ACTOR_ID


def day_zone(context: RuntimeContext) -> Optional[tzinfo]:
    """Zone whose calendar decides which day a timestamp belongs to.

    An explicit ``context.zone`` wins. Otherwise a clock reporting UTC or a
    named zone is used as is. A fixed non-UTC offset is what
    :func:`local_clock` produces for the host zone; it only holds for the
    current season, so ``None`` is returned and the host's own rules apply,
    giving every date its own offset.
    """
    if context.zone is not None:
        return context.zone
    tz = current_time(context).tzinfo
    if tz is None or (isinstance(tz, timezone) and tz != UTC):
        return None
    return tz


def local_date(moment: datetime, zone: Optional[tzinfo]) -> date:
    """Calendar date of ``moment`` in ``zone`` (``None`` is the host zone)."""

    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(zone).date()


def today(context: RuntimeContext) -> date:
    return local_date(current_time(context), day_zone(context))


def resolve_range(
    context: RuntimeContext,
    start: Optional[DateLike],
    end: Optional[DateLike],
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Turn caller supplied bounds into inclusive datetime bounds.

    Plain dates cover whole calendar days in :func:`day_zone`, each with the
    offset in force on that date: a start date maps to midnight, an end date
    to the last microsecond of that day. Datetimes are used as given.

    Raises:
        InvalidInputError: If both bounds are present and ``start > end``.
    """

    aware = current_time(context).tzinfo is not None
    zone = day_zone(context)
    start_dt = _as_bound(start, time.min, zone, aware=aware)
    end_dt = _as_bound(end, time.max, zone, aware=aware)
    if start_dt is not None and end_dt is not None and start_dt > end_dt:
        log.error("Rejected date range: %s is after %s", start, end)
        raise InvalidInputError("Start date must not be after end date")
    return start_dt, end_dt


def _as_bound(
    value: Optional[DateLike],
    edge: time,
    zone: Optional[tzinfo],
    *,
    aware: bool,
) -> Optional[datetime]:
    if value is None:
        return None
    moment = value if isinstance(value, datetime) else datetime.combine(value, edge)
    if moment.tzinfo is not None or not aware:
        return moment
    if zone is None:
        # Host rules pick the offset valid on that date.
        return moment.astimezone()
    return moment.replace(tzinfo=zone)


def within_range(moment: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``.

    Buckets memoise the parsed sheet contents so repeated queries do not
    re-scan the workbook. They are plain dictionaries and are dropped by
    :func:`invalidate_cache` after every write to the matching sheet.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_bands_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the band cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket with ``all`` bands in sheet order, ``active``
            bands, and ``by_id``/``by_code`` lookups. When two bands share a
            code the first one issued wins, matching a linear scan.
    """

    bucket = get_cache_bucket(context, "bands")
    if "all" not in bucket:
        all_bands = list(data_manager.iter_bands(context.workbook))
        by_code: Dict[str, data_manager.BandRow] = {}
        for band in all_bands:
            by_code.setdefault(band.code, band)
        bucket["all"] = all_bands
        bucket["active"] = [band for band in all_bands if band.is_active]
        bucket["by_id"] = {band.band_id: band for band in all_bands}
        bucket["by_code"] = by_code
        log.debug(
            "Populated bands cache with %d entries (%d active)",
            len(all_bands),
            len(bucket["active"]),
        )
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = list(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {tx.transaction_id: tx for tx in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def _ensure_activity_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = get_cache_bucket(context, "activity")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_activity_logs(context.workbook))
        log.debug("Populated activity cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Clock] = None,
    identity_provider: Optional[IdentityProvider] = None,
    rng: Optional[random.Random] = None,
    autosave: bool = True,
) -> RuntimeContext:
    """Load configuration settings and the ledger workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        clock (Callable | None): Source of "now"; defaults to local time.
        identity_provider (Callable | None): Returns the acting operator or
            ``None``.
        rng (random.Random | None): Random source used for band codes.
        autosave (bool): Persist after every successful mutation.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        StoreUnavailableError: If the workbook is missing, unreadable, or
            lacks one of the collection sheets.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = _open_store(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        clock=clock or local_clock,
        identity_provider=identity_provider or anonymous_identity,
        rng=rng or random.Random(),
        autosave=autosave,
        zone=ZoneInfo(settings.time_zone) if settings.time_zone else None,
    )


def _open_store(data_file: Path) -> Workbook:
    try:
        return data_manager.open_workbook(data_file)
    except (OSError, KeyError, InvalidFileException, zipfile.BadZipFile) as exc:
        log.error("Unable to load ledger workbook '%s': %s", data_file, exc)
        raise StoreUnavailableError(f"Unable to load ledger workbook: {exc}") from exc


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook back to the configured data file.

    A failed save leaves the in-memory workbook untouched, so the caller may
    retry once the underlying problem is fixed.

    Raises:
        StoreUnavailableError: If the workbook cannot be written.
    """
    try:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    except OSError as exc:
        log.error("Unable to persist workbook '%s': %s", context.settings.data_file, exc)
        raise StoreUnavailableError(f"Unable to save ledger workbook: {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def commit_changes(context: RuntimeContext) -> None:
    """Persist after a completed mutation when the context autosaves."""

    if context.autosave:
        persist_context(context)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The injected clock, identity provider and random source carry over; the
    cache starts empty.
    """
    workbook = _open_store(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return replace(context, workbook=workbook, _cache={})


def list_bands(
    context: RuntimeContext,
    *,
    active_only: bool = False,
    printed_by: Optional[str] = None,
) -> List[data_manager.BandRow]:
    """Return bands in issue order, optionally filtered.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        active_only (bool): Only bands whose deposit is still held.
        printed_by (str | None): Only bands issued by this operator id.

    Returns:
        list[data_manager.BandRow]: Copy of the matching cached bands.
    """
    cache = _ensure_bands_cache(context)
    source = cache["active"] if active_only else cache["all"]
    if printed_by is not None:
        return [band for band in source if band.printed_by == printed_by]
    return list(source)


def get_active_bands(context: RuntimeContext) -> List[data_manager.BandRow]:
    return list_bands(context, active_only=True)


def get_bands_by_staff(context: RuntimeContext, staff_id: str) -> List[data_manager.BandRow]:
    return list_bands(context, printed_by=staff_id)


def get_band(context: RuntimeContext, band_id: str) -> data_manager.BandRow:
    """Resolve a band by its opaque identifier.

    Raises:
        MissingReferenceError: If no band carries ``band_id``.
    """
    cache = _ensure_bands_cache(context)
    try:
        return cache["by_id"][band_id]
    except KeyError as exc:
        log.warning("Band lookup failed for id '%s'", band_id)
        raise MissingReferenceError(f"Unknown band id: {band_id}") from exc


def get_band_by_code(context: RuntimeContext, code: str) -> data_manager.BandRow:
    """Resolve a band by its printed code.

    Raises:
        InvalidInputError: If ``code`` is blank.
        MissingReferenceError: If no band carries ``code``.
    """
    normalized = (code or "").strip()
    if not normalized:
        raise InvalidInputError("Please enter a band code")
    cache = _ensure_bands_cache(context)
    try:
        return cache["by_code"][normalized]
    except KeyError as exc:
        log.warning("Band lookup failed for code '%s'", normalized)
        raise MissingReferenceError(f"Band not found: {normalized}") from exc


def list_transactions(
    context: RuntimeContext,
    *,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
    transaction_type: Optional[TransactionType] = None,
) -> List[data_manager.TransactionRow]:
    """Query the deposit/refund ledger, newest first.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        start (date | datetime | None): Inclusive lower bound.
        end (date | datetime | None): Inclusive upper bound; plain dates
            include the whole day.
        transaction_type (TransactionType | None): Restrict to deposits or
            refunds.

    Returns:
        list[data_manager.TransactionRow]: Matching rows sorted by timestamp,
            most recent first.

    Raises:
        InvalidInputError: If ``start`` is after ``end``.
    """
    start_dt, end_dt = resolve_range(context, start, end)
    type_value = TransactionType(transaction_type).value if transaction_type is not None else None
    matches = [
        tx
        for tx in _ensure_transactions_cache(context)["all"]
        if (type_value is None or tx.transaction_type == type_value)
        and within_range(tx.timestamp, start_dt, end_dt)
    ]
    return sorted(matches, key=lambda tx: tx.timestamp, reverse=True)


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction by its identifier.

    Raises:
        MissingReferenceError: If the ledger lacks ``transaction_id``.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def sum_transactions(
    transactions: Iterable[data_manager.TransactionRow],
    transaction_type: TransactionType,
) -> int:
    """Sum the amounts of ``transactions`` of the given type."""

    type_value = TransactionType(transaction_type).value
    return sum(tx.amount for tx in transactions if tx.transaction_type == type_value)


def list_activity_logs(
    context: RuntimeContext,
    *,
    search: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> List[data_manager.ActivityLogRow]:
    """Query the audit trail, newest first.

    ``search`` is matched case-insensitively against both the action and the
    details text; ``action`` must match the category exactly.

    Raises:
        InvalidInputError: If ``start`` is after ``end``.
    """
    start_dt, end_dt = resolve_range(context, start, end)
    needle = search.lower() if search else None
    action_value = action.value if isinstance(action, ActivityAction) else action
    matches = []
    for entry in _ensure_activity_cache(context)["all"]:
        if needle and needle not in entry.action.lower() and needle not in entry.details.lower():
            continue
        if action_value and entry.action != action_value:
            continue
        if not within_range(entry.timestamp, start_dt, end_dt):
            continue
        matches.append(entry)
    return sorted(matches, key=lambda entry: entry.timestamp, reverse=True)


def list_activity_actions(context: RuntimeContext) -> List[str]:
    """Distinct action categories present in the log, in first-seen order."""

    seen: Dict[str, None] = {}
    for entry in _ensure_activity_cache(context)["all"]:
        seen.setdefault(entry.action, None)
    return list(seen)


def append_activity_entry(
    context: RuntimeContext,
    action: ActivityAction,
    details: str,
    *,
    timestamp: datetime,
    user_id: Optional[str] = None,
) -> data_manager.ActivityLogRow:
    """Append one audit entry as part of a larger state change.

    Persisting is left to the calling operation so the entry lands in the same
    save as the change it describes.
    """
    entry = data_manager.ActivityLogRow(
        log_id=generate_record_id("L", when=timestamp),
        user_id=user_id or acting_user_id(context),
        action=ActivityAction(action).value,
        details=details,
        timestamp=timestamp,
    )
    data_manager.append_activity_log(context.workbook, entry)
    invalidate_cache(context, "activity")
    return entry


def issue_bands(context: RuntimeContext, command: IssueCommand) -> List[data_manager.BandRow]:
    """Print ``command.quantity`` bands and take one deposit for each.

    For every band the workflow appends the band row, a deposit transaction
    equal to the deposit amount, and a "Band Printed" activity entry. Codes
    for the whole batch are drawn before anything is written, so a failure
    leaves the store untouched.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (IssueCommand): Structured issuance intent.

    Returns:
        list[data_manager.BandRow]: Newly issued bands in print order.

    Raises:
        InvalidInputError: If the visitor type is unknown, the quantity is
            below one, or the deposit is negative.
        CodeSpaceExhaustedError: If unique codes could not be drawn.
        StoreUnavailableError: If the workbook cannot be saved.
    """
    visitor_type = coerce_visitor_type(command.visitor_type)
    require_positive_quantity(command.quantity)
    deposit_amount = (
        command.deposit_amount
        if command.deposit_amount is not None
        else context.settings.default_deposit(visitor_type)
    )
    require_nonnegative_money(deposit_amount)

    timestamp = current_time(context)
    issued_by = command.issued_by or acting_user_id(context)
    park_label = command.park_label or context.settings.park_name
    codes = allocate_band_codes(context, visitor_type, when=timestamp, quantity=command.quantity)

    bands: List[data_manager.BandRow] = []
    for code in codes:
        band = build_band(
            code,
            visitor_type=visitor_type,
            deposit_amount=deposit_amount,
            printed_by=issued_by,
            timestamp=timestamp,
        )
        data_manager.append_band(context.workbook, band)
        data_manager.append_transaction(
            context.workbook,
            build_ledger_transaction(
                band,
                TransactionType.DEPOSIT,
                processed_by=issued_by,
                timestamp=timestamp,
            ),
        )
        append_activity_entry(
            context,
            ActivityAction.BAND_PRINTED,
            f"Band {band.code} printed for {visitor_type.label} with deposit of "
            f"{deposit_amount} at {park_label}",
            timestamp=timestamp,
        )
        bands.append(band)

    invalidate_cache(context, "bands", "transactions")
    log.info(
        "Issued %d %s band(s) at %s (deposit=%s, issued_by=%s)",
        len(bands),
        visitor_type.label,
        park_label,
        deposit_amount,
        issued_by,
    )
    commit_changes(context)
    return bands


def scan_entry(context: RuntimeContext, code: str) -> data_manager.BandRow:
    """Record a visitor passing the entry gate.

    Checks run in a fixed order: unknown code, inactive band, band issued on
    another day, entry already recorded.

    Returns:
        data_manager.BandRow: The band with ``entry_time`` set.

    Raises:
        MissingReferenceError: If no band carries ``code``.
        BandInactiveError: If the band's deposit was already refunded.
        BandExpiredError: If the band was not issued today.
        AlreadyEnteredError: If the band already has an entry time.
    """
    timestamp = current_time(context)
    band = _resolve_scannable_band(context, code, timestamp)
    if band.entry_time is not None:
        log.warning("Rejected entry scan for band '%s': already entered", band.code)
        raise AlreadyEnteredError("Band already used for entry", band)

    timestamp = _not_before(timestamp, band.printed_at, band)
    updated = replace(band, entry_time=timestamp)
    data_manager.update_band(context.workbook, updated)
    append_activity_entry(
        context,
        ActivityAction.VISITOR_ENTRY,
        f"Band {band.code} scanned for entry",
        timestamp=timestamp,
    )
    invalidate_cache(context, "bands")
    log.info("Recorded entry for band '%s'", band.code)
    commit_changes(context)
    return updated


def scan_exit(context: RuntimeContext, code: str) -> data_manager.BandRow:
    """Record a visitor leaving and refund the deposit in the same step.

    After the shared lookup, inactive, and expiry checks the band must have an
    entry and no exit. The exit and the refund are saved together.

    Returns:
        data_manager.BandRow: The band after the refund completed.

    Raises:
        MissingReferenceError: If no band carries ``code``.
        BandInactiveError: If the band is no longer active.
        BandExpiredError: If the band was not issued today.
        NoEntryRecordedError: If the band never passed the entry gate.
        AlreadyExitedError: If the band already has an exit time.
    """
    timestamp = current_time(context)
    band = _resolve_scannable_band(context, code, timestamp)
    if band.entry_time is None:
        log.warning("Rejected exit scan for band '%s': no entry recorded", band.code)
        raise NoEntryRecordedError("Band has not been used for entry", band)
    if band.exit_time is not None:
        log.warning("Rejected exit scan for band '%s': already exited", band.code)
        raise AlreadyExitedError("Band already used for exit", band)

    timestamp = _not_before(timestamp, band.entry_time, band)
    exited = replace(band, exit_time=timestamp)
    data_manager.update_band(context.workbook, exited)
    append_activity_entry(
        context,
        ActivityAction.VISITOR_EXIT,
        f"Band {band.code} scanned for exit",
        timestamp=timestamp,
    )
    refunded = _apply_refund(context, exited, timestamp)
    invalidate_cache(context, "bands")
    log.info("Recorded exit for band '%s'", band.code)
    commit_changes(context)
    return refunded


def process_refund(context: RuntimeContext, band_id: str) -> data_manager.BandRow:
    """Refund a band's deposit once it has exited.

    Calling this for a band that is already refunded, or that has not exited
    yet, changes nothing and returns the band as stored.

    Raises:
        MissingReferenceError: If ``band_id`` is unknown.
    """
    band = get_band(context, band_id)
    refunded = _apply_refund(context, band, current_time(context))
    if refunded is not band:
        invalidate_cache(context, "bands")
        commit_changes(context)
    return refunded


def _resolve_scannable_band(context: RuntimeContext, code: str, now: datetime) -> data_manager.BandRow:
    band = get_band_by_code(context, code)
    if not band.is_active:
        log.warning("Rejected scan for band '%s': inactive", band.code)
        raise BandInactiveError("Band is inactive", band)
    zone = day_zone(context)
    if local_date(band.printed_at, zone) != local_date(now, zone):
        log.warning("Rejected scan for band '%s': issued %s", band.code, band.printed_at.date())
        raise BandExpiredError("Band is expired (not from today)", band)
    return band


def _not_before(moment: datetime, floor: datetime, band: data_manager.BandRow) -> datetime:
    """Clamp ``moment`` so a clock stepping backwards never reorders the lifecycle."""

    if moment < floor:
        log.warning("Clock is behind band '%s' (%s < %s); recording %s", band.code, moment, floor, floor)
        return floor
    return moment


def _apply_refund(
    context: RuntimeContext,
    band: data_manager.BandRow,
    timestamp: datetime,
) -> data_manager.BandRow:
    if band.is_refunded or band.exit_time is None:
        log.debug("Refund skipped for band '%s' (refunded=%s, exited=%s)",
                  band.code, band.is_refunded, band.exit_time is not None)
        return band

    refunded = replace(band, is_refunded=True, is_active=False)
    data_manager.update_band(context.workbook, refunded)
    data_manager.append_transaction(
        context.workbook,
        build_ledger_transaction(
            band,
            TransactionType.REFUND,
            processed_by=acting_user_id(context),
            timestamp=timestamp,
        ),
    )
    append_activity_entry(
        context,
        ActivityAction.DEPOSIT_REFUNDED,
        f"Deposit of {band.deposit_amount} refunded for band {band.code}",
        timestamp=timestamp,
    )
    invalidate_cache(context, "transactions")
    log.info("Refunded deposit of %s for band '%s'", band.deposit_amount, band.code)
    return refunded


def coerce_visitor_type(candidate: Union[VisitorType, str]) -> VisitorType:
    """Accept a :class:`VisitorType`, its code letter, or its label.

    Raises:
        InvalidInputError: If ``candidate`` names no visitor type.
    """
    if isinstance(candidate, VisitorType):
        return candidate
    text = str(candidate).strip()
    for member in VisitorType:
        if text.upper() == member.value or text.lower() == member.label.lower():
            return member
    log.error("Visitor type validation failed: %s", candidate)
    raise InvalidInputError(f"Unknown visitor type: {candidate}")


def generate_band_code(visitor_type: VisitorType, *, when: datetime, rng: random.Random) -> str:
    """Build a printable band code.

    Returns:
        str: ``{type}{yy}{mm}{dd}{hh}{mm}{rand4}``, for example
            ``A26101909150042``.
    """
    return f"{visitor_type.value}{when.strftime('%y%m%d%H%M')}{rng.randrange(10000):04d}"


def allocate_band_codes(
    context: RuntimeContext,
    visitor_type: VisitorType,
    *,
    when: datetime,
    quantity: int,
) -> List[str]:
    """Draw ``quantity`` codes that clash neither with stored bands nor each other.

    Raises:
        CodeSpaceExhaustedError: If ``MAX_CODE_ATTEMPTS`` draws in a row all
            collide.
    """
    taken = set(_ensure_bands_cache(context)["by_code"])
    codes: List[str] = []
    for _ in range(quantity):
        for _attempt in range(MAX_CODE_ATTEMPTS):
            code = generate_band_code(visitor_type, when=when, rng=context.rng)
            if code not in taken:
                break
            log.debug("Band code '%s' already in use, redrawing", code)
        else:
            log.error("Could not draw a free band code after %d attempts", MAX_CODE_ATTEMPTS)
            raise CodeSpaceExhaustedError("No free band code available for this minute")
        taken.add(code)
        codes.append(code)
    return codes


def generate_record_id(prefix: str, *, when: datetime) -> str:
    """Generate a unique identifier that still sorts roughly by time.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSS}-{12 hex chars}``.
    """
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:12]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a band quantity is a whole number of at least one.

    Raises:
        InvalidInputError: If ``quantity`` is not an integer or is below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidInputError("Quantity must be at least one")


def require_nonnegative_money(amount: int) -> None:
    """Validate that a deposit is a non-negative whole amount.

    Raises:
        InvalidInputError: If ``amount`` is not an integer or is negative.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidInputError("Deposit amount must be zero or positive")


def build_band(
    code: str,
    *,
    visitor_type: VisitorType,
    deposit_amount: int,
    printed_by: str,
    timestamp: datetime,
) -> data_manager.BandRow:
    """Materialize a freshly printed band: active, unrefunded, not yet scanned."""

    return data_manager.BandRow(
        band_id=str(uuid.uuid4()),
        code=code,
        visitor_type=visitor_type.value,
        deposit_amount=deposit_amount,
        printed_by=printed_by,
        printed_at=timestamp,
        entry_time=None,
        exit_time=None,
        is_active=True,
        is_refunded=False,
    )


def build_ledger_transaction(
    band: data_manager.BandRow,
    transaction_type: TransactionType,
    *,
    processed_by: str,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize a deposit or refund for the full deposit of ``band``."""

    prefix = "D" if transaction_type is TransactionType.DEPOSIT else "R"
    return data_manager.TransactionRow(
        transaction_id=generate_record_id(prefix, when=timestamp),
        band_id=band.band_id,
        transaction_type=transaction_type.value,
        amount=band.deposit_amount,
        timestamp=timestamp,
        processed_by=processed_by,
    )
