"""Report aggregation over the band and transaction collections.

Persisted reports are point-in-time snapshots: generating a report for a range
that was already reported appends a new, independent row instead of touching
the old one. Everything else in this module is a read-only view computed from
the same inclusive range filter and never writes to the workbook.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from . import core_logic, data_manager, log
from .constants import ActivityAction, ReportPeriod, TransactionType, VisitorType


@dataclass(frozen=True)
class RangeSummary:
    """Visitor and money totals over an inclusive date range."""

    total_visitors: int
    total_adults: int
    total_children: int
    total_deposits: int
    total_refunds: int

    @property
    def net_held(self) -> int:
        return self.total_deposits - self.total_refunds


@dataclass(frozen=True)
class AnalyticsBucket:
    """One bar of a dashboard chart."""

    label: str
    start: date
    end: date
    visitors: int
    deposits: int
    refunds: int


@dataclass(frozen=True)
class DailySummary:
    """Counters shown on the dashboard and scanner "today" panels."""

    day: date
    visitors: int
    adults: int
    children: int
    deposits: int
    refunds: int
    entries: int
    exits: int
    refunds_completed: int
    active_bands: int


def summarize_range(
    context: core_logic.RuntimeContext,
    start: core_logic.DateLike,
    end: core_logic.DateLike,
) -> RangeSummary:
    """Count bands printed and sum money moved between ``start`` and ``end``.

    Bands are selected on ``printed_at`` and transactions on ``timestamp``;
    both bounds are inclusive and plain dates cover whole days.

    Raises:
        InvalidInputError: If ``start`` is after ``end``.
    """
    start_dt, end_dt = core_logic.resolve_range(context, start, end)
    bands = [
        band
        for band in core_logic.list_bands(context)
        if core_logic.within_range(band.printed_at, start_dt, end_dt)
    ]
    transactions = core_logic.list_transactions(context, start=start_dt, end=end_dt)
    return RangeSummary(
        total_visitors=len(bands),
        total_adults=sum(1 for band in bands if band.visitor_type == VisitorType.ADULT.value),
        total_children=sum(1 for band in bands if band.visitor_type == VisitorType.CHILD.value),
        total_deposits=core_logic.sum_transactions(transactions, TransactionType.DEPOSIT),
        total_refunds=core_logic.sum_transactions(transactions, TransactionType.REFUND),
    )


def generate_report(
    context: core_logic.RuntimeContext,
    start: core_logic.DateLike,
    end: core_logic.DateLike,
) -> data_manager.ReportRow:
    """Compute totals for a range and persist them as a new report.

    A "Report Generated" activity entry is appended alongside the report and
    both are saved together.

    Args:
        context (core_logic.RuntimeContext): Runtime context providing
            workbook access and caches.
        start (date | datetime): Inclusive start of the range.
        end (date | datetime): Inclusive end of the range.

    Returns:
        data_manager.ReportRow: The stored snapshot.

    Raises:
        InvalidInputError: If ``start`` is after ``end``.
        StoreUnavailableError: If the workbook cannot be saved.
    """
    start_dt, end_dt = core_logic.resolve_range(context, start, end)
    if start_dt is None or end_dt is None:
        raise core_logic.InvalidInputError("Please select both start and end dates")
    summary = summarize_range(context, start_dt, end_dt)

    timestamp = core_logic.current_time(context)
    report = data_manager.ReportRow(
        report_id=core_logic.generate_record_id("RPT", when=timestamp),
        start_date=start_dt,
        end_date=end_dt,
        total_visitors=summary.total_visitors,
        total_adults=summary.total_adults,
        total_children=summary.total_children,
        total_deposits=summary.total_deposits,
        total_refunds=summary.total_refunds,
        generated_by=core_logic.acting_user_id(context),
        generated_at=timestamp,
    )
    data_manager.append_report(context.workbook, report)
    core_logic.invalidate_cache(context, "reports")
    core_logic.append_activity_entry(
        context,
        ActivityAction.REPORT_GENERATED,
        f"Report generated for period {start_dt.date().isoformat()} to {end_dt.date().isoformat()}",
        timestamp=timestamp,
    )
    log.info(
        "Generated report '%s' for %s..%s (visitors=%d, deposits=%d, refunds=%d)",
        report.report_id,
        start_dt.date(),
        end_dt.date(),
        report.total_visitors,
        report.total_deposits,
        report.total_refunds,
    )
    core_logic.commit_changes(context)
    return report


def _ensure_reports_cache(context: core_logic.RuntimeContext) -> Dict[str, Any]:
    bucket = core_logic.get_cache_bucket(context, "reports")
    if "all" not in bucket:
        all_reports = list(data_manager.iter_reports(context.workbook))
        bucket["all"] = all_reports
        bucket["by_id"] = {report.report_id: report for report in all_reports}
    return bucket


def list_reports(context: core_logic.RuntimeContext) -> List[data_manager.ReportRow]:
    """Stored reports, most recently generated first."""

    reports = _ensure_reports_cache(context)["all"]
    return sorted(reports, key=lambda report: report.generated_at, reverse=True)


def get_report(context: core_logic.RuntimeContext, report_id: str) -> data_manager.ReportRow:
    """Fetch one stored report.

    Raises:
        MissingReferenceError: If ``report_id`` is unknown.
    """
    try:
        return _ensure_reports_cache(context)["by_id"][report_id]
    except KeyError as exc:
        log.warning("Report lookup failed for id '%s'", report_id)
        raise core_logic.MissingReferenceError(f"Unknown report id: {report_id}") from exc


def shift_month(anchor: date, months: int) -> date:
    """First day of the month ``months`` away from ``anchor``'s month."""

    index = anchor.year * 12 + (anchor.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def month_end(first_day: date) -> date:
    return first_day.replace(day=calendar.monthrange(first_day.year, first_day.month)[1])


def period_windows(period: ReportPeriod, today: date) -> List[Tuple[str, date, date]]:
    """Label and inclusive date window of every bucket for ``period``.

    * daily: the last seven calendar days, today included.
    * weekly: four consecutive seven-day windows, the last ending today.
    * monthly: the last three calendar months, the current one included.
    * sixMonth: the last six calendar months, the current one included.
    """
    period = ReportPeriod(period)
    if period is ReportPeriod.DAILY:
        days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
        return [(f"{day:%b} {day.day}", day, day) for day in days]
    if period is ReportPeriod.WEEKLY:
        windows = []
        for index in range(4):
            start = today - timedelta(days=27 - 7 * index)
            windows.append((f"Week {index + 1}", start, start + timedelta(days=6)))
        return windows

    months = 6 if period is ReportPeriod.SIX_MONTH else 3
    windows = []
    for offset in range(months - 1, -1, -1):
        first = shift_month(today, -offset)
        windows.append((f"{first:%b %Y}", first, month_end(first)))
    return windows


def build_analytics(
    context: core_logic.RuntimeContext,
    period: ReportPeriod,
    *,
    today: Optional[date] = None,
) -> List[AnalyticsBucket]:
    """Bucket visitors, deposits and refunds for the dashboard charts.

    Nothing is persisted; the buckets are recomputed from the ledger on every
    call.
    """
    anchor = today or core_logic.today(context)
    buckets = []
    for label, start, end in period_windows(period, anchor):
        summary = summarize_range(context, start, end)
        buckets.append(
            AnalyticsBucket(
                label=label,
                start=start,
                end=end,
                visitors=summary.total_visitors,
                deposits=summary.total_deposits,
                refunds=summary.total_refunds,
            )
        )
    log.debug("Built %d %s analytics buckets ending %s", len(buckets), ReportPeriod(period).value, anchor)
    return buckets


def summarize_day(context: core_logic.RuntimeContext, day: Optional[date] = None) -> DailySummary:
    """Collect the live counters for one calendar day (today by default)."""

    day = day or core_logic.today(context)
    zone = core_logic.day_zone(context)
    totals = summarize_range(context, day, day)
    bands = core_logic.list_bands(context)

    def _on_day(moment) -> bool:
        return moment is not None and core_logic.local_date(moment, zone) == day

    return DailySummary(
        day=day,
        visitors=totals.total_visitors,
        adults=totals.total_adults,
        children=totals.total_children,
        deposits=totals.total_deposits,
        refunds=totals.total_refunds,
        entries=sum(1 for band in bands if _on_day(band.entry_time)),
        exits=sum(1 for band in bands if _on_day(band.exit_time)),
        refunds_completed=sum(1 for band in bands if band.is_refunded and _on_day(band.exit_time)),
        active_bands=sum(1 for band in bands if band.is_active),
    )
