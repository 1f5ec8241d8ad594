"""Command-line entry points for the band ledger.

All orchestration here is limited to argparse wiring, translating arguments
into calls on the business layer, and printing the results. The engine itself
persists after every successful mutation, so commands never save on their own.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, reporting, set_console_level
from .constants import ActivityAction, ReportPeriod, TransactionType, UserRole, VisitorType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="band-ledger",
        description="Issue, scan and refund water park wristbands.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--user-id", default=None, help="Operator id recorded on writes.")
    parser.add_argument("--user-name", default=None, help="Operator display name.")
    parser.add_argument(
        "--role",
        choices=[member.value for member in UserRole],
        default=UserRole.STAFF.value,
        help="Operator role as reported by the login layer.",
    )
    parser.add_argument("--verbose", action="store_true", help="Echo informational logs to stderr.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change the ledger."""
    specs = {
        "issue": register_issue_command(subparsers),
        "scan-entry": register_scan_entry_command(subparsers),
        "scan-exit": register_scan_exit_command(subparsers),
        "refund": register_refund_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only listing and dashboard commands."""
    specs = {
        "bands": register_bands_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "activity": register_activity_command(subparsers),
        "reports": register_reports_command(subparsers),
        "analytics": register_analytics_command(subparsers),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _add_range_arguments(parser: argparse.ArgumentParser, *, required: bool = False) -> None:
    parser.add_argument("--start", type=date.fromisoformat, required=required, help="YYYY-MM-DD, inclusive.")
    parser.add_argument("--end", type=date.fromisoformat, required=required, help="YYYY-MM-DD, inclusive.")


def register_issue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issue``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--visitor-type",
            choices=[member.value for member in VisitorType],
            required=True,
            help="A for Adult, C for Child.",
        )
        parser.add_argument("--quantity", type=int, default=1)
        parser.add_argument("--deposit", type=int, default=None, help="Override the configured deposit rate.")
        parser.add_argument("--park-label", default=None)

    return _simple_spec("issue", "Print bands and take their deposits.", run_issue, configure)


def register_scan_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``scan-entry``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)

    return _simple_spec("scan-entry", "Record a band at the entry gate.", run_scan_entry, configure)


def register_scan_exit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``scan-exit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)

    return _simple_spec("scan-exit", "Record a band at the exit gate and refund it.", run_scan_exit, configure)


def register_refund_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refund``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--band-id", required=True)

    return _simple_spec("refund", "Refund an exited band that was not refunded yet.", run_refund, configure)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_range_arguments(parser, required=True)

    return _simple_spec("report", "Generate and store a report for a date range.", run_report, configure)


def register_bands_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bands``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--active", action="store_true", help="Only bands still holding a deposit.")
        parser.add_argument("--printed-by", default=None)

    return _simple_spec("bands", "List issued bands.", run_bands, configure)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_range_arguments(parser)
        parser.add_argument("--type", choices=[member.value for member in TransactionType], default=None)

    return _simple_spec("transactions", "List deposits and refunds.", run_transactions, configure)


def register_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``activity``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_range_arguments(parser)
        parser.add_argument("--search", default=None)
        parser.add_argument("--action", choices=[member.value for member in ActivityAction], default=None)

    return _simple_spec("activity", "Search the activity log.", run_activity, configure)


def register_reports_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reports``."""
    return _simple_spec("reports", "List stored reports.", run_reports)


def register_analytics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``analytics``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--period",
            choices=[member.value for member in ReportPeriod],
            default=ReportPeriod.MONTHLY.value,
        )

    return _simple_spec("analytics", "Show bucketed visitor and deposit totals.", run_analytics, configure)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--day", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default today).")

    return _simple_spec("summary", "Show the counters for one day.", run_summary, configure)


def build_identity(args: argparse.Namespace) -> Optional[core_logic.Identity]:
    """Turn the operator options into an identity, or ``None`` when absent."""
    user_id = getattr(args, "user_id", None)
    if not user_id:
        return None
    return core_logic.Identity(
        user_id=user_id,
        name=getattr(args, "user_name", None) or user_id,
        role=UserRole(getattr(args, "role", UserRole.STAFF.value)),
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    identity: Optional[core_logic.Identity] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target, identity_provider=lambda: identity)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_issue(args: argparse.Namespace) -> core_logic.IssueCommand:
    """Translate CLI args into an issue command object."""
    return core_logic.IssueCommand(
        visitor_type=VisitorType(args.visitor_type),
        quantity=args.quantity,
        deposit_amount=args.deposit,
        park_label=args.park_label,
    )


def format_band(band: data_manager.BandRow) -> str:
    if band.is_refunded:
        state = "refunded"
    elif band.exit_time is not None:
        state = "exited"
    elif band.entry_time is not None:
        state = "entered"
    else:
        state = "issued"
    return (
        f"{band.code}  {VisitorType(band.visitor_type).label:<5}  deposit={band.deposit_amount}  "
        f"{state:<8}  printed={band.printed_at:%Y-%m-%d %H:%M}  id={band.band_id}"
    )


def format_transaction(tx: data_manager.TransactionRow) -> str:
    return f"{tx.timestamp:%Y-%m-%d %H:%M:%S}  {tx.transaction_type:<7}  {tx.amount:>6}  band={tx.band_id}  by={tx.processed_by}"


def format_activity(entry: data_manager.ActivityLogRow) -> str:
    return f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.user_id:<10}  {entry.action:<16}  {entry.details}"


def format_report(report: data_manager.ReportRow) -> str:
    return (
        f"{report.report_id}  {report.start_date:%Y-%m-%d}..{report.end_date:%Y-%m-%d}  "
        f"visitors={report.total_visitors} (A={report.total_adults}, C={report.total_children})  "
        f"deposits={report.total_deposits}  refunds={report.total_refunds}  by={report.generated_by}"
    )


def _emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def run_issue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the issuance workflow via the BLL."""
    bands = core_logic.issue_bands(context, translate_issue(args))
    _emit(format_band(band) for band in bands)
    print(f"Total deposit collected: {sum(band.deposit_amount for band in bands)}")
    return 0


def run_scan_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry scan via the BLL."""
    band = core_logic.scan_entry(context, args.code)
    print(f"Entry recorded successfully: {format_band(band)}")
    return 0


def run_scan_exit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the exit scan, including the refund, via the BLL."""
    band = core_logic.scan_exit(context, args.code)
    print(f"Exit recorded and deposit of {band.deposit_amount} refunded: {format_band(band)}")
    return 0


def run_refund(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a standalone refund via the BLL."""
    band = core_logic.process_refund(context, args.band_id)
    print(format_band(band))
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the report generation workflow."""
    report = reporting.generate_report(context, args.start, args.end)
    print(format_report(report))
    return 0


def run_bands(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    bands = core_logic.list_bands(context, active_only=args.active, printed_by=args.printed_by)
    _emit(format_band(band) for band in bands)
    return 0


def run_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction_type = TransactionType(args.type) if args.type else None
    transactions = core_logic.list_transactions(
        context, start=args.start, end=args.end, transaction_type=transaction_type
    )
    _emit(format_transaction(tx) for tx in transactions)
    print(
        f"Deposits: {core_logic.sum_transactions(transactions, TransactionType.DEPOSIT)}  "
        f"Refunds: {core_logic.sum_transactions(transactions, TransactionType.REFUND)}"
    )
    return 0


def run_activity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = core_logic.list_activity_logs(
        context, search=args.search, action=args.action, start=args.start, end=args.end
    )
    _emit(format_activity(entry) for entry in entries)
    return 0


def run_reports(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _emit(format_report(report) for report in reporting.list_reports(context))
    return 0


def run_analytics(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    buckets = reporting.build_analytics(context, ReportPeriod(args.period))
    _emit(
        f"{bucket.label:<10}  visitors={bucket.visitors:<5}  deposits={bucket.deposits:<7}  refunds={bucket.refunds}"
        for bucket in buckets
    )
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reporting.summarize_day(context, args.day)
    _emit(
        [
            f"Day:            {summary.day.isoformat()}",
            f"Visitors:       {summary.visitors} ({summary.adults} Adults, {summary.children} Children)",
            f"Deposits:       {summary.deposits}",
            f"Refunds:        {summary.refunds}",
            f"Entries/Exits:  {summary.entries}/{summary.exits}",
            f"Active bands:   {summary.active_bands}",
        ]
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.StoreUnavailableError):
        log.error("%s", error)
        return 4
    if isinstance(error, (core_logic.BusinessRuleViolation, core_logic.InvalidInputError)):
        kind = error.kind.value if error.kind is not None else type(error).__name__
        log.error("%s: %s", kind, error)
        return 2
    if isinstance(error, (FileNotFoundError, KeyError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None), build_identity(args))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
