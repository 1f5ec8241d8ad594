"""Unit tests for the band lifecycle engine, transaction ledger, and activity log."""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta, timezone
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest

from band_ledger import constants, core_logic, data_manager


def _transactions(context, transaction_type=None):
    return core_logic.list_transactions(context, transaction_type=transaction_type)


def _actions(context):
    return [entry.action for entry in core_logic.list_activity_logs(context)]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(data_file=tmp_path / "ledger.xlsx", park_name="Park")
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    assert context.identity_provider() is None
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_load_runtime_context_wraps_missing_workbook(config_factory):
    """A configured but absent workbook is a store failure, not a config error."""

    bundle = config_factory()
    bundle.workbook_path.unlink()

    with pytest.raises(core_logic.StoreUnavailableError) as excinfo:
        core_logic.load_runtime_context(bundle.config_path)

    assert excinfo.value.kind is core_logic.ErrorKind.STORE_UNAVAILABLE


def test_refresh_context_keeps_injected_capabilities(runtime_context, clock):
    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.workbook is not runtime_context.workbook
    assert refreshed.clock is clock
    assert refreshed.rng is runtime_context.rng


def test_persist_failure_raises_store_unavailable_and_keeps_memory(monkeypatch, runtime_context):
    """A failed save must surface StoreUnavailable while in-memory state stays usable."""

    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("locked")))

    with pytest.raises(core_logic.StoreUnavailableError):
        core_logic.issue_bands(runtime_context, core_logic.IssueCommand(constants.VisitorType.ADULT))

    assert len(core_logic.list_bands(runtime_context)) == 1
    monkeypatch.undo()
    core_logic.persist_context(runtime_context)
    reloaded = core_logic.refresh_context(runtime_context)
    assert len(core_logic.list_bands(reloaded)) == 1


def test_commit_changes_skips_save_without_autosave(monkeypatch, runtime_context):
    save = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)
    manual = core_logic.RuntimeContext(
        settings=runtime_context.settings,
        workbook=runtime_context.workbook,
        autosave=False,
    )

    core_logic.commit_changes(manual)

    save.assert_not_called()


def test_list_bands_reuses_cache_between_calls(monkeypatch, runtime_context, issue_one):
    """Repeated reads should only scan the sheet once until the next write."""

    issue_one()
    spy = Mock(wraps=data_manager.iter_bands)
    monkeypatch.setattr(data_manager, "iter_bands", spy)

    core_logic.list_bands(runtime_context)
    core_logic.get_active_bands(runtime_context)

    spy.assert_called_once_with(runtime_context.workbook)


# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------


def test_issue_bands_creates_active_band_with_deposit(runtime_context, staff_identity):
    """Issuing should create the band, one deposit, and one audit entry."""

    (band,) = core_logic.issue_bands(
        runtime_context,
        core_logic.IssueCommand(constants.VisitorType.ADULT, deposit_amount=50),
    )

    assert band.is_active and not band.is_refunded
    assert band.entry_time is None and band.exit_time is None
    assert band.printed_by == staff_identity.user_id
    (deposit,) = _transactions(runtime_context)
    assert deposit.transaction_type == constants.TransactionType.DEPOSIT.value
    assert deposit.amount == 50
    assert deposit.band_id == band.band_id
    assert _actions(runtime_context) == [constants.ActivityAction.BAND_PRINTED.value]


def test_issue_bands_uses_code_format(runtime_context, clock):
    (band,) = core_logic.issue_bands(runtime_context, core_logic.IssueCommand("C"))

    assert re.fullmatch(r"C2610190915\d{4}", band.code)


def test_issue_bands_falls_back_to_configured_child_rate(runtime_context):
    (band,) = core_logic.issue_bands(runtime_context, core_logic.IssueCommand(constants.VisitorType.CHILD))

    assert band.deposit_amount == 30


def test_issue_bands_quantity_creates_one_deposit_per_band(runtime_context):
    bands = core_logic.issue_bands(
        runtime_context,
        core_logic.IssueCommand(constants.VisitorType.ADULT, quantity=3),
    )

    assert len({band.code for band in bands}) == 3
    assert len(_transactions(runtime_context, constants.TransactionType.DEPOSIT)) == 3
    assert _actions(runtime_context).count(constants.ActivityAction.BAND_PRINTED.value) == 3


def test_issue_bands_records_park_label_in_audit_trail(runtime_context):
    core_logic.issue_bands(
        runtime_context,
        core_logic.IssueCommand(constants.VisitorType.ADULT, park_label="MAULI"),
    )

    (entry,) = core_logic.list_activity_logs(runtime_context)
    assert entry.details.endswith("at MAULI")
    assert "for Adult with deposit of 50" in entry.details


def test_issue_bands_without_identity_uses_system_actor(runtime_context, identity_holder):
    identity_holder["current"] = None

    (band,) = core_logic.issue_bands(runtime_context, core_logic.IssueCommand(constants.VisitorType.ADULT))

    assert band.printed_by == constants.SYSTEM_ACTOR_ID
    assert core_logic.list_activity_logs(runtime_context)[0].user_id == constants.SYSTEM_ACTOR_ID


def test_issue_bands_explicit_issuer_wins(runtime_context, staff_identity):
    """The band and deposit name the issuer; the audit entry names who acted."""

    (band,) = core_logic.issue_bands(
        runtime_context,
        core_logic.IssueCommand(constants.VisitorType.ADULT, issued_by="staff-9"),
    )

    assert band.printed_by == "staff-9"
    assert _transactions(runtime_context)[0].processed_by == "staff-9"
    assert core_logic.list_activity_logs(runtime_context)[0].user_id == staff_identity.user_id


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": 0},
        {"quantity": -2},
        {"deposit_amount": -1},
        {"visitor_type": "X"},
    ],
)
def test_issue_bands_rejects_invalid_input_without_writing(runtime_context, overrides):
    """Validation failures should raise InvalidInput and leave every sheet empty."""

    command = core_logic.IssueCommand(**{"visitor_type": constants.VisitorType.ADULT, **overrides})

    with pytest.raises(core_logic.InvalidInputError) as excinfo:
        core_logic.issue_bands(runtime_context, command)

    assert excinfo.value.kind is core_logic.ErrorKind.INVALID_INPUT
    assert isinstance(excinfo.value, ValueError)
    assert core_logic.list_bands(runtime_context) == []
    assert _transactions(runtime_context) == []
    assert core_logic.list_activity_logs(runtime_context) == []


def test_issue_bands_redraws_colliding_codes(runtime_context):
    """A suffix already used this minute should be redrawn, not reused."""

    rng = Mock()
    rng.randrange.side_effect = [42, 42, 7]
    context = core_logic.RuntimeContext(
        settings=runtime_context.settings,
        workbook=runtime_context.workbook,
        clock=runtime_context.clock,
        rng=rng,
        autosave=False,
    )

    first, second = core_logic.issue_bands(
        context, core_logic.IssueCommand(constants.VisitorType.ADULT, quantity=2)
    )

    assert first.code.endswith("0042")
    assert second.code.endswith("0007")


def test_issue_bands_gives_up_when_code_space_exhausted(runtime_context):
    rng = Mock()
    rng.randrange.return_value = 1
    context = core_logic.RuntimeContext(
        settings=runtime_context.settings,
        workbook=runtime_context.workbook,
        clock=runtime_context.clock,
        rng=rng,
        autosave=False,
    )
    core_logic.issue_bands(context, core_logic.IssueCommand(constants.VisitorType.ADULT))

    with pytest.raises(core_logic.CodeSpaceExhaustedError):
        core_logic.issue_bands(context, core_logic.IssueCommand(constants.VisitorType.ADULT))

    assert len(core_logic.list_bands(context)) == 1
    assert rng.randrange.call_count == 1 + constants.MAX_CODE_ATTEMPTS


# ---------------------------------------------------------------------------
# Scan entry
# ---------------------------------------------------------------------------


def test_scan_entry_sets_entry_time_and_logs(runtime_context, issue_one, clock):
    band = issue_one()
    clock.advance(minutes=10)

    entered = core_logic.scan_entry(runtime_context, band.code)

    assert entered.entry_time == clock()
    assert core_logic.get_band(runtime_context, band.band_id).entry_time == clock()
    assert _actions(runtime_context)[0] == constants.ActivityAction.VISITOR_ENTRY.value


def test_scan_entry_twice_raises_already_entered(runtime_context, issue_one):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)

    with pytest.raises(core_logic.AlreadyEnteredError) as excinfo:
        core_logic.scan_entry(runtime_context, band.code)

    assert excinfo.value.band.code == band.code
    assert _actions(runtime_context).count(constants.ActivityAction.VISITOR_ENTRY.value) == 1


def test_scan_entry_unknown_code_raises_not_found(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError) as excinfo:
        core_logic.scan_entry(runtime_context, "A000000000000")

    assert excinfo.value.kind is core_logic.ErrorKind.NOT_FOUND


def test_scan_entry_blank_code_is_invalid_input(runtime_context):
    with pytest.raises(core_logic.InvalidInputError):
        core_logic.scan_entry(runtime_context, "   ")


def test_scan_entry_strips_scanner_whitespace(runtime_context, issue_one):
    band = issue_one()

    entered = core_logic.scan_entry(runtime_context, f" {band.code}\n")

    assert entered.band_id == band.band_id


def test_scan_entry_on_band_from_yesterday_is_expired(runtime_context, issue_one, clock):
    band = issue_one()
    clock.advance(days=1)

    with pytest.raises(core_logic.BandExpiredError):
        core_logic.scan_entry(runtime_context, band.code)

    assert core_logic.get_band(runtime_context, band.band_id).entry_time is None


def test_scan_checks_expiry_before_prior_entry(runtime_context, issue_one, clock):
    """An entered band scanned the next day reports expiry, not re-entry."""

    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    clock.advance(days=1)

    with pytest.raises(core_logic.BandExpiredError):
        core_logic.scan_entry(runtime_context, band.code)


def test_scan_checks_inactive_before_expiry(runtime_context, issue_one, clock):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    core_logic.scan_exit(runtime_context, band.code)
    clock.advance(days=2)

    with pytest.raises(core_logic.BandInactiveError):
        core_logic.scan_entry(runtime_context, band.code)


# ---------------------------------------------------------------------------
# Scan exit and refund
# ---------------------------------------------------------------------------


def test_scan_exit_records_exit_and_refunds(runtime_context, issue_one, clock, staff_identity):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    clock.advance(hours=3)

    final = core_logic.scan_exit(runtime_context, band.code)

    assert final.exit_time == clock()
    assert final.is_refunded and not final.is_active
    (refund,) = _transactions(runtime_context, constants.TransactionType.REFUND)
    assert refund.amount == band.deposit_amount
    assert refund.processed_by == staff_identity.user_id
    assert set(_actions(runtime_context)[:2]) == {
        constants.ActivityAction.VISITOR_EXIT.value,
        constants.ActivityAction.DEPOSIT_REFUNDED.value,
    }


def test_scan_exit_without_entry_mutates_nothing(runtime_context, issue_one):
    band = issue_one()
    before = (core_logic.list_bands(runtime_context), _transactions(runtime_context), _actions(runtime_context))

    with pytest.raises(core_logic.NoEntryRecordedError):
        core_logic.scan_exit(runtime_context, band.code)

    after = (core_logic.list_bands(runtime_context), _transactions(runtime_context), _actions(runtime_context))
    assert after == before


def test_scan_exit_after_refund_reports_inactive(runtime_context, issue_one):
    """Once refunded the band is inactive, which is checked before the exit time."""

    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    core_logic.scan_exit(runtime_context, band.code)

    with pytest.raises(core_logic.BandInactiveError):
        core_logic.scan_exit(runtime_context, band.code)


def test_scan_exit_on_exited_but_unrefunded_band_raises_already_exited(runtime_context, issue_one, clock):
    """A band whose stored exit was not followed by a refund must not exit twice."""

    band = issue_one()
    stuck = replace(band, entry_time=clock(), exit_time=clock())
    data_manager.update_band(runtime_context.workbook, stuck)
    core_logic.invalidate_cache(runtime_context, "bands")

    with pytest.raises(core_logic.AlreadyExitedError):
        core_logic.scan_exit(runtime_context, band.code)


def test_process_refund_is_noop_before_exit(runtime_context, issue_one):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)

    result = core_logic.process_refund(runtime_context, band.band_id)

    assert not result.is_refunded and result.is_active
    assert _transactions(runtime_context, constants.TransactionType.REFUND) == []


def test_process_refund_twice_records_single_refund(runtime_context, issue_one):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    core_logic.scan_exit(runtime_context, band.code)

    core_logic.process_refund(runtime_context, band.band_id)
    core_logic.process_refund(runtime_context, band.band_id)

    assert len(_transactions(runtime_context, constants.TransactionType.REFUND)) == 1
    assert _actions(runtime_context).count(constants.ActivityAction.DEPOSIT_REFUNDED.value) == 1


def test_process_refund_completes_a_stranded_exit(runtime_context, issue_one, clock, identity_holder):
    """A band exited without refund is refunded by the system actor when nobody is logged in."""

    band = issue_one()
    stranded = replace(band, entry_time=clock(), exit_time=clock())
    data_manager.update_band(runtime_context.workbook, stranded)
    core_logic.invalidate_cache(runtime_context, "bands")
    identity_holder["current"] = None

    result = core_logic.process_refund(runtime_context, band.band_id)

    assert result.is_refunded and not result.is_active
    (refund,) = _transactions(runtime_context, constants.TransactionType.REFUND)
    assert refund.processed_by == constants.SYSTEM_ACTOR_ID


def test_process_refund_unknown_band_raises(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.process_refund(runtime_context, "missing")


# ---------------------------------------------------------------------------
# Ledger and log queries
# ---------------------------------------------------------------------------


def test_list_transactions_newest_first_and_type_filter(runtime_context, issue_one, clock):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)
    clock.advance(hours=1)
    core_logic.scan_exit(runtime_context, band.code)

    everything = core_logic.list_transactions(runtime_context)
    deposits = core_logic.list_transactions(
        runtime_context, transaction_type=constants.TransactionType.DEPOSIT
    )

    assert [tx.transaction_type for tx in everything] == ["refund", "deposit"]
    assert [tx.transaction_type for tx in deposits] == ["deposit"]
    assert core_logic.sum_transactions(everything, constants.TransactionType.REFUND) == 50


def test_list_transactions_date_range_is_inclusive(runtime_context, issue_one, clock):
    issue_one()
    clock.advance(days=1)
    issue_one(constants.VisitorType.CHILD)

    first_day = core_logic.list_transactions(runtime_context, start=date(2026, 10, 19), end=date(2026, 10, 19))
    second_day = core_logic.list_transactions(runtime_context, start=date(2026, 10, 20))

    assert [tx.amount for tx in first_day] == [50]
    assert [tx.amount for tx in second_day] == [30]


def test_list_transactions_rejects_inverted_range(runtime_context):
    with pytest.raises(core_logic.InvalidInputError):
        core_logic.list_transactions(runtime_context, start=date(2026, 10, 20), end=date(2026, 10, 19))


def test_get_transaction_unknown_raises(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_transaction(runtime_context, "D-none")


def test_list_activity_logs_search_and_action_filters(runtime_context, issue_one):
    band = issue_one()
    core_logic.scan_entry(runtime_context, band.code)

    by_search = core_logic.list_activity_logs(runtime_context, search="ENTRY")
    by_action = core_logic.list_activity_logs(runtime_context, action=constants.ActivityAction.BAND_PRINTED)
    by_code = core_logic.list_activity_logs(runtime_context, search=band.code)

    assert [entry.action for entry in by_search] == ["Visitor Entry"]
    assert [entry.action for entry in by_action] == ["Band Printed"]
    assert len(by_code) == 2


def test_list_activity_actions_in_first_seen_order(runtime_context, issue_one):
    band = issue_one()
    issue_one()
    core_logic.scan_entry(runtime_context, band.code)

    assert core_logic.list_activity_actions(runtime_context) == ["Band Printed", "Visitor Entry"]


def test_list_bands_filters_by_staff_and_activity(runtime_context, issue_one, identity_holder):
    band = issue_one()
    identity_holder["current"] = core_logic.Identity("staff-2", "Second", constants.UserRole.STAFF)
    other = issue_one()
    core_logic.scan_entry(runtime_context, other.code)
    core_logic.scan_exit(runtime_context, other.code)

    assert [b.band_id for b in core_logic.get_bands_by_staff(runtime_context, "staff-1")] == [band.band_id]
    assert [b.band_id for b in core_logic.get_active_bands(runtime_context)] == [band.band_id]
    assert len(core_logic.list_bands(runtime_context)) == 2


def test_resolve_range_widens_plain_dates_to_whole_days(runtime_context):
    start, end = core_logic.resolve_range(runtime_context, date(2026, 10, 1), date(2026, 10, 2))

    assert start == datetime(2026, 10, 1, tzinfo=UTC)
    assert end == datetime(2026, 10, 2, 23, 59, 59, 999999, tzinfo=UTC)


def test_local_date_uses_clock_timezone():
    late_evening = datetime(2026, 10, 19, 23, 30, tzinfo=UTC)
    ahead = timedelta(hours=2)

    assert core_logic.local_date(late_evening, timezone(ahead)) == date(2026, 10, 20)
    assert core_logic.local_date(late_evening.replace(tzinfo=None), timezone(ahead)) == date(2026, 10, 19)


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------


def test_grouping_errors_carry_no_kind():
    """Only concrete errors name a kind; the grouping bases do not borrow one."""

    assert core_logic.LedgerError("x").kind is None
    assert core_logic.BusinessRuleViolation("x").kind is None
    assert core_logic.BandStateError("x", None).kind is None


@pytest.mark.parametrize(
    ("error_type", "kind"),
    [
        (core_logic.InvalidInputError, core_logic.ErrorKind.INVALID_INPUT),
        (core_logic.MissingReferenceError, core_logic.ErrorKind.NOT_FOUND),
        (core_logic.CodeSpaceExhaustedError, core_logic.ErrorKind.CODE_SPACE_EXHAUSTED),
        (core_logic.StoreUnavailableError, core_logic.ErrorKind.STORE_UNAVAILABLE),
    ],
)
def test_concrete_errors_carry_their_kind(error_type, kind):
    assert error_type("x").kind is kind


# ---------------------------------------------------------------------------
# Clock stepping backwards
# ---------------------------------------------------------------------------


def test_scan_exit_never_records_exit_before_entry(runtime_context, issue_one, clock):
    """An exit scanned after the clock stepped back is pinned to the entry time."""

    band = issue_one()
    clock.advance(minutes=30)
    entered = core_logic.scan_entry(runtime_context, band.code)
    clock.advance(minutes=-20)

    final = core_logic.scan_exit(runtime_context, band.code)

    assert final.exit_time == entered.entry_time
    assert final.is_refunded
    (refund,) = _transactions(runtime_context, constants.TransactionType.REFUND)
    assert refund.timestamp == entered.entry_time
    stored = core_logic.get_band(core_logic.refresh_context(runtime_context), band.band_id)
    assert stored.printed_at <= stored.entry_time <= stored.exit_time


def test_scan_entry_never_records_entry_before_printing(runtime_context, issue_one, clock):
    band = issue_one()
    clock.advance(minutes=-5)

    entered = core_logic.scan_entry(runtime_context, band.code)

    assert entered.entry_time == band.printed_at


# ---------------------------------------------------------------------------
# Day boundaries
# ---------------------------------------------------------------------------

WINTER = timezone(timedelta(hours=1))
SUMMER = timezone(timedelta(hours=2))


def test_resolve_range_uses_each_dates_own_offset(runtime_context, clock):
    """A winter day keeps its winter offset even when asked from summer."""

    context = replace(runtime_context, zone=ZoneInfo("Europe/Amsterdam"))
    clock.set(datetime(2026, 7, 1, 12, 0, tzinfo=SUMMER))

    start, end = core_logic.resolve_range(context, date(2026, 1, 31), date(2026, 1, 31))

    assert start.utcoffset() == timedelta(hours=1)
    assert end.utcoffset() == timedelta(hours=1)
    assert start == datetime(2026, 1, 30, 23, 0, tzinfo=UTC)


def test_day_zone_prefers_injected_zone_then_utc_clock(runtime_context, clock):
    amsterdam = ZoneInfo("Europe/Amsterdam")

    assert core_logic.day_zone(runtime_context) == UTC
    assert core_logic.day_zone(replace(runtime_context, zone=amsterdam)) is amsterdam
    clock.set(datetime(2026, 7, 1, 12, 0, tzinfo=SUMMER))
    assert core_logic.day_zone(runtime_context) is None


def test_load_runtime_context_reads_configured_time_zone(config_factory):
    bundle = config_factory()
    text = bundle.config_path.read_text()
    bundle.config_path.write_text(text.replace("[Defaults]", "TimeZone = Europe/Amsterdam\n\n[Defaults]"))

    context = core_logic.load_runtime_context(bundle.config_path)

    assert context.zone == ZoneInfo("Europe/Amsterdam")


def test_expiry_uses_the_park_calendar(runtime_context, issue_one, clock):
    """Just after local midnight a band from the previous local day is expired."""

    context = replace(runtime_context, zone=ZoneInfo("Europe/Amsterdam"))
    clock.set(datetime(2026, 10, 19, 21, 30, tzinfo=UTC))
    (band,) = core_logic.issue_bands(context, core_logic.IssueCommand("A"))
    clock.set(datetime(2026, 10, 19, 22, 30, tzinfo=UTC))

    with pytest.raises(core_logic.BandExpiredError):
        core_logic.scan_entry(context, band.code)
