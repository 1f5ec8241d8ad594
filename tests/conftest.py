"""Shared pytest fixtures and utilities for band ledger tests."""

from __future__ import annotations

import argparse
import random
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from band_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from band_ledger.setup_workbook import create_ledger_workbook  # noqa: E402

PARK_NAME = "Test Park"
OPENING_MOMENT = datetime(2026, 10, 19, 9, 15, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ParkName = {park_name}\n\n"
    "[Defaults]\n"
    "AdultDeposit = {adult_deposit}\n"
    "ChildDeposit = {child_deposit}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    park_name: str


class FixedClock:
    """Manually advanced clock injected into runtime contexts."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment

    def set(self, moment: datetime) -> datetime:
        self.moment = moment
        return moment


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "band_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_ledger_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        park_name: str = PARK_NAME,
        adult_deposit: int = 50,
        child_deposit: int = 30,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                park_name=park_name,
                adult_deposit=adult_deposit,
                child_deposit=child_deposit,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            park_name=park_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def clock() -> FixedClock:
    """A clock frozen at a weekday morning, advanced explicitly by tests."""

    return FixedClock(OPENING_MOMENT)


@pytest.fixture
def staff_identity() -> core_logic.Identity:
    return core_logic.Identity(user_id="staff-1", name="Gate Staff", role=constants.UserRole.STAFF)


@pytest.fixture
def identity_holder(staff_identity: core_logic.Identity) -> dict:
    """Mutable slot read by the identity provider; set ``current`` to switch users."""

    return {"current": staff_identity}


@pytest.fixture
def runtime_context(
    config_file: Path,
    clock: FixedClock,
    identity_holder: dict,
) -> core_logic.RuntimeContext:
    """Load a runtime context over a real workbook through the public API."""

    return core_logic.load_runtime_context(
        config_file,
        clock=clock,
        identity_provider=lambda: identity_holder["current"],
        rng=random.Random(2026),
    )


@pytest.fixture
def issue_one(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.BandRow]:
    """Issue a single band and return it."""

    def _issue(visitor_type: constants.VisitorType = constants.VisitorType.ADULT, **overrides) -> data_manager.BandRow:
        command = core_logic.IssueCommand(visitor_type=visitor_type, **overrides)
        (band,) = core_logic.issue_bands(runtime_context, command)
        return band

    return _issue


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="band-ledger", description="Band ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
