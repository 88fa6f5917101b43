"""Shared pytest fixtures and utilities for supply trace tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from supply_trace import cli, constants, core_logic, data_manager  # noqa: E402
from supply_trace.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

ADMIN_ID = "0xADMIN"
ADMIN_NAME = "Network Admin"
FARM_ID = "0xF1"
DISTRIBUTOR_ID = "0xD1"
RETAILER_ID = "0xR1"
OUTSIDER_ID = "0xNOBODY"

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "NetworkName = {network_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "AdminIdentity = {admin_identity}\n"
    "AdminName = {admin_name}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    admin_identity: str
    schema_version: str
    network_name: str


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
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        admin_identity: str = ADMIN_ID,
        filename: str = "ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            admin_identity=admin_identity,
            admin_name=ADMIN_NAME,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook on disk."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        network_name: str = "Test Network",
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        admin_identity: str = ADMIN_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            admin_identity=admin_identity,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                network_name=network_name,
                schema_version=schema_version,
                admin_identity=admin_identity,
                admin_name=ADMIN_NAME,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            admin_identity=admin_identity,
            schema_version=schema_version,
            network_name=network_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        network_name="Test Network",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        admin_identity=ADMIN_ID,
        admin_name=ADMIN_NAME,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context over a freshly bootstrapped, unsaved workbook."""

    workbook = build_master_workbook(admin_identity=ADMIN_ID, admin_name=ADMIN_NAME)
    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def enroll(context: core_logic.RuntimeContext) -> Callable[..., None]:
    """Register a participant through the admin."""

    def _enroll(identifier: str, name: str, role: constants.Role) -> None:
        core_logic.register_participant(
            context,
            core_logic.RegisterParticipantCommand(
                identifier=identifier,
                name=name,
                role=role,
                caller=ADMIN_ID,
            ),
        )

    return _enroll


@pytest.fixture
def supply_chain(context: core_logic.RuntimeContext, enroll: Callable[..., None]) -> core_logic.RuntimeContext:
    """Context with a farm, a distributor and a retailer registered."""

    enroll(FARM_ID, "Green Acres", constants.Role.FARM)
    enroll(DISTRIBUTOR_ID, "Fast Freight", constants.Role.DISTRIBUTOR)
    enroll(RETAILER_ID, "Corner Shop", constants.Role.RETAILER)
    return context


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="trace-cli", description="Trace CLI")


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
