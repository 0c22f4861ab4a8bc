"""Shared pytest fixtures and utilities for Podo Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from podo_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 3, 14, 10, 30, tzinfo=UTC)

# Small shelf layout keeps workbook rewrites fast in tests.
TEST_SHELF_LAYOUT = {
    "BR001": {"M": 2, "S": 3, "L": 2, "F": 1},
    "BR002": {"M": 1, "S": 2},
    "BR003": {"S": 1},
}

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "NotificationCapacity = {capacity}\n\n"
    "[Defaults]\n"
    "PaymentMethod = card\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@dataclass(frozen=True)
class SeededLedger:
    """Identifiers of the sample records created by ``seeded_context``."""

    context: core_logic.RuntimeContext
    owner_id: str
    other_owner_id: str
    used_book_id: str
    new_book_id: str
    handmade_goods_id: str
    house_goods_id: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "podo_master.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, shelf_layout=TEST_SHELF_LAYOUT, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Books",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        capacity: int = constants.DEFAULT_NOTIFICATION_CAPACITY,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                capacity=capacity,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
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


@pytest.fixture
def seeded_context(runtime_context: core_logic.RuntimeContext) -> SeededLedger:
    """Runtime context holding two owners and a handful of items in BR001."""

    context = runtime_context
    owner = core_logic.register_owner(context, name="Kim Podo", branch_id="BR001", bank_account="KB 123-456")
    other = core_logic.register_owner(context, name="Lee Books", branch_id="BR001")
    core_logic.assign_shelf(context, branch_id="BR001", shelf_code="S01", owner_id=owner.owner_id)
    core_logic.assign_shelf(context, branch_id="BR001", shelf_code="L01", owner_id=other.owner_id)

    used_book = core_logic.add_book(
        context,
        item_id="BK001",
        branch_id="BR001",
        title="Demian",
        author="Hermann Hesse",
        isbn="978-89-374-6078-4",
        price=12000,
        condition="used",
        owner_id=owner.owner_id,
        shelf_code="S01",
    )
    new_book = core_logic.add_book(
        context,
        item_id="BK002",
        branch_id="BR001",
        title="Almond",
        author="Sohn Won-pyung",
        price=14000,
        condition="order_new",
        quantity=2,
        owner_id=other.owner_id,
        shelf_code="L01",
    )
    handmade = core_logic.add_goods(
        context,
        item_id="GD001",
        branch_id="BR001",
        name="Handwritten postcard set",
        price=8000,
        condition="handmade",
        quantity=5,
        owner_id=owner.owner_id,
        shelf_code="S01",
    )
    house = core_logic.add_goods(
        context,
        item_id="GD002",
        branch_id="BR001",
        name="Podo eco bag",
        price=15000,
        condition="podo",
        quantity=10,
    )
    return SeededLedger(
        context=context,
        owner_id=owner.owner_id,
        other_owner_id=other.owner_id,
        used_book_id=used_book.item_id,
        new_book_id=new_book.item_id,
        handmade_goods_id=handmade.item_id,
        house_goods_id=house.item_id,
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="podo-cli", description="Podo CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


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


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "podo_master.xlsx",
        shop_name="Test Books",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_payment_method="card",
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook, notifier=Mock(name="notifier"))


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
