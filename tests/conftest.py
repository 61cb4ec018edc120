"""Shared pytest fixtures and utilities for storefront ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from storefront_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from storefront_ledger.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OWNER_ID = "owner-1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "OwnerID = {owner_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    owner_id: str
    schema_version: str
    store_name: str


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
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "storefront_master.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        owner_id: str = DEFAULT_OWNER_ID,
        analytics_section: str | None = None,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            store_name=store_name,
            schema_version=schema_version,
            owner_id=owner_id,
        )
        if analytics_section is not None:
            text += "\n[Analytics]\n" + analytics_section
        config_path.write_text(text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            owner_id=owner_id,
            schema_version=schema_version,
            store_name=store_name,
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
# Record builders
# ---------------------------------------------------------------------------


def make_item(
    item_id: str = "I1",
    *,
    name: str = "Pen",
    selling_price: str = "10",
    cost_price: str = "4",
    stock: int = 50,
    initial_stock: int | None = None,
    owner_id: str = DEFAULT_OWNER_ID,
) -> data_manager.ItemRow:
    """Build an in-memory item row with sensible defaults."""

    return data_manager.ItemRow(
        item_id=item_id,
        owner_id=owner_id,
        name=name,
        category=None,
        selling_price=Decimal(selling_price),
        cost_price=Decimal(cost_price),
        stock=stock,
        initial_stock=stock if initial_stock is None else initial_stock,
    )


def make_sale(
    sale_id: str = "S1",
    *,
    lines: tuple[tuple[str | None, str, int, str], ...] = (("I1", "Pen", 1, "10"),),
    total_amount: str | None = None,
    payment_method: constants.PaymentMethod = constants.PaymentMethod.PAID,
    timestamp: datetime | None = None,
    shape: constants.SaleShape = constants.SaleShape.ITEMIZED,
    owner_id: str = DEFAULT_OWNER_ID,
) -> data_manager.SaleRow:
    """Build an in-memory sale from ``(item_id, name, quantity, unit_price)`` tuples.

    When ``total_amount`` is omitted it is the sum of the line totals.
    """

    sale_lines = tuple(
        data_manager.SaleLine(
            item_id=item_id,
            item_name=name,
            quantity=quantity,
            unit_price=Decimal(unit_price),
            line_total=Decimal(unit_price) * quantity,
        )
        for item_id, name, quantity, unit_price in lines
    )
    total = (
        Decimal(total_amount)
        if total_amount is not None
        else sum((line.line_total for line in sale_lines), Decimal("0"))
    )
    return data_manager.SaleRow(
        sale_id=sale_id,
        owner_id=owner_id,
        lines=sale_lines,
        total_amount=total,
        payment_method=payment_method,
        shape=shape,
        timestamp=timestamp,
    )


@pytest.fixture
def item_builder() -> Callable[..., data_manager.ItemRow]:
    return make_item


@pytest.fixture
def sale_builder() -> Callable[..., data_manager.SaleRow]:
    return make_sale


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="storefront-cli", description="Storefront CLI")


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
        data_file=tmp_path / "storefront_master.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_owner_id=DEFAULT_OWNER_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook, owner_id=DEFAULT_OWNER_ID)


@pytest.fixture
def fixed_now() -> datetime:
    """A mid-month reference time used by analytics tests."""

    return datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            min = datetime.min

            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
