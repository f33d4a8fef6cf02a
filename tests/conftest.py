"""Shared pytest fixtures and utilities for Galaxy POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from galaxy_pos import cli, constants, core_logic, data_manager, sales  # noqa: E402
from galaxy_pos.constants import ProductCategory  # noqa: E402
from galaxy_pos.models import DrumPourOption, Product  # noqa: E402
from galaxy_pos.setup_workbook import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_CASHIER_ID = "e2"
FIXED_NOW = datetime(2025, 3, 14, 18, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Sales]\n"
    "VatRate = 16\n"
    "Currency = KSH\n"
    "SplitTolerance = 1\n\n"
    "[Defaults]\n"
    "DefaultCashier = {default_cashier_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_cashier_id: str
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


# ---------------------------------------------------------------------------
# Product builders
# ---------------------------------------------------------------------------


def make_bottle(product_id: str = "P1", *, stock: int = 5, price: str = "220", threshold: int = 2) -> Product:
    """Build a bottle product with sensible defaults."""

    return Product(
        id=product_id,
        name=f"Bottle {product_id}",
        category=ProductCategory.BOTTLE,
        buy_price=Decimal("150"),
        sell_price=Decimal(price),
        stock=stock,
        min_threshold=threshold,
    )


def make_drum(product_id: str = "D1", *, level: int = 35000, capacity: int = 50000, threshold: int = 5000) -> Product:
    """Build a drum with 50ml, 250ml and 0.5L pours."""

    return Product(
        id=product_id,
        name=f"Drum {product_id}",
        category=ProductCategory.DRUM,
        buy_price=Decimal("15000"),
        sell_price=Decimal("0"),
        stock=1,
        min_threshold=threshold,
        capacity=capacity,
        current_level=level,
        drum_pours=(
            DrumPourOption(label="50ml", volume=50, price=Decimal("150")),
            DrumPourOption(label="250ml", volume=250, price=Decimal("600")),
            DrumPourOption(label="0.5L", volume=500, price=Decimal("1100")),
        ),
    )


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        seed: bool = False,
        filename: str = "galaxy_store.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, seed=seed, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh, empty store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def store(store_path: Path) -> data_manager.WorkbookStore:
    """Open the empty store workbook."""

    return data_manager.WorkbookStore.open(store_path)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        seed: bool = False,
        create_workbook: bool = True,
        store_name: str = "Test Bar",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_cashier_id: str = DEFAULT_CASHIER_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", seed=seed)
        else:
            workbook_path = bundle_dir / "galaxy_store.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_cashier_id=default_cashier_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_cashier_id=default_cashier_id,
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


@pytest.fixture
def stocked_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context whose store holds bottle ``P1`` (stock 10) and drum ``D1``."""

    runtime_context.store.put_batch(
        constants.Collection.PRODUCTS,
        [make_bottle("P1", stock=10), make_bottle("P2", stock=3, price="250"), make_drum("D1")],
    )
    return runtime_context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="galaxy-pos", description="Galaxy POS")


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


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch the clock used by ``core_logic`` and ``sales``."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        monkeypatch.setattr(sales, "datetime", _FixedDateTime)
        return moment

    return _apply
