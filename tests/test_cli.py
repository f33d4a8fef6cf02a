"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from decimal import Decimal
from pathlib import Path

import pytest

from galaxy_pos import cli, core_logic
from galaxy_pos.constants import Collection, PaymentMethod
from galaxy_pos.errors import (
    DayClosedError,
    InsufficientStockError,
    StorageFailureError,
    ValidationError,
    WriteConflictError,
)


WRITE_COMMANDS = {
    "init",
    "sale",
    "settle",
    "close-day",
    "reopen-day",
    "cash-up",
    "restore",
    "import-products",
}

READ_COMMANDS = {
    "stock",
    "low-stock",
    "profit",
    "audit",
    "backup",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _run(bundle, *argv: str) -> int:
    return cli.main(["--config", str(bundle.config_path), *argv])


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "galaxy-pos"
    assert "Galaxy POS" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
    assert specs["init"].needs_store is False
    assert specs["sale"].needs_store is True


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_sale_command_parses_repeated_lines():
    """``sale`` accepts several bottle and pour lines."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["sale", "--item", "1:2", "--item", "2", "--pour", "drum-1:250ml", "--payment", "split", "--split-cash", "100"]
    )

    assert args.item == ["1:2", "2"]
    assert args.pour == ["drum-1:250ml"]
    assert args.payment == PaymentMethod.SPLIT.value
    assert args.split_cash == "100"
    assert args.tab is False


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {"alpha", "beta", "gamma"}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_cart_snapshots_products(config_factory):
    """Item arguments become cart lines priced from the store."""

    context = core_logic.load_runtime_context(config_factory(seed=True).config_path)
    args = argparse.Namespace(item=["1:2", "1", "2"], pour=["drum-1:50ml:3"])

    cart = cli.translate_cart(context, args)

    assert [(line.id, line.quantity) for line in cart] == [("1", 3), ("2", 1), ("drum-1-50ml", 3)]
    assert cart[2].volume == 50


def test_translate_cart_rejects_unknown_product(config_factory):
    """Unknown ids are reported before anything is built."""

    context = core_logic.load_runtime_context(config_factory(seed=True).config_path)
    with pytest.raises(ValidationError):
        cli.translate_cart(context, argparse.Namespace(item=["nope"], pour=[]))


def test_translate_split_only_for_split_payments():
    """Split components are read only for split payments."""

    args = argparse.Namespace(payment="split", split_cash="100", split_mobile="20.5", split_card="0")
    assert cli.translate_split(args).total == Decimal("120.5")
    assert cli.translate_split(argparse.Namespace(payment="cash")) is None


def test_translate_drawer_count_from_notes():
    """Denomination counts override the plain cash figure."""

    args = argparse.Namespace(note=["1000=2", "50=3"], cash="5")
    assert cli.translate_drawer_count(args) == Decimal("2150")
    assert cli.translate_drawer_count(argparse.Namespace(note=[], cash="75.50")) == Decimal("75.50")


def test_parse_amount_rejects_text():
    """Money arguments must be numbers."""

    with pytest.raises(ValidationError):
        cli.parse_amount("ten", field="--cash")


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (InsufficientStockError("P1", 3, 2), 2),
        (DayClosedError("2025-03-14"), 2),
        (ValidationError("bad"), 2),
        (FileNotFoundError("missing"), 3),
        (StorageFailureError("disk"), 4),
        (WriteConflictError("moved"), 4),
        (KeyError("DataFile"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    """Each error family has its own exit code."""

    assert cli.handle_cli_error(error) == code


# ---------------------------------------------------------------------------
# End-to-end commands
# ---------------------------------------------------------------------------


def test_main_init_creates_workbook(config_factory, capsys):
    """``init`` runs without an existing workbook."""

    bundle = config_factory(create_workbook=False)

    assert _run(bundle, "init") == 0
    assert bundle.workbook_path.exists()
    assert "Created store workbook" in capsys.readouterr().out
    assert _run(bundle, "init") == 1


def test_main_sale_and_stock(config_factory, capsys):
    """A CLI sale deducts stock that the stock report then shows."""

    bundle = config_factory(seed=True)

    assert _run(bundle, "sale", "--item", "1:2", "--pour", "drum-1:250ml", "--received", "2000") == 0
    out = capsys.readouterr().out
    assert "committed: total KSH 1100" in out
    assert "Change due: 900" in out

    assert _run(bundle, "stock") == 0
    out = capsys.readouterr().out
    assert "43" in out
    assert "34750ml / 50000ml" in out


def test_main_sale_insufficient_stock_exit_code(config_factory):
    """Availability failures exit with code 2 and change nothing."""

    bundle = config_factory(seed=True)

    assert _run(bundle, "sale", "--item", "1:46") == 2
    context = core_logic.load_runtime_context(bundle.config_path)
    assert context.store.get_by_id(Collection.PRODUCTS, "1").stock == 45


def test_main_missing_config_exit_code(tmp_path):
    """A missing configuration file exits with code 3."""

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_main_tab_settle_and_close_day(config_factory, capsys):
    """A tab opened from the CLI can be settled, then the day closed and reopened."""

    bundle = config_factory(seed=True)
    assert _run(bundle, "sale", "--item", "2", "--tab", "--table", "7") == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    (tab,) = context.store.get_all(Collection.SALES)

    assert _run(bundle, "settle", "--sale-id", tab.id, "--payment", "card") == 0
    assert _run(bundle, "close-day") == 0
    assert _run(bundle, "sale", "--item", "2") == 2
    assert _run(bundle, "reopen-day", "--reason", "late order") == 0
    assert _run(bundle, "sale", "--item", "2") == 0

    capsys.readouterr()
    assert _run(bundle, "audit", "--limit", "3") == 0
    out = capsys.readouterr().out
    assert "DAY_REOPEN" in out


def test_main_cash_up_and_low_stock(config_factory, capsys):
    """Cash-up reports variance; low-stock lists products under threshold."""

    bundle = config_factory(seed=True)
    assert _run(bundle, "sale", "--item", "1:40") == 0
    capsys.readouterr()

    assert _run(bundle, "cash-up", "--note", "1000=9", "--note", "500=1") == 0
    out = capsys.readouterr().out
    assert "Variance: -500" in out

    assert _run(bundle, "low-stock") == 0
    assert "Guinness" in capsys.readouterr().out


def test_main_cash_up_rejects_unknown_note(config_factory):
    """A drawer count naming a note the till does not hold is a validation error."""

    bundle = config_factory(seed=True)

    assert _run(bundle, "cash-up", "--note", "300=2") == 2
    context = core_logic.load_runtime_context(bundle.config_path)
    assert context.store.get_all(Collection.CASHUPS) == []


def test_main_backup_restore_and_import(config_factory, tmp_path, capsys):
    """Backups restore through the CLI and CSV files import products."""

    bundle = config_factory(seed=True)
    assert _run(bundle, "sale", "--item", "1") == 0
    backup_path = tmp_path / "backup.json"
    assert _run(bundle, "backup", str(backup_path)) == 0
    assert json.loads(backup_path.read_text(encoding="utf-8"))["products"]

    csv_path = tmp_path / "products.csv"
    csv_path.write_text("id,name,category,stock\nB9,Smirnoff Ice,bottle,12\n", encoding="utf-8")
    assert _run(bundle, "import-products", str(csv_path)) == 0

    assert _run(bundle, "restore", str(backup_path)) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    assert context.store.get_by_id(Collection.PRODUCTS, "B9") is None
    assert context.store.get_by_id(Collection.PRODUCTS, "1").stock == 44

    capsys.readouterr()
    assert _run(bundle, "profit") == 0
    assert "Revenue  KSH 250" in capsys.readouterr().out
