"""Utility for initializing the Galaxy POS store workbook.

The module doubles as a script (``python -m galaxy_pos.setup_workbook``) and
as a library used by the CLI ``init`` command and by tests.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, Sequence

from . import data_manager
from .constants import Collection
from .defaults import INITIAL_EMPLOYEES, INITIAL_PRODUCTS, INITIAL_SETTINGS
from .errors import StorageFailureError
from .models import Record, codec_for

CONFIG_FILE = "config.ini"


def seed_collections() -> Dict[Collection, Dict[str, Record]]:
    """Default products, staff and settings as stored records."""

    seeds = {
        Collection.PRODUCTS: INITIAL_PRODUCTS,
        Collection.EMPLOYEES: INITIAL_EMPLOYEES,
        Collection.SETTINGS: (INITIAL_SETTINGS,),
    }
    collections: Dict[Collection, Dict[str, Record]] = {}
    for collection, entities in seeds.items():
        codec = codec_for(collection)
        collections[collection] = {entity.id: codec.serialize(entity) for entity in entities}
    return collections


def create_store_workbook(destination: Path, *, seed: bool = True, overwrite: bool = False) -> Path:
    """Create an empty store workbook at ``destination``.

    With ``seed`` the default products, staff and settings are written too.
    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    collections = seed_collections() if seed else {}
    workbook = data_manager.build_workbook(collections, generation=0)
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, seed: bool = True, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_store_workbook(settings.data_file, seed=seed, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the Galaxy POS store workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--empty",
        action="store_true",
        help="Skip the default products, staff and settings.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Galaxy POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, seed=not args.empty, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except StorageFailureError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
