"""Data access layer for Galaxy POS.

This module owns everything that touches the ``galaxy_store.xlsx`` workbook.
Business rules belong elsewhere.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, migrating, and atomically replacing the file.
3. The :class:`WorkbookStore`: named collections of entities with get, put,
   batch, delete and clear operations, plus :meth:`WorkbookStore.transaction`
   which groups writes across collections into one all-or-nothing unit.

Every collection lives on its own worksheet with an ``ID`` column and a JSON
``Payload`` column. A ``Meta`` worksheet records the schema version and a
generation counter that increases with every successful write.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Generic, Iterable, Iterator, List, Mapping, Optional, TypeVar, Union
from zipfile import BadZipFile

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import IllegalCharacterError, InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_CURRENCY,
    DEFAULT_VAT_RATE,
    EXPECTED_SCHEMA_VERSION,
    LEGACY_COLLECTIONS,
    LEGACY_SCHEMA_VERSIONS,
    SPLIT_TOLERANCE,
    Collection,
)
from .errors import SchemaMismatchError, StorageFailureError, WriteConflictError
from .models import Record, codec_for


CONFIG_FILE_NAME = "config.ini"
META_SHEET = "Meta"
COLLECTION_HEADER = ("ID", "Payload")
META_HEADER = ("Key", "Value")

T = TypeVar("T")
Collections = Dict[Collection, Dict[str, Record]]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_cashier_id: str
    vat_rate: Decimal = DEFAULT_VAT_RATE
    currency: str = DEFAULT_CURRENCY
    split_tolerance: Decimal = SPLIT_TOLERANCE

    @property
    def vat_fraction(self) -> Decimal:
        return self.vat_rate / Decimal("100")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An ``explicit_path`` is returned as-is. Otherwise the search walks up from
    the current working directory toward the filesystem root and returns the
    first ``config.ini`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of
            performing the upward search.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` entries are required. The ``[Sales]``
    section is optional and falls back to a 16% VAT rate, the KSH currency and
    a split tolerance of one currency unit. A relative ``DataFile`` is
    anchored to ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required section or option is missing, or a numeric
            option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_cashier = parser.get("Defaults", "DefaultCashier")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        vat_rate = Decimal(parser.get("Sales", "VatRate", fallback=str(DEFAULT_VAT_RATE)))
        split_tolerance = Decimal(parser.get("Sales", "SplitTolerance", fallback=str(SPLIT_TOLERANCE)))
    except InvalidOperation as exc:
        raise KeyError(f"Invalid numeric configuration entry: {exc}") from exc
    currency = parser.get("Sales", "Currency", fallback=DEFAULT_CURRENCY)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_cashier_id=default_cashier,
        vat_rate=vat_rate,
        currency=currency,
        split_tolerance=split_tolerance,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path, *, read_only: bool = False) -> Workbook:
    """Open the store workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageFailureError: If the file exists but is not a readable
            workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file, read_only=read_only)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
        log.error("Unable to open workbook '%s': %s", data_file, exc)
        raise StorageFailureError(f"Unable to open workbook: {data_file}", cause=exc) from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist ``workbook`` by atomically replacing ``destination``.

    The workbook is written to a temporary file in the destination directory
    and moved over the target with :func:`os.replace`, so readers see either
    the previous file or the new one and never a partially written file.

    Raises:
        StorageFailureError: If the file cannot be written or replaced.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".xlsx", dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StorageFailureError(f"Unable to save workbook: {dest}", cause=exc) from exc
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


def read_meta(workbook: Workbook) -> Dict[str, str]:
    """Return the key/value pairs stored on the ``Meta`` sheet.

    Workbooks written before the sheet existed are reported as schema ``1``.
    """

    if META_SHEET not in workbook.sheetnames:
        return {"SchemaVersion": LEGACY_SCHEMA_VERSIONS[0], "Generation": "0"}
    meta: Dict[str, str] = {}
    for raw in workbook[META_SHEET].iter_rows(min_row=2, values_only=True):
        if raw and raw[0] is not None:
            meta[str(raw[0])] = "" if raw[1] is None else str(raw[1])
    return meta


def read_generation(data_file: Path) -> int:
    """Read the generation counter currently stored on disk."""

    workbook = open_workbook(data_file, read_only=True)
    try:
        return int(read_meta(workbook).get("Generation", "0"))
    finally:
        workbook.close()


def iter_records(workbook: Workbook, collection: Collection) -> Iterator[Record]:
    """Yield the JSON records stored on a collection worksheet.

    Header and fully empty rows are skipped.

    Raises:
        StorageFailureError: If a payload is not valid JSON.
    """

    sheet = workbook[Collection(collection).value]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not raw or all(cell is None for cell in raw):
            continue
        try:
            yield json.loads(raw[1])
        except (TypeError, ValueError) as exc:
            raise StorageFailureError(
                f"Corrupt payload in {sheet.title} row {row_idx}", cause=exc
            ) from exc


def build_workbook(collections: Mapping[Collection, Mapping[str, Record]], *, generation: int) -> Workbook:
    """Render collections into a fresh workbook ready to be saved.

    Every collection gets a sheet, even when empty, so the saved file always
    carries the full current schema.
    """

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    meta = workbook.create_sheet(title=META_SHEET)
    meta.append(list(META_HEADER))
    meta.append(["SchemaVersion", EXPECTED_SCHEMA_VERSION])
    meta.append(["Generation", generation])

    for collection in Collection:
        sheet = workbook.create_sheet(title=collection.value)
        sheet.append(list(COLLECTION_HEADER))
        for entity_id, record in collections.get(collection, {}).items():
            sheet.append([entity_id, json.dumps(record, sort_keys=True)])

    for sheet in workbook.worksheets:
        for cell in sheet[1]:
            cell.font = bold_font
    return workbook


def load_collections(workbook: Workbook) -> Collections:
    """Read every collection sheet into ordered ``{id: record}`` mappings.

    Sheets missing from the workbook produce empty collections.
    """

    collections: Collections = {}
    for collection in Collection:
        bucket: Dict[str, Record] = {}
        if collection.value in workbook.sheetnames:
            for record in iter_records(workbook, collection):
                bucket[str(record["id"])] = record
        collections[collection] = bucket
    return collections


def check_schema(meta: Mapping[str, str]) -> bool:
    """Return ``True`` when the workbook needs a one-time migration.

    Raises:
        SchemaMismatchError: If the schema version is neither current nor a
            known legacy version.
    """

    version = meta.get("SchemaVersion", "")
    if version == EXPECTED_SCHEMA_VERSION:
        return False
    if version in LEGACY_SCHEMA_VERSIONS:
        return True
    log.error(
        "Workbook schema mismatch: expected %s, found %s",
        EXPECTED_SCHEMA_VERSION,
        version,
    )
    raise SchemaMismatchError(
        "Workbook schema mismatch: expected %s, found %s" % (EXPECTED_SCHEMA_VERSION, version)
    )


def check_legacy_sheets(workbook: Workbook) -> None:
    """Verify that a workbook without ``Meta`` has every schema 1 sheet.

    Raises:
        SchemaMismatchError: If any legacy collection sheet is missing, which
            means the file is not a Galaxy POS workbook at all.
    """

    missing = [collection.value for collection in LEGACY_COLLECTIONS if collection.value not in workbook.sheetnames]
    if missing:
        log.error("Workbook lacks legacy sheets: %s", ", ".join(missing))
        raise SchemaMismatchError("Workbook is missing sheets: %s" % ", ".join(missing))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


_DELETED = object()


class StoreTransaction:
    """Staged view of the store used inside :meth:`WorkbookStore.transaction`.

    Writes are buffered in an overlay and only become visible to other readers
    when the enclosing ``with`` block finishes without raising. Reads made
    through the transaction observe its own staged writes.
    """

    def __init__(self, store: "WorkbookStore"):
        self._store = store
        self._staged: Dict[Collection, Dict[str, Any]] = {}
        self._cleared: set[Collection] = set()

    @property
    def has_changes(self) -> bool:
        return bool(self._staged or self._cleared)

    def _base(self, collection: Collection) -> Mapping[str, Record]:
        if collection in self._cleared:
            return {}
        return self._store._collections[collection]

    def _view(self, collection: Collection) -> Dict[str, Record]:
        merged = dict(self._base(collection))
        for entity_id, record in self._staged.get(collection, {}).items():
            if record is _DELETED:
                merged.pop(entity_id, None)
            else:
                merged[entity_id] = record
        return merged

    def get_all(self, collection: Collection, limit: Optional[int] = None) -> List[Any]:
        collection = Collection(collection)
        codec = codec_for(collection)
        records = list(self._view(collection).values())
        if limit is not None:
            records = records[:limit]
        return [codec.deserialize(record) for record in records]

    def get_by_id(self, collection: Collection, entity_id: str) -> Optional[Any]:
        collection = Collection(collection)
        staged = self._staged.get(collection, {})
        if entity_id in staged:
            record = staged[entity_id]
        else:
            record = self._base(collection).get(entity_id)
        if record is None or record is _DELETED:
            return None
        return codec_for(collection).deserialize(record)

    def put(self, collection: Collection, entity: Any) -> None:
        collection = Collection(collection)
        record = codec_for(collection).serialize(entity)
        self._staged.setdefault(collection, {})[str(record["id"])] = record

    def put_batch(self, collection: Collection, entities: Iterable[Any]) -> None:
        for entity in entities:
            self.put(collection, entity)

    def delete(self, collection: Collection, entity_id: str) -> None:
        self._staged.setdefault(Collection(collection), {})[entity_id] = _DELETED

    def clear_all(self) -> None:
        self._staged.clear()
        self._cleared.update(Collection)

    def merged(self) -> Collections:
        """Return the complete state the store will hold after commit."""
        return {collection: self._view(collection) for collection in Collection}


class Repository(Generic[T]):
    """Typed view over one collection of a store or an open transaction."""

    def __init__(self, source: Union["WorkbookStore", StoreTransaction], collection: Collection):
        self.source = source
        self.collection = Collection(collection)

    def get_all(self, limit: Optional[int] = None) -> List[T]:
        return self.source.get_all(self.collection, limit)

    def get(self, entity_id: str) -> Optional[T]:
        return self.source.get_by_id(self.collection, entity_id)

    def put(self, entity: T) -> None:
        self.source.put(self.collection, entity)

    def put_batch(self, entities: Iterable[T]) -> None:
        self.source.put_batch(self.collection, entities)

    def delete(self, entity_id: str) -> None:
        self.source.delete(self.collection, entity_id)


class WorkbookStore:
    """Durable, transactional store of named collections backed by a workbook.

    The whole data set is held in memory and every committed write rewrites
    the workbook through :func:`save_workbook`. The in-memory state is swapped
    only after the file has been replaced, so a failed save leaves both disk
    and memory at the previous state. A re-entrant lock serializes
    transactions; a thread that already holds a transaction may not open a
    second one.
    """

    def __init__(self, data_file: Path, collections: Collections, *, generation: int = 0):
        self.data_file = Path(data_file)
        self._collections: Collections = {collection: dict(collections.get(collection, {})) for collection in Collection}
        self._generation = generation
        self._lock = threading.RLock()
        self._active = threading.local()

    @classmethod
    def open(cls, data_file: Path) -> "WorkbookStore":
        """Load a store from disk, migrating a legacy workbook once.

        Raises:
            FileNotFoundError: If the workbook does not exist.
            StorageFailureError: If the workbook cannot be read.
            SchemaMismatchError: If the workbook schema is unsupported.
        """

        data_file = Path(data_file).expanduser().resolve()
        workbook = open_workbook(data_file)
        meta = read_meta(workbook)
        needs_migration = check_schema(meta)
        if needs_migration:
            check_legacy_sheets(workbook)
        generation = int(meta.get("Generation") or 0)
        store = cls(data_file, load_collections(workbook), generation=generation)
        if needs_migration:
            log.warning(
                "Migrating workbook '%s' from schema %s to %s",
                data_file,
                meta.get("SchemaVersion"),
                EXPECTED_SCHEMA_VERSION,
            )
            store._persist(store._collections)
        log.info("Opened store '%s' at generation %d", data_file, store.generation)
        return store

    @property
    def generation(self) -> int:
        return self._generation

    def repository(self, collection: Collection) -> Repository[Any]:
        return Repository(self, collection)

    # Reads -----------------------------------------------------------------

    def get_all(self, collection: Collection, limit: Optional[int] = None) -> List[Any]:
        """Return every entity in ``collection`` in insertion order.

        An empty collection yields an empty list. ``limit`` keeps the first
        ``limit`` entities.
        """
        collection = Collection(collection)
        codec = codec_for(collection)
        records = list(self._collections[collection].values())
        if limit is not None:
            records = records[:limit]
        return [codec.deserialize(record) for record in records]

    def get_by_id(self, collection: Collection, entity_id: str) -> Optional[Any]:
        collection = Collection(collection)
        record = self._collections[collection].get(entity_id)
        if record is None:
            return None
        return codec_for(collection).deserialize(record)

    # Writes ----------------------------------------------------------------

    def put(self, collection: Collection, entity: Any) -> None:
        with self.transaction() as txn:
            txn.put(collection, entity)

    def put_batch(self, collection: Collection, entities: Iterable[Any]) -> None:
        """Upsert several entities in one all-or-nothing write."""
        with self.transaction() as txn:
            txn.put_batch(collection, entities)

    def delete(self, collection: Collection, entity_id: str) -> None:
        with self.transaction() as txn:
            txn.delete(collection, entity_id)

    def clear_all(self) -> None:
        """Empty every collection in one atomic write."""
        with self.transaction() as txn:
            txn.clear_all()
        log.warning("Cleared every collection in '%s'", self.data_file)

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Group reads and writes across collections into one atomic unit.

        Leaving the block normally commits every staged write at once.
        Raising inside the block discards them and re-raises.

        Raises:
            RuntimeError: If the current thread already holds a transaction.
            WriteConflictError: If the workbook changed on disk since it was
                loaded.
            StorageFailureError: If the workbook cannot be written.
        """

        with self._lock:
            if getattr(self._active, "txn", None) is not None:
                raise RuntimeError("Nested store transactions are not supported")
            txn = StoreTransaction(self)
            self._active.txn = txn
            try:
                yield txn
                if txn.has_changes:
                    merged = txn.merged()
                    self._persist(merged)
                    self._collections = merged
            finally:
                self._active.txn = None

    def run_atomic_sale_commit(self, sale: Any, receipt: Any, **kwargs: Any) -> None:
        """Run the inventory-commit transaction against this store.

        See :func:`galaxy_pos.core_logic.commit_sale`.
        """
        from .core_logic import commit_to_store

        commit_to_store(self, sale, receipt, **kwargs)

    def _persist(self, collections: Collections) -> None:
        try:
            on_disk = read_generation(self.data_file)
        except FileNotFoundError as exc:
            log.error("Workbook '%s' disappeared before commit", self.data_file)
            raise StorageFailureError(f"Workbook not found: {self.data_file}", cause=exc) from exc
        if on_disk != self._generation:
            log.error(
                "Write conflict on '%s': loaded generation %d, disk generation %d",
                self.data_file,
                self._generation,
                on_disk,
            )
            raise WriteConflictError(
                f"Workbook changed on disk (expected generation {self._generation}, found {on_disk})"
            )
        try:
            workbook = build_workbook(collections, generation=self._generation + 1)
        except IllegalCharacterError as exc:
            log.error("Cannot write '%s': %s", self.data_file, exc)
            raise StorageFailureError(f"Workbook cannot hold a value: {exc}", cause=exc) from exc
        save_workbook(workbook, self.data_file)
        self._generation += 1
        log.debug("Persisted store '%s' at generation %d", self.data_file, self._generation)
