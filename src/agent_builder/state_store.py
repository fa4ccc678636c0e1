from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol, Sequence

from .errors import ConditionFailedError, NotFoundError, RecordExistsError

logger = logging.getLogger(__name__)

PROJECTS_TABLE = "projects"
TASKS_TABLE = "tasks"
ARTIFACTS_TABLE = "artifacts"

# Key attributes per table, partition key first.
TABLE_KEYS: dict[str, tuple[str, ...]] = {
    PROJECTS_TABLE: ("project_id",),
    TASKS_TABLE: ("project_id", "task_id"),
    ARTIFACTS_TABLE: ("project_id", "artifact_id"),
}

TABLE_INDEXES: dict[str, frozenset[str]] = {
    PROJECTS_TABLE: frozenset({"owner_id"}),
    TASKS_TABLE: frozenset({"project_id", "worker_name"}),
    ARTIFACTS_TABLE: frozenset({"project_id", "task_id"}),
}


class StateStoreClient(Protocol):
    """Key/indexed record store holding projects, tasks and artifacts.

    Items are JSON-compatible dicts. Writes that must not race carry a
    condition: ``put(..., if_absent=True)`` is create-only and
    ``update_fields(..., expected=...)`` only applies when the stored record
    still holds the expected values.
    """

    def get(self, table: str, key: Mapping[str, str]) -> dict[str, Any] | None:
        ...

    def put(self, table: str, item: Mapping[str, Any], *, if_absent: bool = False) -> None:
        ...

    def put_batch(self, table: str, items: Sequence[Mapping[str, Any]]) -> None:
        ...

    def update_fields(
        self,
        table: str,
        key: Mapping[str, str],
        fields: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        ...

    def query_by_index(self, table: str, index: str, value: str) -> list[dict[str, Any]]:
        ...

    def delete(self, table: str, key: Mapping[str, str]) -> None:
        ...


def _key_attributes(table: str) -> tuple[str, ...]:
    try:
        return TABLE_KEYS[table]
    except KeyError:
        raise ValueError(f"unknown table: {table}") from None


def _key_of(table: str, record: Mapping[str, Any]) -> tuple[str, ...]:
    values: list[str] = []
    for attribute in _key_attributes(table):
        value = record.get(attribute)
        if not isinstance(value, str) or not value:
            raise ValueError(f"{table} record is missing key attribute {attribute!r}")
        values.append(value)
    return tuple(values)


def _check_index(table: str, index: str) -> None:
    if index not in TABLE_INDEXES.get(table, frozenset()):
        raise ValueError(f"table {table!r} has no index {index!r}")


def _check_expected(table: str, current: Mapping[str, Any], expected: Mapping[str, Any] | None) -> None:
    if not expected:
        return
    mismatched = {name: current.get(name) for name, value in expected.items() if current.get(name) != value}
    if mismatched:
        raise ConditionFailedError(f"{table} condition failed: expected {dict(expected)}, found {mismatched}")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryStateStore:
    """Thread-safe in-process store used by tests and single-process runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[tuple[str, ...], dict[str, Any]]] = {table: {} for table in TABLE_KEYS}

    def get(self, table: str, key: Mapping[str, str]) -> dict[str, Any] | None:
        record_key = _key_of(table, key)
        with self._lock:
            record = self._tables[table].get(record_key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, table: str, item: Mapping[str, Any], *, if_absent: bool = False) -> None:
        record_key = _key_of(table, item)
        with self._lock:
            if if_absent and record_key in self._tables[table]:
                raise RecordExistsError(f"{table} record already exists: {'/'.join(record_key)}")
            self._tables[table][record_key] = copy.deepcopy(dict(item))

    def put_batch(self, table: str, items: Sequence[Mapping[str, Any]]) -> None:
        keyed = [(_key_of(table, item), item) for item in items]
        with self._lock:
            rows = self._tables[table]
            seen: set[tuple[str, ...]] = set()
            for record_key, _ in keyed:
                if record_key in rows or record_key in seen:
                    raise RecordExistsError(f"{table} record already exists: {'/'.join(record_key)}")
                seen.add(record_key)
            for record_key, item in keyed:
                rows[record_key] = copy.deepcopy(dict(item))

    def update_fields(
        self,
        table: str,
        key: Mapping[str, str],
        fields: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        record_key = _key_of(table, key)
        with self._lock:
            current = self._tables[table].get(record_key)
            if current is None:
                raise NotFoundError(table, "/".join(record_key))
            _check_expected(table, current, expected)
            key_attributes = set(_key_attributes(table))
            current.update({name: copy.deepcopy(value) for name, value in fields.items() if name not in key_attributes})
            return copy.deepcopy(current)

    def query_by_index(self, table: str, index: str, value: str) -> list[dict[str, Any]]:
        _check_index(table, index)
        with self._lock:
            return [copy.deepcopy(record) for record in self._tables[table].values() if record.get(index) == value]

    def delete(self, table: str, key: Mapping[str, str]) -> None:
        record_key = _key_of(table, key)
        with self._lock:
            self._tables[table].pop(record_key, None)


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_COMPONENT_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,127}$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data files be replaced with ``os.replace`` while the
    lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_record(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"record at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"record at {path} is empty")
    record = json.loads(text)
    if not isinstance(record, dict):
        raise ValueError(f"record at {path} is not a JSON object")
    return record


def _dump_record(record: Mapping[str, Any]) -> str:
    return json.dumps(record, indent=2, sort_keys=True)


class FileStateStore:
    """Filesystem store: one JSON file per record under ``root/<table>/``.

    Records are laid out as ``<table>/<partition key>/<sort key>.json`` (or
    ``<table>/<key>.json`` for single-key tables). Every write is an atomic
    temp-file-then-rename; writes that read before they write (conditional
    puts, batches, conditional updates) hold an exclusive per-table ``fcntl``
    lock so several consumer processes can share one directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        for table in TABLE_KEYS:
            (self.root / table).mkdir(parents=True, exist_ok=True)

    def _record_path(self, table: str, record_key: tuple[str, ...]) -> Path:
        for component in record_key:
            if not _SAFE_COMPONENT_RE.match(component):
                raise ValueError(f"{table} key component is not filesystem-safe: {component!r}")
        *directories, leaf = record_key
        return self.root.joinpath(table, *directories, f"{leaf}.json")

    def _table_lock(self, table: str) -> Path:
        return self.root / table / ".table"

    def get(self, table: str, key: Mapping[str, str]) -> dict[str, Any] | None:
        path = self._record_path(table, _key_of(table, key))
        if not path.is_file():
            return None
        return _read_record(path)

    def put(self, table: str, item: Mapping[str, Any], *, if_absent: bool = False) -> None:
        record_key = _key_of(table, item)
        path = self._record_path(table, record_key)
        with _locked_file(self._table_lock(table)):
            if if_absent and path.exists():
                raise RecordExistsError(f"{table} record already exists: {'/'.join(record_key)}")
            _atomic_write_text(path, _dump_record(item))

    def put_batch(self, table: str, items: Sequence[Mapping[str, Any]]) -> None:
        paths = [(self._record_path(table, _key_of(table, item)), item) for item in items]
        with _locked_file(self._table_lock(table)):
            seen: set[Path] = set()
            for path, _ in paths:
                if path.exists() or path in seen:
                    raise RecordExistsError(f"{table} record already exists: {path.relative_to(self.root)}")
                seen.add(path)
            written: list[Path] = []
            try:
                for path, item in paths:
                    _atomic_write_text(path, _dump_record(item))
                    written.append(path)
            except BaseException:
                for path in written:
                    path.unlink(missing_ok=True)
                raise

    def update_fields(
        self,
        table: str,
        key: Mapping[str, str],
        fields: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        record_key = _key_of(table, key)
        path = self._record_path(table, record_key)
        with _locked_file(self._table_lock(table)):
            if not path.is_file():
                raise NotFoundError(table, "/".join(record_key))
            current = _read_record(path)
            _check_expected(table, current, expected)
            key_attributes = set(_key_attributes(table))
            current.update({name: value for name, value in fields.items() if name not in key_attributes})
            _atomic_write_text(path, _dump_record(current))
            return current

    def query_by_index(self, table: str, index: str, value: str) -> list[dict[str, Any]]:
        _check_index(table, index)
        key_attributes = _key_attributes(table)
        table_dir = self.root / table
        if len(key_attributes) > 1 and index == key_attributes[0]:
            if not _SAFE_COMPONENT_RE.match(value):
                return []
            candidates = sorted((table_dir / value).glob("*.json"))
        else:
            candidates = sorted(table_dir.rglob("*.json"))
        records: list[dict[str, Any]] = []
        for path in candidates:
            record = _read_record(path)
            if record.get(index) == value:
                records.append(record)
        return records

    def delete(self, table: str, key: Mapping[str, str]) -> None:
        path = self._record_path(table, _key_of(table, key))
        with _locked_file(self._table_lock(table)):
            path.unlink(missing_ok=True)
