"""
commonsgov/protocol/storage.py

Append-mostly storage layer for governance state.

Provides two backends:
1. Memory - Fast, volatile (tests, replicas that rebuild from a peer)
2. Local disk - JSON-lines files, one per table, survive restarts

Tables:
- contributions        - verified contribution facts
- audit_log            - proof_reference replay protection
- weight_snapshots     - per-contributor snapshot rows, versioned by computed_at
- zap_votes            - per-proposal zap votes
- economic_nodes       - registered economic nodes and status changes
- economic_node_votes  - node signals (last write wins on read)
- proposals            - proposal records (last record per id wins on read)
- round_results        - immutable per-round results
- multipliers          - versioned reputation multipliers

Rows are never rewritten in place; a table may only be compacted as a
whole through rewrite(). Components rebuild their in-memory indexes
from a full scan at startup.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger("commonsgov.protocol.storage")


# ============================================================================
# CONSTANTS
# ============================================================================

TABLE_CONTRIBUTIONS = "contributions"
TABLE_AUDIT_LOG = "audit_log"
TABLE_WEIGHT_SNAPSHOTS = "weight_snapshots"
TABLE_ZAP_VOTES = "zap_votes"
TABLE_ECONOMIC_NODES = "economic_nodes"
TABLE_ECONOMIC_NODE_VOTES = "economic_node_votes"
TABLE_PROPOSALS = "proposals"
TABLE_ROUND_RESULTS = "round_results"
TABLE_MULTIPLIERS = "multipliers"

TABLES = (
    TABLE_CONTRIBUTIONS,
    TABLE_AUDIT_LOG,
    TABLE_WEIGHT_SNAPSHOTS,
    TABLE_ZAP_VOTES,
    TABLE_ECONOMIC_NODES,
    TABLE_ECONOMIC_NODE_VOTES,
    TABLE_PROPOSALS,
    TABLE_ROUND_RESULTS,
    TABLE_MULTIPLIERS,
)

# Default storage path
DEFAULT_STORAGE_DIR = Path.home() / ".commonsgov" / "storage"


# ============================================================================
# STORAGE BACKENDS
# ============================================================================

class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def append(self, table: str, record: dict) -> None:
        """Append one record to a table."""
        pass

    @abstractmethod
    def scan(self, table: str) -> List[dict]:
        """Return all records of a table in insertion order."""
        pass

    @abstractmethod
    def rewrite(self, table: str, records: List[dict]) -> None:
        """Replace a table's contents (compaction only)."""
        pass

    def count(self, table: str) -> int:
        return len(self.scan(table))

    def close(self) -> None:
        pass


class MemoryBackend(StorageBackend):
    """In-memory storage backend."""

    def __init__(self):
        self._tables: Dict[str, List[dict]] = {name: [] for name in TABLES}
        self._lock = threading.Lock()

    def append(self, table: str, record: dict) -> None:
        with self._lock:
            self._tables.setdefault(table, []).append(dict(record))

    def scan(self, table: str) -> List[dict]:
        with self._lock:
            return [dict(r) for r in self._tables.get(table, [])]

    def rewrite(self, table: str, records: List[dict]) -> None:
        with self._lock:
            self._tables[table] = [dict(r) for r in records]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables.get(table, []))


class FileBackend(StorageBackend):
    """
    Local file storage backend.

    Each table is a JSON-lines file. Appends are flushed before returning
    so a record that was acknowledged survives a crash.
    """

    def __init__(self, storage_dir: Optional[Path] = None):
        self.storage_dir = Path(storage_dir) if storage_dir else DEFAULT_STORAGE_DIR
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {name: threading.Lock() for name in TABLES}
        self._cache: Dict[str, List[dict]] = {}
        for name in TABLES:
            self._cache[name] = self._load_table(name)

    def _table_path(self, table: str) -> Path:
        return self.storage_dir / f"{table}.jsonl"

    def _load_table(self, table: str) -> List[dict]:
        """Load a table from disk, skipping a torn final line."""
        path = self._table_path(table)
        if not path.exists():
            return []

        records = []
        with open(path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt record {table}:{line_no}: {e}")
        logger.debug(f"Loaded {len(records)} records from {path}")
        return records

    def _lock_for(self, table: str) -> threading.Lock:
        lock = self._locks.get(table)
        if lock is None:
            lock = self._locks.setdefault(table, threading.Lock())
        return lock

    def append(self, table: str, record: dict) -> None:
        line = json.dumps(record, sort_keys=True)
        with self._lock_for(table):
            with open(self._table_path(table), "a") as f:
                f.write(line + "\n")
                f.flush()
            self._cache.setdefault(table, []).append(dict(record))

    def scan(self, table: str) -> List[dict]:
        with self._lock_for(table):
            return [dict(r) for r in self._cache.get(table, [])]

    def rewrite(self, table: str, records: List[dict]) -> None:
        """Write the table to a temp file and swap it in atomically."""
        path = self._table_path(table)
        tmp_path = path.with_suffix(".jsonl.tmp")
        with self._lock_for(table):
            with open(tmp_path, "w") as f:
                for record in records:
                    f.write(json.dumps(record, sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            self._cache[table] = [dict(r) for r in records]
        logger.debug(f"Rewrote {table} with {len(records)} records")

    def count(self, table: str) -> int:
        with self._lock_for(table):
            return len(self._cache.get(table, []))


# ============================================================================
# GOVERNANCE STORE
# ============================================================================

T = TypeVar("T")


class GovernanceStore:
    """
    Typed access to the governance tables.

    Wraps a backend and converts between records and model objects via
    their to_dict/from_dict methods.
    """

    def __init__(self, backend: Optional[StorageBackend] = None):
        self._backend = backend or MemoryBackend()

    @classmethod
    def in_memory(cls) -> "GovernanceStore":
        return cls(MemoryBackend())

    @classmethod
    def on_disk(cls, storage_dir: Optional[Path] = None) -> "GovernanceStore":
        return cls(FileBackend(storage_dir))

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    def append(self, table: str, obj: Any) -> None:
        """Persist a model object (or plain dict) to a table."""
        record = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)
        self._backend.append(table, record)

    def rewrite(self, table: str, objs: List[Any]) -> None:
        """Compact a table down to the given objects (or plain dicts)."""
        records = [o.to_dict() if hasattr(o, "to_dict") else dict(o) for o in objs]
        self._backend.rewrite(table, records)

    def load(self, table: str, factory: Callable[[dict], T]) -> List[T]:
        """Load every record of a table through a from_dict factory."""
        items = []
        for record in self._backend.scan(table):
            try:
                items.append(factory(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable {table} record: {e}")
        return items

    def get_stats(self) -> Dict[str, int]:
        """Row counts per table."""
        return {table: self._backend.count(table) for table in TABLES}

    def close(self) -> None:
        self._backend.close()
