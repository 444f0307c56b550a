"""
tables.py - Pseudonym tables consulted by script expressions.

LookupTable
    Operator-supplied mapping from ``keyType/originalValue`` to a
    replacement, read from a properties file.  Read-only during a run.

IntegerTable
    Persistent, monotonically extended mapping from
    ``(keyType, originalValue)`` to a small integer.  Stored in SQLite so the
    same original value gets the same pseudonym on every run.  A mapping,
    once recorded, is never changed.
"""

import logging
import os
import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Iterator, Optional, Union

from dicomeditor.properties import load_properties

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class LookupTable(Mapping):
    """Case-sensitive ``keyType/keyValue -> replacement`` map."""

    def __init__(self, entries: Optional[dict[str, str]] = None, path: Optional[Path] = None):
        self._entries = dict(entries or {})
        self.path = path

    @classmethod
    def load(cls, path: PathLike) -> "LookupTable":
        """Load a lookup table; a missing file gives an empty table."""
        p = Path(path)
        if not p.exists():
            logger.warning("Lookup table %s not found; every @lookup will miss", p)
        entries = load_properties(p)
        logger.debug("Loaded %d lookup entries from %s", len(entries), p)
        return cls(entries, path=p)

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_replacement(self, key_type: str, value: str) -> Optional[str]:
        return self._entries.get(f"{key_type}/{value}")


class IntegerTable:
    """
    SQLite-backed integer pseudonym table.

    The database is opened in exclusive locking mode: while one run holds
    the table no other process can write to it.  Use as a context manager
    or call :meth:`close`.
    """

    def __init__(self, path: PathLike = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path)
        self._conn.execute("PRAGMA locking_mode = EXCLUSIVE")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS integers (
                key_type  TEXT    NOT NULL,
                value     TEXT    NOT NULL,
                pseudonym INTEGER NOT NULL,
                PRIMARY KEY (key_type, value),
                UNIQUE (key_type, pseudonym)
            )
            """
        )
        self._conn.commit()
        logger.debug("Opened integer table %s", self.path)

    def get_int(self, key_type: str, value: str) -> int:
        """
        Return the pseudonym for (key_type, value), allocating the next
        integer for that key type if the pair has not been seen before.
        """
        cur = self._conn.execute(
            "SELECT pseudonym FROM integers WHERE key_type = ? AND value = ?",
            (key_type, value),
        )
        row = cur.fetchone()
        if row:
            return row[0]
        with self._conn:
            (next_int,) = self._conn.execute(
                "SELECT COALESCE(MAX(pseudonym), 0) + 1 FROM integers WHERE key_type = ?",
                (key_type,),
            ).fetchone()
            self._conn.execute(
                "INSERT INTO integers (key_type, value, pseudonym) VALUES (?, ?, ?)",
                (key_type, value, next_int),
            )
        logger.debug("Integer table: %s/%s -> %d", key_type, value, next_int)
        return next_int

    def __len__(self) -> int:
        (count,) = self._conn.execute("SELECT COUNT(*) FROM integers").fetchone()
        return count

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "IntegerTable":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
