"""
Ledger storage with per-operation transactions.

Two backends share one contract:

- insert_vault(record) -> bool      compare-and-set; False when a vault ledger exists
- transaction(*addresses)           context manager; stages depositor writes,
                                    commits on clean exit, discards on exception
                                    or tx.rollback()
- put_depositor(record)             optimistic: record.version must equal the
                                    stored version (0 = absent), else ConflictError
- consume_nonce(signer, nonce)      True the first time a pair is seen, False on replay;
                                    persisted with the ledgers

MemoryLedgerStore  per-record locks, so different depositors never wait on each other.
SqliteLedgerStore  stdlib sqlite3, WAL, BEGIN IMMEDIATE per transaction.
"""
from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

import deal

from infra.logging_config import get_logger
from infra.time_utils import now_iso
from vault.ledger import DepositorLedger, VaultLedger

logger = get_logger(__name__)


class ConflictError(RuntimeError):
    """Raised when a ledger record changed (or is locked) underneath a transaction."""
    pass


class LedgerTransaction(Protocol):
    def get_vault(self, address: str) -> Optional[VaultLedger]: ...

    def get_depositor(self, address: str) -> Optional[DepositorLedger]: ...

    def put_depositor(self, record: DepositorLedger) -> DepositorLedger: ...

    def rollback(self) -> None: ...


class LedgerStore(Protocol):
    def insert_vault(self, record: VaultLedger) -> bool: ...

    def get_vault(self, address: str) -> Optional[VaultLedger]: ...

    def get_depositor(self, address: str) -> Optional[DepositorLedger]: ...

    def iter_depositors(self) -> Iterator[DepositorLedger]: ...

    def transaction(self, *addresses: str): ...

    def consume_nonce(self, signer: str, nonce: str) -> bool: ...


def _bumped(record: DepositorLedger) -> DepositorLedger:
    return replace(record, version=record.version + 1, updated_at=record.updated_at or now_iso())


# =========================
# MEMORY
# =========================


class _MemoryTransaction:
    def __init__(self, store: "MemoryLedgerStore") -> None:
        self._store = store
        self.staged: Dict[str, DepositorLedger] = {}
        # version the store must still hold at commit, per address
        self.base_versions: Dict[str, int] = {}
        self.rolled_back = False

    def get_vault(self, address: str) -> Optional[VaultLedger]:
        return self._store.get_vault(address)

    def get_depositor(self, address: str) -> Optional[DepositorLedger]:
        if address in self.staged:
            return self.staged[address]
        return self._store.get_depositor(address)

    def put_depositor(self, record: DepositorLedger) -> DepositorLedger:
        if self.rolled_back:
            raise RuntimeError("TX_ALREADY_ROLLED_BACK")
        base = self.base_versions.setdefault(record.address, record.version)
        new = replace(_bumped(record), version=base + 1)
        self.staged[record.address] = new
        return new

    def rollback(self) -> None:
        self.staged.clear()
        self.base_versions.clear()
        self.rolled_back = True


class MemoryLedgerStore:
    def __init__(self, lock_timeout_s: float = 30.0) -> None:
        self._lock = threading.Lock()
        self._vaults: Dict[str, VaultLedger] = {}
        self._depositors: Dict[str, DepositorLedger] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._nonces: Dict[Tuple[str, str], str] = {}
        self._lock_timeout_s = lock_timeout_s

    def insert_vault(self, record: VaultLedger) -> bool:
        with self._lock:
            if record.address in self._vaults:
                return False
            self._vaults[record.address] = record
            return True

    def get_vault(self, address: str) -> Optional[VaultLedger]:
        with self._lock:
            return self._vaults.get(address)

    def get_depositor(self, address: str) -> Optional[DepositorLedger]:
        with self._lock:
            return self._depositors.get(address)

    def iter_depositors(self) -> Iterator[DepositorLedger]:
        with self._lock:
            records = list(self._depositors.values())
        yield from records

    def consume_nonce(self, signer: str, nonce: str) -> bool:
        with self._lock:
            if (signer, nonce) in self._nonces:
                return False
            self._nonces[(signer, nonce)] = now_iso()
            return True

    def _record_lock(self, address: str) -> threading.Lock:
        with self._lock:
            lk = self._record_locks.get(address)
            if lk is None:
                lk = threading.Lock()
                self._record_locks[address] = lk
            return lk

    def _apply(self, tx: _MemoryTransaction) -> None:
        with self._lock:
            for address, base in tx.base_versions.items():
                current = self._depositors.get(address)
                current_version = current.version if current is not None else 0
                if current_version != base:
                    raise ConflictError(f"VERSION_MISMATCH:{address}")
            self._depositors.update(tx.staged)

    @contextmanager
    def transaction(self, *addresses: str) -> Iterator[_MemoryTransaction]:
        held: List[threading.Lock] = []
        try:
            # sorted order: two transactions over the same records cannot deadlock
            for address in sorted(set(addresses)):
                lk = self._record_lock(address)
                if not lk.acquire(timeout=self._lock_timeout_s):
                    raise ConflictError(f"LOCK_TIMEOUT:{address}")
                held.append(lk)

            tx = _MemoryTransaction(self)
            yield tx
            if not tx.rolled_back and tx.staged:
                self._apply(tx)
        finally:
            for lk in reversed(held):
                lk.release()


# =========================
# SQLITE
# =========================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vault_ledger (
    address TEXT PRIMARY KEY,
    authority TEXT NOT NULL,
    accepted_asset TEXT NOT NULL,
    initialized INTEGER NOT NULL CHECK(initialized IN (0,1)),
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS depositor_ledger (
    address TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    balance TEXT NOT NULL,
    version INTEGER NOT NULL CHECK(version > 0),
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS used_nonce (
    signer TEXT NOT NULL,
    nonce TEXT NOT NULL,
    consumed_at TEXT NOT NULL,
    PRIMARY KEY (signer, nonce)
);
"""


def _vault_from_row(row: tuple) -> VaultLedger:
    return VaultLedger(
        address=str(row[0]),
        authority=str(row[1]),
        accepted_asset=str(row[2]),
        initialized=bool(row[3]),
        created_at=str(row[4]),
    )


def _depositor_from_row(row: tuple) -> DepositorLedger:
    # balance is TEXT: u64 does not fit SQLite's signed INTEGER
    return DepositorLedger(
        address=str(row[0]),
        owner=str(row[1]),
        balance=int(row[2]),
        version=int(row[3]),
        updated_at=str(row[4]),
    )


class _SqliteTransaction:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._c = conn
        self.rolled_back = False

    def get_vault(self, address: str) -> Optional[VaultLedger]:
        row = self._c.execute(
            "SELECT address, authority, accepted_asset, initialized, created_at FROM vault_ledger WHERE address=?",
            (address,),
        ).fetchone()
        return None if row is None else _vault_from_row(row)

    def get_depositor(self, address: str) -> Optional[DepositorLedger]:
        row = self._c.execute(
            "SELECT address, owner, balance, version, updated_at FROM depositor_ledger WHERE address=?",
            (address,),
        ).fetchone()
        return None if row is None else _depositor_from_row(row)

    def put_depositor(self, record: DepositorLedger) -> DepositorLedger:
        if self.rolled_back:
            raise RuntimeError("TX_ALREADY_ROLLED_BACK")
        new = _bumped(record)
        if record.version == 0:
            try:
                self._c.execute(
                    "INSERT INTO depositor_ledger(address,owner,balance,version,updated_at) VALUES (?,?,?,?,?)",
                    (new.address, new.owner, str(new.balance), new.version, new.updated_at),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"VERSION_MISMATCH:{record.address}") from exc
            return new

        cur = self._c.execute(
            "UPDATE depositor_ledger SET balance=?, version=?, updated_at=? WHERE address=? AND version=?",
            (str(new.balance), new.version, new.updated_at, record.address, record.version),
        )
        if cur.rowcount != 1:
            raise ConflictError(f"VERSION_MISMATCH:{record.address}")
        return new

    def rollback(self) -> None:
        if not self.rolled_back:
            self._c.execute("ROLLBACK")
            self.rolled_back = True


class SqliteLedgerStore:
    """SQLite-backed ledgers (WAL). One short-lived connection per call, like the idempotency guard."""

    @deal.pre(lambda self, db_path, busy_timeout_s=30.0: isinstance(db_path, str) and db_path.strip() != "", message="db_path required")
    def __init__(self, db_path: str, busy_timeout_s: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = busy_timeout_s
        d = os.path.dirname(db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        c = self._connect()
        c.close()

    def _connect(self) -> sqlite3.Connection:
        c = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None, check_same_thread=False)
        try:
            c.execute("PRAGMA journal_mode=WAL")
            c.execute("PRAGMA synchronous=NORMAL")
            c.executescript(_SCHEMA)
        except sqlite3.Error:
            c.close()
            raise
        return c

    def insert_vault(self, record: VaultLedger) -> bool:
        c = self._connect()
        try:
            c.execute(
                "INSERT INTO vault_ledger(address,authority,accepted_asset,initialized,created_at) VALUES (?,?,?,?,?)",
                (record.address, record.authority, record.accepted_asset, int(record.initialized), record.created_at),
            )
            return True
        except sqlite3.IntegrityError:
            return False
        finally:
            c.close()

    def consume_nonce(self, signer: str, nonce: str) -> bool:
        c = self._connect()
        try:
            c.execute(
                "INSERT INTO used_nonce(signer,nonce,consumed_at) VALUES (?,?,?)",
                (signer, nonce, now_iso()),
            )
            return True
        except sqlite3.IntegrityError:
            return False
        except sqlite3.OperationalError as exc:
            raise ConflictError(f"DB_LOCKED:nonce:{signer}") from exc
        finally:
            c.close()

    def get_vault(self, address: str) -> Optional[VaultLedger]:
        c = self._connect()
        try:
            return _SqliteTransaction(c).get_vault(address)
        finally:
            c.close()

    def get_depositor(self, address: str) -> Optional[DepositorLedger]:
        c = self._connect()
        try:
            return _SqliteTransaction(c).get_depositor(address)
        finally:
            c.close()

    def iter_depositors(self) -> Iterator[DepositorLedger]:
        c = self._connect()
        try:
            rows = c.execute(
                "SELECT address, owner, balance, version, updated_at FROM depositor_ledger ORDER BY address"
            ).fetchall()
        finally:
            c.close()
        for row in rows:
            yield _depositor_from_row(row)

    @contextmanager
    def transaction(self, *addresses: str) -> Iterator[_SqliteTransaction]:
        c = self._connect()
        try:
            try:
                c.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise ConflictError(f"DB_LOCKED:{','.join(addresses)}") from exc

            tx = _SqliteTransaction(c)
            try:
                yield tx
            except BaseException:
                if not tx.rolled_back:
                    c.execute("ROLLBACK")
                raise
            if not tx.rolled_back:
                c.execute("COMMIT")
        finally:
            c.close()
