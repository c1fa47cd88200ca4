from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import sqlite3
import threading

import structlog

from config import Settings
from errors import ConfigurationError, LedgerError, ProvisioningError, QueryError, TransactionError
import storage

logger = structlog.get_logger()


class TxHandle:
    """Opaque handle for the one open transaction on a connection."""

    def __init__(self, tx_id: int):
        self.tx_id = tx_id

    def __repr__(self) -> str:
        return f"TxHandle({self.tx_id})"


class LedgerConnection(ABC):
    """A connection owned by exactly one worker or monitor for the whole run."""

    def __init__(self, owner: str):
        self.owner = owner
        self._tx: Optional[TxHandle] = None
        self._next_tx_id = 0

    @abstractmethod
    def begin_transaction(self) -> TxHandle:
        """Open an atomic transaction."""
        pass

    @abstractmethod
    def mutate(self, tx: TxHandle, key: int, delta: int) -> None:
        """Apply balance[key] += delta inside tx. Fails if the key is unknown."""
        pass

    @abstractmethod
    def commit(self, tx: TxHandle) -> None:
        """Commit tx atomically. Never retried."""
        pass

    @abstractmethod
    def query_invariant_sum(self) -> int:
        """Read the sum of all balances outside any explicit transaction."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the connection, discarding an uncommitted transaction."""
        pass

    def _open_tx(self) -> TxHandle:
        if self._tx is not None:
            raise TransactionError(f"Transaction {self._tx.tx_id} is still open", unit=self.owner)
        self._next_tx_id += 1
        self._tx = TxHandle(self._next_tx_id)
        return self._tx

    def _require_tx(self, tx: TxHandle) -> None:
        if self._tx is None or tx is not self._tx:
            raise TransactionError(f"{tx!r} is not the open transaction", unit=self.owner)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class LedgerStore(ABC):
    @abstractmethod
    def provision(self, accounts: Dict[int, int]) -> None:
        """Create every account at its initial balance. Idempotent; verifies the result."""
        pass

    @abstractmethod
    def connect(self, owner: str) -> LedgerConnection:
        """Open a new connection exclusively owned by `owner`."""
        pass

    @abstractmethod
    def describe(self) -> str:
        pass

    def _verify_provisioned(self, accounts: Dict[int, int], count: int, total: int) -> None:
        expected_total = sum(accounts.values())
        if count != len(accounts) or total != expected_total:
            raise ProvisioningError(
                f"Provisioned {count} accounts totalling {total}, "
                f"expected {len(accounts)} totalling {expected_total}"
            )
        logger.info(
            "Ledger provisioned",
            store=self.describe(),
            accounts=count,
            total=total
        )


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self.balances: Dict[int, int] = {}
        self.lock = threading.Lock()
        self.commit_count = 0

    def provision(self, accounts: Dict[int, int]) -> None:
        with self.lock:
            self.balances = dict(accounts)
            count, total = len(self.balances), sum(self.balances.values())
        self._verify_provisioned(accounts, count, total)

    def connect(self, owner: str) -> LedgerConnection:
        return InMemoryLedgerConnection(self, owner)

    def describe(self) -> str:
        return "memory"

    def has_account(self, key: int) -> bool:
        with self.lock:
            return key in self.balances

    def apply(self, mutations: List[Tuple[int, int]], owner: str) -> None:
        """Apply all mutations of one transaction atomically."""
        with self.lock:
            for key, _ in mutations:
                if key not in self.balances:
                    raise TransactionError(f"Account {key} does not exist", unit=owner)
            for key, delta in mutations:
                self.balances[key] += delta
            self.commit_count += 1

    def total(self) -> int:
        with self.lock:
            return sum(self.balances.values())


class InMemoryLedgerConnection(LedgerConnection):
    def __init__(self, store: InMemoryLedgerStore, owner: str):
        super().__init__(owner)
        self.store = store
        self._pending: List[Tuple[int, int]] = []

    def begin_transaction(self) -> TxHandle:
        tx = self._open_tx()
        self._pending = []
        return tx

    def mutate(self, tx: TxHandle, key: int, delta: int) -> None:
        self._require_tx(tx)
        if not self.store.has_account(key):
            raise TransactionError(f"Account {key} does not exist", unit=self.owner)
        self._pending.append((key, delta))

    def commit(self, tx: TxHandle) -> None:
        self._require_tx(tx)
        mutations, self._pending, self._tx = self._pending, [], None
        self.store.apply(mutations, self.owner)

    def query_invariant_sum(self) -> int:
        return self.store.total()

    def close(self) -> None:
        self._pending = []
        self._tx = None


class SqliteLedgerStore(LedgerStore):
    def __init__(self, path: str, timeout: float = 30.0, begin_mode: str = "IMMEDIATE"):
        if begin_mode.upper() not in storage.BEGIN_MODES:
            raise ConfigurationError(f"Unsupported SQLite begin mode: {begin_mode}")
        if path == ":memory:":
            raise ConfigurationError("SQLite ledger needs a file shared by all connections")
        self.path = path
        self.timeout = timeout
        self.begin_mode = begin_mode.upper()

    def open(self) -> sqlite3.Connection:
        # autocommit mode; transactions are opened explicitly
        return sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)

    def provision(self, accounts: Dict[int, int]) -> None:
        try:
            conn = self.open()
        except sqlite3.Error as e:
            raise ProvisioningError(f"Cannot open ledger database {self.path}: {e}") from e

        try:
            conn.execute(storage.JOURNAL_MODE)
            conn.execute(storage.SCHEMA)
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(storage.CLEAR_ACCOUNTS)
            conn.executemany(storage.INSERT_ACCOUNT, sorted(accounts.items()))
            conn.execute("COMMIT")
            count = conn.execute(storage.COUNT_ACCOUNTS).fetchone()[0]
            total = conn.execute(storage.SUM_BALANCES).fetchone()[0]
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise ProvisioningError(f"Account setup failed: {e}") from e
        finally:
            conn.close()

        self._verify_provisioned(accounts, count, total)

    def connect(self, owner: str) -> LedgerConnection:
        return SqliteLedgerConnection(self, owner)

    def describe(self) -> str:
        return f"sqlite:{self.path}"


class SqliteLedgerConnection(LedgerConnection):
    def __init__(self, store: SqliteLedgerStore, owner: str):
        super().__init__(owner)
        self.begin_statement = f"BEGIN {store.begin_mode}"
        try:
            self.conn = store.open()
        except sqlite3.Error as e:
            raise LedgerError(f"Cannot connect to {store.path}: {e}", unit=owner) from e

    def begin_transaction(self) -> TxHandle:
        tx = self._open_tx()
        try:
            self.conn.execute(self.begin_statement)
        except sqlite3.Error as e:
            self._tx = None
            raise TransactionError(f"BEGIN failed: {e}", unit=self.owner) from e
        return tx

    def mutate(self, tx: TxHandle, key: int, delta: int) -> None:
        self._require_tx(tx)
        try:
            cursor = self.conn.execute(storage.APPLY_DELTA, (delta, key))
        except sqlite3.Error as e:
            raise TransactionError(f"Update of account {key} failed: {e}", unit=self.owner) from e
        if cursor.rowcount == 0:
            raise TransactionError(f"Account {key} does not exist", unit=self.owner)

    def commit(self, tx: TxHandle) -> None:
        self._require_tx(tx)
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise TransactionError(f"COMMIT failed: {e}", unit=self.owner) from e
        self._tx = None

    def query_invariant_sum(self) -> int:
        try:
            row = self.conn.execute(storage.SUM_BALANCES).fetchone()
        except sqlite3.Error as e:
            raise QueryError(f"Invariant query failed: {e}", unit=self.owner) from e
        return int(row[0])

    def close(self) -> None:
        self._tx = None
        try:
            if self.conn.in_transaction:
                self.conn.rollback()
        except sqlite3.Error as e:
            raise LedgerError(f"Rollback on close failed: {e}", unit=self.owner) from e
        finally:
            self.conn.close()


def get_ledger_store(settings: Settings) -> LedgerStore:
    backend = settings.ledger_backend.lower()
    if backend == "memory":
        return InMemoryLedgerStore()
    if backend == "sqlite":
        return SqliteLedgerStore(
            settings.database_path,
            timeout=settings.sqlite_timeout,
            begin_mode=settings.sqlite_begin_mode
        )
    raise ConfigurationError(f"Unknown ledger backend: {settings.ledger_backend}")
