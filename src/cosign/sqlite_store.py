"""SQLite-backed persistence for contracts and batch sends."""

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import cosign.constants as C
from cosign.errors import Conflict, InternalError, NotFound
from cosign.models import BatchDetail, BatchRequest, BatchStats, TransferContract

log = logging.getLogger("cosign.sqlite_store")


class SQLiteStore:
    """Persistent store backed by SQLite.

    Every call opens its own connection under one asyncio lock, and every
    multi-row write runs in a single transaction.
    """

    def __init__(self, db_path: str | Path = "cosign.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS contracts (
                    contract_id TEXT PRIMARY KEY,
                    from_account TEXT NOT NULL,
                    to_account TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL,
                    unsigned_artifact TEXT NOT NULL,
                    anchor_id TEXT NOT NULL,
                    expiry_height INTEGER NOT NULL,
                    ledger_ref TEXT,
                    error_message TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS batch_requests (
                    request_id TEXT PRIMARY KEY,
                    category_1 TEXT NOT NULL,
                    category_2 TEXT,
                    total_count INTEGER NOT NULL,
                    completed_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS batch_details (
                    idx INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL REFERENCES batch_requests(request_id),
                    recipient_account TEXT NOT NULL,  -- encrypted
                    amount TEXT NOT NULL,
                    sent TEXT NOT NULL DEFAULT 'N',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_result_code TEXT,
                    last_error_message TEXT,
                    ledger_ref TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_detail_pending ON batch_details(request_id, sent, attempt_count);
                """
            )
        log.debug("SQLite database initialized at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success, rolls back on any error and always closes."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn is not None:
                conn.rollback()
            log.error("SQLite failure on %s: %s", self.db_path, e)
            raise InternalError(f"Persistence failure: {type(e).__name__}") from e
        except BaseException:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()

    # =========================================================================
    # Transfer contracts
    # =========================================================================

    async def insert_contract(self, contract: TransferContract) -> None:
        async with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO contracts (contract_id, from_account, to_account, amount, status,
                                           unsigned_artifact, anchor_id, expiry_height,
                                           ledger_ref, error_message, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        contract.contract_id,
                        contract.from_account,
                        contract.to_account,
                        str(contract.amount),
                        str(contract.status),
                        contract.unsigned_artifact,
                        contract.anchor_id,
                        contract.expiry_height,
                        contract.ledger_ref,
                        contract.error_message,
                        contract.created_at,
                        contract.updated_at,
                    ),
                )

    async def get_contract(self, contract_id: str) -> TransferContract | None:
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM contracts WHERE contract_id = ?", (contract_id,)).fetchone()
        return TransferContract.from_row(dict(row)) if row else None

    async def transition_contract(
        self,
        contract_id: str,
        status: C.ContractStatus,
        *,
        ledger_ref: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a PENDING contract to a terminal status. False if it was no longer PENDING."""
        if status is C.ContractStatus.PENDING:
            raise ValueError("A contract can only leave PENDING")
        if error_message is not None:
            error_message = error_message[: C.MAX_ERROR_MESSAGE]
        async with self._lock:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE contracts
                    SET status = ?, ledger_ref = ?, error_message = ?, updated_at = ?
                    WHERE contract_id = ? AND status = ?
                    """,
                    (str(status), ledger_ref, error_message, time.time(), contract_id, str(C.ContractStatus.PENDING)),
                )
                return cur.rowcount == 1

    # =========================================================================
    # Batch requests
    # =========================================================================

    async def create_batch(
        self,
        request_id: str,
        category_1: str,
        category_2: str | None,
        details: Sequence[tuple[str, Decimal]],
    ) -> BatchRequest:
        """Insert the master row and all `(encrypted_account, amount)` detail rows atomically."""
        now = time.time()
        async with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO batch_requests (request_id, category_1, category_2, total_count,
                                                status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (request_id, category_1, category_2, len(details), str(C.BatchStatus.PENDING), now, now),
                )
                for start in range(0, len(details), C.BULK_INSERT_LIMIT):
                    chunk = details[start : start + C.BULK_INSERT_LIMIT]
                    conn.executemany(
                        """
                        INSERT INTO batch_details (request_id, recipient_account, amount, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        [(request_id, account, str(amount), now, now) for account, amount in chunk],
                    )
                    log.debug("Inserted details %s-%s of %s for %s", start, start + len(chunk), len(details), request_id)
                row = conn.execute("SELECT * FROM batch_requests WHERE request_id = ?", (request_id,)).fetchone()
        return BatchRequest.from_row(dict(row))

    async def get_batch(self, request_id: str) -> BatchRequest | None:
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM batch_requests WHERE request_id = ?", (request_id,)).fetchone()
        return BatchRequest.from_row(dict(row)) if row else None

    async def set_batch_status(self, request_id: str, status: C.BatchStatus) -> C.BatchStatus:
        """Apply an allowed status move and return the previous status."""
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT status FROM batch_requests WHERE request_id = ?", (request_id,)).fetchone()
                if row is None:
                    raise NotFound(f"Batch {request_id} not found", request_id=request_id)
                before = C.BatchStatus(row["status"])
                if status not in C.BATCH_TRANSITIONS[before]:
                    raise Conflict(
                        f"Batch {request_id} cannot move from {before} to {status}",
                        request_id=request_id,
                        status=str(before),
                    )
                conn.execute(
                    "UPDATE batch_requests SET status = ?, updated_at = ? WHERE request_id = ? AND status = ?",
                    (str(status), time.time(), request_id, str(before)),
                )
        return before

    # =========================================================================
    # Batch details
    # =========================================================================

    async def list_pending_details(self, request_id: str, limit: int = C.PENDING_PAGE_SIZE) -> list[BatchDetail]:
        """Unsent details that still have attempts left, oldest first."""
        async with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM batch_details
                    WHERE request_id = ? AND sent = ? AND attempt_count < ?
                    ORDER BY idx
                    LIMIT ?
                    """,
                    (request_id, str(C.SentFlag.NO), C.MAX_RETRY_COUNT, limit),
                ).fetchall()
        return [BatchDetail.from_row(dict(r)) for r in rows]

    async def list_details(
        self,
        request_id: str,
        sent: C.SentFlag | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BatchDetail]:
        query = "SELECT * FROM batch_details WHERE request_id = ?"
        params: list = [request_id]
        if sent is not None:
            query += " AND sent = ?"
            params.append(str(sent))
        query += " ORDER BY idx LIMIT ? OFFSET ?"
        params += [-1 if limit is None else limit, offset]
        async with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [BatchDetail.from_row(dict(r)) for r in rows]

    async def record_detail_result(
        self,
        idx: int,
        *,
        sent: bool,
        attempts: int,
        result_code: str | None,
        error_message: str | None = None,
        ledger_ref: str | None = None,
    ) -> bool:
        """Add `attempts` and store the outcome. No-op (False) once the detail is sent."""
        if error_message is not None:
            error_message = error_message[: C.MAX_ERROR_MESSAGE]
        async with self._lock:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE batch_details
                    SET sent = ?,
                        attempt_count = MIN(attempt_count + ?, ?),
                        last_result_code = ?,
                        last_error_message = ?,
                        ledger_ref = ?,
                        updated_at = ?
                    WHERE idx = ? AND sent = ?
                    """,
                    (
                        str(C.SentFlag.YES if sent else C.SentFlag.NO),
                        attempts,
                        C.MAX_RETRY_COUNT,
                        result_code,
                        error_message,
                        ledger_ref,
                        time.time(),
                        idx,
                        str(C.SentFlag.NO),
                    ),
                )
                return cur.rowcount == 1

    @staticmethod
    def _stats(conn: sqlite3.Connection, request_id: str) -> BatchStats:
        row = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(sent = :yes), 0) AS completed,
                   COALESCE(SUM(sent = :no AND attempt_count >= :max), 0) AS failed,
                   COALESCE(SUM(sent = :no AND attempt_count < :max), 0) AS pending,
                   COALESCE(SUM(sent = :no AND attempt_count > 0 AND attempt_count < :max), 0) AS retryable
            FROM batch_details
            WHERE request_id = :rid
            """,
            {"yes": str(C.SentFlag.YES), "no": str(C.SentFlag.NO), "max": C.MAX_RETRY_COUNT, "rid": request_id},
        ).fetchone()
        return BatchStats(**dict(row))

    async def detail_stats(self, request_id: str) -> BatchStats:
        async with self._lock:
            with self._connect() as conn:
                return self._stats(conn, request_id)

    async def refresh_batch_stats(self, request_id: str) -> BatchStats:
        """Re-derive the master counters from the detail rows."""
        async with self._lock:
            with self._connect() as conn:
                stats = self._stats(conn, request_id)
                conn.execute(
                    """
                    UPDATE batch_requests
                    SET completed_count = ?, failed_count = ?, updated_at = ?
                    WHERE request_id = ?
                    """,
                    (stats.completed, stats.failed, time.time(), request_id),
                )
        return stats
