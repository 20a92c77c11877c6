from __future__ import annotations

from typing import Any

from autoquote.contexts.quotation.domain.models import ProcessingLock
from autoquote.contexts.quotation.domain.ports import LockStorePort
from autoquote.infrastructure.repositories.base import BaseRepository


class ProcessingLockRepository(BaseRepository, LockStorePort):
    def _to_lock(self, row: Any) -> ProcessingLock:
        raw = dict(row)
        heartbeat = raw.get("last_heartbeat")
        return ProcessingLock(
            tenant_id=str(raw.get("tenant_id") or self.tenant_id),
            product_id=str(raw.get("product_id") or ""),
            acquired_at=float(raw.get("acquired_at") or 0),
            expires_at=float(raw.get("expires_at") or 0),
            acquired_by=str(raw.get("acquired_by") or ""),
            last_heartbeat=None if heartbeat is None else float(heartbeat),
        )

    def get(self, product_id: str) -> ProcessingLock | None:
        row = self.db().execute(
            """
            SELECT *
            FROM processing_locks
            WHERE product_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (product_id, self.tenant_id),
        ).fetchone()
        return self._to_lock(row) if row else None

    def put(self, lock: ProcessingLock) -> None:
        db = self.db()
        db.execute(
            """
            INSERT INTO processing_locks (tenant_id, product_id, acquired_at, expires_at, last_heartbeat, acquired_by)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, product_id) DO UPDATE SET
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at,
                last_heartbeat = excluded.last_heartbeat,
                acquired_by = excluded.acquired_by
            """,
            (self.tenant_id, lock.product_id, lock.acquired_at, lock.expires_at, lock.last_heartbeat, lock.acquired_by),
        )
        db.commit()

    def delete(self, product_id: str) -> None:
        db = self.db()
        db.execute(
            "DELETE FROM processing_locks WHERE product_id = ? AND tenant_id = ?",
            (product_id, self.tenant_id),
        )
        db.commit()

    def insert_if_absent(self, lock: ProcessingLock) -> bool:
        db = self.db()
        cursor = db.execute(
            """
            INSERT INTO processing_locks (tenant_id, product_id, acquired_at, expires_at, last_heartbeat, acquired_by)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, product_id) DO NOTHING
            """,
            (self.tenant_id, lock.product_id, lock.acquired_at, lock.expires_at, lock.last_heartbeat, lock.acquired_by),
        )
        db.commit()
        return int(cursor.rowcount or 0) == 1

    def replace_if_expired(self, lock: ProcessingLock, observed_expires_at: float) -> bool:
        db = self.db()
        cursor = db.execute(
            """
            UPDATE processing_locks
            SET acquired_at = ?, expires_at = ?, last_heartbeat = ?, acquired_by = ?
            WHERE product_id = ? AND tenant_id = ? AND expires_at = ? AND expires_at <= ?
            """,
            (
                lock.acquired_at,
                lock.expires_at,
                lock.last_heartbeat,
                lock.acquired_by,
                lock.product_id,
                self.tenant_id,
                observed_expires_at,
                lock.acquired_at,
            ),
        )
        db.commit()
        return int(cursor.rowcount or 0) == 1

    def extend(self, product_id: str, *, expires_at: float, heartbeat_at: float) -> bool:
        db = self.db()
        cursor = db.execute(
            """
            UPDATE processing_locks
            SET expires_at = ?, last_heartbeat = ?
            WHERE product_id = ? AND tenant_id = ?
            """,
            (expires_at, heartbeat_at, product_id, self.tenant_id),
        )
        db.commit()
        return int(cursor.rowcount or 0) == 1
