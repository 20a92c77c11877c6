from __future__ import annotations

from autoquote.contexts.quotation.domain.models import Supplier
from autoquote.contexts.quotation.domain.ports import SupplierDirectoryPort
from autoquote.infrastructure.repositories.base import BaseRepository


class SupplierRepository(BaseRepository, SupplierDirectoryPort):
    def get_by_id(self, supplier_id: str) -> Supplier | None:
        row = self.db().execute(
            """
            SELECT id, name, email, auto_order_enabled
            FROM suppliers
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (supplier_id, self.tenant_id),
        ).fetchone()
        if not row:
            return None
        raw = dict(row)
        return Supplier(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            email=(str(raw.get("email") or "").strip() or None),
            auto_order_enabled=bool(raw.get("auto_order_enabled")),
        )

    def upsert(self, supplier: Supplier) -> None:
        db = self.db()
        db.execute(
            """
            INSERT INTO suppliers (id, tenant_id, name, email, auto_order_enabled)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                auto_order_enabled = excluded.auto_order_enabled
            """,
            (supplier.id, self.tenant_id, supplier.name, supplier.email, 1 if supplier.auto_order_enabled else 0),
        )
        db.commit()
