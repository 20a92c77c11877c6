from __future__ import annotations

from typing import Any, Dict, List

from autoquote.contexts.quotation.domain.models import as_optional_flag
from autoquote.contexts.quotation.domain.ports import InventorySourcePort
from autoquote.core.clock import to_iso, utc_now
from autoquote.infrastructure.repositories.base import BaseRepository


_ITEM_SELECT = """
    SELECT
        i.id,
        i.name,
        i.category,
        i.current_stock,
        i.min_stock,
        i.max_stock,
        i.unit,
        i.supplier_id,
        i.current_price,
        i.enable_auto_quotation,
        i.updated_at,
        s.name AS supplier_name,
        s.email AS supplier_email
    FROM inventory_items i
    LEFT JOIN suppliers s ON s.id = i.supplier_id AND s.tenant_id = i.tenant_id
"""


class InventoryRepository(BaseRepository, InventorySourcePort):
    @staticmethod
    def _to_item(row: Any) -> Dict[str, Any]:
        item = dict(row)
        flag = item.get("enable_auto_quotation")
        item["enable_auto_quotation"] = None if flag is None else bool(flag)
        return item

    def list_items(self) -> List[Dict[str, Any]]:
        rows = self.db().execute(
            f"""
            {_ITEM_SELECT}
            WHERE i.tenant_id = ?
            ORDER BY i.name ASC, i.id ASC
            """,
            (self.tenant_id,),
        ).fetchall()
        return [self._to_item(row) for row in rows]

    def get(self, item_id: str) -> Dict[str, Any] | None:
        row = self.db().execute(
            f"""
            {_ITEM_SELECT}
            WHERE i.id = ? AND i.tenant_id = ?
            LIMIT 1
            """,
            (item_id, self.tenant_id),
        ).fetchone()
        return self._to_item(row) if row else None

    def update_stock(self, item_id: str, current_stock: float) -> Dict[str, Any] | None:
        db = self.db()
        cursor = db.execute(
            """
            UPDATE inventory_items
            SET current_stock = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (float(current_stock), to_iso(utc_now()), item_id, self.tenant_id),
        )
        db.commit()
        if int(cursor.rowcount or 0) == 0:
            return None
        return self.get(item_id)

    def upsert(self, item: Dict[str, Any]) -> None:
        enable = as_optional_flag(item.get("enable_auto_quotation"))
        db = self.db()
        db.execute(
            """
            INSERT INTO inventory_items (
                id, tenant_id, name, category, current_stock, min_stock, max_stock,
                unit, supplier_id, current_price, enable_auto_quotation, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                name = excluded.name,
                category = excluded.category,
                current_stock = excluded.current_stock,
                min_stock = excluded.min_stock,
                max_stock = excluded.max_stock,
                unit = excluded.unit,
                supplier_id = excluded.supplier_id,
                current_price = excluded.current_price,
                enable_auto_quotation = excluded.enable_auto_quotation,
                updated_at = excluded.updated_at
            """,
            (
                str(item["id"]),
                self.tenant_id,
                str(item.get("name") or ""),
                item.get("category"),
                float(item.get("current_stock") or 0),
                float(item.get("min_stock") or 0),
                float(item.get("max_stock") or 0),
                str(item.get("unit") or "un"),
                item.get("supplier_id"),
                item.get("current_price"),
                None if enable is None else int(enable),
                to_iso(utc_now()),
            ),
        )
        db.commit()
