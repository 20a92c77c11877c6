from __future__ import annotations

from typing import Any, Dict, Iterable, List

from autoquote.contexts.quotation.domain.models import TIMESTAMP_FIELDS, new_quotation_id
from autoquote.contexts.quotation.domain.ports import QuotationRepositoryPort
from autoquote.core.clock import to_iso, utc_now
from autoquote.infrastructure.repositories.base import BaseRepository


# Record key -> (column, is_json)
_FIELD_COLUMNS: Dict[str, tuple[str, bool]] = {
    "supplier_id": ("supplier_id", False),
    "supplier_name": ("supplier_name", False),
    "supplier_email": ("supplier_email", False),
    "category": ("category", False),
    "status": ("status", False),
    "items": ("items_json", True),
    "quoted_items": ("quoted_items_json", True),
    "quoted_total": ("quoted_total", False),
    "details": ("details_json", True),
    "history": ("history_json", True),
    "created_by": ("created_by", False),
    "updated_at": ("updated_at", False),
    **{name: (name, False) for name in TIMESTAMP_FIELDS},
}


class QuotationRepository(BaseRepository, QuotationRepositoryPort):
    """Quotations stored one row per document; list-valued fields are JSON columns."""

    def _to_record(self, row: Any) -> Dict[str, Any]:
        raw = dict(row)
        record: Dict[str, Any] = {
            "id": raw.get("id"),
            "tenant_id": raw.get("tenant_id"),
            "status": raw.get("status"),
            "created_at": raw.get("created_at"),
        }
        for key, (column, is_json) in _FIELD_COLUMNS.items():
            value = raw.get(column)
            if is_json:
                value = self.load_json(value, {} if key == "details" else [])
            record[key] = value
        return record

    def _column_value(self, key: str, value: Any) -> tuple[str, Any] | None:
        mapping = _FIELD_COLUMNS.get(key)
        if mapping is None:
            return None
        column, is_json = mapping
        if is_json:
            return column, self.dump_json(value if value is not None else ({} if key == "details" else []))
        return column, value

    def create(self, quotation: Dict[str, Any]) -> Dict[str, Any]:
        now = to_iso(utc_now())
        record = dict(quotation)
        record["id"] = str(record.get("id") or new_quotation_id())
        record.setdefault("status", "draft")
        record["created_at"] = record.get("created_at") or now
        record["updated_at"] = record.get("updated_at") or record["created_at"]

        columns = ["id", "tenant_id", "created_at"]
        params: List[Any] = [record["id"], self.tenant_id, record["created_at"]]
        for key in _FIELD_COLUMNS:
            if key not in record and key not in {"items", "details", "history"}:
                continue
            column, value = self._column_value(key, record.get(key))
            columns.append(column)
            params.append(value)

        placeholders = ", ".join("?" for _ in columns)
        db = self.db()
        db.execute(
            f"INSERT INTO quotations ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(params),
        )
        db.commit()
        record["tenant_id"] = self.tenant_id
        return record

    def list(self, statuses: Iterable[str] | None = None) -> List[Dict[str, Any]]:
        wanted = [str(status) for status in (statuses or [])]
        if wanted:
            placeholders = ", ".join("?" for _ in wanted)
            rows = self.db().execute(
                f"""
                SELECT *
                FROM quotations
                WHERE status IN ({placeholders}) AND tenant_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                self.scoped_params(wanted),
            ).fetchall()
        else:
            rows = self.db().execute(
                """
                SELECT *
                FROM quotations
                WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (self.tenant_id,),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def get(self, quotation_id: str) -> Dict[str, Any] | None:
        row = self.db().execute(
            """
            SELECT *
            FROM quotations
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (quotation_id, self.tenant_id),
        ).fetchone()
        return self._to_record(row) if row else None

    def update(self, quotation_id: str, patch: Dict[str, Any]) -> None:
        fields = dict(patch or {})
        fields.setdefault("updated_at", to_iso(utc_now()))
        updates: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            column_value = self._column_value(key, value)
            if column_value is None:
                continue
            column, db_value = column_value
            updates.append(f"{column} = ?")
            params.append(db_value)
        if not updates:
            return

        params.extend([quotation_id, self.tenant_id])
        db = self.db()
        db.execute(
            f"""
            UPDATE quotations
            SET {", ".join(updates)}
            WHERE id = ? AND tenant_id = ?
            """,
            tuple(params),
        )
        db.commit()

    def delete(self, quotation_id: str) -> None:
        db = self.db()
        db.execute(
            "DELETE FROM quotations WHERE id = ? AND tenant_id = ?",
            (quotation_id, self.tenant_id),
        )
        db.commit()
