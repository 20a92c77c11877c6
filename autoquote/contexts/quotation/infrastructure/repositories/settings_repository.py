from __future__ import annotations

from autoquote.contexts.quotation.domain.ports import SettingsStorePort
from autoquote.errors import ValidationError
from autoquote.infrastructure.repositories.base import BaseRepository, DbProvider


AUTOMATION_MODE_KEY = "automation_mode"
AUTOMATION_MODES = ("auto", "manual")


def normalize_automation_mode(value: str | None, default: str = "auto") -> str:
    mode = str(value or "").strip().lower()
    return mode if mode in AUTOMATION_MODES else default


class SettingsRepository(BaseRepository, SettingsStorePort):
    def __init__(
        self,
        *,
        tenant_id: str | None = None,
        db_provider: DbProvider | None = None,
        default_mode: str = "auto",
    ) -> None:
        super().__init__(tenant_id=tenant_id, db_provider=db_provider)
        self.default_mode = normalize_automation_mode(default_mode)

    def automation_mode(self) -> str:
        row = self.db().execute(
            "SELECT value FROM settings WHERE key = ? AND tenant_id = ? LIMIT 1",
            (AUTOMATION_MODE_KEY, self.tenant_id),
        ).fetchone()
        if not row:
            return self.default_mode
        return normalize_automation_mode(dict(row).get("value"), self.default_mode)

    def set_automation_mode(self, mode: str) -> str:
        normalized = str(mode or "").strip().lower()
        if normalized not in AUTOMATION_MODES:
            raise ValidationError(
                message_key="action_invalid",
                details=f"automation_mode invalido: {mode}",
                payload={"allowed": list(AUTOMATION_MODES)},
            )
        db = self.db()
        db.execute(
            """
            INSERT INTO settings (tenant_id, key, value)
            VALUES (?, ?, ?)
            ON CONFLICT (tenant_id, key) DO UPDATE SET value = excluded.value
            """,
            (self.tenant_id, AUTOMATION_MODE_KEY, normalized),
        )
        db.commit()
        return normalized
