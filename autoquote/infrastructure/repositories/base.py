from __future__ import annotations

import json
from typing import Any, Callable, Iterable

from autoquote.db import Database, get_db


DbProvider = Callable[[], Database]


class TenantScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without tenant/workspace scope."""


class BaseRepository:
    """Tenant-scoped SQL adapter.

    Connections come from ``db_provider`` (the app-context connection by
    default), so one repository instance can be shared by request handlers
    and background threads as long as each call runs inside an app context.
    """

    def __init__(self, *, tenant_id: str | None = None, db_provider: DbProvider | None = None) -> None:
        scope = str(tenant_id or "").strip()
        if not scope:
            raise TenantScopeRequiredError("tenant_id is required for repository access")
        self.tenant_id = scope
        self._db_provider = db_provider or get_db

    def db(self) -> Database:
        return self._db_provider()

    def scoped_params(self, params: Iterable[Any] | None = None) -> tuple[Any, ...]:
        values = tuple(params or ())
        return (*values, self.tenant_id)

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]

    @staticmethod
    def dump_json(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)

    @staticmethod
    def load_json(raw: Any, default: Any) -> Any:
        if raw is None or raw == "":
            return default
        if isinstance(raw, (list, dict)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return default
