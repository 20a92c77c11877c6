from __future__ import annotations

import json

import click
from flask import Flask

from autoquote.contexts.inventory.application.stock_monitor import is_reorder_candidate
from autoquote.contexts.inventory.infrastructure.inventory_repository import InventoryRepository
from autoquote.contexts.quotation.interfaces.workers.runtime import build_quotation_service, get_registry
from autoquote.db import close_db
from autoquote.tenant import DEFAULT_TENANT_ID


def register_autoquote_cli(app: Flask) -> None:
    @app.cli.group("autoquote")
    def autoquote_group() -> None:
        """Manual triggers for automatic quotations."""

    @autoquote_group.command("check")
    @click.option("--tenant", "tenant_id", default=DEFAULT_TENANT_ID, show_default=True)
    @click.option("--flush/--no-flush", default=True, help="Processa a fila logo apos a verificacao.")
    def autoquote_check(tenant_id: str, flush: bool) -> None:
        """Scan the inventory and queue every item at or below its minimum."""
        with app.app_context():
            try:
                orchestrator = get_registry(app).get(tenant_id)
                low_items = [
                    item for item in InventoryRepository(tenant_id=tenant_id).list_items() if is_reorder_candidate(item)
                ]
                queued = orchestrator.trigger_check(low_items)
                click.echo(f"{queued} item(ns) na fila.")
                if flush:
                    report = orchestrator.flush_pending()
                    click.echo(json.dumps(report.to_dict(), ensure_ascii=False))
            finally:
                get_registry(app).shutdown()
                close_db()

    @autoquote_group.command("flush")
    @click.option("--tenant", "tenant_id", default=DEFAULT_TENANT_ID, show_default=True)
    def autoquote_flush(tenant_id: str) -> None:
        """Process the pending queue now instead of waiting for the debounce."""
        with app.app_context():
            try:
                report = get_registry(app).get(tenant_id).flush_pending()
                click.echo(json.dumps(report.to_dict(), ensure_ascii=False))
            finally:
                get_registry(app).shutdown()
                close_db()

    @autoquote_group.command("expire")
    @click.option("--tenant", "tenant_id", default=DEFAULT_TENANT_ID, show_default=True)
    def autoquote_expire(tenant_id: str) -> None:
        """Expire sent quotations without a reply past the deadline."""
        with app.app_context():
            try:
                expired = build_quotation_service(app, tenant_id).expire_overdue()
            finally:
                close_db()
        click.echo(f"{len(expired)} cotacao(oes) expirada(s).")
