from __future__ import annotations

import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_FLUSH_DURATION_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._domain_event_emitted_total: Dict[str, int] = {}
            self._quotation_transition_total: Dict[tuple[str, str], int] = {}
            self._processing_lock_total: Dict[str, int] = {}
            self._auto_quotation_admission_total: Dict[str, int] = {}
            self._auto_quotation_created_total = 0
            self._auto_quotation_skipped_total: Dict[str, int] = {}
            self._auto_quotation_deduplicated_total = 0
            self._auto_quotation_pending: Dict[str, int] = {}
            self._auto_quotation_flush_duration_ms = self._new_histogram_state(_FLUSH_DURATION_BUCKETS_MS)

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: Dict, key) -> None:
        counter[key] = int(counter.get(key, 0)) + 1

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._bump(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._bump(self._domain_event_emitted_total, key)

    def observe_quotation_transition(self, event: str, result: str) -> None:
        key = (str(event or "unknown").strip() or "unknown", str(result or "unknown").strip() or "unknown")
        with self._lock:
            self._bump(self._quotation_transition_total, key)

    def observe_processing_lock(self, outcome: str) -> None:
        key = str(outcome or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._bump(self._processing_lock_total, key)

    def observe_auto_quotation_admission(self, result: str) -> None:
        key = str(result or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._bump(self._auto_quotation_admission_total, key)

    def observe_auto_quotation_flush(
        self,
        *,
        created: int,
        skipped_reasons: list[str],
        deduplicated: int,
        duration_ms: float,
    ) -> None:
        with self._lock:
            self._auto_quotation_created_total += max(0, int(created))
            self._auto_quotation_deduplicated_total += max(0, int(deduplicated))
            for reason in skipped_reasons:
                self._bump(self._auto_quotation_skipped_total, str(reason or "unknown"))
            self._observe_histogram(self._auto_quotation_flush_duration_ms, duration_ms, _FLUSH_DURATION_BUCKETS_MS)

    def set_auto_quotation_pending(self, tenant_id: str, count: int) -> None:
        with self._lock:
            self._auto_quotation_pending[str(tenant_id or "unknown")] = max(0, int(count))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "quotation_transitions": {
                    f"{event}:{result}": value for (event, result), value in self._quotation_transition_total.items()
                },
                "processing_locks": dict(self._processing_lock_total),
                "auto_quotation": {
                    "admissions": dict(self._auto_quotation_admission_total),
                    "created_total": int(self._auto_quotation_created_total),
                    "deduplicated_total": int(self._auto_quotation_deduplicated_total),
                    "skipped": dict(self._auto_quotation_skipped_total),
                    "pending": dict(self._auto_quotation_pending),
                    "flush_count": int(self._auto_quotation_flush_duration_ms["count"]),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {
                        "method": method,
                        "route": route,
                        "buckets": dict(state["buckets"]),
                        "sum": float(state["sum"]),
                        "count": int(state["count"]),
                    }
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
                "quotation_transition_total": dict(self._quotation_transition_total),
                "processing_lock_total": dict(self._processing_lock_total),
                "auto_quotation_admission_total": dict(self._auto_quotation_admission_total),
                "auto_quotation_created_total": int(self._auto_quotation_created_total),
                "auto_quotation_deduplicated_total": int(self._auto_quotation_deduplicated_total),
                "auto_quotation_skipped_total": dict(self._auto_quotation_skipped_total),
                "auto_quotation_pending": dict(self._auto_quotation_pending),
                "auto_quotation_flush_duration_ms": {
                    "buckets": dict(self._auto_quotation_flush_duration_ms["buckets"]),
                    "sum": float(self._auto_quotation_flush_duration_ms["sum"]),
                    "count": int(self._auto_quotation_flush_duration_ms["count"]),
                },
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_quotation_transition(event: str, result: str) -> None:
    _METRICS.observe_quotation_transition(event, result)


def observe_processing_lock(outcome: str) -> None:
    _METRICS.observe_processing_lock(outcome)


def observe_auto_quotation_admission(result: str) -> None:
    _METRICS.observe_auto_quotation_admission(result)


def observe_auto_quotation_flush(
    *,
    created: int,
    skipped_reasons: list[str],
    deduplicated: int,
    duration_ms: float,
) -> None:
    _METRICS.observe_auto_quotation_flush(
        created=created,
        skipped_reasons=skipped_reasons,
        deduplicated=deduplicated,
        duration_ms=duration_ms,
    )


def set_auto_quotation_pending(tenant_id: str, count: int) -> None:
    _METRICS.set_auto_quotation_pending(tenant_id, count)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        base_labels = {"method": hist["method"], "route": hist["route"]}
        for le_label, bucket_value in hist["buckets"].items():
            lines.append(_prom_line("http_request_duration_ms_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
        lines.append(_prom_line("http_request_duration_ms_sum", float(hist["sum"]), labels=base_labels))
        lines.append(_prom_line("http_request_duration_ms_count", int(hist["count"]), labels=base_labels))

    lines.append("# HELP domain_event_emitted_total Domain events published on the event bus.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in sorted(snapshot["domain_event_emitted_total"].items()):
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    lines.append("# HELP quotation_transition_total Quotation state machine transitions by event and result.")
    lines.append("# TYPE quotation_transition_total counter")
    for (event, result), value in sorted(snapshot["quotation_transition_total"].items()):
        lines.append(_prom_line("quotation_transition_total", int(value), labels={"event": event, "result": result}))

    lines.append("# HELP processing_lock_total Processing lock acquisitions by outcome.")
    lines.append("# TYPE processing_lock_total counter")
    for outcome, value in sorted(snapshot["processing_lock_total"].items()):
        lines.append(_prom_line("processing_lock_total", int(value), labels={"outcome": outcome}))

    lines.append("# HELP auto_quotation_admission_total Reorder events by admission result.")
    lines.append("# TYPE auto_quotation_admission_total counter")
    for result, value in sorted(snapshot["auto_quotation_admission_total"].items()):
        lines.append(_prom_line("auto_quotation_admission_total", int(value), labels={"result": result}))

    lines.append("# HELP auto_quotation_created_total Quotations created by the orchestrator.")
    lines.append("# TYPE auto_quotation_created_total counter")
    lines.append(_prom_line("auto_quotation_created_total", int(snapshot["auto_quotation_created_total"])))

    lines.append("# HELP auto_quotation_deduplicated_total Queued items dropped because an open quotation exists.")
    lines.append("# TYPE auto_quotation_deduplicated_total counter")
    lines.append(_prom_line("auto_quotation_deduplicated_total", int(snapshot["auto_quotation_deduplicated_total"])))

    lines.append("# HELP auto_quotation_skipped_total Supplier/category groups skipped during flush.")
    lines.append("# TYPE auto_quotation_skipped_total counter")
    for reason, value in sorted(snapshot["auto_quotation_skipped_total"].items()):
        lines.append(_prom_line("auto_quotation_skipped_total", int(value), labels={"reason": reason}))

    lines.append("# HELP auto_quotation_pending Items waiting in the debounce batch.")
    lines.append("# TYPE auto_quotation_pending gauge")
    for tenant_id, value in sorted(snapshot["auto_quotation_pending"].items()):
        lines.append(_prom_line("auto_quotation_pending", int(value), labels={"tenant_id": tenant_id}))

    flush_hist = snapshot["auto_quotation_flush_duration_ms"]
    lines.append("# HELP auto_quotation_flush_duration_ms Flush cycle duration in milliseconds.")
    lines.append("# TYPE auto_quotation_flush_duration_ms histogram")
    for le_label, bucket_value in flush_hist["buckets"].items():
        lines.append(_prom_line("auto_quotation_flush_duration_ms_bucket", int(bucket_value), labels={"le": le_label}))
    lines.append(_prom_line("auto_quotation_flush_duration_ms_sum", float(flush_hist["sum"])))
    lines.append(_prom_line("auto_quotation_flush_duration_ms_count", int(flush_hist["count"])))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
