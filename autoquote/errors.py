from __future__ import annotations

from typing import Any, Dict

from autoquote.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class GuardViolation(UserActionError):
    """A transition was rejected by the state machine (recoverable, caller decides)."""

    default_code = "transition_not_allowed"
    default_message_key = "transition_not_allowed"
    default_http_status = 409
    default_critical = False

    def __init__(self, reason: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.reason = (reason or "").strip() or None

    def user_message(self) -> str:
        return self.reason or super().user_message()


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "repository_unavailable"
    default_http_status = 502
    default_critical = False


class RepositoryFailure(IntegrationError):
    default_code = "repository_unavailable"
    default_message_key = "repository_unavailable"


class LockAcquisitionFailure(IntegrationError):
    default_code = "lock_unavailable"
    default_message_key = "lock_unavailable"


class SupplierResolutionFailure(IntegrationError):
    default_code = "supplier_unresolved"
    default_message_key = "supplier_unresolved"
    default_http_status = 422


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
