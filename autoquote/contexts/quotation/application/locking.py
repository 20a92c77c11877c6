from __future__ import annotations

import logging
from enum import Enum

from autoquote.contexts.quotation.domain.models import ProcessingLock
from autoquote.contexts.quotation.domain.ports import LockStorePort
from autoquote.core.clock import Clock, utc_now
from autoquote.errors import LockAcquisitionFailure
from autoquote.observability import observe_processing_lock


SYSTEM_USER_ID = "system_auto_quotation"
DEFAULT_LOCK_TTL_SECONDS = 180


class LockOutcome(str, Enum):
    ACQUIRED = "acquired"
    CONTENDED = "contended"
    FAILED_OPEN = "failed_open"
    FAILED_CLOSED = "failed_closed"

    @property
    def admitted(self) -> bool:
        return self in (LockOutcome.ACQUIRED, LockOutcome.FAILED_OPEN)


class ProcessingLockService:
    """Advisory per-product lock shared through the lock store.

    A live lock means another actor is already handling the product. Store
    errors either admit the product (fail-open) or drop it (fail-closed),
    depending on ``fail_open``.
    """

    def __init__(
        self,
        store: LockStorePort,
        *,
        clock: Clock = utc_now,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        fail_open: bool = True,
        owner: str = SYSTEM_USER_ID,
    ) -> None:
        self.store = store
        self._clock = clock
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.fail_open = bool(fail_open)
        self.owner = owner
        self._logger = logging.getLogger("autoquote.auto_quotation.lock")

    def _now(self) -> float:
        return self._clock().timestamp()

    def _new_lock(self, product_id: str, now: float) -> ProcessingLock:
        return ProcessingLock(
            tenant_id=str(getattr(self.store, "tenant_id", "") or ""),
            product_id=product_id,
            acquired_at=now,
            expires_at=now + self.ttl_seconds,
            acquired_by=self.owner,
            last_heartbeat=now,
        )

    def _try_acquire(self, product_id: str) -> bool:
        now = self._now()
        current = self.store.get(product_id)
        if current is None:
            return self.store.insert_if_absent(self._new_lock(product_id, now))
        if current.is_live(now):
            return False
        return self.store.replace_if_expired(self._new_lock(product_id, now), current.expires_at)

    def acquire(self, product_id: str) -> LockOutcome:
        try:
            acquired = self._try_acquire(product_id)
        except Exception as exc:  # noqa: BLE001
            failure = LockAcquisitionFailure(details=str(exc), payload={"product_id": product_id})
            outcome = LockOutcome.FAILED_OPEN if self.fail_open else LockOutcome.FAILED_CLOSED
            self._logger.warning(
                "processing_lock_store_failed",
                extra={
                    "product_id": product_id,
                    "outcome": outcome.value,
                    "error_code": failure.code,
                    "error_details": failure.details,
                },
            )
            observe_processing_lock(outcome.value)
            return outcome

        outcome = LockOutcome.ACQUIRED if acquired else LockOutcome.CONTENDED
        if not acquired:
            self._logger.info("processing_lock_contended", extra={"product_id": product_id})
        observe_processing_lock(outcome.value)
        return outcome

    def extend(self, product_id: str) -> bool:
        now = self._now()
        try:
            extend = getattr(self.store, "extend", None)
            if callable(extend):
                return bool(extend(product_id, expires_at=now + self.ttl_seconds, heartbeat_at=now))
            current = self.store.get(product_id)
            if current is None:
                return False
            self.store.put(
                ProcessingLock(
                    tenant_id=current.tenant_id,
                    product_id=product_id,
                    acquired_at=current.acquired_at,
                    expires_at=now + self.ttl_seconds,
                    acquired_by=current.acquired_by,
                    last_heartbeat=now,
                )
            )
            return True
        except Exception:  # noqa: BLE001
            self._logger.warning("processing_lock_extend_failed", extra={"product_id": product_id}, exc_info=True)
            return False

    def release(self, product_id: str) -> None:
        try:
            self.store.delete(product_id)
        except Exception:  # noqa: BLE001
            # The lock expires on its own after the TTL.
            self._logger.warning("processing_lock_release_failed", extra={"product_id": product_id}, exc_info=True)
