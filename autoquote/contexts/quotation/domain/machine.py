"""Quotation lifecycle state machine.

Flow: draft -> sent -> replied -> quoted -> confirmed -> delivered, with
cancel branches along the way, expiry of unanswered quotations and a reset
from cancelled/expired back to a fresh draft.

Every transition is checked against a guard, applies a pure action that
derives the next context and appends one history entry. ``send`` never
raises: rejected transitions come back as a failed ``TransitionResult`` and
leave the machine untouched.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Tuple, Union

from autoquote.contexts.quotation.domain.models import (
    HistoryEntry,
    QuotationContext,
    QuotedItem,
)
from autoquote.core.clock import Clock, to_iso, utc_now
from autoquote.observability import observe_quotation_transition
from autoquote.ui_strings import error_message


logger = logging.getLogger("autoquote.quotation.machine")


class QuotationState(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    REPLIED = "replied"
    QUOTED = "quoted"
    CONFIRMED = "confirmed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class QuotationEvent(str, Enum):
    SEND = "SEND"
    RECEIVE_REPLY = "RECEIVE_REPLY"
    ANALYZE = "ANALYZE"
    CONFIRM = "CONFIRM"
    DELIVER = "DELIVER"
    CANCEL = "CANCEL"
    EXPIRE = "EXPIRE"
    RESET = "RESET"


INIT_EVENT = "INIT"

# Statuses written by earlier releases.
LEGACY_STATUS_ALIASES: Dict[str, QuotationState] = {
    "pending": QuotationState.DRAFT,
    "awaiting": QuotationState.SENT,
    "ordered": QuotationState.CONFIRMED,
}


# Event payloads: one variant per event, each carrying only what its action reads.


@dataclass(frozen=True)
class SendPayload:
    subject: str | None = None
    body: str | None = None


@dataclass(frozen=True)
class ReceiveReplyPayload:
    email_body: str | None = None
    sender: str | None = None


@dataclass(frozen=True)
class AnalyzePayload:
    quoted_items: Tuple[QuotedItem, ...] = ()
    delivery_date: str | None = None
    payment_terms: str | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class ConfirmPayload:
    pass


@dataclass(frozen=True)
class DeliverPayload:
    notes: str | None = None
    invoice_number: str | None = None


@dataclass(frozen=True)
class CancelPayload:
    reason: str | None = None


@dataclass(frozen=True)
class ExpirePayload:
    pass


@dataclass(frozen=True)
class ResetPayload:
    pass


EventPayload = Union[
    SendPayload,
    ReceiveReplyPayload,
    AnalyzePayload,
    ConfirmPayload,
    DeliverPayload,
    CancelPayload,
    ExpirePayload,
    ResetPayload,
]

_PAYLOAD_TYPES: Dict[QuotationEvent, type] = {
    QuotationEvent.SEND: SendPayload,
    QuotationEvent.RECEIVE_REPLY: ReceiveReplyPayload,
    QuotationEvent.ANALYZE: AnalyzePayload,
    QuotationEvent.CONFIRM: ConfirmPayload,
    QuotationEvent.DELIVER: DeliverPayload,
    QuotationEvent.CANCEL: CancelPayload,
    QuotationEvent.EXPIRE: ExpirePayload,
    QuotationEvent.RESET: ResetPayload,
}


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def coerce_payload(event: QuotationEvent, raw: Any) -> EventPayload:
    """Build the payload variant for ``event`` from a dataclass, mapping or None."""
    expected = _PAYLOAD_TYPES[event]
    if isinstance(raw, expected):
        return raw
    data: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}

    if event is QuotationEvent.SEND:
        return SendPayload(subject=_pick(data, "subject"), body=_pick(data, "body"))
    if event is QuotationEvent.RECEIVE_REPLY:
        return ReceiveReplyPayload(
            email_body=_pick(data, "email_body", "emailBody"),
            sender=_pick(data, "sender", "from"),
        )
    if event is QuotationEvent.ANALYZE:
        quoted = _pick(data, "quoted_items", "quotedItems") or ()
        return AnalyzePayload(
            quoted_items=tuple(item if isinstance(item, QuotedItem) else QuotedItem.from_dict(item) for item in quoted),
            delivery_date=_pick(data, "delivery_date", "deliveryDate"),
            payment_terms=_pick(data, "payment_terms", "paymentTerms"),
            confidence=_pick(data, "confidence"),
        )
    if event is QuotationEvent.DELIVER:
        return DeliverPayload(
            notes=_pick(data, "notes"),
            invoice_number=_pick(data, "invoice_number", "invoiceNumber"),
        )
    if event is QuotationEvent.CANCEL:
        return CancelPayload(reason=_pick(data, "reason"))
    return expected()


def _payload_for_history(payload: EventPayload) -> Dict[str, Any]:
    raw = asdict(payload)
    raw.pop("items", None)
    return {key: value for key, value in raw.items() if value is not None and value != ()}


@dataclass(frozen=True)
class MachinePolicy:
    expiry_days: int = 7
    cancel_window_hours: int = 24


GuardFn = Callable[[QuotationContext, Any, datetime, MachinePolicy], bool]
ActionFn = Callable[[QuotationContext, Any, datetime], QuotationContext]


@dataclass(frozen=True)
class Transition:
    target: QuotationState
    guard: GuardFn | None = None
    error_key: str = "guard_failed"


def _can_send(context: QuotationContext, _payload: SendPayload, _now: datetime, _policy: MachinePolicy) -> bool:
    return bool(context.supplier_email) and len(context.items) > 0


def _has_reply_body(_context: QuotationContext, payload: ReceiveReplyPayload, _now: datetime, _policy: MachinePolicy) -> bool:
    return bool(payload.email_body)


def _is_overdue(context: QuotationContext, _payload: ExpirePayload, now: datetime, policy: MachinePolicy) -> bool:
    if context.sent_at is None:
        return False
    return now - context.sent_at >= timedelta(days=policy.expiry_days)


def _has_quoted_items(_context: QuotationContext, payload: AnalyzePayload, _now: datetime, _policy: MachinePolicy) -> bool:
    return len(payload.quoted_items) > 0


def _has_quoted_total(context: QuotationContext, _payload: ConfirmPayload, _now: datetime, _policy: MachinePolicy) -> bool:
    return (context.quoted_total or 0) > 0


def _within_cancel_window(context: QuotationContext, _payload: CancelPayload, now: datetime, policy: MachinePolicy) -> bool:
    if context.confirmed_at is None:
        return False
    return now - context.confirmed_at < timedelta(hours=policy.cancel_window_hours)


TRANSITIONS: Dict[QuotationState, Dict[QuotationEvent, Transition]] = {
    QuotationState.DRAFT: {
        QuotationEvent.SEND: Transition(QuotationState.SENT, _can_send, "send_requires_email_and_items"),
        QuotationEvent.CANCEL: Transition(QuotationState.CANCELLED),
    },
    QuotationState.SENT: {
        QuotationEvent.RECEIVE_REPLY: Transition(QuotationState.REPLIED, _has_reply_body, "reply_requires_body"),
        QuotationEvent.EXPIRE: Transition(QuotationState.EXPIRED, _is_overdue, "expire_requires_overdue"),
        QuotationEvent.CANCEL: Transition(QuotationState.CANCELLED),
    },
    QuotationState.REPLIED: {
        QuotationEvent.ANALYZE: Transition(QuotationState.QUOTED, _has_quoted_items, "analyze_requires_items"),
        QuotationEvent.CANCEL: Transition(QuotationState.CANCELLED),
    },
    QuotationState.QUOTED: {
        QuotationEvent.CONFIRM: Transition(QuotationState.CONFIRMED, _has_quoted_total, "confirm_requires_total"),
        QuotationEvent.CANCEL: Transition(QuotationState.CANCELLED),
    },
    QuotationState.CONFIRMED: {
        QuotationEvent.DELIVER: Transition(QuotationState.DELIVERED),
        QuotationEvent.CANCEL: Transition(QuotationState.CANCELLED, _within_cancel_window, "cancel_window_elapsed"),
    },
    QuotationState.DELIVERED: {},
    QuotationState.CANCELLED: {
        QuotationEvent.RESET: Transition(QuotationState.DRAFT),
    },
    QuotationState.EXPIRED: {
        QuotationEvent.RESET: Transition(QuotationState.DRAFT),
    },
}


def _with_details(context: QuotationContext, **values: Any) -> Dict[str, Any]:
    details = dict(context.details)
    details.update(values)
    return details


def _apply_send(context: QuotationContext, payload: SendPayload, now: datetime) -> QuotationContext:
    return replace(
        context,
        sent_at=now,
        details=_with_details(context, email_subject=payload.subject, email_body=payload.body),
    )


def _apply_receive_reply(context: QuotationContext, payload: ReceiveReplyPayload, now: datetime) -> QuotationContext:
    return replace(
        context,
        replied_at=now,
        details=_with_details(context, reply_body=payload.email_body, reply_from=payload.sender),
    )


def _apply_analyze(context: QuotationContext, payload: AnalyzePayload, now: datetime) -> QuotationContext:
    return replace(
        context,
        analyzed_at=now,
        quoted_items=tuple(payload.quoted_items),
        quoted_total=sum(item.total for item in payload.quoted_items),
        details=_with_details(
            context,
            delivery_date=payload.delivery_date,
            payment_terms=payload.payment_terms,
            ai_confidence=payload.confidence,
        ),
    )


def _apply_confirm(context: QuotationContext, _payload: ConfirmPayload, now: datetime) -> QuotationContext:
    return replace(context, confirmed_at=now)


def _apply_deliver(context: QuotationContext, payload: DeliverPayload, now: datetime) -> QuotationContext:
    return replace(
        context,
        delivered_at=now,
        details=_with_details(context, delivery_notes=payload.notes, invoice_number=payload.invoice_number),
    )


def _apply_cancel(context: QuotationContext, payload: CancelPayload, now: datetime) -> QuotationContext:
    return replace(
        context,
        cancelled_at=now,
        details=_with_details(context, cancellation_reason=payload.reason or "Cancelled by user"),
    )


def _apply_reset(context: QuotationContext, _payload: ResetPayload, _now: datetime) -> QuotationContext:
    return replace(
        context,
        sent_at=None,
        replied_at=None,
        analyzed_at=None,
        confirmed_at=None,
        delivered_at=None,
        cancelled_at=None,
        quoted_total=None,
    )


ACTIONS: Dict[QuotationEvent, ActionFn] = {
    QuotationEvent.SEND: _apply_send,
    QuotationEvent.RECEIVE_REPLY: _apply_receive_reply,
    QuotationEvent.ANALYZE: _apply_analyze,
    QuotationEvent.CONFIRM: _apply_confirm,
    QuotationEvent.DELIVER: _apply_deliver,
    QuotationEvent.CANCEL: _apply_cancel,
    QuotationEvent.RESET: _apply_reset,
}


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    target: QuotationState | None = None
    error: str | None = None


@dataclass(frozen=True)
class MachineSnapshot:
    state: QuotationState
    context: QuotationContext
    history: Tuple[HistoryEntry, ...]
    available_events: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "context": self.context.to_dict(),
            "history": [entry.to_dict() for entry in self.history],
            "available_events": list(self.available_events),
        }


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    snapshot: MachineSnapshot
    error: str | None = None
    event: str | None = None
    previous_state: QuotationState | None = None


def parse_event(event: Any) -> QuotationEvent | None:
    if isinstance(event, QuotationEvent):
        return event
    try:
        return QuotationEvent(str(event or "").strip().upper())
    except ValueError:
        return None


def parse_state(state: Any) -> QuotationState | None:
    if isinstance(state, QuotationState):
        return state
    try:
        return QuotationState(str(state or "").strip().lower())
    except ValueError:
        return None


class QuotationMachine:
    def __init__(
        self,
        context: QuotationContext,
        *,
        state: QuotationState | str = QuotationState.DRAFT,
        history: List[HistoryEntry] | None = None,
        clock: Clock = utc_now,
        policy: MachinePolicy | None = None,
    ) -> None:
        self._clock = clock
        self.policy = policy or MachinePolicy()
        parsed_state = parse_state(state) or LEGACY_STATUS_ALIASES.get(str(state or "").strip().lower())
        # Unrecognised persisted statuses load as a machine that rejects every event.
        self.unknown_state = None if parsed_state is not None else str(state)
        self.state = parsed_state or QuotationState.DRAFT
        self.context = context
        if self.context.created_at is None:
            self.context = replace(self.context, created_at=self._clock())
        self.history: List[HistoryEntry] = list(history or [])
        if not self.history:
            self.history.append(
                HistoryEntry(
                    state=self.state.value,
                    event=INIT_EVENT,
                    timestamp=to_iso(self.context.created_at) or "",
                )
            )

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        clock: Clock = utc_now,
        policy: MachinePolicy | None = None,
    ) -> "QuotationMachine":
        history = [
            entry if isinstance(entry, HistoryEntry) else HistoryEntry.from_dict(entry)
            for entry in (record.get("history") or [])
        ]
        return cls(
            QuotationContext.from_record(record),
            state=record.get("status") or QuotationState.DRAFT,
            history=history,
            clock=clock,
            policy=policy,
        )

    def to_record(self) -> Dict[str, Any]:
        record = self.context.to_dict()
        record["status"] = self.state.value
        record["history"] = [entry.to_dict() for entry in self.history]
        return record

    def available_events(self) -> Tuple[str, ...]:
        if self.unknown_state is not None:
            return ()
        return tuple(event.value for event in TRANSITIONS.get(self.state, {}))

    def get_snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(
            state=self.state,
            context=self.context,
            history=tuple(self.history),
            available_events=self.available_events(),
        )

    def _check(self, event: Any, payload: Any) -> Tuple[TransitionCheck, QuotationEvent | None, EventPayload | None]:
        if self.unknown_state is not None:
            message = f"{error_message('status_invalid')} ({self.unknown_state})"
            return TransitionCheck(valid=False, error=message), parse_event(event), None
        state_transitions = TRANSITIONS.get(self.state)
        if not state_transitions:
            return TransitionCheck(valid=False, error=error_message("state_has_no_transitions")), None, None

        parsed = parse_event(event)
        transition = state_transitions.get(parsed) if parsed is not None else None
        if parsed is None or transition is None:
            message = f"{error_message('event_not_valid_for_state')} ({event} em {self.state.value})"
            return TransitionCheck(valid=False, error=message), parsed, None

        typed_payload = coerce_payload(parsed, payload)
        if transition.guard is not None and not transition.guard(self.context, typed_payload, self._clock(), self.policy):
            return TransitionCheck(valid=False, error=error_message(transition.error_key)), parsed, typed_payload

        return TransitionCheck(valid=True, target=transition.target), parsed, typed_payload

    def can_transition(self, event: Any, payload: Any = None) -> TransitionCheck:
        check, _parsed, _payload = self._check(event, payload)
        return check

    def send(self, event: Any, payload: Any = None) -> TransitionResult:
        check, parsed, typed_payload = self._check(event, payload)
        event_name = parsed.value if parsed is not None else str(event)

        if not check.valid or parsed is None or typed_payload is None or check.target is None:
            observe_quotation_transition(event_name, "rejected")
            logger.warning(
                "quotation_transition_rejected",
                extra={
                    "quotation_id": self.context.id,
                    "state": self.state.value,
                    "event": event_name,
                    "reason": check.error,
                },
            )
            return TransitionResult(
                success=False,
                snapshot=self.get_snapshot(),
                error=check.error,
                event=event_name,
                previous_state=self.state,
            )

        now = self._clock()
        previous_state = self.state
        action = ACTIONS.get(parsed)
        next_context = action(self.context, typed_payload, now) if action else self.context

        self.state = check.target
        self.context = replace(next_context, updated_at=now)
        self.history.append(
            HistoryEntry(
                previous_state=previous_state.value,
                state=self.state.value,
                event=event_name,
                timestamp=to_iso(now) or "",
                payload=_payload_for_history(typed_payload),
            )
        )

        observe_quotation_transition(event_name, "applied")
        logger.info(
            "quotation_transition_applied",
            extra={
                "quotation_id": self.context.id,
                "from_state": previous_state.value,
                "to_state": self.state.value,
                "event": event_name,
            },
        )
        return TransitionResult(
            success=True,
            snapshot=self.get_snapshot(),
            event=event_name,
            previous_state=previous_state,
        )


def is_final_state(state: Any) -> bool:
    return parse_state(state) in {QuotationState.DELIVERED, QuotationState.CANCELLED, QuotationState.EXPIRED}


def is_active_state(state: Any) -> bool:
    return parse_state(state) in {
        QuotationState.SENT,
        QuotationState.REPLIED,
        QuotationState.QUOTED,
        QuotationState.CONFIRMED,
    }


_STATE_PROGRESS: Dict[QuotationState, int] = {
    QuotationState.DRAFT: 0,
    QuotationState.SENT: 20,
    QuotationState.REPLIED: 40,
    QuotationState.QUOTED: 60,
    QuotationState.CONFIRMED: 80,
    QuotationState.DELIVERED: 100,
    QuotationState.CANCELLED: 0,
    QuotationState.EXPIRED: 0,
}


def state_progress(state: Any) -> int:
    parsed = parse_state(state)
    if parsed is None:
        return 0
    return _STATE_PROGRESS.get(parsed, 0)
