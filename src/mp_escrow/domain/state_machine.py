"""Transaction state machine.

    pending ──confirm_payment──▶ payment_authorized ──set_pickup──▶ pickup_scheduled
       │                               │                             │   ▲  │
       │                               │                             │   └──┘ reschedule
       │                               │                             ▼
       └───────────cancel──────────────┴────────cancel──────▶ cancelled*   completed* ──payout──▶ paid_out*

``disputed`` has no trigger here; operators set it outside the engine.
The ledger persistence builds its guarded UPDATE ... WHERE status IN (...)
clauses from this table, so the table is the single definition of legality.
"""

from dataclasses import dataclass

from src.mp_common.enums import TransactionStatus

PENDING = TransactionStatus.PENDING.value
PAYMENT_AUTHORIZED = TransactionStatus.PAYMENT_AUTHORIZED.value
PICKUP_SCHEDULED = TransactionStatus.PICKUP_SCHEDULED.value
COMPLETED = TransactionStatus.COMPLETED.value
PAID_OUT = TransactionStatus.PAID_OUT.value
CANCELLED = TransactionStatus.CANCELLED.value
DISPUTED = TransactionStatus.DISPUTED.value

# At most one transaction per listing may sit in one of these
ACTIVE_STATUSES: frozenset[str] = frozenset({PENDING, PAYMENT_AUTHORIZED, PICKUP_SCHEDULED})
TERMINAL_STATUSES: frozenset[str] = frozenset({COMPLETED, PAID_OUT, CANCELLED, DISPUTED})


@dataclass(frozen=True)
class Transition:
    trigger: str
    from_statuses: frozenset[str]
    to_status: str
    actor: str


TRANSITIONS: dict[str, Transition] = {
    t.trigger: t
    for t in (
        Transition("confirm_payment_authorized", frozenset({PENDING}), PAYMENT_AUTHORIZED, "system"),
        Transition(
            "set_pickup_details",
            frozenset({PAYMENT_AUTHORIZED, PICKUP_SCHEDULED}),
            PICKUP_SCHEDULED,
            "seller",
        ),
        Transition("confirm_pickup_complete", frozenset({PICKUP_SCHEDULED}), COMPLETED, "buyer"),
        Transition("cancel_transaction", ACTIVE_STATUSES, CANCELLED, "party"),
        Transition("record_payout", frozenset({COMPLETED}), PAID_OUT, "system"),
    )
}


def can_apply(trigger: str, status: str) -> bool:
    return status in TRANSITIONS[trigger].from_statuses


def sql_status_list(statuses: frozenset[str]) -> str:
    """Render a status set as a SQL IN-list literal: 'a', 'b'.

    Values come from TransactionStatus only, never from request input.
    """
    allowed = {s.value for s in TransactionStatus}
    unknown = statuses - allowed
    if unknown:
        raise ValueError(f"Unknown transaction statuses: {sorted(unknown)}")
    return ", ".join(f"'{s}'" for s in sorted(statuses))
