"""
Order lifecycle state machine.

    INITIATED -> PENDING -> VALIDATED -> SETTLED
    INITIATED | PENDING | VALIDATED -> REFUNDED | EXPIRED | FAILED | CANCELLED

Terminal states have no exits, so once an order is terminal nothing is
"strictly later". ``decide`` is the pure core of the Reconciler: given
the committed status and a newly observed one, it says what to do with
the observation.
"""

import enum

from app.models.order import OrderStatus

SUCCESS_STATES = frozenset({OrderStatus.VALIDATED, OrderStatus.SETTLED})
TERMINAL_SUCCESS_STATES = frozenset({OrderStatus.SETTLED})
TERMINAL_FAILURE_STATES = frozenset({
    OrderStatus.REFUNDED,
    OrderStatus.EXPIRED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})
TERMINAL_STATES = TERMINAL_SUCCESS_STATES | TERMINAL_FAILURE_STATES

_FAILURE_EXITS = set(TERMINAL_FAILURE_STATES)

VALID_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.INITIATED: {
        OrderStatus.PENDING,
        OrderStatus.VALIDATED,
        OrderStatus.SETTLED,
        *_FAILURE_EXITS,
    },
    OrderStatus.PENDING: {
        OrderStatus.VALIDATED,
        OrderStatus.SETTLED,
        *_FAILURE_EXITS,
    },
    OrderStatus.VALIDATED: {
        OrderStatus.SETTLED,
        *_FAILURE_EXITS,
    },
    OrderStatus.SETTLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.EXPIRED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.CANCELLED: set(),
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def is_settled(status: OrderStatus) -> bool:
    """User-facing success: funds delivered (VALIDATED) or ledger-final (SETTLED)."""
    return status in SUCCESS_STATES


def is_failed(status: OrderStatus) -> bool:
    return status in TERMINAL_FAILURE_STATES


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    """Check whether a status transition is allowed."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


# ---------------------------------------------------------------------------
# Observation decisions
# ---------------------------------------------------------------------------


class Decision(str, enum.Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"                  # same state: idempotent no-op
    STALE = "stale"                          # not a valid move from the current state
    TERMINAL_CONFLICT = "terminal_conflict"  # different state after a terminal
    UNKNOWN = "unknown"                      # vendor string we cannot map


def decide(current: OrderStatus, observed: OrderStatus) -> Decision:
    """
    Classify an observation against the committed status.

    Order of rules: unknown, same state, terminal conflict, ordering.
    """
    if observed == OrderStatus.UNKNOWN:
        return Decision.UNKNOWN
    if observed == current:
        return Decision.DUPLICATE
    if is_terminal(current):
        return Decision.TERMINAL_CONFLICT
    if is_valid_transition(current, observed):
        return Decision.APPLY
    return Decision.STALE
