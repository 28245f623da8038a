# marketplace/domain/order_states.py
from marketplace.domain.errors import InvariantViolationError
from marketplace.domain.statuses import OrderStatus as S

TRANSITIONS: dict[str, frozenset] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED, S.PARTIALLY_CANCELLED}),
    S.CONFIRMED: frozenset({S.PROCESSING, S.CANCELLED, S.PARTIALLY_CANCELLED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED, S.PARTIALLY_CANCELLED}),
    # the remaining items of a partially cancelled order are still fulfilled
    S.PARTIALLY_CANCELLED: frozenset({S.SHIPPED, S.CANCELLED, S.PARTIALLY_CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset({S.RETURNED, S.PARTIALLY_RETURNED}),
    S.PARTIALLY_RETURNED: frozenset({S.RETURNED, S.PARTIALLY_RETURNED}),
    S.CANCELLED: frozenset(),
    S.RETURNED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvariantViolationError(
            f"Order cannot move from '{current}' to '{target}'"
        )
