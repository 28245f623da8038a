import pytest

from marketplace.domain.errors import InvariantViolationError
from marketplace.domain.order_states import TERMINAL, can_transition, ensure_transition
from marketplace.domain.statuses import OrderStatus as S


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.CONFIRMED),
        (S.CONFIRMED, S.PROCESSING),
        (S.PROCESSING, S.SHIPPED),
        (S.SHIPPED, S.DELIVERED),
        (S.PENDING, S.CANCELLED),
        (S.PROCESSING, S.PARTIALLY_CANCELLED),
        (S.PARTIALLY_CANCELLED, S.CANCELLED),
        (S.PARTIALLY_CANCELLED, S.SHIPPED),
        (S.DELIVERED, S.PARTIALLY_RETURNED),
        (S.PARTIALLY_RETURNED, S.RETURNED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.SHIPPED),
        (S.SHIPPED, S.CANCELLED),
        (S.DELIVERED, S.CANCELLED),
        (S.CANCELLED, S.PENDING),
        (S.RETURNED, S.DELIVERED),
        (S.PENDING, S.RETURNED),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvariantViolationError):
        ensure_transition(current, target)


def test_cancelled_and_returned_are_terminal():
    assert TERMINAL == {S.CANCELLED, S.RETURNED}


def test_unknown_status_has_no_transitions():
    assert not can_transition("lost", S.CONFIRMED)
