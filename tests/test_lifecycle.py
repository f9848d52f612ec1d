"""
订单状态机测试
"""
import itertools

import pytest

from rastuci_core.models import OrderStatus
from rastuci_core.services.lifecycle import can_hold, can_release, can_transition, is_allowed

MAIN_PATH = [
    OrderStatus.PENDING,
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PROCESSED,
    OrderStatus.DELIVERED,
]


def test_forward_steps_are_allowed():
    for source, target in zip(MAIN_PATH, MAIN_PATH[1:]):
        assert can_transition(source, target)
        assert can_transition(source.value, target.value)


def test_only_forward_table_is_true():
    allowed = set(zip(MAIN_PATH, MAIN_PATH[1:]))
    for source, target in itertools.product(OrderStatus, OrderStatus):
        assert can_transition(source, target) == ((source, target) in allowed)


@pytest.mark.parametrize("source,target", [
    (OrderStatus.PENDING, OrderStatus.PROCESSED),
    (OrderStatus.PENDING, OrderStatus.DELIVERED),
    (OrderStatus.PROCESSED, OrderStatus.PENDING_PAYMENT),
    (OrderStatus.DELIVERED, OrderStatus.PENDING),
    (OrderStatus.PROCESSED, OrderStatus.PROCESSED),
])
def test_skips_regressions_and_self_loops_rejected(source, target):
    assert not can_transition(source, target)
    assert not is_allowed(source, target)


def test_unknown_status_is_rejected():
    assert not can_transition("SHIPPED", "DELIVERED")
    assert not can_hold("PENDING", "LOST")
    assert not is_allowed("bogus", OrderStatus.PENDING_PAYMENT)


def test_holds_only_from_unshipped_states():
    assert can_hold(OrderStatus.PENDING, OrderStatus.FAILED)
    assert can_hold(OrderStatus.PENDING_PAYMENT, OrderStatus.REFUNDED)
    assert can_hold(OrderStatus.PENDING_REVIEW, OrderStatus.CANCELLED)
    assert can_hold(OrderStatus.PROCESSING, OrderStatus.FAILED)
    assert not can_hold(OrderStatus.PROCESSED, OrderStatus.CHARGED_BACK)
    assert not can_hold(OrderStatus.DELIVERED, OrderStatus.REFUNDED)
    assert not can_hold(OrderStatus.FAILED, OrderStatus.CANCELLED)


def test_release_from_review_only():
    assert can_release(OrderStatus.PENDING_REVIEW, OrderStatus.PENDING_PAYMENT)
    assert can_release(OrderStatus.PROCESSING, OrderStatus.PENDING_PAYMENT)
    assert not can_release(OrderStatus.FAILED, OrderStatus.PENDING_PAYMENT)
    assert not can_release(OrderStatus.PENDING_REVIEW, OrderStatus.PROCESSED)
    assert not can_transition(OrderStatus.PENDING_REVIEW, OrderStatus.PENDING_PAYMENT)
