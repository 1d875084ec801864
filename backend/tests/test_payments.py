# backend/tests/test_payments.py
import random
from datetime import datetime, timedelta, timezone

import pytest

from coloc_ledger.domain.models import Forbidden, PaymentStatus
from coloc_ledger.domain.payments import (
    InvalidTransition,
    cancel_payment,
    confirm_payment,
    counts_towards_balance,
    create_payment,
    reject_payment,
)

NOW = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
LATER = NOW + timedelta(hours=2)


def pending(amount=1000):
    return create_payment(
        payment_id="p1",
        colocation_id="coloc",
        from_member_id="bob",
        to_member_id="alice",
        amount_cents=amount,
        now=NOW,
        note="rent share",
    )


def test_create_starts_pending():
    p = pending()
    assert p.status is PaymentStatus.PENDING
    assert p.created_at == NOW
    assert p.resolved_at is None
    assert p.note == "rent share"
    assert not counts_towards_balance(p)


@pytest.mark.parametrize("amount", [0, -5, 10.0, True, "10"])
def test_create_rejects_bad_amounts(amount):
    with pytest.raises(InvalidTransition):
        pending(amount)


def test_create_rejects_self_payment():
    with pytest.raises(InvalidTransition):
        create_payment(
            payment_id="p1",
            colocation_id="coloc",
            from_member_id="bob",
            to_member_id="bob",
            amount_cents=100,
            now=NOW,
        )


def test_receiver_confirms():
    p = confirm_payment(pending(), "alice", LATER)
    assert p.status is PaymentStatus.CONFIRMED
    assert p.resolved_at == LATER
    assert counts_towards_balance(p)


def test_receiver_rejects():
    p = reject_payment(pending(), "alice", LATER)
    assert p.status is PaymentStatus.REJECTED
    assert not counts_towards_balance(p)


def test_sender_cancels():
    p = cancel_payment(pending(), "bob", LATER)
    assert p.status is PaymentStatus.CANCELLED
    assert p.resolved_at == LATER


@pytest.mark.parametrize(
    "step, actor",
    [
        (confirm_payment, "bob"),
        (confirm_payment, "carol"),
        (reject_payment, "bob"),
        (cancel_payment, "alice"),
    ],
)
def test_wrong_actor_is_forbidden(step, actor):
    with pytest.raises(Forbidden):
        step(pending(), actor, LATER)


@pytest.mark.parametrize(
    "first, first_actor",
    [
        (confirm_payment, "alice"),
        (reject_payment, "alice"),
        (cancel_payment, "bob"),
    ],
)
def test_terminal_states_refuse_further_transitions(first, first_actor):
    done = first(pending(), first_actor, LATER)
    assert done.status.is_terminal
    for step, actor in [(confirm_payment, "alice"), (reject_payment, "alice"), (cancel_payment, "bob")]:
        with pytest.raises(InvalidTransition):
            step(done, actor, LATER)


def test_state_is_checked_before_actor():
    done = confirm_payment(pending(), "alice", LATER)
    # bob may never confirm, but the payment being settled is reported first
    with pytest.raises(InvalidTransition):
        confirm_payment(done, "bob", LATER)


def test_random_sequences_never_leave_a_terminal_state():
    rng = random.Random(42)
    steps = [confirm_payment, reject_payment, cancel_payment]
    actors = ["alice", "bob", "carol"]
    for _ in range(300):
        p = pending()
        terminal = None
        for _ in range(rng.randint(1, 8)):
            step, actor = rng.choice(steps), rng.choice(actors)
            try:
                p = step(p, actor, LATER)
            except (Forbidden, InvalidTransition):
                continue
            assert terminal is None
            terminal = p.status
        if terminal is not None:
            assert p.status is terminal
        else:
            assert p.status is PaymentStatus.PENDING
