# backend/coloc_ledger/domain/payments.py
"""
Payment reconciliation.

    pending --confirm (receiver)--> confirmed
    pending --reject  (receiver)--> rejected
    pending --cancel  (sender)----> cancelled

confirmed, rejected and cancelled are terminal. Only confirmed payments
count towards balances.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from coloc_ledger.domain.models import Forbidden, Payment, PaymentStatus


class InvalidTransition(ValueError):
    """Raised when a payment is created or moved in a way the state machine forbids."""


def create_payment(
    *,
    payment_id: str,
    colocation_id: str,
    from_member_id: str,
    to_member_id: str,
    amount_cents: int,
    now: datetime,
    note: Optional[str] = None,
) -> Payment:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidTransition("payment amount must be an int number of cents")
    if amount_cents <= 0:
        raise InvalidTransition("payment amount must be positive")
    if from_member_id == to_member_id:
        raise InvalidTransition("a member cannot pay themselves")

    return Payment(
        id=payment_id,
        colocation_id=colocation_id,
        from_member_id=from_member_id,
        to_member_id=to_member_id,
        amount_cents=amount_cents,
        status=PaymentStatus.PENDING,
        created_at=now,
        note=note,
    )


def _require_pending(payment: Payment, action: str) -> None:
    if payment.status is not PaymentStatus.PENDING:
        raise InvalidTransition(
            f"cannot {action} payment {payment.id}: it is already {payment.status.value}"
        )


def confirm_payment(payment: Payment, actor_id: str, now: datetime) -> Payment:
    _require_pending(payment, "confirm")
    if actor_id != payment.to_member_id:
        raise Forbidden("only the recipient can confirm this payment")
    return payment.with_status(PaymentStatus.CONFIRMED, now)


def reject_payment(payment: Payment, actor_id: str, now: datetime) -> Payment:
    _require_pending(payment, "reject")
    if actor_id != payment.to_member_id:
        raise Forbidden("only the recipient can reject this payment")
    return payment.with_status(PaymentStatus.REJECTED, now)


def cancel_payment(payment: Payment, actor_id: str, now: datetime) -> Payment:
    _require_pending(payment, "cancel")
    if actor_id != payment.from_member_id:
        raise Forbidden("only the sender can cancel this payment")
    return payment.with_status(PaymentStatus.CANCELLED, now)


def counts_towards_balance(payment: Payment) -> bool:
    return payment.status is PaymentStatus.CONFIRMED
