# backend/coloc_ledger/domain/balances.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from coloc_ledger.domain.models import (
    BalanceHistoryEntry,
    BalanceVector,
    Debt,
    Expense,
    MemberBalance,
    Payment,
    PaymentStatus,
)


class UnbalancedLedger(ValueError):
    """
    Raised when net balances do not sum to zero.
    This is a data-integrity failure, never a user input problem.
    """

    def __init__(self, total_cents: int, message: Optional[str] = None):
        self.total_cents = total_cents
        super().__init__(message or f"net balances sum to {total_cents}, expected 0")


def check_zero_sum(nets: Dict[str, int]) -> None:
    total = sum(nets.values())
    if total != 0:
        raise UnbalancedLedger(total)


def aggregate(
    expenses: Iterable[Expense],
    confirmed_payments: Iterable[Payment],
    members: Iterable[str] = (),
) -> BalanceVector:
    """
    Fold expenses and confirmed payments into one balance per member.

      total_paid[payer] += expense amount
      total_owed[member] += split share
      net = paid - owed, then for each confirmed payment:
        net[from] += amount; net[to] -= amount

    Payments that are not confirmed have no effect. Every id in members gets
    an entry even when it has no activity.
    """
    paid: Dict[str, int] = {}
    owed: Dict[str, int] = {}
    transfers: Dict[str, int] = {}

    for member_id in members:
        paid.setdefault(member_id, 0)

    for expense in expenses:
        paid[expense.payer_id] = paid.get(expense.payer_id, 0) + expense.amount_cents
        for split in expense.splits:
            owed[split.member_id] = owed.get(split.member_id, 0) + split.share_cents

    for payment in confirmed_payments:
        if payment.status is not PaymentStatus.CONFIRMED:
            continue
        transfers[payment.from_member_id] = transfers.get(payment.from_member_id, 0) + payment.amount_cents
        transfers[payment.to_member_id] = transfers.get(payment.to_member_id, 0) - payment.amount_cents

    everyone = set(paid) | set(owed) | set(transfers)
    entries = []
    for member_id in everyone:
        total_paid = paid.get(member_id, 0)
        total_owed = owed.get(member_id, 0)
        entries.append(
            MemberBalance(
                member_id=member_id,
                total_paid_cents=total_paid,
                total_owed_cents=total_owed,
                net_balance_cents=total_paid - total_owed + transfers.get(member_id, 0),
            )
        )
    entries.sort(key=lambda e: (-e.net_balance_cents, e.member_id))

    vector = BalanceVector(entries=tuple(entries))
    check_zero_sum(vector.nets())
    return vector


def raw_debts(expenses: Iterable[Expense]) -> List[Debt]:
    """
    Pairwise obligations straight from splits: each non-payer participant owes
    their share to the payer. Summed per (from, to) pair, no netting and no
    payments applied. Ordered by amount descending, then ids.
    """
    pairs: Dict[Tuple[str, str], int] = {}
    for expense in expenses:
        for split in expense.splits:
            if split.member_id == expense.payer_id or split.share_cents == 0:
                continue
            key = (split.member_id, expense.payer_id)
            pairs[key] = pairs.get(key, 0) + split.share_cents

    debts = [Debt(from_member_id=f, to_member_id=t, amount_cents=amt) for (f, t), amt in pairs.items()]
    debts.sort(key=lambda d: (-d.amount_cents, d.from_member_id, d.to_member_id))
    return debts


def _expense_delta(expense: Expense, member_id: str) -> int:
    delta = -expense.share_of(member_id)
    if expense.payer_id == member_id:
        delta += expense.amount_cents
    return delta


def _payment_date(payment: Payment) -> datetime:
    return payment.resolved_at or payment.created_at


def balance_history(
    expenses: Iterable[Expense],
    confirmed_payments: Iterable[Payment],
    member_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[BalanceHistoryEntry]:
    """
    Balance-affecting events for one member with the running balance after
    each one. Events before start only feed the opening balance; events
    after end are dropped. Over an unbounded range the last running balance
    equals the member's net balance.
    """
    events: List[Tuple[datetime, str, str, str, int]] = []

    for expense in expenses:
        involved = expense.payer_id == member_id or any(s.member_id == member_id for s in expense.splits)
        if not involved:
            continue
        delta = _expense_delta(expense, member_id)
        events.append((expense.expense_date, "expense", expense.id, expense.title, delta))

    for payment in confirmed_payments:
        if payment.status is not PaymentStatus.CONFIRMED:
            continue
        if payment.from_member_id == member_id:
            events.append((_payment_date(payment), "payment", payment.id, payment.note or "Payment sent", payment.amount_cents))
        elif payment.to_member_id == member_id:
            events.append((_payment_date(payment), "payment", payment.id, payment.note or "Payment received", -payment.amount_cents))

    events.sort(key=lambda ev: (ev[0], ev[1], ev[2]))

    running = 0
    history: List[BalanceHistoryEntry] = []
    for date, event_type, event_id, description, delta in events:
        if end is not None and date > end:
            break
        running += delta
        if start is not None and date < start:
            continue
        history.append(
            BalanceHistoryEntry(
                date=date,
                event_type=event_type,
                event_id=event_id,
                description=description,
                amount_cents=delta,
                running_balance_cents=running,
            )
        )
    return history
