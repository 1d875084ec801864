from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from coloc_ledger.domain.models import (
    Expense,
    LedgerSnapshot,
    NotFound,
    Payment,
    PaymentStatus,
)


class InMemoryLedgerRepository:
    """
    Process-local ledger store with the same surface as LedgerRepository.

    Used when DATABASE_URL is not configured and in tests. Records are frozen
    dataclasses, so a snapshot is a tuple copy taken under the colocation lock.
    """

    enabled = True

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._members: Dict[str, List[str]] = {}
        self._expenses: Dict[str, Expense] = {}
        self._payments: Dict[str, Payment] = {}

    def _lock(self, colocation_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(colocation_id, threading.Lock())

    # -- members -----------------------------------------------------------

    def add_member(self, *, colocation_id: str, member_id: str) -> None:
        with self._lock(colocation_id):
            members = self._members.setdefault(colocation_id, [])
            if member_id not in members:
                members.append(member_id)

    def is_member(self, *, colocation_id: str, member_id: str) -> bool:
        with self._lock(colocation_id):
            return member_id in self._members.get(colocation_id, [])

    def list_members(self, *, colocation_id: str) -> List[str]:
        with self._lock(colocation_id):
            return list(self._members.get(colocation_id, []))

    # -- snapshot ------------------------------------------------------------

    def load_snapshot(self, *, colocation_id: str) -> LedgerSnapshot:
        with self._lock(colocation_id):
            expenses = sorted(
                (e for e in self._expenses.values() if e.colocation_id == colocation_id),
                key=lambda e: (e.expense_date, e.id),
            )
            payments = sorted(
                (
                    p
                    for p in self._payments.values()
                    if p.colocation_id == colocation_id and p.status is PaymentStatus.CONFIRMED
                ),
                key=lambda p: (p.created_at, p.id),
            )
            return LedgerSnapshot(
                colocation_id=colocation_id,
                members=tuple(self._members.get(colocation_id, [])),
                expenses=tuple(expenses),
                confirmed_payments=tuple(payments),
            )

    # -- expenses ------------------------------------------------------------

    def get_expense(self, *, expense_id: str) -> Optional[Expense]:
        return self._expenses.get(expense_id)

    def list_expenses(
        self,
        *,
        colocation_id: str,
        paid_by: Optional[str] = None,
        category_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Expense], int]:
        with self._lock(colocation_id):
            rows = [
                e
                for e in self._expenses.values()
                if e.colocation_id == colocation_id
                and (paid_by is None or e.payer_id == paid_by)
                and (category_id is None or e.category_id == category_id)
                and (start is None or e.expense_date >= start)
                and (end is None or e.expense_date <= end)
            ]
        rows.sort(key=lambda e: (e.expense_date, e.id), reverse=True)
        offset = (page - 1) * page_size
        return rows[offset:offset + page_size], len(rows)

    def create_expense(self, expense: Expense) -> None:
        with self._lock(expense.colocation_id):
            self._expenses[expense.id] = expense

    def update_expense(
        self,
        *,
        colocation_id: str,
        expense_id: str,
        apply: Callable[[Expense], Expense],
    ) -> Expense:
        with self._lock(colocation_id):
            current = self._expenses.get(expense_id)
            if current is None or current.colocation_id != colocation_id:
                raise NotFound("expense not found")
            updated = apply(current)
            self._expenses[expense_id] = updated
            return updated

    def delete_expense(
        self,
        *,
        colocation_id: str,
        expense_id: str,
        check: Callable[[Expense], None],
    ) -> None:
        with self._lock(colocation_id):
            current = self._expenses.get(expense_id)
            if current is None or current.colocation_id != colocation_id:
                raise NotFound("expense not found")
            check(current)
            del self._expenses[expense_id]

    # -- payments ------------------------------------------------------------

    def get_payment(self, *, payment_id: str) -> Optional[Payment]:
        return self._payments.get(payment_id)

    def list_payments(
        self,
        *,
        colocation_id: str,
        status: Optional[PaymentStatus] = None,
        from_member_id: Optional[str] = None,
        to_member_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Payment], int]:
        with self._lock(colocation_id):
            rows = [
                p
                for p in self._payments.values()
                if p.colocation_id == colocation_id
                and (status is None or p.status is status)
                and (from_member_id is None or p.from_member_id == from_member_id)
                and (to_member_id is None or p.to_member_id == to_member_id)
            ]
        rows.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        offset = (page - 1) * page_size
        return rows[offset:offset + page_size], len(rows)

    def create_payment(self, payment: Payment) -> None:
        with self._lock(payment.colocation_id):
            self._payments[payment.id] = payment

    def transition_payment(
        self,
        *,
        colocation_id: str,
        payment_id: str,
        apply: Callable[[Payment], Payment],
    ) -> Payment:
        with self._lock(colocation_id):
            current = self._payments.get(payment_id)
            if current is None or current.colocation_id != colocation_id:
                raise NotFound("payment not found")
            updated = apply(current)
            self._payments[payment_id] = updated
            return updated
