from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import uuid4

import structlog

from coloc_ledger.domain.balances import UnbalancedLedger, aggregate, balance_history, raw_debts
from coloc_ledger.domain.models import (
    BalanceHistoryEntry,
    BalanceVector,
    CustomSplit,
    Debt,
    EqualSplit,
    Expense,
    Forbidden,
    InvalidSplit,
    ModelValidationError,
    NotFound,
    Payment,
    PaymentStatus,
    SimplifiedDebt,
    SplitPolicy,
    SplitType,
)
from coloc_ledger.domain.money import DEFAULT_CURRENCY, cents_to_str
from coloc_ledger.domain.payments import (
    cancel_payment,
    confirm_payment,
    create_payment,
    reject_payment,
)
from coloc_ledger.domain.simplifier import simplify
from coloc_ledger.domain.split_logic import allocate

log = structlog.get_logger(__name__)

_UNSET = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class LedgerService:
    """
    Drives the balance engine against a ledger store.

    The acting member is always passed in explicitly as actor_id; the service
    checks colocation membership and the payer/sender/receiver rules, and
    never caches identity between calls.
    """

    def __init__(
        self,
        repo,
        *,
        currency: str = DEFAULT_CURRENCY,
        on_balances_changed: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_id,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ):
        self.repo = repo
        self.currency = currency
        self._on_balances_changed = on_balances_changed
        self._clock = clock
        self._new_id = id_factory
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # -- helpers -------------------------------------------------------------

    def _ensure_member(self, colocation_id: str, actor_id: str) -> None:
        if not self.repo.is_member(colocation_id=colocation_id, member_id=actor_id):
            log.info("membership_denied", colocation_id=colocation_id, actor_id=actor_id)
            raise Forbidden("you are not a member of this colocation")

    def _normalize_page(self, page: int, page_size: Optional[int]) -> Tuple[int, int]:
        if page < 1:
            page = 1
        if page_size is None or page_size < 1 or page_size > self.max_page_size:
            page_size = self.default_page_size
        return page, page_size

    def _balances_changed(self, colocation_id: str) -> None:
        if self._on_balances_changed is None:
            return
        try:
            self._on_balances_changed(colocation_id)
        except Exception:
            # notification delivery lives outside the ledger; never undo a committed write
            log.exception("balance_notification_failed", colocation_id=colocation_id)

    def _aggregate(self, snapshot) -> BalanceVector:
        try:
            return aggregate(snapshot.expenses, snapshot.confirmed_payments, snapshot.members)
        except UnbalancedLedger as e:
            log.critical(
                "ledger_unbalanced",
                colocation_id=snapshot.colocation_id,
                total_cents=e.total_cents,
                expenses=len(snapshot.expenses),
                payments=len(snapshot.confirmed_payments),
            )
            raise

    @staticmethod
    def _materialize(
        expense_id: str,
        amount_cents: int,
        policy: SplitPolicy,
        participants: Optional[Sequence[str]],
        members: Sequence[str],
    ):
        # members is read before any store lock is taken; apply callbacks must not hit the store
        if isinstance(policy, EqualSplit) and participants is None:
            participants = list(members)
        alloc = allocate(amount_cents, policy, participants)
        known = set(members)
        for pid in alloc.participants:
            if pid not in known:
                raise InvalidSplit(f"participant {pid} is not a member of this colocation")
        return alloc.to_splits(expense_id)

    # -- balances ------------------------------------------------------------

    def get_balances(self, colocation_id: str, actor_id: str) -> Tuple[BalanceVector, List[Debt]]:
        self._ensure_member(colocation_id, actor_id)
        snapshot = self.repo.load_snapshot(colocation_id=colocation_id)
        return self._aggregate(snapshot), raw_debts(snapshot.expenses)

    def get_simplified_debts(self, colocation_id: str, actor_id: str) -> List[SimplifiedDebt]:
        self._ensure_member(colocation_id, actor_id)
        snapshot = self.repo.load_snapshot(colocation_id=colocation_id)
        vector = self._aggregate(snapshot)
        try:
            debts = simplify(vector)
        except UnbalancedLedger as e:
            log.critical("ledger_unbalanced", colocation_id=colocation_id, total_cents=e.total_cents)
            raise
        log.debug("debts_simplified", colocation_id=colocation_id, members=len(vector), transfers=len(debts))
        return debts

    def get_balance_history(
        self,
        colocation_id: str,
        actor_id: str,
        member_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[BalanceHistoryEntry]:
        self._ensure_member(colocation_id, actor_id)
        target = member_id or actor_id
        snapshot = self.repo.load_snapshot(colocation_id=colocation_id)
        if target not in snapshot.members:
            raise NotFound("member not found in this colocation")
        return balance_history(snapshot.expenses, snapshot.confirmed_payments, target, start, end)

    # -- expenses ------------------------------------------------------------

    def create_expense(
        self,
        colocation_id: str,
        actor_id: str,
        *,
        title: str,
        amount_cents: int,
        policy: SplitPolicy,
        participants: Optional[Sequence[str]] = None,
        category_id: Optional[str] = None,
        expense_date: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Expense:
        self._ensure_member(colocation_id, actor_id)
        if not isinstance(title, str) or not title.strip():
            raise ModelValidationError("title must be a non-empty string")

        expense_id = self._new_id()
        now = self._clock()
        members = self.repo.list_members(colocation_id=colocation_id)
        splits = self._materialize(expense_id, amount_cents, policy, participants, members)
        expense = Expense(
            id=expense_id,
            colocation_id=colocation_id,
            payer_id=actor_id,
            amount_cents=amount_cents,
            split_type=policy.split_type,
            splits=splits,
            expense_date=expense_date or now,
            title=title.strip(),
            category_id=category_id,
            description=description,
            created_at=now,
        )
        self.repo.create_expense(expense)
        log.info(
            "expense_created",
            colocation_id=colocation_id,
            expense_id=expense_id,
            actor_id=actor_id,
            amount=cents_to_str(amount_cents, currency=self.currency),
            split_type=expense.split_type.value,
            participants=len(splits),
        )
        self._balances_changed(colocation_id)
        return expense

    def get_expense(self, colocation_id: str, actor_id: str, expense_id: str) -> Expense:
        self._ensure_member(colocation_id, actor_id)
        expense = self.repo.get_expense(expense_id=expense_id)
        if expense is None or expense.colocation_id != colocation_id:
            raise NotFound("expense not found")
        return expense

    def list_expenses(
        self,
        colocation_id: str,
        actor_id: str,
        *,
        paid_by: Optional[str] = None,
        category_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Tuple[List[Expense], int, int, int]:
        self._ensure_member(colocation_id, actor_id)
        page, page_size = self._normalize_page(page, page_size)
        rows, total = self.repo.list_expenses(
            colocation_id=colocation_id,
            paid_by=paid_by,
            category_id=category_id,
            start=start,
            end=end,
            page=page,
            page_size=page_size,
        )
        return rows, total, page, page_size

    def update_expense(
        self,
        colocation_id: str,
        actor_id: str,
        expense_id: str,
        *,
        title: Optional[str] = None,
        amount_cents: Optional[int] = None,
        policy: Optional[SplitPolicy] = None,
        participants: Optional[Sequence[str]] = None,
        category_id=_UNSET,
        expense_date: Optional[datetime] = None,
        description=_UNSET,
    ) -> Expense:
        """
        Only the payer may edit. Splits are regenerated whenever the amount,
        the policy or the participants change; the store writes the expense
        and its new splits atomically.
        """
        self._ensure_member(colocation_id, actor_id)
        if title is not None and not title.strip():
            raise ModelValidationError("title must be a non-empty string")
        members = self.repo.list_members(colocation_id=colocation_id)

        def apply(current: Expense) -> Expense:
            if current.payer_id != actor_id:
                raise Forbidden("only the payer can modify this expense")

            new_amount = current.amount_cents if amount_cents is None else amount_cents
            new_policy = policy
            if new_policy is None and (amount_cents is not None or participants is not None):
                if current.split_type is SplitType.EQUAL:
                    new_policy = EqualSplit()
                elif new_amount == current.amount_cents and current.split_type is SplitType.CUSTOM:
                    new_policy = CustomSplit({s.member_id: s.share_cents for s in current.splits})
                else:
                    raise InvalidSplit(
                        f"splits are required to change a {current.split_type.value} expense"
                    )

            splits = current.splits
            split_type = current.split_type
            if new_policy is not None:
                keep = participants
                if keep is None and isinstance(new_policy, EqualSplit):
                    keep = [s.member_id for s in current.splits]
                splits = self._materialize(current.id, new_amount, new_policy, keep, members)
                split_type = new_policy.split_type

            return replace(
                current,
                amount_cents=new_amount,
                split_type=split_type,
                splits=splits,
                title=title.strip() if title is not None else current.title,
                category_id=current.category_id if category_id is _UNSET else category_id,
                description=current.description if description is _UNSET else description,
                expense_date=expense_date or current.expense_date,
            )

        updated = self.repo.update_expense(colocation_id=colocation_id, expense_id=expense_id, apply=apply)
        log.info("expense_updated", colocation_id=colocation_id, expense_id=expense_id, actor_id=actor_id)
        self._balances_changed(colocation_id)
        return updated

    def delete_expense(self, colocation_id: str, actor_id: str, expense_id: str) -> None:
        self._ensure_member(colocation_id, actor_id)

        def check(current: Expense) -> None:
            if current.payer_id != actor_id:
                raise Forbidden("only the payer can delete this expense")

        self.repo.delete_expense(colocation_id=colocation_id, expense_id=expense_id, check=check)
        log.info("expense_deleted", colocation_id=colocation_id, expense_id=expense_id, actor_id=actor_id)
        self._balances_changed(colocation_id)

    # -- payments ------------------------------------------------------------

    def create_payment(
        self,
        colocation_id: str,
        actor_id: str,
        *,
        to_member_id: str,
        amount_cents: int,
        note: Optional[str] = None,
    ) -> Payment:
        self._ensure_member(colocation_id, actor_id)
        payment = create_payment(
            payment_id=self._new_id(),
            colocation_id=colocation_id,
            from_member_id=actor_id,
            to_member_id=to_member_id,
            amount_cents=amount_cents,
            now=self._clock(),
            note=note,
        )
        if not self.repo.is_member(colocation_id=colocation_id, member_id=to_member_id):
            raise ModelValidationError("the recipient is not a member of this colocation")

        self.repo.create_payment(payment)
        log.info(
            "payment_created",
            colocation_id=colocation_id,
            payment_id=payment.id,
            actor_id=actor_id,
            to_member_id=to_member_id,
            amount=cents_to_str(amount_cents, currency=self.currency),
        )
        return payment

    def get_payment(self, colocation_id: str, actor_id: str, payment_id: str) -> Payment:
        self._ensure_member(colocation_id, actor_id)
        payment = self.repo.get_payment(payment_id=payment_id)
        if payment is None or payment.colocation_id != colocation_id:
            raise NotFound("payment not found")
        return payment

    def list_payments(
        self,
        colocation_id: str,
        actor_id: str,
        *,
        status: Optional[PaymentStatus] = None,
        from_member_id: Optional[str] = None,
        to_member_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Tuple[List[Payment], int, int, int]:
        self._ensure_member(colocation_id, actor_id)
        page, page_size = self._normalize_page(page, page_size)
        rows, total = self.repo.list_payments(
            colocation_id=colocation_id,
            status=status,
            from_member_id=from_member_id,
            to_member_id=to_member_id,
            page=page,
            page_size=page_size,
        )
        return rows, total, page, page_size

    def _transition(self, colocation_id: str, actor_id: str, payment_id: str, step, event: str) -> Payment:
        self._ensure_member(colocation_id, actor_id)
        now = self._clock()
        payment = self.repo.transition_payment(
            colocation_id=colocation_id,
            payment_id=payment_id,
            apply=lambda current: step(current, actor_id, now),
        )
        log.info(event, colocation_id=colocation_id, payment_id=payment_id, actor_id=actor_id)
        return payment

    def confirm_payment(self, colocation_id: str, actor_id: str, payment_id: str) -> Payment:
        payment = self._transition(colocation_id, actor_id, payment_id, confirm_payment, "payment_confirmed")
        self._balances_changed(colocation_id)
        return payment

    def reject_payment(self, colocation_id: str, actor_id: str, payment_id: str) -> Payment:
        return self._transition(colocation_id, actor_id, payment_id, reject_payment, "payment_rejected")

    def cancel_payment(self, colocation_id: str, actor_id: str, payment_id: str) -> Payment:
        return self._transition(colocation_id, actor_id, payment_id, cancel_payment, "payment_cancelled")
