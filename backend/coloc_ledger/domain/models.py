# backend/coloc_ledger/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union


class ModelValidationError(ValueError):
    """Raised when ledger records fail basic validation."""


class InvalidSplit(ModelValidationError):
    """Raised when an expense split policy or materialized splits are invalid."""


class Forbidden(ValueError):
    """Raised when the acting member may not perform an operation."""


class NotFound(LookupError):
    """Raised when an expense, payment or colocation does not exist for the caller."""


def _require_id(value: object, what: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ModelValidationError(f"{what} must be a non-empty string")


def _is_cents(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SplitType(str, Enum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"


@dataclass(frozen=True)
class EqualSplit:
    split_type = SplitType.EQUAL


@dataclass(frozen=True)
class PercentageSplit:
    """
    weights maps member_id -> percentage (int or Decimal, at most 2 decimals).
    """
    weights: Mapping[str, Union[int, Decimal]]
    split_type = SplitType.PERCENTAGE


@dataclass(frozen=True)
class CustomSplit:
    """
    amounts maps member_id -> explicit share in cents.
    """
    amounts: Mapping[str, int]
    split_type = SplitType.CUSTOM


SplitPolicy = Union[EqualSplit, PercentageSplit, CustomSplit]


@dataclass(frozen=True)
class ExpenseSplit:
    expense_id: str
    member_id: str
    share_cents: int

    def __post_init__(self) -> None:
        _require_id(self.expense_id, "ExpenseSplit.expense_id")
        _require_id(self.member_id, "ExpenseSplit.member_id")
        if not _is_cents(self.share_cents) or self.share_cents < 0:
            raise InvalidSplit("ExpenseSplit.share_cents must be an int >= 0")


@dataclass(frozen=True)
class Expense:
    """
    An expense paid by one member and owed by the members in splits.

    Invariant: the shares of splits sum exactly to amount_cents.
    """
    id: str
    colocation_id: str
    payer_id: str
    amount_cents: int
    split_type: SplitType
    splits: Tuple[ExpenseSplit, ...]
    expense_date: datetime
    title: str = ""
    category_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _require_id(self.id, "Expense.id")
        _require_id(self.colocation_id, "Expense.colocation_id")
        _require_id(self.payer_id, "Expense.payer_id")
        if not _is_cents(self.amount_cents) or self.amount_cents <= 0:
            raise InvalidSplit("Expense.amount_cents must be an int > 0")
        if not isinstance(self.split_type, SplitType):
            raise ModelValidationError("Expense.split_type must be a SplitType")
        if not isinstance(self.splits, tuple) or not self.splits:
            raise InvalidSplit("Expense.splits must be a non-empty tuple")

        seen = set()
        for s in self.splits:
            if s.expense_id != self.id:
                raise InvalidSplit(f"split for member {s.member_id} belongs to another expense")
            if s.member_id in seen:
                raise InvalidSplit(f"duplicate split for member {s.member_id}")
            seen.add(s.member_id)

        total = sum(s.share_cents for s in self.splits)
        if total != self.amount_cents:
            raise InvalidSplit(
                f"splits sum to {total} but expense amount is {self.amount_cents}"
            )

    def share_of(self, member_id: str) -> int:
        for s in self.splits:
            if s.member_id == member_id:
                return s.share_cents
        return 0


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


@dataclass(frozen=True)
class Payment:
    """
    A reimbursement declared by from_member_id towards to_member_id.
    Status only changes through the reconciliation functions in payments.py.
    """
    id: str
    colocation_id: str
    from_member_id: str
    to_member_id: str
    amount_cents: int
    status: PaymentStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    note: Optional[str] = None

    def __post_init__(self) -> None:
        _require_id(self.id, "Payment.id")
        _require_id(self.colocation_id, "Payment.colocation_id")
        _require_id(self.from_member_id, "Payment.from_member_id")
        _require_id(self.to_member_id, "Payment.to_member_id")
        if not _is_cents(self.amount_cents):
            raise ModelValidationError("Payment.amount_cents must be an int")
        if not isinstance(self.status, PaymentStatus):
            raise ModelValidationError("Payment.status must be a PaymentStatus")

    def with_status(self, status: PaymentStatus, resolved_at: datetime) -> "Payment":
        return replace(self, status=status, resolved_at=resolved_at)


@dataclass(frozen=True)
class MemberBalance:
    member_id: str
    total_paid_cents: int
    total_owed_cents: int
    net_balance_cents: int


@dataclass(frozen=True)
class BalanceVector:
    """
    Per-member balances for one colocation, ordered by net balance
    descending then member id.
    """
    entries: Tuple[MemberBalance, ...] = ()

    def __iter__(self) -> Iterator[MemberBalance]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, member_id: object) -> bool:
        return any(e.member_id == member_id for e in self.entries)

    def get(self, member_id: str) -> Optional[MemberBalance]:
        for e in self.entries:
            if e.member_id == member_id:
                return e
        return None

    def nets(self) -> Dict[str, int]:
        return {e.member_id: e.net_balance_cents for e in self.entries}

    def total(self) -> int:
        return sum(e.net_balance_cents for e in self.entries)


@dataclass(frozen=True)
class Debt:
    """Raw pairwise obligation derived from splits (before payments and netting)."""
    from_member_id: str
    to_member_id: str
    amount_cents: int


@dataclass(frozen=True)
class SimplifiedDebt:
    from_member_id: str
    to_member_id: str
    amount_cents: int


@dataclass(frozen=True)
class BalanceHistoryEntry:
    date: datetime
    event_type: str  # "expense" | "payment"
    event_id: str
    description: str
    amount_cents: int
    running_balance_cents: int


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    One consistent read of a colocation's ledger.
    confirmed_payments only ever holds payments in the confirmed state.
    """
    colocation_id: str
    members: Tuple[str, ...]
    expenses: Tuple[Expense, ...] = ()
    confirmed_payments: Tuple[Payment, ...] = ()
