# backend/coloc_ledger/domain/split_logic.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, DecimalException
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from coloc_ledger.domain.models import (
    CustomSplit,
    EqualSplit,
    ExpenseSplit,
    InvalidSplit,
    PercentageSplit,
    SplitPolicy,
)
from coloc_ledger.domain.money import safe_sum_cents

# Percentages are handled in basis points so every share is integer math.
_BASIS_POINTS = 10_000
_FULL_PERCENTAGE_BP = 100 * 100


@dataclass(frozen=True)
class Allocation:
    """
    Allocation result for one expense split among participants.

    amounts_cents is ordered to match the provided participants order.
    """
    total_cents: int
    participants: Tuple[str, ...]
    amounts_cents: Tuple[int, ...]

    def to_splits(self, expense_id: str) -> Tuple[ExpenseSplit, ...]:
        return tuple(
            ExpenseSplit(expense_id=expense_id, member_id=pid, share_cents=cents)
            for pid, cents in zip(self.participants, self.amounts_cents, strict=True)
        )

    def as_dict(self) -> Dict[str, int]:
        return dict(zip(self.participants, self.amounts_cents, strict=True))


def _check_total(total_cents: int) -> None:
    if isinstance(total_cents, bool) or not isinstance(total_cents, int):
        raise InvalidSplit("total must be an int number of cents")
    if total_cents <= 0:
        raise InvalidSplit("total must be > 0")


def _normalize_participants(participants: Sequence[str]) -> List[str]:
    if not isinstance(participants, (list, tuple)):
        raise InvalidSplit("participants must be a sequence")
    if len(participants) == 0:
        raise InvalidSplit("participants must contain at least 1 participant")

    norm: List[str] = []
    seen = set()
    for p in participants:
        if not isinstance(p, str) or p.strip() == "":
            raise InvalidSplit("participant ids must be non-empty strings")
        if p in seen:
            raise InvalidSplit(f"participant {p} is listed more than once")
        seen.add(p)
        norm.append(p)
    return norm


def _participants_for_mapping(
    mapping: Mapping[str, object], participants: Optional[Sequence[str]], what: str
) -> List[str]:
    if not isinstance(mapping, Mapping) or not mapping:
        raise InvalidSplit(f"{what} must be a non-empty mapping of participant -> value")
    if participants is None:
        return _normalize_participants(list(mapping.keys()))

    norm = _normalize_participants(participants)
    if set(norm) != set(mapping.keys()):
        raise InvalidSplit(f"{what} must be given for exactly the participants of the expense")
    return norm


def _distribute_remainder(
    amounts: List[int], order: Sequence[int], remainder: int
) -> None:
    # order lists participant indexes; one extra unit each, front to back
    for idx in order[:remainder]:
        amounts[idx] += 1


def split_equal(total_cents: int, participants: Sequence[str]) -> Allocation:
    """
    Split an integer number of cents evenly:

      base = total_cents // n
      remainder = total_cents % n
      the remainder goes one cent at a time to participants in ascending id order

    The result keeps the caller's participant order.
    """
    _check_total(total_cents)
    norm = _normalize_participants(participants)

    n = len(norm)
    base, remainder = divmod(total_cents, n)
    amounts = [base] * n
    by_id = sorted(range(n), key=lambda i: norm[i])
    _distribute_remainder(amounts, by_id, remainder)

    return Allocation(total_cents=total_cents, participants=tuple(norm), amounts_cents=tuple(amounts))


def _to_basis_points(pid: str, weight: object) -> int:
    if isinstance(weight, bool) or isinstance(weight, float):
        raise InvalidSplit(f"percentage for {pid} must be an int or Decimal, not {type(weight).__name__}")
    if not isinstance(weight, (int, Decimal)):
        raise InvalidSplit(f"percentage for {pid} must be a number")
    try:
        scaled = Decimal(weight) * 100
        fractional = not scaled.is_finite() or scaled != scaled.to_integral_value()
    except DecimalException as e:
        raise InvalidSplit(f"percentage for {pid} is not a valid number") from e
    if fractional:
        raise InvalidSplit(f"percentage for {pid} must have at most 2 decimal places")
    if scaled < 0:
        raise InvalidSplit(f"percentage for {pid} must be >= 0")
    return int(scaled)


def split_percentage(
    total_cents: int,
    weights: Mapping[str, object],
    participants: Optional[Sequence[str]] = None,
) -> Allocation:
    """
    Split cents by percentages using the largest-remainder method.

    Each share is floor(total * weight / 100). The cents left over go one each
    to participants with the largest fractional remainder, ties broken by
    ascending participant id.
    """
    _check_total(total_cents)
    norm = _participants_for_mapping(weights, participants, "percentages")

    bps = [_to_basis_points(pid, weights[pid]) for pid in norm]
    if sum(bps) != _FULL_PERCENTAGE_BP:
        total_pct = Decimal(sum(bps)) / 100
        raise InvalidSplit(f"percentages must sum to exactly 100 (got {total_pct})")

    amounts: List[int] = []
    fractions: List[int] = []
    for bp in bps:
        share, frac = divmod(total_cents * bp, _BASIS_POINTS)
        amounts.append(share)
        fractions.append(frac)

    leftover = total_cents - sum(amounts)
    order = sorted(range(len(norm)), key=lambda i: (-fractions[i], norm[i]))
    _distribute_remainder(amounts, order, leftover)

    return Allocation(total_cents=total_cents, participants=tuple(norm), amounts_cents=tuple(amounts))


def split_custom(
    total_cents: int,
    amounts: Mapping[str, object],
    participants: Optional[Sequence[str]] = None,
) -> Allocation:
    """
    Validate caller-supplied shares: non-negative ints summing exactly to total.
    """
    _check_total(total_cents)
    norm = _participants_for_mapping(amounts, participants, "amounts")

    shares: List[int] = []
    for pid in norm:
        cents = amounts[pid]
        if isinstance(cents, bool) or not isinstance(cents, int):
            raise InvalidSplit(f"amount for {pid} must be an int number of cents")
        if cents < 0:
            raise InvalidSplit(f"amount for {pid} must be >= 0")
        shares.append(cents)

    got = safe_sum_cents(*shares)
    if got != total_cents:
        raise InvalidSplit(f"amounts must sum to {total_cents} (got {got})")

    return Allocation(total_cents=total_cents, participants=tuple(norm), amounts_cents=tuple(shares))


def allocate(
    total_cents: int,
    policy: SplitPolicy,
    participants: Optional[Sequence[str]] = None,
) -> Allocation:
    """
    Allocate an expense total across participants under a split policy.

    EqualSplit needs participants; PercentageSplit and CustomSplit take them
    from their mapping when participants is None.
    Raises InvalidSplit with a human-readable reason on any violation.
    """
    if isinstance(policy, EqualSplit):
        if participants is None:
            raise InvalidSplit("participants must contain at least 1 participant")
        alloc = split_equal(total_cents, participants)
    elif isinstance(policy, PercentageSplit):
        alloc = split_percentage(total_cents, policy.weights, participants)
    elif isinstance(policy, CustomSplit):
        alloc = split_custom(total_cents, policy.amounts, participants)
    else:
        raise InvalidSplit(f"unknown split policy: {type(policy).__name__}")

    # Safety: ensure penny-perfect sum
    if sum(alloc.amounts_cents) != total_cents:
        raise InvalidSplit("internal error: allocation does not sum to total")
    return alloc
