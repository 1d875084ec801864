# backend/coloc_ledger/domain/simplifier.py
from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Mapping, Tuple, Union

from coloc_ledger.domain.balances import check_zero_sum
from coloc_ledger.domain.models import BalanceVector, SimplifiedDebt

Balances = Union[BalanceVector, Mapping[str, int]]


def _nets(balances: Balances) -> Dict[str, int]:
    if isinstance(balances, BalanceVector):
        return balances.nets()
    nets: Dict[str, int] = {}
    for member_id, cents in balances.items():
        if isinstance(cents, bool) or not isinstance(cents, int):
            raise TypeError(f"balance for {member_id} must be int cents")
        nets[member_id] = cents
    return nets


def simplify(balances: Balances) -> List[SimplifiedDebt]:
    """
    Reduce net balances to a short list of settling transfers.

    Greedy extremal matching: the largest creditor is always paid by the
    largest debtor, equal amounts resolved by ascending member id. Produces
    at most N-1 transfers for N members with a non-zero balance. This is the
    standard approximation; the true minimum transfer count is NP-hard.

    Raises UnbalancedLedger if the balances do not sum to exactly zero.
    """
    nets = _nets(balances)
    check_zero_sum(nets)

    # heapq is a min-heap: negate amounts, ids sort ascending on ties
    creditors: List[Tuple[int, str]] = []
    debtors: List[Tuple[int, str]] = []
    for member_id, cents in nets.items():
        if cents > 0:
            creditors.append((-cents, member_id))
        elif cents < 0:
            debtors.append((cents, member_id))
    heapq.heapify(creditors)
    heapq.heapify(debtors)

    debts: List[SimplifiedDebt] = []
    while creditors and debtors:
        credit_neg, creditor = heapq.heappop(creditors)
        debt_neg, debtor = heapq.heappop(debtors)
        credit, debt = -credit_neg, -debt_neg

        transfer = min(credit, debt)
        debts.append(SimplifiedDebt(from_member_id=debtor, to_member_id=creditor, amount_cents=transfer))

        if credit > transfer:
            heapq.heappush(creditors, (-(credit - transfer), creditor))
        if debt > transfer:
            heapq.heappush(debtors, (-(debt - transfer), debtor))

    # both heaps drain together when the input is zero-sum
    if creditors or debtors:
        raise RuntimeError("internal error: unmatched balances left after simplification")

    return debts


def apply_transfers(balances: Balances, debts: Iterable[SimplifiedDebt]) -> Dict[str, int]:
    """
    Return the nets left after every debt is paid (debtor -> creditor).
    A correct settlement leaves every member at zero.
    """
    nets = _nets(balances)
    for d in debts:
        nets[d.from_member_id] = nets.get(d.from_member_id, 0) + d.amount_cents
        nets[d.to_member_id] = nets.get(d.to_member_id, 0) - d.amount_cents
    return nets
