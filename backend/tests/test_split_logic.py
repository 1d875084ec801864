# backend/tests/test_split_logic.py
import random
from decimal import Decimal

import pytest

from coloc_ledger.domain.models import CustomSplit, EqualSplit, InvalidSplit, PercentageSplit
from coloc_ledger.domain.split_logic import (
    allocate,
    split_custom,
    split_equal,
    split_percentage,
)


def test_equal_split_no_remainder():
    alloc = split_equal(3000, ["a", "b", "c"])
    assert alloc.amounts_cents == (1000, 1000, 1000)
    assert sum(alloc.amounts_cents) == 3000


def test_remainder_goes_to_lowest_ids_first():
    # 103 cents split across 4 => base 25, remainder 3
    alloc = split_equal(103, ["a", "b", "c", "d"])
    assert alloc.amounts_cents == (26, 26, 26, 25)


def test_remainder_order_does_not_depend_on_caller_order():
    alloc = split_equal(101, ["d", "c", "b", "a"])
    # output keeps caller order, but the extra cent still goes to "a"
    assert alloc.participants == ("d", "c", "b", "a")
    assert alloc.amounts_cents == (25, 25, 25, 26)
    assert alloc.as_dict()["a"] == 26


def test_single_participant_gets_all():
    alloc = split_equal(999, ["solo"])
    assert alloc.amounts_cents == (999,)


def test_percentage_split_exact():
    alloc = split_percentage(1000, {"a": 33, "b": 33, "c": 34})
    assert alloc.amounts_cents == (330, 330, 340)


def test_percentage_split_largest_remainder():
    # floors are 33, 33, 33; c has the largest fractional part
    alloc = split_percentage(
        100, {"a": Decimal("33.33"), "b": Decimal("33.33"), "c": Decimal("33.34")}
    )
    assert alloc.amounts_cents == (33, 33, 34)


def test_percentage_split_ties_go_to_lowest_id():
    alloc = split_percentage(1, {"b": 50, "a": 50})
    assert alloc.as_dict() == {"a": 1, "b": 0}


def test_percentage_split_uses_given_participant_order():
    alloc = split_percentage(1000, {"a": 25, "b": 75}, ["b", "a"])
    assert alloc.participants == ("b", "a")
    assert alloc.amounts_cents == (750, 250)


@pytest.mark.parametrize(
    "weights",
    [
        {"a": 50, "b": 49},
        {"a": 50, "b": 51},
        {"a": Decimal("33.333"), "b": Decimal("66.667")},
        {"a": -10, "b": 110},
        {"a": 50.0, "b": 50.0},
        {"a": True, "b": 99},
        {"a": Decimal("NaN"), "b": 100},
        {},
    ],
)
def test_percentage_split_invalid_weights(weights):
    with pytest.raises(InvalidSplit):
        split_percentage(1000, weights)


def test_percentage_split_huge_weight_is_invalid_split():
    with pytest.raises(InvalidSplit):
        split_percentage(1000, {"a": Decimal("1e999999999"), "b": 0})
    with pytest.raises(InvalidSplit):
        split_percentage(1000, {"a": Decimal("sNaN"), "b": 100})


def test_percentage_participants_must_match_weights():
    with pytest.raises(InvalidSplit):
        split_percentage(1000, {"a": 50, "b": 50}, ["a", "c"])


def test_custom_split_exact():
    alloc = split_custom(1000, {"a": 700, "b": 300, "c": 0})
    assert alloc.amounts_cents == (700, 300, 0)


def test_custom_split_must_sum_to_total():
    with pytest.raises(InvalidSplit):
        split_custom(1000, {"a": 500, "b": 499})


def test_custom_split_rejects_negative_and_non_int():
    with pytest.raises(InvalidSplit):
        split_custom(1000, {"a": 1100, "b": -100})
    with pytest.raises(InvalidSplit):
        split_custom(1000, {"a": 500.0, "b": 500})


@pytest.mark.parametrize("total", [0, -1, "100", 10.0, True])
def test_invalid_total_raises(total):
    with pytest.raises(InvalidSplit):
        split_equal(total, ["a", "b"])  # type: ignore[arg-type]


def test_empty_participants_raises():
    with pytest.raises(InvalidSplit):
        split_equal(100, [])
    with pytest.raises(InvalidSplit):
        allocate(100, EqualSplit(), None)


def test_blank_or_duplicate_participant_raises():
    with pytest.raises(InvalidSplit):
        split_equal(100, ["a", "  "])
    with pytest.raises(InvalidSplit):
        split_equal(100, ["a", "a"])
    with pytest.raises(InvalidSplit):
        split_equal(100, ["a", 123])  # type: ignore[list-item]


def test_allocate_dispatches_on_policy():
    assert allocate(300, EqualSplit(), ["a", "b", "c"]).amounts_cents == (100, 100, 100)
    assert allocate(1000, PercentageSplit({"a": 10, "b": 90})).as_dict() == {"a": 100, "b": 900}
    assert allocate(1000, CustomSplit({"a": 1, "b": 999})).as_dict() == {"a": 1, "b": 999}


def test_allocate_rejects_unknown_policy():
    with pytest.raises(InvalidSplit):
        allocate(100, object(), ["a"])  # type: ignore[arg-type]


def test_to_splits_carries_expense_id():
    splits = split_equal(101, ["a", "b"]).to_splits("e1")
    assert [(s.expense_id, s.member_id, s.share_cents) for s in splits] == [("e1", "a", 51), ("e1", "b", 50)]


def test_equal_split_exactness_over_random_inputs():
    rng = random.Random(1234)
    for _ in range(500):
        n = rng.randint(1, 12)
        members = [f"m{i:02d}" for i in range(n)]
        rng.shuffle(members)
        total = rng.randint(1, 1_000_000)

        alloc = split_equal(total, members)
        assert sum(alloc.amounts_cents) == total
        assert max(alloc.amounts_cents) - min(alloc.amounts_cents) <= 1


def test_percentage_split_exactness_over_random_inputs():
    rng = random.Random(99)
    for _ in range(500):
        n = rng.randint(1, 8)
        cuts = sorted(rng.randint(0, 10_000) for _ in range(n - 1))
        bps = [b - a for a, b in zip([0] + cuts, cuts + [10_000])]
        weights = {f"m{i}": Decimal(bp) / 100 for i, bp in enumerate(bps)}
        total = rng.randint(1, 1_000_000)

        alloc = split_percentage(total, weights)
        assert sum(alloc.amounts_cents) == total
        for pid, cents in alloc.as_dict().items():
            exact = Decimal(total) * weights[pid] / 100
            # largest remainder never moves a share more than one cent off its exact value
            assert abs(Decimal(cents) - exact) < 1
