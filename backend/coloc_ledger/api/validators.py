from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Tuple

from coloc_ledger.domain.models import (
    CustomSplit,
    EqualSplit,
    PaymentStatus,
    PercentageSplit,
    SplitPolicy,
    SplitType,
)
from coloc_ledger.domain.money import MAX_AMOUNT_CENTS, MoneyError, parse_amount_to_cents

MEMBER_HEADER = "X-Member-Id"


class ApiValidationError(ValueError):
    """Raised when request payload validation fails."""


class MissingIdentity(ValueError):
    """Raised when the identity layer did not supply an acting member."""


def parse_actor_id(headers: Mapping[str, str]) -> str:
    actor = headers.get(MEMBER_HEADER, "")
    if not isinstance(actor, str) or not actor.strip():
        raise MissingIdentity(f"Missing '{MEMBER_HEADER}' header.")
    return actor.strip()


def require_str(data: Mapping[str, object], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ApiValidationError(f"'{field}' must be a non-empty string.")
    return value.strip()


def optional_str(data: Mapping[str, object], field: str) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiValidationError(f"'{field}' must be a string.")
    return value.strip() or None


def _bounded(cents: int) -> int:
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise MoneyError("amount exceeds safety limit")
    return cents


def parse_amount(raw: object, *, field: str = "amount") -> int:
    """
    Amounts are integer minor units (1234 == 12.34) or a decimal string ("12.34").
    JSON floats are refused so no binary fraction ever reaches the ledger.
    """
    if isinstance(raw, bool):
        raise ApiValidationError(f"'{field}' must be integer cents or a decimal string.")
    if isinstance(raw, int):
        cents = _bounded(raw)
    elif isinstance(raw, str):
        cents = parse_amount_to_cents(raw)
    else:
        raise ApiValidationError(f"'{field}' must be integer cents or a decimal string.")
    if cents <= 0:
        raise ApiValidationError(f"'{field}' must be > 0.")
    return cents


def _parse_percentage(raw: object, idx: int) -> Decimal:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ApiValidationError(f"Split at index {idx} must include a numeric 'percentage'.")
    try:
        # str() first: 33.33 must become Decimal("33.33"), not its binary expansion
        value = Decimal(str(raw).strip())
    except InvalidOperation as e:
        raise ApiValidationError(f"Split at index {idx} has an invalid 'percentage'.") from e
    if not value.is_finite():
        raise ApiValidationError(f"Split at index {idx} has an invalid 'percentage'.")
    return value


def parse_split_type(raw: object) -> SplitType:
    try:
        return SplitType(raw)
    except ValueError as e:
        allowed = ", ".join(t.value for t in SplitType)
        raise ApiValidationError(f"'split_type' must be one of: {allowed}.") from e


def parse_split_policy(
    split_type: SplitType, raw_splits: object
) -> Tuple[SplitPolicy, Optional[List[str]]]:
    """
    Build the split policy and participant list from the request 'splits'.

    equal:       splits optional, [{user_id}]; omitted means every member
    percentage:  [{user_id, percentage}]
    custom:      [{user_id, amount}]
    """
    if raw_splits is None:
        if split_type is SplitType.EQUAL:
            return EqualSplit(), None
        raise ApiValidationError(f"'splits' are required for a {split_type.value} split.")

    if not isinstance(raw_splits, list) or not raw_splits:
        raise ApiValidationError("'splits' must be a non-empty list.")

    participants: List[str] = []
    values: Dict[str, object] = {}
    for idx, raw in enumerate(raw_splits):
        if not isinstance(raw, dict):
            raise ApiValidationError(f"Split at index {idx} must be an object.")
        user_id = raw.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ApiValidationError(f"Split at index {idx} must include a non-empty 'user_id'.")
        user_id = user_id.strip()
        if user_id in values:
            raise ApiValidationError(f"User {user_id} appears more than once in 'splits'.")
        participants.append(user_id)

        if split_type is SplitType.PERCENTAGE:
            values[user_id] = _parse_percentage(raw.get("percentage"), idx)
        elif split_type is SplitType.CUSTOM:
            values[user_id] = _parse_custom_share(raw.get("amount"), idx)
        else:
            values[user_id] = None

    if split_type is SplitType.PERCENTAGE:
        return PercentageSplit(weights=values), participants
    if split_type is SplitType.CUSTOM:
        return CustomSplit(amounts=values), participants
    return EqualSplit(), participants


def _parse_custom_share(raw: object, idx: int) -> int:
    # custom shares may be zero, unlike expense and payment totals
    if isinstance(raw, bool):
        raise ApiValidationError(f"Split at index {idx} must include 'amount' as integer cents or a decimal string.")
    if isinstance(raw, int):
        if raw < 0:
            raise ApiValidationError(f"Split at index {idx} must have 'amount' >= 0.")
        return _bounded(raw)
    if isinstance(raw, str):
        return parse_amount_to_cents(raw)
    raise ApiValidationError(f"Split at index {idx} must include 'amount' as integer cents or a decimal string.")


def parse_datetime(raw: object, *, field: str) -> Optional[datetime]:
    """
    Accept "2024-03-01" or a full ISO-8601 timestamp; naive values are UTC.
    """
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ApiValidationError(f"'{field}' must be an ISO-8601 date or datetime string.")
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError as e:
        raise ApiValidationError(f"'{field}' must be an ISO-8601 date or datetime string.") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_status(raw: Optional[str]) -> Optional[PaymentStatus]:
    if raw is None or raw == "":
        return None
    try:
        return PaymentStatus(raw)
    except ValueError as e:
        allowed = ", ".join(s.value for s in PaymentStatus)
        raise ApiValidationError(f"'status' must be one of: {allowed}.") from e


def parse_positive_int(raw: Optional[str], *, field: str, default: Optional[int]) -> Optional[int]:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ApiValidationError(f"'{field}' must be an integer.") from e
    if value < 1:
        raise ApiValidationError(f"'{field}' must be >= 1.")
    return value
