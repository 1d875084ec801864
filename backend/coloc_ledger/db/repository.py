from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import psycopg
import structlog

from coloc_ledger.domain.models import (
    Expense,
    ExpenseSplit,
    LedgerSnapshot,
    NotFound,
    Payment,
    PaymentStatus,
    SplitType,
)

log = structlog.get_logger(__name__)

_EXPENSE_COLUMNS = """
    id::text, colocation_id::text, paid_by::text, amount_cents, split_type,
    expense_date, title, category_id::text, description, created_at
"""

_PAYMENT_COLUMNS = """
    id::text, colocation_id::text, from_user_id::text, to_user_id::text,
    amount_cents, status, created_at, resolved_at, note
"""


def is_uuid(value: object) -> bool:
    try:
        UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def _payment_from_row(row) -> Payment:
    return Payment(
        id=row[0],
        colocation_id=row[1],
        from_member_id=row[2],
        to_member_id=row[3],
        amount_cents=int(row[4]),
        status=PaymentStatus(row[5]),
        created_at=row[6],
        resolved_at=row[7],
        note=row[8],
    )


def _expense_from_row(row, splits: Sequence[Tuple[str, int]]) -> Expense:
    expense_id = row[0]
    return Expense(
        id=expense_id,
        colocation_id=row[1],
        payer_id=row[2],
        amount_cents=int(row[3]),
        split_type=SplitType(row[4]),
        splits=tuple(
            ExpenseSplit(expense_id=expense_id, member_id=member_id, share_cents=int(share))
            for member_id, share in splits
        ),
        expense_date=row[5],
        title=row[6],
        category_id=row[7],
        description=row[8],
        created_at=row[9],
    )


class LedgerRepository:
    """
    PostgreSQL ledger store.

    Balance reads go through load_snapshot() (one REPEATABLE READ, read-only
    transaction). Every write takes a transaction-scoped advisory lock on the
    colocation first, so mutations of one colocation are serialized while
    different colocations never wait on each other.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url.strip()

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)

    def _connect(self):
        if not self.enabled:
            raise RuntimeError("DATABASE_URL not configured")
        return psycopg.connect(self.database_url)

    @staticmethod
    def _lock_colocation(cur, colocation_id: str) -> None:
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (colocation_id,))

    # -- members -----------------------------------------------------------

    def is_member(self, *, colocation_id: str, member_id: str) -> bool:
        # ids are UUID columns; anything else can never match a row
        if not (is_uuid(colocation_id) and is_uuid(member_id)):
            return False
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT EXISTS(
                    SELECT 1 FROM colocation_members
                    WHERE colocation_id = %s AND user_id = %s
                )
                """,
                (colocation_id, member_id),
            )
            return bool(cur.fetchone()[0])

    def list_members(self, *, colocation_id: str) -> List[str]:
        if not is_uuid(colocation_id):
            return []
        with self._connect() as conn, conn.cursor() as cur:
            return self._members(cur, colocation_id)

    @staticmethod
    def _members(cur, colocation_id: str) -> List[str]:
        cur.execute(
            """
            SELECT user_id::text
            FROM colocation_members
            WHERE colocation_id = %s
            ORDER BY joined_at ASC, user_id ASC
            """,
            (colocation_id,),
        )
        return [row[0] for row in cur.fetchall()]

    # -- snapshot ------------------------------------------------------------

    def load_snapshot(self, *, colocation_id: str) -> LedgerSnapshot:
        try:
            return self._load_snapshot_once(colocation_id)
        except psycopg.OperationalError:
            # serialization failures and dropped connections; the read is side-effect free
            log.warning("snapshot_read_retry", colocation_id=colocation_id)
            return self._load_snapshot_once(colocation_id)

    def _load_snapshot_once(self, colocation_id: str) -> LedgerSnapshot:
        with self._connect() as conn:
            conn.isolation_level = psycopg.IsolationLevel.REPEATABLE_READ
            conn.read_only = True
            with conn.transaction(), conn.cursor() as cur:
                members = self._members(cur, colocation_id)

                cur.execute(
                    f"""
                    SELECT {_EXPENSE_COLUMNS}
                    FROM expenses
                    WHERE colocation_id = %s
                    ORDER BY expense_date ASC, id ASC
                    """,
                    (colocation_id,),
                )
                expense_rows = cur.fetchall()

                cur.execute(
                    """
                    SELECT es.expense_id::text, es.user_id::text, es.share_cents
                    FROM expense_splits es
                    JOIN expenses e ON e.id = es.expense_id
                    WHERE e.colocation_id = %s
                    ORDER BY es.expense_id, es.position ASC
                    """,
                    (colocation_id,),
                )
                splits_by_expense: Dict[str, List[Tuple[str, int]]] = {}
                for expense_id, member_id, share in cur.fetchall():
                    splits_by_expense.setdefault(expense_id, []).append((member_id, share))

                cur.execute(
                    f"""
                    SELECT {_PAYMENT_COLUMNS}
                    FROM payments
                    WHERE colocation_id = %s AND status = 'confirmed'
                    ORDER BY created_at ASC, id ASC
                    """,
                    (colocation_id,),
                )
                payment_rows = cur.fetchall()

        return LedgerSnapshot(
            colocation_id=colocation_id,
            members=tuple(members),
            expenses=tuple(_expense_from_row(r, splits_by_expense.get(r[0], [])) for r in expense_rows),
            confirmed_payments=tuple(_payment_from_row(r) for r in payment_rows),
        )

    # -- expenses ------------------------------------------------------------

    def _fetch_expense(self, cur, expense_id: str, *, for_update: bool = False) -> Optional[Expense]:
        if not is_uuid(expense_id):
            return None
        lock = " FOR UPDATE" if for_update else ""
        cur.execute(f"SELECT {_EXPENSE_COLUMNS} FROM expenses WHERE id = %s{lock}", (expense_id,))
        row = cur.fetchone()
        if row is None:
            return None
        cur.execute(
            """
            SELECT user_id::text, share_cents
            FROM expense_splits
            WHERE expense_id = %s
            ORDER BY position ASC
            """,
            (expense_id,),
        )
        return _expense_from_row(row, cur.fetchall())

    def get_expense(self, *, expense_id: str) -> Optional[Expense]:
        if not is_uuid(expense_id):
            return None
        with self._connect() as conn, conn.cursor() as cur:
            return self._fetch_expense(cur, expense_id)

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
        where = """
            WHERE colocation_id = %(coloc)s
              AND (%(paid_by)s::text IS NULL OR paid_by::text = %(paid_by)s)
              AND (%(category)s::text IS NULL OR category_id::text = %(category)s)
              AND (%(start)s::timestamptz IS NULL OR expense_date >= %(start)s)
              AND (%(end)s::timestamptz IS NULL OR expense_date <= %(end)s)
        """
        params = {
            "coloc": colocation_id,
            "paid_by": paid_by,
            "category": category_id,
            "start": start,
            "end": end,
            "limit": page_size,
            "offset": (page - 1) * page_size,
        }
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM expenses {where}", params)
            total = int(cur.fetchone()[0])
            cur.execute(
                f"""
                SELECT id::text FROM expenses {where}
                ORDER BY expense_date DESC, id DESC
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                params,
            )
            ids = [row[0] for row in cur.fetchall()]
            expenses = [self._fetch_expense(cur, expense_id) for expense_id in ids]
        return [e for e in expenses if e is not None], total

    @staticmethod
    def _insert_splits(cur, expense: Expense) -> None:
        for position, split in enumerate(expense.splits):
            cur.execute(
                """
                INSERT INTO expense_splits (expense_id, user_id, share_cents, position)
                VALUES (%s, %s, %s, %s)
                """,
                (expense.id, split.member_id, split.share_cents, position),
            )

    def create_expense(self, expense: Expense) -> None:
        with self._connect() as conn:
            with conn.transaction(), conn.cursor() as cur:
                self._lock_colocation(cur, expense.colocation_id)
                cur.execute(
                    """
                    INSERT INTO expenses (
                        id, colocation_id, paid_by, amount_cents, split_type,
                        expense_date, title, category_id, description, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        expense.id,
                        expense.colocation_id,
                        expense.payer_id,
                        expense.amount_cents,
                        expense.split_type.value,
                        expense.expense_date,
                        expense.title,
                        expense.category_id,
                        expense.description,
                        expense.created_at,
                    ),
                )
                self._insert_splits(cur, expense)

    def update_expense(
        self,
        *,
        colocation_id: str,
        expense_id: str,
        apply: Callable[[Expense], Expense],
    ) -> Expense:
        """
        Read-modify-write one expense under the colocation lock. The expense
        row and all of its splits are replaced in the same transaction.
        """
        with self._connect() as conn:
            with conn.transaction(), conn.cursor() as cur:
                self._lock_colocation(cur, colocation_id)
                current = self._fetch_expense(cur, expense_id, for_update=True)
                if current is None or current.colocation_id != colocation_id:
                    raise NotFound("expense not found")

                updated = apply(current)
                cur.execute(
                    """
                    UPDATE expenses
                    SET amount_cents = %s, split_type = %s, expense_date = %s,
                        title = %s, category_id = %s, description = %s
                    WHERE id = %s
                    """,
                    (
                        updated.amount_cents,
                        updated.split_type.value,
                        updated.expense_date,
                        updated.title,
                        updated.category_id,
                        updated.description,
                        expense_id,
                    ),
                )
                cur.execute("DELETE FROM expense_splits WHERE expense_id = %s", (expense_id,))
                self._insert_splits(cur, updated)
                return updated

    def delete_expense(
        self,
        *,
        colocation_id: str,
        expense_id: str,
        check: Callable[[Expense], None],
    ) -> None:
        with self._connect() as conn:
            with conn.transaction(), conn.cursor() as cur:
                self._lock_colocation(cur, colocation_id)
                current = self._fetch_expense(cur, expense_id, for_update=True)
                if current is None or current.colocation_id != colocation_id:
                    raise NotFound("expense not found")
                check(current)
                cur.execute("DELETE FROM expense_splits WHERE expense_id = %s", (expense_id,))
                cur.execute("DELETE FROM expenses WHERE id = %s", (expense_id,))

    # -- payments ------------------------------------------------------------

    def get_payment(self, *, payment_id: str) -> Optional[Payment]:
        if not is_uuid(payment_id):
            return None
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = %s", (payment_id,))
            row = cur.fetchone()
            return _payment_from_row(row) if row else None

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
        where = """
            WHERE colocation_id = %(coloc)s
              AND (%(status)s::text IS NULL OR status = %(status)s)
              AND (%(from)s::text IS NULL OR from_user_id::text = %(from)s)
              AND (%(to)s::text IS NULL OR to_user_id::text = %(to)s)
        """
        params = {
            "coloc": colocation_id,
            "status": status.value if status else None,
            "from": from_member_id,
            "to": to_member_id,
            "limit": page_size,
            "offset": (page - 1) * page_size,
        }
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM payments {where}", params)
            total = int(cur.fetchone()[0])
            cur.execute(
                f"""
                SELECT {_PAYMENT_COLUMNS} FROM payments {where}
                ORDER BY created_at DESC, id DESC
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                params,
            )
            return [_payment_from_row(r) for r in cur.fetchall()], total

    def create_payment(self, payment: Payment) -> None:
        with self._connect() as conn:
            with conn.transaction(), conn.cursor() as cur:
                self._lock_colocation(cur, payment.colocation_id)
                cur.execute(
                    """
                    INSERT INTO payments (
                        id, colocation_id, from_user_id, to_user_id,
                        amount_cents, status, created_at, resolved_at, note
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        payment.id,
                        payment.colocation_id,
                        payment.from_member_id,
                        payment.to_member_id,
                        payment.amount_cents,
                        payment.status.value,
                        payment.created_at,
                        payment.resolved_at,
                        payment.note,
                    ),
                )

    def transition_payment(
        self,
        *,
        colocation_id: str,
        payment_id: str,
        apply: Callable[[Payment], Payment],
    ) -> Payment:
        """
        Apply a state-machine transition under the colocation lock, so two
        concurrent transitions can never both start from pending.
        """
        with self._connect() as conn:
            with conn.transaction(), conn.cursor() as cur:
                self._lock_colocation(cur, colocation_id)
                if not is_uuid(payment_id):
                    raise NotFound("payment not found")
                cur.execute(
                    f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = %s FOR UPDATE",
                    (payment_id,),
                )
                row = cur.fetchone()
                if row is None or row[1] != colocation_id:
                    raise NotFound("payment not found")

                updated = apply(_payment_from_row(row))
                cur.execute(
                    """
                    UPDATE payments
                    SET status = %s, resolved_at = %s
                    WHERE id = %s
                    """,
                    (updated.status.value, updated.resolved_at, payment_id),
                )
                return updated
