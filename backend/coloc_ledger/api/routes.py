from __future__ import annotations

from typing import Any, Dict

import psycopg
import structlog
from flask import Blueprint, current_app, jsonify, request

from coloc_ledger.api.validators import (
    ApiValidationError,
    MissingIdentity,
    optional_str,
    parse_actor_id,
    parse_amount,
    parse_datetime,
    parse_positive_int,
    parse_split_policy,
    parse_split_type,
    parse_status,
    require_str,
)
from coloc_ledger.db.repository import LedgerRepository
from coloc_ledger.domain.balances import UnbalancedLedger
from coloc_ledger.domain.models import (
    Expense,
    Forbidden,
    InvalidSplit,
    ModelValidationError,
    NotFound,
    Payment,
)
from coloc_ledger.domain.money import MoneyError
from coloc_ledger.domain.payments import InvalidTransition
from coloc_ledger.services.ledger_service import LedgerService

log = structlog.get_logger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")

MEMORY_REPO_KEY = "coloc_ledger.memory_repo"


def _json_error(message: str, *, status: int = 400, code: str = "bad_request"):
    return jsonify({"error": {"code": code, "message": message}}), status


def _repo():
    database_url = current_app.config.get("DATABASE_URL", "")
    if database_url:
        return LedgerRepository(database_url)
    return current_app.extensions[MEMORY_REPO_KEY]


def _service() -> LedgerService:
    return LedgerService(
        _repo(),
        currency=current_app.config.get("LEDGER_CURRENCY", "EUR"),
        on_balances_changed=current_app.config.get("ON_BALANCES_CHANGED"),
        default_page_size=current_app.config.get("DEFAULT_PAGE_SIZE", 20),
        max_page_size=current_app.config.get("MAX_PAGE_SIZE", 100),
    )


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ApiValidationError("Request body must be a JSON object.")
    return data


def _currency() -> str:
    return current_app.config.get("LEDGER_CURRENCY", "EUR")


# -- error mapping -------------------------------------------------------------


@api_bp.errorhandler(MissingIdentity)
def _missing_identity(e):
    return _json_error(str(e), status=401, code="unauthenticated")


@api_bp.errorhandler(ApiValidationError)
def _bad_request(e):
    return _json_error(str(e), status=400, code="bad_request")


@api_bp.errorhandler(MoneyError)
def _bad_amount(e):
    return _json_error(str(e), status=400, code="invalid_amount")


@api_bp.errorhandler(InvalidSplit)
def _invalid_split(e):
    return _json_error(str(e), status=422, code="invalid_split")


@api_bp.errorhandler(ModelValidationError)
def _invalid_model(e):
    return _json_error(str(e), status=400, code="bad_request")


@api_bp.errorhandler(InvalidTransition)
def _invalid_transition(e):
    return _json_error(str(e), status=409, code="invalid_transition")


@api_bp.errorhandler(Forbidden)
def _forbidden(e):
    return _json_error(str(e), status=403, code="forbidden")


@api_bp.errorhandler(NotFound)
def _not_found(e):
    return _json_error(str(e), status=404, code="not_found")


@api_bp.errorhandler(UnbalancedLedger)
def _unbalanced(e):
    # already logged as critical by the service; fail closed without details
    return _json_error("Ledger integrity check failed.", status=500, code="ledger_unbalanced")


@api_bp.errorhandler(psycopg.Error)
def _db_error(e):
    log.exception("ledger_store_error")
    return _json_error("Ledger store error.", status=500, code="db_error")


# -- serialization ---------------------------------------------------------------


def _expense_json(expense: Expense) -> Dict[str, Any]:
    return {
        "id": expense.id,
        "colocation_id": expense.colocation_id,
        "paid_by": expense.payer_id,
        "title": expense.title,
        "description": expense.description,
        "category_id": expense.category_id,
        "amount": expense.amount_cents,
        "split_type": expense.split_type.value,
        "expense_date": expense.expense_date.isoformat(),
        "created_at": expense.created_at.isoformat() if expense.created_at else None,
        "splits": [{"user_id": s.member_id, "amount": s.share_cents} for s in expense.splits],
    }


def _payment_json(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "colocation_id": payment.colocation_id,
        "from_user_id": payment.from_member_id,
        "to_user_id": payment.to_member_id,
        "amount": payment.amount_cents,
        "status": payment.status.value,
        "note": payment.note,
        "created_at": payment.created_at.isoformat(),
        "resolved_at": payment.resolved_at.isoformat() if payment.resolved_at else None,
    }


# -- routes ------------------------------------------------------------------------


@api_bp.get("/health")
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.get("/colocations/<colocation_id>/balances")
def get_balances(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    vector, debts = _service().get_balances(colocation_id, actor_id)
    return jsonify(
        {
            "currency": _currency(),
            "balances": [
                {
                    "user_id": b.member_id,
                    "total_paid": b.total_paid_cents,
                    "total_owed": b.total_owed_cents,
                    "net_balance": b.net_balance_cents,
                }
                for b in vector
            ],
            "debts": [
                {"from_user_id": d.from_member_id, "to_user_id": d.to_member_id, "amount": d.amount_cents}
                for d in debts
            ],
        }
    ), 200


@api_bp.get("/colocations/<colocation_id>/balances/simplified")
def get_simplified_debts(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    debts = _service().get_simplified_debts(colocation_id, actor_id)
    return jsonify(
        {
            "currency": _currency(),
            "debts": [
                {"from_user_id": d.from_member_id, "to_user_id": d.to_member_id, "amount": d.amount_cents}
                for d in debts
            ],
        }
    ), 200


@api_bp.get("/colocations/<colocation_id>/balances/history")
def get_balance_history(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    history = _service().get_balance_history(
        colocation_id,
        actor_id,
        member_id=request.args.get("user_id") or None,
        start=parse_datetime(request.args.get("start"), field="start"),
        end=parse_datetime(request.args.get("end"), field="end"),
    )
    return jsonify(
        {
            "currency": _currency(),
            "history": [
                {
                    "date": h.date.isoformat(),
                    "event_type": h.event_type,
                    "event_id": h.event_id,
                    "description": h.description,
                    "amount": h.amount_cents,
                    "running_balance": h.running_balance_cents,
                }
                for h in history
            ],
        }
    ), 200


@api_bp.post("/colocations/<colocation_id>/expenses")
def create_expense(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    data = _body()

    split_type = parse_split_type(data.get("split_type", "equal"))
    policy, participants = parse_split_policy(split_type, data.get("splits"))
    expense = _service().create_expense(
        colocation_id,
        actor_id,
        title=require_str(data, "title"),
        amount_cents=parse_amount(data.get("amount")),
        policy=policy,
        participants=participants,
        category_id=optional_str(data, "category_id"),
        expense_date=parse_datetime(data.get("expense_date"), field="expense_date"),
        description=optional_str(data, "description"),
    )
    return jsonify(_expense_json(expense)), 201


@api_bp.get("/colocations/<colocation_id>/expenses")
def list_expenses(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    rows, total, page, page_size = _service().list_expenses(
        colocation_id,
        actor_id,
        paid_by=request.args.get("paid_by") or None,
        category_id=request.args.get("category_id") or None,
        start=parse_datetime(request.args.get("start"), field="start"),
        end=parse_datetime(request.args.get("end"), field="end"),
        page=parse_positive_int(request.args.get("page"), field="page", default=1),
        page_size=parse_positive_int(request.args.get("page_size"), field="page_size", default=None),
    )
    return jsonify(
        {"expenses": [_expense_json(e) for e in rows], "total": total, "page": page, "page_size": page_size}
    ), 200


@api_bp.get("/colocations/<colocation_id>/expenses/<expense_id>")
def get_expense(colocation_id: str, expense_id: str):
    actor_id = parse_actor_id(request.headers)
    return jsonify(_expense_json(_service().get_expense(colocation_id, actor_id, expense_id))), 200


@api_bp.put("/colocations/<colocation_id>/expenses/<expense_id>")
def update_expense(colocation_id: str, expense_id: str):
    actor_id = parse_actor_id(request.headers)
    data = _body()

    kwargs: Dict[str, Any] = {}
    if "title" in data:
        kwargs["title"] = require_str(data, "title")
    if "amount" in data:
        kwargs["amount_cents"] = parse_amount(data.get("amount"))
    if "split_type" in data or "splits" in data:
        if "split_type" not in data:
            raise ApiValidationError("'split_type' is required when 'splits' are given.")
        split_type = parse_split_type(data.get("split_type"))
        kwargs["policy"], kwargs["participants"] = parse_split_policy(split_type, data.get("splits"))
    if "category_id" in data:
        kwargs["category_id"] = optional_str(data, "category_id")
    if "description" in data:
        kwargs["description"] = optional_str(data, "description")
    if "expense_date" in data:
        kwargs["expense_date"] = parse_datetime(data.get("expense_date"), field="expense_date")

    expense = _service().update_expense(colocation_id, actor_id, expense_id, **kwargs)
    return jsonify(_expense_json(expense)), 200


@api_bp.delete("/colocations/<colocation_id>/expenses/<expense_id>")
def delete_expense(colocation_id: str, expense_id: str):
    actor_id = parse_actor_id(request.headers)
    _service().delete_expense(colocation_id, actor_id, expense_id)
    return "", 204


@api_bp.post("/colocations/<colocation_id>/payments")
def create_payment(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    data = _body()
    payment = _service().create_payment(
        colocation_id,
        actor_id,
        to_member_id=require_str(data, "to_user_id"),
        amount_cents=parse_amount(data.get("amount")),
        note=optional_str(data, "note"),
    )
    return jsonify(_payment_json(payment)), 201


@api_bp.get("/colocations/<colocation_id>/payments")
def list_payments(colocation_id: str):
    actor_id = parse_actor_id(request.headers)
    rows, total, page, page_size = _service().list_payments(
        colocation_id,
        actor_id,
        status=parse_status(request.args.get("status")),
        from_member_id=request.args.get("from_user_id") or None,
        to_member_id=request.args.get("to_user_id") or None,
        page=parse_positive_int(request.args.get("page"), field="page", default=1),
        page_size=parse_positive_int(request.args.get("page_size"), field="page_size", default=None),
    )
    return jsonify(
        {"payments": [_payment_json(p) for p in rows], "total": total, "page": page, "page_size": page_size}
    ), 200


@api_bp.get("/colocations/<colocation_id>/payments/<payment_id>")
def get_payment(colocation_id: str, payment_id: str):
    actor_id = parse_actor_id(request.headers)
    return jsonify(_payment_json(_service().get_payment(colocation_id, actor_id, payment_id))), 200


@api_bp.post("/colocations/<colocation_id>/payments/<payment_id>/confirm")
def confirm_payment(colocation_id: str, payment_id: str):
    actor_id = parse_actor_id(request.headers)
    return jsonify(_payment_json(_service().confirm_payment(colocation_id, actor_id, payment_id))), 200


@api_bp.post("/colocations/<colocation_id>/payments/<payment_id>/reject")
def reject_payment(colocation_id: str, payment_id: str):
    actor_id = parse_actor_id(request.headers)
    return jsonify(_payment_json(_service().reject_payment(colocation_id, actor_id, payment_id))), 200


@api_bp.delete("/colocations/<colocation_id>/payments/<payment_id>")
def cancel_payment(colocation_id: str, payment_id: str):
    actor_id = parse_actor_id(request.headers)
    return jsonify(_payment_json(_service().cancel_payment(colocation_id, actor_id, payment_id))), 200
