# transactions/__init__.py
"""
Transaction blueprint: free-agent moves, trades, tera swaps, undo and the
read-only views (history, counts, free agents, trade locks).
All endpoints under /transactions/.
"""

import logging

from flask import Blueprint, current_app, jsonify, request, session

from admin import require_admin
from db import get_engine
from services.transaction_actions import (
    parse_action,
    perform_action,
    run_query,
    Undo,
)
from services.transaction_errors import TransactionError
from services.transaction_rules import TransactionRules

log = logging.getLogger("app")

transactions_bp = Blueprint("transactions", __name__)


def _engine():
    return getattr(current_app, "engine", None) or get_engine()


def _rules():
    return TransactionRules.from_config(current_app.config)


def _executed_by():
    # Attribution comes from the session only; request bodies cannot set it.
    return "admin" if session.get("admin") else None


def _error(e: TransactionError):
    if e.status_code >= 500:
        log.error("transaction failed: %s", e.message)
    else:
        log.warning("transaction rejected (%s): %s", e.kind, e.message)
    return jsonify(e.to_dict()), e.status_code


def _run(action_name=None, status=201):
    """Parse the JSON body into an action, run it atomically, and shape the response."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    try:
        action = parse_action(body, action_name)
        result = perform_action(_engine(), action, _rules(), _executed_by())
    except TransactionError as e:
        return _error(e)
    if isinstance(action, Undo):
        return jsonify(result), 200
    return jsonify(result), status


# -----------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------

@transactions_bp.post("/transactions")
@require_admin
def api_transaction():
    """Generic entry point; the body's `action` selects the transaction kind."""
    return _run()


@transactions_bp.post("/transactions/fa/pickup")
@require_admin
def api_fa_pickup():
    return _run("fa_pickup")


@transactions_bp.post("/transactions/fa/drop")
@require_admin
def api_fa_drop():
    return _run("fa_drop")


@transactions_bp.post("/transactions/fa/swap")
@require_admin
def api_fa_swap():
    return _run("fa_swap")


@transactions_bp.post("/transactions/trade")
@require_admin
def api_trade():
    return _run("p2p_trade")


@transactions_bp.post("/transactions/tera-swap")
@require_admin
def api_tera_swap():
    return _run("tera_swap")


# -----------------------------------------------------------------------
# Undo
# -----------------------------------------------------------------------

@transactions_bp.post("/transactions/undo")
@require_admin
def api_undo():
    return _run("undo")


@transactions_bp.delete("/transactions/<int:transaction_id>")
@require_admin
def api_undo_by_id(transaction_id: int):
    try:
        result = perform_action(_engine(), Undo(transaction_id), _rules(), _executed_by())
    except TransactionError as e:
        return _error(e)
    return jsonify(result), 200


# -----------------------------------------------------------------------
# Read-only views
# -----------------------------------------------------------------------

@transactions_bp.get("/transactions")
def api_transaction_history():
    season_id = request.args.get("season_id", type=int)
    season_coach_id = request.args.get("season_coach_id", type=int)
    tx_type = request.args.get("type")
    limit = request.args.get("limit", 100, type=int)
    limit = max(1, min(limit, 500))
    try:
        history = run_query(
            _engine(),
            lambda eng: eng.store.list_transactions(
                season_id=season_id, season_coach_id=season_coach_id,
                tx_type=tx_type, limit=limit,
            ),
        )
    except TransactionError as e:
        return _error(e)
    return jsonify(history), 200


def _describe(store, transaction_id):
    tx = store.get_transaction(transaction_id)
    return store.describe_transactions([tx])[0] if tx else None


@transactions_bp.get("/transactions/<int:transaction_id>")
def api_transaction_detail(transaction_id: int):
    try:
        tx = run_query(_engine(), lambda eng: _describe(eng.store, transaction_id))
    except TransactionError as e:
        return _error(e)
    if not tx:
        return jsonify(error="not_found",
                       message=f"Transaction {transaction_id} not found"), 404
    return jsonify(tx), 200


@transactions_bp.get("/transactions/counts/<int:season_coach_id>")
def api_transaction_counts(season_coach_id: int):
    rules = _rules()
    try:
        counts = run_query(
            _engine(), lambda eng: eng.get_transaction_counts(season_coach_id), rules
        )
    except TransactionError as e:
        return _error(e)
    counts.update(
        season_coach_id=season_coach_id,
        fa_limit=rules.fa_limit,
        p2p_limit=rules.p2p_limit,
    )
    return jsonify(counts), 200


@transactions_bp.get("/transactions/free-agents")
def api_free_agents():
    season_id = request.args.get("season_id", type=int)
    if season_id is None:
        return jsonify(error="missing_fields", fields=["season_id"]), 400
    try:
        agents = run_query(_engine(), lambda eng: eng.list_free_agents(season_id))
    except TransactionError as e:
        return _error(e)
    return jsonify(agents), 200


@transactions_bp.get("/transactions/trade-lock")
def api_trade_lock():
    roster_id = request.args.get("roster_id", type=int)
    week = request.args.get("week", type=int)
    missing = [k for k, v in (("roster_id", roster_id), ("week", week)) if v is None]
    if missing:
        return jsonify(error="missing_fields", fields=missing), 400
    try:
        status = run_query(
            _engine(), lambda eng: eng.is_trade_locked(roster_id, week), _rules()
        )
    except TransactionError as e:
        if e.kind == "precondition":
            return jsonify(error="not_found", message=e.message), 404
        return _error(e)
    return jsonify(status), 200
