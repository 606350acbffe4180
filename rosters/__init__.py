# rosters/__init__.py
from flask import Blueprint, jsonify, current_app

from db import get_engine
from services.transaction_actions import run_query
from services.transaction_errors import TransactionError

rosters_bp = Blueprint("rosters", __name__)


def _build_roster(store, season_coach_id):
    """
    Team header, roster entries with derived prices, and the budget summary.

    `balanced` is the ledger check: remaining budget plus committed prices
    should always equal the season's draft budget.
    """
    team = store.get_team(season_coach_id)
    if not team:
        return None
    season = store.get_season(team["season_id"])
    entries = store.get_team_roster(season_coach_id)

    committed = sum(e["price"] for e in entries)
    draft_budget = int(season["draft_budget"]) if season else None
    return {
        "season_coach_id": team["id"],
        "season_id": team["season_id"],
        "team_name": team["team_name"],
        "team_abbreviation": team.get("team_abbreviation"),
        "is_active": team["is_active"],
        "roster": entries,
        "budget": {
            "remaining": team["remaining_budget"],
            "committed": committed,
            "draft_budget": draft_budget,
            "balanced": (
                draft_budget is not None
                and team["remaining_budget"] + committed == draft_budget
            ),
        },
    }


@rosters_bp.get("/rosters/<int:season_coach_id>")
def get_team_roster(season_coach_id: int):
    engine = getattr(current_app, "engine", None) or get_engine()
    try:
        roster = run_query(engine, lambda eng: _build_roster(eng.store, season_coach_id))
    except TransactionError as e:
        return jsonify(e.to_dict()), e.status_code
    if roster is None:
        return jsonify(error="not_found",
                       message=f"Season coach {season_coach_id} not found"), 404
    return jsonify(roster), 200
