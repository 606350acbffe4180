"""Action parsing, the atomic runner, rules and schema bootstrap."""

import pytest
from sqlalchemy import create_engine, inspect

from conftest import ALPHA, BRAVO, SEASON, CLEFABLE, GHOLDENGO, FLUTTER_MANE
from migrations.league_schema import create_league_schema
from services.transaction_actions import (
    ACTIONS,
    FAPickup,
    FASwap,
    P2PTrade,
    TeraSwap,
    Undo,
    parse_action,
    perform_action,
    run_query,
)
from services.transaction_errors import (
    PreconditionError,
    StoreError,
    ValidationError,
)
from services.transaction_rules import TransactionRules


class TestParseAction:

    def test_pickup(self):
        action = parse_action({
            "action": "fa_pickup", "season_id": "1", "season_coach_id": 2,
            "pokemon_id": 6, "week": 3, "is_tera_captain": "true",
        })
        assert action == FAPickup(
            season_id=1, season_coach_id=2, pokemon_id=6, week=3, is_tera_captain=True,
        )

    def test_trade_lists(self):
        action = parse_action({
            "action": "p2p_trade", "season_id": 1, "week": 4,
            "team1_season_coach_id": 1, "team1_roster_ids": [2, "3"],
            "team2_season_coach_id": 2, "team2_roster_ids": [5],
            "counts_against_limit": False, "notes": "deadline deal",
        })
        assert isinstance(action, P2PTrade)
        assert action.team1_roster_ids == [2, 3]
        assert action.counts_against_limit is False
        assert action.notes == "deadline deal"

    def test_tag_argument_overrides_body(self):
        action = parse_action({"transaction_id": 7, "action": "fa_pickup"}, "undo")
        assert action == Undo(transaction_id=7)

    def test_tera_swap_optional_old(self):
        action = parse_action({
            "action": "tera_swap", "season_id": 1, "season_coach_id": 1,
            "new_tera_captain_roster_id": 4, "week": 2,
        })
        assert isinstance(action, TeraSwap)
        assert action.old_tera_captain_roster_id is None

    def test_every_action_tag_is_registered(self):
        assert set(ACTIONS) == {"fa_pickup", "fa_drop", "fa_swap", "p2p_trade", "tera_swap", "undo"}

    def test_missing_action(self):
        with pytest.raises(ValidationError) as exc:
            parse_action({})
        assert exc.value.fields == ["action"]

    def test_unknown_action(self):
        with pytest.raises(ValidationError, match="Invalid action 'trade_all'"):
            parse_action({"action": "trade_all"})

    def test_missing_fields_are_listed(self):
        with pytest.raises(ValidationError) as exc:
            parse_action({"action": "fa_pickup", "season_id": 1})
        assert exc.value.fields == ["season_coach_id", "pokemon_id", "week"]
        assert exc.value.to_dict()["error"] == "validation"
        assert exc.value.status_code == 400

    def test_non_integer_field(self):
        with pytest.raises(ValidationError, match="'week' must be an integer"):
            parse_action({"action": "fa_drop", "season_id": 1, "season_coach_id": 1,
                          "roster_id": 2, "week": "soon"})

    def test_fractional_number_is_rejected(self):
        with pytest.raises(ValidationError, match="'week' must be an integer") as exc:
            parse_action({"action": "fa_drop", "season_id": 1, "season_coach_id": 1,
                          "roster_id": 2, "week": 1.9})
        assert exc.value.fields == ["week"]

    def test_whole_float_is_accepted(self):
        action = parse_action({"action": "fa_drop", "season_id": 1, "season_coach_id": 1,
                               "roster_id": 2.0, "week": 3})
        assert action.roster_id == 2
        assert isinstance(action.roster_id, int)

    def test_fractional_roster_id_in_list(self):
        with pytest.raises(ValidationError, match="list of integers"):
            parse_action({"action": "p2p_trade", "season_id": 1, "week": 1,
                          "team1_season_coach_id": 1, "team1_roster_ids": [2.5],
                          "team2_season_coach_id": 2, "team2_roster_ids": [5]})

    def test_trade_ids_must_be_a_list(self):
        with pytest.raises(ValidationError, match="list of integers"):
            parse_action({"action": "p2p_trade", "season_id": 1, "week": 1,
                          "team1_season_coach_id": 1, "team1_roster_ids": 2,
                          "team2_season_coach_id": 2, "team2_roster_ids": [5]})

    def test_trade_sides_required(self):
        with pytest.raises(ValidationError) as exc:
            parse_action({"action": "p2p_trade", "season_id": 1, "week": 1,
                          "team1_season_coach_id": 1, "team1_roster_ids": [2],
                          "team2_season_coach_id": 2, "team2_roster_ids": []})
        assert exc.value.fields == ["team2_roster_ids"]

    def test_swap_needs_a_side(self):
        with pytest.raises(ValidationError):
            parse_action({"action": "fa_swap", "season_id": 1, "season_coach_id": 1, "week": 1})
        action = parse_action({"action": "fa_swap", "season_id": 1, "season_coach_id": 1,
                               "week": 1, "drop_roster_id": 2})
        assert action == FASwap(season_id=1, season_coach_id=1, week=1, drop_roster_id=2)


class TestPerformAction:

    def test_commits_on_success(self, db_engine, league):
        tx = perform_action(db_engine, FAPickup(SEASON, BRAVO, CLEFABLE, week=1))
        assert league.transaction(tx["id"])["type"] == "FA_PICKUP"
        assert league.budget(BRAVO) == 32

    def test_rolls_back_on_rejection(self, db_engine, league):
        before = league.snapshot(ALPHA, BRAVO)
        with pytest.raises(PreconditionError):
            perform_action(db_engine, FAPickup(SEASON, ALPHA, CLEFABLE, week=1,
                                               is_tera_captain=True))
        assert league.snapshot(ALPHA, BRAVO) == before

    def test_rules_and_executor_are_applied(self, db_engine, league):
        rules = TransactionRules(enforce_budget_floor=False)
        perform_action(db_engine, FAPickup(SEASON, BRAVO, GHOLDENGO, week=1), rules)
        tx = perform_action(db_engine, FAPickup(SEASON, BRAVO, FLUTTER_MANE, week=1),
                            rules, executed_by="commissioner")
        assert tx["executed_by"] == "commissioner"
        assert league.budget(BRAVO) == -5

    def test_undo_action(self, db_engine, league):
        tx = perform_action(db_engine, FAPickup(SEASON, BRAVO, CLEFABLE, week=1))
        result = perform_action(db_engine, Undo(tx["id"]))
        assert result["undone_transaction_id"] == tx["id"]
        assert league.budget(BRAVO) == 50

    def test_store_failure_is_opaque(self, tmp_path):
        empty = create_engine(f"sqlite:///{tmp_path / 'empty.db'}", future=True)
        with pytest.raises(StoreError) as exc:
            perform_action(empty, FAPickup(SEASON, BRAVO, CLEFABLE, week=1))
        assert exc.value.to_dict() == {"error": "db_error", "message": "Database error"}
        assert exc.value.status_code == 500
        empty.dispose()

    def test_run_query_reads_without_writing(self, db_engine):
        counts = run_query(db_engine, lambda eng: eng.get_transaction_counts(BRAVO),
                           TransactionRules(fa_limit=2))
        assert counts["fa_remaining"] == 2


class TestRules:

    def test_defaults(self):
        rules = TransactionRules.from_config(None)
        assert rules == TransactionRules(
            fa_limit=6, p2p_limit=6, max_trade_side=3, trade_lock_weeks=2,
            enforce_trade_lock=True, enforce_budget_floor=True,
        )

    def test_from_config(self):
        rules = TransactionRules.from_config({
            "FA_TRANSACTION_LIMIT": "4",
            "P2P_TRANSACTION_LIMIT": 2,
            "TRADE_LOCK_WEEKS": 1,
            "ENFORCE_BUDGET_FLOOR": False,
        })
        assert rules.fa_limit == 4
        assert rules.p2p_limit == 2
        assert rules.trade_lock_weeks == 1
        assert rules.enforce_budget_floor is False
        assert rules.enforce_trade_lock is True

    @pytest.mark.parametrize("raw, expected", [
        ("false", False), ("False", False), ("0", False), ("no", False),
        ("true", True), ("TRUE", True), ("1", True), ("on", True),
    ])
    def test_string_flags(self, raw, expected):
        rules = TransactionRules.from_config({
            "ENFORCE_TRADE_LOCK": raw,
            "ENFORCE_BUDGET_FLOOR": raw,
        })
        assert rules.enforce_trade_lock is expected
        assert rules.enforce_budget_floor is expected

    def test_string_false_lifts_budget_floor(self, db_engine, league):
        rules = TransactionRules.from_config({"ENFORCE_BUDGET_FLOOR": "false"})
        perform_action(db_engine, FAPickup(SEASON, ALPHA, GHOLDENGO, week=1), rules)
        assert league.budget(ALPHA) == 0
        perform_action(db_engine, FAPickup(SEASON, ALPHA, CLEFABLE, week=1), rules)
        assert league.budget(ALPHA) == -18


class TestSchema:

    def test_bootstrap_is_idempotent(self, db_engine):
        names = create_league_schema(db_engine)
        assert names == sorted([
            "coaches", "divisions", "pokemon", "rosters", "season_coaches",
            "season_pokemon_prices", "seasons", "transactions",
        ])
        assert set(names) <= set(inspect(db_engine).get_table_names())
