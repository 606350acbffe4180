"""Shared test fixtures: a seeded SQLite league database per test."""

import pytest
from sqlalchemy import insert

from db import create_sqlite_engine
from migrations.league_schema import (
    coaches,
    create_league_schema,
    divisions,
    pokemon,
    rosters,
    season_coaches,
    season_pokemon_prices,
    seasons,
)
from services.league_store import LeagueStore
from services.transactions import TransactionEngine

SEASON = 1
OTHER_SEASON = 2
DRAFT_BUDGET = 100

# Team ids
ALPHA = 1      # season 1, has a tera captain
BRAVO = 2      # season 1, no captain, budget 50
CHARLIE = 3    # season 1, replaced mid-season (inactive)
DELTA = 4      # season 2

# Pokemon ids
GARCHOMP, DRAGONITE, CORVIKNIGHT, KINGAMBIT, ROTOM = 1, 2, 3, 4, 5
CLEFABLE, FERROTHORN, FLUTTER_MANE, KORAIDON, TOXAPEX = 6, 7, 8, 9, 10
GHOLDENGO, MISSINGNO, SKARMORY, HIPPOWDON, GREAT_TUSK = 11, 12, 13, 14, 15

_POKEMON = [
    (GARCHOMP, "garchomp", "Garchomp", '["Dragon", "Ground"]'),
    (DRAGONITE, "dragonite", "Dragonite", '["Dragon", "Flying"]'),
    (CORVIKNIGHT, "corviknight", "Corviknight", '["Flying", "Steel"]'),
    (KINGAMBIT, "kingambit", "Kingambit", '["Dark", "Steel"]'),
    (ROTOM, "rotom-wash", "Rotom-Wash", '["Electric", "Water"]'),
    (CLEFABLE, "clefable", "Clefable", '["Fairy"]'),
    (FERROTHORN, "ferrothorn", "Ferrothorn", '["Grass", "Steel"]'),
    (FLUTTER_MANE, "flutter-mane", "Flutter Mane", '["Ghost", "Fairy"]'),
    (KORAIDON, "koraidon", "Koraidon", '["Fighting", "Dragon"]'),
    (TOXAPEX, "toxapex", "Toxapex", '["Poison", "Water"]'),
    (GHOLDENGO, "gholdengo", "Gholdengo", '["Steel", "Ghost"]'),
    (MISSINGNO, "missingno", "MissingNo.", None),
    (SKARMORY, "skarmory", "Skarmory", '["Steel", "Flying"]'),
    (HIPPOWDON, "hippowdon", "Hippowdon", '["Ground"]'),
    (GREAT_TUSK, "great-tusk", "Great Tusk", '["Ground", "Fighting"]'),
]

# (pokemon_id, price, tera_captain_cost, tera_banned) for season 1
_PRICES = [
    (GARCHOMP, 25, 5, False),
    (DRAGONITE, 12, 4, False),
    (CORVIKNIGHT, 8, 3, False),
    (KINGAMBIT, 20, 6, False),
    (ROTOM, 15, 5, False),
    (CLEFABLE, 18, 4, False),
    (FERROTHORN, 10, None, False),
    (FLUTTER_MANE, 25, None, True),
    (KORAIDON, -1, None, True),
    (TOXAPEX, 5, 2, False),
    (GHOLDENGO, 30, 8, False),
    (SKARMORY, 7, 3, False),
    (HIPPOWDON, 25, 5, False),
    (GREAT_TUSK, 20, 8, False),
]

# (roster_id, team, pokemon_id, base_price, tera_surcharge, is_captain, draft_order)
_ROSTERS = [
    (1, ALPHA, GARCHOMP, 25, 5, True, 1),
    (2, ALPHA, DRAGONITE, 12, 0, False, 2),
    (3, ALPHA, CORVIKNIGHT, 8, 0, False, 3),
    (4, ALPHA, GREAT_TUSK, 20, 0, False, 4),
    (5, BRAVO, KINGAMBIT, 20, 0, False, 1),
    (6, BRAVO, TOXAPEX, 5, 0, False, 2),
    (7, BRAVO, HIPPOWDON, 25, 0, False, 3),
    (8, CHARLIE, SKARMORY, 7, 0, False, 1),
    (9, DELTA, ROTOM, 15, 0, False, 1),
]


def _seed(engine):
    with engine.begin() as conn:
        conn.execute(insert(seasons), [
            {"id": SEASON, "name": "Season 1", "draft_budget": DRAFT_BUDGET,
             "is_current": True, "is_public": True},
            {"id": OTHER_SEASON, "name": "Season 2", "draft_budget": DRAFT_BUDGET,
             "is_current": False, "is_public": False},
        ])
        conn.execute(insert(divisions), [
            {"id": 1, "season_id": SEASON, "name": "Stargazer"},
            {"id": 2, "season_id": SEASON, "name": "Sunset"},
            {"id": 3, "season_id": OTHER_SEASON, "name": "Stargazer"},
        ])
        conn.execute(insert(coaches), [
            {"id": i, "name": f"Coach {i}", "elo_rating": 1000} for i in (1, 2, 3, 4)
        ])
        conn.execute(insert(season_coaches), [
            {"id": ALPHA, "coach_id": 1, "division_id": 1, "team_name": "Alpha Squad",
             "team_abbreviation": "ALP", "remaining_budget": 30, "is_active": True},
            {"id": BRAVO, "coach_id": 2, "division_id": 2, "team_name": "Bravo Bunch",
             "team_abbreviation": "BRV", "remaining_budget": 50, "is_active": True},
            {"id": CHARLIE, "coach_id": 3, "division_id": 1, "team_name": "Charlie Crew",
             "team_abbreviation": "CHR", "remaining_budget": 93, "is_active": False,
             "replaced_by_id": ALPHA},
            {"id": DELTA, "coach_id": 4, "division_id": 3, "team_name": "Delta Force",
             "team_abbreviation": "DLT", "remaining_budget": 85, "is_active": True},
        ])
        conn.execute(insert(pokemon), [
            {"id": pid, "name": name, "display_name": display, "types": types}
            for pid, name, display, types in _POKEMON
        ])
        conn.execute(insert(season_pokemon_prices), [
            {"season_id": SEASON, "pokemon_id": pid, "price": price,
             "tera_captain_cost": tera, "tera_banned": banned}
            for pid, price, tera, banned in _PRICES
        ] + [
            {"season_id": OTHER_SEASON, "pokemon_id": ROTOM, "price": 15,
             "tera_captain_cost": 5, "tera_banned": False},
        ])
        conn.execute(insert(rosters), [
            {"id": rid, "season_coach_id": team, "pokemon_id": pid,
             "base_price": base, "tera_surcharge": surcharge,
             "is_tera_captain": captain, "draft_order": order}
            for rid, team, pid, base, surcharge, captain, order in _ROSTERS
        ])


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database with the league schema and a seeded season."""
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'league.db'}")
    create_league_schema(engine)
    _seed(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def run(db_engine):
    """Run fn(TransactionEngine) in one unit of work, the way a request does."""
    def _run(fn, rules=None):
        with db_engine.begin() as conn:
            return fn(TransactionEngine(LeagueStore(conn), rules))
    return _run


@pytest.fixture
def league(db_engine):
    """Read helpers over the current database state."""
    return LeagueView(db_engine)


class LeagueView:
    def __init__(self, engine):
        self.engine = engine

    def _read(self, fn):
        with self.engine.connect() as conn:
            return fn(LeagueStore(conn))

    def budget(self, team_id):
        return self._read(lambda s: s.get_team(team_id)["remaining_budget"])

    def roster(self, team_id):
        return self._read(lambda s: s.get_team_roster(team_id))

    def entry(self, roster_id):
        return self._read(lambda s: s.get_roster_entry(roster_id))

    def transaction(self, tx_id):
        return self._read(lambda s: s.get_transaction(tx_id))

    def counts(self, team_id):
        return self._read(lambda s: TransactionEngine(s).get_transaction_counts(team_id))

    def captains(self, team_id):
        return [e for e in self.roster(team_id) if e["is_tera_captain"]]

    def committed(self, team_id):
        return sum(e["price"] for e in self.roster(team_id))

    def is_conserved(self, team_id):
        return self.budget(team_id) + self.committed(team_id) == DRAFT_BUDGET

    def snapshot(self, *team_ids):
        """Everything undo must restore: rosters, budgets, limit counts."""
        return {
            tid: (self.roster(tid), self.budget(tid), self.counts(tid))
            for tid in team_ids
        }
