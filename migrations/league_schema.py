# migrations/league_schema.py
"""
Table definitions for the league transaction tables.

Production databases already carry these tables; services reflect them at
runtime. This module is the source of truth for fresh databases (local dev,
tests) and is safe to run repeatedly.

Run via: python -m migrations.league_schema
"""

import logging

from sqlalchemy import (
    MetaData, Table, Column, Integer, String, Text, Float, Boolean,
    ForeignKey, UniqueConstraint, DateTime, func,
)

from db import get_engine

log = logging.getLogger("app")

metadata = MetaData()

coaches = Table(
    "coaches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("elo_rating", Float, nullable=False, default=1000),
)

seasons = Table(
    "seasons",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("draft_budget", Integer, nullable=False, default=100),
    Column("is_current", Boolean, nullable=False, default=False),
    Column("is_public", Boolean, nullable=False, default=True),
)

divisions = Table(
    "divisions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("season_id", Integer, ForeignKey("seasons.id"), nullable=False),
    Column("name", String(100), nullable=False),
)

season_coaches = Table(
    "season_coaches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("coach_id", Integer, ForeignKey("coaches.id"), nullable=False),
    Column("division_id", Integer, ForeignKey("divisions.id"), nullable=False),
    Column("team_name", String(100), nullable=False),
    Column("team_abbreviation", String(10), nullable=True),
    Column("remaining_budget", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("replaced_by_id", Integer, nullable=True),
)

pokemon = Table(
    "pokemon",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("display_name", String(100), nullable=True),
    Column("types", Text, nullable=True),  # JSON list
)

season_pokemon_prices = Table(
    "season_pokemon_prices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("season_id", Integer, ForeignKey("seasons.id"), nullable=False),
    Column("pokemon_id", Integer, ForeignKey("pokemon.id"), nullable=False),
    Column("price", Integer, nullable=False),  # negative = restricted
    Column("tera_captain_cost", Integer, nullable=True),
    Column("tera_banned", Boolean, nullable=False, default=False),
    UniqueConstraint("season_id", "pokemon_id", name="uq_season_pokemon_price"),
)

rosters = Table(
    "rosters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("season_coach_id", Integer, ForeignKey("season_coaches.id"), nullable=False),
    Column("pokemon_id", Integer, ForeignKey("pokemon.id"), nullable=False),
    Column("base_price", Integer, nullable=False),
    Column("tera_surcharge", Integer, nullable=False, default=0),
    Column("is_tera_captain", Boolean, nullable=False, default=False),
    Column("draft_order", Integer, nullable=True),
    Column("acquired_week", Integer, nullable=True),
    Column("acquired_via", String(20), nullable=True),
    Column("acquired_transaction_id", Integer, nullable=True),
    Column("last_transaction_id", Integer, nullable=True),
    sqlite_autoincrement=True,
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("season_id", Integer, ForeignKey("seasons.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("week", Integer, nullable=False),
    Column("season_coach_id", Integer, ForeignKey("season_coaches.id"), nullable=False),
    Column("team_abbreviation", String(10), nullable=True),
    Column("trading_partner_season_coach_id", Integer,
           ForeignKey("season_coaches.id"), nullable=True),
    Column("trading_partner_abbreviation", String(10), nullable=True),
    Column("pokemon_in", Text, nullable=True),   # JSON list of pokemon ids
    Column("pokemon_out", Text, nullable=True),  # JSON list of pokemon ids
    Column("new_tera_captain_id", Integer, ForeignKey("pokemon.id"), nullable=True),
    Column("old_tera_captain_id", Integer, ForeignKey("pokemon.id"), nullable=True),
    Column("budget_change", Integer, nullable=False, default=0),
    Column("counts_against_limit", Boolean, nullable=False, default=True),
    Column("notes", Text, nullable=True),
    Column("details", Text, nullable=True),  # JSON undo snapshot
    Column("executed_by", String(100), nullable=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    sqlite_autoincrement=True,
)


def create_league_schema(engine=None):
    """Create any missing league tables. Returns the names of all managed tables."""
    if engine is None:
        engine = get_engine()
    metadata.create_all(engine, checkfirst=True)
    log.info("league schema ready (%d tables)", len(metadata.tables))
    return sorted(metadata.tables)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_league_schema()
