# services/league_store.py
"""
Data access for the transaction engine.

`LeagueStore` wraps a single SQLAlchemy connection. The caller owns the
connection's transaction (normally `engine.begin()`), so every read and write
made through one store instance commits or rolls back together.

Covers the roster store, pricing catalog, budget ledger and transaction
ledger. No league rules live here.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import MetaData, Table, and_, func, or_, select, update

logger = logging.getLogger("app")

FA_TYPES = ("FA_PICKUP", "FA_DROP", "FA_SWAP")
P2P_TYPE = "P2P_TRADE"


# ---------------------------------------------------------------------------
# Table reflection (cached per-engine)
# ---------------------------------------------------------------------------

_table_cache: Dict[int, Dict[str, Table]] = {}


def _get_tables(conn) -> Dict[str, Table]:
    # Reflect on the caller's connection: a second pooled connection would
    # queue behind the write lock the caller may already hold.
    engine = conn.engine
    eid = id(engine)
    if eid not in _table_cache:
        md = MetaData()
        _table_cache[eid] = {
            "seasons": Table("seasons", md, autoload_with=conn),
            "divisions": Table("divisions", md, autoload_with=conn),
            "teams": Table("season_coaches", md, autoload_with=conn),
            "coaches": Table("coaches", md, autoload_with=conn),
            "pokemon": Table("pokemon", md, autoload_with=conn),
            "prices": Table("season_pokemon_prices", md, autoload_with=conn),
            "rosters": Table("rosters", md, autoload_with=conn),
            "tx": Table("transactions", md, autoload_with=conn),
        }
        logger.debug("reflected league tables for %s", engine.url.render_as_string(hide_password=True))
    return _table_cache[eid]


def clear_table_cache() -> int:
    """Forget reflected tables. Returns how many engine caches were dropped."""
    count = len(_table_cache)
    _table_cache.clear()
    return count


def _json_list(value) -> List[int]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return list(json.loads(value))
    return list(value)


def _roster_row_to_dict(row) -> Dict[str, Any]:
    d = dict(row._mapping)
    d["is_tera_captain"] = bool(d["is_tera_captain"])
    d["tera_surcharge"] = int(d.get("tera_surcharge") or 0)
    d["base_price"] = int(d["base_price"])
    d["price"] = d["base_price"] + d["tera_surcharge"]
    return d


def _tx_row_to_dict(row) -> Dict[str, Any]:
    d = dict(row._mapping)
    d["pokemon_in"] = _json_list(d.get("pokemon_in"))
    d["pokemon_out"] = _json_list(d.get("pokemon_out"))
    d["counts_against_limit"] = bool(d["counts_against_limit"])
    if isinstance(d.get("details"), str):
        d["details"] = json.loads(d["details"])
    if isinstance(d.get("created_at"), datetime):
        d["created_at"] = d["created_at"].isoformat()
    return d


class LeagueStore:
    def __init__(self, conn):
        self.conn = conn
        self.t = _get_tables(conn)

    # -- seasons & teams ----------------------------------------------------

    def get_season(self, season_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        seasons = self.t["seasons"]
        stmt = select(seasons).where(seasons.c.id == season_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.conn.execute(stmt).first()
        return dict(row._mapping) if row else None

    def get_team(self, season_coach_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Team row plus the season it plays in (via its division)."""
        teams = self.t["teams"]
        divisions = self.t["divisions"]
        stmt = (
            select(teams, divisions.c.season_id)
            .select_from(teams.join(divisions, divisions.c.id == teams.c.division_id))
            .where(teams.c.id == season_coach_id)
        )
        if for_update:
            stmt = stmt.with_for_update(of=teams)
        row = self.conn.execute(stmt).first()
        if not row:
            return None
        d = dict(row._mapping)
        d["is_active"] = bool(d["is_active"])
        d["remaining_budget"] = int(d["remaining_budget"] or 0)
        return d

    def adjust_budget(self, season_coach_id: int, delta: int) -> None:
        if not delta:
            return
        teams = self.t["teams"]
        self.conn.execute(
            update(teams)
            .where(teams.c.id == season_coach_id)
            .values(remaining_budget=teams.c.remaining_budget + delta)
        )

    # -- pricing catalog ----------------------------------------------------

    def get_price(self, season_id: int, pokemon_id: int) -> Optional[Dict[str, Any]]:
        prices = self.t["prices"]
        row = self.conn.execute(
            select(prices.c.price, prices.c.tera_captain_cost, prices.c.tera_banned)
            .where(and_(
                prices.c.season_id == season_id,
                prices.c.pokemon_id == pokemon_id,
            ))
        ).first()
        if not row:
            return None
        m = row._mapping
        return {
            "base_price": int(m["price"]),
            "tera_captain_cost": None if m["tera_captain_cost"] is None else int(m["tera_captain_cost"]),
            "tera_banned": bool(m["tera_banned"]),
        }

    # -- roster store -------------------------------------------------------

    def get_roster_entry(self, roster_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        rosters = self.t["rosters"]
        stmt = select(rosters).where(rosters.c.id == roster_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.conn.execute(stmt).first()
        return _roster_row_to_dict(row) if row else None

    def get_roster_entries(self, roster_ids: Iterable[int],
                           for_update: bool = False) -> Dict[int, Dict[str, Any]]:
        ids = sorted(set(roster_ids))
        if not ids:
            return {}
        rosters = self.t["rosters"]
        stmt = select(rosters).where(rosters.c.id.in_(ids)).order_by(rosters.c.id)
        if for_update:
            stmt = stmt.with_for_update()
        rows = self.conn.execute(stmt).all()
        return {r._mapping["id"]: _roster_row_to_dict(r) for r in rows}

    def get_team_roster(self, season_coach_id: int) -> List[Dict[str, Any]]:
        rosters = self.t["rosters"]
        pokemon = self.t["pokemon"]
        rows = self.conn.execute(
            select(rosters, pokemon.c.name, pokemon.c.display_name)
            .select_from(rosters.join(pokemon, pokemon.c.id == rosters.c.pokemon_id))
            .where(rosters.c.season_coach_id == season_coach_id)
            .order_by(rosters.c.draft_order, rosters.c.id)
        ).all()
        return [_roster_row_to_dict(r) for r in rows]

    def get_tera_captain(self, season_coach_id: int) -> Optional[Dict[str, Any]]:
        rosters = self.t["rosters"]
        row = self.conn.execute(
            select(rosters).where(and_(
                rosters.c.season_coach_id == season_coach_id,
                rosters.c.is_tera_captain == 1,
            ))
        ).first()
        return _roster_row_to_dict(row) if row else None

    def team_has_pokemon(self, season_coach_id: int, pokemon_id: int) -> bool:
        rosters = self.t["rosters"]
        row = self.conn.execute(
            select(rosters.c.id).where(and_(
                rosters.c.season_coach_id == season_coach_id,
                rosters.c.pokemon_id == pokemon_id,
            ))
        ).first()
        return row is not None

    def _owned_in_season(self, season_id: int):
        """Subquery of pokemon ids rostered by active teams in a season."""
        rosters = self.t["rosters"]
        teams = self.t["teams"]
        divisions = self.t["divisions"]
        return (
            select(rosters.c.pokemon_id)
            .select_from(
                rosters
                .join(teams, teams.c.id == rosters.c.season_coach_id)
                .join(divisions, divisions.c.id == teams.c.division_id)
            )
            .where(and_(
                divisions.c.season_id == season_id,
                teams.c.is_active == 1,
            ))
        )

    def is_owned_in_season(self, season_id: int, pokemon_id: int) -> bool:
        owned = self._owned_in_season(season_id).subquery()
        row = self.conn.execute(
            select(owned.c.pokemon_id).where(owned.c.pokemon_id == pokemon_id)
        ).first()
        return row is not None

    def list_free_agents(self, season_id: int) -> List[Dict[str, Any]]:
        prices = self.t["prices"]
        pokemon = self.t["pokemon"]
        owned = self._owned_in_season(season_id)
        rows = self.conn.execute(
            select(
                pokemon.c.id,
                pokemon.c.name,
                pokemon.c.display_name,
                pokemon.c.types,
                prices.c.price,
                prices.c.tera_captain_cost,
                prices.c.tera_banned,
            )
            .select_from(prices.join(pokemon, pokemon.c.id == prices.c.pokemon_id))
            .where(and_(
                prices.c.season_id == season_id,
                prices.c.price >= 0,
                pokemon.c.id.notin_(owned),
            ))
            .order_by(prices.c.price.desc(), pokemon.c.name)
        ).all()
        agents = []
        for r in rows:
            d = dict(r._mapping)
            d["types"] = _json_list(d.get("types")) if d.get("types") else []
            d["tera_banned"] = bool(d["tera_banned"])
            agents.append(d)
        return agents

    def insert_roster_entry(self, **values) -> int:
        result = self.conn.execute(self.t["rosters"].insert().values(**values))
        return result.lastrowid

    def update_roster_entry(self, roster_id: int, **values) -> None:
        rosters = self.t["rosters"]
        self.conn.execute(
            update(rosters).where(rosters.c.id == roster_id).values(**values)
        )

    def delete_roster_entry(self, roster_id: int) -> None:
        rosters = self.t["rosters"]
        self.conn.execute(rosters.delete().where(rosters.c.id == roster_id))

    # -- transaction ledger -------------------------------------------------

    def insert_transaction(self, *, season_id: int, tx_type: str, week: int,
                           season_coach_id: int, team_abbreviation: str = None,
                           trading_partner_id: int = None,
                           trading_partner_abbreviation: str = None,
                           pokemon_in: List[int] = None,
                           pokemon_out: List[int] = None,
                           new_tera_captain_id: int = None,
                           old_tera_captain_id: int = None,
                           budget_change: int = 0,
                           counts_against_limit: bool = True,
                           notes: str = None,
                           details: dict = None,
                           executed_by: str = None) -> int:
        """Insert a ledger row and return its id."""
        result = self.conn.execute(
            self.t["tx"].insert().values(
                season_id=season_id,
                type=tx_type,
                week=week,
                season_coach_id=season_coach_id,
                team_abbreviation=team_abbreviation,
                trading_partner_season_coach_id=trading_partner_id,
                trading_partner_abbreviation=trading_partner_abbreviation,
                pokemon_in=json.dumps(list(pokemon_in or [])),
                pokemon_out=json.dumps(list(pokemon_out or [])),
                new_tera_captain_id=new_tera_captain_id,
                old_tera_captain_id=old_tera_captain_id,
                budget_change=budget_change,
                counts_against_limit=counts_against_limit,
                notes=notes,
                details=json.dumps(details or {}),
                executed_by=executed_by,
            )
        )
        return result.lastrowid

    def update_transaction_details(self, transaction_id: int, details: dict) -> None:
        tx = self.t["tx"]
        self.conn.execute(
            update(tx).where(tx.c.id == transaction_id).values(details=json.dumps(details))
        )

    def get_transaction(self, transaction_id: int,
                        for_update: bool = False) -> Optional[Dict[str, Any]]:
        tx = self.t["tx"]
        stmt = select(tx).where(tx.c.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.conn.execute(stmt).first()
        return _tx_row_to_dict(row) if row else None

    def delete_transaction(self, transaction_id: int) -> None:
        tx = self.t["tx"]
        self.conn.execute(tx.delete().where(tx.c.id == transaction_id))

    def list_transactions(self, season_id: int = None, season_coach_id: int = None,
                          tx_type: str = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Ledger history, newest first. A team matches as either side of a trade."""
        tx = self.t["tx"]
        stmt = select(tx)

        conditions = []
        if season_id is not None:
            conditions.append(tx.c.season_id == season_id)
        if season_coach_id is not None:
            conditions.append(or_(
                tx.c.season_coach_id == season_coach_id,
                tx.c.trading_partner_season_coach_id == season_coach_id,
            ))
        if tx_type is not None:
            conditions.append(tx.c.type == tx_type)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(tx.c.created_at.desc(), tx.c.id.desc()).limit(limit)
        return self.describe_transactions(
            [_tx_row_to_dict(r) for r in self.conn.execute(stmt).all()]
        )

    def describe_transactions(self, txs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Attach the teams (with their coaches) and creature details to ledger
        rows, the way the history views show them. Two lookups cover the whole
        batch; rows are updated in place and returned.
        """
        if not txs:
            return txs
        teams = self.t["teams"]
        coaches = self.t["coaches"]
        pokemon = self.t["pokemon"]

        team_ids = set()
        pokemon_ids = set()
        for tx in txs:
            team_ids.add(tx["season_coach_id"])
            if tx.get("trading_partner_season_coach_id"):
                team_ids.add(tx["trading_partner_season_coach_id"])
            pokemon_ids.update(tx["pokemon_in"])
            pokemon_ids.update(tx["pokemon_out"])
            for key in ("new_tera_captain_id", "old_tera_captain_id"):
                if tx.get(key):
                    pokemon_ids.add(tx[key])

        team_rows = self.conn.execute(
            select(
                teams.c.id,
                teams.c.team_name,
                teams.c.team_abbreviation,
                coaches.c.id.label("coach_id"),
                coaches.c.name.label("coach_name"),
            )
            .select_from(teams.join(coaches, coaches.c.id == teams.c.coach_id))
            .where(teams.c.id.in_(sorted(team_ids)))
        ).all()
        by_team = {}
        for r in team_rows:
            m = r._mapping
            by_team[m["id"]] = {
                "id": m["id"],
                "team_name": m["team_name"],
                "team_abbreviation": m["team_abbreviation"],
                "coach": {"id": m["coach_id"], "name": m["coach_name"]},
            }

        by_pokemon = {}
        if pokemon_ids:
            rows = self.conn.execute(
                select(pokemon.c.id, pokemon.c.name, pokemon.c.display_name, pokemon.c.types)
                .where(pokemon.c.id.in_(sorted(pokemon_ids)))
            ).all()
            for r in rows:
                d = dict(r._mapping)
                d["types"] = _json_list(d.get("types")) if d.get("types") else []
                by_pokemon[d["id"]] = d

        for tx in txs:
            tx["team"] = by_team.get(tx["season_coach_id"])
            tx["trading_partner"] = by_team.get(tx.get("trading_partner_season_coach_id"))
            tx["pokemon_in_details"] = [by_pokemon[p] for p in tx["pokemon_in"] if p in by_pokemon]
            tx["pokemon_out_details"] = [by_pokemon[p] for p in tx["pokemon_out"] if p in by_pokemon]
            tx["new_tera_captain_details"] = by_pokemon.get(tx.get("new_tera_captain_id"))
            tx["old_tera_captain_details"] = by_pokemon.get(tx.get("old_tera_captain_id"))
        return txs

    # -- limit counter ------------------------------------------------------

    def count_limited_transactions(self, season_coach_id: int) -> Dict[str, int]:
        """Counted FA and P2P transactions for a team. Both trade sides spend a credit."""
        tx = self.t["tx"]
        fa_used = self.conn.execute(
            select(func.count(tx.c.id)).where(and_(
                tx.c.season_coach_id == season_coach_id,
                tx.c.type.in_(FA_TYPES),
                tx.c.counts_against_limit == 1,
            ))
        ).scalar_one()
        p2p_used = self.conn.execute(
            select(func.count(tx.c.id)).where(and_(
                tx.c.type == P2P_TYPE,
                tx.c.counts_against_limit == 1,
                or_(
                    tx.c.season_coach_id == season_coach_id,
                    tx.c.trading_partner_season_coach_id == season_coach_id,
                ),
            ))
        ).scalar_one()
        return {"fa_used": int(fa_used), "p2p_used": int(p2p_used)}
