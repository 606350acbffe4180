# services/transactions.py
"""
Transaction engine: free-agent pickups/drops/swaps, player-to-player trades,
tera-captain swaps, limit counting, trade locks and undo.

`TransactionEngine` works through a `LeagueStore` bound to one connection;
the caller owns commit/rollback. Each public `execute_*` method validates
preconditions, mutates rosters, adjusts budgets, and inserts exactly one
ledger row. A raised TransactionError means nothing should be committed.

Every roster mutation stamps `last_transaction_id` on the entries it touches
and stores their prior state in the ledger row's `details`, which is what
undo replays.
"""

import logging
from typing import Any, Dict, List, Optional

from services.league_store import LeagueStore
from services.transaction_errors import (
    ConsistencyError,
    PreconditionError,
    ValidationError,
)
from services.transaction_rules import TransactionRules

logger = logging.getLogger("app")

LOCKABLE_ACQUISITIONS = ("FA_PICKUP", "P2P_TRADE")

_SNAPSHOT_FIELDS = (
    "id", "season_coach_id", "pokemon_id", "base_price", "tera_surcharge",
    "is_tera_captain", "draft_order", "acquired_week", "acquired_via",
    "acquired_transaction_id", "last_transaction_id",
)


def _snapshot(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: entry.get(k) for k in _SNAPSHOT_FIELDS}


class TransactionEngine:
    def __init__(self, store: LeagueStore, rules: Optional[TransactionRules] = None,
                 executed_by: str = None):
        self.store = store
        self.rules = rules or TransactionRules()
        self.executed_by = executed_by

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    def _require_season(self, season_id: int, lock: bool = False) -> Dict[str, Any]:
        season = self.store.get_season(season_id, for_update=lock)
        if not season:
            raise PreconditionError(f"Season {season_id} not found")
        return season

    def _require_team(self, season_id: int, season_coach_id: int) -> Dict[str, Any]:
        team = self.store.get_team(season_coach_id, for_update=True)
        if not team:
            raise PreconditionError(f"Season coach {season_coach_id} not found")
        if team["season_id"] != season_id:
            raise PreconditionError(
                f"Season coach {season_coach_id} is not part of season {season_id}"
            )
        if not team["is_active"]:
            raise PreconditionError(f"Season coach {season_coach_id} is no longer active")
        return team

    def _require_owned_entry(self, roster_id: int, season_coach_id: int) -> Dict[str, Any]:
        entry = self.store.get_roster_entry(roster_id, for_update=True)
        if not entry or entry["season_coach_id"] != season_coach_id:
            raise PreconditionError(
                f"Roster entry {roster_id} not found or doesn't belong to season coach {season_coach_id}"
            )
        return entry

    def _check_limit(self, team: Dict[str, Any], kind: str) -> None:
        counts = self.get_transaction_counts(team["id"])
        if counts[f"{kind}_remaining"] <= 0:
            limit = self.rules.fa_limit if kind == "fa" else self.rules.p2p_limit
            raise PreconditionError(
                f"{team['team_name']} has used all {limit} {kind.upper()} transactions this season"
            )

    def _check_budget(self, team: Dict[str, Any], budget_change: int) -> None:
        if not self.rules.enforce_budget_floor:
            return
        new_budget = team["remaining_budget"] + budget_change
        if new_budget < 0:
            raise PreconditionError(
                f"Insufficient budget for {team['team_name']}. "
                f"Need {-budget_change}, have {team['remaining_budget']}"
            )

    # ------------------------------------------------------------------
    # Free agents
    # ------------------------------------------------------------------

    def list_free_agents(self, season_id: int) -> List[Dict[str, Any]]:
        return self.store.list_free_agents(season_id)

    def execute_fa_pickup(self, season_id: int, season_coach_id: int, pokemon_id: int,
                          week: int, is_tera_captain: bool = False,
                          counts_against_limit: bool = True,
                          notes: str = None) -> Dict[str, Any]:
        return self._execute_fa(
            season_id, season_coach_id, week,
            pickup_pokemon_id=pokemon_id,
            pickup_is_tera_captain=is_tera_captain,
            counts_against_limit=counts_against_limit,
            notes=notes,
        )

    def execute_fa_drop(self, season_id: int, season_coach_id: int, roster_id: int,
                        week: int, counts_against_limit: bool = True,
                        notes: str = None) -> Dict[str, Any]:
        return self._execute_fa(
            season_id, season_coach_id, week,
            drop_roster_id=roster_id,
            counts_against_limit=counts_against_limit,
            notes=notes,
        )

    def execute_fa_swap(self, season_id: int, season_coach_id: int, week: int,
                        pickup_pokemon_id: int = None,
                        pickup_is_tera_captain: bool = False,
                        drop_roster_id: int = None,
                        counts_against_limit: bool = True,
                        notes: str = None) -> Dict[str, Any]:
        """
        Drop and/or pick up in one ledger row. The drop is applied first, so
        its refund and a freed captain slot are available to the pickup.
        """
        return self._execute_fa(
            season_id, season_coach_id, week,
            pickup_pokemon_id=pickup_pokemon_id,
            pickup_is_tera_captain=pickup_is_tera_captain,
            drop_roster_id=drop_roster_id,
            counts_against_limit=counts_against_limit,
            notes=notes,
        )

    def _execute_fa(self, season_id: int, season_coach_id: int, week: int,
                    pickup_pokemon_id: int = None, pickup_is_tera_captain: bool = False,
                    drop_roster_id: int = None, counts_against_limit: bool = True,
                    notes: str = None) -> Dict[str, Any]:
        if pickup_pokemon_id is None and drop_roster_id is None:
            raise ValidationError("Must specify at least one Pokemon to pick up or drop")

        # The season row is locked before any other read so two requests cannot
        # both validate against the same rosters and budgets.
        self._require_season(season_id, lock=True)
        team = self._require_team(season_id, season_coach_id)
        if counts_against_limit:
            self._check_limit(team, "fa")

        dropped = None
        refund = 0
        if drop_roster_id is not None:
            dropped = self._require_owned_entry(drop_roster_id, season_coach_id)
            refund = dropped["price"]

        cost = 0
        surcharge = 0
        price = None
        if pickup_pokemon_id is not None:
            price = self.store.get_price(season_id, pickup_pokemon_id)
            if not price or price["base_price"] < 0:
                raise PreconditionError(
                    f"Pokemon {pickup_pokemon_id} is not available in season {season_id}"
                )
            if self.store.team_has_pokemon(season_coach_id, pickup_pokemon_id):
                raise PreconditionError(
                    f"Pokemon {pickup_pokemon_id} is already on this team's roster"
                )
            if self.store.is_owned_in_season(season_id, pickup_pokemon_id):
                raise PreconditionError(f"Pokemon {pickup_pokemon_id} is no longer a free agent")

            if pickup_is_tera_captain:
                if price["tera_banned"]:
                    raise PreconditionError(
                        f"Pokemon {pickup_pokemon_id} is Tera Banned and cannot be a Tera Captain"
                    )
                if price["tera_captain_cost"] is None:
                    raise PreconditionError(
                        f"Pokemon {pickup_pokemon_id} is not eligible to be a Tera Captain"
                    )
                captain = self.store.get_tera_captain(season_coach_id)
                if captain and not (dropped and captain["id"] == dropped["id"]):
                    raise PreconditionError("Team already has a tera captain")
                surcharge = price["tera_captain_cost"]

            cost = price["base_price"] + surcharge

        budget_change = refund - cost
        self._check_budget(team, budget_change)

        if pickup_pokemon_id is not None and dropped is not None:
            tx_type = "FA_SWAP"
        elif pickup_pokemon_id is not None:
            tx_type = "FA_PICKUP"
        else:
            tx_type = "FA_DROP"

        tx_id = self.store.insert_transaction(
            season_id=season_id,
            tx_type=tx_type,
            week=week,
            season_coach_id=season_coach_id,
            team_abbreviation=team.get("team_abbreviation"),
            pokemon_in=[pickup_pokemon_id] if pickup_pokemon_id is not None else [],
            pokemon_out=[dropped["pokemon_id"]] if dropped else [],
            new_tera_captain_id=pickup_pokemon_id if pickup_is_tera_captain else None,
            old_tera_captain_id=(
                dropped["pokemon_id"] if dropped and dropped["is_tera_captain"] else None
            ),
            budget_change=budget_change,
            counts_against_limit=counts_against_limit,
            notes=notes,
            executed_by=self.executed_by,
        )

        details: Dict[str, Any] = {}
        if dropped:
            self.store.delete_roster_entry(dropped["id"])
            details["drop"] = _snapshot(dropped)

        if pickup_pokemon_id is not None:
            new_roster_id = self.store.insert_roster_entry(
                season_coach_id=season_coach_id,
                pokemon_id=pickup_pokemon_id,
                base_price=price["base_price"],
                tera_surcharge=surcharge,
                is_tera_captain=bool(pickup_is_tera_captain),
                acquired_week=week,
                acquired_via="FA_PICKUP",
                acquired_transaction_id=tx_id,
                last_transaction_id=tx_id,
            )
            details["pickup"] = {
                "roster_id": new_roster_id,
                "pokemon_id": pickup_pokemon_id,
                "cost": cost,
            }

        self.store.adjust_budget(season_coach_id, budget_change)
        self.store.update_transaction_details(tx_id, details)

        logger.info(
            "%s tx=%s team=%s in=%s out=%s budget_change=%s",
            tx_type, tx_id, season_coach_id, pickup_pokemon_id,
            dropped["pokemon_id"] if dropped else None, budget_change,
        )
        return self.store.get_transaction(tx_id)

    # ------------------------------------------------------------------
    # Player-to-player trades
    # ------------------------------------------------------------------

    def _lock_status(self, entry: Dict[str, Any], week: int) -> Dict[str, Any]:
        if entry["acquired_week"] is None or entry["acquired_via"] not in LOCKABLE_ACQUISITIONS:
            return {"roster_id": entry["id"], "locked": False}
        unlocks_week = entry["acquired_week"] + self.rules.trade_lock_weeks
        return {
            "roster_id": entry["id"],
            "locked": week < unlocks_week,
            "unlocks_week": unlocks_week,
            "acquired_week": entry["acquired_week"],
            "acquired_via": entry["acquired_via"],
        }

    def is_trade_locked(self, roster_id: int, week: int) -> Dict[str, Any]:
        """Lock status of a roster entry in a given week. Draft picks never lock."""
        entry = self.store.get_roster_entry(roster_id)
        if not entry:
            raise PreconditionError(f"Roster entry {roster_id} not found")
        return self._lock_status(entry, week)

    def _validate_trade_side(self, label: str, roster_ids: List[int]) -> None:
        if not roster_ids:
            raise PreconditionError(f"{label} must trade at least one Pokemon")
        if len(roster_ids) > self.rules.max_trade_side:
            raise PreconditionError(
                f"Maximum {self.rules.max_trade_side} Pokemon per side in a trade"
            )
        if len(set(roster_ids)) != len(roster_ids):
            raise PreconditionError(f"{label} lists the same roster entry twice")

    def execute_p2p_trade(self, season_id: int, team1_id: int, team1_roster_ids: List[int],
                          team2_id: int, team2_roster_ids: List[int], week: int,
                          counts_against_limit: bool = True,
                          notes: str = None) -> Dict[str, Any]:
        """
        Swap roster entries between two teams.

        Entries keep their base price. A tera captain traded away is demoted
        first (its surcharge refunded to the old owner) and every traded-in
        entry arrives without captaincy. Each team's budget settles the value
        difference, so equal-value trades leave budgets untouched.
        """
        if team1_id == team2_id:
            raise PreconditionError("A team cannot trade with itself")
        self._validate_trade_side("Team 1", team1_roster_ids)
        self._validate_trade_side("Team 2", team2_roster_ids)

        self._require_season(season_id, lock=True)
        # Lock in id order so concurrent trades between the same teams don't deadlock.
        teams = {}
        for tid in sorted((team1_id, team2_id)):
            teams[tid] = self._require_team(season_id, tid)
        team1, team2 = teams[team1_id], teams[team2_id]

        if counts_against_limit:
            self._check_limit(team1, "p2p")
            self._check_limit(team2, "p2p")

        entries = self.store.get_roster_entries(
            list(team1_roster_ids) + list(team2_roster_ids), for_update=True
        )
        for label, tid, ids in (("Team 1", team1_id, team1_roster_ids),
                                ("Team 2", team2_id, team2_roster_ids)):
            for rid in ids:
                entry = entries.get(rid)
                if not entry or entry["season_coach_id"] != tid:
                    raise PreconditionError(
                        f"Roster entry {rid} doesn't belong to {label}"
                    )

        if self.rules.enforce_trade_lock:
            for rid in list(team1_roster_ids) + list(team2_roster_ids):
                lock = self._lock_status(entries[rid], week)
                if lock["locked"]:
                    raise PreconditionError(
                        f"Roster entry {rid} is trade-locked until week {lock['unlocks_week']}"
                    )

        given1 = [entries[rid] for rid in team1_roster_ids]
        given2 = [entries[rid] for rid in team2_roster_ids]
        team1_change = sum(e["price"] for e in given1) - sum(e["base_price"] for e in given2)
        team2_change = sum(e["price"] for e in given2) - sum(e["base_price"] for e in given1)
        self._check_budget(team1, team1_change)
        self._check_budget(team2, team2_change)

        tx_id = self.store.insert_transaction(
            season_id=season_id,
            tx_type="P2P_TRADE",
            week=week,
            season_coach_id=team1_id,
            team_abbreviation=team1.get("team_abbreviation"),
            trading_partner_id=team2_id,
            trading_partner_abbreviation=team2.get("team_abbreviation"),
            pokemon_in=[e["pokemon_id"] for e in given2],
            pokemon_out=[e["pokemon_id"] for e in given1],
            budget_change=team1_change,
            counts_against_limit=counts_against_limit,
            notes=notes,
            executed_by=self.executed_by,
        )

        moves = []
        for side, to_team in ((given1, team2_id), (given2, team1_id)):
            for entry in side:
                self.store.update_roster_entry(
                    entry["id"],
                    season_coach_id=to_team,
                    is_tera_captain=False,
                    tera_surcharge=0,
                    acquired_week=week,
                    acquired_via="P2P_TRADE",
                    acquired_transaction_id=tx_id,
                    last_transaction_id=tx_id,
                )
                moves.append({
                    "roster_id": entry["id"],
                    "pokemon_id": entry["pokemon_id"],
                    "from_team": entry["season_coach_id"],
                    "to_team": to_team,
                    "prior": _snapshot(entry),
                })

        self.store.adjust_budget(team1_id, team1_change)
        self.store.adjust_budget(team2_id, team2_change)
        self.store.update_transaction_details(tx_id, {
            "moves": moves,
            "team1_budget_change": team1_change,
            "team2_budget_change": team2_change,
        })

        logger.info(
            "P2P_TRADE tx=%s team1=%s gave=%s team2=%s gave=%s",
            tx_id, team1_id, list(team1_roster_ids), team2_id, list(team2_roster_ids),
        )
        return self.store.get_transaction(tx_id)

    # ------------------------------------------------------------------
    # Tera captain swap
    # ------------------------------------------------------------------

    def execute_tera_swap(self, season_id: int, season_coach_id: int,
                          new_tera_captain_roster_id: int, week: int,
                          old_tera_captain_roster_id: int = None,
                          counts_against_limit: bool = True,
                          notes: str = None) -> Dict[str, Any]:
        self._require_season(season_id, lock=True)
        team = self._require_team(season_id, season_coach_id)

        new_entry = self._require_owned_entry(new_tera_captain_roster_id, season_coach_id)
        if new_entry["is_tera_captain"]:
            raise PreconditionError(
                f"Roster entry {new_tera_captain_roster_id} is already the tera captain"
            )
        price = self.store.get_price(season_id, new_entry["pokemon_id"])
        if not price:
            raise PreconditionError(
                f"Pokemon {new_entry['pokemon_id']} has no price in season {season_id}"
            )
        if price["tera_banned"]:
            raise PreconditionError("This Pokemon is Tera Banned and cannot be a Tera Captain")
        if price["tera_captain_cost"] is None:
            raise PreconditionError("This Pokemon is not eligible to be a Tera Captain")

        old_entry = None
        if old_tera_captain_roster_id is not None:
            old_entry = self._require_owned_entry(old_tera_captain_roster_id, season_coach_id)
            if not old_entry["is_tera_captain"]:
                raise PreconditionError(
                    f"Roster entry {old_tera_captain_roster_id} is not the team's tera captain"
                )
        elif self.store.get_tera_captain(season_coach_id):
            raise PreconditionError(
                "Team already has a tera captain; name it as the captain being replaced"
            )

        new_after = new_entry["base_price"] + price["tera_captain_cost"]
        surcharge_added = new_after - new_entry["price"]
        surcharge_removed = old_entry["tera_surcharge"] if old_entry else 0
        budget_change = surcharge_removed - surcharge_added
        self._check_budget(team, budget_change)

        tx_id = self.store.insert_transaction(
            season_id=season_id,
            tx_type="TERA_SWAP",
            week=week,
            season_coach_id=season_coach_id,
            team_abbreviation=team.get("team_abbreviation"),
            new_tera_captain_id=new_entry["pokemon_id"],
            old_tera_captain_id=old_entry["pokemon_id"] if old_entry else None,
            budget_change=budget_change,
            counts_against_limit=counts_against_limit,
            notes=notes,
            executed_by=self.executed_by,
        )

        if old_entry:
            self.store.update_roster_entry(
                old_entry["id"],
                is_tera_captain=False,
                tera_surcharge=0,
                last_transaction_id=tx_id,
            )
        self.store.update_roster_entry(
            new_entry["id"],
            is_tera_captain=True,
            tera_surcharge=price["tera_captain_cost"],
            last_transaction_id=tx_id,
        )
        self.store.adjust_budget(season_coach_id, budget_change)
        self.store.update_transaction_details(tx_id, {
            "new": _snapshot(new_entry),
            "old": _snapshot(old_entry) if old_entry else None,
        })

        logger.info(
            "TERA_SWAP tx=%s team=%s new=%s old=%s budget_change=%s",
            tx_id, season_coach_id, new_entry["id"],
            old_entry["id"] if old_entry else None, budget_change,
        )
        return self.store.get_transaction(tx_id)

    # ------------------------------------------------------------------
    # Limit counter
    # ------------------------------------------------------------------

    def get_transaction_counts(self, season_coach_id: int) -> Dict[str, int]:
        used = self.store.count_limited_transactions(season_coach_id)
        return {
            "fa_used": used["fa_used"],
            "fa_remaining": max(0, self.rules.fa_limit - used["fa_used"]),
            "p2p_used": used["p2p_used"],
            "p2p_remaining": max(0, self.rules.p2p_limit - used["p2p_used"]),
        }

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo_transaction(self, transaction_id: int) -> Dict[str, Any]:
        """
        Reverse a transaction and delete its ledger row.

        Refused with ConsistencyError when any entry it touched has since been
        changed by another transaction; undo the later ones first.
        """
        # Locking read: the ledger row names the season to lock, and a
        # concurrent undo of the same row waits here instead of racing.
        head = self.store.get_transaction(transaction_id, for_update=True)
        if not head:
            raise PreconditionError(f"Transaction {transaction_id} not found")

        # Same lock order as execution: season row first, then teams by id.
        self._require_season(head["season_id"], lock=True)
        tx = self.store.get_transaction(transaction_id, for_update=True)
        if not tx:
            raise PreconditionError(f"Transaction {transaction_id} not found")
        team_ids = {tx["season_coach_id"]}
        if tx.get("trading_partner_season_coach_id"):
            team_ids.add(tx["trading_partner_season_coach_id"])
        for tid in sorted(team_ids):
            self.store.get_team(tid, for_update=True)

        tx_type = tx["type"]
        if tx_type in ("FA_PICKUP", "FA_DROP", "FA_SWAP"):
            self._undo_fa(tx)
        elif tx_type == "P2P_TRADE":
            self._undo_trade(tx)
        elif tx_type == "TERA_SWAP":
            self._undo_tera_swap(tx)
        else:
            raise ValidationError(f"Undo not supported for transaction type '{tx_type}'")

        self.store.delete_transaction(transaction_id)
        logger.info("undo tx=%s type=%s team=%s", transaction_id, tx_type, tx["season_coach_id"])

        return {
            "undone_transaction_id": transaction_id,
            "transaction_type": tx_type,
            "season_coach_id": tx["season_coach_id"],
            "trading_partner_season_coach_id": tx.get("trading_partner_season_coach_id"),
            "budget_change_reversed": tx["budget_change"],
        }

    def _require_untouched(self, tx: Dict[str, Any], roster_id: int,
                           owner_id: int) -> Dict[str, Any]:
        entry = self.store.get_roster_entry(roster_id, for_update=True)
        if (not entry or entry["season_coach_id"] != owner_id
                or entry["last_transaction_id"] != tx["id"]):
            raise ConsistencyError(
                f"Roster entry {roster_id} has changed since transaction {tx['id']}; "
                "undo the later transactions first"
            )
        return entry

    def _undo_fa(self, tx: Dict[str, Any]) -> None:
        details = tx.get("details") or {}
        pickup = details.get("pickup")
        drop = details.get("drop")
        team_id = tx["season_coach_id"]

        if pickup:
            self._require_untouched(tx, pickup["roster_id"], team_id)
        if drop:
            if self.store.is_owned_in_season(tx["season_id"], drop["pokemon_id"]):
                raise ConsistencyError(
                    f"Dropped Pokemon {drop['pokemon_id']} is no longer a free agent"
                )
            reused = self.store.get_roster_entry(drop["id"], for_update=True)
            if reused and not (pickup and reused["id"] == pickup["roster_id"]):
                raise ConsistencyError(f"Roster entry id {drop['id']} has been reused")
            if drop["is_tera_captain"]:
                captain = self.store.get_tera_captain(team_id)
                if captain and not (pickup and captain["id"] == pickup["roster_id"]):
                    raise ConsistencyError(
                        "Team has a new tera captain; cannot restore the dropped captain"
                    )

        if pickup:
            self.store.delete_roster_entry(pickup["roster_id"])
        if drop:
            self.store.insert_roster_entry(**drop)
        self.store.adjust_budget(team_id, -tx["budget_change"])

    def _undo_trade(self, tx: Dict[str, Any]) -> None:
        details = tx.get("details") or {}
        moves = details.get("moves", [])

        for mv in moves:
            self._require_untouched(tx, mv["roster_id"], mv["to_team"])
        for mv in moves:
            if mv["prior"]["is_tera_captain"] and self.store.get_tera_captain(mv["from_team"]):
                raise ConsistencyError(
                    f"Season coach {mv['from_team']} has a new tera captain; "
                    "cannot restore the traded captain"
                )

        for mv in moves:
            prior = dict(mv["prior"])
            prior.pop("id")
            self.store.update_roster_entry(mv["roster_id"], **prior)

        self.store.adjust_budget(tx["season_coach_id"], -details.get("team1_budget_change", 0))
        self.store.adjust_budget(
            tx["trading_partner_season_coach_id"], -details.get("team2_budget_change", 0)
        )

    def _undo_tera_swap(self, tx: Dict[str, Any]) -> None:
        details = tx.get("details") or {}
        new = details["new"]
        old = details.get("old")
        team_id = tx["season_coach_id"]

        self._require_untouched(tx, new["id"], team_id)
        if old:
            self._require_untouched(tx, old["id"], team_id)

        for prior in filter(None, (new, old)):
            values = dict(prior)
            values.pop("id")
            self.store.update_roster_entry(prior["id"], **values)
        self.store.adjust_budget(team_id, -tx["budget_change"])
