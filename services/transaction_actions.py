# services/transaction_actions.py
"""
Typed transaction actions and the atomic runner.

Request bodies are parsed into one dataclass per action kind, each carrying
only its own fields. `perform_action` runs an action inside a single
`engine.begin()` block: any error rolls the whole unit of work back.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from sqlalchemy.exc import SQLAlchemyError

from services.league_store import LeagueStore
from services.transaction_errors import StoreError, ValidationError
from services.transaction_rules import TransactionRules
from services.transactions import TransactionEngine

logger = logging.getLogger("app")


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _missing(body: Mapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if body.get(k) is None]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", fields=missing
        )


def _to_int(value) -> int:
    """int() that refuses bools and fractional floats instead of truncating."""
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(value)
    return int(value)


def _as_int(body: Mapping[str, Any], key: str) -> Optional[int]:
    value = body.get(key)
    if value is None or value == "":
        return None
    try:
        return _to_int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Field '{key}' must be an integer", fields=[key])


def _as_bool(body: Mapping[str, Any], key: str, default: bool) -> bool:
    value = body.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_int_list(body: Mapping[str, Any], key: str) -> List[int]:
    value = body.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"Field '{key}' must be a list of integers", fields=[key])
    try:
        return [_to_int(v) for v in value]
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Field '{key}' must be a list of integers", fields=[key])


def _notes(body: Mapping[str, Any]) -> Optional[str]:
    notes = body.get("notes")
    return str(notes) if notes else None


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FAPickup:
    season_id: int
    season_coach_id: int
    pokemon_id: int
    week: int
    is_tera_captain: bool = False
    counts_against_limit: bool = True
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, body):
        _missing(body, "season_id", "season_coach_id", "pokemon_id", "week")
        return cls(
            season_id=_as_int(body, "season_id"),
            season_coach_id=_as_int(body, "season_coach_id"),
            pokemon_id=_as_int(body, "pokemon_id"),
            week=_as_int(body, "week"),
            is_tera_captain=_as_bool(body, "is_tera_captain", False),
            counts_against_limit=_as_bool(body, "counts_against_limit", True),
            notes=_notes(body),
        )

    def execute(self, engine: TransactionEngine):
        return engine.execute_fa_pickup(
            self.season_id, self.season_coach_id, self.pokemon_id, self.week,
            is_tera_captain=self.is_tera_captain,
            counts_against_limit=self.counts_against_limit,
            notes=self.notes,
        )


@dataclass(frozen=True)
class FADrop:
    season_id: int
    season_coach_id: int
    roster_id: int
    week: int
    counts_against_limit: bool = True
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, body):
        _missing(body, "season_id", "season_coach_id", "roster_id", "week")
        return cls(
            season_id=_as_int(body, "season_id"),
            season_coach_id=_as_int(body, "season_coach_id"),
            roster_id=_as_int(body, "roster_id"),
            week=_as_int(body, "week"),
            counts_against_limit=_as_bool(body, "counts_against_limit", True),
            notes=_notes(body),
        )

    def execute(self, engine: TransactionEngine):
        return engine.execute_fa_drop(
            self.season_id, self.season_coach_id, self.roster_id, self.week,
            counts_against_limit=self.counts_against_limit,
            notes=self.notes,
        )


@dataclass(frozen=True)
class FASwap:
    season_id: int
    season_coach_id: int
    week: int
    pickup_pokemon_id: Optional[int] = None
    pickup_is_tera_captain: bool = False
    drop_roster_id: Optional[int] = None
    counts_against_limit: bool = True
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, body):
        _missing(body, "season_id", "season_coach_id", "week")
        action = cls(
            season_id=_as_int(body, "season_id"),
            season_coach_id=_as_int(body, "season_coach_id"),
            week=_as_int(body, "week"),
            pickup_pokemon_id=_as_int(body, "pickup_pokemon_id"),
            pickup_is_tera_captain=_as_bool(body, "pickup_is_tera_captain", False),
            drop_roster_id=_as_int(body, "drop_roster_id"),
            counts_against_limit=_as_bool(body, "counts_against_limit", True),
            notes=_notes(body),
        )
        if action.pickup_pokemon_id is None and action.drop_roster_id is None:
            raise ValidationError(
                "Must specify at least one Pokemon to pick up or drop",
                fields=["pickup_pokemon_id", "drop_roster_id"],
            )
        return action

    def execute(self, engine: TransactionEngine):
        return engine.execute_fa_swap(
            self.season_id, self.season_coach_id, self.week,
            pickup_pokemon_id=self.pickup_pokemon_id,
            pickup_is_tera_captain=self.pickup_is_tera_captain,
            drop_roster_id=self.drop_roster_id,
            counts_against_limit=self.counts_against_limit,
            notes=self.notes,
        )


@dataclass(frozen=True)
class P2PTrade:
    season_id: int
    team1_season_coach_id: int
    team2_season_coach_id: int
    week: int
    team1_roster_ids: List[int] = field(default_factory=list)
    team2_roster_ids: List[int] = field(default_factory=list)
    counts_against_limit: bool = True
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, body):
        _missing(body, "season_id", "team1_season_coach_id", "team2_season_coach_id", "week")
        action = cls(
            season_id=_as_int(body, "season_id"),
            team1_season_coach_id=_as_int(body, "team1_season_coach_id"),
            team2_season_coach_id=_as_int(body, "team2_season_coach_id"),
            week=_as_int(body, "week"),
            team1_roster_ids=_as_int_list(body, "team1_roster_ids"),
            team2_roster_ids=_as_int_list(body, "team2_roster_ids"),
            counts_against_limit=_as_bool(body, "counts_against_limit", True),
            notes=_notes(body),
        )
        empty = [k for k in ("team1_roster_ids", "team2_roster_ids") if not getattr(action, k)]
        if empty:
            raise ValidationError(
                f"Missing required fields: {', '.join(empty)}", fields=empty
            )
        return action

    def execute(self, engine: TransactionEngine):
        return engine.execute_p2p_trade(
            self.season_id,
            self.team1_season_coach_id, self.team1_roster_ids,
            self.team2_season_coach_id, self.team2_roster_ids,
            self.week,
            counts_against_limit=self.counts_against_limit,
            notes=self.notes,
        )


@dataclass(frozen=True)
class TeraSwap:
    season_id: int
    season_coach_id: int
    new_tera_captain_roster_id: int
    week: int
    old_tera_captain_roster_id: Optional[int] = None
    counts_against_limit: bool = True
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, body):
        _missing(body, "season_id", "season_coach_id", "new_tera_captain_roster_id", "week")
        return cls(
            season_id=_as_int(body, "season_id"),
            season_coach_id=_as_int(body, "season_coach_id"),
            new_tera_captain_roster_id=_as_int(body, "new_tera_captain_roster_id"),
            week=_as_int(body, "week"),
            old_tera_captain_roster_id=_as_int(body, "old_tera_captain_roster_id"),
            counts_against_limit=_as_bool(body, "counts_against_limit", True),
            notes=_notes(body),
        )

    def execute(self, engine: TransactionEngine):
        return engine.execute_tera_swap(
            self.season_id, self.season_coach_id,
            self.new_tera_captain_roster_id, self.week,
            old_tera_captain_roster_id=self.old_tera_captain_roster_id,
            counts_against_limit=self.counts_against_limit,
            notes=self.notes,
        )


@dataclass(frozen=True)
class Undo:
    transaction_id: int

    @classmethod
    def from_payload(cls, body):
        _missing(body, "transaction_id")
        return cls(transaction_id=_as_int(body, "transaction_id"))

    def execute(self, engine: TransactionEngine):
        return engine.undo_transaction(self.transaction_id)


ACTIONS: Dict[str, Type] = {
    "fa_pickup": FAPickup,
    "fa_drop": FADrop,
    "fa_swap": FASwap,
    "p2p_trade": P2PTrade,
    "tera_swap": TeraSwap,
    "undo": Undo,
}


def parse_action(body: Optional[Mapping[str, Any]], action: str = None):
    """Build a typed action from a request body. `action` overrides body['action']."""
    body = body or {}
    tag = action or body.get("action")
    if not tag:
        raise ValidationError("Missing required fields: action", fields=["action"])
    cls = ACTIONS.get(tag)
    if cls is None:
        raise ValidationError(f"Invalid action '{tag}'", fields=["action"])
    return cls.from_payload(body)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

def perform_action(db_engine, action, rules: TransactionRules = None,
                   executed_by: str = None) -> Dict[str, Any]:
    """Run one action as a single atomic unit of work."""
    return _in_transaction(
        db_engine, lambda tx_engine: action.execute(tx_engine), rules, executed_by
    )


def run_query(db_engine, fn: Callable[[TransactionEngine], Any],
              rules: TransactionRules = None):
    """Read-only engine call on a plain connection (no locks, may be slightly stale)."""
    try:
        with db_engine.connect() as conn:
            return fn(TransactionEngine(LeagueStore(conn), rules))
    except SQLAlchemyError as e:
        logger.exception("transaction query failed")
        raise StoreError() from e


def _in_transaction(db_engine, fn, rules, executed_by):
    try:
        with db_engine.begin() as conn:
            return fn(TransactionEngine(LeagueStore(conn), rules, executed_by))
    except SQLAlchemyError as e:
        logger.exception("transaction store failure")
        raise StoreError() from e
