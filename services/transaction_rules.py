# services/transaction_rules.py
"""
League rules that govern mid-season transactions.

Values come from the Flask config (which reads the environment) so a league
can tune limits without a deploy. Defaults match the standard ruleset.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional


def _flag(value: Any, default: bool) -> bool:
    # Config values set from the environment or a file arrive as strings.
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class TransactionRules:
    fa_limit: int = 6
    p2p_limit: int = 6
    max_trade_side: int = 3
    trade_lock_weeks: int = 2
    enforce_trade_lock: bool = True
    enforce_budget_floor: bool = True

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, Any]]) -> "TransactionRules":
        """Build rules from a Flask config mapping, falling back to defaults."""
        if not config:
            return cls()
        defaults = cls()
        return cls(
            fa_limit=int(config.get("FA_TRANSACTION_LIMIT", defaults.fa_limit)),
            p2p_limit=int(config.get("P2P_TRANSACTION_LIMIT", defaults.p2p_limit)),
            max_trade_side=int(config.get("MAX_TRADE_SIDE", defaults.max_trade_side)),
            trade_lock_weeks=int(config.get("TRADE_LOCK_WEEKS", defaults.trade_lock_weeks)),
            enforce_trade_lock=_flag(config.get("ENFORCE_TRADE_LOCK"), defaults.enforce_trade_lock),
            enforce_budget_floor=_flag(config.get("ENFORCE_BUDGET_FLOOR"), defaults.enforce_budget_floor),
        )
