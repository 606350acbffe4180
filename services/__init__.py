# services/__init__.py
"""
Domain service layer for the draft league API.

This package holds application logic shared across blueprints:
  - league_store: SQLAlchemy Core access to seasons, teams, prices, rosters and the ledger
  - transactions: the transaction engine (FA moves, trades, tera swaps, undo)
  - transaction_actions: typed request actions and the atomic runner
  - transaction_rules / transaction_errors: league rules and the error taxonomy
"""
