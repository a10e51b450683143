"""Circulation Desk - core circulation engine

This package contains the lending rules of the library:
- Clock with the fixed library timezone (clock.py)
- Overdue fine tiers (fines.py)
- Entities and states (models.py)
- Error taxonomy (errors.py)
- SQLite storage helpers (database.py)
- Book/patron/copy lookup (catalog.py)
- Copy inventory and last-copy reservation (inventory.py)
- Loan ledger (ledger.py)
- Per-entity locking (locks.py)
- Issue / return / refresh orchestration (service.py)
"""
